import pytest

from curriculum_studio import consistency, views
from curriculum_studio.models import (
    CloMapping,
    CoursePiLink,
    CourseSoLink,
    CourseTopic,
    InstructorDetail,
    MoetObjective,
    TopicActivity,
)


def test_filter_sorts_by_semester_then_code(state):
    assert [c.id for c in views.filter_courses(state)] == ["c2", "c1", "c3", "c4"]


def test_filter_flags_and_search(state):
    assert [c.id for c in views.filter_courses(state, abet_only=True)] == ["c2", "c1"]
    assert [c.id for c in views.filter_courses(state, essential_only=True)] == ["c2"]
    assert [c.id for c in views.filter_courses(state, area_id="adv_eng")] == ["c3", "c4"]
    assert [c.id for c in views.filter_courses(state, area_id="all")] == ["c2", "c1", "c3", "c4"]
    assert [c.id for c in views.filter_courses(state, search="learn", language="en")] == ["c3"]
    assert [c.id for c in views.filter_courses(state, search="học máy", language="vi")] == ["c3"]
    assert [c.id for c in views.filter_courses(state, search="cs30")] == ["c3", "c4"]


def test_credits_by_area_sorted_with_percentages(state):
    rows = views.credits_by_area(state)

    assert [(r["id"], r["value"]) for r in rows] == [
        ("adv_eng", 6),
        ("fund_eng", 4),
        ("math_sci", 3),
        ("gen_ed", 0),
        ("other", 0),
    ]
    assert rows[0]["percentage"] == pytest.approx(6 / 13 * 100)
    assert sum(r["percentage"] for r in rows) == pytest.approx(100)


def test_credits_by_area_empty_scope(state):
    rows = views.credits_by_area(state, [])

    assert all(r["value"] == 0 and r["percentage"] == 0 for r in rows)


def test_credits_by_semester_counts_elective_pool_once(state):
    rows = views.credits_by_semester(state)

    assert [(r["semester"], r["total"]) for r in rows] == [(1, 7), (6, 3)]
    assert rows[0]["areas"] == {"math_sci": 3, "fund_eng": 4}
    assert rows[1]["areas"] == {"adv_eng": 3}


def test_credits_by_semester_skips_pool_out_of_scope(state):
    scoped = [c for c in state.courses if c.id in ("c1", "c2")]

    rows = views.credits_by_semester(state, scoped)

    assert [r["semester"] for r in rows] == [1]


def test_semester_totals_match_catalog_without_elective_pools(state):
    state.moet.sub_blocks = []

    rows = views.credits_by_semester(state)

    assert sum(r["total"] for r in rows) == views.total_credits(state.courses)
    assert [(r["semester"], r["total"]) for r in rows] == [(1, 7), (5, 6)]


def test_moving_into_elective_block_shifts_semester_total(state):
    def semester_total(s, sem):
        return next((r["total"] for r in views.credits_by_semester(s) if r["semester"] == sem), 0)

    created = consistency.add_sub_block(state, "fund", "ELECTIVE")
    block_id = created.created_id
    s = consistency.update_sub_block(created.state, block_id, {"minCredits": 5, "preferredSemester": 1}).state
    before = semester_total(s, 1)

    # first visible member: the course's credits give way to the block minimum
    first = consistency.add_course_to_sub_block(s, block_id, "c1").state
    assert semester_total(first, 1) - before == 5 - 3

    # block already counted: only the course's own credits leave the total
    second = consistency.add_course_to_sub_block(first, block_id, "c2").state
    assert semester_total(second, 1) - semester_total(first, 1) == -4


def test_so_coverage_and_uncovered(state):
    state.course_so_map = [
        CourseSoLink(course_id="c1", so_id="so1", level="I"),
        CourseSoLink(course_id="c2", so_id="so1", level="M"),
        CourseSoLink(course_id="c3", so_id="so2", level=""),
    ]

    rows = views.so_coverage(state)

    assert rows == [
        {"id": "so1", "code": "SO-1", "count": 2, "credits": 7},
        {"id": "so2", "code": "SO-2", "count": 0, "credits": 0},
    ]
    assert views.uncovered_sos(state) == ["so2"]
    assert views.uncovered_sos(state, [state.course("c3")]) == ["so1", "so2"]


def test_analytics_summary(state):
    summary = views.analytics_summary(state)

    assert summary["total_credits"] == 13
    assert summary["max_semester_credits"] == 7
    assert len(summary["so_coverage"]) == 2


def test_pi_cell_states(state):
    state.course_pi_map = [CoursePiLink(course_id="c1", pi_id="pi1")]
    state.course_so_map = [CourseSoLink(course_id="c2", so_id="so1", level="R")]

    rows = {r["course_id"]: r["cells"] for r in views.pi_matrix(state)}

    assert rows["c1"] == {"pi1": views.PI_MAPPED, "pi2": views.PI_NONE}
    assert rows["c2"] == {"pi1": views.PI_PARTIAL, "pi2": views.PI_PARTIAL}
    assert rows["c3"] == {"pi1": views.PI_NONE, "pi2": views.PI_NONE}


def test_objective_labels_put_uncategorized_first_then_category_order(state):
    state.moet.specific_objectives = [
        MoetObjective(id="o-learn", category="learning"),
        MoetObjective(id="o-skill", category="skills"),
        MoetObjective(id="o-know-1", category="knowledge"),
        MoetObjective(id="o-none"),
        MoetObjective(id="o-know-2", category="knowledge"),
    ]

    labels = views.objective_labels(state)

    assert labels == {"o-none": "A", "o-know-1": "B", "o-know-2": "C", "o-skill": "D", "o-learn": "E"}
    assert "missing" not in labels


def test_label_for_index_wraps_with_suffix():
    assert views.label_for_index(0) == "A"
    assert views.label_for_index(25) == "Z"
    assert views.label_for_index(26) == "A1"
    assert views.label_for_index(27) == "B1"
    assert views.label_for_index(52) == "A2"


def test_objective_matrix_precedence(state):
    state.moet.specific_objectives = [MoetObjective(id="o1", category="knowledge", so_ids=["so1"])]
    state.course_so_map = [
        CourseSoLink(course_id="c1", so_id="so1"),
        CourseSoLink(course_id="c2", so_id="so1"),
        CourseSoLink(course_id="c3", so_id="so1"),
    ]
    state.courses[1].clos.en = ["x"]
    state.courses[1].clo_map = {0: CloMapping(objective_ids=["o1"])}
    state.moet.course_objective_map = ["c1|o1", "c2|o1"]

    matrix = views.objective_matrix(state)

    cells = {r["course_id"]: r["cells"]["o1"] for r in matrix["rows"]}
    assert cells == {"c1": "MANUAL", "c2": "MANUAL", "c3": "SO", "c4": "NONE"}
    assert matrix["objectives"] == [{"id": "o1", "label": "A", "category": "knowledge"}]

    state.moet.course_objective_map = []
    assert views.objective_cell_state(state, "c2", "o1") == views.LINK_SYLLABUS
    assert views.objective_cell_state(state, "c1", "o1") == views.LINK_SO


def test_main_instructor(state):
    course = state.course("c1")
    assert views.main_instructor(course) is None

    course.instructor_ids = ["f1", "f2"]
    assert views.main_instructor(course) == "f1"

    course.instructor_details = {"f2": InstructorDetail(is_main=True)}
    assert views.main_instructor(course) == "f2"


def test_credit_breakdown_rounds_up_per_method(state):
    course = state.course("c2")
    course.topics = [
        CourseTopic(id="t1", activities=[TopicActivity(method_id="tm1", hours=20), TopicActivity(method_id="tm2", hours=30)]),
        CourseTopic(id="t2", activities=[TopicActivity(method_id="tm1", hours=20), TopicActivity(method_id="ghost", hours=5)]),
    ]

    assert views.credit_breakdown(course, state.teaching_methods) == {"LEC": 3, "LAB": 1}


def test_course_codes_skip_unknown(state):
    assert views.course_codes(state, ["c2", "nope", "c1"]) == ["CS101", "MATH101"]


def test_integrity_clean_fixture(state):
    assert views.integrity_issues(state) == []


def test_integrity_reports_broken_references(state):
    state.course_so_map = [CourseSoLink(course_id="ghost", so_id="so1")]
    state.moet.program_structure.grad = ["c3", "ghost"]
    state.courses[0].knowledge_area_id = "gone"
    state.courses[0].prerequisites = ["ghost"]
    state.courses[1].clo_map = {2: CloMapping(so_ids=["so1"])}

    kinds = {issue["kind"] for issue in views.integrity_issues(state)}

    assert {
        "dangling_so_mapping",
        "dangling_structure_entry",
        "multiple_locations",
        "unknown_knowledge_area",
        "dangling_prerequisite",
        "clo_map_out_of_range",
    } <= kinds
