import pytest

from curriculum_studio import consistency, store
from curriculum_studio.consistency import ROOT
from curriculum_studio.models import CloMapping, CourseSoLink, CourseTopic, Facility, TopicActivity
from curriculum_studio.views import integrity_issues


def placements(state) -> dict[str, int]:
    counts: dict[str, int] = {}
    for cid in state.moet.program_structure.all_ids():
        counts[cid] = counts.get(cid, 0) + 1
    for block in state.moet.sub_blocks:
        for cid in block.course_ids:
            counts[cid] = counts.get(cid, 0) + 1
    return counts


def test_elective_change_auto_creates_block_when_branch_has_none(state):
    created = store.create_course(state, {"code": "GE101", "knowledgeAreaId": "gen_ed", "type": "REQUIRED"})
    cid = created.created_id
    assert cid in created.state.moet.program_structure.gen

    plan = consistency.plan_classification_change(created.state, cid, "ELECTIVE")
    assert plan.action == "AUTO_CREATE"

    outcome = consistency.change_course_classification(created.state, cid, "ELECTIVE")

    assert outcome.ok
    new = outcome.state
    block = next(b for b in new.moet.sub_blocks if b.id == outcome.created_id)
    assert (block.type, block.parent_block_id, block.min_credits) == ("ELECTIVE", "gen", 3)
    assert block.course_ids == [cid]
    assert block.name.en == "Elective Block"
    assert cid not in new.moet.program_structure.gen
    assert new.course(cid).type == "ELECTIVE"


def test_elective_change_prompts_when_branch_has_blocks(state):
    created = store.create_course(state, {"code": "CS310", "knowledgeAreaId": "adv_eng"})
    cid = created.created_id

    outcome = consistency.change_course_classification(created.state, cid, "ELECTIVE")

    assert outcome.error.code == "SELECTION_REQUIRED"
    assert outcome.error.candidates == ["sb1"]
    assert outcome.state is created.state

    moved = consistency.change_course_classification(created.state, cid, "ELECTIVE", "sb1")
    assert moved.ok
    assert moved.state.moet.sub_blocks[0].course_ids == ["c3", "c4", cid]
    assert cid not in moved.state.moet.program_structure.spec
    assert moved.state.course(cid).type == "ELECTIVE"


def test_invalid_target_is_rejected(state):
    outcome = consistency.change_course_classification(state, "c3", "REQUIRED", "sb-missing")

    assert outcome.error.code == "INVALID_INPUT"
    assert outcome.state is state


def test_unknown_type_and_course(state):
    assert consistency.change_course_classification(state, "c1", "OPTIONAL").error.code == "INVALID_INPUT"
    assert consistency.change_course_classification(state, "nope", "REQUIRED").error.code == "NOT_FOUND"
    with pytest.raises(KeyError):
        consistency.plan_classification_change(state, "nope", "REQUIRED")


def test_elective_to_selected_elective_stays_in_block(state):
    outcome = consistency.change_course_classification(state, "c3", "SELECTED_ELECTIVE")

    assert outcome.ok
    assert outcome.state.course("c3").type == "SELECTED_ELECTIVE"
    assert outcome.state.moet.sub_blocks[0].course_ids == ["c3", "c4"]


def test_elective_to_required_offers_root_and_compulsory_blocks(state):
    with_block = consistency.add_sub_block(state, "spec", "COMPULSORY")
    comp_id = with_block.created_id

    prompt = consistency.change_course_classification(with_block.state, "c3", "REQUIRED")
    assert prompt.error.candidates == [ROOT, comp_id]

    outcome = consistency.change_course_classification(with_block.state, "c3", "REQUIRED", ROOT)
    new = outcome.state
    assert "c3" in new.moet.program_structure.spec
    assert "c3" not in new.moet.sub_blocks[0].course_ids
    assert new.course("c3").type == "REQUIRED"


def test_required_course_in_root_changes_in_place(state):
    plan = consistency.plan_classification_change(state, "c1", "REQUIRED")

    assert plan.action == "DIRECT_MOVE"
    assert plan.target_location == ROOT
    assert consistency.change_course_classification(state, "c1", "REQUIRED").state.moet.program_structure.fund == ["c1", "c2"]


def test_exclusive_location_over_a_sequence_of_moves(state):
    s = state
    s = consistency.change_course_classification(s, "c2", "ELECTIVE").state  # fund has no electives -> auto block
    s = consistency.add_course_to_sub_block(s, "sb1", "c1").state
    s = consistency.add_course_to_root(s, "spec", "c3").state
    s = consistency.change_course_classification(s, "c4", "REQUIRED", ROOT).state
    s = consistency.add_course_to_root(s, "grad", "c1").state

    assert all(count == 1 for count in placements(s).values())
    assert set(placements(s)) == {"c1", "c2", "c3", "c4"}
    assert not [i for i in integrity_issues(s) if i["kind"] in ("multiple_locations", "type_location_mismatch")]


def test_add_course_to_sub_block_sets_type_from_block(state):
    outcome = consistency.add_course_to_sub_block(state, "sb1", "c2")

    assert outcome.state.course("c2").type == "ELECTIVE"
    assert "c2" not in outcome.state.moet.program_structure.fund
    assert consistency.add_course_to_sub_block(state, "nope", "c2").error.code == "NOT_FOUND"


def test_add_course_to_root_validates_branch(state):
    assert consistency.add_course_to_root(state, "nowhere", "c1").error.code == "INVALID_INPUT"


def test_remove_course_from_structure(state):
    new = consistency.remove_course_from_structure(state, "c3")

    assert "c3" not in new.moet.sub_blocks[0].course_ids
    assert consistency.remove_course_from_structure(new, "c3") is new


def test_reorder_location(state):
    outcome = consistency.reorder_location(state, ROOT, ["c2", "c1"], "fund")
    assert outcome.state.moet.program_structure.fund == ["c2", "c1"]

    block = consistency.reorder_location(state, "sb1", ["c4", "c3"])
    assert block.state.moet.sub_blocks[0].course_ids == ["c4", "c3"]

    assert consistency.reorder_location(state, ROOT, ["c1"], "fund").error.code == "INVALID_INPUT"


def test_sub_block_lifecycle(state):
    elective = consistency.add_sub_block(state, "fund")
    compulsory = consistency.add_sub_block(elective.state, "fund", "COMPULSORY")
    blocks = {b.id: b for b in compulsory.state.moet.sub_blocks}
    assert blocks[elective.created_id].min_credits == 3
    assert blocks[compulsory.created_id].min_credits == 0

    updated = consistency.update_sub_block(state, "sb1", {"type": "COMPULSORY", "minCredits": 6, "courseIds": [], "preferredSemester": 7})
    block = updated.state.moet.sub_blocks[0]
    assert (block.type, block.min_credits, block.preferred_semester) == ("COMPULSORY", 6, 7)
    assert block.course_ids == ["c3", "c4"]
    assert updated.state.course("c3").type == "REQUIRED"

    deleted = consistency.delete_sub_block(state, "sb1")
    assert deleted.state.moet.sub_blocks == []
    assert consistency.delete_sub_block(state, "sb1").ok
    assert consistency.delete_sub_block(deleted.state, "sb1").error.code == "NOT_FOUND"


def test_reorder_sub_blocks_needs_every_id(state):
    other = consistency.add_sub_block(state, "gen")

    good = consistency.reorder_sub_blocks(other.state, [other.created_id, "sb1"])
    assert [b.id for b in good.state.moet.sub_blocks] == [other.created_id, "sb1"]
    assert consistency.reorder_sub_blocks(other.state, ["sb1"]).error.code == "INVALID_INPUT"


def test_delete_knowledge_area_in_use_then_reassigned(state):
    outcome = consistency.delete_knowledge_area(state, "adv_eng")

    assert outcome.error.code == "ENTITY_IN_USE"
    assert outcome.error.count == 2
    assert outcome.state is state

    s = store.update_course_field(state, "c3", "knowledge_area_id", "other")
    s = store.update_course_field(s, "c4", "knowledgeAreaId", "other")
    done = consistency.delete_knowledge_area(s, "adv_eng")

    assert done.ok
    assert store.get_entity(done.state, "knowledge_areas", "adv_eng") is None


def test_rename_knowledge_area_cascades(state):
    outcome = consistency.rename_knowledge_area(state, "fund_eng", "core_eng")

    new = outcome.state
    assert new.course("c2").knowledge_area_id == "core_eng"
    assert store.get_entity(new, "knowledge_areas", "core_eng") is not None
    assert store.get_entity(new, "knowledge_areas", "fund_eng") is None
    area_ids = {k.id for k in new.knowledge_areas}
    assert all(c.knowledge_area_id in area_ids for c in new.courses)


def test_rename_knowledge_area_guards(state):
    assert consistency.rename_knowledge_area(state, "fund_eng", "gen_ed").error.code == "DUPLICATE_ID"
    assert consistency.rename_knowledge_area(state, "fund_eng", "  ").error.code == "INVALID_INPUT"
    assert consistency.rename_knowledge_area(state, "nope", "x").error.code == "NOT_FOUND"
    assert consistency.rename_knowledge_area(state, "fund_eng", "fund_eng").state is state


def test_guarded_delete_counts_teaching_method_use(state):
    state.courses[0].topics = [CourseTopic(id="t1", activities=[TopicActivity(method_id="tm1", hours=30)])]

    outcome = consistency.delete_guarded(state, "teaching_methods", "tm1")

    assert outcome.error.code == "ENTITY_IN_USE"
    assert outcome.error.count == 1
    assert consistency.delete_guarded(state, "teaching_methods", "tm2").ok


def test_guarded_delete_academic_hierarchy(state):
    assert consistency.delete_guarded(state, "academic_schools", "sch1").error.count == 1
    assert consistency.delete_guarded(state, "academic_faculties", "af1").error.count == 1
    assert consistency.delete_guarded(state, "departments", "d1").error.count == 2
    assert consistency.delete_guarded(state, "departments", "zzz").error.code == "NOT_FOUND"


def _with_three_clos(state):
    s = state
    for i, (vi, en) in enumerate([("A", "a"), ("B", "b"), ("C", "c")]):
        s = consistency.update_clo(s, "c1", "vi", i, vi).state
        s = consistency.update_clo(s, "c1", "en", i, en).state
    s = consistency.update_clo_mapping(s, "c1", 0, {"soIds": ["so1"], "coverageLevel": "H"}).state
    s = consistency.update_clo_mapping(s, "c1", 2, {"soIds": ["so2"], "coverageLevel": "L"}).state
    return s


def test_delete_clo_reindexes_mapping(state):
    s = _with_three_clos(state)

    outcome = consistency.delete_clo(s, "c1", 1)

    course = outcome.state.course("c1")
    assert course.clos.vi == ["A", "C"]
    assert course.clos.en == ["a", "c"]
    assert set(course.clo_map) == {0, 1}
    assert course.clo_map[0].so_ids == ["so1"]
    assert course.clo_map[1].so_ids == ["so2"]
    assert course.clo_map[1].coverage_level == "L"


def test_delete_mapped_clo_drops_its_entry(state):
    s = _with_three_clos(state)

    course = consistency.delete_clo(s, "c1", 0).state.course("c1")

    assert course.clos.en == ["b", "c"]
    assert set(course.clo_map) == {1}
    assert course.clo_map[1].so_ids == ["so2"]


def test_delete_clo_out_of_range(state):
    assert consistency.delete_clo(state, "c1", 0).error.code == "INVALID_INPUT"


def test_add_clo_extends_both_languages(state):
    course = consistency.add_clo(state, "c1").state.course("c1")

    assert course.clos.vi == [""]
    assert course.clos.en == [""]


def test_clearing_a_clo_mapping_removes_it(state):
    s = _with_three_clos(state)

    outcome = consistency.update_clo_mapping(s, "c1", 0, {"soIds": [], "coverageLevel": ""})

    assert 0 not in outcome.state.course("c1").clo_map
    assert consistency.update_clo_mapping(s, "c1", 5, {"soIds": ["so1"]}).error.code == "INVALID_INPUT"


def test_so_level_cycles_back_to_absent(state):
    seen = []
    s = state
    for _ in range(4):
        s = consistency.cycle_so_level(s, "c1", "so1").state
        seen.append(consistency.so_level(s, "c1", "so1"))

    assert seen == ["I", "R", "M", ""]
    assert s.course_so_map == state.course_so_map == []


def test_set_so_level_none_removes_row(state):
    state.course_so_map = [CourseSoLink(course_id="c1", so_id="so1", level="R")]

    outcome = consistency.set_so_level(state, "c1", "so1", "NONE")

    assert outcome.state.course_so_map == []
    assert consistency.set_so_level(state, "c1", "so1", "X").error.code == "INVALID_INPUT"
    assert consistency.set_so_level(state, "c1", "so9", "I").error.code == "NOT_FOUND"


def test_toggles_add_then_remove(state):
    once = consistency.toggle_course_pi(state, "c1", "pi2").state
    assert [(r.course_id, r.pi_id) for r in once.course_pi_map] == [("c1", "pi2")]
    assert consistency.toggle_course_pi(once, "c1", "pi2").state.course_pi_map == []

    peo = consistency.toggle_course_peo(state, "c2", "peo1").state
    assert len(peo.course_peo_map) == 1

    peo_so = consistency.toggle_peo_so(state, "peo1", "so2").state
    assert [(r.peo_id, r.so_id) for r in peo_so.peo_so_map] == [("peo1", "so2")]

    constituent = consistency.toggle_peo_constituent(state, "peo1", "mc1").state
    assert len(constituent.peo_constituent_map) == 1
    assert consistency.toggle_peo_constituent(state, "peo1", "mc9").error.code == "NOT_FOUND"
    assert consistency.toggle_course_pi(state, "c1", "pi9").error.code == "NOT_FOUND"


def test_objective_links(state):
    created = store.create_entity(state, "objectives", {"category": "skills", "description": {"vi": "x", "en": "y"}})
    oid = created.created_id

    linked = consistency.toggle_course_objective(created.state, "c1", oid)
    assert linked.state.moet.course_objective_map == [f"c1|{oid}"]
    assert consistency.toggle_course_objective(linked.state, "c1", oid).state.moet.course_objective_map == []

    with_so = consistency.toggle_objective_so(created.state, oid, "so1").state
    assert store.get_entity(with_so, "objectives", oid).so_ids == ["so1"]
    with_peo = consistency.toggle_objective_peo(with_so, oid, "peo1").state
    assert store.get_entity(with_peo, "objectives", oid).peo_ids == ["peo1"]

    removed = store.delete_entity(linked.state, "objectives", oid)
    assert removed.moet.course_objective_map == []


def test_instructor_assignment_keeps_one_main(state):
    s = consistency.assign_instructor(state, "c1", "f1", "Class 21A").state
    s = consistency.assign_instructor(s, "c1", "f2").state
    details = s.course("c1").instructor_details
    assert details["f1"].is_main and not details["f2"].is_main
    assert details["f1"].class_info == "Class 21A"

    s = consistency.set_main_instructor(s, "c1", "f2").state
    assert [fid for fid, d in s.course("c1").instructor_details.items() if d.is_main] == ["f2"]

    s = consistency.unassign_instructor(s, "c1", "f2").state
    course = s.course("c1")
    assert course.instructor_ids == ["f1"]
    assert course.instructor_details["f1"].is_main

    assert consistency.set_main_instructor(s, "c1", "f2").error.code == "INVALID_INPUT"
    assert consistency.assign_instructor(s, "c1", "f9").error.code == "NOT_FOUND"


def test_set_instructor_class_info(state):
    s = consistency.assign_instructor(state, "c2", "f1").state

    s = consistency.set_instructor_class_info(s, "c2", "f1", "Room B2").state

    assert s.course("c2").instructor_details["f1"].class_info == "Room B2"


def test_normalize_state_drops_dangling_references(state):
    state.course_so_map = [
        CourseSoLink(course_id="c1", so_id="so1"),
        CourseSoLink(course_id="c1", so_id="so1", level="M"),
        CourseSoLink(course_id="ghost", so_id="so1"),
    ]
    state.moet.program_structure.spec = ["c3", "ghost"]
    state.moet.course_objective_map = ["c1|missing"]
    state.courses[0].prerequisites = ["ghost", "c1"]
    state.courses[0].instructor_ids = ["f9"]
    state.courses[1].clos.en = ["only one"]
    state.courses[1].clo_map = {0: CloMapping(so_ids=["so1", "so9"]), 3: CloMapping(so_ids=["so1"])}
    state.facilities = [Facility(id="fc1", code="LAB", course_ids=["c1", "ghost", "c1"])]

    new = consistency.normalize_state(state)

    assert [(r.course_id, r.level) for r in new.course_so_map] == [("c1", "I")]
    assert new.moet.program_structure.spec == ["c3"]
    # c3 keeps its first location, the root list
    assert new.moet.sub_blocks[0].course_ids == ["c4"]
    assert new.moet.course_objective_map == []
    assert new.course("c1").prerequisites == []
    assert new.course("c1").instructor_ids == []
    assert set(new.course("c2").clo_map) == {0}
    assert new.course("c2").clo_map[0].so_ids == ["so1"]
    assert new.facilities[0].course_ids == ["c1"]
    assert state.moet.program_structure.spec == ["c3", "ghost"]
