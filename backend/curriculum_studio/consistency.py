from __future__ import annotations

from typing import Callable, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from curriculum_studio import store
from curriculum_studio.errors import (
    DuplicateIdError,
    Outcome,
    SelectionRequiredError,
    failure,
    in_use,
    invalid,
    not_found,
    success,
)
from curriculum_studio.models import (
    COURSE_TYPES,
    IRM_CYCLE,
    IRM_NONE,
    LANGUAGES,
    PARENT_BLOCK_IDS,
    CloMapping,
    CoursePeoLink,
    CoursePiLink,
    CourseSoLink,
    InstructorDetail,
    LocalizedText,
    MoetSubBlock,
    PeoConstituentLink,
    PeoSoLink,
    ProgramState,
    new_id,
)


ROOT = "root"
AUTO_ELECTIVE_NAME = LocalizedText(vi="Khối tự chọn", en="Elective Block")
NEW_BLOCK_NAMES = {
    "COMPULSORY": LocalizedText(vi="Nhóm bắt buộc mới", en="New Compulsory Group"),
    "ELECTIVE": LocalizedText(vi="Khối tự chọn mới", en="New Elective Block"),
}
NEW_BLOCK_MIN_CREDITS = {"COMPULSORY": 0, "ELECTIVE": 3}


# --- knowledge areas and guarded deletes -------------------------------------------------


def _courses_using_area(state: ProgramState, area_id: str) -> int:
    return sum(1 for c in state.courses if c.knowledge_area_id == area_id)


def _users_of_department(state: ProgramState, dept_id: str) -> int:
    return sum(1 for c in state.courses if c.department_id == dept_id) + sum(
        1 for f in state.faculties if f.department_id == dept_id
    )


def _courses_using_teaching_method(state: ProgramState, method_id: str) -> int:
    return sum(
        1
        for c in state.courses
        if any(a.method_id == method_id for t in c.topics for a in t.activities)
        or any(method_id in m.teaching_method_ids for m in c.clo_map.values())
    )


def _courses_using_assessment_method(state: ProgramState, method_id: str) -> int:
    return sum(
        1
        for c in state.courses
        if any(a.method_id == method_id for a in c.assessment_plan)
        or any(method_id in m.assessment_method_ids for m in c.clo_map.values())
    )


# name -> (label of the referencing entities, counter)
USAGE_RULES: dict[str, tuple[str, Callable[[ProgramState, str], int]]] = {
    "knowledge_areas": ("courses", _courses_using_area),
    "departments": ("courses or faculty members", _users_of_department),
    "academic_faculties": (
        "departments",
        lambda s, i: sum(1 for d in s.departments if d.academic_faculty_id == i),
    ),
    "academic_schools": (
        "academic faculties",
        lambda s, i: sum(1 for f in s.academic_faculties if f.school_id == i),
    ),
    "teaching_methods": ("courses", _courses_using_teaching_method),
    "assessment_methods": ("courses", _courses_using_assessment_method),
}


def usage_count(state: ProgramState, name: str, entity_id: str) -> int:
    rule = USAGE_RULES.get(name)
    if rule is None:
        return 0
    return rule[1](state, entity_id)


def delete_guarded(state: ProgramState, name: str, entity_id: str) -> Outcome:
    model, _, _ = store.collection(name)
    if store.get_entity(state, name, entity_id) is None:
        return not_found(state, model.__name__, entity_id)
    count = usage_count(state, name, entity_id)
    if count > 0:
        return in_use(state, model.__name__, entity_id, count, USAGE_RULES[name][0])
    return success(store.delete_entity(state, name, entity_id))


def delete_knowledge_area(state: ProgramState, area_id: str) -> Outcome:
    return delete_guarded(state, "knowledge_areas", area_id)


def rename_knowledge_area(state: ProgramState, old_id: str, new_area_id: str) -> Outcome:
    target = (new_area_id or "").strip()
    if not target:
        return invalid(state, "Knowledge area id must not be empty", "KnowledgeArea", old_id)
    if store.get_entity(state, "knowledge_areas", old_id) is None:
        return not_found(state, "KnowledgeArea", old_id)
    if target == old_id:
        return success(state)
    if store.get_entity(state, "knowledge_areas", target) is not None:
        return failure(
            state,
            DuplicateIdError(message=f"Knowledge area '{target}' already exists", entity="KnowledgeArea", entity_id=target),
        )
    new = store.clone(state)
    store.get_entity(new, "knowledge_areas", old_id).id = target
    for course in new.courses:
        if course.knowledge_area_id == old_id:
            course.knowledge_area_id = target
    return success(new)


# --- structural locations ----------------------------------------------------------------


class CourseLocation(BaseModel):
    parent_block_id: str
    # ROOT for the branch's own list, otherwise a sub-block id
    location: str = ROOT


class ClassificationPlan(BaseModel):
    action: Literal["AUTO_CREATE", "PROMPT_USER", "DIRECT_MOVE"]
    parent_block_id: str
    current_location: Optional[str] = None
    target_location: Optional[str] = None
    candidates: list[str] = Field(default_factory=list)


def course_location(state: ProgramState, course_id: str) -> Optional[CourseLocation]:
    structure = state.moet.program_structure
    for parent in PARENT_BLOCK_IDS:
        if course_id in getattr(structure, parent):
            return CourseLocation(parent_block_id=parent)
    for block in state.moet.sub_blocks:
        if course_id in block.course_ids:
            return CourseLocation(parent_block_id=block.parent_block_id, location=block.id)
    return None


def _sub_block(state: ProgramState, block_id: str) -> Optional[MoetSubBlock]:
    return next((b for b in state.moet.sub_blocks if b.id == block_id), None)


def _location_fits(state: ProgramState, location: str, requested_type: str) -> bool:
    if location == ROOT:
        return requested_type == "REQUIRED"
    block = _sub_block(state, location)
    if block is None:
        return False
    return (block.type == "COMPULSORY") == (requested_type == "REQUIRED")


def plan_classification_change(
    state: ProgramState, course_id: str, requested_type: str, target_location: Optional[str] = None
) -> ClassificationPlan:
    """Decide how a classification change moves the course.

    AUTO_CREATE when an elective type is requested and the branch has no
    elective block; PROMPT_USER when the caller must pick a target; DIRECT_MOVE
    when the target is known, either given or the course's current location
    already matches the requested type.
    """
    course = state.course(course_id)
    if course is None:
        raise KeyError(course_id)
    loc = course_location(state, course_id)
    parent = loc.parent_block_id if loc else store.branch_for_area(state, course.knowledge_area_id)
    current = loc.location if loc else None
    branch_blocks = [b for b in state.moet.sub_blocks if b.parent_block_id == parent]

    if requested_type == "REQUIRED":
        candidates = [ROOT] + [b.id for b in branch_blocks if b.type == "COMPULSORY" and b.id != current]
    else:
        electives = [b for b in branch_blocks if b.type != "COMPULSORY"]
        if not electives:
            return ClassificationPlan(action="AUTO_CREATE", parent_block_id=parent, current_location=current)
        candidates = [b.id for b in electives if b.id != current]

    plan = ClassificationPlan(action="PROMPT_USER", parent_block_id=parent, current_location=current, candidates=candidates)
    if target_location is not None:
        if target_location in candidates or (target_location == current and _location_fits(state, current, requested_type)):
            plan.action = "DIRECT_MOVE"
            plan.target_location = target_location
    elif current is not None and _location_fits(state, current, requested_type):
        plan.action = "DIRECT_MOVE"
        plan.target_location = current
    return plan


def _place(state: ProgramState, course_id: str, parent: str, location: str) -> None:
    store.strip_course_locations(state.moet, course_id)
    if location == ROOT:
        getattr(state.moet.program_structure, parent).append(course_id)
    else:
        _sub_block(state, location).course_ids.append(course_id)


def change_course_classification(
    state: ProgramState, course_id: str, requested_type: str, target_location: Optional[str] = None
) -> Outcome:
    if state.course(course_id) is None:
        return not_found(state, "Course", course_id)
    if requested_type not in COURSE_TYPES:
        return invalid(state, f"Unknown course type '{requested_type}'", "Course", course_id)
    plan = plan_classification_change(state, course_id, requested_type, target_location)
    if plan.action == "PROMPT_USER":
        if target_location is not None:
            return invalid(state, f"'{target_location}' is not a valid target for {requested_type}", "Course", course_id)
        return failure(
            state,
            SelectionRequiredError(
                message="Choose the block that should receive this course",
                entity="Course",
                entity_id=course_id,
                candidates=plan.candidates,
            ),
        )
    new = store.clone(state)
    created_id = None
    if plan.action == "AUTO_CREATE":
        created_id = new_id("sb-elec-auto")
        store.strip_course_locations(new.moet, course_id)
        new.moet.sub_blocks.append(
            MoetSubBlock(
                id=created_id,
                name=AUTO_ELECTIVE_NAME,
                parent_block_id=plan.parent_block_id,
                type="ELECTIVE",
                min_credits=NEW_BLOCK_MIN_CREDITS["ELECTIVE"],
                course_ids=[course_id],
            )
        )
    elif plan.target_location != plan.current_location:
        _place(new, course_id, plan.parent_block_id, plan.target_location)
    new.course(course_id).type = requested_type
    return success(new, created_id=created_id)


def add_course_to_root(state: ProgramState, parent_block_id: str, course_id: str) -> Outcome:
    if parent_block_id not in PARENT_BLOCK_IDS:
        return invalid(state, f"Unknown program block '{parent_block_id}'")
    if state.course(course_id) is None:
        return not_found(state, "Course", course_id)
    new = store.clone(state)
    _place(new, course_id, parent_block_id, ROOT)
    new.course(course_id).type = "REQUIRED"
    return success(new)


def add_course_to_sub_block(state: ProgramState, block_id: str, course_id: str) -> Outcome:
    block = _sub_block(state, block_id)
    if block is None:
        return not_found(state, "MoetSubBlock", block_id)
    if state.course(course_id) is None:
        return not_found(state, "Course", course_id)
    new = store.clone(state)
    _place(new, course_id, block.parent_block_id, block_id)
    new.course(course_id).type = "REQUIRED" if block.type == "COMPULSORY" else "ELECTIVE"
    return success(new)


def remove_course_from_structure(state: ProgramState, course_id: str) -> ProgramState:
    if course_location(state, course_id) is None:
        return state
    new = store.clone(state)
    store.strip_course_locations(new.moet, course_id)
    return new


def reorder_location(state: ProgramState, location: str, ordered_ids: list[str], parent_block_id: Optional[str] = None) -> Outcome:
    """Reorder the course ids of one root list or sub-block; the id set must not change."""
    new = store.clone(state)
    if location == ROOT:
        if parent_block_id not in PARENT_BLOCK_IDS:
            return invalid(state, f"Unknown program block '{parent_block_id}'")
        current = getattr(new.moet.program_structure, parent_block_id)
    else:
        block = _sub_block(new, location)
        if block is None:
            return not_found(state, "MoetSubBlock", location)
        current = block.course_ids
    if sorted(current) != sorted(ordered_ids):
        return invalid(state, "Reorder must list exactly the courses already in that location")
    current[:] = list(ordered_ids)
    return success(new)


# --- sub-blocks --------------------------------------------------------------------------


def add_sub_block(state: ProgramState, parent_block_id: str, block_type: str = "ELECTIVE") -> Outcome:
    if parent_block_id not in PARENT_BLOCK_IDS:
        return invalid(state, f"Unknown program block '{parent_block_id}'")
    if block_type not in NEW_BLOCK_NAMES:
        return invalid(state, f"Unknown block type '{block_type}'")
    block = MoetSubBlock(
        id=new_id("sb"),
        name=NEW_BLOCK_NAMES[block_type],
        parent_block_id=parent_block_id,
        type=block_type,
        min_credits=NEW_BLOCK_MIN_CREDITS[block_type],
    )
    new = store.clone(state)
    new.moet.sub_blocks.append(block)
    return success(new, created_id=block.id)


def update_sub_block(state: ProgramState, block_id: str, changes: dict) -> Outcome:
    fields = store.snake_keys(changes)
    for key in ("id", "course_ids", "parent_block_id"):
        fields.pop(key, None)
    new = store.clone(state)
    blocks = new.moet.sub_blocks
    idx = next((i for i, b in enumerate(blocks) if b.id == block_id), None)
    if idx is None:
        return not_found(state, "MoetSubBlock", block_id)
    try:
        updated = MoetSubBlock.model_validate({**blocks[idx].model_dump(), **fields})
    except ValidationError as exc:
        return invalid(state, str(exc), "MoetSubBlock", block_id)
    if updated.type != blocks[idx].type:
        member_type = "REQUIRED" if updated.type == "COMPULSORY" else "ELECTIVE"
        for cid in updated.course_ids:
            course = new.course(cid)
            if course is not None:
                course.type = member_type
    blocks[idx] = updated
    return success(new)


def delete_sub_block(state: ProgramState, block_id: str) -> Outcome:
    if _sub_block(state, block_id) is None:
        return not_found(state, "MoetSubBlock", block_id)
    new = store.clone(state)
    new.moet.sub_blocks = [b for b in new.moet.sub_blocks if b.id != block_id]
    return success(new)


def reorder_sub_blocks(state: ProgramState, ordered_ids: list[str]) -> Outcome:
    by_id = {b.id: b for b in state.moet.sub_blocks}
    if sorted(by_id) != sorted(ordered_ids):
        return invalid(state, "Reorder must list every sub-block exactly once")
    new = store.clone(state)
    by_id = {b.id: b for b in new.moet.sub_blocks}
    new.moet.sub_blocks = [by_id[i] for i in ordered_ids]
    return success(new)


# --- CLOs --------------------------------------------------------------------------------


def add_clo(state: ProgramState, course_id: str) -> Outcome:
    new = store.clone(state)
    course = new.course(course_id)
    if course is None:
        return not_found(state, "Course", course_id)
    course.clos.vi.append("")
    course.clos.en.append("")
    return success(new)


def update_clo(state: ProgramState, course_id: str, language: str, index: int, text: str) -> Outcome:
    if language not in LANGUAGES:
        return invalid(state, f"Unsupported language '{language}'")
    if index < 0:
        return invalid(state, "CLO index must not be negative")
    new = store.clone(state)
    course = new.course(course_id)
    if course is None:
        return not_found(state, "Course", course_id)
    items = getattr(course.clos, language)
    while len(items) <= index:
        items.append("")
    items[index] = text
    return success(new)


def delete_clo(state: ProgramState, course_id: str, index: int) -> Outcome:
    course = state.course(course_id)
    if course is None:
        return not_found(state, "Course", course_id)
    if index < 0 or index >= course.clos.max_length():
        return invalid(state, f"CLO index {index} out of range", "Course", course_id)
    new = store.clone(state)
    course = new.course(course_id)
    course.clos.vi = [text for i, text in enumerate(course.clos.vi) if i != index]
    course.clos.en = [text for i, text in enumerate(course.clos.en) if i != index]
    course.clo_map = {
        (i - 1 if i > index else i): mapping for i, mapping in course.clo_map.items() if i != index
    }
    return success(new)


def update_clo_mapping(state: ProgramState, course_id: str, index: int, changes: dict) -> Outcome:
    course = state.course(course_id)
    if course is None:
        return not_found(state, "Course", course_id)
    if index < 0 or index >= course.clos.max_length():
        return invalid(state, f"CLO index {index} out of range", "Course", course_id)
    fields = store.snake_keys(changes)
    fields.pop("clo_index", None)
    new = store.clone(state)
    course = new.course(course_id)
    current = course.clo_map.get(index) or CloMapping()
    try:
        mapping = CloMapping.model_validate({**current.model_dump(), **fields})
    except ValidationError as exc:
        return invalid(state, str(exc), "CloMapping")
    if mapping == CloMapping():
        course.clo_map.pop(index, None)
    else:
        course.clo_map[index] = mapping
    return success(new)


# --- mapping tables ----------------------------------------------------------------------


def _check_pair(state: ProgramState, course_id: str, other: str, other_id: str) -> Optional[Outcome]:
    if state.course(course_id) is None:
        return not_found(state, "Course", course_id)
    if store.get_entity(state, other, other_id) is None:
        model, _, _ = store.collection(other)
        return not_found(state, model.__name__, other_id)
    return None


def _all_pi_ids(state: ProgramState) -> set[str]:
    return {pi.id for so in state.sos for pi in so.pis}


def so_level(state: ProgramState, course_id: str, so_id: str) -> str:
    row = next((r for r in state.course_so_map if r.course_id == course_id and r.so_id == so_id), None)
    return row.level if row else IRM_NONE


def set_so_level(state: ProgramState, course_id: str, so_id: str, level: Optional[str]) -> Outcome:
    level = IRM_NONE if level in (None, "NONE") else level
    if level != IRM_NONE and level not in IRM_CYCLE:
        return invalid(state, f"Unknown coverage level '{level}'")
    error = _check_pair(state, course_id, "sos", so_id)
    if error:
        return error
    new = store.clone(state)
    rows = [r for r in new.course_so_map if not (r.course_id == course_id and r.so_id == so_id)]
    if level != IRM_NONE:
        rows.append(CourseSoLink(course_id=course_id, so_id=so_id, level=level))
    new.course_so_map = rows
    return success(new)


def cycle_so_level(state: ProgramState, course_id: str, so_id: str) -> Outcome:
    """Advance NONE -> I -> R -> M -> NONE; NONE removes the row."""
    current = so_level(state, course_id, so_id)
    if current == IRM_NONE:
        nxt = IRM_CYCLE[0]
    else:
        pos = IRM_CYCLE.index(current) + 1
        nxt = IRM_CYCLE[pos] if pos < len(IRM_CYCLE) else IRM_NONE
    return set_so_level(state, course_id, so_id, nxt)


def toggle_course_pi(state: ProgramState, course_id: str, pi_id: str) -> Outcome:
    if state.course(course_id) is None:
        return not_found(state, "Course", course_id)
    if pi_id not in _all_pi_ids(state):
        return not_found(state, "PI", pi_id)
    new = store.clone(state)
    rows = [r for r in new.course_pi_map if not (r.course_id == course_id and r.pi_id == pi_id)]
    if len(rows) == len(new.course_pi_map):
        rows.append(CoursePiLink(course_id=course_id, pi_id=pi_id))
    new.course_pi_map = rows
    return success(new)


def toggle_course_peo(state: ProgramState, course_id: str, peo_id: str) -> Outcome:
    error = _check_pair(state, course_id, "peos", peo_id)
    if error:
        return error
    new = store.clone(state)
    rows = [r for r in new.course_peo_map if not (r.course_id == course_id and r.peo_id == peo_id)]
    if len(rows) == len(new.course_peo_map):
        rows.append(CoursePeoLink(course_id=course_id, peo_id=peo_id))
    new.course_peo_map = rows
    return success(new)


def toggle_peo_so(state: ProgramState, peo_id: str, so_id: str) -> Outcome:
    if store.get_entity(state, "peos", peo_id) is None:
        return not_found(state, "PEO", peo_id)
    if store.get_entity(state, "sos", so_id) is None:
        return not_found(state, "SO", so_id)
    new = store.clone(state)
    rows = [r for r in new.peo_so_map if not (r.peo_id == peo_id and r.so_id == so_id)]
    if len(rows) == len(new.peo_so_map):
        rows.append(PeoSoLink(peo_id=peo_id, so_id=so_id))
    new.peo_so_map = rows
    return success(new)


def toggle_peo_constituent(state: ProgramState, peo_id: str, constituent_id: str) -> Outcome:
    if store.get_entity(state, "peos", peo_id) is None:
        return not_found(state, "PEO", peo_id)
    if store.get_entity(state, "constituents", constituent_id) is None:
        return not_found(state, "MissionConstituent", constituent_id)
    new = store.clone(state)
    rows = [r for r in new.peo_constituent_map if not (r.peo_id == peo_id and r.constituent_id == constituent_id)]
    if len(rows) == len(new.peo_constituent_map):
        rows.append(PeoConstituentLink(peo_id=peo_id, constituent_id=constituent_id))
    new.peo_constituent_map = rows
    return success(new)


def toggle_course_objective(state: ProgramState, course_id: str, objective_id: str) -> Outcome:
    error = _check_pair(state, course_id, "objectives", objective_id)
    if error:
        return error
    key = f"{course_id}|{objective_id}"
    new = store.clone(state)
    moet = new.moet
    if key in moet.course_objective_map:
        moet.course_objective_map = [k for k in moet.course_objective_map if k != key]
    else:
        moet.course_objective_map.append(key)
    return success(new)


def _toggle_objective_link(state: ProgramState, objective_id: str, field: str, other: str, other_id: str) -> Outcome:
    if store.get_entity(state, "objectives", objective_id) is None:
        return not_found(state, "MoetObjective", objective_id)
    if store.get_entity(state, other, other_id) is None:
        model, _, _ = store.collection(other)
        return not_found(state, model.__name__, other_id)
    new = store.clone(state)
    objective = store.get_entity(new, "objectives", objective_id)
    ids = getattr(objective, field)
    setattr(objective, field, [x for x in ids if x != other_id] if other_id in ids else ids + [other_id])
    return success(new)


def toggle_objective_so(state: ProgramState, objective_id: str, so_id: str) -> Outcome:
    return _toggle_objective_link(state, objective_id, "so_ids", "sos", so_id)


def toggle_objective_peo(state: ProgramState, objective_id: str, peo_id: str) -> Outcome:
    return _toggle_objective_link(state, objective_id, "peo_ids", "peos", peo_id)


# --- instructors -------------------------------------------------------------------------


def assign_instructor(state: ProgramState, course_id: str, faculty_id: str, class_info: str = "") -> Outcome:
    error = _check_pair(state, course_id, "faculties", faculty_id)
    if error:
        return error
    new = store.clone(state)
    course = new.course(course_id)
    if faculty_id not in course.instructor_ids:
        course.instructor_ids.append(faculty_id)
    detail = course.instructor_details.get(faculty_id) or InstructorDetail()
    detail.class_info = class_info or detail.class_info
    if not any(d.is_main for d in course.instructor_details.values()):
        detail.is_main = True
    course.instructor_details[faculty_id] = detail
    return success(new)


def unassign_instructor(state: ProgramState, course_id: str, faculty_id: str) -> Outcome:
    if state.course(course_id) is None:
        return not_found(state, "Course", course_id)
    new = store.clone(state)
    course = new.course(course_id)
    course.instructor_ids = [x for x in course.instructor_ids if x != faculty_id]
    removed = course.instructor_details.pop(faculty_id, None)
    if removed is not None and removed.is_main and course.instructor_ids:
        first = course.instructor_ids[0]
        course.instructor_details.setdefault(first, InstructorDetail()).is_main = True
    return success(new)


def set_main_instructor(state: ProgramState, course_id: str, faculty_id: str) -> Outcome:
    course = state.course(course_id)
    if course is None:
        return not_found(state, "Course", course_id)
    if faculty_id not in course.instructor_ids:
        return invalid(state, "Faculty member is not assigned to this course", "Course", course_id)
    new = store.clone(state)
    course = new.course(course_id)
    for fid in course.instructor_ids:
        course.instructor_details.setdefault(fid, InstructorDetail()).is_main = fid == faculty_id
    return success(new)


def set_instructor_class_info(state: ProgramState, course_id: str, faculty_id: str, class_info: str) -> Outcome:
    course = state.course(course_id)
    if course is None:
        return not_found(state, "Course", course_id)
    if faculty_id not in course.instructor_ids:
        return invalid(state, "Faculty member is not assigned to this course", "Course", course_id)
    new = store.clone(state)
    new.course(course_id).instructor_details.setdefault(faculty_id, InstructorDetail()).class_info = class_info
    return success(new)


# --- whole-tree cleanup ------------------------------------------------------------------


def _dedupe(rows: list, key) -> list:
    seen = set()
    out = []
    for row in rows:
        k = key(row)
        if k in seen:
            continue
        seen.add(k)
        out.append(row)
    return out


def normalize_state(state: ProgramState) -> ProgramState:
    """Drop every reference that points at an entity which no longer exists.

    Duplicate join rows collapse to their first occurrence and a course placed
    in several structural locations keeps only the first one (roots in branch
    order, then sub-blocks in display order).
    """
    new = store.clone(state)
    course_ids = {c.id for c in new.courses}
    so_ids = {so.id for so in new.sos}
    pi_ids = _all_pi_ids(new)
    peo_ids = {p.id for p in new.peos}
    constituent_ids = {c.id for c in new.mission.constituents}
    faculty_ids = {f.id for f in new.faculties}
    moet = new.moet
    objective_ids = {o.id for o in moet.specific_objectives}
    topic_method_ids = {m.id for m in new.teaching_methods}
    assessment_ids = {m.id for m in new.assessment_methods}

    new.course_so_map = _dedupe(
        [r for r in new.course_so_map if r.course_id in course_ids and r.so_id in so_ids],
        lambda r: (r.course_id, r.so_id),
    )
    new.course_pi_map = _dedupe(
        [r for r in new.course_pi_map if r.course_id in course_ids and r.pi_id in pi_ids],
        lambda r: (r.course_id, r.pi_id),
    )
    new.course_peo_map = _dedupe(
        [r for r in new.course_peo_map if r.course_id in course_ids and r.peo_id in peo_ids],
        lambda r: (r.course_id, r.peo_id),
    )
    new.peo_so_map = _dedupe(
        [r for r in new.peo_so_map if r.peo_id in peo_ids and r.so_id in so_ids],
        lambda r: (r.peo_id, r.so_id),
    )
    new.peo_constituent_map = _dedupe(
        [r for r in new.peo_constituent_map if r.peo_id in peo_ids and r.constituent_id in constituent_ids],
        lambda r: (r.peo_id, r.constituent_id),
    )

    placed: set[str] = set()
    for parent in PARENT_BLOCK_IDS:
        kept = []
        for cid in getattr(moet.program_structure, parent):
            if cid in course_ids and cid not in placed:
                kept.append(cid)
                placed.add(cid)
        setattr(moet.program_structure, parent, kept)
    for block in moet.sub_blocks:
        kept = []
        for cid in block.course_ids:
            if cid in course_ids and cid not in placed:
                kept.append(cid)
                placed.add(cid)
        block.course_ids = kept

    links = []
    for key in moet.course_objective_map:
        cid, _, oid = key.partition("|")
        if cid in course_ids and oid in objective_ids and key not in links:
            links.append(key)
    moet.course_objective_map = links
    for objective in moet.specific_objectives:
        objective.so_ids = [x for x in dict.fromkeys(objective.so_ids) if x in so_ids]
        objective.peo_ids = [x for x in dict.fromkeys(objective.peo_ids) if x in peo_ids]

    for dept in new.departments:
        dept.head_ids = [x for x in dept.head_ids if x in faculty_ids]
    for facility in new.facilities:
        facility.course_ids = [x for x in dict.fromkeys(facility.course_ids) if x in course_ids]
    for course in new.courses:
        course.instructor_ids = [x for x in dict.fromkeys(course.instructor_ids) if x in faculty_ids]
        course.instructor_details = {k: v for k, v in course.instructor_details.items() if k in course.instructor_ids}
        course.prerequisites = [x for x in course.prerequisites if x in course_ids and x != course.id]
        course.co_requisites = [x for x in course.co_requisites if x in course_ids and x != course.id]
        topic_ids = {t.id for t in course.topics}
        size = course.clos.max_length()
        clo_map = {}
        for idx, mapping in sorted(course.clo_map.items()):
            if idx < 0 or idx >= size:
                continue
            mapping.topic_ids = [x for x in mapping.topic_ids if x in topic_ids]
            mapping.teaching_method_ids = [x for x in mapping.teaching_method_ids if x in topic_method_ids]
            mapping.assessment_method_ids = [x for x in mapping.assessment_method_ids if x in assessment_ids]
            mapping.so_ids = [x for x in mapping.so_ids if x in so_ids]
            mapping.pi_ids = [x for x in mapping.pi_ids if x in pi_ids]
            mapping.objective_ids = [x for x in mapping.objective_ids if x in objective_ids]
            clo_map[idx] = mapping
        course.clo_map = clo_map
    return new
