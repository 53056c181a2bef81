from __future__ import annotations

from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError
from pydantic.alias_generators import to_snake

from curriculum_studio.errors import (
    DuplicateIdError,
    InvalidInputError,
    NotFoundError,
    Outcome,
    failure,
    invalid,
    not_found,
    success,
)
from curriculum_studio.models import (
    LANGUAGES,
    PEO,
    PI,
    SO,
    AcademicFaculty,
    AcademicSchool,
    AssessmentItem,
    AssessmentMethod,
    Course,
    CourseTopic,
    Department,
    Facility,
    Faculty,
    FacultyTitles,
    KnowledgeArea,
    LibraryResource,
    MissionConstituent,
    MoetInfo,
    MoetObjective,
    ProgramState,
    TeachingMethod,
    Textbook,
    UserAccount,
    new_id,
)


DEFAULT_BRANCH_BY_AREA = {"gen_ed": "gen", "fund_eng": "fund", "math_sci": "fund"}

# name -> (model, id prefix, accessor returning the live list inside a state)
COLLECTIONS: dict[str, tuple[type[BaseModel], str, Callable[[ProgramState], list]]] = {
    "users": (UserAccount, "user", lambda s: s.users),
    "constituents": (MissionConstituent, "mc", lambda s: s.mission.constituents),
    "peos": (PEO, "peo", lambda s: s.peos),
    "sos": (SO, "so", lambda s: s.sos),
    "objectives": (MoetObjective, "obj", lambda s: s.moet.specific_objectives),
    "knowledge_areas": (KnowledgeArea, "ka", lambda s: s.knowledge_areas),
    "academic_schools": (AcademicSchool, "sch", lambda s: s.academic_schools),
    "academic_faculties": (AcademicFaculty, "af", lambda s: s.academic_faculties),
    "departments": (Department, "dept", lambda s: s.departments),
    "faculties": (Faculty, "fac", lambda s: s.faculties),
    "facilities": (Facility, "fcl", lambda s: s.facilities),
    "teaching_methods": (TeachingMethod, "tm", lambda s: s.teaching_methods),
    "assessment_methods": (AssessmentMethod, "am", lambda s: s.assessment_methods),
    "library": (LibraryResource, "lib", lambda s: s.library),
}

COURSE_ITEMS: dict[str, tuple[type[BaseModel], str]] = {
    "topics": (CourseTopic, "topic"),
    "assessment_plan": (AssessmentItem, "asm"),
}

LOCKED_COURSE_FIELDS = {"id", "type"}
STRUCTURAL_MOET_FIELDS = {"program_structure", "sub_blocks", "course_objective_map", "specific_objectives"}


def clone(state: ProgramState) -> ProgramState:
    return state.model_copy(deep=True)


def snake_keys(data: Optional[dict]) -> dict:
    return {to_snake(str(k)): v for k, v in (data or {}).items()}


def collection(name: str):
    try:
        return COLLECTIONS[name]
    except KeyError:
        raise KeyError(f"Unknown collection '{name}'") from None


def list_entities(state: ProgramState, name: str) -> list:
    _, _, items_of = collection(name)
    return list(items_of(state))


def get_entity(state: ProgramState, name: str, entity_id: str):
    _, _, items_of = collection(name)
    return next((item for item in items_of(state) if item.id == entity_id), None)


def _index_of(items: list, entity_id: str) -> Optional[int]:
    return next((i for i, item in enumerate(items) if item.id == entity_id), None)


def create_entity(state: ProgramState, name: str, data: Optional[dict] = None) -> Outcome:
    model, prefix, items_of = collection(name)
    fields = snake_keys(data)
    entity_id = str(fields.pop("id", "") or "").strip() or new_id(prefix)
    if any(item.id == entity_id for item in items_of(state)):
        return failure(
            state,
            DuplicateIdError(message=f"{model.__name__} '{entity_id}' already exists", entity=model.__name__, entity_id=entity_id),
        )
    if name == "sos":
        number = fields.get("number") or max([so.number for so in state.sos] or [0]) + 1
        fields["number"] = number
        fields.setdefault("code", f"SO-{number}")
    if name == "peos":
        fields.setdefault("code", f"PEO-{len(state.peos) + 1}")
    try:
        entity = model.model_validate({**fields, "id": entity_id})
    except ValidationError as exc:
        return invalid(state, str(exc), model.__name__, entity_id)
    new = clone(state)
    items_of(new).append(entity)
    return success(new, created_id=entity_id)


def update_entity(state: ProgramState, name: str, entity_id: str, changes: dict) -> Outcome:
    model, _, items_of = collection(name)
    fields = snake_keys(changes)
    fields.pop("id", None)
    if name == "sos":
        # PIs have their own lifecycle (add_pi / delete_pi)
        fields.pop("pis", None)
    new = clone(state)
    items = items_of(new)
    idx = _index_of(items, entity_id)
    if idx is None:
        return not_found(state, model.__name__, entity_id)
    try:
        items[idx] = model.model_validate({**items[idx].model_dump(), **fields})
    except ValidationError as exc:
        return invalid(state, str(exc), model.__name__, entity_id)
    return success(new)


def delete_entity(state: ProgramState, name: str, entity_id: str) -> ProgramState:
    """Remove one entity and the join rows that only exist because of it.

    Usage checks for closed classification sets live in the consistency layer;
    this function always deletes.
    """
    _, _, items_of = collection(name)
    removed = get_entity(state, name, entity_id)
    if removed is None:
        return state
    new = clone(state)
    items = items_of(new)
    items[:] = [item for item in items if item.id != entity_id]
    cascade = _CASCADES.get(name)
    if cascade:
        cascade(new, removed)
    return new


def _drop_from_clo_maps(state: ProgramState, field: str, ids: set[str]) -> None:
    for course in state.courses:
        for mapping in course.clo_map.values():
            setattr(mapping, field, [x for x in getattr(mapping, field) if x not in ids])


def _cascade_so(state: ProgramState, so: SO) -> None:
    pi_ids = {pi.id for pi in so.pis}
    state.course_so_map = [r for r in state.course_so_map if r.so_id != so.id]
    state.course_pi_map = [r for r in state.course_pi_map if r.pi_id not in pi_ids]
    state.peo_so_map = [r for r in state.peo_so_map if r.so_id != so.id]
    for objective in state.moet.specific_objectives:
        objective.so_ids = [x for x in objective.so_ids if x != so.id]
    _drop_from_clo_maps(state, "so_ids", {so.id})
    _drop_from_clo_maps(state, "pi_ids", pi_ids)


def _cascade_peo(state: ProgramState, peo: PEO) -> None:
    state.course_peo_map = [r for r in state.course_peo_map if r.peo_id != peo.id]
    state.peo_so_map = [r for r in state.peo_so_map if r.peo_id != peo.id]
    state.peo_constituent_map = [r for r in state.peo_constituent_map if r.peo_id != peo.id]
    for objective in state.moet.specific_objectives:
        objective.peo_ids = [x for x in objective.peo_ids if x != peo.id]


def _cascade_constituent(state: ProgramState, constituent: MissionConstituent) -> None:
    state.peo_constituent_map = [r for r in state.peo_constituent_map if r.constituent_id != constituent.id]


def _cascade_objective(state: ProgramState, objective: MoetObjective) -> None:
    moet = state.moet
    moet.course_objective_map = [k for k in moet.course_objective_map if k.split("|", 1)[-1] != objective.id]
    _drop_from_clo_maps(state, "objective_ids", {objective.id})


def _cascade_faculty(state: ProgramState, faculty: Faculty) -> None:
    for course in state.courses:
        course.instructor_ids = [x for x in course.instructor_ids if x != faculty.id]
        course.instructor_details.pop(faculty.id, None)
    for dept in state.departments:
        dept.head_ids = [x for x in dept.head_ids if x != faculty.id]


def _cascade_library(state: ProgramState, resource: LibraryResource) -> None:
    for course in state.courses:
        course.textbooks = [t for t in course.textbooks if t.resource_id != resource.id]
        for topic in course.topics:
            topic.reading_refs = [r for r in topic.reading_refs if r.resource_id != resource.id]


_CASCADES: dict[str, Callable[[ProgramState, Any], None]] = {
    "sos": _cascade_so,
    "peos": _cascade_peo,
    "constituents": _cascade_constituent,
    "objectives": _cascade_objective,
    "faculties": _cascade_faculty,
    "library": _cascade_library,
}


def branch_for_area(state: ProgramState, area_id: str) -> str:
    area = next((a for a in state.knowledge_areas if a.id == area_id), None)
    if area is not None and area.parent_block:
        return area.parent_block
    return DEFAULT_BRANCH_BY_AREA.get(area_id, "spec")


def strip_course_locations(moet: MoetInfo, course_id: str) -> None:
    """Remove a course id from every root list and sub-block of ``moet`` in place."""
    structure = moet.program_structure
    for parent in type(structure).model_fields:
        setattr(structure, parent, [x for x in getattr(structure, parent) if x != course_id])
    for block in moet.sub_blocks:
        block.course_ids = [x for x in block.course_ids if x != course_id]


def build_course(state: ProgramState, data: Optional[dict] = None) -> Course:
    """A new course from program defaults overlaid with ``data``; raises ValidationError."""
    info = state.general_info
    fields = snake_keys(data)
    fields.pop("id", None)
    base = {
        "id": new_id("crs"),
        "code": info.default_subject_code,
        "name": info.default_subject_name.model_dump(),
        "credits": info.default_credits,
    }
    course = Course.model_validate({**base, **fields})
    if course.is_essential:
        course.is_abet = True
    return course


def add_new_course(state: ProgramState, course: Course) -> None:
    """Append in place; required courses land at the root of their inferred branch."""
    state.courses.append(course)
    if course.type == "REQUIRED":
        branch = branch_for_area(state, course.knowledge_area_id)
        getattr(state.moet.program_structure, branch).append(course.id)


def create_course(state: ProgramState, data: Optional[dict] = None) -> Outcome:
    try:
        course = build_course(state, data)
    except ValidationError as exc:
        return invalid(state, str(exc), "Course")
    new = clone(state)
    add_new_course(new, course)
    return success(new, created_id=course.id)


def update_course_field(state: ProgramState, course_id: str, field: str, value: Any) -> ProgramState:
    key = to_snake(field)
    if key not in Course.model_fields:
        raise ValueError(f"Unknown course field '{field}'")
    if key in LOCKED_COURSE_FIELDS:
        raise ValueError(f"Course field '{field}' cannot be set directly")
    idx = _index_of(state.courses, course_id)
    if idx is None:
        return state
    changes = {key: value}
    if key == "is_essential" and value:
        changes["is_abet"] = True
    new = clone(state)
    new.courses[idx] = Course.model_validate({**new.courses[idx].model_dump(), **changes})
    return new


def update_course(state: ProgramState, course_id: str, changes: dict) -> Outcome:
    fields = snake_keys(changes)
    fields.pop("id", None)
    course = state.course(course_id)
    if course is None:
        return not_found(state, "Course", course_id)
    if "type" in fields:
        if fields["type"] != course.type:
            return invalid(state, "Course type changes go through the classification change", "Course", course_id)
        fields.pop("type")
    unknown = [k for k in fields if k not in Course.model_fields]
    if unknown:
        return invalid(state, f"Unknown course fields: {', '.join(sorted(unknown))}", "Course", course_id)
    if fields.get("is_essential"):
        fields["is_abet"] = True
    new = clone(state)
    idx = _index_of(new.courses, course_id)
    try:
        new.courses[idx] = Course.model_validate({**new.courses[idx].model_dump(), **fields})
    except ValidationError as exc:
        return invalid(state, str(exc), "Course", course_id)
    return success(new)


def delete_course(state: ProgramState, course_id: str) -> ProgramState:
    if state.course(course_id) is None:
        return state
    new = clone(state)
    new.courses = [c for c in new.courses if c.id != course_id]
    new.course_so_map = [r for r in new.course_so_map if r.course_id != course_id]
    new.course_pi_map = [r for r in new.course_pi_map if r.course_id != course_id]
    new.course_peo_map = [r for r in new.course_peo_map if r.course_id != course_id]
    strip_course_locations(new.moet, course_id)
    for facility in new.facilities:
        facility.course_ids = [x for x in facility.course_ids if x != course_id]
    new.moet.course_objective_map = [k for k in new.moet.course_objective_map if k.split("|", 1)[0] != course_id]
    for course in new.courses:
        course.prerequisites = [x for x in course.prerequisites if x != course_id]
        course.co_requisites = [x for x in course.co_requisites if x != course_id]
    return new


def _edit_course(state: ProgramState, course_id: str, apply, created_id: Optional[str] = None) -> Outcome:
    new = clone(state)
    course = new.course(course_id)
    if course is None:
        return not_found(state, "Course", course_id)
    error = apply(new, course)
    if error is not None:
        return failure(state, error)
    return success(new, created_id=created_id)


def add_course_item(state: ProgramState, course_id: str, kind: str, data: Optional[dict] = None) -> Outcome:
    model, prefix = COURSE_ITEMS[kind]
    item_id = new_id(prefix)

    def apply(_, course):
        items = getattr(course, kind)
        fields = snake_keys(data)
        fields["id"] = item_id
        if kind == "topics":
            fields.setdefault("no", str(len(items) + 1))
        try:
            items.append(model.model_validate(fields))
        except ValidationError as exc:
            return InvalidInputError(message=str(exc), entity=model.__name__)
        return None

    return _edit_course(state, course_id, apply, created_id=item_id)


def update_course_item(state: ProgramState, course_id: str, kind: str, item_id: str, changes: dict) -> Outcome:
    model, _ = COURSE_ITEMS[kind]

    def apply(_, course):
        items = getattr(course, kind)
        idx = _index_of(items, item_id)
        if idx is None:
            return NotFoundError(message=f"{model.__name__} not found", entity=model.__name__, entity_id=item_id)
        fields = snake_keys(changes)
        fields.pop("id", None)
        try:
            items[idx] = model.model_validate({**items[idx].model_dump(), **fields})
        except ValidationError as exc:
            return InvalidInputError(message=str(exc), entity=model.__name__, entity_id=item_id)
        return None

    return _edit_course(state, course_id, apply)


def delete_course_item(state: ProgramState, course_id: str, kind: str, item_id: str) -> Outcome:
    model, _ = COURSE_ITEMS[kind]

    def apply(_, course):
        items = getattr(course, kind)
        if _index_of(items, item_id) is None:
            return NotFoundError(message=f"{model.__name__} not found", entity=model.__name__, entity_id=item_id)
        setattr(course, kind, [item for item in items if item.id != item_id])
        if kind == "topics":
            for mapping in course.clo_map.values():
                mapping.topic_ids = [x for x in mapping.topic_ids if x != item_id]
        return None

    return _edit_course(state, course_id, apply)


def add_textbook(state: ProgramState, course_id: str, resource_id: str, kind: str = "textbook") -> Outcome:
    resource = next((r for r in state.library if r.id == resource_id), None)
    if resource is None:
        return not_found(state, "LibraryResource", resource_id)

    def apply(_, course):
        if any(t.resource_id == resource_id for t in course.textbooks):
            return DuplicateIdError(message="Resource already attached", entity="Textbook", entity_id=resource_id)
        course.textbooks.append(
            Textbook(
                resource_id=resource.id,
                title=resource.title,
                author=resource.author,
                publisher=resource.publisher,
                year=resource.year,
                type=kind,
                url=resource.url,
            )
        )
        return None

    return _edit_course(state, course_id, apply)


def remove_textbook(state: ProgramState, course_id: str, resource_id: str) -> Outcome:
    def apply(_, course):
        course.textbooks = [t for t in course.textbooks if t.resource_id != resource_id]
        return None

    return _edit_course(state, course_id, apply)


def add_pi(state: ProgramState, so_id: str, data: Optional[dict] = None) -> Outcome:
    so = get_entity(state, "sos", so_id)
    if so is None:
        return not_found(state, "SO", so_id)
    fields = snake_keys(data)
    pi_id = str(fields.pop("id", "") or "").strip() or new_id("pi")
    if any(pi.id == pi_id for s in state.sos for pi in s.pis):
        return failure(state, DuplicateIdError(message=f"PI '{pi_id}' already exists", entity="PI", entity_id=pi_id))
    fields.setdefault("code", f"{so.code or so.number}.{len(so.pis) + 1}")
    try:
        pi = PI.model_validate({**fields, "id": pi_id})
    except ValidationError as exc:
        return invalid(state, str(exc), "PI", pi_id)
    new = clone(state)
    get_entity(new, "sos", so_id).pis.append(pi)
    return success(new, created_id=pi_id)


def update_pi(state: ProgramState, so_id: str, pi_id: str, changes: dict) -> Outcome:
    new = clone(state)
    so = get_entity(new, "sos", so_id)
    if so is None:
        return not_found(state, "SO", so_id)
    idx = _index_of(so.pis, pi_id)
    if idx is None:
        return not_found(state, "PI", pi_id)
    fields = snake_keys(changes)
    fields.pop("id", None)
    try:
        so.pis[idx] = PI.model_validate({**so.pis[idx].model_dump(), **fields})
    except ValidationError as exc:
        return invalid(state, str(exc), "PI", pi_id)
    return success(new)


def delete_pi(state: ProgramState, so_id: str, pi_id: str) -> Outcome:
    new = clone(state)
    so = get_entity(new, "sos", so_id)
    if so is None:
        return not_found(state, "SO", so_id)
    if _index_of(so.pis, pi_id) is None:
        return not_found(state, "PI", pi_id)
    so.pis = [pi for pi in so.pis if pi.id != pi_id]
    new.course_pi_map = [r for r in new.course_pi_map if r.pi_id != pi_id]
    _drop_from_clo_maps(new, "pi_ids", {pi_id})
    return success(new)


def update_mission_text(state: ProgramState, language: str, text: str) -> ProgramState:
    new = clone(state)
    new.mission.text = new.mission.text.with_text(language, text)
    return new


def set_language(state: ProgramState, language: str) -> Outcome:
    if language not in LANGUAGES:
        return invalid(state, f"Unsupported language '{language}'")
    new = clone(state)
    new.language = language
    return success(new)


def update_general_info(state: ProgramState, changes: dict) -> Outcome:
    fields = snake_keys(changes)
    fields.pop("moet_info", None)
    new = clone(state)
    try:
        new.general_info = type(new.general_info).model_validate({**new.general_info.model_dump(), **fields})
    except ValidationError as exc:
        return invalid(state, str(exc), "GeneralInfo")
    return success(new)


def update_moet_info(state: ProgramState, changes: dict) -> Outcome:
    fields = {k: v for k, v in snake_keys(changes).items() if k not in STRUCTURAL_MOET_FIELDS}
    new = clone(state)
    try:
        new.general_info.moet_info = MoetInfo.model_validate({**new.moet.model_dump(), **fields})
    except ValidationError as exc:
        return invalid(state, str(exc), "MoetInfo")
    return success(new)


def set_faculty_titles(state: ProgramState, titles: dict) -> Outcome:
    new = clone(state)
    try:
        new.faculty_titles = FacultyTitles.model_validate(titles)
    except ValidationError as exc:
        return invalid(state, str(exc), "FacultyTitles")
    return success(new)
