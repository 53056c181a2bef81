from __future__ import annotations

import json
import logging
import threading
from datetime import date
from typing import Any, Callable, Optional

from fastapi import Body, Depends, FastAPI, File, HTTPException, Query, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from curriculum_studio import catalog_csv, config, consistency, store, views
from curriculum_studio.ai_client import (
    AIClient,
    AIServiceError,
    merge_course_translation,
    merge_imported_syllabus,
    translate_course,
)
from curriculum_studio.db import (
    ProgramSnapshot,
    audit_rows,
    get_db,
    init_db,
    list_snapshots,
    load_state,
    save_snapshot,
    save_state,
    snapshot_state,
    write_audit,
)
from curriculum_studio.errors import (
    DuplicateIdError,
    EntityInUseError,
    NotFoundError,
    Outcome,
    SelectionRequiredError,
)
from curriculum_studio.export import project_syllabus, render_docx
from curriculum_studio.models import Course, Language, ProgramState, SubBlockType, default_state
from curriculum_studio.session import ProgramWorkspace, RequestTracker


logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

DOCX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
CSV_MEDIA_TYPE = "text/csv; charset=utf-8"

# url segment -> store collection
COLLECTION_ROUTES = {
    "users": "users",
    "mission/constituents": "constituents",
    "peos": "peos",
    "sos": "sos",
    "objectives": "objectives",
    "knowledge-areas": "knowledge_areas",
    "academic-schools": "academic_schools",
    "academic-faculties": "academic_faculties",
    "departments": "departments",
    "faculty": "faculties",
    "facilities": "facilities",
    "teaching-methods": "teaching_methods",
    "assessment-methods": "assessment_methods",
    "library": "library",
}

app = FastAPI(title="Curriculum Studio")
app.add_middleware(CORSMiddleware, allow_origins=config.CORS_ORIGINS, allow_credentials=True, allow_methods=["*"], allow_headers=["*"])
tracker = RequestTracker()
# load-modify-save of the stored tree, one request at a time per process
state_lock = threading.Lock()


class ClassificationIn(BaseModel):
    type: str
    target_location: Optional[str] = None


class RenameIn(BaseModel):
    new_id: str


class CloTextIn(BaseModel):
    language: Language
    text: str = ""


class TextbookIn(BaseModel):
    resource_id: str
    type: str = "textbook"


class InstructorIn(BaseModel):
    faculty_id: str
    class_info: str = ""


class ClassInfoIn(BaseModel):
    class_info: str = ""


class CourseRefIn(BaseModel):
    course_id: str


class ReorderIn(BaseModel):
    location: str = consistency.ROOT
    ordered_ids: list[str]
    parent_block_id: Optional[str] = None


class SubBlockIn(BaseModel):
    parent_block_id: str
    type: SubBlockType = "ELECTIVE"


class SoLevelIn(BaseModel):
    course_id: str
    so_id: str
    level: Optional[str] = None


class CoursePiIn(BaseModel):
    course_id: str
    pi_id: str


class CoursePeoIn(BaseModel):
    course_id: str
    peo_id: str


class PeoSoIn(BaseModel):
    peo_id: str
    so_id: str


class PeoConstituentIn(BaseModel):
    peo_id: str
    constituent_id: str


class CourseObjectiveIn(BaseModel):
    course_id: str
    objective_id: str


class ObjectiveSoIn(BaseModel):
    objective_id: str
    so_id: str


class ObjectivePeoIn(BaseModel):
    objective_id: str
    peo_id: str


class MissionTextIn(BaseModel):
    language: Language
    text: str = ""


class LanguageIn(BaseModel):
    language: Language


class TranslateTextIn(BaseModel):
    text: str
    target_language: Language


class TranslateCourseIn(BaseModel):
    target_language: Language


class PdfImportIn(BaseModel):
    pdf_base64: str


def get_ai_client() -> AIClient:
    return AIClient()


def dump(entity) -> dict:
    return entity.model_dump(mode="json", by_alias=True)


def raise_for(outcome: Outcome) -> None:
    error = outcome.error
    if error is None:
        return
    detail = error.model_dump(mode="json", exclude_none=True)
    if isinstance(error, NotFoundError):
        raise HTTPException(status_code=404, detail=detail)
    if isinstance(error, (DuplicateIdError, EntityInUseError, SelectionRequiredError)):
        raise HTTPException(status_code=409, detail=detail)
    raise HTTPException(status_code=400, detail=detail)


def run(db: Session, action: str, entity: str, entity_id: str, operation: Callable, *args, payload: Any = None) -> Outcome:
    """Apply one operation to the stored tree and persist it, or raise the mapped HTTP error."""
    with state_lock:
        workspace = ProgramWorkspace(load_state(db), tracker)
        outcome = workspace.apply(operation, *args)
        raise_for(outcome)
        save_state(db, workspace.state)
    write_audit(db, action, entity, outcome.created_id or entity_id, json.dumps(payload, ensure_ascii=False, default=str) if payload is not None else None)
    return outcome


def require_course(state: ProgramState, course_id: str) -> Course:
    course = state.course(course_id)
    if not course:
        raise HTTPException(status_code=404, detail="Course not found")
    return course


def course_filter(
    area_id: Optional[str] = None,
    essential_only: bool = False,
    abet_only: bool = False,
    search: str = "",
    language: Optional[Language] = None,
) -> dict:
    return {"area_id": area_id, "essential_only": essential_only, "abet_only": abet_only, "search": search, "language": language}


@app.on_event("startup")
def startup():
    init_db()


@app.get("/health")
def health():
    return {"status": "ok"}


# --- whole tree ---------------------------------------------------------------------------


@app.get("/state")
def get_state(db: Session = Depends(get_db)):
    return dump(load_state(db))


@app.get("/state/export")
def export_state(db: Session = Depends(get_db)):
    body = json.dumps(dump(load_state(db)), ensure_ascii=False, indent=2)
    headers = {"Content-Disposition": f'attachment; filename="program-state-{date.today().isoformat()}.json"'}
    return Response(content=body, media_type="application/json", headers=headers)


@app.post("/state/import")
def import_state(payload: dict = Body(...), db: Session = Depends(get_db)):
    try:
        state = ProgramState.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Program state is invalid: {exc.error_count()} error(s)") from exc
    save_state(db, state)
    write_audit(db, "STATE_IMPORT", "ProgramState", "current", json.dumps({"courses": len(state.courses)}))
    return {"status": "ok", "courses": len(state.courses)}


@app.post("/state/reset")
def reset_state(db: Session = Depends(get_db)):
    save_state(db, default_state())
    write_audit(db, "STATE_RESET", "ProgramState", "current")
    return {"status": "ok"}


@app.post("/state/normalize")
def normalize_state(db: Session = Depends(get_db)):
    before = load_state(db)
    issues = len(views.integrity_issues(before))
    run(db, "STATE_NORMALIZE", "ProgramState", "current", consistency.normalize_state, payload={"issues": issues})
    return {"status": "ok", "issues_before": issues}


@app.put("/state/language")
def set_language(payload: LanguageIn, db: Session = Depends(get_db)):
    run(db, "UPDATE", "Language", payload.language, store.set_language, payload.language)
    return {"language": payload.language}


@app.put("/state/general-info")
def update_general_info(payload: dict = Body(...), db: Session = Depends(get_db)):
    outcome = run(db, "UPDATE", "GeneralInfo", "general", store.update_general_info, payload, payload=payload)
    return dump(outcome.state.general_info)


@app.put("/state/moet-info")
def update_moet_info(payload: dict = Body(...), db: Session = Depends(get_db)):
    outcome = run(db, "UPDATE", "MoetInfo", "moet", store.update_moet_info, payload, payload=payload)
    return dump(outcome.state.moet)


@app.put("/state/faculty-titles")
def update_faculty_titles(payload: dict = Body(...), db: Session = Depends(get_db)):
    outcome = run(db, "UPDATE", "FacultyTitles", "titles", store.set_faculty_titles, payload, payload=payload)
    return dump(outcome.state.faculty_titles)


@app.get("/state/snapshots")
def get_snapshots(db: Session = Depends(get_db)):
    return [
        {"id": r.id, "name": r.name, "state_version": r.state_version, "created_at": r.created_at.isoformat()}
        for r in list_snapshots(db)
    ]


@app.post("/state/snapshots")
def create_snapshot(name: str = Query(..., min_length=1, max_length=120), db: Session = Depends(get_db)):
    row = save_snapshot(db, load_state(db), name)
    write_audit(db, "SNAPSHOT_SAVE", "ProgramSnapshot", row.id, json.dumps({"name": row.name}))
    return {"id": row.id, "name": row.name, "created_at": row.created_at.isoformat()}


@app.post("/state/snapshots/{snapshot_id}/restore")
def restore_snapshot(snapshot_id: str, db: Session = Depends(get_db)):
    row = db.get(ProgramSnapshot, snapshot_id)
    if not row or row.name is None:
        raise HTTPException(status_code=404, detail="Snapshot not found")
    try:
        state = snapshot_state(row)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="Snapshot payload is invalid") from exc
    save_state(db, state)
    write_audit(db, "SNAPSHOT_LOAD", "ProgramSnapshot", row.id)
    return {"status": "ok", "snapshot_id": row.id}


@app.get("/state/audit")
def get_audit(limit: int = Query(100, ge=1, le=1000), db: Session = Depends(get_db)):
    return [
        {
            "action": r.action,
            "entity_type": r.entity_type,
            "entity_id": r.entity_id,
            "payload": r.payload,
            "created_at": r.created_at.isoformat(),
        }
        for r in audit_rows(db, limit)
    ]


# --- courses ------------------------------------------------------------------------------


@app.get("/courses")
def list_courses(filters: dict = Depends(course_filter), db: Session = Depends(get_db)):
    return [dump(c) for c in views.filter_courses(load_state(db), **filters)]


@app.post("/courses")
def create_course(payload: Optional[dict] = Body(None), db: Session = Depends(get_db)):
    outcome = run(db, "CREATE", "Course", "", store.create_course, payload, payload=payload)
    return dump(outcome.state.course(outcome.created_id))


@app.get("/courses/{course_id}")
def get_course(course_id: str, db: Session = Depends(get_db)):
    state = load_state(db)
    course = require_course(state, course_id)
    location = consistency.course_location(state, course_id)
    return {
        "course": dump(course),
        "location": dump(location) if location else None,
        "prerequisite_codes": views.course_codes(state, course.prerequisites),
        "co_requisite_codes": views.course_codes(state, course.co_requisites),
        "main_instructor_id": views.main_instructor(course),
        "credit_breakdown": views.credit_breakdown(course, state.teaching_methods),
    }


@app.put("/courses/{course_id}")
def update_course(course_id: str, payload: dict = Body(...), db: Session = Depends(get_db)):
    outcome = run(db, "UPDATE", "Course", course_id, store.update_course, course_id, payload, payload=payload)
    return dump(outcome.state.course(course_id))


@app.delete("/courses/{course_id}")
def delete_course(course_id: str, db: Session = Depends(get_db)):
    require_course(load_state(db), course_id)
    run(db, "DELETE", "Course", course_id, store.delete_course, course_id)
    return {"status": "deleted"}


@app.get("/courses/{course_id}/classification")
def preview_classification(course_id: str, type: str, target_location: Optional[str] = None, db: Session = Depends(get_db)):
    state = load_state(db)
    require_course(state, course_id)
    return dump(consistency.plan_classification_change(state, course_id, type, target_location))


@app.post("/courses/{course_id}/classification")
def change_classification(course_id: str, payload: ClassificationIn, db: Session = Depends(get_db)):
    outcome = run(
        db,
        "CLASSIFY",
        "Course",
        course_id,
        consistency.change_course_classification,
        course_id,
        payload.type,
        payload.target_location,
        payload=payload.model_dump(),
    )
    location = consistency.course_location(outcome.state, course_id)
    return {
        "course": dump(outcome.state.course(course_id)),
        "location": dump(location) if location else None,
        "created_sub_block_id": outcome.created_id,
    }


@app.post("/courses/{course_id}/clos")
def add_clo(course_id: str, db: Session = Depends(get_db)):
    outcome = run(db, "CREATE", "CLO", course_id, consistency.add_clo, course_id)
    return dump(outcome.state.course(course_id).clos)


@app.put("/courses/{course_id}/clos/{index}")
def update_clo(course_id: str, index: int, payload: CloTextIn, db: Session = Depends(get_db)):
    outcome = run(
        db, "UPDATE", "CLO", f"{course_id}#{index}", consistency.update_clo, course_id, payload.language, index, payload.text
    )
    return dump(outcome.state.course(course_id).clos)


@app.delete("/courses/{course_id}/clos/{index}")
def delete_clo(course_id: str, index: int, db: Session = Depends(get_db)):
    outcome = run(db, "DELETE", "CLO", f"{course_id}#{index}", consistency.delete_clo, course_id, index)
    course = outcome.state.course(course_id)
    return {"clos": dump(course.clos), "clo_map": {str(k): dump(v) for k, v in course.clo_map.items()}}


@app.put("/courses/{course_id}/clo-map/{index}")
def update_clo_mapping(course_id: str, index: int, payload: dict = Body(...), db: Session = Depends(get_db)):
    outcome = run(
        db, "UPDATE", "CloMapping", f"{course_id}#{index}", consistency.update_clo_mapping, course_id, index, payload, payload=payload
    )
    mapping = outcome.state.course(course_id).clo_map.get(index)
    return dump(mapping) if mapping else {}


def _course_items_path(kind: str) -> str:
    return "topics" if kind == "topics" else "assessment-plan"


for _kind in store.COURSE_ITEMS:

    def _routes(kind: str):
        path = _course_items_path(kind)

        def add_item(course_id: str, payload: Optional[dict] = Body(None), db: Session = Depends(get_db)):
            outcome = run(db, "CREATE", kind, course_id, store.add_course_item, course_id, kind, payload, payload=payload)
            items = getattr(outcome.state.course(course_id), kind)
            return dump(next(i for i in items if i.id == outcome.created_id))

        def update_item(course_id: str, item_id: str, payload: dict = Body(...), db: Session = Depends(get_db)):
            outcome = run(db, "UPDATE", kind, item_id, store.update_course_item, course_id, kind, item_id, payload, payload=payload)
            items = getattr(outcome.state.course(course_id), kind)
            return dump(next(i for i in items if i.id == item_id))

        def delete_item(course_id: str, item_id: str, db: Session = Depends(get_db)):
            run(db, "DELETE", kind, item_id, store.delete_course_item, course_id, kind, item_id)
            return {"status": "deleted"}

        app.add_api_route(f"/courses/{{course_id}}/{path}", add_item, methods=["POST"], name=f"add_{kind}")
        app.add_api_route(f"/courses/{{course_id}}/{path}/{{item_id}}", update_item, methods=["PUT"], name=f"update_{kind}")
        app.add_api_route(f"/courses/{{course_id}}/{path}/{{item_id}}", delete_item, methods=["DELETE"], name=f"delete_{kind}")

    _routes(_kind)


@app.post("/courses/{course_id}/textbooks")
def add_textbook(course_id: str, payload: TextbookIn, db: Session = Depends(get_db)):
    outcome = run(db, "CREATE", "Textbook", course_id, store.add_textbook, course_id, payload.resource_id, payload.type)
    return [dump(t) for t in outcome.state.course(course_id).textbooks]


@app.delete("/courses/{course_id}/textbooks/{resource_id}")
def remove_textbook(course_id: str, resource_id: str, db: Session = Depends(get_db)):
    outcome = run(db, "DELETE", "Textbook", resource_id, store.remove_textbook, course_id, resource_id)
    return [dump(t) for t in outcome.state.course(course_id).textbooks]


def _instructors(state: ProgramState, course_id: str) -> dict:
    course = state.course(course_id)
    return {
        "instructor_ids": course.instructor_ids,
        "instructor_details": {k: dump(v) for k, v in course.instructor_details.items()},
        "main_instructor_id": views.main_instructor(course),
    }


@app.post("/courses/{course_id}/instructors")
def assign_instructor(course_id: str, payload: InstructorIn, db: Session = Depends(get_db)):
    outcome = run(
        db, "ASSIGN", "Instructor", payload.faculty_id, consistency.assign_instructor, course_id, payload.faculty_id, payload.class_info
    )
    return _instructors(outcome.state, course_id)


@app.put("/courses/{course_id}/instructors/{faculty_id}")
def set_class_info(course_id: str, faculty_id: str, payload: ClassInfoIn, db: Session = Depends(get_db)):
    outcome = run(
        db, "UPDATE", "Instructor", faculty_id, consistency.set_instructor_class_info, course_id, faculty_id, payload.class_info
    )
    return _instructors(outcome.state, course_id)


@app.post("/courses/{course_id}/instructors/{faculty_id}/main")
def set_main_instructor(course_id: str, faculty_id: str, db: Session = Depends(get_db)):
    outcome = run(db, "UPDATE", "Instructor", faculty_id, consistency.set_main_instructor, course_id, faculty_id)
    return _instructors(outcome.state, course_id)


@app.delete("/courses/{course_id}/instructors/{faculty_id}")
def unassign_instructor(course_id: str, faculty_id: str, db: Session = Depends(get_db)):
    outcome = run(db, "UNASSIGN", "Instructor", faculty_id, consistency.unassign_instructor, course_id, faculty_id)
    return _instructors(outcome.state, course_id)


# --- collections --------------------------------------------------------------------------


@app.post("/knowledge-areas/{area_id}/rename")
def rename_knowledge_area(area_id: str, payload: RenameIn, db: Session = Depends(get_db)):
    outcome = run(db, "RENAME", "KnowledgeArea", area_id, consistency.rename_knowledge_area, area_id, payload.new_id, payload=payload.model_dump())
    return dump(store.get_entity(outcome.state, "knowledge_areas", payload.new_id.strip()))


@app.get("/sos/{so_id}/pis")
def list_pis(so_id: str, db: Session = Depends(get_db)):
    so = store.get_entity(load_state(db), "sos", so_id)
    if not so:
        raise HTTPException(status_code=404, detail="SO not found")
    return [dump(pi) for pi in so.pis]


@app.post("/sos/{so_id}/pis")
def add_pi(so_id: str, payload: Optional[dict] = Body(None), db: Session = Depends(get_db)):
    outcome = run(db, "CREATE", "PI", so_id, store.add_pi, so_id, payload, payload=payload)
    so = store.get_entity(outcome.state, "sos", so_id)
    return dump(next(pi for pi in so.pis if pi.id == outcome.created_id))


@app.put("/sos/{so_id}/pis/{pi_id}")
def update_pi(so_id: str, pi_id: str, payload: dict = Body(...), db: Session = Depends(get_db)):
    outcome = run(db, "UPDATE", "PI", pi_id, store.update_pi, so_id, pi_id, payload, payload=payload)
    so = store.get_entity(outcome.state, "sos", so_id)
    return dump(next(pi for pi in so.pis if pi.id == pi_id))


@app.delete("/sos/{so_id}/pis/{pi_id}")
def delete_pi(so_id: str, pi_id: str, db: Session = Depends(get_db)):
    run(db, "DELETE", "PI", pi_id, store.delete_pi, so_id, pi_id)
    return {"status": "deleted"}


@app.get("/mission")
def get_mission(db: Session = Depends(get_db)):
    return dump(load_state(db).mission)


@app.put("/mission/text")
def update_mission_text(payload: MissionTextIn, db: Session = Depends(get_db)):
    outcome = run(db, "UPDATE", "Mission", "mission", store.update_mission_text, payload.language, payload.text)
    return dump(outcome.state.mission)


def _register_collection(path: str, name: str) -> None:
    entity = store.collection(name)[0].__name__

    def list_items(db: Session = Depends(get_db)):
        return [dump(e) for e in store.list_entities(load_state(db), name)]

    def create_item(payload: Optional[dict] = Body(None), db: Session = Depends(get_db)):
        outcome = run(db, "CREATE", entity, "", store.create_entity, name, payload, payload=payload)
        return dump(store.get_entity(outcome.state, name, outcome.created_id))

    def get_item(entity_id: str, db: Session = Depends(get_db)):
        item = store.get_entity(load_state(db), name, entity_id)
        if not item:
            raise HTTPException(status_code=404, detail=f"{entity} not found")
        return dump(item)

    def update_item(entity_id: str, payload: dict = Body(...), db: Session = Depends(get_db)):
        outcome = run(db, "UPDATE", entity, entity_id, store.update_entity, name, entity_id, payload, payload=payload)
        return dump(store.get_entity(outcome.state, name, entity_id))

    def delete_item(entity_id: str, db: Session = Depends(get_db)):
        run(db, "DELETE", entity, entity_id, consistency.delete_guarded, name, entity_id)
        return {"status": "deleted"}

    def usage(entity_id: str, db: Session = Depends(get_db)):
        return {"count": consistency.usage_count(load_state(db), name, entity_id)}

    app.add_api_route(f"/{path}", list_items, methods=["GET"], name=f"list_{name}")
    app.add_api_route(f"/{path}", create_item, methods=["POST"], name=f"create_{name}")
    app.add_api_route(f"/{path}/{{entity_id}}", get_item, methods=["GET"], name=f"get_{name}")
    app.add_api_route(f"/{path}/{{entity_id}}", update_item, methods=["PUT"], name=f"update_{name}")
    app.add_api_route(f"/{path}/{{entity_id}}", delete_item, methods=["DELETE"], name=f"delete_{name}")
    app.add_api_route(f"/{path}/{{entity_id}}/usage", usage, methods=["GET"], name=f"usage_{name}")


for _path, _name in COLLECTION_ROUTES.items():
    _register_collection(_path, _name)


# --- program structure --------------------------------------------------------------------


@app.get("/structure")
def get_structure(db: Session = Depends(get_db)):
    moet = load_state(db).moet
    return {"program_structure": dump(moet.program_structure), "sub_blocks": [dump(b) for b in moet.sub_blocks]}


@app.post("/structure/{parent_block_id}/courses")
def add_course_to_root(parent_block_id: str, payload: CourseRefIn, db: Session = Depends(get_db)):
    outcome = run(db, "PLACE", "Course", payload.course_id, consistency.add_course_to_root, parent_block_id, payload.course_id)
    return dump(outcome.state.moet.program_structure)


@app.delete("/structure/courses/{course_id}")
def remove_course_from_structure(course_id: str, db: Session = Depends(get_db)):
    require_course(load_state(db), course_id)
    run(db, "UNPLACE", "Course", course_id, consistency.remove_course_from_structure, course_id)
    return {"status": "ok"}


@app.post("/structure/reorder")
def reorder_location(payload: ReorderIn, db: Session = Depends(get_db)):
    run(
        db,
        "REORDER",
        "Structure",
        payload.location,
        consistency.reorder_location,
        payload.location,
        payload.ordered_ids,
        payload.parent_block_id,
        payload=payload.model_dump(),
    )
    return {"status": "ok"}


@app.post("/structure/sub-blocks")
def add_sub_block(payload: SubBlockIn, db: Session = Depends(get_db)):
    outcome = run(db, "CREATE", "MoetSubBlock", "", consistency.add_sub_block, payload.parent_block_id, payload.type)
    return dump(next(b for b in outcome.state.moet.sub_blocks if b.id == outcome.created_id))


@app.post("/structure/sub-blocks/reorder")
def reorder_sub_blocks(ordered_ids: list[str] = Body(..., embed=True), db: Session = Depends(get_db)):
    run(db, "REORDER", "MoetSubBlock", "all", consistency.reorder_sub_blocks, ordered_ids, payload=ordered_ids)
    return {"status": "ok"}


@app.put("/structure/sub-blocks/{block_id}")
def update_sub_block(block_id: str, payload: dict = Body(...), db: Session = Depends(get_db)):
    outcome = run(db, "UPDATE", "MoetSubBlock", block_id, consistency.update_sub_block, block_id, payload, payload=payload)
    return dump(next(b for b in outcome.state.moet.sub_blocks if b.id == block_id))


@app.delete("/structure/sub-blocks/{block_id}")
def delete_sub_block(block_id: str, db: Session = Depends(get_db)):
    run(db, "DELETE", "MoetSubBlock", block_id, consistency.delete_sub_block, block_id)
    return {"status": "deleted"}


@app.post("/structure/sub-blocks/{block_id}/courses")
def add_course_to_sub_block(block_id: str, payload: CourseRefIn, db: Session = Depends(get_db)):
    outcome = run(db, "PLACE", "Course", payload.course_id, consistency.add_course_to_sub_block, block_id, payload.course_id)
    return dump(next(b for b in outcome.state.moet.sub_blocks if b.id == block_id))


# --- mappings -----------------------------------------------------------------------------


@app.post("/mappings/so/cycle")
def cycle_so_level(payload: SoLevelIn, db: Session = Depends(get_db)):
    outcome = run(db, "MAP", "CourseSo", payload.course_id, consistency.cycle_so_level, payload.course_id, payload.so_id)
    return {"level": consistency.so_level(outcome.state, payload.course_id, payload.so_id)}


@app.put("/mappings/so")
def set_so_level(payload: SoLevelIn, db: Session = Depends(get_db)):
    outcome = run(
        db, "MAP", "CourseSo", payload.course_id, consistency.set_so_level, payload.course_id, payload.so_id, payload.level
    )
    return {"level": consistency.so_level(outcome.state, payload.course_id, payload.so_id)}


@app.post("/mappings/pi/toggle")
def toggle_course_pi(payload: CoursePiIn, db: Session = Depends(get_db)):
    outcome = run(db, "MAP", "CoursePi", payload.course_id, consistency.toggle_course_pi, payload.course_id, payload.pi_id)
    return {"mapped": (payload.course_id, payload.pi_id) in views.pi_lookup(outcome.state)}


@app.post("/mappings/peo/toggle")
def toggle_course_peo(payload: CoursePeoIn, db: Session = Depends(get_db)):
    outcome = run(db, "MAP", "CoursePeo", payload.course_id, consistency.toggle_course_peo, payload.course_id, payload.peo_id)
    mapped = any(r.course_id == payload.course_id and r.peo_id == payload.peo_id for r in outcome.state.course_peo_map)
    return {"mapped": mapped}


@app.post("/mappings/peo-so/toggle")
def toggle_peo_so(payload: PeoSoIn, db: Session = Depends(get_db)):
    outcome = run(db, "MAP", "PeoSo", payload.peo_id, consistency.toggle_peo_so, payload.peo_id, payload.so_id)
    return {"mapped": any(r.peo_id == payload.peo_id and r.so_id == payload.so_id for r in outcome.state.peo_so_map)}


@app.post("/mappings/peo-constituent/toggle")
def toggle_peo_constituent(payload: PeoConstituentIn, db: Session = Depends(get_db)):
    outcome = run(
        db, "MAP", "PeoConstituent", payload.peo_id, consistency.toggle_peo_constituent, payload.peo_id, payload.constituent_id
    )
    mapped = any(
        r.peo_id == payload.peo_id and r.constituent_id == payload.constituent_id for r in outcome.state.peo_constituent_map
    )
    return {"mapped": mapped}


@app.post("/mappings/course-objective/toggle")
def toggle_course_objective(payload: CourseObjectiveIn, db: Session = Depends(get_db)):
    outcome = run(
        db, "MAP", "CourseObjective", payload.course_id, consistency.toggle_course_objective, payload.course_id, payload.objective_id
    )
    return {"state": views.objective_cell_state(outcome.state, payload.course_id, payload.objective_id)}


@app.post("/mappings/objective-so/toggle")
def toggle_objective_so(payload: ObjectiveSoIn, db: Session = Depends(get_db)):
    outcome = run(db, "MAP", "ObjectiveSo", payload.objective_id, consistency.toggle_objective_so, payload.objective_id, payload.so_id)
    return dump(store.get_entity(outcome.state, "objectives", payload.objective_id))


@app.post("/mappings/objective-peo/toggle")
def toggle_objective_peo(payload: ObjectivePeoIn, db: Session = Depends(get_db)):
    outcome = run(
        db, "MAP", "ObjectivePeo", payload.objective_id, consistency.toggle_objective_peo, payload.objective_id, payload.peo_id
    )
    return dump(store.get_entity(outcome.state, "objectives", payload.objective_id))


# --- derived views ------------------------------------------------------------------------


@app.get("/views/lookups")
def get_lookups(db: Session = Depends(get_db)):
    state = load_state(db)
    return {
        "so": [{"course_id": cid, "so_id": sid, "level": level} for (cid, sid), level in views.so_lookup(state).items()],
        "pi": [{"course_id": cid, "pi_id": pid} for cid, pid in sorted(views.pi_lookup(state))],
    }


@app.get("/views/credits")
def get_credits(filters: dict = Depends(course_filter), db: Session = Depends(get_db)):
    state = load_state(db)
    courses = views.filter_courses(state, **filters)
    return views.analytics_summary(state, courses)


@app.get("/views/so-coverage")
def get_so_coverage(filters: dict = Depends(course_filter), db: Session = Depends(get_db)):
    state = load_state(db)
    courses = views.filter_courses(state, **filters)
    return {"coverage": views.so_coverage(state, courses), "uncovered": views.uncovered_sos(state, courses)}


@app.get("/views/pi-matrix")
def get_pi_matrix(filters: dict = Depends(course_filter), db: Session = Depends(get_db)):
    state = load_state(db)
    return views.pi_matrix(state, views.filter_courses(state, **filters))


@app.get("/views/objectives")
def get_objective_labels(db: Session = Depends(get_db)):
    state = load_state(db)
    labels = views.objective_labels(state)
    return [{**dump(o), "label": labels[o.id]} for o in views.sorted_objectives(state)]


@app.get("/views/objective-matrix")
def get_objective_matrix(filters: dict = Depends(course_filter), db: Session = Depends(get_db)):
    state = load_state(db)
    return views.objective_matrix(state, views.filter_courses(state, **filters))


@app.get("/views/integrity")
def get_integrity(db: Session = Depends(get_db)):
    return views.integrity_issues(load_state(db))


# --- csv ----------------------------------------------------------------------------------


def _csv_response(body: str, filename: str) -> Response:
    return Response(content=body, media_type=CSV_MEDIA_TYPE, headers={"Content-Disposition": f'attachment; filename="{filename}"'})


@app.get("/catalog/csv")
def export_catalog(filters: dict = Depends(course_filter), db: Session = Depends(get_db)):
    state = load_state(db)
    return _csv_response(catalog_csv.export_catalog_csv(state, views.filter_courses(state, **filters)), "course-catalog.csv")


@app.post("/catalog/csv")
def import_catalog(file: UploadFile = File(...), db: Session = Depends(get_db)):
    data = file.file.read().decode("utf-8-sig")
    with state_lock:
        outcome, report = catalog_csv.import_catalog_csv(load_state(db), data)
        if not outcome.ok:
            logger.info("Catalog import rejected: %s", outcome.error.message)
            raise HTTPException(status_code=400, detail={"message": outcome.error.message, "errors": report.errors})
        save_state(db, outcome.state)
    write_audit(db, "CATALOG_IMPORT", "Course", "bulk", json.dumps({"imported": report.imported}))
    return {"inserted": report.imported, "created_ids": report.created_ids, "errors": report.errors}


@app.get("/matrix/{kind}/csv")
def export_matrix(kind: str, filters: dict = Depends(course_filter), db: Session = Depends(get_db)):
    state = load_state(db)
    courses = views.filter_courses(state, **filters)
    if kind == "so":
        return _csv_response(catalog_csv.so_matrix_csv(state, courses, filters["language"]), "so-matrix.csv")
    if kind == "pi":
        return _csv_response(catalog_csv.pi_matrix_csv(state, courses, filters["language"]), "pi-matrix.csv")
    raise HTTPException(status_code=404, detail="Matrix not found")


# --- syllabus export ----------------------------------------------------------------------


@app.get("/export/syllabus/{course_id}")
def export_syllabus(
    course_id: str,
    language: Optional[Language] = None,
    matrix_type: str = Query("ABET", pattern="^(ABET|MOET)$"),
    format: str = Query("json", pattern="^(json|docx)$"),
    db: Session = Depends(get_db),
):
    state = load_state(db)
    course = require_course(state, course_id)
    document = project_syllabus(
        course,
        state.courses.index(course),
        state.assessment_methods,
        language or state.language,
        state.general_info,
        state.faculties,
        state.teaching_methods,
        state.sos,
        departments=state.departments,
        academic_faculties=state.academic_faculties,
        academic_schools=state.academic_schools,
        matrix_type=matrix_type,
        course_codes={c.id: c.code for c in state.courses},
    )
    if format == "json":
        return document.model_dump(mode="json")
    filename = f"{course.code or course.id}_{matrix_type}_Syllabus.docx"
    return Response(
        content=render_docx(document),
        media_type=DOCX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# --- ai collaborator ----------------------------------------------------------------------


@app.post("/ai/translate/text")
def translate_text(payload: TranslateTextIn, client: AIClient = Depends(get_ai_client)):
    try:
        translation = client.translate_text(payload.text, payload.target_language)
    except AIServiceError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"translation": translation}


def _commit_late_result(
    db: Session, workspace: ProgramWorkspace, key: str, ticket: int, action: str, course_id: str, operation: Callable, *args, keys
) -> dict:
    """Re-apply a collaborator's answer to the tree as stored now, so edits saved during the call survive."""
    with state_lock:
        db.expire_all()
        workspace.state = load_state(db)
        outcome = workspace.commit(key, ticket, operation, course_id, *args)
        if outcome is None:
            return {"status": "stale"}
        raise_for(outcome)
        save_state(db, workspace.state)
    write_audit(db, action, "Course", course_id, json.dumps(sorted(keys)))
    return {"status": "ok", "course": dump(workspace.state.course(course_id))}


@app.post("/ai/translate/course/{course_id}")
def translate_course_route(
    course_id: str, payload: TranslateCourseIn, db: Session = Depends(get_db), client: AIClient = Depends(get_ai_client)
):
    workspace = ProgramWorkspace(load_state(db), tracker)
    course = require_course(workspace.state, course_id)
    key = f"translate:{course_id}"
    ticket = workspace.begin(key)
    try:
        translations = translate_course(client, course, payload.target_language)
    except AIServiceError as exc:
        workspace.abandon(key, ticket)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if not translations:
        workspace.abandon(key, ticket)
        return {"status": "unchanged", "course": dump(course)}
    return _commit_late_result(
        db, workspace, key, ticket, "TRANSLATE", course_id, merge_course_translation, payload.target_language, translations, keys=translations
    )


@app.post("/ai/import/course/{course_id}")
def import_course_pdf(
    course_id: str, payload: PdfImportIn, db: Session = Depends(get_db), client: AIClient = Depends(get_ai_client)
):
    workspace = ProgramWorkspace(load_state(db), tracker)
    course = require_course(workspace.state, course_id)
    key = f"import:{course_id}"
    ticket = workspace.begin(key)
    try:
        data = client.import_from_pdf(payload.pdf_base64)
    except AIServiceError as exc:
        workspace.abandon(key, ticket)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if not data:
        workspace.abandon(key, ticket)
        return {"status": "unchanged", "course": dump(course)}
    return _commit_late_result(db, workspace, key, ticket, "PDF_IMPORT", course_id, merge_imported_syllabus, data, keys=data)
