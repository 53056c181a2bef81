from __future__ import annotations

import csv
import io
import re
from typing import Iterable, Optional

from pydantic import BaseModel, Field, ValidationError

from curriculum_studio import store
from curriculum_studio.errors import Outcome, invalid
from curriculum_studio.models import COURSE_TYPES, Course, ProgramState
from curriculum_studio.views import course_codes, pi_lookup, so_lookup


BOM = "\ufeff"
CATALOG_COLUMNS = [
    "ID",
    "Code",
    "Name_VI",
    "Name_EN",
    "Credits",
    "Semester",
    "Type",
    "Prerequisites",
    "Co-requisite",
    "Essential",
    "ABET",
    "AreaID",
]
REQUIRED_COLUMNS = {"Code", "Name_VI", "Name_EN", "Credits", "Semester"}
TRUE_VALUES = {"1", "true", "yes", "y", "x"}
SO_LEGEND = [
    ("I", "Introduce / Giới thiệu"),
    ("R", "Reinforce / Củng cố"),
    ("M", "Master / Thuần thục"),
]


class CatalogImportReport(BaseModel):
    imported: int = 0
    created_ids: list[str] = Field(default_factory=list)
    errors: list[dict] = Field(default_factory=list)


def _render(headers: list[str], rows: Iterable[list], footer: Iterable[list] = ()) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(headers)
    for row in rows:
        writer.writerow(row)
    footer = list(footer)
    if footer:
        writer.writerow([])
        for row in footer:
            writer.writerow(row)
    return BOM + buf.getvalue()


def _number(value: float):
    return int(value) if float(value).is_integer() else value


def export_catalog_csv(state: ProgramState, courses: Optional[Iterable[Course]] = None) -> str:
    rows = []
    for c in state.courses if courses is None else courses:
        rows.append(
            [
                c.id,
                c.code,
                c.name.vi,
                c.name.en,
                _number(c.credits),
                c.semester,
                c.type,
                ", ".join(course_codes(state, c.prerequisites)),
                ", ".join(course_codes(state, c.co_requisites)),
                1 if c.is_essential else 0,
                1 if c.is_abet else 0,
                c.knowledge_area_id,
            ]
        )
    return _render(CATALOG_COLUMNS, rows)


def _split_codes(raw: Optional[str]) -> list[str]:
    return [part.strip() for part in re.split(r"[,;]", raw or "") if part.strip()]


def _flag(raw: Optional[str]) -> bool:
    return str(raw or "").strip().lower() in TRUE_VALUES


def _parse_row(row: dict, area_ids: set[str]) -> dict:
    code = (row.get("Code") or "").strip()
    if not code:
        raise ValueError("Code is required")
    try:
        credits = float((row.get("Credits") or "0").strip() or 0)
    except ValueError:
        raise ValueError(f"Credits '{row.get('Credits')}' is not a number") from None
    if credits < 0:
        raise ValueError("Credits must not be negative")
    try:
        semester = int((row.get("Semester") or "1").strip() or 1)
    except ValueError:
        raise ValueError(f"Semester '{row.get('Semester')}' is not an integer") from None
    course_type = (row.get("Type") or "REQUIRED").strip().upper() or "REQUIRED"
    if course_type not in COURSE_TYPES:
        raise ValueError(f"Type '{course_type}' is not one of {', '.join(COURSE_TYPES)}")
    area_id = (row.get("AreaID") or "other").strip() or "other"
    if area_id not in area_ids:
        raise ValueError(f"Unknown knowledge area '{area_id}'")
    essential = _flag(row.get("Essential"))
    return {
        "code": code,
        "name": {"vi": (row.get("Name_VI") or "").strip(), "en": (row.get("Name_EN") or "").strip()},
        "credits": credits,
        "semester": semester,
        "type": course_type,
        "is_essential": essential,
        "is_abet": essential or _flag(row.get("ABET")),
        "knowledge_area_id": area_id,
        "_prerequisites": _split_codes(row.get("Prerequisites")),
        "_co_requisites": _split_codes(row.get("Co-requisite")),
    }


def import_catalog_csv(state: ProgramState, text: str) -> tuple[Outcome, CatalogImportReport]:
    """Append every row of a catalog CSV as a new course.

    The batch is validated first; a single bad row rejects the whole file and
    the report lists every failing line. Prerequisite codes may refer to
    existing courses or to rows of the same file.
    """
    report = CatalogImportReport()
    reader = csv.DictReader(io.StringIO(text.lstrip(BOM)))
    headers = set(reader.fieldnames or [])
    missing = sorted(REQUIRED_COLUMNS - headers)
    if missing:
        report.errors.append({"line": 1, "error": f"Missing columns: {', '.join(missing)}", "row": {}})
        return invalid(state, "CSV header is incomplete"), report

    area_ids = {k.id for k in state.knowledge_areas}
    parsed: list[tuple[int, dict, dict]] = []
    for i, row in enumerate(reader, start=2):
        if not any((v or "").strip() for v in row.values() if isinstance(v, str)):
            continue
        try:
            parsed.append((i, _parse_row(row, area_ids), row))
        except ValueError as exc:
            report.errors.append({"line": i, "error": str(exc), "row": row})

    known_codes = {c.code for c in state.courses} | {fields["code"] for _, fields, _ in parsed}
    for i, fields, row in parsed:
        unknown = [code for code in fields["_prerequisites"] + fields["_co_requisites"] if code not in known_codes]
        if unknown:
            report.errors.append({"line": i, "error": f"Unknown course codes: {', '.join(unknown)}", "row": row})
    if report.errors:
        report.errors.sort(key=lambda e: e["line"])
        return invalid(state, f"{len(report.errors)} row(s) failed validation"), report

    new = store.clone(state)
    id_by_code = {}
    for c in state.courses:
        id_by_code.setdefault(c.code, c.id)
    pending = []
    for i, fields, _ in parsed:
        data = {k: v for k, v in fields.items() if not k.startswith("_")}
        try:
            course = store.build_course(new, data)
        except ValidationError as exc:
            report.errors.append({"line": i, "error": str(exc), "row": data})
            return invalid(state, f"Line {i} could not be imported"), report
        store.add_new_course(new, course)
        id_by_code.setdefault(course.code, course.id)
        pending.append((course, fields))
        report.created_ids.append(course.id)

    for course, fields in pending:
        course.prerequisites = [id_by_code[x] for x in fields["_prerequisites"]]
        course.co_requisites = [id_by_code[x] for x in fields["_co_requisites"]]
    report.imported = len(pending)
    return Outcome(state=new), report


def so_matrix_csv(state: ProgramState, courses: Optional[Iterable[Course]] = None, language: Optional[str] = None) -> str:
    language = language or state.language
    levels = so_lookup(state)
    headers = ["Course Code", "Course Name"] + [so.code for so in state.sos]
    rows = [
        [c.code, c.name.get(language)] + [levels.get((c.id, so.id), "") for so in state.sos]
        for c in (state.courses if courses is None else courses)
    ]
    footer = [["Legend / Chú thích:"]] + [list(item) for item in SO_LEGEND]
    return _render(headers, rows, footer)


def pi_matrix_csv(state: ProgramState, courses: Optional[Iterable[Course]] = None, language: Optional[str] = None) -> str:
    language = language or state.language
    mapped = pi_lookup(state)
    pis = [pi for so in state.sos for pi in so.pis]
    headers = ["Course Code", "Course Name"] + [pi.code for pi in pis]
    rows = [
        [c.code, c.name.get(language)] + ["X" if (c.id, pi.id) in mapped else "" for pi in pis]
        for c in (state.courses if courses is None else courses)
    ]
    return _render(headers, rows)
