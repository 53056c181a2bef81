from __future__ import annotations

import math
import string
from collections import defaultdict
from typing import Iterable, Optional

from curriculum_studio.consistency import course_location
from curriculum_studio.models import (
    IRM_NONE,
    OBJECTIVE_CATEGORY_ORDER,
    PARENT_BLOCK_IDS,
    Course,
    MoetObjective,
    ProgramState,
    TeachingMethod,
)


LETTERS = string.ascii_uppercase
DEFAULT_HOURS_PER_CREDIT = 15

# Objective link states, strongest first.
LINK_MANUAL = "MANUAL"
LINK_SYLLABUS = "SYLLABUS"
LINK_SO = "SO"
LINK_NONE = "NONE"

PI_MAPPED = "MAPPED"
PI_PARTIAL = "PARTIAL"
PI_NONE = "NONE"


# --- coverage lookups --------------------------------------------------------------------


def so_lookup(state: ProgramState) -> dict[tuple[str, str], str]:
    return {(r.course_id, r.so_id): r.level for r in state.course_so_map if r.level != IRM_NONE}


def pi_lookup(state: ProgramState) -> set[tuple[str, str]]:
    return {(r.course_id, r.pi_id) for r in state.course_pi_map}


def course_mapped_sos(state: ProgramState) -> dict[str, set[str]]:
    out: dict[str, set[str]] = defaultdict(set)
    for r in state.course_so_map:
        if r.level != IRM_NONE:
            out[r.course_id].add(r.so_id)
    return dict(out)


def pi_owner(state: ProgramState) -> dict[str, str]:
    return {pi.id: so.id for so in state.sos for pi in so.pis}


def pi_matrix(state: ProgramState, courses: Optional[Iterable[Course]] = None) -> list[dict]:
    """MAPPED when the PI itself is linked, PARTIAL when only its SO is."""
    """Per-course PI cells: MAPPED when the PI itself is linked, PARTIAL when only its SO is."""
    mapped = pi_lookup(state)
    so_sets = course_mapped_sos(state)
    owners = pi_owner(state)
    rows = []
    for course in courses if courses is not None else state.courses:
        cells = {}
        for pi_id, so_id in owners.items():
            if (course.id, pi_id) in mapped:
                cells[pi_id] = PI_MAPPED
            elif so_id in so_sets.get(course.id, set()):
                cells[pi_id] = PI_PARTIAL
            else:
                cells[pi_id] = PI_NONE
        rows.append({"course_id": course.id, "code": course.code, "cells": cells})
    return rows


# --- catalog filter and credit aggregation -----------------------------------------------


def filter_courses(
    state: ProgramState,
    area_id: Optional[str] = None,
    essential_only: bool = False,
    abet_only: bool = False,
    search: str = "",
    language: Optional[str] = None,
) -> list[Course]:
    language = language or state.language
    result = list(state.courses)
    if abet_only:
        result = [c for c in result if c.is_abet]
    if area_id and area_id != "all":
        result = [c for c in result if c.knowledge_area_id == area_id]
    if essential_only:
        result = [c for c in result if c.is_essential]
    if search:
        lower = search.lower()
        result = [c for c in result if lower in (c.code or "").lower() or lower in c.name.get(language).lower()]
    return sorted(result, key=lambda c: (c.semester, c.code))


def _scope(state: ProgramState, courses: Optional[Iterable[Course]]) -> list[Course]:
    return list(state.courses) if courses is None else list(courses)


def total_credits(courses: Iterable[Course]) -> float:
    return sum(c.credits for c in courses)


def credits_by_area(state: ProgramState, courses: Optional[Iterable[Course]] = None) -> list[dict]:
    scoped = _scope(state, courses)
    totals: dict[str, float] = {k.id: 0 for k in state.knowledge_areas}
    for c in scoped:
        totals[c.knowledge_area_id] = totals.get(c.knowledge_area_id, 0) + c.credits
    total = total_credits(scoped)
    rows = [
        {
            "id": area.id,
            "name": area.name.model_dump(),
            "color": area.color,
            "value": totals.get(area.id, 0),
            "percentage": (totals.get(area.id, 0) / total * 100) if total > 0 else 0,
        }
        for area in state.knowledge_areas
    ]
    return sorted(rows, key=lambda r: r["value"], reverse=True)


def credits_by_semester(state: ProgramState, courses: Optional[Iterable[Course]] = None) -> list[dict]:
    """Semester totals with elective pools counted once at their preferred semester.

    Members of elective sub-blocks are left out of the standalone sums; each
    elective block with a preferred semester contributes its minimum credits
    instead, provided at least one of its members is in scope.
    """
    scoped = _scope(state, courses)
    scoped_ids = {c.id for c in scoped}
    blocks = state.moet.sub_blocks
    in_elective = {cid for b in blocks if b.type != "COMPULSORY" for cid in b.course_ids}
    semesters: dict[int, dict] = {}

    def bucket(sem: int) -> dict:
        return semesters.setdefault(sem, {"semester": sem, "total": 0, "areas": {}})

    for c in scoped:
        if c.id in in_elective:
            continue
        data = bucket(c.semester)
        data["total"] += c.credits
        data["areas"][c.knowledge_area_id] = data["areas"].get(c.knowledge_area_id, 0) + c.credits

    for block in blocks:
        if block.type == "COMPULSORY" or not block.preferred_semester or block.preferred_semester <= 0:
            continue
        if not any(cid in scoped_ids for cid in block.course_ids):
            continue
        area_id = "other"
        if block.course_ids:
            first = state.course(block.course_ids[0])
            if first is not None:
                area_id = first.knowledge_area_id
        data = bucket(block.preferred_semester)
        data["total"] += block.min_credits
        data["areas"][area_id] = data["areas"].get(area_id, 0) + block.min_credits

    return [semesters[k] for k in sorted(semesters)]


def so_coverage(state: ProgramState, courses: Optional[Iterable[Course]] = None) -> list[dict]:
    scoped = {c.id: c for c in _scope(state, courses)}
    rows = []
    for so in state.sos:
        hits = {r.course_id for r in state.course_so_map if r.so_id == so.id and r.level != IRM_NONE and r.course_id in scoped}
        rows.append(
            {
                "id": so.id,
                "code": so.code,
                "count": len(hits),
                "credits": sum(scoped[cid].credits for cid in hits),
            }
        )
    return rows


def uncovered_sos(state: ProgramState, courses: Optional[Iterable[Course]] = None) -> list[str]:
    return [row["id"] for row in so_coverage(state, courses) if row["count"] == 0]


def analytics_summary(state: ProgramState, courses: Optional[Iterable[Course]] = None) -> dict:
    scoped = _scope(state, courses)
    semesters = credits_by_semester(state, scoped)
    return {
        "total_credits": total_credits(scoped),
        "areas": credits_by_area(state, scoped),
        "semesters": semesters,
        "max_semester_credits": max([s["total"] for s in semesters] or [0]),
        "so_coverage": so_coverage(state, scoped),
    }


# --- objectives --------------------------------------------------------------------------


def sort_objectives(objectives: Iterable[MoetObjective]) -> list[MoetObjective]:
    order = {cat: i for i, cat in enumerate(OBJECTIVE_CATEGORY_ORDER)}
    # uncategorized first; stable, so ties keep their array order
    return sorted(objectives, key=lambda o: order.get(o.category, -1))


def sorted_objectives(state: ProgramState) -> list[MoetObjective]:
    return sort_objectives(state.moet.specific_objectives)


def label_for_index(index: int) -> str:
    suffix = index // len(LETTERS)
    return LETTERS[index % len(LETTERS)] + (str(suffix) if suffix else "")


def labels_for(objectives: Iterable[MoetObjective]) -> dict[str, str]:
    return {o.id: label_for_index(i) for i, o in enumerate(sort_objectives(objectives))}


def objective_labels(state: ProgramState) -> dict[str, str]:
    return labels_for(state.moet.specific_objectives)


def manual_links(state: ProgramState) -> set[tuple[str, str]]:
    out = set()
    for key in state.moet.course_objective_map:
        cid, sep, oid = key.partition("|")
        if sep:
            out.add((cid, oid))
    return out


def so_implied_links(state: ProgramState) -> set[tuple[str, str]]:
    mapped = course_mapped_sos(state)
    out = set()
    for objective in state.moet.specific_objectives:
        wanted = set(objective.so_ids)
        if not wanted:
            continue
        for cid, so_ids in mapped.items():
            if wanted & so_ids:
                out.add((cid, objective.id))
    return out


def syllabus_implied_links(state: ProgramState) -> set[tuple[str, str]]:
    return {
        (course.id, oid)
        for course in state.courses
        for mapping in course.clo_map.values()
        for oid in mapping.objective_ids
    }


def objective_cell_state(state: ProgramState, course_id: str, objective_id: str) -> str:
    key = (course_id, objective_id)
    if key in manual_links(state):
        return LINK_MANUAL
    if key in syllabus_implied_links(state):
        return LINK_SYLLABUS
    if key in so_implied_links(state):
        return LINK_SO
    return LINK_NONE


def objective_matrix(state: ProgramState, courses: Optional[Iterable[Course]] = None) -> dict:
    manual = manual_links(state)
    syllabus = syllabus_implied_links(state)
    implied = so_implied_links(state)
    ordered = sorted_objectives(state)
    labels = {o.id: label_for_index(i) for i, o in enumerate(ordered)}
    rows = []
    for course in _scope(state, courses):
        cells = {}
        for o in ordered:
            key = (course.id, o.id)
            if key in manual:
                cells[o.id] = LINK_MANUAL
            elif key in syllabus:
                cells[o.id] = LINK_SYLLABUS
            elif key in implied:
                cells[o.id] = LINK_SO
            else:
                cells[o.id] = LINK_NONE
        rows.append({"course_id": course.id, "code": course.code, "cells": cells})
    return {
        "objectives": [{"id": o.id, "label": labels[o.id], "category": o.category} for o in ordered],
        "rows": rows,
    }


# --- syllabus helpers --------------------------------------------------------------------


def main_instructor(course: Course) -> Optional[str]:
    for fid in course.instructor_ids:
        detail = course.instructor_details.get(fid)
        if detail is not None and detail.is_main:
            return fid
    return course.instructor_ids[0] if course.instructor_ids else None


def credit_breakdown(course: Course, teaching_methods: list[TeachingMethod]) -> dict[str, int]:
    """Credits per teaching-method code: ceil(hours / hoursPerCredit)."""
    by_id = {m.id: m for m in teaching_methods}
    hours: dict[str, float] = defaultdict(float)
    for topic in course.topics:
        for activity in topic.activities:
            hours[activity.method_id] += activity.hours
    out: dict[str, int] = {}
    for method_id, total in hours.items():
        method = by_id.get(method_id)
        if method is None or total <= 0:
            continue
        factor = method.hours_per_credit or DEFAULT_HOURS_PER_CREDIT
        out[method.code] = out.get(method.code, 0) + math.ceil(total / factor)
    return out


def course_codes(state: ProgramState, course_ids: Iterable[str]) -> list[str]:
    by_id = {c.id: c.code for c in state.courses}
    return [by_id[cid] for cid in course_ids if cid in by_id]


# --- integrity ---------------------------------------------------------------------------


def integrity_issues(state: ProgramState) -> list[dict]:
    """Read-only report of references and placements that break the tree's rules."""
    issues: list[dict] = []
    course_ids = {c.id for c in state.courses}
    area_ids = {k.id for k in state.knowledge_areas}
    so_ids = {so.id for so in state.sos}
    pi_ids = {pi.id for so in state.sos for pi in so.pis}
    peo_ids = {p.id for p in state.peos}
    objective_ids = {o.id for o in state.moet.specific_objectives}
    faculty_ids = {f.id for f in state.faculties}

    def add(kind: str, message: str, entity_id: str = "") -> None:
        issues.append({"kind": kind, "entity_id": entity_id, "message": message})

    for r in state.course_so_map:
        if r.course_id not in course_ids or r.so_id not in so_ids:
            add("dangling_so_mapping", f"SO mapping {r.course_id}/{r.so_id} points at a missing entity", r.course_id)
    for r in state.course_pi_map:
        if r.course_id not in course_ids or r.pi_id not in pi_ids:
            add("dangling_pi_mapping", f"PI mapping {r.course_id}/{r.pi_id} points at a missing entity", r.course_id)
    for r in state.course_peo_map:
        if r.course_id not in course_ids or r.peo_id not in peo_ids:
            add("dangling_peo_mapping", f"PEO mapping {r.course_id}/{r.peo_id} points at a missing entity", r.course_id)
    for key in state.moet.course_objective_map:
        cid, _, oid = key.partition("|")
        if cid not in course_ids or oid not in objective_ids:
            add("dangling_objective_link", f"Objective link '{key}' points at a missing entity", cid)

    placements: dict[str, list[str]] = defaultdict(list)
    for parent in PARENT_BLOCK_IDS:
        for cid in getattr(state.moet.program_structure, parent):
            placements[cid].append(parent)
    for block in state.moet.sub_blocks:
        for cid in block.course_ids:
            placements[cid].append(block.id)
    for cid, where in placements.items():
        if cid not in course_ids:
            add("dangling_structure_entry", f"Structure lists unknown course '{cid}'", cid)
        elif len(where) > 1:
            add("multiple_locations", f"Course '{cid}' is placed in {', '.join(where)}", cid)

    for facility in state.facilities:
        for cid in facility.course_ids:
            if cid not in course_ids:
                add("dangling_facility_course", f"Facility {facility.code} lists unknown course '{cid}'", facility.id)

    blocks = {b.id: b for b in state.moet.sub_blocks}
    for course in state.courses:
        if course.knowledge_area_id not in area_ids:
            add("unknown_knowledge_area", f"{course.code} uses unknown area '{course.knowledge_area_id}'", course.id)
        loc = course_location(state, course.id)
        if loc is not None:
            if loc.location in blocks:
                expected_required = blocks[loc.location].type == "COMPULSORY"
            else:
                expected_required = True
            if (course.type == "REQUIRED") != expected_required:
                add("type_location_mismatch", f"{course.code} is {course.type} but sits in '{loc.location}'", course.id)
        for pid in course.prerequisites + course.co_requisites:
            if pid not in course_ids:
                add("dangling_prerequisite", f"{course.code} requires unknown course '{pid}'", course.id)
        for fid in course.instructor_ids:
            if fid not in faculty_ids:
                add("dangling_instructor", f"{course.code} lists unknown instructor '{fid}'", course.id)
        size = course.clos.max_length()
        for idx in course.clo_map:
            if idx >= size:
                add("clo_map_out_of_range", f"{course.code} maps CLO {idx + 1} but has {size} CLOs", course.id)
    return issues
