from __future__ import annotations

import io
import re
import xml.etree.ElementTree as ET
import zipfile
from datetime import date
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from curriculum_studio.models import (
    SO,
    AcademicFaculty,
    AcademicSchool,
    AssessmentMethod,
    Course,
    Department,
    Faculty,
    GeneralInfo,
    TeachingMethod,
)
from curriculum_studio.views import credit_breakdown, labels_for, main_instructor


W_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"
NS = {"w": W_NS}
ET.register_namespace("w", W_NS)

LABELS = {
    "vi": {
        "credit_hours": "Số tín chỉ",
        "instructor_info": "Thông tin Giảng viên",
        "class_info": "Thông tin Lớp học",
        "textbook": "Giáo trình",
        "references": "Tài liệu tham khảo",
        "description": "Mô tả học phần",
        "program": "Chương trình đào tạo",
        "prereq": "Tiên quyết",
        "coreq": "Song hành",
        "status": "Loại hình",
        "required": "Bắt buộc (R)",
        "selected_elective": "Tự chọn định hướng (SE)",
        "elective": "Tự chọn tự do (E)",
        "topics": "NỘI DUNG ĐỀ MỤC & THỜI KHÓA",
        "content_no": "STT",
        "time": "Thời lượng",
        "topic": "Nội dung",
        "readings": "Tài liệu đọc",
        "assessment": "KẾ HOẠCH ĐÁNH GIÁ",
        "assessment_type": "Hình thức",
        "percentile": "Tỷ lệ",
        "total": "Tổng cộng",
        "clos": "CHUẨN ĐẦU RA HỌC PHẦN (CLOs)",
        "clos_intro": "Sau khi hoàn thành học phần này, sinh viên có khả năng:",
        "relationship": "MA TRẬN QUAN HỆ GIỮA CĐR HỌC PHẦN (CLOs) VÀ CĐR CHƯƠNG TRÌNH (SOs)",
        "clo_col": "CĐR Học phần",
        "topic_col": "Nội dung",
        "method_col": "Phương pháp giảng dạy",
        "assess_col": "Hình thức đánh giá",
        "level_col": "Mức độ",
        "so_col": "CĐR Chương trình",
        "objective_col": "Mục tiêu",
        "credit": "tín chỉ",
        "hours": "giờ",
        "legend": "Ghi chú: Mức độ đáp ứng: L = Thấp, M = Trung bình, và H = Cao.",
        "head": "TRƯỞNG BỘ MÔN",
        "lecturer": "GIẢNG VIÊN BIÊN SOẠN",
        "department": "Bộ môn",
        "faculty": "Khoa",
        "school": "Trường",
    },
    "en": {
        "credit_hours": "No. of Credit Hours",
        "instructor_info": "Instructor Information",
        "class_info": "Class Information",
        "textbook": "Textbook",
        "references": "Reference Materials",
        "description": "Course Description",
        "program": "Academic Program",
        "prereq": "Prerequisite(s)",
        "coreq": "Co-requisite(s)",
        "status": "Course Status",
        "required": "Required (R)",
        "selected_elective": "Selected Elective (SE)",
        "elective": "Elective (E)",
        "topics": "COURSE TOPICS & SCHEDULES",
        "content_no": "Content No.",
        "time": "Amount of Time",
        "topic": "Course Topic",
        "readings": "Readings",
        "assessment": "COURSE ASSESSMENT PLAN",
        "assessment_type": "Assessment Type",
        "percentile": "Grade Percentile",
        "total": "Total",
        "clos": "COURSE LEARNING OUTCOMES (CLOs)",
        "clos_intro": "Upon completion of this course, the student should be able to:",
        "relationship": "RELATIONSHIP BETWEEN CLOs AND SOs",
        "clo_col": "CLO",
        "topic_col": "Topics",
        "method_col": "Methodology",
        "assess_col": "Assessment",
        "level_col": "Level",
        "so_col": "SO",
        "objective_col": "Objectives",
        "credit": "credit(s)",
        "hours": "hrs",
        "legend": "Legend: Response level: L = Low, M = Medium, and H = High.",
        "head": "HEAD OF DEPARTMENT",
        "lecturer": "LECTURER",
        "department": "Department",
        "faculty": "Faculty",
        "school": "School",
    },
}


class Heading(BaseModel):
    kind: Literal["heading"] = "heading"
    text: str
    level: int = 1


class Paragraph(BaseModel):
    kind: Literal["paragraph"] = "paragraph"
    text: str = ""
    bold: bool = False
    italic: bool = False
    align: Literal["left", "center", "right"] = "left"


class Table(BaseModel):
    kind: Literal["table"] = "table"
    header: list[str] = Field(default_factory=list)
    rows: list[list[str]] = Field(default_factory=list)


DocumentBlock = Annotated[Union[Heading, Paragraph, Table], Field(discriminator="kind")]


class SyllabusDocument(BaseModel):
    title: str
    matrix_type: Literal["ABET", "MOET"] = "ABET"
    language: str = "vi"
    blocks: list[DocumentBlock] = Field(default_factory=list)


def _strip_html(text: str) -> str:
    text = re.sub(r"<br\s*/?>|</p>", "\n", text or "", flags=re.I)
    text = re.sub(r"<[^>]+>", "", text)
    return re.sub(r"\n\s*\n", "\n\n", text).strip()


def _num(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def _issued_line(language: str, city: str, issued_on: date) -> str:
    if language == "vi":
        return f"{city}, ngày {issued_on.day} tháng {issued_on.month} năm {issued_on.year}"
    return f"{city}, {issued_on.day}/{issued_on.month}/{issued_on.year}"


def project_syllabus(
    course: Course,
    index: int,
    assessment_methods: list[AssessmentMethod],
    language: str,
    general_info: GeneralInfo,
    faculties: list[Faculty],
    teaching_methods: list[TeachingMethod],
    sos: list[SO],
    departments: Optional[list[Department]] = None,
    academic_faculties: Optional[list[AcademicFaculty]] = None,
    academic_schools: Optional[list[AcademicSchool]] = None,
    matrix_type: str = "ABET",
    course_codes: Optional[dict[str, str]] = None,
    issued_on: Optional[date] = None,
) -> SyllabusDocument:
    """Project one course into the syllabus document layout.

    Reads its inputs only. ``course_codes`` maps course ids to codes for the
    prerequisite cells; ``issued_on`` defaults to today.
    """
    labels = LABELS.get(language, LABELS["en"])
    codes = course_codes or {}
    issued_on = issued_on or date.today()
    blocks: list = []
    is_moet = matrix_type == "MOET"

    title = f"{course.code} - {course.name.get(language).upper()}"
    if is_moet:
        title = f"{index + 1}. {title}"
        dept = next((d for d in departments or [] if d.id == course.department_id), None)
        fac = next((f for f in academic_faculties or [] if dept is not None and f.id == dept.academic_faculty_id), None)
        school = next((s for s in academic_schools or [] if fac is not None and s.id == fac.school_id), None)
        org_rows = [
            [labels["school"], school.name.get(language) if school else general_info.school.get(language)],
            [labels["faculty"], fac.name.get(language) if fac else ""],
            [labels["department"], dept.name.get(language) if dept else ""],
        ]
        blocks.append(Table(rows=org_rows))
    blocks.append(Heading(text=title, level=1))

    main_id = main_instructor(course)
    faculty = next((f for f in faculties if f.id == main_id), None)
    instructor_info = f"{faculty.name.get(language)}\nOffice: {faculty.office or ''}\nEmail: {faculty.email or ''}" if faculty else "N/A"
    detail = course.instructor_details.get(main_id) if main_id else None
    class_info = (detail.class_info if detail else "") or "N/A"
    breakdown = credit_breakdown(course, teaching_methods)
    credit_text = f"{_num(course.credits)} {labels['credit']}"
    if breakdown:
        credit_text += " (" + ", ".join(f"{code}: {val}" for code, val in breakdown.items() if val > 0) + ")"
    blocks.append(
        Table(
            header=[labels["credit_hours"], labels["instructor_info"], labels["class_info"]],
            rows=[[credit_text, instructor_info, class_info]],
        )
    )

    textbooks = [t for t in course.textbooks if t.type == "textbook"]
    refs = [t for t in course.textbooks if t.type == "reference"]
    for heading, items in ((labels["textbook"], textbooks), (labels["references"], refs)):
        blocks.append(Paragraph(text=f"{heading}:", bold=True))
        if items:
            for i, tb in enumerate(items, start=1):
                blocks.append(Paragraph(text=f"{i}. {tb.author} ({tb.year}). {tb.title}. {tb.publisher}."))
        else:
            blocks.append(Paragraph(text="N/A"))

    blocks.append(Paragraph(text=f"{labels['description']}:", bold=True))
    blocks.append(Paragraph(text=_strip_html(course.description.get(language))))

    def check(kind: str) -> str:
        return "[x]" if course.type == kind else "[ ]"

    status = "\n".join(
        [
            f"{check('REQUIRED')} {labels['required']}",
            f"{check('SELECTED_ELECTIVE')} {labels['selected_elective']}",
            f"{check('ELECTIVE')} {labels['elective']}",
        ]
    )
    blocks.append(Paragraph(text=f"{labels['program']}: {general_info.program_name.get(language)}", bold=True, align="center"))
    blocks.append(
        Table(
            header=[labels["prereq"], labels["coreq"], labels["status"]],
            rows=[
                [
                    ", ".join(codes.get(cid, cid) for cid in course.prerequisites) or "N/A",
                    ", ".join(codes.get(cid, cid) for cid in course.co_requisites) or "N/A",
                    status,
                ]
            ],
        )
    )

    blocks.append(Paragraph(text=labels["topics"], bold=True, align="center"))
    topic_rows = []
    for t in course.topics:
        hours = sum(a.hours for a in t.activities)
        readings = []
        for r in t.reading_refs:
            tb_idx = next((i for i, x in enumerate(textbooks) if x.resource_id == r.resource_id), None)
            ref_idx = next((i for i, x in enumerate(refs) if x.resource_id == r.resource_id), None)
            if tb_idx is not None:
                readings.append(f"[TEXT {tb_idx + 1}]")
            elif ref_idx is not None:
                readings.append(f"[REF {ref_idx + 1}]")
        topic_rows.append([t.no, f"{_num(hours)} {labels['hours']}", t.topic.get(language), ", ".join(readings)])
    blocks.append(Table(header=[labels["content_no"], labels["time"], labels["topic"], labels["readings"]], rows=topic_rows))

    blocks.append(Paragraph(text=labels["assessment"], bold=True))
    methods_by_id = {m.id: m for m in assessment_methods}
    assess_rows = []
    for item in course.assessment_plan:
        method = methods_by_id.get(item.method_id)
        default_name = method.name.get(language) if method else ""
        custom = item.type.get(language).strip()
        name = default_name
        if custom and custom.lower() != default_name.lower():
            name = f"{default_name}, {custom}" if default_name else custom
        assess_rows.append([name, f"{_num(item.percentile)}%"])
    assess_rows.append([labels["total"], "100%"])
    blocks.append(Table(header=[labels["assessment_type"], labels["percentile"]], rows=assess_rows))

    clos = course.clos.for_language(language)
    blocks.append(Paragraph(text=labels["clos"], bold=True))
    blocks.append(Paragraph(text=labels["clos_intro"]))
    for i, clo in enumerate(clos):
        blocks.append(Paragraph(text=f"CLO.{i + 1}  {clo}"))

    blocks.append(Paragraph(text=labels["relationship"], bold=True, align="center"))
    topics_by_id = {t.id: t for t in course.topics}
    teaching_by_id = {m.id: m for m in teaching_methods}
    so_by_id = {s.id: s for s in sos}
    objective_labels = labels_for(general_info.moet_info.specific_objectives) if is_moet else {}
    header = [labels["clo_col"], labels["topic_col"], labels["method_col"], labels["assess_col"], labels["level_col"], labels["so_col"]]
    if is_moet:
        header.append(labels["objective_col"])
    matrix_rows = []
    for i in range(len(clos)):
        mapping = course.clo_map.get(i)
        if mapping is None:
            row = [f"CLO.{i + 1}", "", "", "", "", ""]
        else:
            so_cells = []
            for sid in mapping.so_ids:
                so = so_by_id.get(sid)
                if so is None:
                    continue
                so_code = so.code.replace("SO-", "")
                related = [pi.code for pi in so.pis if pi.id in mapping.pi_ids]
                so_cells.append(f"{so_code} ({', '.join(related)})" if related else so_code)
            row = [
                f"CLO.{i + 1}",
                ", ".join(topics_by_id[t].no for t in mapping.topic_ids if t in topics_by_id),
                ", ".join(teaching_by_id[m].code for m in mapping.teaching_method_ids if m in teaching_by_id),
                ", ".join(methods_by_id[m].name.get(language) for m in mapping.assessment_method_ids if m in methods_by_id),
                mapping.coverage_level,
                ", ".join(so_cells),
            ]
        if is_moet:
            ids = mapping.objective_ids if mapping else []
            row.append(", ".join(sorted(objective_labels[o] for o in ids if o in objective_labels)))
        matrix_rows.append(row)
    blocks.append(Table(header=header, rows=matrix_rows))
    blocks.append(Paragraph(text=labels["legend"], italic=True))

    blocks.append(Paragraph(text=_issued_line(language, general_info.city, issued_on), bold=True, align="right"))
    blocks.append(Table(header=[labels["head"], labels["lecturer"]], rows=[["", faculty.name.get(language) if faculty else ""]]))
    return SyllabusDocument(title=title, matrix_type="MOET" if is_moet else "ABET", language=language, blocks=blocks)


# --- DOCX packaging ----------------------------------------------------------------------

CONTENT_TYPES = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
    '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>'
    '<Default Extension="xml" ContentType="application/xml"/>'
    '<Override PartName="/word/document.xml" '
    'ContentType="application/vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml"/>'
    "</Types>"
)
ROOT_RELS = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">'
    '<Relationship Id="rId1" '
    'Type="http://schemas.openxmlformats.org/officeDocument/2006/relationships/officeDocument" '
    'Target="word/document.xml"/>'
    "</Relationships>"
)


def _w(tag: str) -> str:
    return f"{{{W_NS}}}{tag}"


def _para(parent: ET.Element, text: str, bold: bool = False, italic: bool = False, align: str = "left", size: int = 22) -> None:
    p = ET.SubElement(parent, _w("p"))
    if align != "left":
        ppr = ET.SubElement(p, _w("pPr"))
        ET.SubElement(ppr, _w("jc"), {_w("val"): align})
    r = ET.SubElement(p, _w("r"))
    rpr = ET.SubElement(r, _w("rPr"))
    ET.SubElement(rpr, _w("rFonts"), {_w("ascii"): "Times New Roman", _w("hAnsi"): "Times New Roman"})
    if bold:
        ET.SubElement(rpr, _w("b"))
    if italic:
        ET.SubElement(rpr, _w("i"))
    ET.SubElement(rpr, _w("sz"), {_w("val"): str(size)})
    for i, line in enumerate((text or "").split("\n")):
        if i:
            ET.SubElement(r, _w("br"))
        t = ET.SubElement(r, _w("t"))
        t.text = line
        t.set("{http://www.w3.org/XML/1998/namespace}space", "preserve")


def _table(parent: ET.Element, block: Table) -> None:
    tbl = ET.SubElement(parent, _w("tbl"))
    tblpr = ET.SubElement(tbl, _w("tblPr"))
    ET.SubElement(tblpr, _w("tblW"), {_w("w"): "5000", _w("type"): "pct"})
    borders = ET.SubElement(tblpr, _w("tblBorders"))
    for side in ("top", "left", "bottom", "right", "insideH", "insideV"):
        ET.SubElement(borders, _w(side), {_w("val"): "single", _w("sz"): "4", _w("color"): "000000"})
    rows = ([(block.header, True)] if block.header else []) + [(row, False) for row in block.rows]
    for cells, is_header in rows:
        tr = ET.SubElement(tbl, _w("tr"))
        for cell in cells:
            tc = ET.SubElement(tr, _w("tc"))
            if is_header:
                tcpr = ET.SubElement(tc, _w("tcPr"))
                ET.SubElement(tcpr, _w("shd"), {_w("val"): "clear", _w("fill"): "E0E0E0"})
            _para(tc, str(cell), bold=is_header)


def render_docx(document: SyllabusDocument) -> bytes:
    root = ET.Element(_w("document"))
    body = ET.SubElement(root, _w("body"))
    for block in document.blocks:
        if isinstance(block, Heading):
            _para(body, block.text, bold=True, size=28 if block.level == 1 else 24)
        elif isinstance(block, Paragraph):
            _para(body, block.text, bold=block.bold, italic=block.italic, align=block.align)
        else:
            _table(body, block)
            _para(body, "")
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("[Content_Types].xml", CONTENT_TYPES)
        zf.writestr("_rels/.rels", ROOT_RELS)
        zf.writestr("word/document.xml", ET.tostring(root, encoding="utf-8", xml_declaration=True))
    return buf.getvalue()


def docx_text(data: bytes) -> list[str]:
    """Paragraph texts of a DOCX body, tables flattened in reading order."""
    root = ET.fromstring(zipfile.ZipFile(io.BytesIO(data)).read("word/document.xml"))
    return ["".join(t.text or "" for t in p.findall(".//w:t", NS)) for p in root.iter(_w("p"))]
