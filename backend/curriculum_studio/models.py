from __future__ import annotations

import uuid
from typing import Annotated, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


STATE_VERSION = "1.2.0"
LANGUAGES = ("vi", "en")
COURSE_TYPES = ("REQUIRED", "SELECTED_ELECTIVE", "ELECTIVE")
PARENT_BLOCK_IDS = ("gen", "phys", "fund", "spec", "grad")
OBJECTIVE_CATEGORY_ORDER = ("knowledge", "skills", "learning")
IRM_CYCLE = ("I", "R", "M")
IRM_NONE = ""
COVERAGE_LEVELS = ("", "L", "M", "H")

Language = Literal["vi", "en"]
CourseType = Literal["REQUIRED", "SELECTED_ELECTIVE", "ELECTIVE"]
ParentBlockId = Literal["gen", "phys", "fund", "spec", "grad"]
SubBlockType = Literal["COMPULSORY", "ELECTIVE"]
IRMLevel = Literal["I", "R", "M", ""]
CoverageLevel = Literal["", "L", "M", "H"]
ObjectiveCategory = Literal["knowledge", "skills", "learning"]


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class StateModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LocalizedText(StateModel):
    vi: str = ""
    en: str = ""

    def get(self, language: str) -> str:
        return getattr(self, language, "") or ""

    def with_text(self, language: str, value: str) -> "LocalizedText":
        if language not in LANGUAGES:
            raise ValueError(f"Unsupported language '{language}'")
        return self.model_copy(update={language: value})


def coerce_localized(value):
    if isinstance(value, str):
        return {"vi": value, "en": value}
    return value


Localized = Annotated[LocalizedText, BeforeValidator(coerce_localized)]


class UserAccount(StateModel):
    id: str
    email: str
    name: str
    avatar: Optional[str] = None
    role: Literal["ADMIN", "USER"] = "USER"
    last_login: Optional[str] = None


class MissionConstituent(StateModel):
    id: str
    description: LocalizedText = Field(default_factory=LocalizedText)


class Mission(StateModel):
    text: LocalizedText = Field(default_factory=LocalizedText)
    constituents: list[MissionConstituent] = Field(default_factory=list)


class PEO(StateModel):
    id: str
    code: str = ""
    title: Localized = Field(default_factory=LocalizedText)
    description: Localized = Field(default_factory=LocalizedText)


class PI(StateModel):
    id: str
    code: str = ""
    description: LocalizedText = Field(default_factory=LocalizedText)


class SO(StateModel):
    id: str
    number: int = 0
    code: str = ""
    description: LocalizedText = Field(default_factory=LocalizedText)
    pis: list[PI] = Field(default_factory=list)


class KnowledgeArea(StateModel):
    id: str
    name: LocalizedText = Field(default_factory=LocalizedText)
    color: str = "slate"
    # Program branch fed by this area; None falls back to the built-in table.
    parent_block: Optional[ParentBlockId] = None


class AcademicSchool(StateModel):
    id: str
    code: str = ""
    name: LocalizedText = Field(default_factory=LocalizedText)
    description: Optional[LocalizedText] = None


class AcademicFaculty(StateModel):
    id: str
    code: str = ""
    name: LocalizedText = Field(default_factory=LocalizedText)
    description: Optional[LocalizedText] = None
    school_id: Optional[str] = None


class Department(StateModel):
    id: str
    code: str = ""
    name: LocalizedText = Field(default_factory=LocalizedText)
    description: Optional[LocalizedText] = None
    head_ids: list[str] = Field(default_factory=list)
    academic_faculty_id: Optional[str] = None


class Textbook(StateModel):
    resource_id: str
    title: str = ""
    author: str = ""
    publisher: str = ""
    year: str = ""
    type: Literal["textbook", "reference"] = "textbook"
    url: Optional[str] = None


class TopicActivity(StateModel):
    method_id: str
    hours: float = 0


class TopicReading(StateModel):
    resource_id: str
    page_range: str = ""


class CourseTopic(StateModel):
    id: str
    no: str = ""
    topic: LocalizedText = Field(default_factory=LocalizedText)
    activities: list[TopicActivity] = Field(default_factory=list)
    reading_refs: list[TopicReading] = Field(default_factory=list)


class AssessmentItem(StateModel):
    id: str
    method_id: str = ""
    type: LocalizedText = Field(default_factory=LocalizedText)
    percentile: float = 0


class CloMapping(StateModel):
    topic_ids: list[str] = Field(default_factory=list)
    teaching_method_ids: list[str] = Field(default_factory=list)
    assessment_method_ids: list[str] = Field(default_factory=list)
    coverage_level: CoverageLevel = ""
    so_ids: list[str] = Field(default_factory=list)
    pi_ids: list[str] = Field(default_factory=list)
    objective_ids: list[str] = Field(default_factory=list)


class CourseClos(StateModel):
    vi: list[str] = Field(default_factory=list)
    en: list[str] = Field(default_factory=list)

    def for_language(self, language: str) -> list[str]:
        return list(getattr(self, language, []) or [])

    def max_length(self) -> int:
        return max(len(self.vi), len(self.en))


class InstructorDetail(StateModel):
    class_info: str = ""
    is_main: bool = False


class Course(StateModel):
    id: str
    code: str = ""
    name: Localized = Field(default_factory=LocalizedText)
    credits: float = 3
    is_essential: bool = False
    is_abet: bool = False
    type: CourseType = "REQUIRED"
    knowledge_area_id: str = "other"
    department_id: Optional[str] = None
    semester: int = 1
    # Both hold course ids; codes are resolved at display time.
    prerequisites: list[str] = Field(default_factory=list)
    co_requisites: list[str] = Field(default_factory=list)
    description: Localized = Field(default_factory=LocalizedText)
    textbooks: list[Textbook] = Field(default_factory=list)
    clos: CourseClos = Field(default_factory=CourseClos)
    topics: list[CourseTopic] = Field(default_factory=list)
    assessment_plan: list[AssessmentItem] = Field(default_factory=list)
    instructor_ids: list[str] = Field(default_factory=list)
    instructor_details: dict[str, InstructorDetail] = Field(default_factory=dict)
    clo_map: dict[int, CloMapping] = Field(default_factory=dict)

    @field_validator("clo_map", mode="before")
    @classmethod
    def _clo_map_from_rows(cls, value):
        # Older trees store one row per CLO with an explicit cloIndex.
        if isinstance(value, list):
            out = {}
            for row in value:
                row = dict(row)
                idx = row.pop("cloIndex", row.pop("clo_index", None))
                if idx is None:
                    continue
                out[int(idx)] = row
            return out
        return value


class FacultyListItem(StateModel):
    id: str
    content: LocalizedText = Field(default_factory=LocalizedText)


class EducationItem(StateModel):
    id: str
    degree: LocalizedText = Field(default_factory=LocalizedText)
    discipline: LocalizedText = Field(default_factory=LocalizedText)
    institution: LocalizedText = Field(default_factory=LocalizedText)
    year: str = ""


class Faculty(StateModel):
    id: str
    name: Localized = Field(default_factory=LocalizedText)
    rank: LocalizedText = Field(default_factory=LocalizedText)
    degree: LocalizedText = Field(default_factory=LocalizedText)
    academic_title: LocalizedText = Field(default_factory=LocalizedText)
    position: LocalizedText = Field(default_factory=LocalizedText)
    experience: LocalizedText = Field(default_factory=LocalizedText)
    career_start_year: Optional[int] = None
    workload: float = 0
    employment_type: Optional[Literal["FT", "PT"]] = None
    department_id: Optional[str] = None
    office: Optional[str] = None
    office_hours: Optional[str] = None
    tel: Optional[str] = None
    email: Optional[str] = None
    education_list: list[EducationItem] = Field(default_factory=list)
    publications_list: list[FacultyListItem] = Field(default_factory=list)
    certifications_list: list[FacultyListItem] = Field(default_factory=list)
    memberships_list: list[FacultyListItem] = Field(default_factory=list)
    honors_list: list[FacultyListItem] = Field(default_factory=list)


class TeachingMethod(StateModel):
    id: str
    code: str = ""
    name: LocalizedText = Field(default_factory=LocalizedText)
    description: Optional[LocalizedText] = None
    hours_per_credit: float = 15
    category: Literal["THEORY", "PRACTICE"] = "THEORY"


class AssessmentMethod(StateModel):
    id: str
    name: LocalizedText = Field(default_factory=LocalizedText)


class LibraryResource(StateModel):
    id: str
    title: str = ""
    author: str = ""
    publisher: str = ""
    year: str = ""
    type: Literal["textbook", "reference"] = "textbook"
    is_ebook: bool = False
    is_printed: bool = True
    url: Optional[str] = None


class MoetObjective(StateModel):
    id: str
    category: Optional[ObjectiveCategory] = None
    description: LocalizedText = Field(default_factory=LocalizedText)
    peo_ids: list[str] = Field(default_factory=list)
    so_ids: list[str] = Field(default_factory=list)


class MoetSubBlock(StateModel):
    id: str
    name: Localized = Field(default_factory=LocalizedText)
    parent_block_id: ParentBlockId
    type: SubBlockType = "ELECTIVE"
    min_credits: float = 0
    course_ids: list[str] = Field(default_factory=list)
    note: LocalizedText = Field(default_factory=LocalizedText)
    preferred_semester: Optional[int] = None


class ProgramStructure(StateModel):
    gen: list[str] = Field(default_factory=list)
    phys: list[str] = Field(default_factory=list)
    fund: list[str] = Field(default_factory=list)
    spec: list[str] = Field(default_factory=list)
    grad: list[str] = Field(default_factory=list)

    def get(self, parent: str) -> list[str]:
        if parent not in PARENT_BLOCK_IDS:
            raise ValueError(f"Unknown program block '{parent}'")
        return list(getattr(self, parent))

    def all_ids(self) -> list[str]:
        return [cid for parent in PARENT_BLOCK_IDS for cid in getattr(self, parent)]


class MoetProgramFaculty(StateModel):
    id: str
    name: str = ""
    position: str = ""
    major: str = ""
    degree: str = ""
    responsibility: str = ""
    note: str = ""


class MoetInfo(StateModel):
    major_name: LocalizedText = Field(default_factory=LocalizedText)
    major_code: str = ""
    specialization_name: LocalizedText = Field(default_factory=LocalizedText)
    specialization_code: str = ""
    level: LocalizedText = Field(default_factory=LocalizedText)
    training_mode: LocalizedText = Field(default_factory=LocalizedText)
    training_type: LocalizedText = Field(default_factory=LocalizedText)
    training_language: LocalizedText = Field(default_factory=LocalizedText)
    duration: str = ""
    admission_target: LocalizedText = Field(default_factory=LocalizedText)
    admission_req: LocalizedText = Field(default_factory=LocalizedText)
    graduation_req: LocalizedText = Field(default_factory=LocalizedText)
    graduation_note: LocalizedText = Field(default_factory=LocalizedText)
    grading_scale: LocalizedText = Field(default_factory=LocalizedText)
    implementation_guideline: LocalizedText = Field(default_factory=LocalizedText)
    guideline_facilities: LocalizedText = Field(default_factory=LocalizedText)
    guideline_class_forms: LocalizedText = Field(default_factory=LocalizedText)
    guideline_credit_conversion: LocalizedText = Field(default_factory=LocalizedText)
    referenced_programs: LocalizedText = Field(default_factory=LocalizedText)
    general_objectives: LocalizedText = Field(default_factory=LocalizedText)
    specific_objectives: list[MoetObjective] = Field(default_factory=list)
    program_structure: ProgramStructure = Field(default_factory=ProgramStructure)
    sub_blocks: list[MoetSubBlock] = Field(default_factory=list)
    # Manual links, each "courseId|objectiveId".
    course_objective_map: list[str] = Field(default_factory=list)
    program_faculty: list[MoetProgramFaculty] = Field(default_factory=list)


class PreviousEvaluations(StateModel):
    weaknesses: LocalizedText = Field(default_factory=LocalizedText)
    actions: LocalizedText = Field(default_factory=LocalizedText)
    status: LocalizedText = Field(default_factory=LocalizedText)


class GeneralInfo(StateModel):
    university: LocalizedText = Field(default_factory=LocalizedText)
    school: LocalizedText = Field(default_factory=LocalizedText)
    program_name: LocalizedText = Field(default_factory=LocalizedText)
    contact: LocalizedText = Field(default_factory=LocalizedText)
    history: LocalizedText = Field(default_factory=LocalizedText)
    delivery_modes: LocalizedText = Field(default_factory=LocalizedText)
    locations: LocalizedText = Field(default_factory=LocalizedText)
    public_disclosure: LocalizedText = Field(default_factory=LocalizedText)
    previous_evaluations: PreviousEvaluations = Field(default_factory=PreviousEvaluations)
    academic_year: str = ""
    city: str = "Da Nang"
    default_subject_code: str = "NEW"
    default_subject_name: LocalizedText = Field(default_factory=lambda: LocalizedText(vi="Môn học mới", en="New Course"))
    default_credits: float = 3
    moet_info: MoetInfo = Field(default_factory=MoetInfo)


class Facility(StateModel):
    id: str
    code: str = ""
    name: Localized = Field(default_factory=LocalizedText)
    description: Localized = Field(default_factory=LocalizedText)
    course_ids: list[str] = Field(default_factory=list)


class FacultyTitle(StateModel):
    id: str
    name: Localized = Field(default_factory=LocalizedText)
    abbreviation: LocalizedText = Field(default_factory=LocalizedText)


class FacultyTitles(StateModel):
    ranks: list[FacultyTitle] = Field(default_factory=list)
    degrees: list[FacultyTitle] = Field(default_factory=list)
    academic_titles: list[FacultyTitle] = Field(default_factory=list)
    positions: list[FacultyTitle] = Field(default_factory=list)


class CourseSoLink(StateModel):
    course_id: str
    so_id: str
    level: IRMLevel = "I"

    @field_validator("level", mode="before")
    @classmethod
    def _none_as_blank(cls, value):
        if value is None or value == "NONE":
            return IRM_NONE
        return value


class CoursePiLink(StateModel):
    course_id: str
    pi_id: str


class CoursePeoLink(StateModel):
    course_id: str
    peo_id: str


class PeoSoLink(StateModel):
    peo_id: str
    so_id: str


class PeoConstituentLink(StateModel):
    peo_id: str
    constituent_id: str


class ProgramState(StateModel):
    version: str = STATE_VERSION
    language: Language = "vi"
    users: list[UserAccount] = Field(default_factory=list)
    mission: Mission = Field(default_factory=Mission)
    peos: list[PEO] = Field(default_factory=list)
    sos: list[SO] = Field(default_factory=list)
    academic_schools: list[AcademicSchool] = Field(default_factory=list)
    academic_faculties: list[AcademicFaculty] = Field(default_factory=list)
    departments: list[Department] = Field(default_factory=list)
    courses: list[Course] = Field(default_factory=list)
    faculties: list[Faculty] = Field(default_factory=list)
    facilities: list[Facility] = Field(default_factory=list)
    knowledge_areas: list[KnowledgeArea] = Field(default_factory=list)
    teaching_methods: list[TeachingMethod] = Field(default_factory=list)
    assessment_methods: list[AssessmentMethod] = Field(default_factory=list)
    faculty_titles: FacultyTitles = Field(default_factory=FacultyTitles)
    general_info: GeneralInfo = Field(default_factory=GeneralInfo)
    library: list[LibraryResource] = Field(default_factory=list)
    course_so_map: list[CourseSoLink] = Field(default_factory=list)
    course_pi_map: list[CoursePiLink] = Field(default_factory=list)
    course_peo_map: list[CoursePeoLink] = Field(default_factory=list)
    peo_so_map: list[PeoSoLink] = Field(default_factory=list)
    peo_constituent_map: list[PeoConstituentLink] = Field(default_factory=list)

    @field_validator("course_so_map", mode="after")
    @classmethod
    def _prune_blank_levels(cls, rows):
        return [r for r in rows if r.level != IRM_NONE]

    @property
    def moet(self) -> MoetInfo:
        return self.general_info.moet_info

    def course(self, course_id: str) -> Optional[Course]:
        return next((c for c in self.courses if c.id == course_id), None)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


def _lt(vi: str, en: str) -> LocalizedText:
    return LocalizedText(vi=vi, en=en)


def default_state() -> ProgramState:
    return ProgramState(
        mission=Mission(
            constituents=[
                MissionConstituent(id="mc1", description=_lt("Kiến thức chuyên môn", "Professional knowledge")),
                MissionConstituent(id="mc2", description=_lt("Kỹ năng thực hành", "Practical skills")),
                MissionConstituent(id="mc3", description=_lt("Khả năng thích ứng", "Adaptability")),
            ]
        ),
        knowledge_areas=[
            KnowledgeArea(id="math_sci", name=_lt("Toán & KHTN", "Math & Basic Sciences"), color="blue"),
            KnowledgeArea(id="fund_eng", name=_lt("Cơ sở ngành Kỹ thuật", "Fundamental Engineering"), color="indigo"),
            KnowledgeArea(id="adv_eng", name=_lt("Chuyên ngành Kỹ thuật", "Advanced Engineering"), color="purple"),
            KnowledgeArea(id="gen_ed", name=_lt("Giáo dục Đại cương", "General Education"), color="green"),
            KnowledgeArea(id="other", name=_lt("Khác", "Other"), color="slate"),
        ],
        teaching_methods=[
            TeachingMethod(id="tm1", code="LEC", name=_lt("Giảng lý thuyết", "Lecture"), hours_per_credit=15, category="THEORY"),
            TeachingMethod(id="tm2", code="LAB", name=_lt("Thực hành/Thí nghiệm", "Laboratory"), hours_per_credit=30, category="PRACTICE"),
            TeachingMethod(id="tm3", code="DIS", name=_lt("Thảo luận", "Discussion"), hours_per_credit=15, category="THEORY"),
            TeachingMethod(id="tm5", code="PRJ", name=_lt("Đồ án", "Project"), hours_per_credit=45, category="PRACTICE"),
        ],
        assessment_methods=[
            AssessmentMethod(id="am1", name=_lt("Chuyên cần", "Attendance")),
            AssessmentMethod(id="am3", name=_lt("Bài tập", "Assignment")),
            AssessmentMethod(id="am5", name=_lt("Kiểm tra giữa kỳ", "Midterm Exam")),
            AssessmentMethod(id="am6", name=_lt("Thi kết thúc học phần", "Final Exam")),
            AssessmentMethod(id="am7", name=_lt("Đồ án", "Project")),
        ],
    )
