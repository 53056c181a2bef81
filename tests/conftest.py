import os

import pytest

# keep the app module from touching a database file on import
os.environ.setdefault("CURRICULUM_DATABASE_URL", "sqlite://")

from curriculum_studio.models import (
    PEO,
    PI,
    SO,
    AcademicFaculty,
    AcademicSchool,
    Course,
    Department,
    Faculty,
    LibraryResource,
    LocalizedText,
    MoetSubBlock,
    ProgramState,
    default_state,
)


def lt(vi: str, en: str) -> LocalizedText:
    return LocalizedText(vi=vi, en=en)


@pytest.fixture
def state() -> ProgramState:
    s = default_state()
    s.sos = [
        SO(
            id="so1",
            number=1,
            code="SO-1",
            description=lt("Giải quyết vấn đề", "Solve problems"),
            pis=[PI(id="pi1", code="SO-1.1"), PI(id="pi2", code="SO-1.2")],
        ),
        SO(id="so2", number=2, code="SO-2", description=lt("Giao tiếp", "Communicate")),
    ]
    s.peos = [PEO(id="peo1", code="PEO-1", title=lt("Nghề nghiệp", "Career"))]
    s.academic_schools = [AcademicSchool(id="sch1", code="UT", name=lt("Trường Công nghệ", "School of Technology"))]
    s.academic_faculties = [AcademicFaculty(id="af1", code="FIT", name=lt("Khoa CNTT", "Faculty of IT"), school_id="sch1")]
    s.departments = [Department(id="d1", code="CS", name=lt("Bộ môn KHMT", "Computer Science"), academic_faculty_id="af1")]
    s.faculties = [
        Faculty(id="f1", name=lt("Nguyễn Văn An", "An Nguyen"), email="an@example.edu", office="A101", department_id="d1"),
        Faculty(id="f2", name=lt("Trần Thị Bình", "Binh Tran"), email="binh@example.edu"),
    ]
    s.library = [
        LibraryResource(id="lib1", title="Introduction to Algorithms", author="Cormen", publisher="MIT Press", year="2009"),
        LibraryResource(id="lib2", title="Clean Code", author="Martin", publisher="Prentice Hall", year="2008", type="reference"),
    ]
    s.courses = [
        Course(id="c1", code="MATH101", name=lt("Giải tích 1", "Calculus 1"), credits=3, semester=1, knowledge_area_id="math_sci", is_abet=True),
        Course(
            id="c2",
            code="CS101",
            name=lt("Nhập môn lập trình", "Programming Fundamentals"),
            credits=4,
            semester=1,
            knowledge_area_id="fund_eng",
            department_id="d1",
            prerequisites=["c1"],
            is_essential=True,
            is_abet=True,
        ),
        Course(id="c3", code="CS301", name=lt("Học máy", "Machine Learning"), credits=3, semester=5, knowledge_area_id="adv_eng", type="ELECTIVE"),
        Course(id="c4", code="CS302", name=lt("Thị giác máy tính", "Computer Vision"), credits=3, semester=5, knowledge_area_id="adv_eng", type="ELECTIVE"),
    ]
    s.moet.program_structure.fund = ["c1", "c2"]
    s.moet.sub_blocks = [
        MoetSubBlock(
            id="sb1",
            name=lt("Tự chọn chuyên ngành", "Specialization Electives"),
            parent_block_id="spec",
            type="ELECTIVE",
            min_credits=3,
            course_ids=["c3", "c4"],
            preferred_semester=6,
        )
    ]
    return s
