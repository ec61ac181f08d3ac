import os

# 测试使用内存SQLite，不连接MySQL/Redis
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CACHE_ENABLED", "false")

import pytest
from decimal import Decimal
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from grade_service.database.connection import Base
from grade_service.database import models  # noqa: F401
from grade_service.database.cache import GradeCache, InMemoryCacheBackend
from grade_service.database.enums import AssessmentCategory
from grade_service.database.repositories import (
    AssessmentTypeRepository, GradeRepository, SubjectRepository
)
from grade_service.schemas.request_schemas import SemesterConfigRequest
from grade_service.services.event_publisher import AsyncEventDispatcher, InMemoryEventPublisher
from grade_service.services.locks import KeyedLockManager
from grade_service.services.semester_config_service import SemesterConfigService

ACADEMIC_YEAR = "2024-2025"
TEACHER_ID = "teacher-001"
CLASS_ID = "class-7A"
MATH = "subject-math"
KHMER = "subject-khmer"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seeded_db(db_session):
    """预置考核类型与科目"""
    assessment_repo = AssessmentTypeRepository(db_session)
    for index in range(1, 5):
        assessment_repo.create({
            "code": f"MONTHLY_{index}",
            "name": f"Monthly Exam {index}",
            "category": AssessmentCategory.MONTHLY,
            "default_weight": Decimal("0"),
            "max_score": Decimal("100"),
            "display_order": index,
        })
    for semester in (1, 2):
        assessment_repo.create({
            "code": f"SEMESTER_{semester}",
            "name": f"Semester {semester} Exam",
            "category": AssessmentCategory.SEMESTER,
            "default_weight": Decimal("40"),
            "max_score": Decimal("100"),
            "display_order": 10 + semester,
        })
    assessment_repo.create({
        "code": "ANNUAL_EXAM",
        "name": "Annual Exam",
        "category": AssessmentCategory.ANNUAL,
        "max_score": Decimal("100"),
        "display_order": 20,
    })

    subject_repo = SubjectRepository(db_session)
    subject_repo.create({"id": MATH, "name": "Mathematics", "name_km": "គណិតវិទ្យា", "code": "MATH"})
    subject_repo.create({"id": KHMER, "name": "Khmer", "name_km": "ភាសាខ្មែរ", "code": "KHMER"})
    return db_session


def config_request(semester: int = 1, monthly_codes=("MONTHLY_1", "MONTHLY_2", "MONTHLY_3"),
                   academic_year: str = ACADEMIC_YEAR, **extra) -> SemesterConfigRequest:
    schedule = [
        {"assessmentCode": code, "title": f"Month {index}", "displayOrder": index}
        for index, code in enumerate(monthly_codes, start=1)
    ]
    schedule.append({
        "assessmentCode": f"SEMESTER_{semester}",
        "title": "Semester Exam",
        "displayOrder": len(schedule) + 1,
    })
    payload = {
        "academicYear": academic_year,
        "semesterExamCode": f"SEMESTER_{semester}",
        "examSchedule": schedule,
    }
    payload.update(extra)
    return SemesterConfigRequest.model_validate(payload)


@pytest.fixture
def default_configs(seeded_db):
    """两个学期的默认配置（各3次月考）"""
    service = SemesterConfigService(seeded_db)
    return [service.save_default_config(config_request(semester)) for semester in (1, 2)]


@pytest.fixture
def memory_cache():
    return GradeCache(InMemoryCacheBackend())


@pytest.fixture
def publisher():
    return InMemoryEventPublisher()


@pytest.fixture
def dispatcher(publisher):
    return AsyncEventDispatcher(publisher, backoff_seconds=0, synchronous=True)


@pytest.fixture
def lock_manager():
    return KeyedLockManager(timeout=5)


@pytest.fixture
def add_grade(seeded_db):
    """直接写入成绩（不触发重算）"""
    repo = GradeRepository(seeded_db)

    def _add(student_id, subject_id, code, score, semester=1, class_id=CLASS_ID,
             max_score=Decimal("100"), teacher_id=TEACHER_ID):
        return repo.create({
            "teacher_id": teacher_id,
            "student_id": student_id,
            "class_id": class_id,
            "subject_id": subject_id,
            "assessment_type_code": code,
            "score": Decimal(str(score)),
            "max_score": max_score,
            "semester": semester,
            "academic_year": ACADEMIC_YEAR,
        })

    return _add


@pytest.fixture
def add_subject_grades(add_grade):
    """一次写入某科目一个学期的3次月考与期末成绩"""

    def _add(student_id, subject_id, monthly_scores, semester_score=None, semester=1):
        grades = [
            add_grade(student_id, subject_id, f"MONTHLY_{index}", score, semester=semester)
            for index, score in enumerate(monthly_scores, start=1)
        ]
        if semester_score is not None:
            grades.append(add_grade(student_id, subject_id, f"SEMESTER_{semester}", semester_score,
                                    semester=semester))
        return grades

    return _add
