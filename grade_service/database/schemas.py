# 领域值类型定义（计算引擎只依赖这些纯数据结构，不依赖ORM对象）
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Tuple, Dict, Any

from .enums import AssessmentCategory, AverageType


@dataclass(frozen=True)
class GradeScore:
    """单次考核得分"""
    assessment_code: str
    score: Decimal
    max_score: Decimal = Decimal("100")
    grade_id: Optional[int] = None


@dataclass(frozen=True)
class ScheduleItem:
    """考试安排项"""
    assessment_code: str
    title: str
    display_order: int
    category: AssessmentCategory = AssessmentCategory.MONTHLY
    weight: Optional[Decimal] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "assessmentCode": self.assessment_code,
            "title": self.title,
            "displayOrder": self.display_order,
            "weight": float(self.weight) if self.weight is not None else None,
        }


@dataclass(frozen=True)
class ExamScheduleConfig:
    """解析后的学期配置（教师配置或默认配置）"""
    academic_year: str
    semester_exam_code: str
    exam_schedule: Tuple[ScheduleItem, ...]
    teacher_id: Optional[str] = None
    monthly_weight: Optional[Decimal] = None
    semester_weight: Optional[Decimal] = None
    annual_weight: Optional[Decimal] = None
    config_id: Optional[int] = None

    @property
    def is_default(self) -> bool:
        return self.teacher_id is None

    def monthly_slots(self) -> List[ScheduleItem]:
        return sorted(
            (item for item in self.exam_schedule if item.category == AssessmentCategory.MONTHLY),
            key=lambda item: item.display_order,
        )

    def monthly_codes(self) -> List[str]:
        return [item.assessment_code for item in self.monthly_slots()]

    def has_slot_weights(self) -> bool:
        return any(item.weight is not None for item in self.monthly_slots())

    def fingerprint_part(self) -> str:
        schedule = ",".join(
            f"{item.assessment_code}:{item.display_order}:{item.weight}"
            for item in self.exam_schedule
        )
        return (
            f"{self.teacher_id}|{self.academic_year}|{self.semester_exam_code}|{schedule}"
            f"|{self.monthly_weight}|{self.semester_weight}|{self.annual_weight}"
        )


@dataclass(frozen=True)
class AverageKey:
    """GradeAverage唯一键（同时作为计算锁的键）"""
    student_id: str
    class_id: str
    academic_year: str
    average_type: AverageType
    subject_id: Optional[str] = None
    semester: Optional[int] = None

    def as_tuple(self) -> Tuple:
        return (
            "average", self.student_id, self.class_id, self.subject_id,
            self.semester, self.academic_year, self.average_type.value,
        )


@dataclass(frozen=True)
class CohortKey:
    """排名群体键（班级或班级+科目）"""
    class_id: str
    academic_year: str
    average_type: AverageType
    semester: Optional[int] = None
    subject_id: Optional[str] = None

    def as_tuple(self) -> Tuple:
        return (
            "cohort", self.class_id, self.subject_id, self.semester,
            self.academic_year, self.average_type.value,
        )


@dataclass
class ClassCalculationSummary:
    """班级批量计算结果汇总"""
    class_id: str
    semester: int
    academic_year: str
    students_total: int = 0
    students_calculated: int = 0
    students_skipped: int = 0
    errors: Dict[str, str] = field(default_factory=dict)
