from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Optional
from decimal import Decimal

from ..database.enums import AssessmentCategory


class ExamScheduleItemRequest(BaseModel):
    """考试安排项请求模型"""
    model_config = ConfigDict(populate_by_name=True)

    assessment_code: str = Field(..., alias="assessmentCode", min_length=1, max_length=30,
                                 description="考核代码")
    title: str = Field(..., min_length=1, max_length=100, description="显示名称（如 November）")
    display_order: int = Field(..., alias="displayOrder", ge=1, description="显示顺序")
    weight: Optional[Decimal] = Field(None, ge=0, le=100, description="月考权重(可选)")


class SemesterConfigRequest(BaseModel):
    """保存学期配置请求模型"""
    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "academicYear": "2024-2025",
                "semesterExamCode": "SEMESTER_1",
                "examSchedule": [
                    {"assessmentCode": "MONTHLY_1", "title": "November", "displayOrder": 1},
                    {"assessmentCode": "MONTHLY_2", "title": "December", "displayOrder": 2},
                    {"assessmentCode": "MONTHLY_3", "title": "January", "displayOrder": 3},
                    {"assessmentCode": "SEMESTER_1", "title": "Semester Exam", "displayOrder": 4},
                ],
            }
        },
    )

    academic_year: str = Field(..., alias="academicYear", pattern=r"^\d{4}-\d{4}$",
                               description="学年(YYYY-YYYY)")
    semester_exam_code: str = Field(..., alias="semesterExamCode", min_length=1, max_length=30)
    exam_schedule: List[ExamScheduleItemRequest] = Field(..., alias="examSchedule",
                                                         min_length=1, max_length=10)
    monthly_weight: Optional[Decimal] = Field(None, alias="monthlyWeight", ge=0, le=100)
    semester_weight: Optional[Decimal] = Field(None, alias="semesterWeight", ge=0, le=100)
    annual_weight: Optional[Decimal] = Field(None, alias="annualWeight", ge=0, le=100)

    @field_validator("academic_year")
    @classmethod
    def _consecutive_years(cls, v: str) -> str:
        start, end = (int(part) for part in v.split("-"))
        if end != start + 1:
            raise ValueError("学年必须为连续的两个年份，如 2024-2025")
        return v


class GradeCreateRequest(BaseModel):
    """录入成绩请求模型"""
    model_config = ConfigDict(populate_by_name=True)

    student_id: str = Field(..., alias="studentId", min_length=1, max_length=36)
    class_id: str = Field(..., alias="classId", min_length=1, max_length=36)
    subject_id: str = Field(..., alias="subjectId", min_length=1, max_length=36)
    assessment_code: str = Field(..., alias="assessmentCode", min_length=1, max_length=30)
    score: Decimal = Field(..., description="得分")
    max_score: Optional[Decimal] = Field(None, alias="maxScore", description="满分(默认取考核类型满分)")
    semester: int = Field(..., ge=1, le=2)
    academic_year: str = Field(..., alias="academicYear", pattern=r"^\d{4}-\d{4}$")
    comments: Optional[str] = Field(None, max_length=1000)


class GradeUpdateRequest(BaseModel):
    """修改成绩请求模型"""
    model_config = ConfigDict(populate_by_name=True)

    score: Decimal = Field(..., description="得分")
    max_score: Optional[Decimal] = Field(None, alias="maxScore")
    comments: Optional[str] = Field(None, max_length=1000)


class AssessmentTypeCreateRequest(BaseModel):
    """创建考核类型请求模型"""
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(..., min_length=1, max_length=30, pattern=r"^[A-Z0-9_]+$")
    name: str = Field(..., min_length=1, max_length=100)
    category: AssessmentCategory
    grade_level: Optional[str] = Field(None, alias="gradeLevel", max_length=20)
    default_weight: Decimal = Field(Decimal("0"), alias="defaultWeight", ge=0, le=100)
    max_score: Decimal = Field(Decimal("100"), alias="maxScore", gt=0)
    display_order: int = Field(0, alias="displayOrder", ge=0)


class StudentGradeEntry(BaseModel):
    """批量录入中的单个学生成绩"""
    model_config = ConfigDict(populate_by_name=True)

    student_id: str = Field(..., alias="studentId", min_length=1, max_length=36)
    score: Decimal = Field(..., description="得分")
    max_score: Optional[Decimal] = Field(None, alias="maxScore")
    comments: Optional[str] = Field(None, max_length=1000)


class BulkGradeRequest(BaseModel):
    """批量录入成绩请求模型（多个学生，同一考核）"""
    model_config = ConfigDict(populate_by_name=True)

    class_id: str = Field(..., alias="classId", min_length=1, max_length=36)
    subject_id: str = Field(..., alias="subjectId", min_length=1, max_length=36)
    assessment_code: str = Field(..., alias="assessmentCode", min_length=1, max_length=30)
    semester: int = Field(..., ge=1, le=2)
    academic_year: str = Field(..., alias="academicYear", pattern=r"^\d{4}-\d{4}$")
    grades: List[StudentGradeEntry] = Field(..., min_length=1, max_length=200)


class StudentMonthlyGrades(BaseModel):
    """单个学生的月考成绩，按月考考核类型的显示顺序对应"""
    model_config = ConfigDict(populate_by_name=True)

    student_id: str = Field(..., alias="studentId", min_length=1, max_length=36)
    exam1_score: Optional[Decimal] = Field(None, alias="exam1Score")
    exam2_score: Optional[Decimal] = Field(None, alias="exam2Score")
    exam3_score: Optional[Decimal] = Field(None, alias="exam3Score")
    exam4_score: Optional[Decimal] = Field(None, alias="exam4Score")
    comments: Optional[str] = Field(None, max_length=1000)

    def scores(self) -> List[Optional[Decimal]]:
        return [self.exam1_score, self.exam2_score, self.exam3_score, self.exam4_score]


class MonthlyGradeEntryRequest(BaseModel):
    """班级月考成绩录入请求模型（班级与科目来自路径）"""
    model_config = ConfigDict(populate_by_name=True)

    semester: int = Field(..., ge=1, le=2)
    academic_year: str = Field(..., alias="academicYear", pattern=r"^\d{4}-\d{4}$")
    student_grades: List[StudentMonthlyGrades] = Field(..., alias="studentGrades", min_length=1, max_length=200)
