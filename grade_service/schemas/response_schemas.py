from pydantic import BaseModel, ConfigDict, Field
from typing import Any, List, Optional
from datetime import datetime

from ..database.enums import AssessmentCategory, AverageType


class _CamelModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class ApiResponse(BaseModel):
    """统一响应包装 {success, code, message, data}"""
    success: bool = True
    code: str = "OK"
    message: str = "success"
    data: Optional[Any] = None


class ScheduleItemResponse(_CamelModel):
    assessment_code: str = Field(..., serialization_alias="assessmentCode")
    title: str
    display_order: int = Field(..., serialization_alias="displayOrder")
    category: AssessmentCategory
    weight: Optional[float] = None


class SemesterConfigResponse(_CamelModel):
    """学期配置响应模型"""
    config_id: Optional[int] = Field(None, serialization_alias="id")
    teacher_id: Optional[str] = Field(None, serialization_alias="teacherId")
    academic_year: str = Field(..., serialization_alias="academicYear")
    semester_exam_code: str = Field(..., serialization_alias="semesterExamCode")
    exam_schedule: List[ScheduleItemResponse] = Field(..., serialization_alias="examSchedule")
    monthly_weight: Optional[float] = Field(None, serialization_alias="monthlyWeight")
    semester_weight: Optional[float] = Field(None, serialization_alias="semesterWeight")
    annual_weight: Optional[float] = Field(None, serialization_alias="annualWeight")
    is_default: bool = Field(..., serialization_alias="isDefault")


class AssessmentTypeResponse(_CamelModel):
    id: int
    code: str
    name: str
    category: AssessmentCategory
    grade_level: Optional[str] = Field(None, serialization_alias="gradeLevel")
    default_weight: float = Field(..., serialization_alias="defaultWeight")
    max_score: float = Field(..., serialization_alias="maxScore")
    display_order: int = Field(0, serialization_alias="displayOrder")


class GradeResponse(_CamelModel):
    """成绩响应模型"""
    id: int
    teacher_id: str = Field(..., serialization_alias="teacherId")
    student_id: str = Field(..., serialization_alias="studentId")
    class_id: str = Field(..., serialization_alias="classId")
    subject_id: str = Field(..., serialization_alias="subjectId")
    assessment_type_code: str = Field(..., serialization_alias="assessmentCode")
    score: float
    max_score: float = Field(..., serialization_alias="maxScore")
    semester: int
    academic_year: str = Field(..., serialization_alias="academicYear")
    comments: Optional[str] = None
    created_at: Optional[datetime] = Field(None, serialization_alias="createdAt")
    updated_at: Optional[datetime] = Field(None, serialization_alias="updatedAt")


class AverageResponse(_CamelModel):
    """平均分响应模型"""
    student_id: str = Field(..., serialization_alias="studentId")
    class_id: str = Field(..., serialization_alias="classId")
    subject_id: Optional[str] = Field(None, serialization_alias="subjectId")
    semester: Optional[int] = None
    academic_year: str = Field(..., serialization_alias="academicYear")
    average_type: AverageType = Field(..., serialization_alias="averageType")
    average_score: float = Field(..., serialization_alias="averageScore")
    letter_grade: str = Field(..., serialization_alias="letterGrade")
    class_rank: Optional[int] = Field(None, serialization_alias="classRank")
    subject_rank: Optional[int] = Field(None, serialization_alias="subjectRank")
    total_students: Optional[int] = Field(None, serialization_alias="totalStudents")
    calculated_at: Optional[datetime] = Field(None, serialization_alias="calculatedAt")


class RankingEntryResponse(BaseModel):
    student_id: str = Field(..., serialization_alias="studentId")
    average_score: float = Field(..., serialization_alias="averageScore")
    letter_grade: str = Field(..., serialization_alias="letterGrade")
    rank: Optional[int] = None
    total_students: Optional[int] = Field(None, serialization_alias="totalStudents")
