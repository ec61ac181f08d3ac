from fastapi import APIRouter, Depends, Query
from typing import Any, Dict, Optional
import logging

from ..database.models import Grade
from ..schemas.request_schemas import (
    BulkGradeRequest, GradeCreateRequest, GradeUpdateRequest, MonthlyGradeEntryRequest
)
from ..schemas.response_schemas import ApiResponse, GradeResponse
from ..services.grade_entry_service import BulkEntryResult, GradeService
from .dependencies import get_grade_service, get_teacher_id

logger = logging.getLogger(__name__)
router = APIRouter()


def _grade_payload(grade: Grade) -> Dict[str, Any]:
    return GradeResponse.model_validate(grade).model_dump(mode="json", by_alias=True)


@router.post("", response_model=ApiResponse)
def create_grade(request: GradeCreateRequest,
                 teacher_id: str = Depends(get_teacher_id),
                 service: GradeService = Depends(get_grade_service)):
    """录入成绩，并触发平均分重算"""
    grade = service.create_grade(teacher_id, request)
    return ApiResponse(message="成绩已录入", data=_grade_payload(grade))


def _bulk_payload(result: BulkEntryResult) -> Dict[str, Any]:
    return {
        "grades": [_grade_payload(grade) for grade in result.grades],
        "saved": len(result.grades),
        "skipped": result.skipped,
    }


@router.post("/bulk", response_model=ApiResponse)
def create_bulk_grades(request: BulkGradeRequest,
                       teacher_id: str = Depends(get_teacher_id),
                       service: GradeService = Depends(get_grade_service)):
    """批量录入同一考核的成绩，整批校验、一次提交"""
    result = service.create_bulk_grades(teacher_id, request)
    return ApiResponse(message=f"已录入 {len(result.grades)} 条成绩", data=_bulk_payload(result))


@router.post("/monthly/{class_id}/{subject_id}", response_model=ApiResponse)
def enter_monthly_grades(class_id: str, subject_id: str, request: MonthlyGradeEntryRequest,
                         teacher_id: str = Depends(get_teacher_id),
                         service: GradeService = Depends(get_grade_service)):
    """录入班级某科目的月考成绩表"""
    result = service.enter_monthly_grades(teacher_id, class_id, subject_id, request)
    return ApiResponse(message=f"已保存 {len(result.grades)} 条月考成绩", data=_bulk_payload(result))


@router.get("/student/{student_id}", response_model=ApiResponse)
def list_student_grades(student_id: str,
                        class_id: Optional[str] = Query(None, alias="classId"),
                        academic_year: Optional[str] = Query(None, alias="academicYear"),
                        semester: Optional[int] = Query(None, ge=1, le=2),
                        teacher_id: str = Depends(get_teacher_id),
                        service: GradeService = Depends(get_grade_service)):
    grades = service.list_student_grades(teacher_id, student_id, class_id, academic_year, semester)
    return ApiResponse(data=[_grade_payload(grade) for grade in grades])


@router.get("/{grade_id}", response_model=ApiResponse)
def get_grade(grade_id: int,
              teacher_id: str = Depends(get_teacher_id),
              service: GradeService = Depends(get_grade_service)):
    return ApiResponse(data=_grade_payload(service.get_grade(teacher_id, grade_id)))


@router.put("/{grade_id}", response_model=ApiResponse)
def update_grade(grade_id: int, request: GradeUpdateRequest,
                 teacher_id: str = Depends(get_teacher_id),
                 service: GradeService = Depends(get_grade_service)):
    grade = service.update_grade(teacher_id, grade_id, request)
    return ApiResponse(message="成绩已修改", data=_grade_payload(grade))


@router.delete("/{grade_id}", response_model=ApiResponse)
def delete_grade(grade_id: int,
                 teacher_id: str = Depends(get_teacher_id),
                 service: GradeService = Depends(get_grade_service)):
    service.delete_grade(teacher_id, grade_id)
    return ApiResponse(message="成绩已删除", data={"gradeId": grade_id})
