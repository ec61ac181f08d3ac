from fastapi import APIRouter, Depends, Query
from dataclasses import asdict
import logging

from ..schemas.response_schemas import ApiResponse
from ..services.calculation_service import CalculationService
from .dependencies import get_calculation_service, get_teacher_id

logger = logging.getLogger(__name__)

averages_router = APIRouter()
rankings_router = APIRouter()
calculations_router = APIRouter()


@averages_router.get("/student/{student_id}", response_model=ApiResponse)
def get_student_averages(student_id: str,
                         class_id: str = Query(..., alias="classId"),
                         semester: int = Query(..., ge=1, le=2),
                         academic_year: str = Query(..., alias="academicYear"),
                         teacher_id: str = Depends(get_teacher_id),
                         service: CalculationService = Depends(get_calculation_service)):
    """学生学期平均分与学年平均分"""
    summary = service.get_student_summary(teacher_id, student_id, class_id, semester, academic_year)
    return ApiResponse(data=summary)


@rankings_router.get("/class/{class_id}/semester/{semester}", response_model=ApiResponse)
def get_class_rankings(class_id: str, semester: int,
                       academic_year: str = Query(..., alias="academicYear"),
                       teacher_id: str = Depends(get_teacher_id),
                       service: CalculationService = Depends(get_calculation_service)):
    """班级排名（全科学期平均）"""
    return ApiResponse(data=service.get_class_rankings(teacher_id, class_id, semester, academic_year))


@rankings_router.get("/class/{class_id}/subject/{subject_id}/semester/{semester}", response_model=ApiResponse)
def get_subject_rankings(class_id: str, subject_id: str, semester: int,
                         academic_year: str = Query(..., alias="academicYear"),
                         teacher_id: str = Depends(get_teacher_id),
                         service: CalculationService = Depends(get_calculation_service)):
    """科目排名（科目学期平均）"""
    return ApiResponse(
        data=service.get_subject_rankings(teacher_id, class_id, subject_id, semester, academic_year)
    )


@calculations_router.post("/class/{class_id}/semester/{semester}", response_model=ApiResponse)
def calculate_class(class_id: str, semester: int,
                    academic_year: str = Query(..., alias="academicYear"),
                    teacher_id: str = Depends(get_teacher_id),
                    service: CalculationService = Depends(get_calculation_service)):
    """手动触发班级批量计算"""
    summary = service.calculate_class_averages(teacher_id, class_id, semester, academic_year)
    logger.info(f"Class calculation requested by teacher {teacher_id}: {class_id}/{semester}")
    return ApiResponse(message="班级平均分计算完成", data=asdict(summary))
