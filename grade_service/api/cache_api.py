from fastapi import APIRouter, Depends, Query
import logging

from ..database.cache import GradeCache
from ..schemas.response_schemas import ApiResponse
from .dependencies import get_grade_cache, get_teacher_id

logger = logging.getLogger(__name__)
router = APIRouter()


@router.delete("/teacher", response_model=ApiResponse)
def evict_teacher_cache(teacher_id: str = Depends(get_teacher_id),
                        cache: GradeCache = Depends(get_grade_cache)):
    """清理当前教师的全部缓存"""
    deleted = cache.evict_teacher_cache(teacher_id)
    return ApiResponse(message="教师缓存已清理", data={"evicted": deleted})


@router.delete("/class/{class_id}/semester/{semester}", response_model=ApiResponse)
def evict_class_cache(class_id: str, semester: int,
                      academic_year: str = Query(..., alias="academicYear"),
                      teacher_id: str = Depends(get_teacher_id),
                      cache: GradeCache = Depends(get_grade_cache)):
    deleted = cache.evict_class_cache(teacher_id, class_id, semester, academic_year)
    return ApiResponse(message="班级缓存已清理", data={"evicted": deleted})


@router.post("/reload", response_model=ApiResponse)
def reload_cache(teacher_id: str = Depends(get_teacher_id),
                 cache: GradeCache = Depends(get_grade_cache)):
    """清空全部成绩缓存，后续读取按需重建"""
    logger.info(f"Full cache reload requested by teacher {teacher_id}")
    deleted = cache.evict_all()
    return ApiResponse(message="缓存已重置", data={"evicted": deleted})


@router.get("/stats", response_model=ApiResponse)
def cache_stats(cache: GradeCache = Depends(get_grade_cache)):
    return ApiResponse(data=cache.get_cache_stats())
