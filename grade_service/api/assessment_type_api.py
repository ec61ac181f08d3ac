from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional
import logging

from ..database.connection import get_db
from ..database.enums import AssessmentCategory
from ..database.repositories import AssessmentTypeRepository
from ..errors import InvalidConfigError
from ..schemas.request_schemas import AssessmentTypeCreateRequest
from ..schemas.response_schemas import ApiResponse, AssessmentTypeResponse

logger = logging.getLogger(__name__)
router = APIRouter()


def get_assessment_type_repository(db: Session = Depends(get_db)) -> AssessmentTypeRepository:
    return AssessmentTypeRepository(db)


@router.get("", response_model=ApiResponse)
def list_assessment_types(category: Optional[AssessmentCategory] = Query(None),
                          repo: AssessmentTypeRepository = Depends(get_assessment_type_repository)):
    """考核类型列表（参考数据）"""
    types = repo.list_all(category)
    return ApiResponse(data=[
        AssessmentTypeResponse.model_validate(t).model_dump(mode="json", by_alias=True) for t in types
    ])


@router.post("", response_model=ApiResponse)
def create_assessment_type(request: AssessmentTypeCreateRequest,
                           repo: AssessmentTypeRepository = Depends(get_assessment_type_repository)):
    if repo.get_by_code(request.code) is not None:
        raise InvalidConfigError(f"考核类型已存在: {request.code}", details={"code": request.code})
    created = repo.create(request.model_dump())
    return ApiResponse(
        message="考核类型已创建",
        data=AssessmentTypeResponse.model_validate(created).model_dump(mode="json", by_alias=True),
    )
