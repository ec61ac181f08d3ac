from fastapi import APIRouter, Depends
from typing import Any, Dict, List
import logging

from ..database.schemas import ExamScheduleConfig
from ..schemas.request_schemas import SemesterConfigRequest
from ..schemas.response_schemas import ApiResponse, SemesterConfigResponse
from ..services.semester_config_service import SemesterConfigService
from .dependencies import get_config_service, get_teacher_id, require_admin

logger = logging.getLogger(__name__)
router = APIRouter()


def _config_payload(config: ExamScheduleConfig) -> Dict[str, Any]:
    return SemesterConfigResponse.model_validate(config).model_dump(mode="json", by_alias=True)


def _configs_payload(configs: List[ExamScheduleConfig]) -> List[Dict[str, Any]]:
    return [_config_payload(config) for config in configs]


# 管理员接口（默认配置），需在带路径参数的路由之前注册，调用方须带管理员角色头
@router.get("/admin/defaults", response_model=ApiResponse,
            dependencies=[Depends(require_admin)])
def list_default_configs(service: SemesterConfigService = Depends(get_config_service)):
    """获取全部默认配置"""
    return ApiResponse(data=_configs_payload(service.list_default_configs()))


@router.get("/admin/defaults/{academic_year}", response_model=ApiResponse,
            dependencies=[Depends(require_admin)])
def list_default_configs_for_year(academic_year: str,
                                  service: SemesterConfigService = Depends(get_config_service)):
    return ApiResponse(data=_configs_payload(service.list_default_configs_for_year(academic_year)))


@router.post("/admin/defaults", response_model=ApiResponse,
             dependencies=[Depends(require_admin)])
def save_default_config(request: SemesterConfigRequest,
                        service: SemesterConfigService = Depends(get_config_service)):
    """保存默认配置（覆盖同学年同学期的默认配置）"""
    config = service.save_default_config(request)
    return ApiResponse(message="默认配置已保存", data=_config_payload(config))


@router.delete("/admin/defaults/{academic_year}/{semester_exam_code}", response_model=ApiResponse,
               dependencies=[Depends(require_admin)])
def delete_default_config(academic_year: str, semester_exam_code: str,
                          service: SemesterConfigService = Depends(get_config_service)):
    service.delete_default_config(academic_year, semester_exam_code)
    return ApiResponse(message="默认配置已删除")


@router.get("/admin/academic-years", response_model=ApiResponse,
            dependencies=[Depends(require_admin)])
def available_academic_years(service: SemesterConfigService = Depends(get_config_service)):
    return ApiResponse(data=service.available_academic_years())


# 教师接口
@router.post("/teacher", response_model=ApiResponse)
def save_teacher_config(request: SemesterConfigRequest,
                        teacher_id: str = Depends(get_teacher_id),
                        service: SemesterConfigService = Depends(get_config_service)):
    """保存教师自定义配置"""
    config = service.save_teacher_config(teacher_id, request)
    return ApiResponse(message="教师配置已保存", data=_config_payload(config))


@router.delete("/teacher/{academic_year}/{semester_exam_code}", response_model=ApiResponse)
def delete_teacher_config(academic_year: str, semester_exam_code: str,
                          teacher_id: str = Depends(get_teacher_id),
                          service: SemesterConfigService = Depends(get_config_service)):
    """删除教师配置，之后回退到默认配置"""
    deleted = service.delete_teacher_config(teacher_id, academic_year, semester_exam_code)
    return ApiResponse(message="教师配置已删除" if deleted else "教师配置不存在", data={"deleted": deleted})


@router.get("/{academic_year}/{semester_exam_code}", response_model=ApiResponse)
def get_config(academic_year: str, semester_exam_code: str,
               teacher_id: str = Depends(get_teacher_id),
               service: SemesterConfigService = Depends(get_config_service)):
    """获取生效配置（教师配置优先，其次默认配置）"""
    return ApiResponse(data=_config_payload(service.resolve(teacher_id, academic_year, semester_exam_code)))


@router.get("/{academic_year}", response_model=ApiResponse)
def list_configs_for_year(academic_year: str,
                          teacher_id: str = Depends(get_teacher_id),
                          service: SemesterConfigService = Depends(get_config_service)):
    return ApiResponse(data=_configs_payload(service.list_for_year(teacher_id, academic_year)))
