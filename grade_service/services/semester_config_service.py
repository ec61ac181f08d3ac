# 学期配置服务：解析教师配置（回退到默认配置）与配置维护
import logging
from collections import Counter
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from ..calculation.average_calculator import GradingPolicy, to_decimal
from ..database.cache import GradeCache
from ..database.enums import AssessmentCategory
from ..database.models import SemesterConfig
from ..database.repositories import AssessmentTypeRepository, SemesterConfigRepository
from ..database.schemas import ExamScheduleConfig, ScheduleItem
from ..errors import ConfigNotFoundError, GradeErrorCode, InvalidConfigError
from ..schemas.request_schemas import SemesterConfigRequest

logger = logging.getLogger(__name__)


def semester_exam_code(semester: int) -> str:
    """学期号 -> 学期考试代码"""
    return f"SEMESTER_{semester}"


class SemesterConfigService:
    """学期配置服务"""

    def __init__(self, db_session: Session, cache: Optional[GradeCache] = None):
        self.db = db_session
        self.config_repo = SemesterConfigRepository(db_session)
        self.assessment_repo = AssessmentTypeRepository(db_session)
        self.cache = cache

    # 解析

    def resolve(self, teacher_id: Optional[str], academic_year: str,
                semester_exam_code: str) -> ExamScheduleConfig:
        """教师配置优先，其次默认配置，都没有则抛出 CONFIG_NOT_FOUND"""
        row = None
        if teacher_id is not None:
            row = self.config_repo.find(teacher_id, academic_year, semester_exam_code)
        if row is None:
            row = self.config_repo.find(None, academic_year, semester_exam_code)
            if row is not None:
                logger.debug(f"Teacher {teacher_id} has no config for "
                             f"{academic_year}/{semester_exam_code}, using default")
        if row is None:
            raise ConfigNotFoundError(academic_year, semester_exam_code)
        return self.to_schedule_config(row)

    def list_for_year(self, teacher_id: Optional[str], academic_year: str) -> List[ExamScheduleConfig]:
        codes = self.config_repo.list_exam_codes(academic_year, teacher_id)
        return [self.resolve(teacher_id, academic_year, code) for code in codes]

    def to_schedule_config(self, row: SemesterConfig) -> ExamScheduleConfig:
        raw_items = sorted(row.exam_schedule or [], key=lambda item: item.get("displayOrder", 0))
        types = self.assessment_repo.get_by_codes(item["assessmentCode"] for item in raw_items)

        items = []
        for raw in raw_items:
            assessment_type = types.get(raw["assessmentCode"])
            if assessment_type is None:
                raise InvalidConfigError(
                    f"配置引用了不存在的考核类型: {raw['assessmentCode']}",
                    details={"assessmentCode": raw["assessmentCode"], "configId": row.id},
                )
            weight = raw.get("weight")
            items.append(ScheduleItem(
                assessment_code=raw["assessmentCode"],
                title=raw.get("title") or assessment_type.name,
                display_order=int(raw.get("displayOrder", 0)),
                category=assessment_type.category,
                weight=to_decimal(weight) if weight is not None else None,
            ))

        return ExamScheduleConfig(
            academic_year=row.academic_year,
            semester_exam_code=row.semester_exam_code,
            exam_schedule=tuple(items),
            teacher_id=row.teacher_id,
            monthly_weight=row.monthly_weight,
            semester_weight=row.semester_weight,
            annual_weight=row.annual_weight,
            config_id=row.id,
        )

    # 校验

    def validate(self, request: SemesterConfigRequest) -> List[ScheduleItem]:
        """写入前校验，失败时不做任何写入"""
        schedule = request.exam_schedule
        if len(schedule) > GradingPolicy.MAX_SCHEDULE_ITEMS:
            raise InvalidConfigError(
                f"考试安排最多 {GradingPolicy.MAX_SCHEDULE_ITEMS} 项",
                details={"count": len(schedule)},
            )

        codes = [item.assessment_code for item in schedule]
        duplicates = sorted(code for code, count in Counter(codes).items() if count > 1)
        if duplicates:
            raise InvalidConfigError(
                f"考试安排中存在重复的考核: {', '.join(duplicates)}",
                details={"duplicateCodes": duplicates},
            )

        types = self.assessment_repo.get_by_codes(codes + [request.semester_exam_code])
        unknown = sorted(set(codes + [request.semester_exam_code]) - set(types))
        if unknown:
            raise InvalidConfigError(
                f"不存在的考核类型: {', '.join(unknown)}",
                details={"unknownCodes": unknown},
            )

        if types[request.semester_exam_code].category != AssessmentCategory.SEMESTER:
            raise InvalidConfigError(
                f"{request.semester_exam_code} 不是学期考试",
                details={"semesterExamCode": request.semester_exam_code},
            )

        items = []
        for item in schedule:
            category = types[item.assessment_code].category
            if category == AssessmentCategory.ANNUAL or (
                category == AssessmentCategory.SEMESTER
                and item.assessment_code != request.semester_exam_code
            ):
                raise InvalidConfigError(
                    f"考核 {item.assessment_code} 不能出现在 {request.semester_exam_code} 的安排中",
                    details={"assessmentCode": item.assessment_code},
                )
            items.append(ScheduleItem(
                assessment_code=item.assessment_code,
                title=item.title,
                display_order=item.display_order,
                category=category,
                weight=item.weight,
            ))

        monthly = [item for item in items if item.category == AssessmentCategory.MONTHLY]
        if not GradingPolicy.MIN_MONTHLY_EXAMS <= len(monthly) <= GradingPolicy.MAX_MONTHLY_EXAMS:
            raise InvalidConfigError(
                f"月考次数必须在 {GradingPolicy.MIN_MONTHLY_EXAMS}-{GradingPolicy.MAX_MONTHLY_EXAMS} 之间",
                code=GradeErrorCode.MONTHLY_EXAM_COUNT_OUT_OF_RANGE,
                details={"monthlyExamCount": len(monthly)},
            )

        slot_weights = [item.weight for item in monthly]
        if any(w is not None for w in slot_weights):
            if any(w is None for w in slot_weights):
                raise InvalidConfigError(
                    "部分月考设置了权重时，所有月考都必须设置权重",
                    code=GradeErrorCode.WEIGHTS_MUST_SUM_TO_100,
                )
            self._require_hundred(slot_weights, "月考权重")

        if request.monthly_weight is not None or request.semester_weight is not None:
            if request.monthly_weight is None or request.semester_weight is None:
                raise InvalidConfigError(
                    "月考权重与期末权重必须同时设置",
                    code=GradeErrorCode.WEIGHTS_MUST_SUM_TO_100,
                )
            self._require_hundred([request.monthly_weight, request.semester_weight], "学期权重")

        return items

    @staticmethod
    def _require_hundred(weights: List[Decimal], label: str) -> None:
        total = sum((to_decimal(w) for w in weights), Decimal("0"))
        if total != GradingPolicy.WEIGHT_TOTAL:
            raise InvalidConfigError(
                f"{label}之和必须为100，当前为 {total}",
                code=GradeErrorCode.WEIGHTS_MUST_SUM_TO_100,
                details={"total": str(total)},
            )

    # 维护

    def _save(self, teacher_id: Optional[str], request: SemesterConfigRequest) -> ExamScheduleConfig:
        items = self.validate(request)
        row = self.config_repo.upsert(
            teacher_id,
            request.academic_year,
            request.semester_exam_code,
            {
                "exam_schedule": [item.to_json() for item in items],
                "monthly_weight": request.monthly_weight,
                "semester_weight": request.semester_weight,
                "annual_weight": request.annual_weight,
            },
        )
        scope = f"teacher {teacher_id}" if teacher_id else "default"
        logger.info(f"Saved {scope} semester config {request.academic_year}/{request.semester_exam_code}")
        self._evict(teacher_id)
        return self.to_schedule_config(row)

    def save_teacher_config(self, teacher_id: str, request: SemesterConfigRequest) -> ExamScheduleConfig:
        return self._save(teacher_id, request)

    def save_default_config(self, request: SemesterConfigRequest) -> ExamScheduleConfig:
        return self._save(None, request)

    def delete_teacher_config(self, teacher_id: str, academic_year: str, semester_exam_code: str) -> bool:
        """只删除教师自己的配置，默认配置不受影响"""
        deleted = self.config_repo.delete(teacher_id, academic_year, semester_exam_code)
        if deleted:
            logger.info(f"Deleted teacher {teacher_id} config {academic_year}/{semester_exam_code}")
            self._evict(teacher_id)
        return deleted

    def delete_default_config(self, academic_year: str, semester_exam_code: str) -> None:
        if not self.config_repo.delete(None, academic_year, semester_exam_code):
            raise ConfigNotFoundError(academic_year, semester_exam_code)
        logger.info(f"Deleted default config {academic_year}/{semester_exam_code}")
        self._evict(None)

    def list_default_configs(self) -> List[ExamScheduleConfig]:
        return [self.to_schedule_config(row) for row in self.config_repo.list_defaults()]

    def list_default_configs_for_year(self, academic_year: str) -> List[ExamScheduleConfig]:
        return [self.to_schedule_config(row) for row in self.config_repo.list_defaults(academic_year)]

    def available_academic_years(self) -> List[str]:
        return self.config_repo.list_academic_years()

    def default_config_exists(self, academic_year: str, semester_exam_code: str) -> bool:
        return self.config_repo.find(None, academic_year, semester_exam_code) is not None

    def _evict(self, teacher_id: Optional[str]) -> None:
        # 配置参与平均分计算，变更后清理对应缓存
        if self.cache is None:
            return
        if teacher_id is None:
            self.cache.evict_all()
        else:
            self.cache.evict_teacher_cache(teacher_id)
