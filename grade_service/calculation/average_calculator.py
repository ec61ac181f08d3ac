# 平均分与等级计算（纯函数，不访问数据库）
import functools
import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, DivisionByZero
from typing import Iterable, List, Mapping, Optional, Sequence, Union

from ..database.schemas import GradeScore, ExamScheduleConfig
from ..errors import (
    GradeErrorCode, InsufficientGradesError, InvalidGradeDataError,
    InvalidConfigError, CalculationError
)

logger = logging.getLogger(__name__)

Number = Union[Decimal, int, float, str]


class GradingPolicy:
    """评分政策常量"""

    # 小数位数与舍入方式
    SCALE = Decimal("0.01")
    ROUNDING = ROUND_HALF_UP

    # 等级阈值（含下限，按降序匹配）
    LETTER_THRESHOLDS = (
        (Decimal("85"), "A"),
        (Decimal("70"), "B"),
        (Decimal("55"), "C"),
        (Decimal("40"), "D"),
        (Decimal("25"), "E"),
    )
    FAILING_GRADE = "F"

    # 学期平均默认权重：月考平均60%，期末考试40%
    DEFAULT_MONTHLY_WEIGHT = Decimal("60")
    DEFAULT_SEMESTER_WEIGHT = Decimal("40")
    WEIGHT_TOTAL = Decimal("100")

    # 每学期月考次数范围
    MIN_MONTHLY_EXAMS = 1
    MAX_MONTHLY_EXAMS = 8

    # 考试安排最多条目
    MAX_SCHEDULE_ITEMS = 10

    SEMESTERS = (1, 2)


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # float 先转字符串，避免二进制误差进入计算
    return Decimal(str(value))


def round_score(value: Decimal) -> Decimal:
    """保留两位小数，四舍五入"""
    return value.quantize(GradingPolicy.SCALE, rounding=GradingPolicy.ROUNDING)


def percentage(score: Number, max_score: Number = 100) -> Decimal:
    """得分百分比，结果限定在 [0, 100]"""
    score_value = to_decimal(score)
    max_value = to_decimal(max_score)

    if score_value < 0 or max_value <= 0:
        raise InvalidGradeDataError(
            f"无效分数: score={score_value}, max_score={max_value}",
            details={"score": str(score_value), "maxScore": str(max_value)},
        )
    if score_value > max_value:
        raise InvalidGradeDataError(
            f"分数超出满分: {score_value} > {max_value}",
            code=GradeErrorCode.SCORE_OUT_OF_RANGE,
            details={"score": str(score_value), "maxScore": str(max_value)},
        )

    result = score_value / max_value * GradingPolicy.WEIGHT_TOTAL
    return min(max(result, Decimal("0")), GradingPolicy.WEIGHT_TOTAL)


def letter_grade(score: Optional[Number]) -> str:
    """分数 -> 等级，阈值含下限"""
    if score is None:
        raise InsufficientGradesError(
            "缺少分数，无法确定等级",
            details={"letterGrade": GradingPolicy.FAILING_GRADE},
        )
    value = to_decimal(score)
    for threshold, grade in GradingPolicy.LETTER_THRESHOLDS:
        if value >= threshold:
            return grade
    return GradingPolicy.FAILING_GRADE


def _guard_arithmetic(operation: str):
    """把意外的算术错误统一转换为 CALCULATION_ERROR"""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except (InvalidOperation, DivisionByZero, ArithmeticError, TypeError) as e:
                logger.error(f"Arithmetic failure in {operation}: {str(e)}")
                raise CalculationError(f"{operation} 计算失败: {str(e)}")
        return wrapper
    return decorator


@_guard_arithmetic("monthly_average")
def compute_monthly_average(entries: Iterable[GradeScore], config: ExamScheduleConfig) -> Decimal:
    """月考平均分

    配置中的每个月考都必须有成绩，否则抛出 MISSING_MONTHLY_EXAMS 并列出缺失的考核。
    月考项带权重时按权重加权（权重和为100），否则取各次百分比的算术平均。
    """
    slots = config.monthly_slots()
    if not slots:
        raise InvalidConfigError(
            f"学期配置没有月考: {config.academic_year}/{config.semester_exam_code}",
            code=GradeErrorCode.MONTHLY_EXAM_COUNT_OUT_OF_RANGE,
        )

    by_code = {entry.assessment_code: entry for entry in entries}
    missing = [slot.assessment_code for slot in slots if slot.assessment_code not in by_code]
    if missing:
        raise InsufficientGradesError(
            f"缺少月考成绩: {', '.join(missing)}",
            code=GradeErrorCode.MISSING_MONTHLY_EXAMS,
            details={"missingAssessments": missing},
        )

    percentages = [
        percentage(by_code[slot.assessment_code].score, by_code[slot.assessment_code].max_score)
        for slot in slots
    ]
    if config.has_slot_weights():
        weighted = sum(
            (pct * to_decimal(slot.weight) for pct, slot in zip(percentages, slots)),
            Decimal("0"),
        )
        return round_score(weighted / GradingPolicy.WEIGHT_TOTAL)
    return round_score(sum(percentages, Decimal("0")) / Decimal(len(percentages)))


def semester_weights(config: Optional[ExamScheduleConfig]) -> tuple:
    """(月考权重, 期末权重)，配置未指定时使用默认 60/40"""
    if config is not None and config.monthly_weight is not None and config.semester_weight is not None:
        return to_decimal(config.monthly_weight), to_decimal(config.semester_weight)
    return GradingPolicy.DEFAULT_MONTHLY_WEIGHT, GradingPolicy.DEFAULT_SEMESTER_WEIGHT


@_guard_arithmetic("semester_average")
def compute_semester_average(monthly_average: Optional[Decimal],
                             semester_exam_entry: Optional[GradeScore],
                             config: Optional[ExamScheduleConfig] = None) -> Decimal:
    """科目学期平均 = 月考平均 × 月考权重 + 期末百分比 × 期末权重"""
    if monthly_average is None:
        raise InsufficientGradesError(
            "缺少月考平均分",
            code=GradeErrorCode.MISSING_MONTHLY_EXAMS,
        )
    if semester_exam_entry is None:
        raise InsufficientGradesError(
            "缺少期末考试成绩",
            code=GradeErrorCode.MISSING_SEMESTER_EXAM,
            details={"semesterExamCode": config.semester_exam_code if config else None},
        )

    monthly_weight, semester_weight = semester_weights(config)
    exam_percentage = percentage(semester_exam_entry.score, semester_exam_entry.max_score)
    combined = (
        to_decimal(monthly_average) * monthly_weight + exam_percentage * semester_weight
    ) / GradingPolicy.WEIGHT_TOTAL
    return round_score(combined)


@_guard_arithmetic("annual_average")
def compute_annual_average(semester_averages: Mapping[int, Optional[Decimal]],
                           annual_weights: Optional[Mapping[int, Optional[Decimal]]] = None) -> Decimal:
    """学年平均：两个学期的平均

    两个学期都配置了 annual_weight 且和为100时按权重加权。
    """
    missing = [semester for semester in GradingPolicy.SEMESTERS
               if semester_averages.get(semester) is None]
    if missing:
        raise InsufficientGradesError(
            f"缺少学期平均分: 学期 {', '.join(str(s) for s in missing)}",
            details={"missingSemesters": missing},
        )

    values = [to_decimal(semester_averages[s]) for s in GradingPolicy.SEMESTERS]
    weights = _annual_weights(annual_weights)
    if weights is not None:
        weighted = sum((value * weight for value, weight in zip(values, weights)), Decimal("0"))
        return round_score(weighted / GradingPolicy.WEIGHT_TOTAL)
    return round_score(sum(values, Decimal("0")) / Decimal(len(values)))


def _annual_weights(annual_weights: Optional[Mapping[int, Optional[Decimal]]]) -> Optional[List[Decimal]]:
    if not annual_weights:
        return None
    weights = [annual_weights.get(s) for s in GradingPolicy.SEMESTERS]
    if any(w is None for w in weights):
        return None
    weights = [to_decimal(w) for w in weights]
    if sum(weights, Decimal("0")) != GradingPolicy.WEIGHT_TOTAL:
        logger.warning(f"Annual weights {weights} do not sum to 100, using equal weights")
        return None
    return weights


@_guard_arithmetic("overall_average")
def compute_overall_average(subject_averages: Sequence[Decimal]) -> Decimal:
    """全科平均：各科平均的算术平均"""
    values = [to_decimal(v) for v in subject_averages if v is not None]
    if not values:
        raise InsufficientGradesError("没有可用的科目平均分")
    return round_score(sum(values, Decimal("0")) / Decimal(len(values)))
