# 成绩服务错误码与异常定义
import enum
from typing import Any, Dict, Optional


class GradeErrorCode(str, enum.Enum):
    """成绩服务错误码（前端按错误码做多语言展示）"""
    # 配置错误
    CONFIG_NOT_FOUND = "CONFIG_NOT_FOUND"
    INVALID_CONFIG = "INVALID_CONFIG"
    MONTHLY_EXAM_COUNT_OUT_OF_RANGE = "MONTHLY_EXAM_COUNT_OUT_OF_RANGE"
    WEIGHTS_MUST_SUM_TO_100 = "WEIGHTS_MUST_SUM_TO_100"

    # 计算错误
    MISSING_MONTHLY_EXAMS = "MISSING_MONTHLY_EXAMS"
    MISSING_SEMESTER_EXAM = "MISSING_SEMESTER_EXAM"
    INSUFFICIENT_GRADES_FOR_CALCULATION = "INSUFFICIENT_GRADES_FOR_CALCULATION"
    CALCULATION_ERROR = "CALCULATION_ERROR"

    # 成绩录入错误
    SCORE_OUT_OF_RANGE = "SCORE_OUT_OF_RANGE"
    INVALID_SCORE = "INVALID_SCORE"
    GRADE_NOT_FOUND = "GRADE_NOT_FOUND"
    DUPLICATE_GRADE_ENTRY = "DUPLICATE_GRADE_ENTRY"

    # 参考数据错误
    ASSESSMENT_TYPE_NOT_FOUND = "ASSESSMENT_TYPE_NOT_FOUND"
    SUBJECT_NOT_FOUND = "SUBJECT_NOT_FOUND"

    # 通用错误
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# 错误码 -> HTTP状态码
HTTP_STATUS_BY_CODE = {
    GradeErrorCode.CONFIG_NOT_FOUND: 404,
    GradeErrorCode.GRADE_NOT_FOUND: 404,
    GradeErrorCode.ASSESSMENT_TYPE_NOT_FOUND: 404,
    GradeErrorCode.SUBJECT_NOT_FOUND: 404,
    GradeErrorCode.INVALID_CONFIG: 400,
    GradeErrorCode.MONTHLY_EXAM_COUNT_OUT_OF_RANGE: 400,
    GradeErrorCode.WEIGHTS_MUST_SUM_TO_100: 400,
    GradeErrorCode.SCORE_OUT_OF_RANGE: 400,
    GradeErrorCode.INVALID_SCORE: 400,
    GradeErrorCode.VALIDATION_ERROR: 400,
    GradeErrorCode.DUPLICATE_GRADE_ENTRY: 409,
    GradeErrorCode.UNAUTHORIZED: 401,
    GradeErrorCode.FORBIDDEN: 403,
    GradeErrorCode.MISSING_MONTHLY_EXAMS: 422,
    GradeErrorCode.MISSING_SEMESTER_EXAM: 422,
    GradeErrorCode.INSUFFICIENT_GRADES_FOR_CALCULATION: 422,
    GradeErrorCode.CALCULATION_ERROR: 500,
    GradeErrorCode.INTERNAL_ERROR: 500,
}


class GradeServiceError(Exception):
    """成绩服务异常基类，携带稳定的错误码"""

    code = GradeErrorCode.INTERNAL_ERROR

    def __init__(self, message: str = "", code: Optional[GradeErrorCode] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.code.value)
        if code is not None:
            self.code = code
        self.message = message or self.code.value
        self.details = details or {}

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_CODE.get(self.code, 500)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class ConfigNotFoundError(GradeServiceError):
    """教师配置与默认配置均不存在"""
    code = GradeErrorCode.CONFIG_NOT_FOUND

    def __init__(self, academic_year: str, semester_exam_code: str):
        super().__init__(
            f"未找到学期配置: {academic_year}/{semester_exam_code}",
            details={"academicYear": academic_year, "semesterExamCode": semester_exam_code},
        )


class InvalidConfigError(GradeServiceError):
    """配置校验失败（写入时拒绝）"""
    code = GradeErrorCode.INVALID_CONFIG


class InsufficientGradesError(GradeServiceError):
    """输入不完整导致无法计算（非系统故障）"""
    code = GradeErrorCode.INSUFFICIENT_GRADES_FOR_CALCULATION


class InvalidGradeDataError(GradeServiceError):
    """成绩录入数据不合法"""
    code = GradeErrorCode.INVALID_SCORE


class CalculationError(GradeServiceError):
    """计算过程中的意外错误"""
    code = GradeErrorCode.CALCULATION_ERROR


class NotFoundError(GradeServiceError):
    """实体不存在"""
    code = GradeErrorCode.GRADE_NOT_FOUND


class DuplicateGradeError(GradeServiceError):
    """重复录入同一考核的成绩"""
    code = GradeErrorCode.DUPLICATE_GRADE_ENTRY
