# 数据库枚举定义
import enum


class AssessmentCategory(str, enum.Enum):
    """考核类别枚举"""
    MONTHLY = "MONTHLY"
    SEMESTER = "SEMESTER"
    ANNUAL = "ANNUAL"


class AverageType(str, enum.Enum):
    """平均分类型枚举"""
    MONTHLY_AVERAGE = "MONTHLY_AVERAGE"      # 科目月考平均
    SEMESTER_AVERAGE = "SEMESTER_AVERAGE"    # 科目学期平均（月考+期末）
    SUBJECT_ANNUAL = "SUBJECT_ANNUAL"        # 科目学年平均
    OVERALL_SEMESTER = "OVERALL_SEMESTER"    # 全科学期平均
    OVERALL_ANNUAL = "OVERALL_ANNUAL"        # 全科学年平均


class GradeEventType(str, enum.Enum):
    """成绩事件类型枚举（值即路由键）"""
    GRADE_ENTERED = "grade.entered"
    GRADE_UPDATED = "grade.updated"
    GRADE_DELETED = "grade.deleted"
    AVERAGE_CALCULATED = "average.calculated"


class RankingPolicy(str, enum.Enum):
    """并列排名策略枚举"""
    COMPETITION = "competition"   # 1224
    DENSE = "dense"               # 1223
