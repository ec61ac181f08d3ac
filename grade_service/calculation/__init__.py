# 成绩计算模块
from .average_calculator import (
    GradingPolicy,
    percentage,
    letter_grade,
    round_score,
    compute_monthly_average,
    compute_semester_average,
    compute_annual_average,
    compute_overall_average,
)
from .ranking import RankPosition, competition_rank, dense_rank, rank

__all__ = [
    'GradingPolicy',
    'percentage',
    'letter_grade',
    'round_score',
    'compute_monthly_average',
    'compute_semester_average',
    'compute_annual_average',
    'compute_overall_average',
    'RankPosition',
    'competition_rank',
    'dense_rank',
    'rank',
]
