# 排名引擎
import pandas as pd
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Iterable, Optional, Tuple, Union

from ..database.enums import RankingPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankPosition:
    """排名位置"""
    rank: int
    total_students: int

    @property
    def display(self) -> str:
        return f"{self.rank}/{self.total_students}"


def competition_rank(scores: pd.Series) -> pd.Series:
    """标准竞赛排名（1224）：并列同名次，后续名次跳过"""
    return scores.rank(method="min", ascending=False).astype(int)


def dense_rank(scores: pd.Series) -> pd.Series:
    """密集排名（1223）：并列同名次，后续名次不跳过"""
    return scores.rank(method="dense", ascending=False).astype(int)


TIE_POLICIES: Dict[RankingPolicy, Callable[[pd.Series], pd.Series]] = {
    RankingPolicy.COMPETITION: competition_rank,
    RankingPolicy.DENSE: dense_rank,
}


def _resolve_policy(policy: Union[RankingPolicy, str, Callable, None]) -> Callable[[pd.Series], pd.Series]:
    if policy is None:
        return competition_rank
    if callable(policy):
        return policy
    return TIE_POLICIES[RankingPolicy(policy)]


def rank(cohort: Iterable[Tuple[str, Optional[Decimal]]],
         policy: Union[RankingPolicy, str, Callable, None] = None) -> Dict[str, RankPosition]:
    """按平均分降序排名

    没有平均分的学生不参与排名，total_students 为参与排名的人数。
    """
    scored = {student_id: score for student_id, score in cohort if score is not None}
    if not scored:
        return {}

    student_ids = sorted(scored)
    # Decimal保留两位小数，转float后相等关系不变
    scores = pd.Series([float(scored[sid]) for sid in student_ids], index=student_ids)
    ranks = _resolve_policy(policy)(scores)
    total = len(student_ids)

    logger.debug(f"Ranked cohort of {total} students")
    return {sid: RankPosition(rank=int(ranks[sid]), total_students=total) for sid in student_ids}
