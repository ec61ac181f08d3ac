# 平均分计算服务：收集输入、加锁计算、写入、排名、缓存失效与事件发布
import hashlib
import logging
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..calculation.average_calculator import (
    GradingPolicy, letter_grade, round_score, to_decimal,
    compute_monthly_average, compute_semester_average,
    compute_annual_average, compute_overall_average,
)
from ..calculation.ranking import RankPosition, rank
from ..database.cache import GradeCache
from ..database.enums import AverageType, RankingPolicy
from ..database.models import Grade, GradeAverage
from ..database.repositories import GradeRepository, GradeAverageRepository, SubjectRepository
from ..database.schemas import (
    AverageKey, CohortKey, ExamScheduleConfig, GradeScore, ClassCalculationSummary
)
from ..errors import (
    GradeServiceError, InsufficientGradesError, ConfigNotFoundError, CalculationError
)
from ..schemas.response_schemas import AverageResponse, RankingEntryResponse
from .event_publisher import AsyncEventDispatcher, AverageCalculatedEvent
from .locks import KeyedLockManager, LockManager
from .semester_config_service import SemesterConfigService, semester_exam_code

logger = logging.getLogger(__name__)

# 进程内共享的计算锁
_default_lock_manager = KeyedLockManager()

# 输入不完整（非系统故障）的异常
INCOMPLETE_INPUT_ERRORS = (InsufficientGradesError, ConfigNotFoundError)


def to_scores(grades: Iterable[Grade]) -> List[GradeScore]:
    return [
        GradeScore(
            assessment_code=grade.assessment_type_code,
            score=to_decimal(grade.score),
            max_score=to_decimal(grade.max_score),
            grade_id=grade.id,
        )
        for grade in grades
    ]


def source_fingerprint(grades: Iterable[Grade], configs: Iterable[ExamScheduleConfig]) -> str:
    """来源数据指纹：参与计算的成绩行与解析后的配置"""
    digest = hashlib.sha256()
    grade_parts = sorted(
        f"{g.id}|{g.subject_id}|{g.semester}|{g.assessment_type_code}"
        f"|{round_score(to_decimal(g.score))}|{round_score(to_decimal(g.max_score))}"
        for g in grades
    )
    for part in grade_parts:
        digest.update(part.encode("utf-8"))
        digest.update(b"\n")
    for config in configs:
        digest.update(b"#")
        digest.update(config.fingerprint_part().encode("utf-8"))
    return digest.hexdigest()


def grade_owner(grades: Iterable[Grade]) -> Optional[str]:
    """成绩的录入教师（取最早录入的一条）；没有成绩时为 None，即使用默认配置"""
    first = min(grades, key=lambda grade: grade.id, default=None)
    return first.teacher_id if first is not None else None


def shared_annual_weight(configs: Iterable[ExamScheduleConfig]) -> Optional[Decimal]:
    """各科配置的学年权重一致时取该值，否则为 None（两学期等权）"""
    weights = {config.annual_weight for config in configs}
    return weights.pop() if len(weights) == 1 else None


class CalculationService:
    """平均分计算服务

    同一平均分键的“计算+写入”在键锁内串行执行，读路径不加锁；事件在锁外发布。
    计算失败时不改动已存储的行（overwrite=True 时删除该键的过期行），并清理缓存。
    每个科目使用录入该科目成绩的教师的学期配置，与发起请求的教师无关，
    因此同一平均分键无论由谁读取都得到相同的结果。
    """

    def __init__(self, db_session: Session, cache: GradeCache,
                 dispatcher: Optional[AsyncEventDispatcher] = None,
                 lock_manager: Optional[LockManager] = None,
                 ranking_policy: RankingPolicy = RankingPolicy.COMPETITION):
        self.db = db_session
        self.cache = cache
        self.dispatcher = dispatcher
        self.lock_manager = lock_manager or _default_lock_manager
        self.ranking_policy = ranking_policy
        self.grade_repo = GradeRepository(db_session)
        self.average_repo = GradeAverageRepository(db_session)
        self.subject_repo = SubjectRepository(db_session)
        self.config_service = SemesterConfigService(db_session, cache)

    # 输入收集与计算（不写库）

    def _config_for(self, grades: List[Grade], academic_year: str, semester: int) -> ExamScheduleConfig:
        """科目成绩所属教师的学期配置（没有教师配置时为默认配置）"""
        return self.config_service.resolve(grade_owner(grades), academic_year, semester_exam_code(semester))

    def _semester_subject_score(self, grades: List[Grade],
                                config: ExamScheduleConfig) -> Tuple[Decimal, Decimal]:
        """返回 (月考平均, 科目学期平均)"""
        scores = to_scores(grades)
        monthly = compute_monthly_average(scores, config)
        by_code = {score.assessment_code: score for score in scores}
        return monthly, compute_semester_average(monthly, by_code.get(config.semester_exam_code), config)

    def _overall_semester_score(self, key: AverageKey,
                                grades: List[Grade]) -> Tuple[Decimal, List[ExamScheduleConfig]]:
        """全科学期平均，返回 (平均分, 各科使用的配置)"""
        by_subject: Dict[str, List[Grade]] = defaultdict(list)
        for grade in grades:
            by_subject[grade.subject_id].append(grade)

        subject_averages = []
        configs = []
        for subject_id in sorted(by_subject):
            subject_grades = by_subject[subject_id]
            config = self._config_for(subject_grades, key.academic_year, key.semester)
            configs.append(config)
            try:
                _, semester_average = self._semester_subject_score(subject_grades, config)
                subject_averages.append(semester_average)
            except InsufficientGradesError as e:
                logger.info(f"Skipping subject {subject_id} for student {key.student_id}: {e.message}")

        if not subject_averages:
            raise InsufficientGradesError(
                f"学生 {key.student_id} 第{key.semester}学期没有完整成绩的科目",
                details={"studentId": key.student_id, "semester": key.semester},
            )
        return compute_overall_average(subject_averages), configs

    def _evaluate(self, key: AverageKey) -> Tuple[Decimal, str]:
        """按键计算平均分，返回 (平均分, 来源指纹)"""
        average_type = key.average_type

        if average_type in (AverageType.MONTHLY_AVERAGE, AverageType.SEMESTER_AVERAGE):
            grades = self.grade_repo.list_for_subject(
                key.student_id, key.class_id, key.subject_id, key.semester, key.academic_year
            )
            config = self._config_for(grades, key.academic_year, key.semester)
            if average_type == AverageType.MONTHLY_AVERAGE:
                score = compute_monthly_average(to_scores(grades), config)
            else:
                _, score = self._semester_subject_score(grades, config)
            return score, source_fingerprint(grades, [config])

        if average_type == AverageType.OVERALL_SEMESTER:
            grades = self.grade_repo.list_for_student(
                key.student_id, key.class_id, key.academic_year, key.semester
            )
            score, configs = self._overall_semester_score(key, grades)
            return score, source_fingerprint(grades, configs)

        if average_type == AverageType.SUBJECT_ANNUAL:
            grades = []
            configs = []
            semester_averages = {}
            annual_weights = {}
            for semester in GradingPolicy.SEMESTERS:
                semester_grades = self.grade_repo.list_for_subject(
                    key.student_id, key.class_id, key.subject_id, semester, key.academic_year
                )
                config = self._config_for(semester_grades, key.academic_year, semester)
                grades.extend(semester_grades)
                configs.append(config)
                annual_weights[semester] = config.annual_weight
                _, semester_averages[semester] = self._semester_subject_score(semester_grades, config)
            score = compute_annual_average(semester_averages, annual_weights)
            return score, source_fingerprint(grades, configs)

        if average_type == AverageType.OVERALL_ANNUAL:
            grades = []
            configs = []
            semester_averages = {}
            annual_weights = {}
            for semester in GradingPolicy.SEMESTERS:
                semester_grades = self.grade_repo.list_for_student(
                    key.student_id, key.class_id, key.academic_year, semester
                )
                grades.extend(semester_grades)
                semester_key = AverageKey(key.student_id, key.class_id, key.academic_year,
                                          AverageType.OVERALL_SEMESTER, semester=semester)
                semester_averages[semester], semester_configs = self._overall_semester_score(
                    semester_key, semester_grades
                )
                configs.extend(semester_configs)
                annual_weights[semester] = shared_annual_weight(semester_configs)
            score = compute_annual_average(semester_averages, annual_weights)
            return score, source_fingerprint(grades, configs)

        raise CalculationError(f"未知的平均分类型: {average_type}")

    def current_fingerprint(self, key: AverageKey) -> Optional[str]:
        """当前输入的指纹；输入不完整时返回 None"""
        try:
            return self._evaluate(key)[1]
        except INCOMPLETE_INPUT_ERRORS:
            return None

    # 加锁计算与写入

    def _compute_and_store(self, teacher_id: str, key: AverageKey, overwrite: bool = False,
                           publish: bool = True) -> GradeAverage:
        with self.lock_manager.acquire(key.as_tuple()):
            try:
                score, fingerprint = self._evaluate(key)
            except Exception as e:
                self._handle_failure(teacher_id, key, overwrite)
                if isinstance(e, GradeServiceError):
                    raise
                logger.error(f"Unexpected failure calculating {key.as_tuple()}: {str(e)}")
                raise CalculationError(f"平均分计算失败: {str(e)}") from e

            row = self.average_repo.upsert(key, {
                "teacher_id": teacher_id,
                "average_score": score,
                "letter_grade": letter_grade(score),
                "source_fingerprint": fingerprint,
            })
            logger.info(f"Stored {key.average_type.value} for student {key.student_id}: {score}")

        if publish:
            self._publish_averages([row])
        return row

    def _handle_failure(self, teacher_id: str, key: AverageKey, overwrite: bool) -> None:
        if overwrite:
            self.average_repo.delete(key)
        self.cache.on_grade_modified(
            teacher_id, key.student_id, key.class_id, key.semester, key.academic_year
        )

    def calculate_monthly_average(self, teacher_id: str, student_id: str, class_id: str,
                                  subject_id: str, semester: int, academic_year: str,
                                  overwrite: bool = False) -> GradeAverage:
        key = AverageKey(student_id, class_id, academic_year, AverageType.MONTHLY_AVERAGE,
                         subject_id=subject_id, semester=semester)
        return self._compute_and_store(teacher_id, key, overwrite)

    def calculate_semester_average(self, teacher_id: str, student_id: str, class_id: str,
                                   subject_id: str, semester: int, academic_year: str,
                                   overwrite: bool = False) -> GradeAverage:
        key = AverageKey(student_id, class_id, academic_year, AverageType.SEMESTER_AVERAGE,
                         subject_id=subject_id, semester=semester)
        return self._compute_and_store(teacher_id, key, overwrite)

    def calculate_overall_semester_average(self, teacher_id: str, student_id: str, class_id: str,
                                           semester: int, academic_year: str,
                                           overwrite: bool = False) -> GradeAverage:
        key = AverageKey(student_id, class_id, academic_year, AverageType.OVERALL_SEMESTER,
                         semester=semester)
        return self._compute_and_store(teacher_id, key, overwrite)

    def calculate_subject_annual_average(self, teacher_id: str, student_id: str, class_id: str,
                                         subject_id: str, academic_year: str,
                                         overwrite: bool = False) -> GradeAverage:
        key = AverageKey(student_id, class_id, academic_year, AverageType.SUBJECT_ANNUAL,
                         subject_id=subject_id)
        return self._compute_and_store(teacher_id, key, overwrite)

    def calculate_overall_annual_average(self, teacher_id: str, student_id: str, class_id: str,
                                         academic_year: str, overwrite: bool = False) -> GradeAverage:
        key = AverageKey(student_id, class_id, academic_year, AverageType.OVERALL_ANNUAL)
        return self._compute_and_store(teacher_id, key, overwrite)

    # 排名

    def update_rankings(self, cohort: CohortKey) -> Dict[str, RankPosition]:
        """为整个群体重新排名并写回"""
        rank_field = "subject_rank" if cohort.subject_id else "class_rank"
        with self.lock_manager.acquire(cohort.as_tuple()):
            rows = self.average_repo.list_cohort(cohort)
            positions = rank(((row.student_id, row.average_score) for row in rows), self.ranking_policy)
            self.average_repo.apply_ranks(rows, positions, rank_field)
        logger.info(f"Ranked {len(positions)} students for {cohort.as_tuple()}")
        return positions

    @staticmethod
    def class_cohort(class_id: str, semester: Optional[int], academic_year: str) -> CohortKey:
        average_type = AverageType.OVERALL_SEMESTER if semester else AverageType.OVERALL_ANNUAL
        return CohortKey(class_id, academic_year, average_type, semester=semester)

    @staticmethod
    def subject_cohort(class_id: str, subject_id: str, semester: Optional[int],
                       academic_year: str) -> CohortKey:
        average_type = AverageType.SEMESTER_AVERAGE if semester else AverageType.SUBJECT_ANNUAL
        return CohortKey(class_id, academic_year, average_type, semester=semester, subject_id=subject_id)

    # 批量与级联计算

    def _student_keys(self, student_id: str, class_id: str, subject_ids: Iterable[str],
                      semester: int, academic_year: str) -> List[AverageKey]:
        keys = []
        for subject_id in subject_ids:
            keys.append(AverageKey(student_id, class_id, academic_year, AverageType.MONTHLY_AVERAGE,
                                   subject_id=subject_id, semester=semester))
            keys.append(AverageKey(student_id, class_id, academic_year, AverageType.SEMESTER_AVERAGE,
                                   subject_id=subject_id, semester=semester))
        keys.append(AverageKey(student_id, class_id, academic_year, AverageType.OVERALL_SEMESTER,
                               semester=semester))
        for subject_id in subject_ids:
            keys.append(AverageKey(student_id, class_id, academic_year, AverageType.SUBJECT_ANNUAL,
                                   subject_id=subject_id))
        keys.append(AverageKey(student_id, class_id, academic_year, AverageType.OVERALL_ANNUAL))
        return keys

    def _recalculate_keys(self, teacher_id: str, keys: Iterable[AverageKey]) -> List[GradeAverage]:
        """逐键重算（覆盖模式），输入不完整的键删除旧行后跳过"""
        rows = []
        for key in keys:
            try:
                rows.append(self._compute_and_store(teacher_id, key, overwrite=True, publish=False))
            except INCOMPLETE_INPUT_ERRORS as e:
                logger.info(f"Skipped {key.average_type.value} for student {key.student_id}: {e.message}")
        return rows

    def _rerank(self, class_id: str, subject_ids: Iterable[str], semester: int, academic_year: str) -> None:
        self.update_rankings(self.class_cohort(class_id, semester, academic_year))
        self.update_rankings(self.class_cohort(class_id, None, academic_year))
        for subject_id in subject_ids:
            self.update_rankings(self.subject_cohort(class_id, subject_id, semester, academic_year))
            self.update_rankings(self.subject_cohort(class_id, subject_id, None, academic_year))

    def recalculate_on_grade_change(self, teacher_id: str, student_id: str, class_id: str,
                                    subject_id: str, semester: int, academic_year: str) -> List[GradeAverage]:
        """成绩变更后的级联重算：科目月考/学期 -> 全科学期 -> 学年，然后重排并清理缓存"""
        keys = self._student_keys(student_id, class_id, [subject_id], semester, academic_year)
        try:
            rows = self._recalculate_keys(teacher_id, keys)
            self._rerank(class_id, [subject_id], semester, academic_year)
        finally:
            self.cache.on_grade_modified(teacher_id, student_id, class_id, semester, academic_year)

        logger.info(f"Recalculated {len(rows)} averages for student {student_id} after grade change")
        self._publish_averages(rows)
        return rows

    def recalculate_for_students(self, teacher_id: str, class_id: str, subject_id: str, semester: int,
                                 academic_year: str, student_ids: Iterable[str]) -> List[GradeAverage]:
        """批量录入后的重算：逐个学生级联重算，最后只重排一次、清理一次班级缓存"""
        rows: List[GradeAverage] = []
        student_list = sorted(set(student_ids))
        try:
            for student_id in student_list:
                keys = self._student_keys(student_id, class_id, [subject_id], semester, academic_year)
                rows.extend(self._recalculate_keys(teacher_id, keys))
            self._rerank(class_id, [subject_id], semester, academic_year)
        finally:
            self.cache.evict_class_scope(class_id)

        logger.info(f"Recalculated {len(rows)} averages for {len(student_list)} students in class {class_id}")
        self._publish_averages(rows)
        return rows

    def calculate_class_averages(self, teacher_id: str, class_id: str, semester: int,
                                 academic_year: str) -> ClassCalculationSummary:
        """班级批量计算：逐个学生计算，单个学生的错误只记录不中断"""
        summary = ClassCalculationSummary(class_id=class_id, semester=semester, academic_year=academic_year)
        student_ids = self.grade_repo.list_class_student_ids(class_id, academic_year, semester)
        summary.students_total = len(student_ids)

        all_rows: List[GradeAverage] = []
        all_subjects = set()
        try:
            for student_id in student_ids:
                subject_ids = self.grade_repo.list_subject_ids(student_id, class_id, academic_year, semester)
                all_subjects.update(subject_ids)
                try:
                    rows = self._recalculate_keys(
                        teacher_id, self._student_keys(student_id, class_id, subject_ids, semester, academic_year)
                    )
                except GradeServiceError as e:
                    logger.error(f"Failed to calculate averages for student {student_id}: {e.message}")
                    summary.errors[student_id] = e.code.value
                    summary.students_skipped += 1
                    continue
                if rows:
                    summary.students_calculated += 1
                    all_rows.extend(rows)
                else:
                    summary.students_skipped += 1
            self._rerank(class_id, sorted(all_subjects), semester, academic_year)
        finally:
            self.cache.evict_class_scope(class_id)

        logger.info(
            f"Class {class_id} semester {semester} {academic_year}: "
            f"{summary.students_calculated}/{summary.students_total} students calculated"
        )
        self._publish_averages(all_rows)
        return summary

    # 读路径

    def ensure_fresh(self, teacher_id: str, key: AverageKey) -> Tuple[Optional[GradeAverage], bool]:
        """读取存储的平均分，过期或缺失时重算

        返回 (行, 是否重算)；输入不完整时返回 (None, 是否删除了过期行)。
        没有存储行且输入不完整时不做任何改动。
        """
        row = self.average_repo.get(key)
        fingerprint = self.current_fingerprint(key)
        if row is None and fingerprint is None:
            return None, False
        if row is not None and row.source_fingerprint == fingerprint:
            return row, False
        try:
            return self._compute_and_store(teacher_id, key, overwrite=True), True
        except INCOMPLETE_INPUT_ERRORS:
            return None, row is not None

    def get_student_summary(self, teacher_id: str, student_id: str, class_id: str,
                            semester: int, academic_year: str) -> Dict[str, Any]:
        """学生某学期的全部平均分（含学年平均）"""
        cached = self.cache.get_student_averages(teacher_id, student_id, class_id, semester, academic_year)
        if cached is not None:
            return cached

        generation = self.cache.class_generation(class_id)
        subject_ids = self.grade_repo.list_subject_ids(student_id, class_id, academic_year, semester)
        rows = []
        changed = False
        for key in self._student_keys(student_id, class_id, subject_ids, semester, academic_year):
            row, recalculated = self.ensure_fresh(teacher_id, key)
            changed = changed or recalculated
            if row is not None:
                rows.append(row)
        if changed:
            self._rerank(class_id, subject_ids, semester, academic_year)

        names = self.subject_repo.get_names(subject_ids)
        summary = {
            "studentId": student_id,
            "classId": class_id,
            "semester": semester,
            "academicYear": academic_year,
            "averages": [self._average_payload(row, names) for row in rows],
        }
        if generation is not None:
            self.cache.put_student_averages(teacher_id, student_id, class_id, semester, academic_year,
                                            summary, generation=generation)
        return summary

    def _fresh_cohort(self, teacher_id: str, cohort: CohortKey) -> List[GradeAverage]:
        student_ids = self.grade_repo.list_class_student_ids(cohort.class_id, cohort.academic_year, cohort.semester)
        changed = False
        for student_id in student_ids:
            key = AverageKey(student_id, cohort.class_id, cohort.academic_year, cohort.average_type,
                             subject_id=cohort.subject_id, semester=cohort.semester)
            _, recalculated = self.ensure_fresh(teacher_id, key)
            changed = changed or recalculated

        rows = self.average_repo.list_cohort(cohort)
        rank_field = "subject_rank" if cohort.subject_id else "class_rank"
        if changed or any(getattr(row, rank_field) is None for row in rows):
            self.update_rankings(cohort)
            rows = self.average_repo.list_cohort(cohort)
        return rows

    def _rankings_payload(self, cohort: CohortKey, rows: List[GradeAverage]) -> Dict[str, Any]:
        rank_field = "subject_rank" if cohort.subject_id else "class_rank"
        entries = sorted(
            (RankingEntryResponse(
                student_id=row.student_id,
                average_score=row.average_score,
                letter_grade=row.letter_grade,
                rank=getattr(row, rank_field),
                total_students=row.total_students,
            ) for row in rows),
            key=lambda entry: (entry.rank if entry.rank is not None else len(rows) + 1, entry.student_id),
        )
        payload = {
            "classId": cohort.class_id,
            "semester": cohort.semester,
            "academicYear": cohort.academic_year,
            "averageType": cohort.average_type.value,
            "totalStudents": len(rows),
            "rankings": [entry.model_dump(mode="json", by_alias=True) for entry in entries],
        }
        if cohort.subject_id:
            payload["subjectId"] = cohort.subject_id
            payload["subjectName"] = self.subject_repo.get_names([cohort.subject_id]).get(cohort.subject_id)
        return payload

    def get_class_rankings(self, teacher_id: str, class_id: str, semester: Optional[int],
                           academic_year: str) -> Dict[str, Any]:
        cached = self.cache.get_class_rankings(teacher_id, class_id, semester, academic_year)
        if cached is not None:
            return cached
        generation = self.cache.class_generation(class_id)
        cohort = self.class_cohort(class_id, semester, academic_year)
        payload = self._rankings_payload(cohort, self._fresh_cohort(teacher_id, cohort))
        if generation is not None:
            self.cache.put_class_rankings(teacher_id, class_id, semester, academic_year, payload,
                                          generation=generation)
        return payload

    def get_subject_rankings(self, teacher_id: str, class_id: str, subject_id: str,
                             semester: Optional[int], academic_year: str) -> Dict[str, Any]:
        cached = self.cache.get_subject_rankings(teacher_id, class_id, subject_id, semester, academic_year)
        if cached is not None:
            return cached
        generation = self.cache.class_generation(class_id)
        cohort = self.subject_cohort(class_id, subject_id, semester, academic_year)
        payload = self._rankings_payload(cohort, self._fresh_cohort(teacher_id, cohort))
        if generation is not None:
            self.cache.put_subject_rankings(teacher_id, class_id, subject_id, semester, academic_year,
                                            payload, generation=generation)
        return payload

    # 事件

    @staticmethod
    def _average_payload(row: GradeAverage, names: Dict[str, str]) -> Dict[str, Any]:
        payload = AverageResponse.model_validate(row).model_dump(mode="json", by_alias=True)
        payload["subjectName"] = names.get(row.subject_id) if row.subject_id else None
        return payload

    def _publish_averages(self, rows: List[GradeAverage]) -> None:
        if self.dispatcher is None or not rows:
            return
        names = self.subject_repo.get_names(row.subject_id for row in rows)
        for row in rows:
            self.dispatcher.dispatch_average_event(AverageCalculatedEvent(
                student_id=row.student_id,
                class_id=row.class_id,
                subject_id=row.subject_id,
                subject_name=names.get(row.subject_id),
                average_type=row.average_type.value,
                average_score=row.average_score,
                letter_grade=row.letter_grade,
                class_rank=row.class_rank,
                subject_rank=row.subject_rank,
                total_students=row.total_students,
                semester=row.semester,
                academic_year=row.academic_year,
                calculated_at=row.calculated_at,
            ))
