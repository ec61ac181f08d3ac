# 成绩录入服务
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from ..calculation.average_calculator import letter_grade, percentage, to_decimal
from ..database.cache import GradeCache
from ..database.enums import AssessmentCategory, GradeEventType
from ..database.models import AssessmentType, Grade
from ..database.repositories import (
    AssessmentTypeRepository, GradeRepository, SubjectRepository, DataIntegrityError, RepositoryError
)
from ..errors import (
    GradeErrorCode, GradeServiceError, NotFoundError, DuplicateGradeError, InvalidGradeDataError
)
from ..schemas.request_schemas import (
    BulkGradeRequest, GradeCreateRequest, GradeUpdateRequest, MonthlyGradeEntryRequest
)
from .calculation_service import CalculationService, INCOMPLETE_INPUT_ERRORS
from .event_publisher import AsyncEventDispatcher, GradeEvent
from .locks import LockManager

logger = logging.getLogger(__name__)


@dataclass
class BulkEntryResult:
    """批量录入结果：已保存的成绩与被跳过的已有成绩"""
    grades: List[Grade] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)


class GradeService:
    """成绩录入服务

    成绩提交后触发级联重算；因输入不完整导致的重算失败只记录日志，不影响成绩写入。
    成绩事件在事务提交后发布。
    """

    def __init__(self, db_session: Session, cache: GradeCache,
                 dispatcher: Optional[AsyncEventDispatcher] = None,
                 lock_manager: Optional[LockManager] = None):
        self.db = db_session
        self.cache = cache
        self.dispatcher = dispatcher
        self.grade_repo = GradeRepository(db_session)
        self.assessment_repo = AssessmentTypeRepository(db_session)
        self.subject_repo = SubjectRepository(db_session)
        self.calculation_service = CalculationService(
            db_session, cache, dispatcher=dispatcher, lock_manager=lock_manager
        )

    def _validate_score(self, assessment_code: str, score: Decimal,
                        max_score: Optional[Decimal]) -> Decimal:
        """校验分数，返回实际使用的满分"""
        return self._check_score(self._require_assessment_type(assessment_code), score, max_score)

    @staticmethod
    def _check_score(assessment_type: AssessmentType, score: Decimal,
                     max_score: Optional[Decimal]) -> Decimal:
        effective_max = to_decimal(max_score) if max_score is not None else to_decimal(assessment_type.max_score)
        if effective_max > to_decimal(assessment_type.max_score):
            raise InvalidGradeDataError(
                f"满分 {effective_max} 超过考核类型满分 {assessment_type.max_score}",
                code=GradeErrorCode.SCORE_OUT_OF_RANGE,
                details={"maxScore": str(effective_max), "assessmentMaxScore": str(assessment_type.max_score)},
            )
        # 负分、满分为0或超出满分时抛出
        percentage(score, effective_max)
        return effective_max

    def _get_owned_grade(self, teacher_id: str, grade_id: int) -> Grade:
        grade = self.grade_repo.get_by_id(grade_id)
        if grade is None or grade.teacher_id != teacher_id:
            raise NotFoundError(f"成绩不存在: {grade_id}", details={"gradeId": grade_id})
        return grade

    def create_grade(self, teacher_id: str, request: GradeCreateRequest) -> Grade:
        max_score = self._validate_score(request.assessment_code, request.score, request.max_score)

        existing = self.grade_repo.find_entry(
            request.student_id, request.class_id, request.subject_id,
            request.assessment_code, request.semester, request.academic_year,
        )
        if existing is not None:
            raise DuplicateGradeError(
                f"成绩已存在: 学生 {request.student_id} {request.assessment_code}",
                details={"gradeId": existing.id},
            )

        try:
            grade = self.grade_repo.create({
                "teacher_id": teacher_id,
                "student_id": request.student_id,
                "class_id": request.class_id,
                "subject_id": request.subject_id,
                "assessment_type_code": request.assessment_code,
                "score": request.score,
                "max_score": max_score,
                "semester": request.semester,
                "academic_year": request.academic_year,
                "comments": request.comments,
            })
        except DataIntegrityError as e:
            # 并发录入同一考核
            raise DuplicateGradeError(f"成绩已存在: {str(e)}")

        logger.info(f"Grade {grade.id} entered by teacher {teacher_id} for student {grade.student_id}")
        self._after_commit(teacher_id, grade, GradeEventType.GRADE_ENTERED)
        return grade

    def update_grade(self, teacher_id: str, grade_id: int, request: GradeUpdateRequest) -> Grade:
        grade = self._get_owned_grade(teacher_id, grade_id)
        max_score = request.max_score if request.max_score is not None else grade.max_score
        max_score = self._validate_score(grade.assessment_type_code, request.score, max_score)

        update_data: Dict[str, Any] = {"score": request.score, "max_score": max_score}
        if request.comments is not None:
            update_data["comments"] = request.comments
        grade = self.grade_repo.update(grade, update_data)

        logger.info(f"Grade {grade.id} updated by teacher {teacher_id}")
        self._after_commit(teacher_id, grade, GradeEventType.GRADE_UPDATED)
        return grade

    def delete_grade(self, teacher_id: str, grade_id: int) -> None:
        grade = self._get_owned_grade(teacher_id, grade_id)
        snapshot = self._event_for(teacher_id, grade, GradeEventType.GRADE_DELETED)
        self.grade_repo.delete(grade)

        logger.info(f"Grade {grade_id} deleted by teacher {teacher_id}")
        try:
            self._recalculate(teacher_id, grade)
        finally:
            self._dispatch(snapshot)

    # 批量录入

    def create_bulk_grades(self, teacher_id: str, request: BulkGradeRequest) -> BulkEntryResult:
        """同一考核的多名学生成绩；已存在的成绩跳过，其余一次提交"""
        assessment_type = self._require_assessment_type(request.assessment_code)
        entries = [
            (entry.student_id, assessment_type, entry.score, entry.max_score, entry.comments)
            for entry in request.grades
        ]
        return self._save_entries(teacher_id, request.class_id, request.subject_id, request.semester,
                                  request.academic_year, entries, update_existing=False)

    def enter_monthly_grades(self, teacher_id: str, class_id: str, subject_id: str,
                             request: MonthlyGradeEntryRequest) -> BulkEntryResult:
        """班级月考成绩表：exam1..exam4 依次对应月考考核类型；本人已录入的成绩被覆盖"""
        monthly_types = self.assessment_repo.list_all(AssessmentCategory.MONTHLY)
        entries = []
        for student in request.student_grades:
            for assessment_type, score in zip(monthly_types, student.scores()):
                if score is not None:
                    entries.append((student.student_id, assessment_type, score, None, student.comments))
        return self._save_entries(teacher_id, class_id, subject_id, request.semester,
                                  request.academic_year, entries, update_existing=True)

    def _require_assessment_type(self, assessment_code: str) -> AssessmentType:
        assessment_type = self.assessment_repo.get_by_code(assessment_code)
        if assessment_type is None:
            raise NotFoundError(
                f"考核类型不存在: {assessment_code}",
                code=GradeErrorCode.ASSESSMENT_TYPE_NOT_FOUND,
                details={"assessmentCode": assessment_code},
            )
        return assessment_type

    def _save_entries(self, teacher_id: str, class_id: str, subject_id: str, semester: int,
                      academic_year: str, entries: List[Tuple], update_existing: bool) -> BulkEntryResult:
        """先校验全部行，任一行不合法则整批拒绝；通过后一次提交，再按学生重算、统一重排"""
        result = BulkEntryResult()
        new_grades: List[Dict[str, Any]] = []
        updates: List[Tuple[Grade, Dict[str, Any]]] = []
        seen = set()

        for student_id, assessment_type, score, max_score, comments in entries:
            entry_key = (student_id, assessment_type.code)
            if entry_key in seen:
                raise DuplicateGradeError(
                    f"请求中重复的成绩: 学生 {student_id} {assessment_type.code}",
                    details={"studentId": student_id, "assessmentCode": assessment_type.code},
                )
            seen.add(entry_key)
            try:
                effective_max = self._check_score(assessment_type, score, max_score)
            except GradeServiceError as e:
                e.details.setdefault("studentId", student_id)
                raise

            existing = self.grade_repo.find_entry(
                student_id, class_id, subject_id, assessment_type.code, semester, academic_year
            )
            if existing is None:
                new_grades.append({
                    "teacher_id": teacher_id,
                    "student_id": student_id,
                    "class_id": class_id,
                    "subject_id": subject_id,
                    "assessment_type_code": assessment_type.code,
                    "score": score,
                    "max_score": effective_max,
                    "semester": semester,
                    "academic_year": academic_year,
                    "comments": comments,
                })
            elif update_existing and existing.teacher_id == teacher_id:
                updates.append((existing, {"score": score, "max_score": effective_max, "comments": comments}))
            else:
                logger.warning(f"Skipping existing grade {existing.id} for student {student_id} "
                               f"{assessment_type.code}")
                result.skipped.append({"studentId": student_id, "assessmentCode": assessment_type.code,
                                       "gradeId": existing.id})

        if not new_grades and not updates:
            return result

        try:
            result.grades = self.grade_repo.save_batch(new_grades, updates)
        except DataIntegrityError as e:
            # 并发录入同一考核
            raise DuplicateGradeError(f"成绩已存在: {str(e)}")

        logger.info(f"Teacher {teacher_id} saved {len(result.grades)} grades for class {class_id} "
                    f"subject {subject_id}, skipped {len(result.skipped)}")
        created_count = len(new_grades)
        events = [
            self._event_for(teacher_id, grade,
                            GradeEventType.GRADE_ENTERED if index < created_count else GradeEventType.GRADE_UPDATED)
            for index, grade in enumerate(result.grades)
        ]
        try:
            self._recalculate_batch(teacher_id, class_id, subject_id, semester, academic_year,
                                    {grade.student_id for grade in result.grades})
        finally:
            for event in events:
                self._dispatch(event)
        return result

    def _recalculate_batch(self, teacher_id: str, class_id: str, subject_id: str, semester: int,
                           academic_year: str, student_ids: Set[str]) -> None:
        try:
            self.calculation_service.recalculate_for_students(
                teacher_id, class_id, subject_id, semester, academic_year, student_ids
            )
        except GradeServiceError as e:
            logger.error(f"Batch recalculation failed for class {class_id}: {e.code.value} {e.message}")
        except RepositoryError as e:
            logger.error(f"Batch recalculation failed for class {class_id}, storage error: {str(e)}")
            self.cache.evict_class_scope(class_id)

    def get_grade(self, teacher_id: str, grade_id: int) -> Grade:
        return self._get_owned_grade(teacher_id, grade_id)

    def list_student_grades(self, teacher_id: str, student_id: str, class_id: Optional[str] = None,
                            academic_year: Optional[str] = None,
                            semester: Optional[int] = None) -> List[Grade]:
        grades = self.grade_repo.list_for_student(student_id, class_id, academic_year, semester)
        return [grade for grade in grades if grade.teacher_id == teacher_id]

    def _after_commit(self, teacher_id: str, grade: Grade, event_type: GradeEventType) -> None:
        event = self._event_for(teacher_id, grade, event_type)
        try:
            self._recalculate(teacher_id, grade)
        finally:
            self._dispatch(event)

    def _recalculate(self, teacher_id: str, grade: Grade) -> None:
        # 成绩已提交，重算失败不回滚成绩，也不向调用方报错
        try:
            self.calculation_service.recalculate_on_grade_change(
                teacher_id, grade.student_id, grade.class_id, grade.subject_id,
                grade.semester, grade.academic_year,
            )
        except INCOMPLETE_INPUT_ERRORS as e:
            logger.info(f"Averages not recalculated for grade {grade.id}: {e.message}")
        except GradeServiceError as e:
            logger.error(f"Recalculation failed after grade change {grade.id}: {e.code.value} {e.message}")
        except RepositoryError as e:
            logger.error(f"Recalculation failed after grade change {grade.id}, storage error: {str(e)}")
            self.cache.evict_class_scope(grade.class_id)

    def _event_for(self, teacher_id: str, grade: Grade, event_type: GradeEventType) -> GradeEvent:
        pct = percentage(grade.score, grade.max_score)
        subject_names = self.subject_repo.get_names([grade.subject_id])
        return GradeEvent(
            event_type=event_type,
            grade_id=grade.id,
            teacher_id=teacher_id,
            student_id=grade.student_id,
            class_id=grade.class_id,
            subject_id=grade.subject_id,
            subject_name=subject_names.get(grade.subject_id),
            assessment_code=grade.assessment_type_code,
            score=to_decimal(grade.score),
            max_score=to_decimal(grade.max_score),
            percentage=pct,
            letter_grade=letter_grade(pct),
            semester=grade.semester,
            academic_year=grade.academic_year,
            occurred_at=datetime.utcnow(),
        )

    def _dispatch(self, event: GradeEvent) -> None:
        if self.dispatcher is not None:
            self.dispatcher.dispatch_grade_event(event)
