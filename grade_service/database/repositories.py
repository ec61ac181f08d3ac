# 数据仓库层
from typing import List, Optional, Dict, Any, Iterable, Tuple
from sqlalchemy.orm import Session
from sqlalchemy import asc, desc
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from datetime import datetime
import logging

from .models import Subject, AssessmentType, Grade, SemesterConfig, GradeAverage
from .enums import AssessmentCategory
from .schemas import AverageKey, CohortKey

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Repository层异常基类"""
    pass


class DataIntegrityError(RepositoryError):
    """数据完整性异常"""
    pass


def _eq_or_null(column, value):
    """可空列的等值条件（SQL中NULL不等于NULL）"""
    return column.is_(None) if value is None else column == value


class BaseRepository:
    """基础仓库类"""

    def __init__(self, db_session: Session):
        self.db = db_session

    def _handle_db_error(self, error: Exception, operation: str) -> None:
        """统一处理数据库异常"""
        logger.error(f"Database error in {operation}: {str(error)}")
        self.db.rollback()

        if isinstance(error, IntegrityError):
            raise DataIntegrityError(f"数据完整性错误: {str(error)}")
        elif isinstance(error, SQLAlchemyError):
            raise RepositoryError(f"数据库操作失败: {str(error)}")
        else:
            raise RepositoryError(f"未知数据库错误: {str(error)}")


class SubjectRepository(BaseRepository):
    """科目数据仓库"""

    def create(self, subject_data: Dict[str, Any]) -> Subject:
        try:
            subject = Subject(**subject_data)
            self.db.add(subject)
            self.db.commit()
            self.db.refresh(subject)
            return subject
        except Exception as e:
            self._handle_db_error(e, "create_subject")

    def get_by_id(self, subject_id: str) -> Optional[Subject]:
        try:
            return self.db.query(Subject).filter(Subject.id == subject_id).first()
        except Exception as e:
            self._handle_db_error(e, "get_subject")

    def get_names(self, subject_ids: Iterable[str]) -> Dict[str, str]:
        """批量获取科目名称"""
        ids = [sid for sid in set(subject_ids) if sid]
        if not ids:
            return {}
        try:
            rows = self.db.query(Subject.id, Subject.name).filter(Subject.id.in_(ids)).all()
            return {row.id: row.name for row in rows}
        except Exception as e:
            self._handle_db_error(e, "get_subject_names")


class AssessmentTypeRepository(BaseRepository):
    """考核类型数据仓库"""

    def create(self, type_data: Dict[str, Any]) -> AssessmentType:
        try:
            assessment_type = AssessmentType(**type_data)
            self.db.add(assessment_type)
            self.db.commit()
            self.db.refresh(assessment_type)
            logger.info(f"Created assessment type: {assessment_type.code}")
            return assessment_type
        except Exception as e:
            self._handle_db_error(e, "create_assessment_type")

    def get_by_code(self, code: str) -> Optional[AssessmentType]:
        try:
            return self.db.query(AssessmentType).filter(AssessmentType.code == code).first()
        except Exception as e:
            self._handle_db_error(e, "get_assessment_type")

    def get_by_codes(self, codes: Iterable[str]) -> Dict[str, AssessmentType]:
        """批量获取考核类型，返回 code -> AssessmentType"""
        code_list = list(set(codes))
        if not code_list:
            return {}
        try:
            rows = self.db.query(AssessmentType).filter(AssessmentType.code.in_(code_list)).all()
            return {row.code: row for row in rows}
        except Exception as e:
            self._handle_db_error(e, "get_assessment_types_by_codes")

    def list_all(self, category: Optional[AssessmentCategory] = None) -> List[AssessmentType]:
        try:
            query = self.db.query(AssessmentType)
            if category is not None:
                query = query.filter(AssessmentType.category == category)
            return query.order_by(asc(AssessmentType.display_order), asc(AssessmentType.code)).all()
        except Exception as e:
            self._handle_db_error(e, "list_assessment_types")


class GradeRepository(BaseRepository):
    """成绩录入数据仓库"""

    def create(self, grade_data: Dict[str, Any]) -> Grade:
        try:
            grade = Grade(**grade_data)
            self.db.add(grade)
            self.db.commit()
            self.db.refresh(grade)
            return grade
        except Exception as e:
            self._handle_db_error(e, "create_grade")

    def save_batch(self, new_grades: List[Dict[str, Any]],
                   updates: Optional[List[Tuple[Grade, Dict[str, Any]]]] = None) -> List[Grade]:
        """批量新增与修改成绩（一次提交，任一失败则全部回滚）"""
        try:
            created = [Grade(**grade_data) for grade_data in new_grades]
            self.db.add_all(created)
            updated = []
            for grade, update_data in updates or []:
                for key, value in update_data.items():
                    setattr(grade, key, value)
                updated.append(grade)
            self.db.commit()
            saved = created + updated
            for grade in saved:
                self.db.refresh(grade)
            logger.info(f"Saved grade batch: {len(created)} created, {len(updated)} updated")
            return saved
        except Exception as e:
            self._handle_db_error(e, "save_grade_batch")

    def get_by_id(self, grade_id: int) -> Optional[Grade]:
        try:
            return self.db.query(Grade).filter(Grade.id == grade_id).first()
        except Exception as e:
            self._handle_db_error(e, "get_grade")

    def find_entry(self, student_id: str, class_id: str, subject_id: str,
                   assessment_type_code: str, semester: int, academic_year: str) -> Optional[Grade]:
        """按唯一键查找成绩"""
        try:
            return self.db.query(Grade).filter(
                Grade.student_id == student_id,
                Grade.class_id == class_id,
                Grade.subject_id == subject_id,
                Grade.assessment_type_code == assessment_type_code,
                Grade.semester == semester,
                Grade.academic_year == academic_year,
            ).first()
        except Exception as e:
            self._handle_db_error(e, "find_grade_entry")

    def update(self, grade: Grade, update_data: Dict[str, Any]) -> Grade:
        try:
            for key, value in update_data.items():
                if hasattr(grade, key):
                    setattr(grade, key, value)
            self.db.commit()
            self.db.refresh(grade)
            return grade
        except Exception as e:
            self._handle_db_error(e, "update_grade")

    def delete(self, grade: Grade) -> bool:
        try:
            self.db.delete(grade)
            self.db.commit()
            return True
        except Exception as e:
            self._handle_db_error(e, "delete_grade")

    def list_for_subject(self, student_id: str, class_id: str, subject_id: str,
                         semester: int, academic_year: str) -> List[Grade]:
        """学生某科目某学期的全部成绩"""
        try:
            return self.db.query(Grade).filter(
                Grade.student_id == student_id,
                Grade.class_id == class_id,
                Grade.subject_id == subject_id,
                Grade.semester == semester,
                Grade.academic_year == academic_year,
            ).order_by(asc(Grade.id)).all()
        except Exception as e:
            self._handle_db_error(e, "list_grades_for_subject")

    def list_for_student(self, student_id: str, class_id: Optional[str] = None,
                         academic_year: Optional[str] = None,
                         semester: Optional[int] = None) -> List[Grade]:
        try:
            query = self.db.query(Grade).filter(Grade.student_id == student_id)
            if class_id is not None:
                query = query.filter(Grade.class_id == class_id)
            if academic_year is not None:
                query = query.filter(Grade.academic_year == academic_year)
            if semester is not None:
                query = query.filter(Grade.semester == semester)
            return query.order_by(asc(Grade.subject_id), asc(Grade.semester), asc(Grade.id)).all()
        except Exception as e:
            self._handle_db_error(e, "list_grades_for_student")

    def list_subject_ids(self, student_id: str, class_id: str, academic_year: str,
                         semester: Optional[int] = None) -> List[str]:
        """学生有成绩的科目ID列表"""
        try:
            query = self.db.query(Grade.subject_id).filter(
                Grade.student_id == student_id,
                Grade.class_id == class_id,
                Grade.academic_year == academic_year,
            )
            if semester is not None:
                query = query.filter(Grade.semester == semester)
            return sorted({row.subject_id for row in query.distinct().all()})
        except Exception as e:
            self._handle_db_error(e, "list_subject_ids")

    def list_class_student_ids(self, class_id: str, academic_year: str,
                               semester: Optional[int] = None) -> List[str]:
        """班级内有成绩的学生ID列表"""
        try:
            query = self.db.query(Grade.student_id).filter(
                Grade.class_id == class_id,
                Grade.academic_year == academic_year,
            )
            if semester is not None:
                query = query.filter(Grade.semester == semester)
            return sorted({row.student_id for row in query.distinct().all()})
        except Exception as e:
            self._handle_db_error(e, "list_class_student_ids")


class SemesterConfigRepository(BaseRepository):
    """学期配置数据仓库

    teacher_id 为空的行是默认配置；唯一索引对NULL不生效，所以由本仓库保证唯一。
    """

    def find(self, teacher_id: Optional[str], academic_year: str,
             semester_exam_code: str) -> Optional[SemesterConfig]:
        try:
            return self.db.query(SemesterConfig).filter(
                _eq_or_null(SemesterConfig.teacher_id, teacher_id),
                SemesterConfig.academic_year == academic_year,
                SemesterConfig.semester_exam_code == semester_exam_code,
            ).first()
        except Exception as e:
            self._handle_db_error(e, "find_semester_config")

    def upsert(self, teacher_id: Optional[str], academic_year: str, semester_exam_code: str,
               config_data: Dict[str, Any]) -> SemesterConfig:
        """插入或覆盖配置（单一事务）"""
        try:
            config = self.find(teacher_id, academic_year, semester_exam_code)
            if config is None:
                config = SemesterConfig(
                    teacher_id=teacher_id,
                    academic_year=academic_year,
                    semester_exam_code=semester_exam_code,
                )
                self.db.add(config)
            for key, value in config_data.items():
                setattr(config, key, value)
            self.db.commit()
            self.db.refresh(config)
            return config
        except Exception as e:
            self._handle_db_error(e, "upsert_semester_config")

    def delete(self, teacher_id: Optional[str], academic_year: str, semester_exam_code: str) -> bool:
        try:
            config = self.find(teacher_id, academic_year, semester_exam_code)
            if config is None:
                return False
            self.db.delete(config)
            self.db.commit()
            return True
        except Exception as e:
            self._handle_db_error(e, "delete_semester_config")

    def list_defaults(self, academic_year: Optional[str] = None) -> List[SemesterConfig]:
        try:
            query = self.db.query(SemesterConfig).filter(SemesterConfig.teacher_id.is_(None))
            if academic_year is not None:
                query = query.filter(SemesterConfig.academic_year == academic_year)
            return query.order_by(desc(SemesterConfig.academic_year),
                                  asc(SemesterConfig.semester_exam_code)).all()
        except Exception as e:
            self._handle_db_error(e, "list_default_configs")

    def list_exam_codes(self, academic_year: str, teacher_id: Optional[str] = None) -> List[str]:
        """学年内已配置的学期考试代码（默认配置与教师配置的并集）"""
        try:
            query = self.db.query(SemesterConfig.semester_exam_code).filter(
                SemesterConfig.academic_year == academic_year
            )
            if teacher_id is None:
                query = query.filter(SemesterConfig.teacher_id.is_(None))
            else:
                query = query.filter(
                    (SemesterConfig.teacher_id.is_(None)) | (SemesterConfig.teacher_id == teacher_id)
                )
            return sorted({row.semester_exam_code for row in query.distinct().all()})
        except Exception as e:
            self._handle_db_error(e, "list_exam_codes")

    def list_academic_years(self) -> List[str]:
        try:
            rows = self.db.query(SemesterConfig.academic_year).distinct().all()
            return sorted({row.academic_year for row in rows}, reverse=True)
        except Exception as e:
            self._handle_db_error(e, "list_academic_years")


class GradeAverageRepository(BaseRepository):
    """平均分存储（只做持久化，不含业务逻辑）"""

    def _key_query(self, key: AverageKey):
        return self.db.query(GradeAverage).filter(
            GradeAverage.student_id == key.student_id,
            GradeAverage.class_id == key.class_id,
            _eq_or_null(GradeAverage.subject_id, key.subject_id),
            _eq_or_null(GradeAverage.semester, key.semester),
            GradeAverage.academic_year == key.academic_year,
            GradeAverage.average_type == key.average_type,
        )

    def get(self, key: AverageKey) -> Optional[GradeAverage]:
        try:
            return self._key_query(key).first()
        except Exception as e:
            self._handle_db_error(e, "get_average")

    def upsert(self, key: AverageKey, values: Dict[str, Any]) -> GradeAverage:
        """按唯一键插入或覆盖，calculated_at 每次刷新

        其他进程并发插入同一键导致唯一约束冲突时，回滚后按更新重试一次。
        """
        try:
            row = self._key_query(key).first()
            if row is None:
                row = GradeAverage(
                    student_id=key.student_id,
                    class_id=key.class_id,
                    subject_id=key.subject_id,
                    semester=key.semester,
                    academic_year=key.academic_year,
                    average_type=key.average_type,
                )
                self.db.add(row)
            self._apply_values(row, values)
            self.db.commit()
            return row
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(f"Concurrent insert detected for {key.as_tuple()}, retrying as update")
            row = self._key_query(key).first()
            if row is None:
                self._handle_db_error(e, "upsert_average")
            try:
                self._apply_values(row, values)
                self.db.commit()
                return row
            except Exception as retry_error:
                self._handle_db_error(retry_error, "upsert_average_retry")
        except Exception as e:
            self._handle_db_error(e, "upsert_average")

    @staticmethod
    def _apply_values(row: GradeAverage, values: Dict[str, Any]) -> None:
        for field_name, value in values.items():
            setattr(row, field_name, value)
        row.calculated_at = datetime.utcnow()

    def delete(self, key: AverageKey) -> bool:
        try:
            row = self._key_query(key).first()
            if row is None:
                return False
            self.db.delete(row)
            self.db.commit()
            logger.info(f"Removed stale average {key.as_tuple()}")
            return True
        except Exception as e:
            self._handle_db_error(e, "delete_average")

    def list_cohort(self, cohort: CohortKey) -> List[GradeAverage]:
        """排名群体内的全部平均分"""
        try:
            return self.db.query(GradeAverage).filter(
                GradeAverage.class_id == cohort.class_id,
                _eq_or_null(GradeAverage.subject_id, cohort.subject_id),
                _eq_or_null(GradeAverage.semester, cohort.semester),
                GradeAverage.academic_year == cohort.academic_year,
                GradeAverage.average_type == cohort.average_type,
            ).order_by(asc(GradeAverage.class_rank), desc(GradeAverage.average_score),
                       asc(GradeAverage.student_id)).all()
        except Exception as e:
            self._handle_db_error(e, "list_cohort")

    def apply_ranks(self, rows: List[GradeAverage], positions: Dict[str, Any],
                    rank_field: str = "class_rank") -> int:
        """把排名写回整个群体（一次提交）"""
        try:
            updated = 0
            for row in rows:
                position = positions.get(row.student_id)
                setattr(row, rank_field, position.rank if position else None)
                row.total_students = position.total_students if position else None
                updated += 1
            self.db.commit()
            return updated
        except Exception as e:
            self._handle_db_error(e, "apply_ranks")
