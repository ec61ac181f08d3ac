import threading
import time
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from conftest import ACADEMIC_YEAR, CLASS_ID, KHMER, MATH, TEACHER_ID, config_request
from grade_service.database.enums import AverageType
from grade_service.database.repositories import GradeRepository
from grade_service.database.schemas import AverageKey
from grade_service.errors import GradeErrorCode, InsufficientGradesError
from grade_service.services.calculation_service import CalculationService
from grade_service.services.locks import KeyedLockManager
from grade_service.services.semester_config_service import SemesterConfigService


def semester_key(student_id="s1", subject_id=MATH, semester=1):
    return AverageKey(student_id, CLASS_ID, ACADEMIC_YEAR, AverageType.SEMESTER_AVERAGE,
                      subject_id=subject_id, semester=semester)


class TestSubjectAverages:
    """测试科目月考平均与学期平均"""

    @pytest.fixture(autouse=True)
    def _service(self, default_configs, seeded_db, memory_cache, lock_manager):
        self.db = seeded_db
        self.service = CalculationService(seeded_db, memory_cache, lock_manager=lock_manager)

    def test_monthly_average(self, add_subject_grades):
        add_subject_grades("s1", MATH, [80, 85, 90])
        row = self.service.calculate_monthly_average(TEACHER_ID, "s1", CLASS_ID, MATH, 1, ACADEMIC_YEAR)
        assert row.average_score == Decimal("85.00")
        assert row.letter_grade == "B"
        assert row.average_type == AverageType.MONTHLY_AVERAGE

    def test_semester_average(self, add_subject_grades):
        add_subject_grades("s1", MATH, [80, 85, 90], semester_score=70)
        row = self.service.calculate_semester_average(TEACHER_ID, "s1", CLASS_ID, MATH, 1, ACADEMIC_YEAR)
        assert row.average_score == Decimal("79.00")
        assert row.letter_grade == "B"
        assert row.teacher_id == TEACHER_ID
        assert len(row.source_fingerprint) == 64

    def test_teacher_weights_apply(self, add_subject_grades):
        SemesterConfigService(self.db).save_teacher_config(
            TEACHER_ID, config_request(1, monthlyWeight=70, semesterWeight=30)
        )
        add_subject_grades("s1", MATH, [80, 85, 90], semester_score=70)
        row = self.service.calculate_semester_average(TEACHER_ID, "s1", CLASS_ID, MATH, 1, ACADEMIC_YEAR)
        assert row.average_score == Decimal("80.50")

    def test_missing_monthly_grade_writes_nothing(self, add_subject_grades):
        """配置3次月考但只录入2次：报错且不写入平均分"""
        add_subject_grades("s1", MATH, [80, 85])
        with pytest.raises(InsufficientGradesError) as exc_info:
            self.service.calculate_monthly_average(TEACHER_ID, "s1", CLASS_ID, MATH, 1, ACADEMIC_YEAR)
        assert exc_info.value.code == GradeErrorCode.MISSING_MONTHLY_EXAMS
        assert exc_info.value.details["missingAssessments"] == ["MONTHLY_3"]
        assert self.service.average_repo.get(
            AverageKey("s1", CLASS_ID, ACADEMIC_YEAR, AverageType.MONTHLY_AVERAGE, subject_id=MATH, semester=1)
        ) is None

    def test_failure_keeps_prior_row_without_overwrite(self, add_subject_grades):
        grades = add_subject_grades("s1", MATH, [80, 85, 90], semester_score=70)
        self.service.calculate_semester_average(TEACHER_ID, "s1", CLASS_ID, MATH, 1, ACADEMIC_YEAR)
        GradeRepository(self.db).delete(grades[-1])

        with pytest.raises(InsufficientGradesError):
            self.service.calculate_semester_average(TEACHER_ID, "s1", CLASS_ID, MATH, 1, ACADEMIC_YEAR)
        assert self.service.average_repo.get(semester_key()).average_score == Decimal("79.00")

    def test_failure_removes_prior_row_with_overwrite(self, add_subject_grades):
        grades = add_subject_grades("s1", MATH, [80, 85, 90], semester_score=70)
        self.service.calculate_semester_average(TEACHER_ID, "s1", CLASS_ID, MATH, 1, ACADEMIC_YEAR)
        GradeRepository(self.db).delete(grades[-1])

        with pytest.raises(InsufficientGradesError) as exc_info:
            self.service.calculate_semester_average(TEACHER_ID, "s1", CLASS_ID, MATH, 1, ACADEMIC_YEAR,
                                                    overwrite=True)
        assert exc_info.value.code == GradeErrorCode.MISSING_SEMESTER_EXAM
        assert self.service.average_repo.get(semester_key()) is None

    def test_recalculation_is_idempotent(self, add_subject_grades):
        add_subject_grades("s1", MATH, [71, 77, 83.5], semester_score=64)
        first = self.service.calculate_semester_average(TEACHER_ID, "s1", CLASS_ID, MATH, 1, ACADEMIC_YEAR)
        first_score, first_fingerprint = first.average_score, first.source_fingerprint
        second = self.service.calculate_semester_average(TEACHER_ID, "s1", CLASS_ID, MATH, 1, ACADEMIC_YEAR)

        assert second.average_score == first_score
        assert second.source_fingerprint == first_fingerprint
        cohort = self.service.subject_cohort(CLASS_ID, MATH, 1, ACADEMIC_YEAR)
        assert len(self.service.average_repo.list_cohort(cohort)) == 1


class TestOverallAndAnnualAverages:
    """测试全科平均与学年平均"""

    @pytest.fixture(autouse=True)
    def _service(self, default_configs, seeded_db, memory_cache, lock_manager):
        self.service = CalculationService(seeded_db, memory_cache, lock_manager=lock_manager)

    def test_overall_semester_average(self, add_subject_grades):
        add_subject_grades("s1", MATH, [80, 85, 90], semester_score=70)
        add_subject_grades("s1", KHMER, [80, 90, 100], semester_score=60)
        row = self.service.calculate_overall_semester_average(TEACHER_ID, "s1", CLASS_ID, 1, ACADEMIC_YEAR)
        assert row.average_score == Decimal("78.50")
        assert row.subject_id is None

    def test_overall_skips_incomplete_subject(self, add_subject_grades):
        add_subject_grades("s1", MATH, [80, 85, 90], semester_score=70)
        add_subject_grades("s1", KHMER, [80, 90, 100])
        row = self.service.calculate_overall_semester_average(TEACHER_ID, "s1", CLASS_ID, 1, ACADEMIC_YEAR)
        assert row.average_score == Decimal("79.00")

    def test_overall_without_complete_subject(self, add_subject_grades):
        add_subject_grades("s1", MATH, [80, 85])
        with pytest.raises(InsufficientGradesError):
            self.service.calculate_overall_semester_average(TEACHER_ID, "s1", CLASS_ID, 1, ACADEMIC_YEAR)

    def test_subject_annual_average(self, add_subject_grades):
        add_subject_grades("s1", MATH, [80, 85, 90], semester_score=70)
        add_subject_grades("s1", MATH, [90, 90, 90], semester_score=80, semester=2)
        row = self.service.calculate_subject_annual_average(TEACHER_ID, "s1", CLASS_ID, MATH, ACADEMIC_YEAR)
        assert row.average_score == Decimal("82.50")
        assert row.semester is None

    def test_overall_annual_average(self, add_subject_grades):
        add_subject_grades("s1", MATH, [80, 85, 90], semester_score=70)
        add_subject_grades("s1", MATH, [90, 90, 90], semester_score=80, semester=2)
        row = self.service.calculate_overall_annual_average(TEACHER_ID, "s1", CLASS_ID, ACADEMIC_YEAR)
        assert row.average_score == Decimal("82.50")
        assert row.average_type == AverageType.OVERALL_ANNUAL

    def test_annual_requires_second_semester(self, add_subject_grades):
        add_subject_grades("s1", MATH, [80, 85, 90], semester_score=70)
        with pytest.raises(InsufficientGradesError):
            self.service.calculate_subject_annual_average(TEACHER_ID, "s1", CLASS_ID, MATH, ACADEMIC_YEAR)


class TestRankingsAndFreshness:
    """测试排名、过期检测与缓存"""

    @pytest.fixture(autouse=True)
    def _service(self, default_configs, seeded_db, memory_cache, lock_manager, dispatcher, publisher):
        self.db = seeded_db
        self.cache = memory_cache
        self.publisher = publisher
        self.service = CalculationService(seeded_db, memory_cache, dispatcher, lock_manager)

    def _seed_class(self, add_subject_grades):
        add_subject_grades("s1", MATH, [90, 90, 90], semester_score=90)
        add_subject_grades("s2", MATH, [90, 90, 90], semester_score=90)
        add_subject_grades("s3", MATH, [80, 80, 80], semester_score=80)

    def test_class_calculation_summary(self, add_subject_grades):
        self._seed_class(add_subject_grades)
        add_subject_grades("s4", MATH, [70, 70])

        summary = self.service.calculate_class_averages(TEACHER_ID, CLASS_ID, 1, ACADEMIC_YEAR)

        assert summary.students_total == 4
        assert summary.students_calculated == 3
        assert summary.students_skipped == 1
        assert summary.errors == {}
        assert self.publisher.of_type("average.calculated")

    def test_class_rankings_with_ties(self, add_subject_grades):
        self._seed_class(add_subject_grades)
        self.service.calculate_class_averages(TEACHER_ID, CLASS_ID, 1, ACADEMIC_YEAR)

        payload = self.service.get_class_rankings(TEACHER_ID, CLASS_ID, 1, ACADEMIC_YEAR)

        assert payload["averageType"] == "OVERALL_SEMESTER"
        assert payload["totalStudents"] == 3
        assert [(e["studentId"], e["rank"]) for e in payload["rankings"]] == [("s1", 1), ("s2", 1), ("s3", 3)]
        assert all(e["totalStudents"] == 3 for e in payload["rankings"])
        assert self.cache.get_class_rankings(TEACHER_ID, CLASS_ID, 1, ACADEMIC_YEAR) == payload

    def test_subject_rankings_are_computed_on_read(self, add_subject_grades):
        self._seed_class(add_subject_grades)

        payload = self.service.get_subject_rankings(TEACHER_ID, CLASS_ID, MATH, 1, ACADEMIC_YEAR)

        assert payload["subjectName"] == "Mathematics"
        assert [e["rank"] for e in payload["rankings"]] == [1, 1, 3]
        row = self.service.average_repo.get(semester_key("s3"))
        assert row.subject_rank == 3
        assert row.total_students == 3

    def test_stale_average_detected_after_direct_grade_change(self, add_subject_grades):
        grades = add_subject_grades("s1", MATH, [80, 85, 90], semester_score=70)
        self.service.calculate_semester_average(TEACHER_ID, "s1", CLASS_ID, MATH, 1, ACADEMIC_YEAR)
        GradeRepository(self.db).update(grades[-1], {"score": Decimal("100")})

        row, changed = self.service.ensure_fresh(TEACHER_ID, semester_key())

        assert changed is True
        assert row.average_score == Decimal("91.00")

    def test_fresh_average_is_not_recalculated(self, add_subject_grades):
        add_subject_grades("s1", MATH, [80, 85, 90], semester_score=70)
        self.service.calculate_semester_average(TEACHER_ID, "s1", CLASS_ID, MATH, 1, ACADEMIC_YEAR)
        row, changed = self.service.ensure_fresh(TEACHER_ID, semester_key())
        assert changed is False
        assert row.average_score == Decimal("79.00")

    def test_stale_average_detected_after_config_change(self, add_subject_grades):
        add_subject_grades("s1", MATH, [80, 85, 90], semester_score=70)
        self.service.calculate_semester_average(TEACHER_ID, "s1", CLASS_ID, MATH, 1, ACADEMIC_YEAR)
        SemesterConfigService(self.db).save_teacher_config(
            TEACHER_ID, config_request(1, monthlyWeight=70, semesterWeight=30)
        )

        row, changed = self.service.ensure_fresh(TEACHER_ID, semester_key())

        assert changed is True
        assert row.average_score == Decimal("80.50")

    def test_student_summary_is_cached(self, add_subject_grades):
        add_subject_grades("s1", MATH, [80, 85, 90], semester_score=70)

        summary = self.service.get_student_summary(TEACHER_ID, "s1", CLASS_ID, 1, ACADEMIC_YEAR)

        types = [entry["averageType"] for entry in summary["averages"]]
        assert types == ["MONTHLY_AVERAGE", "SEMESTER_AVERAGE", "OVERALL_SEMESTER"]
        semester_entry = summary["averages"][1]
        assert semester_entry["averageScore"] == 79.0
        assert semester_entry["subjectName"] == "Mathematics"
        assert self.cache.get_student_averages(TEACHER_ID, "s1", CLASS_ID, 1, ACADEMIC_YEAR) == summary

    def test_reader_uses_grade_owner_config(self, add_grade):
        """其他教师读取时按成绩录入教师的配置判断新鲜度，不会改写平均分"""
        SemesterConfigService(self.db).save_teacher_config(
            TEACHER_ID, config_request(1, ("MONTHLY_1", "MONTHLY_2"))
        )
        for code, score in (("MONTHLY_1", 80), ("MONTHLY_2", 85), ("SEMESTER_1", 70)):
            add_grade("s1", MATH, code, score)
        stored = self.service.calculate_semester_average(TEACHER_ID, "s1", CLASS_ID, MATH, 1, ACADEMIC_YEAR)
        assert stored.average_score == Decimal("77.50")

        row, changed = self.service.ensure_fresh("homeroom-teacher", semester_key())
        assert changed is False
        assert row.source_fingerprint == stored.source_fingerprint

        summary = self.service.get_student_summary("homeroom-teacher", "s1", CLASS_ID, 1, ACADEMIC_YEAR)
        semester_entry = [e for e in summary["averages"] if e["averageType"] == "SEMESTER_AVERAGE"][0]
        assert semester_entry["averageScore"] == 77.5
        row = self.service.average_repo.get(semester_key())
        assert row.average_score == Decimal("77.50")
        assert row.teacher_id == TEACHER_ID

    def test_summary_not_cached_when_invalidated_during_read(self, add_subject_grades):
        add_subject_grades("s1", MATH, [80, 85, 90], semester_score=70)
        get_names = self.service.subject_repo.get_names

        def names_with_concurrent_write(subject_ids):
            # 读取过程中另一请求修改了成绩
            self.cache.on_grade_modified(TEACHER_ID, "s1", CLASS_ID, 1, ACADEMIC_YEAR)
            return get_names(subject_ids)

        self.service.subject_repo.get_names = names_with_concurrent_write
        summary = self.service.get_student_summary(TEACHER_ID, "s1", CLASS_ID, 1, ACADEMIC_YEAR)

        assert summary["averages"]
        assert self.cache.get_student_averages(TEACHER_ID, "s1", CLASS_ID, 1, ACADEMIC_YEAR) is None

        self.service.subject_repo.get_names = get_names
        self.service.get_student_summary(TEACHER_ID, "s1", CLASS_ID, 1, ACADEMIC_YEAR)
        assert self.cache.get_student_averages(TEACHER_ID, "s1", CLASS_ID, 1, ACADEMIC_YEAR) is not None

    def test_grade_change_cascade_evicts_cache(self, add_subject_grades):
        add_subject_grades("s1", MATH, [80, 85, 90], semester_score=70)
        self.service.get_student_summary(TEACHER_ID, "s1", CLASS_ID, 1, ACADEMIC_YEAR)

        rows = self.service.recalculate_on_grade_change(TEACHER_ID, "s1", CLASS_ID, MATH, 1, ACADEMIC_YEAR)

        assert {row.average_type for row in rows} == {
            AverageType.MONTHLY_AVERAGE, AverageType.SEMESTER_AVERAGE, AverageType.OVERALL_SEMESTER
        }
        assert self.cache.get_student_averages(TEACHER_ID, "s1", CLASS_ID, 1, ACADEMIC_YEAR) is None

    def test_average_event_published(self, add_subject_grades):
        add_subject_grades("s1", MATH, [80, 85, 90], semester_score=70)
        self.service.calculate_semester_average(TEACHER_ID, "s1", CLASS_ID, MATH, 1, ACADEMIC_YEAR)

        events = self.publisher.of_type("average.calculated")
        assert len(events) == 1
        assert events[0]["averageScore"] == 79.0
        assert events[0]["subjectName"] == "Mathematics"
        assert events[0]["averageType"] == "SEMESTER_AVERAGE"


class TestFailureAndConcurrency:
    """测试失败处理与并发串行化"""

    def test_failure_evicts_cache(self, default_configs, seeded_db, add_subject_grades, lock_manager):
        cache = MagicMock()
        service = CalculationService(seeded_db, cache, lock_manager=lock_manager)
        add_subject_grades("s1", MATH, [80, 85])

        with pytest.raises(InsufficientGradesError):
            service.calculate_semester_average(TEACHER_ID, "s1", CLASS_ID, MATH, 1, ACADEMIC_YEAR)

        cache.on_grade_modified.assert_called_once_with(TEACHER_ID, "s1", CLASS_ID, 1, ACADEMIC_YEAR)

    def test_same_key_is_computed_serially(self):
        """同一键的并发计算在锁内串行执行"""
        service = CalculationService(MagicMock(), MagicMock(), lock_manager=KeyedLockManager(timeout=5))
        service.average_repo = MagicMock()
        state = {"active": 0, "max_active": 0, "calls": 0}
        state_lock = threading.Lock()

        def slow_evaluate(key):
            with state_lock:
                state["active"] += 1
                state["calls"] += 1
                state["max_active"] = max(state["max_active"], state["active"])
            time.sleep(0.01)
            with state_lock:
                state["active"] -= 1
            return Decimal("79.00"), "f" * 64

        service._evaluate = slow_evaluate

        threads = [
            threading.Thread(target=service.calculate_semester_average,
                             args=(TEACHER_ID, "s1", CLASS_ID, MATH, 1, ACADEMIC_YEAR))
            for _ in range(6)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert state["calls"] == 6
        assert state["max_active"] == 1
        assert service.average_repo.upsert.call_count == 6
