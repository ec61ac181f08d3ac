import pytest
from decimal import Decimal

from grade_service.calculation.average_calculator import (
    GradingPolicy, percentage, letter_grade, round_score,
    compute_monthly_average, compute_semester_average,
    compute_annual_average, compute_overall_average,
)
from grade_service.database.enums import AssessmentCategory
from grade_service.database.schemas import ExamScheduleConfig, GradeScore, ScheduleItem
from grade_service.errors import (
    GradeErrorCode, InsufficientGradesError, InvalidGradeDataError, InvalidConfigError
)


def make_config(monthly_weights=(None, None, None), monthly_weight=None, semester_weight=None,
                semester_exam_code="SEMESTER_1"):
    items = [
        ScheduleItem(f"MONTHLY_{i}", f"Month {i}", i, AssessmentCategory.MONTHLY,
                     Decimal(str(w)) if w is not None else None)
        for i, w in enumerate(monthly_weights, start=1)
    ]
    items.append(ScheduleItem(semester_exam_code, "Semester", len(items) + 1, AssessmentCategory.SEMESTER))
    return ExamScheduleConfig(
        academic_year="2024-2025",
        semester_exam_code=semester_exam_code,
        exam_schedule=tuple(items),
        monthly_weight=Decimal(str(monthly_weight)) if monthly_weight is not None else None,
        semester_weight=Decimal(str(semester_weight)) if semester_weight is not None else None,
    )


def scores(*values):
    return [GradeScore(f"MONTHLY_{i}", Decimal(str(v))) for i, v in enumerate(values, start=1)]


class TestLetterGrade:
    """测试等级划分"""

    @pytest.mark.parametrize("score,expected", [
        (100, "A"), (85, "A"), (Decimal("84.99"), "B"), (70, "B"), (Decimal("69.99"), "C"),
        (55, "C"), (40, "D"), (Decimal("39.99"), "E"), (25, "E"), (Decimal("24.99"), "F"), (0, "F"),
    ])
    def test_thresholds_are_inclusive(self, score, expected):
        assert letter_grade(score) == expected

    def test_monotonic_over_score_range(self):
        """分数越高，等级不会越低"""
        order = {grade: index for index, (_, grade) in enumerate(GradingPolicy.LETTER_THRESHOLDS)}
        order[GradingPolicy.FAILING_GRADE] = len(order)
        previous = None
        for step in range(0, 2001):
            grade = letter_grade(Decimal(step) / Decimal(20))
            if previous is not None:
                assert order[grade] <= order[previous]
            previous = grade

    def test_missing_score_raises_with_failing_grade(self):
        with pytest.raises(InsufficientGradesError) as exc_info:
            letter_grade(None)
        assert exc_info.value.code == GradeErrorCode.INSUFFICIENT_GRADES_FOR_CALCULATION
        assert exc_info.value.details["letterGrade"] == "F"


class TestPercentage:
    """测试百分比换算"""

    def test_scales_to_hundred(self):
        assert percentage(45, 50) == Decimal("90")

    def test_score_above_max_is_rejected(self):
        with pytest.raises(InvalidGradeDataError) as exc_info:
            percentage(101, 100)
        assert exc_info.value.code == GradeErrorCode.SCORE_OUT_OF_RANGE

    @pytest.mark.parametrize("score,max_score", [(-1, 100), (10, 0), (0, -5)])
    def test_invalid_values_are_rejected(self, score, max_score):
        with pytest.raises(InvalidGradeDataError) as exc_info:
            percentage(score, max_score)
        assert exc_info.value.code == GradeErrorCode.INVALID_SCORE


class TestMonthlyAverage:
    """测试月考平均"""

    def test_equal_weight_mean(self):
        """三次月考 80/85/90 -> 85.00，等级 B"""
        result = compute_monthly_average(scores(80, 85, 90), make_config())
        assert result == Decimal("85.00")
        assert letter_grade(result) == "B"

    def test_slot_weights(self):
        config = make_config(monthly_weights=(50, 30, 20))
        result = compute_monthly_average(scores(80, 85, 90), config)
        assert result == Decimal("83.50")

    def test_uses_max_score(self):
        entries = [
            GradeScore("MONTHLY_1", Decimal("40"), Decimal("50")),
            GradeScore("MONTHLY_2", Decimal("85")),
            GradeScore("MONTHLY_3", Decimal("18"), Decimal("20")),
        ]
        assert compute_monthly_average(entries, make_config()) == Decimal("85.00")

    def test_missing_slot_lists_missing_codes(self):
        """配置3次月考但只有2次成绩"""
        with pytest.raises(InsufficientGradesError) as exc_info:
            compute_monthly_average(scores(80, 85), make_config())
        assert exc_info.value.code == GradeErrorCode.MISSING_MONTHLY_EXAMS
        assert exc_info.value.details["missingAssessments"] == ["MONTHLY_3"]

    def test_extra_entries_are_ignored(self):
        entries = scores(80, 85, 90) + [GradeScore("MONTHLY_4", Decimal("10"))]
        assert compute_monthly_average(entries, make_config()) == Decimal("85.00")

    def test_config_without_monthly_slots(self):
        config = ExamScheduleConfig(
            academic_year="2024-2025",
            semester_exam_code="SEMESTER_1",
            exam_schedule=(ScheduleItem("SEMESTER_1", "Semester", 1, AssessmentCategory.SEMESTER),),
        )
        with pytest.raises(InvalidConfigError):
            compute_monthly_average([], config)


class TestSemesterAverage:
    """测试学期平均"""

    def test_default_split(self):
        """月考平均 85，期末 70，默认 60/40 -> 79.00，等级 B"""
        result = compute_semester_average(
            Decimal("85.0"), GradeScore("SEMESTER_1", Decimal("70")), make_config()
        )
        assert result == Decimal("79.00")
        assert letter_grade(result) == "B"

    def test_configured_split(self):
        config = make_config(monthly_weight=70, semester_weight=30)
        result = compute_semester_average(Decimal("85"), GradeScore("SEMESTER_1", Decimal("70")), config)
        assert result == Decimal("80.50")

    def test_without_config_uses_default(self):
        result = compute_semester_average(Decimal("50"), GradeScore("SEMESTER_1", Decimal("100")))
        assert result == Decimal("70.00")

    def test_missing_semester_exam(self):
        with pytest.raises(InsufficientGradesError) as exc_info:
            compute_semester_average(Decimal("85"), None, make_config())
        assert exc_info.value.code == GradeErrorCode.MISSING_SEMESTER_EXAM

    def test_missing_monthly_average(self):
        with pytest.raises(InsufficientGradesError) as exc_info:
            compute_semester_average(None, GradeScore("SEMESTER_1", Decimal("70")), make_config())
        assert exc_info.value.code == GradeErrorCode.MISSING_MONTHLY_EXAMS


class TestAnnualAndOverallAverage:
    """测试学年平均与全科平均"""

    def test_annual_is_mean_of_semesters(self):
        assert compute_annual_average({1: Decimal("79"), 2: Decimal("84")}) == Decimal("81.50")

    def test_annual_weights_apply_when_complete(self):
        result = compute_annual_average(
            {1: Decimal("80"), 2: Decimal("90")}, {1: Decimal("40"), 2: Decimal("60")}
        )
        assert result == Decimal("86.00")

    def test_annual_weights_ignored_when_not_summing_to_hundred(self):
        result = compute_annual_average(
            {1: Decimal("80"), 2: Decimal("90")}, {1: Decimal("40"), 2: Decimal("50")}
        )
        assert result == Decimal("85.00")

    def test_annual_weights_ignored_when_one_missing(self):
        result = compute_annual_average({1: Decimal("80"), 2: Decimal("90")}, {1: Decimal("40"), 2: None})
        assert result == Decimal("85.00")

    def test_annual_requires_both_semesters(self):
        with pytest.raises(InsufficientGradesError) as exc_info:
            compute_annual_average({1: Decimal("80"), 2: None})
        assert exc_info.value.details["missingSemesters"] == [2]

    def test_overall_is_arithmetic_mean(self):
        assert compute_overall_average([Decimal("79"), Decimal("88"), Decimal("91")]) == Decimal("86.00")

    def test_overall_without_subjects(self):
        with pytest.raises(InsufficientGradesError):
            compute_overall_average([])


class TestRounding:
    """测试两位小数四舍五入"""

    @pytest.mark.parametrize("raw,expected", [
        ("84.445", "84.45"), ("84.444", "84.44"), ("0.005", "0.01"), ("99.995", "100.00"),
    ])
    def test_half_up(self, raw, expected):
        assert round_score(Decimal(raw)) == Decimal(expected)

    def test_repeated_runs_are_identical(self):
        config = make_config()
        results = {compute_monthly_average(scores(71, 77, 83.5), config) for _ in range(20)}
        assert results == {Decimal("77.17")}
