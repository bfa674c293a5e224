import pytest

from indices import ScoreBook, cumulative_index, rank_students, stage_index, top_per_group
from schemas import ExamScore, RemediationOverride, SessionScore, Stage, SubjectCredit

SUBJECTS = [
    SubjectCredit(subject_id="M1", credit_weight=2),
    SubjectCredit(subject_id="M2", credit_weight=2),
]
STAGES = [Stage(stage_id="T1", ordinal=1), Stage(stage_id="T2", ordinal=2)]


def graded(student, subject, stage, daily, exam):
    """Session scores plus one exam score for a student/subject/stage."""
    sessions = [
        SessionScore(student_id=student, subject_id=subject, stage_id=stage, session_number=i, score=s)
        for i, s in enumerate(daily, start=1)
    ]
    exams = [] if exam is None else [
        ExamScore(student_id=student, subject_id=subject, stage_id=stage, score=exam)
    ]
    return sessions, exams


def collect(*parts):
    sessions, exams = [], []
    for s, e in parts:
        sessions.extend(s)
        exams.extend(e)
    return sessions, exams


def test_stage_index_is_credit_weighted():
    # M1 total 82.0 (BB, 3.50), M2 total 60.0 (C, 2.50)
    sessions, exams = collect(
        graded("S1", "M1", "T1", [70, 80, 90], 85),
        graded("S1", "M2", "T1", [60], 60),
    )
    result = stage_index("S1", "T1", SUBJECTS, sessions, exams)
    assert result.stage_index == pytest.approx(3.00)
    assert result.total_credit == 4


def test_stage_index_uses_credit_weights_unevenly():
    subjects = [SubjectCredit(subject_id="M1", credit_weight=1), SubjectCredit(subject_id="M2", credit_weight=3)]
    sessions, exams = collect(
        graded("S1", "M1", "T1", [100], 100),
        graded("S1", "M2", "T1", [60], 60),
    )
    result = stage_index("S1", "T1", subjects, sessions, exams)
    assert result.stage_index == pytest.approx((4.0 * 1 + 2.5 * 3) / 4)


def test_stage_index_absent_when_one_subject_incomplete():
    subjects = [SubjectCredit(subject_id="A", credit_weight=2), SubjectCredit(subject_id="B", credit_weight=3)]
    sessions, exams = collect(
        graded("S1", "A", "T1", [80], 80),
        graded("S1", "B", "T1", [80], None),
    )
    assert stage_index("S1", "T1", subjects, sessions, exams) is None


def test_stage_index_absent_without_subjects():
    sessions, exams = graded("S1", "M1", "T1", [80], 80)
    assert stage_index("S1", "T1", [], sessions, exams) is None


def test_stage_index_ignores_other_students_and_stages():
    sessions, exams = collect(
        graded("S1", "M1", "T1", [100], 100),
        graded("S1", "M2", "T1", [100], 100),
        graded("S2", "M1", "T1", [10], 10),
        graded("S1", "M1", "T2", [10], 10),
    )
    assert stage_index("S1", "T1", SUBJECTS, sessions, exams).stage_index == pytest.approx(4.0)


def test_completed_override_feeds_stage_index():
    sessions, exams = collect(
        graded("S1", "M1", "T1", [30, 30], 30),
        graded("S1", "M2", "T1", [100], 100),
    )
    pending = RemediationOverride(student_id="S1", subject_id="M1", stage_id="T1", status="pending", override_value=90)
    done = RemediationOverride(student_id="S1", subject_id="M1", stage_id="T1", status="done", override_value=90)

    without = stage_index("S1", "T1", SUBJECTS, sessions, exams, [pending])
    with_override = stage_index("S1", "T1", SUBJECTS, sessions, exams, [done])

    # 30 -> E (2.00); 90*0.6 + 30*0.4 = 66 -> CC (2.80)
    assert without.stage_index == pytest.approx((2.0 * 2 + 4.0 * 2) / 4)
    assert with_override.stage_index == pytest.approx((2.8 * 2 + 4.0 * 2) / 4)


def test_score_book_keeps_first_exam_and_first_effective_override():
    exams = [
        ExamScore(student_id="S1", subject_id="M1", stage_id="T1", score=70),
        ExamScore(student_id="S1", subject_id="M1", stage_id="T1", score=10),
    ]
    overrides = [
        RemediationOverride(student_id="S1", subject_id="M1", stage_id="T1", status="done", override_value=None),
        RemediationOverride(student_id="S1", subject_id="M1", stage_id="T1", status="done", override_value=75),
        RemediationOverride(student_id="S1", subject_id="M1", stage_id="T1", status="done", override_value=50),
    ]
    book = ScoreBook([], exams, overrides)
    assert book.exam_for("S1", "M1", "T1").score == 70
    assert book.override_for("S1", "M1", "T1") == 75
    assert book.subject_result("S1", "M1", "T1") is None


def test_cumulative_index_skips_absent_stages():
    sessions, exams = collect(
        graded("S1", "M1", "T1", [70, 80, 90], 85),
        graded("S1", "M2", "T1", [60], 60),
        graded("S1", "M1", "T2", [90], 90),
    )
    result = cumulative_index("S1", STAGES, SUBJECTS, sessions, exams)
    assert result.cumulative_index == pytest.approx(3.0)
    assert result.stage_count == 1


def test_cumulative_index_is_unweighted_mean_of_stages():
    sessions, exams = collect(
        graded("S1", "M1", "T1", [70, 80, 90], 85),
        graded("S1", "M2", "T1", [60], 60),
        # T2: AA (4.00) and CC (2.80) -> 3.40
        graded("S1", "M1", "T2", [100], 100),
        graded("S1", "M2", "T2", [65], 65),
    )
    result = cumulative_index("S1", STAGES, SUBJECTS, sessions, exams)
    assert result.cumulative_index == pytest.approx(3.20)
    assert result.stage_count == 2
    assert result.grade_label == "BB"

    reversed_result = cumulative_index("S1", list(reversed(STAGES)), SUBJECTS, sessions, exams)
    assert reversed_result.cumulative_index == pytest.approx(result.cumulative_index)


def test_cumulative_index_absent_when_no_stage_complete():
    sessions, exams = graded("S1", "M1", "T1", [80], None)
    assert cumulative_index("S1", STAGES, SUBJECTS, sessions, exams) is None


def test_rank_students_orders_by_cumulative_index():
    sessions, exams = collect(
        graded("S1", "M1", "T1", [70, 80, 90], 85),
        graded("S1", "M2", "T1", [60], 60),
        graded("S2", "M1", "T1", [100], 100),
        graded("S2", "M2", "T1", [100], 100),
        graded("S3", "M1", "T1", [50], None),
    )
    rows = rank_students(["S1", "S2", "S3"], STAGES, SUBJECTS, ScoreBook(sessions, exams))
    assert [r["student_id"] for r in rows] == ["S2", "S1"]
    assert rows[0]["rank"] == 1
    assert rows[0]["cumulative_index"] == 4.0
    assert rows[0]["grade_label"] == "AA"
    assert rows[1]["cumulative_index"] == 3.0


def test_top_per_group_keeps_best_of_each_group():
    rows = [
        {"student_id": "S2", "cumulative_index": 3.8, "rank": 1},
        {"student_id": "S1", "cumulative_index": 3.5, "rank": 2},
        {"student_id": "S4", "cumulative_index": 3.2, "rank": 3},
        {"student_id": "S3", "cumulative_index": 2.5, "rank": 4},
    ]
    groups = {"S1": "Al-Fatih", "S2": "Al-Fatih", "S3": "An-Nur", "S4": None}
    tops = top_per_group(rows, groups)
    assert [(r["group_name"], r["student_id"]) for r in tops] == [("Al-Fatih", "S2"), ("An-Nur", "S3")]
    assert "group_name" not in rows[0]
