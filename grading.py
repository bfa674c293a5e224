"""
Subject scoring: weight table lookup and the IP (nilai per materi per tahap).

IP = rata-rata harian * 60% + nilai ulangan * 40%, then mapped to a predikat and
bobot through WEIGHT_BANDS. A completed remediation ("jam tambahan") replaces the
daily average instead of being blended into it.
"""
from statistics import mean
from typing import Iterable, List, Optional, Sequence

from schemas import Badge, ExamScore, SessionResult, SessionScore, WeightBand

DAILY_WEIGHT = 0.6
EXAM_WEIGHT = 0.4
PASS_THRESHOLD = 40

WEIGHT_BANDS: List[WeightBand] = [
    WeightBand(grade_label="AA", weight=4.00, score_min=95, score_max=100),
    WeightBand(grade_label="A", weight=3.80, score_min=85, score_max=94),
    WeightBand(grade_label="BB", weight=3.50, score_min=80, score_max=84),
    WeightBand(grade_label="B", weight=3.20, score_min=70, score_max=79),
    WeightBand(grade_label="CC", weight=2.80, score_min=65, score_max=69),
    WeightBand(grade_label="C", weight=2.50, score_min=40, score_max=64),
    WeightBand(grade_label="E", weight=2.00, score_min=0, score_max=39),
]


def lookup_band(score: float) -> WeightBand:
    """Band for a 0-100 score. Out-of-range input falls back to the lowest band."""
    if score < 0 or score > 100:
        return WEIGHT_BANDS[-1]
    # bands are sorted descending, so a fractional score (e.g. 94.5) lands in
    # the band whose lower bound it reaches
    for band in WEIGHT_BANDS:
        if score >= band.score_min:
            return band
    return WEIGHT_BANDS[-1]


def cumulative_grade(index: float) -> WeightBand:
    # 4-point index back onto the 0-100 scale
    return lookup_band(index * 25)


def weighted_total(daily_avg: float, exam_score: float) -> float:
    return daily_avg * DAILY_WEIGHT + exam_score * EXAM_WEIGHT


def score_subject(
    sessions: Sequence[SessionScore],
    exam: Optional[ExamScore] = None,
    override: Optional[float] = None,
) -> Optional[SessionResult]:
    """
    Compute the IP of one student for one subject in one stage.

    Returns None when there are no session scores yet, or when the exam score is
    missing. A zero score is a real result and is never collapsed into None.
    """
    if not sessions:
        return None

    if override is not None and override > 0:
        daily_avg = float(override)
    else:
        daily_avg = float(mean(s.score for s in sessions))

    if exam is None:
        return None

    total = weighted_total(daily_avg, exam.score)
    band = lookup_band(total)
    return SessionResult(
        daily_avg=round(daily_avg, 2),
        exam_score=exam.score,
        total=round(total, 2),
        weight=band.weight,
        grade_label=band.grade_label,
        passes_threshold=total >= PASS_THRESHOLD,
    )


def assessment_status(
    sessions: Sequence[SessionScore],
    exam: Optional[ExamScore],
    result: Optional[SessionResult] = None,
) -> str:
    """not_started | incomplete | failing | passing"""
    if not sessions:
        return "not_started"
    if exam is None or result is None:
        return "incomplete"
    return "passing" if result.passes_threshold else "failing"


def earned_badges(result: Optional[SessionResult], badges: Iterable[Badge]) -> List[Badge]:
    if result is None:
        return []
    return [b for b in badges if result.total >= b.score_min]
