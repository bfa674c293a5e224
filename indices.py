"""
Stage index (IPT) and cumulative index (IPK).

The two levels deliberately treat missing data differently:
  - IPT needs a complete IP for every subject of the stage, otherwise it is None.
  - IPK averages only the stages that have an IPT and skips the rest.
"""
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from grading import cumulative_grade, score_subject
from schemas import (
    CumulativeResult,
    ExamScore,
    RemediationOverride,
    SessionResult,
    SessionScore,
    Stage,
    StageResult,
    SubjectCredit,
)

logger = logging.getLogger(__name__)

Key = Tuple[str, str, str]


class ScoreBook:
    """
    Score records indexed once by (student_id, subject_id, stage_id).

    Build one book per batch (a report page, a ranking) instead of re-filtering
    the flat collections for every student/subject/stage combination.
    """

    def __init__(
        self,
        sessions: Iterable[SessionScore] = (),
        exams: Iterable[ExamScore] = (),
        overrides: Iterable[RemediationOverride] = (),
    ):
        self._sessions: Dict[Key, List[SessionScore]] = defaultdict(list)
        self._exams: Dict[Key, ExamScore] = {}
        self._overrides: Dict[Key, float] = {}

        for s in sessions:
            self._sessions[(s.student_id, s.subject_id, s.stage_id)].append(s)
        for e in exams:
            self._exams.setdefault((e.student_id, e.subject_id, e.stage_id), e)
        for o in overrides:
            if o.is_effective:
                self._overrides.setdefault(o.key, o.override_value)

    def sessions_for(self, student_id: str, subject_id: str, stage_id: str) -> List[SessionScore]:
        return list(self._sessions.get((student_id, subject_id, stage_id), ()))

    def exam_for(self, student_id: str, subject_id: str, stage_id: str) -> Optional[ExamScore]:
        return self._exams.get((student_id, subject_id, stage_id))

    def override_for(self, student_id: str, subject_id: str, stage_id: str) -> Optional[float]:
        return self._overrides.get((student_id, subject_id, stage_id))

    def subject_result(self, student_id: str, subject_id: str, stage_id: str) -> Optional[SessionResult]:
        return score_subject(
            self.sessions_for(student_id, subject_id, stage_id),
            self.exam_for(student_id, subject_id, stage_id),
            self.override_for(student_id, subject_id, stage_id),
        )

    def stage_index(
        self, student_id: str, stage_id: str, subjects: Sequence[SubjectCredit]
    ) -> Optional[StageResult]:
        if not subjects:
            return None

        weighted_sum = 0.0
        total_credit = 0
        for subject in subjects:
            result = self.subject_result(student_id, subject.subject_id, stage_id)
            if result is None:
                logger.debug(
                    "stage %s incomplete for student %s: no score for subject %s",
                    stage_id, student_id, subject.subject_id,
                )
                return None
            weighted_sum += result.weight * subject.credit_weight
            total_credit += subject.credit_weight

        return StageResult(
            stage_id=stage_id,
            stage_index=weighted_sum / total_credit,
            total_credit=total_credit,
            weighted_sum=weighted_sum,
        )

    def cumulative_index(
        self, student_id: str, stages: Sequence[Stage], subjects: Sequence[SubjectCredit]
    ) -> Optional[CumulativeResult]:
        collected = []
        for stage in stages:
            result = self.stage_index(student_id, stage.stage_id, subjects)
            if result is not None:
                collected.append(result.stage_index)

        if not collected:
            return None

        index = sum(collected) / len(collected)
        return CumulativeResult(
            cumulative_index=index,
            stage_count=len(collected),
            grade_label=cumulative_grade(index).grade_label,
        )


def stage_index(
    student_id: str,
    stage_id: str,
    subjects: Sequence[SubjectCredit],
    sessions: Iterable[SessionScore],
    exams: Iterable[ExamScore],
    overrides: Iterable[RemediationOverride] = (),
) -> Optional[StageResult]:
    return ScoreBook(sessions, exams, overrides).stage_index(student_id, stage_id, subjects)


def cumulative_index(
    student_id: str,
    stages: Sequence[Stage],
    subjects: Sequence[SubjectCredit],
    sessions: Iterable[SessionScore],
    exams: Iterable[ExamScore],
    overrides: Iterable[RemediationOverride] = (),
) -> Optional[CumulativeResult]:
    return ScoreBook(sessions, exams, overrides).cumulative_index(student_id, stages, subjects)


def rank_students(
    student_ids: Iterable[str],
    stages: Sequence[Stage],
    subjects: Sequence[SubjectCredit],
    book: ScoreBook,
) -> List[Dict]:
    """Students with an IPK, best first. Students without one are left out."""
    rows = []
    for student_id in student_ids:
        result = book.cumulative_index(student_id, stages, subjects)
        if result is None:
            continue
        rows.append({
            "student_id": student_id,
            "cumulative_index": round(result.cumulative_index, 2),
            "grade_label": result.grade_label,
            "stage_count": result.stage_count,
        })
    rows.sort(key=lambda r: r["cumulative_index"], reverse=True)
    for position, row in enumerate(rows, start=1):
        row["rank"] = position
    return rows


def top_per_group(rows: Sequence[Dict], groups: Mapping[str, Optional[str]]) -> List[Dict]:
    """Best ranked row of every group, groups in order of their best row."""
    best: Dict[str, Dict] = {}
    for row in rows:
        group = groups.get(row["student_id"])
        if group and group not in best:
            best[group] = {**row, "group_name": group}
    return list(best.values())
