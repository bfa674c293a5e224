"""
Remediation ("jam tambahan") trigger.

Every time an exam score is saved, the IP of that student/subject/stage is
recomputed from the raw daily average. If 0 < IP < 40 and no pending task exists
for that (student, subject, stage), one pending task is created.
"""
import logging
import math
from datetime import datetime, timezone
from statistics import mean
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING, ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError, PyMongoError

from grading import PASS_THRESHOLD, weighted_total
from schemas import (
    ExamScore,
    RemediationTask,
    ScheduleEntry,
    SessionScore,
    TriggerOutcome,
)

logger = logging.getLogger(__name__)


class RemediationError(Exception):
    pass


class TaskNotFound(RemediationError):
    pass


class TaskNotPending(RemediationError):
    pass


class RemediationPersistError(RemediationError):
    """Some tasks of a batch could not be stored. The other students were still evaluated."""

    def __init__(self, failed_student_ids: List[str], outcomes: List[TriggerOutcome]):
        self.failed_student_ids = failed_student_ids
        self.outcomes = outcomes
        super().__init__(
            "Gagal menyimpan jam tambahan untuk siswa: %s" % ", ".join(failed_student_ids)
        )


class RemediationStore(Protocol):
    def find_pending(self, student_id: str, subject_id: str, stage_id: str) -> Optional[RemediationTask]:
        ...

    def insert_if_absent(self, task: RemediationTask) -> Optional[RemediationTask]:
        """Insert `task` unless a pending task exists for its key. Returns the stored task or None."""
        ...

    def get_task(self, task_id: str) -> Optional[RemediationTask]:
        ...

    def list_tasks(self, **filters) -> List[RemediationTask]:
        ...

    def mark_done(self, task_id: str, override_value: float) -> Optional[RemediationTask]:
        ...


def _task_from_doc(doc: Dict) -> RemediationTask:
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return RemediationTask(**doc)


class MongoRemediationStore:
    """RemediationStore over a pymongo collection (see database.ensure_indexes)."""

    def __init__(self, collection: Collection):
        self.collection = collection

    @staticmethod
    def _pending_key(student_id: str, subject_id: str, stage_id: str) -> Dict:
        return {
            "student_id": student_id,
            "subject_id": subject_id,
            "stage_id": stage_id,
            "status": "pending",
        }

    def find_pending(self, student_id, subject_id, stage_id):
        doc = self.collection.find_one(self._pending_key(student_id, subject_id, stage_id))
        return _task_from_doc(doc) if doc else None

    def insert_if_absent(self, task):
        now = datetime.now(timezone.utc)
        data = task.model_dump(exclude={"id"})
        data["status"] = "pending"
        data["created_at"] = data.get("created_at") or now
        data["updated_at"] = now
        try:
            result = self.collection.update_one(
                self._pending_key(task.student_id, task.subject_id, task.stage_id),
                {"$setOnInsert": data},
                upsert=True,
            )
        except DuplicateKeyError:
            # a concurrent writer inserted the same pending task first
            return None
        if result.upserted_id is None:
            return None
        return task.model_copy(update={"id": str(result.upserted_id), "created_at": data["created_at"]})

    def get_task(self, task_id):
        try:
            oid = ObjectId(task_id)
        except (InvalidId, TypeError):
            return None
        doc = self.collection.find_one({"_id": oid})
        return _task_from_doc(doc) if doc else None

    def list_tasks(self, **filters):
        flt = {k: v for k, v in filters.items() if v is not None}
        cursor = self.collection.find(flt).sort("created_at", DESCENDING)
        return [_task_from_doc(doc) for doc in cursor]

    def mark_done(self, task_id, override_value):
        doc = self.collection.find_one_and_update(
            {"_id": ObjectId(task_id), "status": "pending"},
            {"$set": {
                "status": "done",
                "override_value": override_value,
                "updated_at": datetime.now(timezone.utc),
            }},
            return_document=ReturnDocument.AFTER,
        )
        return _task_from_doc(doc) if doc else None


def clock_minutes(value: str) -> int:
    """'07:30' -> 450"""
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def schedule_duration_minutes(start_time: str, end_time: str) -> int:
    return clock_minutes(end_time) - clock_minutes(start_time)


def average_duration(durations: Sequence[int]) -> int:
    """Mean scheduled session length in minutes, rounded half up. 0 without schedule."""
    if not durations:
        return 0
    return int(math.floor(mean(durations) + 0.5))


def on_exam_recorded(
    store: RemediationStore,
    student_id: str,
    subject_id: str,
    stage_id: str,
    exam_score: float,
    sessions: Iterable[SessionScore],
    schedule_durations: Sequence[int] = (),
) -> TriggerOutcome:
    """
    Evaluate one freshly saved exam score and create a remediation task if needed.

    `sessions` may be the flat collection; only this student's sessions for the
    subject/stage are used. Existing overrides are ignored on purpose: they belong
    to an earlier remediation cycle.
    """
    own = [
        s for s in sessions
        if s.student_id == student_id and s.subject_id == subject_id and s.stage_id == stage_id
    ]
    if not own:
        return TriggerOutcome(student_id=student_id, created=False, reason="no_sessions")

    daily_avg = mean(s.score for s in own)
    ip = weighted_total(daily_avg, exam_score)
    if ip <= 0:
        return TriggerOutcome(student_id=student_id, created=False, reason="not_eligible")
    if ip >= PASS_THRESHOLD:
        return TriggerOutcome(student_id=student_id, created=False, reason="above_threshold")

    if store.find_pending(student_id, subject_id, stage_id) is not None:
        logger.debug("pending remediation already exists for %s/%s/%s", student_id, subject_id, stage_id)
        return TriggerOutcome(student_id=student_id, created=False, reason="already_pending")

    duration = average_duration(schedule_durations)
    baseline = round(ip, 2)
    task = RemediationTask(
        student_id=student_id,
        subject_id=subject_id,
        stage_id=stage_id,
        status="pending",
        baseline_score=baseline,
        duration_minutes=duration,
        note="Otomatis: IP %s < %s (rata-rata harian %s, ulangan %s). Durasi %s menit" % (
            baseline, PASS_THRESHOLD, round(daily_avg, 2), exam_score, duration,
        ),
    )
    stored = store.insert_if_absent(task)
    if stored is None:
        return TriggerOutcome(student_id=student_id, created=False, reason="already_pending")

    logger.info(
        "remediation task created for student %s subject %s stage %s (IP %s, %s min)",
        student_id, subject_id, stage_id, baseline, duration,
    )
    return TriggerOutcome(student_id=student_id, created=True, reason="created", task=stored)


def trigger_for_exam_batch(
    store: RemediationStore,
    subject_id: str,
    stage_id: str,
    exams: Iterable[ExamScore],
    sessions: Iterable[SessionScore],
    schedule: Iterable[ScheduleEntry] = (),
) -> List[TriggerOutcome]:
    """
    Run the trigger for every student of one exam-score save.

    Students are evaluated independently. If storing a task fails for some of
    them, the rest still run and RemediationPersistError is raised at the end.
    """
    sessions = list(sessions)
    durations = [
        schedule_duration_minutes(entry.start_time, entry.end_time) for entry in schedule
        if entry.subject_id == subject_id and entry.stage_id == stage_id
    ]

    outcomes: List[TriggerOutcome] = []
    failed: List[str] = []
    first_error: Optional[Exception] = None
    for exam in exams:
        if exam.subject_id != subject_id or exam.stage_id != stage_id:
            continue
        try:
            outcome = on_exam_recorded(
                store, exam.student_id, subject_id, stage_id, exam.score, sessions, durations,
            )
        except (PyMongoError, RemediationError) as exc:
            logger.exception("could not store remediation task for student %s", exam.student_id)
            failed.append(exam.student_id)
            first_error = first_error or exc
            continue
        outcomes.append(outcome)

    if failed:
        raise RemediationPersistError(failed, outcomes) from first_error
    return outcomes


def complete_task(store: RemediationStore, task_id: str, override_value: float) -> RemediationTask:
    """Close a pending task with its remediation score; from now on it overrides the daily average."""
    task = store.get_task(task_id)
    if task is None:
        raise TaskNotFound(task_id)
    if task.status != "pending":
        raise TaskNotPending(task_id)

    value = min(100.0, max(0.0, float(override_value)))
    updated = store.mark_done(task_id, value)
    if updated is None:
        # closed by someone else between the read and the update
        raise TaskNotPending(task_id)
    return updated
