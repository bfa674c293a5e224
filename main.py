import os
import logging
from contextlib import asynccontextmanager
from typing import List, Optional, Dict, Any
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError

from database import (
    REMEDIATION_COLLECTION,
    db,
    create_document,
    ensure_indexes,
    get_collection,
    get_document_by_id,
    get_documents,
    upsert_document,
)
from grading import assessment_status, earned_badges, score_subject
from indices import ScoreBook, rank_students, top_per_group
from remediation import (
    MongoRemediationStore,
    RemediationPersistError,
    TaskNotFound,
    TaskNotPending,
    complete_task,
    trigger_for_exam_batch,
)
from schemas import (
    Badge,
    ExamScore,
    RemediationTask,
    ScheduleEntry,
    SessionScore,
    Stage,
    Student,
    SubjectCredit,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

SCORE_LIMIT = 10000


@asynccontextmanager
async def lifespan(_app: FastAPI):
    try:
        ensure_indexes()
    except (RuntimeError, PyMongoError):
        logger.exception("Index setup skipped, database not reachable")
    yield


app = FastAPI(title="Nilai Akademik API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class SubjectIn(BaseModel):
    name: str
    credit_weight: int = Field(1, ge=1)

class StageIn(BaseModel):
    name: str
    ordinal: int = 0

class ExamEntryIn(BaseModel):
    student_id: str
    score: float = Field(..., ge=0, le=100)

class ExamBatchIn(BaseModel):
    subject_id: str
    stage_id: str
    scores: List[ExamEntryIn]

class CompleteRemediationIn(BaseModel):
    override_value: float


def remediation_store() -> MongoRemediationStore:
    return MongoRemediationStore(get_collection(REMEDIATION_COLLECTION))


def _subjects() -> List[SubjectCredit]:
    return [
        SubjectCredit(subject_id=doc["id"], credit_weight=doc.get("credit_weight", 1))
        for doc in get_documents("subject", {}, limit=500)
    ]


def _stages() -> List[Stage]:
    stages = [
        Stage(stage_id=doc["id"], ordinal=doc.get("ordinal", 0))
        for doc in get_documents("stage", {}, limit=500)
    ]
    return sorted(stages, key=lambda s: s.ordinal)


def _score_book(student_id: Optional[str] = None) -> ScoreBook:
    flt: Dict[str, Any] = {"student_id": student_id} if student_id else {}
    sessions = [SessionScore(**d) for d in get_documents("session_score", flt, limit=None)]
    exams = [ExamScore(**d) for d in get_documents("exam_score", flt, limit=None)]
    overrides = [
        RemediationTask(**d)
        for d in get_documents(REMEDIATION_COLLECTION, {**flt, "status": "done"}, limit=None)
    ]
    return ScoreBook(sessions, exams, overrides)


def _require(collection: str, doc_id: str, label: str) -> Dict[str, Any]:
    doc = get_document_by_id(collection, doc_id)
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} tidak ditemukan")
    return doc


@app.get("/")
def root():
    return {"message": "Nilai Akademik API"}


@app.get("/test")
def test_database():
    resp = {
        "backend": "✅ Running",
        "database": "❌ Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            resp["database"] = "✅ Connected"
            resp["collections"] = db.list_collection_names()
    except PyMongoError as e:
        resp["error"] = str(e)
    return resp


# Master data
@app.post("/students")
def create_student(payload: Student):
    data = payload.model_dump()
    student_id = create_document("student", data)
    return {"id": student_id, **data}


@app.get("/students")
def list_students(q: Optional[str] = None) -> List[Dict[str, Any]]:
    flt = {}
    if q:
        flt = {"$or": [
            {"full_name": {"$regex": q, "$options": "i"}},
            {"student_number": {"$regex": q, "$options": "i"}},
        ]}
    return get_documents("student", flt, limit=500)


@app.post("/subjects")
def create_subject(payload: SubjectIn):
    data = payload.model_dump()
    subject_id = create_document("subject", data)
    return {"id": subject_id, **data}


@app.get("/subjects")
def list_subjects() -> List[Dict[str, Any]]:
    return get_documents("subject", {}, limit=500)


@app.post("/stages")
def create_stage(payload: StageIn):
    data = payload.model_dump()
    stage_id = create_document("stage", data)
    return {"id": stage_id, **data}


@app.get("/stages")
def list_stages() -> List[Dict[str, Any]]:
    return sorted(get_documents("stage", {}, limit=500), key=lambda d: d.get("ordinal", 0))


@app.post("/schedules")
def create_schedule(payload: ScheduleEntry):
    data = payload.model_dump()
    schedule_id = create_document("schedule", data)
    return {"id": schedule_id, **data}


@app.get("/schedules")
def list_schedules(subject_id: Optional[str] = None, stage_id: Optional[str] = None):
    flt: Dict[str, Any] = {}
    if subject_id:
        flt["subject_id"] = subject_id
    if stage_id:
        flt["stage_id"] = stage_id
    return get_documents("schedule", flt, limit=1000)


@app.post("/badges")
def create_badge(payload: Badge):
    data = payload.model_dump()
    badge_id = create_document("badge", data)
    return {"id": badge_id, **data}


@app.get("/badges")
def list_badges():
    return get_documents("badge", {}, limit=200)


# Scores: nilai harian per pertemuan
@app.post("/session-scores")
def save_session_score(payload: SessionScore):
    data = payload.model_dump()
    key = {k: data[k] for k in ("student_id", "subject_id", "stage_id", "session_number")}
    score_id = upsert_document("session_score", key, data)
    return {"id": score_id, **data}


@app.get("/session-scores")
def list_session_scores(student_id: Optional[str] = None, subject_id: Optional[str] = None, stage_id: Optional[str] = None):
    flt: Dict[str, Any] = {}
    if student_id:
        flt["student_id"] = student_id
    if subject_id:
        flt["subject_id"] = subject_id
    if stage_id:
        flt["stage_id"] = stage_id
    return get_documents("session_score", flt, limit=SCORE_LIMIT)


# Scores: nilai ulangan, one save covers a whole group for one subject/stage
@app.post("/exam-scores")
def save_exam_scores(payload: ExamBatchIn):
    _require("subject", payload.subject_id, "Materi")
    _require("stage", payload.stage_id, "Tahap")

    exams = []
    for entry in payload.scores:
        exam = ExamScore(
            student_id=entry.student_id,
            subject_id=payload.subject_id,
            stage_id=payload.stage_id,
            score=entry.score,
        )
        key = {"student_id": exam.student_id, "subject_id": exam.subject_id, "stage_id": exam.stage_id}
        upsert_document("exam_score", key, exam.model_dump())
        exams.append(exam)

    student_ids = [e.student_id for e in exams]
    sessions = [
        SessionScore(**d)
        for d in get_documents(
            "session_score",
            {"subject_id": payload.subject_id, "stage_id": payload.stage_id, "student_id": {"$in": student_ids}},
            limit=None,
        )
    ]
    schedule = [
        ScheduleEntry(**d)
        for d in get_documents("schedule", {"subject_id": payload.subject_id, "stage_id": payload.stage_id}, limit=1000)
    ]

    try:
        outcomes = trigger_for_exam_batch(
            remediation_store(), payload.subject_id, payload.stage_id, exams, sessions, schedule,
        )
    except RemediationPersistError as exc:
        raise HTTPException(status_code=503, detail=str(exc))

    created = sum(1 for o in outcomes if o.created)
    if created:
        message = f"Nilai ulangan berhasil disimpan. {created} siswa memerlukan jam tambahan (IP < 40)."
    else:
        message = "Nilai ulangan berhasil disimpan"
    return {
        "saved": len(exams),
        "remediation_created": created,
        "message": message,
        "outcomes": [o.model_dump() for o in outcomes],
    }


@app.get("/exam-scores")
def list_exam_scores(student_id: Optional[str] = None, subject_id: Optional[str] = None, stage_id: Optional[str] = None):
    flt: Dict[str, Any] = {}
    if student_id:
        flt["student_id"] = student_id
    if subject_id:
        flt["subject_id"] = subject_id
    if stage_id:
        flt["stage_id"] = stage_id
    return get_documents("exam_score", flt, limit=SCORE_LIMIT)


# Jam tambahan
@app.get("/remediation-tasks")
def list_remediation_tasks(status: Optional[str] = None, student_id: Optional[str] = None, stage_id: Optional[str] = None):
    tasks = remediation_store().list_tasks(status=status, student_id=student_id, stage_id=stage_id)
    return [t.model_dump() for t in tasks]


@app.post("/remediation-tasks/{task_id}/complete")
def complete_remediation_task(task_id: str, payload: CompleteRemediationIn):
    try:
        task = complete_task(remediation_store(), task_id, payload.override_value)
    except TaskNotFound:
        raise HTTPException(status_code=404, detail="Jam tambahan tidak ditemukan")
    except TaskNotPending:
        raise HTTPException(status_code=409, detail="Jam tambahan sudah selesai")
    return task.model_dump()


# Reports
@app.get("/report/subject")
def report_subject(student_id: str, subject_id: str, stage_id: str):
    _require("student", student_id, "Siswa")
    book = _score_book(student_id)
    sessions = book.sessions_for(student_id, subject_id, stage_id)
    exam = book.exam_for(student_id, subject_id, stage_id)
    result = score_subject(sessions, exam, book.override_for(student_id, subject_id, stage_id))
    badges = [Badge(**d) for d in get_documents("badge", {}, limit=200)]
    return {
        "student_id": student_id,
        "subject_id": subject_id,
        "stage_id": stage_id,
        "status": assessment_status(sessions, exam, result),
        "result": result.model_dump() if result else None,
        "badges": [b.model_dump() for b in earned_badges(result, badges)],
    }


@app.get("/report/stage")
def report_stage(student_id: str, stage_id: str):
    _require("student", student_id, "Siswa")
    _require("stage", stage_id, "Tahap")
    book = _score_book(student_id)
    subjects = _subjects()
    rows = []
    for subject in subjects:
        result = book.subject_result(student_id, subject.subject_id, stage_id)
        rows.append({
            "subject_id": subject.subject_id,
            "credit_weight": subject.credit_weight,
            "result": result.model_dump() if result else None,
        })
    stage_result = book.stage_index(student_id, stage_id, subjects)
    return {
        "student_id": student_id,
        "stage_id": stage_id,
        "subjects": rows,
        "stage_index": round(stage_result.stage_index, 2) if stage_result else None,
    }


@app.get("/report/cumulative")
def report_cumulative(student_id: str):
    _require("student", student_id, "Siswa")
    book = _score_book(student_id)
    subjects = _subjects()
    stages = _stages()
    per_stage = []
    for stage in stages:
        result = book.stage_index(student_id, stage.stage_id, subjects)
        per_stage.append({
            "stage_id": stage.stage_id,
            "ordinal": stage.ordinal,
            "stage_index": round(result.stage_index, 2) if result else None,
        })
    cumulative = book.cumulative_index(student_id, stages, subjects)
    return {
        "student_id": student_id,
        "stages": per_stage,
        "cumulative_index": round(cumulative.cumulative_index, 2) if cumulative else None,
        "grade_label": cumulative.grade_label if cumulative else None,
    }


@app.get("/ranking")
def ranking(limit: int = 3):
    students = get_documents("student", {}, limit=None)
    names = {s["id"]: s.get("full_name") for s in students}
    groups = {s["id"]: s.get("group_name") for s in students}
    rows = rank_students(names.keys(), _stages(), _subjects(), _score_book())
    for row in rows:
        row["full_name"] = names.get(row["student_id"])
    return {
        "top_per_group": top_per_group(rows, groups),
        "overall_top": rows[:limit],
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
