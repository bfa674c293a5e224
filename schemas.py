"""
Database Schemas for Nilai Akademik

Each Pydantic model represents a record the scoring engine reads or writes. Models
stored in MongoDB keep their collection name in the API layer (see main.py).
"""
from pydantic import BaseModel, Field
from typing import Literal, Optional
from datetime import datetime

RemediationStatus = Literal["pending", "done"]


class WeightBand(BaseModel):
    grade_label: str = Field(..., description="Predikat, misal: AA, BB, C")
    weight: float = Field(..., description="Bobot nilai (skala 4)")
    score_min: int = Field(..., ge=0, le=100)
    score_max: int = Field(..., ge=0, le=100)


class Student(BaseModel):
    full_name: str = Field(..., description="Nama lengkap siswa")
    student_number: str = Field(..., description="Nomor induk siswa")
    group_name: Optional[str] = Field(None, description="Kelompok belajar")
    cohort: Optional[int] = Field(None, description="Angkatan")


class SubjectCredit(BaseModel):
    subject_id: str = Field(..., description="ID materi")
    credit_weight: int = Field(1, ge=1, description="SKT materi")


class Stage(BaseModel):
    stage_id: str = Field(..., description="ID tahap")
    ordinal: int = Field(0, description="Urutan tahap (hanya untuk tampilan)")


class SessionScore(BaseModel):
    student_id: str = Field(..., description="ID siswa")
    subject_id: str = Field(..., description="ID materi")
    stage_id: str = Field(..., description="ID tahap")
    session_number: int = Field(1, ge=1, description="Pertemuan ke-")
    score: float = Field(..., ge=0, le=100, description="Nilai harian 0-100")


class ExamScore(BaseModel):
    student_id: str = Field(..., description="ID siswa")
    subject_id: str = Field(..., description="ID materi")
    stage_id: str = Field(..., description="ID tahap")
    score: float = Field(..., ge=0, le=100, description="Nilai ulangan 0-100")


class RemediationOverride(BaseModel):
    student_id: str
    subject_id: str
    stage_id: str
    status: RemediationStatus = "pending"
    override_value: Optional[float] = Field(None, ge=0, le=100, description="Nilai jam tambahan")

    @property
    def key(self):
        return (self.student_id, self.subject_id, self.stage_id)

    @property
    def is_effective(self) -> bool:
        return self.status == "done" and self.override_value is not None


class RemediationTask(RemediationOverride):
    id: Optional[str] = None
    baseline_score: float = Field(..., description="IP saat jam tambahan dibuat")
    duration_minutes: int = Field(0, ge=0, description="Durasi jam tambahan (menit)")
    note: Optional[str] = None
    created_at: Optional[datetime] = None


class ScheduleEntry(BaseModel):
    subject_id: str = Field(..., description="ID materi")
    stage_id: str = Field(..., description="ID tahap")
    date: Optional[str] = Field(None, description="Tanggal, misal: 2026-02-03")
    start_time: str = Field(..., pattern=r"^\d{1,2}:\d{2}$", description="Jam mulai HH:MM")
    end_time: str = Field(..., pattern=r"^\d{1,2}:\d{2}$", description="Jam selesai HH:MM")


class Badge(BaseModel):
    name: str = Field(..., description="Nama lencana")
    achievement: str = Field("", description="Pencapaian")
    score_min: float = Field(..., ge=0, le=100, description="Nilai minimal")


class SessionResult(BaseModel):
    daily_avg: float
    exam_score: float
    total: float
    weight: float
    grade_label: str
    passes_threshold: bool


class StageResult(BaseModel):
    stage_id: str
    stage_index: float
    total_credit: int
    weighted_sum: float


class CumulativeResult(BaseModel):
    cumulative_index: float
    stage_count: int
    grade_label: str


class TriggerOutcome(BaseModel):
    student_id: str
    created: bool
    reason: str
    task: Optional[RemediationTask] = None
