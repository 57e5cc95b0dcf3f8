from __future__ import annotations

from datetime import date, datetime
from uuid import uuid4

from sqlalchemy import (
    Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Confidence level / task status value marking an explicit "not applicable".
NOT_APPLICABLE = "NOT_APPLICABLE"


def _new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(300), default="")
    industry: Mapped[str] = mapped_column(String(200), default="")
    sub_sector: Mapped[str] = mapped_column(String(200), default="")
    business_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    core_factors_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    financial_periods: Mapped[list[FinancialPeriod]] = relationship(
        "FinancialPeriod", back_populates="company", cascade="all, delete-orphan")
    assessments: Mapped[list[Assessment]] = relationship(
        "Assessment", back_populates="company", cascade="all, delete-orphan")
    tasks: Mapped[list[Task]] = relationship(
        "Task", back_populates="company", cascade="all, delete-orphan")


class FinancialPeriod(Base):
    __tablename__ = "financial_periods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id"), nullable=False)
    label: Mapped[str] = mapped_column(String(50), default="")  # e.g. "FY2024"
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    revenue: Mapped[float | None] = mapped_column(Float, nullable=True)
    ebitda: Mapped[float | None] = mapped_column(Float, nullable=True)
    owner_compensation: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_assets: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_liabilities: Mapped[float | None] = mapped_column(Float, nullable=True)
    cash: Mapped[float | None] = mapped_column(Float, nullable=True)

    company: Mapped[Company] = relationship("Company", back_populates="financial_periods")


class AssessmentQuestion(Base):
    __tablename__ = "assessment_questions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)  # BRI category
    driver: Mapped[str] = mapped_column(String(200), default="")


class Assessment(Base):
    __tablename__ = "assessments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    company: Mapped[Company] = relationship("Company", back_populates="assessments")
    responses: Mapped[list[AssessmentResponse]] = relationship(
        "AssessmentResponse", back_populates="assessment", cascade="all, delete-orphan")


class AssessmentResponse(Base):
    __tablename__ = "assessment_responses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessments.id"), nullable=False)
    question_id: Mapped[str] = mapped_column(String(36), ForeignKey("assessment_questions.id"), nullable=False)
    score: Mapped[float | None] = mapped_column(Float, nullable=True)  # 0.0 - 1.0
    confidence_level: Mapped[str] = mapped_column(String(30), default="CONFIDENT")  # CONFIDENT | UNSURE | NOT_APPLICABLE
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    assessment: Mapped[Assessment] = relationship("Assessment", back_populates="responses")
    question: Mapped[AssessmentQuestion] = relationship("AssessmentQuestion")


class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    category: Mapped[str] = mapped_column(String(50), default="")
    status: Mapped[str] = mapped_column(String(30), default="PENDING")  # PENDING | IN_PROGRESS | COMPLETED | NOT_APPLICABLE
    raw_value: Mapped[float] = mapped_column(Float, default=0.0)
    completion_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    company: Mapped[Company] = relationship("Company", back_populates="tasks")
    notes: Mapped[list[TaskNote]] = relationship(
        "TaskNote", back_populates="task", cascade="all, delete-orphan")


class TaskNote(Base):
    __tablename__ = "task_notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(36), ForeignKey("tasks.id"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    note_type: Mapped[str] = mapped_column(String(30), default="GENERAL")  # GENERAL | COMPLETION | BLOCKER
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    task: Mapped[Task] = relationship("Task", back_populates="notes")


class DisclosurePromptSet(Base):
    __tablename__ = "disclosure_prompt_sets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    skipped_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class DisclosureResponse(Base):
    __tablename__ = "disclosure_responses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id"), nullable=False)
    question_key: Mapped[str] = mapped_column(String(100), nullable=False)
    question_text: Mapped[str] = mapped_column(Text, default="")
    category: Mapped[str] = mapped_column(String(50), default="")
    answer: Mapped[bool] = mapped_column(Boolean, default=False)
    follow_up_answer: Mapped[str | None] = mapped_column(Text, nullable=True)
    responded_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    signal_created: Mapped[bool] = mapped_column(Boolean, default=False)


class WeeklyCheckIn(Base):
    __tablename__ = "weekly_check_ins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id"), nullable=False)
    week_of: Mapped[date] = mapped_column(Date, nullable=False)
    team_changes: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    team_changes_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_changes: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    customer_changes_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    confidence_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 1-5
    additional_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class DataRoomDocument(Base):
    __tablename__ = "data_room_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    category: Mapped[str] = mapped_column(String(50), default="")
    status: Mapped[str] = mapped_column(String(30), default="CURRENT")  # CURRENT | NEEDS_UPDATE | OVERDUE
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Signal(Base):
    __tablename__ = "signals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    category: Mapped[str] = mapped_column(String(50), default="")
    severity: Mapped[str] = mapped_column(String(20), default="MEDIUM")  # CRITICAL | HIGH | MEDIUM | LOW | INFO
    status: Mapped[str] = mapped_column(String(20), default="OPEN")  # OPEN | ACKNOWLEDGED | RESOLVED
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ValueLedgerEntry(Base):
    __tablename__ = "value_ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    delta_value: Mapped[float] = mapped_column(Float, default=0.0)
    narrative_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ValuationSnapshot(Base):
    __tablename__ = "valuation_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id"), nullable=False)
    current_value: Mapped[float] = mapped_column(Float, nullable=False)
    potential_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    bri_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    final_multiple: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class CompanyDossier(Base):
    """Persisted snapshot of the nine base sections for one company."""
    __tablename__ = "company_dossiers"
    __table_args__ = (UniqueConstraint("company_id", "version", name="uq_dossier_company_version"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, default=True)
    build_reason: Mapped[str] = mapped_column(String(50), default="manual_rebuild")
    content_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
