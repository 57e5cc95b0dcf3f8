"""Read-only queries over the company record store."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select

from intel.aggregators import (
    AssessmentNoteInput,
    CheckInInput,
    DisclosurePromptSetInput,
    DisclosureResponseInput,
    NATask,
    TaskCompletionNoteInput,
)
from intel.db import SessionFactory, session_scope
from intel.models import (
    NOT_APPLICABLE,
    Assessment,
    AssessmentQuestion,
    AssessmentResponse,
    DataRoomDocument,
    DisclosurePromptSet,
    DisclosureResponse,
    Signal,
    Task,
    TaskNote,
    WeeklyCheckIn,
)
from intel.section_meta import SectionTimestamps
from intel.utils import as_utc

log = logging.getLogger(__name__)


@dataclass
class ResponseRecord:
    """One assessment response joined with its question."""
    question_id: str
    question_text: str
    category: str
    is_na: bool
    updated_at: datetime


class RecordRepository:
    """Per-company queries; every call opens and closes its own session.

    Sessions are never shared between calls, so separate calls may run on
    separate worker threads at the same time.
    """

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    # -- NA flags ----------------------------------------------------------

    def list_assessment_responses(self, company_id: str) -> list[ResponseRecord]:
        """All responses across the company's assessments, most recent first."""
        stmt = (
            select(
                AssessmentResponse.question_id,
                AssessmentQuestion.question_text,
                AssessmentQuestion.category,
                AssessmentResponse.confidence_level,
                AssessmentResponse.updated_at,
            )
            .join(Assessment, AssessmentResponse.assessment_id == Assessment.id)
            .join(AssessmentQuestion, AssessmentResponse.question_id == AssessmentQuestion.id)
            .where(Assessment.company_id == company_id)
            .order_by(AssessmentResponse.updated_at.desc(), AssessmentResponse.id.desc())
        )
        with session_scope(self._session_factory) as session:
            rows = session.execute(stmt).all()
        return [
            ResponseRecord(qid, text, category, level == NOT_APPLICABLE, as_utc(updated))
            for qid, text, category, level, updated in rows
        ]

    def list_na_tasks(self, company_id: str) -> list[NATask]:
        stmt = (
            select(Task.id, Task.title, Task.category)
            .where(Task.company_id == company_id, Task.status == NOT_APPLICABLE)
            .order_by(Task.created_at.desc())
        )
        with session_scope(self._session_factory) as session:
            rows = session.execute(stmt).all()
        return [NATask(id=tid, title=title, category=category) for tid, title, category in rows]

    # -- Disclosures -------------------------------------------------------

    def list_disclosure_prompt_sets(self, company_id: str) -> list[DisclosurePromptSetInput]:
        stmt = select(DisclosurePromptSet.completed_at, DisclosurePromptSet.skipped_at).where(
            DisclosurePromptSet.company_id == company_id)
        with session_scope(self._session_factory) as session:
            rows = session.execute(stmt).all()
        return [DisclosurePromptSetInput(as_utc(done), as_utc(skipped)) for done, skipped in rows]

    def list_disclosure_responses(self, company_id: str) -> list[DisclosureResponseInput]:
        stmt = (
            select(DisclosureResponse)
            .where(DisclosureResponse.company_id == company_id)
            .order_by(DisclosureResponse.responded_at.desc(), DisclosureResponse.id.desc())
        )
        with session_scope(self._session_factory) as session:
            rows = session.execute(stmt).scalars().all()
            return [
                DisclosureResponseInput(
                    question_key=r.question_key,
                    question_text=r.question_text,
                    category=r.category,
                    answer=bool(r.answer),
                    follow_up_answer=r.follow_up_answer,
                    responded_at=as_utc(r.responded_at),
                    signal_created=bool(r.signal_created),
                )
                for r in rows
            ]

    # -- Notes -------------------------------------------------------------

    def list_assessment_notes(self, company_id: str) -> list[AssessmentNoteInput]:
        stmt = (
            select(
                AssessmentResponse.question_id,
                AssessmentQuestion.question_text,
                AssessmentQuestion.category,
                AssessmentResponse.notes,
                AssessmentResponse.updated_at,
            )
            .join(Assessment, AssessmentResponse.assessment_id == Assessment.id)
            .join(AssessmentQuestion, AssessmentResponse.question_id == AssessmentQuestion.id)
            .where(
                Assessment.company_id == company_id,
                AssessmentResponse.notes.is_not(None),
                AssessmentResponse.notes != "",
            )
            .order_by(AssessmentResponse.updated_at.desc(), AssessmentResponse.id.desc())
        )
        with session_scope(self._session_factory) as session:
            rows = session.execute(stmt).all()
        return [
            AssessmentNoteInput(qid, text, category, note, as_utc(updated))
            for qid, text, category, note, updated in rows
        ]

    def list_legacy_task_notes(self, company_id: str) -> list[TaskCompletionNoteInput]:
        """Completed tasks carrying a single legacy ``completion_notes`` value."""
        stmt = (
            select(Task.id, Task.title, Task.category, Task.completion_notes, Task.completed_at)
            .where(
                Task.company_id == company_id,
                Task.status == "COMPLETED",
                Task.completion_notes.is_not(None),
                Task.completion_notes != "",
                Task.completed_at.is_not(None),
            )
            .order_by(Task.completed_at.desc())
        )
        with session_scope(self._session_factory) as session:
            rows = session.execute(stmt).all()
        return [
            TaskCompletionNoteInput(tid, title, category, notes, as_utc(done))
            for tid, title, category, notes, done in rows
        ]

    def list_task_note_records(self, company_id: str) -> list[TaskCompletionNoteInput]:
        """Every task-note record of the company's tasks, any note type."""
        stmt = (
            select(Task.id, Task.title, Task.category, TaskNote.content, TaskNote.created_at)
            .join(Task, TaskNote.task_id == Task.id)
            .where(Task.company_id == company_id)
            .order_by(TaskNote.created_at.desc(), TaskNote.id.desc())
        )
        with session_scope(self._session_factory) as session:
            rows = session.execute(stmt).all()
        return [
            TaskCompletionNoteInput(tid, title, category, content, as_utc(created))
            for tid, title, category, content, created in rows
        ]

    def list_completed_check_ins(self, company_id: str) -> list[CheckInInput]:
        stmt = (
            select(WeeklyCheckIn)
            .where(WeeklyCheckIn.company_id == company_id, WeeklyCheckIn.completed_at.is_not(None))
            .order_by(WeeklyCheckIn.week_of.desc(), WeeklyCheckIn.completed_at.desc())
        )
        with session_scope(self._session_factory) as session:
            rows = session.execute(stmt).scalars().all()
            return [
                CheckInInput(
                    week_of=c.week_of,
                    team_changes=c.team_changes,
                    team_changes_note=c.team_changes_note,
                    customer_changes=c.customer_changes,
                    customer_changes_note=c.customer_changes_note,
                    confidence_rating=c.confidence_rating,
                    additional_notes=c.additional_notes,
                    completed_at=as_utc(c.completed_at),
                )
                for c in rows
            ]

    # -- Freshness ---------------------------------------------------------

    def latest_timestamps(
        self, company_id: str, dossier_updated_at: datetime | None = None,
    ) -> SectionTimestamps:
        """Single most-recent timestamp per source, ``None`` where nothing exists."""
        queries = {
            "last_assessment_response_at": (
                select(func.max(AssessmentResponse.updated_at))
                .join(Assessment, AssessmentResponse.assessment_id == Assessment.id)
                .where(Assessment.company_id == company_id)
            ),
            "last_task_completion_at": select(func.max(Task.completed_at)).where(
                Task.company_id == company_id, Task.status == "COMPLETED"),
            "last_document_update_at": select(func.max(DataRoomDocument.updated_at)).where(
                DataRoomDocument.company_id == company_id),
            "last_signal_at": select(func.max(Signal.created_at)).where(Signal.company_id == company_id),
            "last_check_in_at": select(func.max(WeeklyCheckIn.completed_at)).where(
                WeeklyCheckIn.company_id == company_id, WeeklyCheckIn.completed_at.is_not(None)),
            "last_disclosure_at": select(func.max(DisclosureResponse.responded_at)).where(
                DisclosureResponse.company_id == company_id),
        }
        values: dict[str, datetime | None] = {}
        with session_scope(self._session_factory) as session:
            for field, stmt in queries.items():
                values[field] = as_utc(session.execute(stmt).scalar())
        log.debug("Timestamps for %s: %s", company_id, values)
        return SectionTimestamps(dossier_updated_at=as_utc(dossier_updated_at), **values)
