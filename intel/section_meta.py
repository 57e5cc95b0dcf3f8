"""Per-section freshness and completeness metadata.

Each section gets a ``SectionMeta``: when its underlying data last changed,
whether it holds anything at all, and a coarse four-tier completeness grade.
Downstream consumers key off the grade boundaries below (question generators
skip ``complete`` sections, coaching prompts call out ``none``).
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from intel.schemas import (
    AIContextSection,
    AssessmentSection,
    Completeness,
    DisclosuresSection,
    EngagementSection,
    EvidenceSection,
    FinancialsSection,
    IdentitySection,
    NAFlagsSection,
    NO_ACTIVITY_SENTINEL,
    NotesSection,
    SectionMeta,
    SectionName,
    SignalsSection,
    TasksSection,
    ValuationSection,
)
from intel.utils import latest, utcnow

MIN_ASSESSMENT_ANSWERS = 10
MIN_COMPLETED_TASKS = 5
MIN_VALUATION_SNAPSHOTS = 2
FULL_VALUATION_SNAPSHOTS = 4
MANY_EVIDENCE_GAPS = 4
FULL_CHECK_INS = 4
FULL_DISCLOSURE_RESPONSES = 5
SOME_NOTES = 3
FULL_NOTES = 10


@dataclass
class SectionTimestamps:
    """Most recent change per source; ``None`` means unknown."""
    dossier_updated_at: datetime | None = None
    last_assessment_response_at: datetime | None = None
    last_task_completion_at: datetime | None = None
    last_document_update_at: datetime | None = None
    last_signal_at: datetime | None = None
    last_check_in_at: datetime | None = None
    last_disclosure_at: datetime | None = None


# ---------------------------------------------------------------------------
# Completeness rules
# ---------------------------------------------------------------------------


def compute_identity_completeness(s: IdentitySection) -> Completeness:
    if not s.name:
        return Completeness.NONE
    if not s.core_factors:
        return Completeness.MINIMAL
    if not s.business_description:
        return Completeness.PARTIAL
    return Completeness.COMPLETE


def compute_financials_completeness(s: FinancialsSection) -> Completeness:
    return s.data_completeness


def compute_assessment_completeness(s: AssessmentSection) -> Completeness:
    if not s.has_completed_assessment:
        return Completeness.NONE
    if s.total_questions_answered < MIN_ASSESSMENT_ANSWERS:
        return Completeness.MINIMAL
    if s.unanswered_categories:
        return Completeness.PARTIAL
    return Completeness.COMPLETE


def compute_valuation_completeness(s: ValuationSection) -> Completeness:
    if s.current_value is None:
        return Completeness.NONE
    if len(s.trend) < MIN_VALUATION_SNAPSHOTS:
        return Completeness.MINIMAL
    if len(s.trend) < FULL_VALUATION_SNAPSHOTS:
        return Completeness.PARTIAL
    return Completeness.COMPLETE


def compute_tasks_completeness(s: TasksSection) -> Completeness:
    if s.total_tasks == 0:
        return Completeness.NONE
    if s.completed_count == 0:
        return Completeness.MINIMAL
    if s.completed_count < MIN_COMPLETED_TASKS:
        return Completeness.PARTIAL
    return Completeness.COMPLETE


def compute_evidence_completeness(s: EvidenceSection) -> Completeness:
    if s.total_documents == 0:
        return Completeness.NONE
    gaps = len(s.category_gaps)
    if gaps >= MANY_EVIDENCE_GAPS:
        return Completeness.MINIMAL
    if gaps > 0:
        return Completeness.PARTIAL
    return Completeness.COMPLETE


def compute_signals_completeness(s: SignalsSection) -> Completeness:
    if s.open_signals_count > 0 or s.recent_value_movements:
        return Completeness.COMPLETE
    return Completeness.MINIMAL


def compute_engagement_completeness(s: EngagementSection) -> Completeness:
    if s.total_check_ins == 0:
        if s.days_since_last_activity >= NO_ACTIVITY_SENTINEL:
            return Completeness.NONE
        return Completeness.MINIMAL
    if s.total_check_ins < FULL_CHECK_INS:
        return Completeness.PARTIAL
    return Completeness.COMPLETE


def compute_ai_context_completeness(s: AIContextSection) -> Completeness:
    if s.identified_risks or s.focus_areas:
        return Completeness.COMPLETE
    return Completeness.MINIMAL


def compute_na_flags_completeness(s: NAFlagsSection) -> Completeness:
    return Completeness.COMPLETE if s.total_na_count > 0 else Completeness.NONE


def compute_disclosures_completeness(s: DisclosuresSection) -> Completeness:
    if s.total_completed == 0:
        return Completeness.MINIMAL if s.total_skipped > 0 else Completeness.NONE
    if len(s.recent_responses) < FULL_DISCLOSURE_RESPONSES:
        return Completeness.PARTIAL
    return Completeness.COMPLETE


def compute_notes_completeness(s: NotesSection) -> Completeness:
    if s.total_notes_count == 0:
        return Completeness.NONE
    if s.total_notes_count < SOME_NOTES:
        return Completeness.MINIMAL
    if s.total_notes_count < FULL_NOTES:
        return Completeness.PARTIAL
    return Completeness.COMPLETE


COMPLETENESS_RULES: dict[SectionName, Callable[[Any], Completeness]] = {
    SectionName.IDENTITY: compute_identity_completeness,
    SectionName.FINANCIALS: compute_financials_completeness,
    SectionName.ASSESSMENT: compute_assessment_completeness,
    SectionName.VALUATION: compute_valuation_completeness,
    SectionName.TASKS: compute_tasks_completeness,
    SectionName.EVIDENCE: compute_evidence_completeness,
    SectionName.SIGNALS: compute_signals_completeness,
    SectionName.ENGAGEMENT: compute_engagement_completeness,
    SectionName.AI_CONTEXT: compute_ai_context_completeness,
    SectionName.NA_FLAGS: compute_na_flags_completeness,
    SectionName.DISCLOSURES: compute_disclosures_completeness,
    SectionName.NOTES: compute_notes_completeness,
}

# ---------------------------------------------------------------------------
# Presence checks
# ---------------------------------------------------------------------------

HAS_DATA_RULES: dict[SectionName, Callable[[Any], bool]] = {
    SectionName.IDENTITY: lambda s: bool(s.name),
    SectionName.FINANCIALS: lambda s: s.annual_revenue is not None or s.periods_available > 0,
    SectionName.ASSESSMENT: lambda s: s.has_completed_assessment,
    SectionName.VALUATION: lambda s: s.current_value is not None,
    SectionName.TASKS: lambda s: s.total_tasks > 0,
    SectionName.EVIDENCE: lambda s: s.total_documents > 0,
    SectionName.SIGNALS: lambda s: s.open_signals_count > 0 or bool(s.recent_value_movements),
    SectionName.ENGAGEMENT: lambda s: s.total_check_ins > 0 or s.days_since_last_activity < NO_ACTIVITY_SENTINEL,
    SectionName.AI_CONTEXT: lambda s: bool(
        s.previous_question_ids or s.previous_task_titles or s.identified_risks or s.focus_areas),
    SectionName.NA_FLAGS: lambda s: s.total_na_count > 0,
    SectionName.DISCLOSURES: lambda s: bool(s.total_completed or s.total_skipped or s.recent_responses),
    SectionName.NOTES: lambda s: s.total_notes_count > 0,
}

# ---------------------------------------------------------------------------
# Freshness
# ---------------------------------------------------------------------------


def _section_timestamp(name: SectionName, ts: SectionTimestamps) -> datetime | None:
    """Dedicated freshness candidate for a section, ``None`` when it has none."""
    if name is SectionName.ASSESSMENT:
        return ts.last_assessment_response_at
    if name is SectionName.TASKS:
        return ts.last_task_completion_at
    if name is SectionName.EVIDENCE:
        return ts.last_document_update_at
    if name is SectionName.SIGNALS:
        return ts.last_signal_at
    if name is SectionName.ENGAGEMENT:
        return ts.last_check_in_at
    if name is SectionName.NA_FLAGS:
        return ts.last_assessment_response_at
    if name is SectionName.DISCLOSURES:
        return ts.last_disclosure_at
    if name is SectionName.NOTES:
        return latest(ts.last_assessment_response_at, ts.last_task_completion_at, ts.last_check_in_at)
    return None


def resolve_last_updated(name: SectionName, ts: SectionTimestamps, now: datetime) -> datetime:
    candidate = _section_timestamp(name, ts)
    if candidate is not None:
        return candidate
    # Supplemental sections are not part of the dossier snapshot.
    if not name.is_supplemental and ts.dossier_updated_at is not None:
        return ts.dossier_updated_at
    return now


def build_section_meta(
    sections: dict[SectionName, Any],
    timestamps: SectionTimestamps,
    now: datetime | None = None,
) -> dict[SectionName, SectionMeta]:
    """Build metadata for every one of the twelve sections.

    *sections* must contain content for each ``SectionName``; a missing
    section is a programming error and raises ``KeyError``.
    """
    now = now or utcnow()
    return {
        name: SectionMeta(
            last_updated_at=resolve_last_updated(name, timestamps, now),
            has_data=HAS_DATA_RULES[name](sections[name]),
            completeness=COMPLETENESS_RULES[name](sections[name]),
        )
        for name in SectionName
    }
