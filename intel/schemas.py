"""Pydantic read-models for the company intelligence profile."""
from __future__ import annotations

import re
from datetime import date, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from intel.errors import InvalidSection


class Completeness(str, Enum):
    NONE = "none"
    MINIMAL = "minimal"
    PARTIAL = "partial"
    COMPLETE = "complete"


_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


class SectionName(str, Enum):
    IDENTITY = "identity"
    FINANCIALS = "financials"
    ASSESSMENT = "assessment"
    VALUATION = "valuation"
    TASKS = "tasks"
    EVIDENCE = "evidence"
    SIGNALS = "signals"
    ENGAGEMENT = "engagement"
    AI_CONTEXT = "ai_context"
    NA_FLAGS = "na_flags"
    DISCLOSURES = "disclosures"
    NOTES = "notes"

    @property
    def is_supplemental(self) -> bool:
        return self in SUPPLEMENTAL_SECTIONS

    @classmethod
    def parse(cls, value: str | SectionName) -> SectionName:
        """Resolve a section name, accepting camelCase aliases (``naFlags``).

        Raises InvalidSection for anything outside the twelve known names.
        """
        if isinstance(value, SectionName):
            return value
        raw = (value or "").strip()
        key = _CAMEL_RE.sub("_", raw).lower()
        try:
            return cls(key)
        except ValueError:
            raise InvalidSection(
                f"Unknown intelligence section: {value!r}",
                details={"section": value, "valid": [s.value for s in cls]},
            ) from None


BASE_SECTIONS: tuple[SectionName, ...] = (
    SectionName.IDENTITY, SectionName.FINANCIALS, SectionName.ASSESSMENT,
    SectionName.VALUATION, SectionName.TASKS, SectionName.EVIDENCE,
    SectionName.SIGNALS, SectionName.ENGAGEMENT, SectionName.AI_CONTEXT,
)
SUPPLEMENTAL_SECTIONS: tuple[SectionName, ...] = (
    SectionName.NA_FLAGS, SectionName.DISCLOSURES, SectionName.NOTES,
)

# Value of ``days_since_last_activity`` when no activity was ever recorded.
NO_ACTIVITY_SENTINEL = 999


# ---------------------------------------------------------------------------
# Base (dossier) sections
# ---------------------------------------------------------------------------


class IdentitySection(BaseModel):
    name: str = ""
    industry: str = ""
    sub_sector: str = ""
    business_description: str | None = None
    core_factors: dict[str, Any] | None = None


class FinancialsSection(BaseModel):
    annual_revenue: float | None = None
    annual_ebitda: float | None = None
    owner_compensation: float | None = None
    revenue_growth_yoy: float | None = None
    ebitda_margin_pct: float | None = None
    periods_available: int = 0
    latest_period_label: str | None = None
    balance_sheet_highlights: dict[str, float | None] | None = None
    data_completeness: Completeness = Completeness.NONE


class AssessmentSection(BaseModel):
    has_completed_assessment: bool = False
    last_assessment_date: datetime | None = None
    category_scores: dict[str, float] = {}
    weakest_categories: list[str] = []
    weakest_drivers: list[str] = []
    unanswered_categories: list[str] = []
    total_questions_answered: int = 0
    total_questions_available: int = 0


class ValuationTrendPoint(BaseModel):
    date: datetime
    bri_score: float | None = None
    current_value: float


class ValuationSection(BaseModel):
    current_value: float | None = None
    potential_value: float | None = None
    value_gap: float | None = None
    bri_score: float | None = None
    final_multiple: float | None = None
    trend: list[ValuationTrendPoint] = []


class TaskSummary(BaseModel):
    id: str
    title: str
    category: str
    raw_value: float = 0.0
    completed_at: datetime | None = None


class TasksSection(BaseModel):
    total_tasks: int = 0
    pending_count: int = 0
    in_progress_count: int = 0
    completed_count: int = 0
    total_pending_value: float = 0.0
    total_completed_value: float = 0.0
    value_by_category: dict[str, float] = {}
    top_pending_tasks: list[TaskSummary] = []
    recent_completions: list[TaskSummary] = []
    weekly_velocity: float = 0.0


class UrgentDocument(BaseModel):
    name: str
    category: str
    status: str


class EvidenceSection(BaseModel):
    total_documents: int = 0
    documents_by_status: dict[str, int] = {}
    category_gaps: list[str] = []
    urgent_documents: list[UrgentDocument] = []


class ValueMovement(BaseModel):
    date: datetime
    delta_value: float
    event_type: str
    narrative_summary: str | None = None


class SignalSummary(BaseModel):
    title: str
    severity: str
    category: str
    created_at: datetime


class SignalsSection(BaseModel):
    open_signals_count: int = 0
    severity_summary: dict[str, int] = {}
    recent_value_movements: list[ValueMovement] = []
    top_open_signals: list[SignalSummary] = []


class EngagementSection(BaseModel):
    last_check_in_date: date | None = None
    check_in_streak: int = 0
    days_since_last_activity: int = NO_ACTIVITY_SENTINEL
    total_check_ins: int = 0


class AIContextSection(BaseModel):
    previous_question_ids: list[str] = []
    previous_task_titles: list[str] = []
    identified_risks: list[str] = []
    focus_areas: list[str] = []


class DossierContent(BaseModel):
    """The nine base sections as persisted in a dossier snapshot."""
    identity: IdentitySection = Field(default_factory=IdentitySection)
    financials: FinancialsSection = Field(default_factory=FinancialsSection)
    assessment: AssessmentSection = Field(default_factory=AssessmentSection)
    valuation: ValuationSection = Field(default_factory=ValuationSection)
    tasks: TasksSection = Field(default_factory=TasksSection)
    evidence: EvidenceSection = Field(default_factory=EvidenceSection)
    signals: SignalsSection = Field(default_factory=SignalsSection)
    engagement: EngagementSection = Field(default_factory=EngagementSection)
    ai_context: AIContextSection = Field(default_factory=AIContextSection)


class DossierSnapshot(BaseModel):
    company_id: str
    version: int
    build_reason: str
    created_at: datetime
    content: DossierContent


# ---------------------------------------------------------------------------
# Supplemental sections
# ---------------------------------------------------------------------------


class AssessmentNAFlag(BaseModel):
    question_id: str
    question_text: str
    category: str
    flagged_at: datetime


class TaskNAFlag(BaseModel):
    task_id: str
    task_title: str
    category: str


class NAFlagsSection(BaseModel):
    assessment_na_flags: list[AssessmentNAFlag] = []
    task_na_flags: list[TaskNAFlag] = []
    heavily_na_categories: list[str] = []
    total_na_count: int = 0


class DisclosureEntry(BaseModel):
    question_key: str
    question_text: str
    category: str
    answer: bool
    follow_up_text: str | None = None
    responded_at: datetime
    triggered_follow_up: bool = False


class DisclosuresSection(BaseModel):
    total_completed: int = 0
    total_skipped: int = 0
    recent_responses: list[DisclosureEntry] = []
    material_changes: list[DisclosureEntry] = []
    high_change_categories: list[str] = []


class AssessmentNote(BaseModel):
    question_id: str
    question_text: str
    category: str
    text: str
    updated_at: datetime


class TaskCompletionNote(BaseModel):
    task_id: str
    task_title: str
    category: str
    text: str
    completed_at: datetime
    source: Literal["legacy", "task_note"] = "legacy"


class CheckInDetail(BaseModel):
    week_of: date | None = None
    team_changes: bool | None = None
    team_changes_note: str | None = None
    customer_changes: bool | None = None
    customer_changes_note: str | None = None
    confidence_rating: int | None = None
    additional_notes: str | None = None
    completed_at: datetime


class NotesSection(BaseModel):
    assessment_notes: list[AssessmentNote] = []
    task_completion_notes: list[TaskCompletionNote] = []
    check_in_details: list[CheckInDetail] = []
    total_notes_count: int = 0


# ---------------------------------------------------------------------------
# Metadata and profile
# ---------------------------------------------------------------------------


class SectionMeta(BaseModel):
    last_updated_at: datetime
    has_data: bool
    completeness: Completeness


class CompanyIntelligence(DossierContent):
    company_id: str
    generated_at: datetime
    dossier_version: int | None = None
    na_flags: NAFlagsSection = Field(default_factory=NAFlagsSection)
    disclosures: DisclosuresSection = Field(default_factory=DisclosuresSection)
    notes: NotesSection = Field(default_factory=NotesSection)
    section_meta: dict[SectionName, SectionMeta] = {}
    degraded: bool = False
    degraded_sections: list[SectionName] = []
