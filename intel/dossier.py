"""Dossier snapshots: the nine base sections, persisted per company.

A snapshot is rebuilt from the record store and written as a new version;
older versions stay in the table but lose ``is_current``. Value and readiness
scores are read from valuation snapshots and assessment answers as they are,
never recomputed here.
"""
from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Callable, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from intel.aggregators import dedupe_latest
from intel.config import BRI_CATEGORIES
from intel.db import SessionFactory, session_scope
from intel.errors import RebuildConflict, SourceUnavailable
from intel.models import (
    NOT_APPLICABLE,
    Assessment,
    AssessmentQuestion,
    AssessmentResponse,
    Company,
    CompanyDossier,
    DataRoomDocument,
    FinancialPeriod,
    Signal,
    Task,
    ValuationSnapshot,
    ValueLedgerEntry,
    WeeklyCheckIn,
)
from intel.repository import RecordRepository
from intel.schemas import (
    AIContextSection,
    AssessmentSection,
    Completeness,
    DossierContent,
    DossierSnapshot,
    EngagementSection,
    EvidenceSection,
    FinancialsSection,
    IdentitySection,
    NO_ACTIVITY_SENTINEL,
    SignalSummary,
    SignalsSection,
    TaskSummary,
    TasksSection,
    UrgentDocument,
    ValuationSection,
    ValuationTrendPoint,
    ValueMovement,
)
from intel.utils import as_utc, json_parse, latest, utcnow

log = logging.getLogger(__name__)

REBUILD_REASONS = ("manual_rebuild", "scheduled", "assessment_completed", "task_completed")

SEVERITY_RANK = {"CRITICAL": 0, "HIGH": 1, "MEDIUM": 2, "LOW": 3, "INFO": 4}
RISK_SEVERITIES = ("CRITICAL", "HIGH")
URGENT_DOCUMENT_STATUSES = ("NEEDS_UPDATE", "OVERDUE")

_TREND_POINTS = 12
_TOP_TASKS = 5
_TOP_SIGNALS = 5
_RECENT_MOVEMENTS = 10
_URGENT_DOCUMENTS = 5
_WEAKEST_CATEGORIES = 2
_WEAKEST_DRIVERS = 3
_MAX_TASK_TITLES = 50
_VELOCITY_WEEKS = 4


# ---------------------------------------------------------------------------
# Section builders
# ---------------------------------------------------------------------------


def build_identity(company: Company) -> IdentitySection:
    return IdentitySection(
        name=company.name or "",
        industry=company.industry or "",
        sub_sector=company.sub_sector or "",
        business_description=company.business_description or None,
        core_factors=json_parse(company.core_factors_json, None) or None,
    )


def build_financials(periods: Sequence[FinancialPeriod]) -> FinancialsSection:
    if not periods:
        return FinancialsSection()
    ordered = sorted(periods, key=lambda p: p.period_end, reverse=True)
    current = ordered[0]
    previous = ordered[1] if len(ordered) > 1 else None

    growth = None
    if previous is not None and current.revenue is not None and previous.revenue:
        growth = round((current.revenue - previous.revenue) / previous.revenue, 4)
    margin = None
    if current.ebitda is not None and current.revenue:
        margin = round(current.ebitda / current.revenue, 4)

    balance = {
        "total_assets": current.total_assets,
        "total_liabilities": current.total_liabilities,
        "cash": current.cash,
    }
    count = len(ordered)
    if count >= 3:
        completeness = Completeness.COMPLETE
    elif count == 2:
        completeness = Completeness.PARTIAL
    else:
        completeness = Completeness.MINIMAL
    return FinancialsSection(
        annual_revenue=current.revenue,
        annual_ebitda=current.ebitda,
        owner_compensation=current.owner_compensation,
        revenue_growth_yoy=growth,
        ebitda_margin_pct=margin,
        periods_available=count,
        latest_period_label=current.label or None,
        balance_sheet_highlights=balance if any(v is not None for v in balance.values()) else None,
        data_completeness=completeness,
    )


def build_assessment(
    assessments: Sequence[Assessment],
    responses: Sequence[AssessmentResponse],
    questions: Sequence[AssessmentQuestion],
    categories: Sequence[str],
) -> AssessmentSection:
    completed = [as_utc(a.completed_at) for a in assessments if a.completed_at is not None]
    latest_responses = dedupe_latest(
        responses, key=lambda r: r.question_id, timestamp=lambda r: as_utc(r.updated_at))

    scores: dict[str, list[float]] = defaultdict(list)
    answered_categories: set[str] = set()
    scored: list[AssessmentResponse] = []
    for r in latest_responses:
        answered_categories.add(r.question.category)
        if r.confidence_level != NOT_APPLICABLE and r.score is not None:
            scores[r.question.category].append(r.score)
            scored.append(r)

    category_scores = {c: round(sum(v) / len(v), 3) for c, v in scores.items()}
    weakest = sorted(category_scores, key=lambda c: category_scores[c])[:_WEAKEST_CATEGORIES]
    drivers = [
        r.question.driver or r.question.question_text
        for r in sorted(scored, key=lambda r: r.score)[:_WEAKEST_DRIVERS]
    ]
    available = {q.category for q in questions}
    return AssessmentSection(
        has_completed_assessment=bool(completed),
        last_assessment_date=max(completed, default=None),
        category_scores=category_scores,
        weakest_categories=weakest,
        weakest_drivers=drivers,
        unanswered_categories=[c for c in categories if c in available and c not in answered_categories],
        total_questions_answered=len(latest_responses),
        total_questions_available=len(questions),
    )


def build_valuation(snapshots: Sequence[ValuationSnapshot]) -> ValuationSection:
    if not snapshots:
        return ValuationSection()
    ordered = sorted(snapshots, key=lambda s: s.created_at)
    current = ordered[-1]
    gap = None
    if current.potential_value is not None:
        gap = current.potential_value - current.current_value
    return ValuationSection(
        current_value=current.current_value,
        potential_value=current.potential_value,
        value_gap=gap,
        bri_score=current.bri_score,
        final_multiple=current.final_multiple,
        trend=[
            ValuationTrendPoint(date=as_utc(s.created_at), bri_score=s.bri_score, current_value=s.current_value)
            for s in ordered[-_TREND_POINTS:]
        ],
    )


def _task_summary(t: Task) -> TaskSummary:
    return TaskSummary(
        id=t.id, title=t.title, category=t.category,
        raw_value=t.raw_value or 0.0, completed_at=as_utc(t.completed_at),
    )


def build_tasks(tasks: Sequence[Task], now: datetime) -> TasksSection:
    active = [t for t in tasks if t.status != NOT_APPLICABLE]
    open_tasks = [t for t in active if t.status in ("PENDING", "IN_PROGRESS")]
    completed = [t for t in active if t.status == "COMPLETED"]

    value_by_category: dict[str, float] = defaultdict(float)
    for t in open_tasks:
        value_by_category[t.category] += t.raw_value or 0.0

    window_start = now - timedelta(weeks=_VELOCITY_WEEKS)
    recent = [t for t in completed if t.completed_at is not None and as_utc(t.completed_at) >= window_start]
    by_completion = sorted(
        (t for t in completed if t.completed_at is not None),
        key=lambda t: as_utc(t.completed_at), reverse=True,
    )
    return TasksSection(
        total_tasks=len(active),
        pending_count=sum(1 for t in active if t.status == "PENDING"),
        in_progress_count=sum(1 for t in active if t.status == "IN_PROGRESS"),
        completed_count=len(completed),
        total_pending_value=sum(t.raw_value or 0.0 for t in open_tasks),
        total_completed_value=sum(t.raw_value or 0.0 for t in completed),
        value_by_category=dict(value_by_category),
        top_pending_tasks=[
            _task_summary(t) for t in sorted(open_tasks, key=lambda t: t.raw_value or 0.0, reverse=True)[:_TOP_TASKS]
        ],
        recent_completions=[_task_summary(t) for t in by_completion[:_TOP_TASKS]],
        weekly_velocity=round(len(recent) / _VELOCITY_WEEKS, 2),
    )


def build_evidence(documents: Sequence[DataRoomDocument], categories: Sequence[str]) -> EvidenceSection:
    covered = {d.category for d in documents if d.status == "CURRENT"}
    urgent = sorted(
        (d for d in documents if d.status in URGENT_DOCUMENT_STATUSES),
        key=lambda d: d.updated_at,
    )
    return EvidenceSection(
        total_documents=len(documents),
        documents_by_status=dict(Counter(d.status for d in documents)),
        category_gaps=[c for c in categories if c not in covered],
        urgent_documents=[
            UrgentDocument(name=d.name, category=d.category, status=d.status)
            for d in urgent[:_URGENT_DOCUMENTS]
        ],
    )


def build_signals(signals: Sequence[Signal], movements: Sequence[ValueLedgerEntry]) -> SignalsSection:
    open_signals = [s for s in signals if s.status != "RESOLVED"]
    # Most severe first, newest first within a severity.
    ranked = sorted(open_signals, key=lambda s: as_utc(s.created_at), reverse=True)
    ranked.sort(key=lambda s: SEVERITY_RANK.get(s.severity, len(SEVERITY_RANK)))
    recent_movements = sorted(movements, key=lambda m: m.occurred_at, reverse=True)[:_RECENT_MOVEMENTS]
    return SignalsSection(
        open_signals_count=len(open_signals),
        severity_summary=dict(Counter(s.severity for s in open_signals)),
        recent_value_movements=[
            ValueMovement(
                date=as_utc(m.occurred_at), delta_value=m.delta_value,
                event_type=m.event_type, narrative_summary=m.narrative_summary,
            )
            for m in recent_movements
        ],
        top_open_signals=[
            SignalSummary(title=s.title, severity=s.severity, category=s.category, created_at=as_utc(s.created_at))
            for s in ranked[:_TOP_SIGNALS]
        ],
    )


def _check_in_streak(weeks: Sequence) -> int:
    """Consecutive weekly check-ins counting back from the most recent one."""
    if not weeks:
        return 0
    streak = 1
    for newer, older in zip(weeks, weeks[1:]):
        if (newer - older).days != 7:
            break
        streak += 1
    return streak


def build_engagement(
    check_ins: Sequence[WeeklyCheckIn], last_activity_at: datetime | None, now: datetime,
) -> EngagementSection:
    completed = sorted(
        (c for c in check_ins if c.completed_at is not None), key=lambda c: c.week_of, reverse=True)
    weeks = list(dict.fromkeys(c.week_of for c in completed))
    days = NO_ACTIVITY_SENTINEL
    if last_activity_at is not None:
        days = min(max((now - last_activity_at).days, 0), NO_ACTIVITY_SENTINEL)
    return EngagementSection(
        last_check_in_date=weeks[0] if weeks else None,
        check_in_streak=_check_in_streak(weeks),
        days_since_last_activity=days,
        total_check_ins=len(completed),
    )


def build_ai_context(
    assessment: AssessmentSection,
    responses: Sequence[AssessmentResponse],
    tasks: Sequence[Task],
    signals: Sequence[Signal],
) -> AIContextSection:
    question_ids = list(dict.fromkeys(r.question_id for r in responses))
    titles = [t.title for t in sorted(tasks, key=lambda t: t.created_at, reverse=True)][:_MAX_TASK_TITLES]
    risks = [s.title for s in signals if s.status != "RESOLVED" and s.severity in RISK_SEVERITIES]
    return AIContextSection(
        previous_question_ids=question_ids,
        previous_task_titles=titles,
        identified_risks=risks,
        focus_areas=list(assessment.weakest_categories),
    )


def build_dossier_content(
    session: Session,
    company: Company,
    *,
    categories: Sequence[str] = BRI_CATEGORIES,
    last_activity_at: datetime | None = None,
    now: datetime | None = None,
) -> DossierContent:
    """Compute all nine base sections for *company* from the record store."""
    now = now or utcnow()
    cid = company.id

    assessments = session.execute(select(Assessment).where(Assessment.company_id == cid)).scalars().all()
    responses = session.execute(
        select(AssessmentResponse)
        .join(Assessment, AssessmentResponse.assessment_id == Assessment.id)
        .where(Assessment.company_id == cid)
        .order_by(AssessmentResponse.updated_at.desc())
    ).scalars().all()
    questions = session.execute(select(AssessmentQuestion)).scalars().all()
    tasks = session.execute(select(Task).where(Task.company_id == cid)).scalars().all()
    signals = session.execute(select(Signal).where(Signal.company_id == cid)).scalars().all()

    def _rows(model) -> list:
        return list(session.execute(select(model).where(model.company_id == cid)).scalars().all())

    assessment = build_assessment(assessments, responses, questions, categories)
    return DossierContent(
        identity=build_identity(company),
        financials=build_financials(_rows(FinancialPeriod)),
        assessment=assessment,
        valuation=build_valuation(_rows(ValuationSnapshot)),
        tasks=build_tasks(tasks, now),
        evidence=build_evidence(_rows(DataRoomDocument), categories),
        signals=build_signals(signals, _rows(ValueLedgerEntry)),
        engagement=build_engagement(_rows(WeeklyCheckIn), last_activity_at, now),
        ai_context=build_ai_context(assessment, responses, tasks, signals),
    )


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


def _to_snapshot(row: CompanyDossier) -> DossierSnapshot:
    return DossierSnapshot(
        company_id=row.company_id,
        version=row.version,
        build_reason=row.build_reason,
        created_at=as_utc(row.created_at),
        content=DossierContent.model_validate(json_parse(row.content_json)),
    )


class DossierProvider:
    """Reads and rebuilds persisted dossier snapshots."""

    def __init__(
        self,
        session_factory: SessionFactory,
        categories: Sequence[str] = BRI_CATEGORIES,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._categories = tuple(categories)
        self._clock = clock
        self._records = RecordRepository(session_factory)

    def get_current(self, company_id: str) -> DossierSnapshot | None:
        stmt = (
            select(CompanyDossier)
            .where(CompanyDossier.company_id == company_id, CompanyDossier.is_current.is_(True))
            .order_by(CompanyDossier.version.desc())
            .limit(1)
        )
        with session_scope(self._session_factory) as session:
            row = session.execute(stmt).scalars().first()
            return _to_snapshot(row) if row is not None else None

    @staticmethod
    def _next_version(session: Session, company_id: str) -> int:
        current = session.execute(
            select(func.max(CompanyDossier.version)).where(CompanyDossier.company_id == company_id)
        ).scalar()
        return (current or 0) + 1

    def rebuild(self, company_id: str, reason: str = "manual_rebuild") -> DossierSnapshot:
        """Recompute and persist a new current snapshot (last write wins).

        Raises SourceUnavailable for an unknown company and RebuildConflict
        when another writer stored the same version first.
        """
        if reason not in REBUILD_REASONS:
            raise ValueError(f"Unknown rebuild reason: {reason!r}")
        now = self._clock()
        ts = self._records.latest_timestamps(company_id)
        last_activity = latest(
            ts.last_assessment_response_at, ts.last_task_completion_at,
            ts.last_document_update_at, ts.last_check_in_at, ts.last_disclosure_at,
        )
        with session_scope(self._session_factory) as session:
            company = session.get(Company, company_id)
            if company is None:
                raise SourceUnavailable(f"Company {company_id} not found", details={"company_id": company_id})
            content = build_dossier_content(
                session, company, categories=self._categories,
                last_activity_at=last_activity, now=now,
            )
            version = self._next_version(session, company_id)
            session.execute(
                update(CompanyDossier)
                .where(CompanyDossier.company_id == company_id, CompanyDossier.is_current.is_(True))
                .values(is_current=False)
            )
            row = CompanyDossier(
                company_id=company_id, version=version, is_current=True,
                build_reason=reason, content_json=content.model_dump_json(), created_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                raise RebuildConflict(
                    f"Dossier version {version} for {company_id} was written concurrently",
                    details={"company_id": company_id, "version": version},
                ) from exc
            log.info("Rebuilt dossier for %s (version %d, reason=%s)", company_id, version, reason)
            return _to_snapshot(row)
