"""Shared fixtures: a temp-file SQLite store and one fully populated company."""
from __future__ import annotations

import json
from datetime import UTC, date, datetime, timedelta

import pytest

from intel.config import BRI_CATEGORIES, Settings
from intel.db import make_session_factory
from intel.models import (
    Assessment,
    AssessmentQuestion,
    AssessmentResponse,
    Company,
    DataRoomDocument,
    DisclosurePromptSet,
    DisclosureResponse,
    FinancialPeriod,
    Signal,
    Task,
    TaskNote,
    ValuationSnapshot,
    ValueLedgerEntry,
    WeeklyCheckIn,
)

COMPANY_ID = "acme"


@pytest.fixture()
def session_factory(tmp_path):
    """File-backed so worker threads each get their own connection."""
    return make_session_factory(f"sqlite:///{tmp_path / 'intel.db'}")


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        home=tmp_path,
        database_path=tmp_path / "intel.db",
        fetch_timeout_seconds=None,
        isolate_source_failures=False,
        sort_task_notes=False,
    )


@pytest.fixture()
def now() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def seed_company(session, now: datetime, company_id: str = COMPANY_ID) -> str:
    """Populate every source a profile reads from for one company."""
    session.add(Company(
        id=company_id, name="Acme Tooling", industry="Manufacturing", sub_sector="Precision parts",
        business_description="Contract machining for aerospace suppliers.",
        core_factors_json=json.dumps({"revenue_model": "recurring", "owner_involvement": "high"}),
    ))
    session.flush()

    for label, year, revenue, ebitda in (("FY2022", 2022, 1_000_000, 150_000),
                                         ("FY2023", 2023, 1_200_000, 200_000),
                                         ("FY2024", 2024, 1_500_000, 300_000)):
        session.add(FinancialPeriod(
            company_id=company_id, label=label, period_end=date(year, 12, 31),
            revenue=revenue, ebitda=ebitda, owner_compensation=120_000,
            total_assets=800_000, total_liabilities=300_000, cash=90_000,
        ))

    # Two questions per category.
    for category in BRI_CATEGORIES:
        for n in (1, 2):
            session.add(AssessmentQuestion(
                id=f"{category}-{n}", question_text=f"{category} question {n}",
                category=category, driver=f"{category.lower()} driver {n}",
            ))
    session.flush()

    assessment = Assessment(
        company_id=company_id, created_at=now - timedelta(days=12), completed_at=now - timedelta(days=10))
    session.add(assessment)
    session.flush()
    not_applicable = {"PERSONAL-1", "PERSONAL-2", "LEGAL_TAX-1"}
    notes = {"FINANCIAL-1": "Books closed monthly", "MARKET-2": "Two large customers", "OPERATIONAL-1": "  "}
    for i, category in enumerate(BRI_CATEGORIES):
        for n in (1, 2):
            qid = f"{category}-{n}"
            session.add(AssessmentResponse(
                assessment_id=assessment.id, question_id=qid,
                score=None if qid in not_applicable else 0.3 + 0.1 * i,
                confidence_level="NOT_APPLICABLE" if qid in not_applicable else "CONFIDENT",
                notes=notes.get(qid),
                updated_at=now - timedelta(days=10, minutes=i * 2 + n),
            ))

    for i in range(6):
        session.add(Task(
            id=f"done-{i}", company_id=company_id, title=f"Completed task {i}", category="OPERATIONAL",
            status="COMPLETED", raw_value=10_000 + i,
            completion_notes="Signed off by auditor" if i < 2 else None,
            created_at=now - timedelta(days=40 - i), completed_at=now - timedelta(days=i + 1),
        ))
    session.add(Task(id="todo-1", company_id=company_id, title="Document SOPs", category="TRANSFERABILITY",
                     status="PENDING", raw_value=50_000, created_at=now - timedelta(days=5)))
    session.add(Task(id="todo-2", company_id=company_id, title="Renegotiate lease", category="LEGAL_TAX",
                     status="IN_PROGRESS", raw_value=20_000, created_at=now - timedelta(days=4)))
    session.add(Task(id="na-1", company_id=company_id, title="Register trademark", category="LEGAL_TAX",
                     status="NOT_APPLICABLE", created_at=now - timedelta(days=3)))
    session.flush()
    session.add(TaskNote(task_id="done-3", content="Handover checklist attached", note_type="COMPLETION",
                         created_at=now - timedelta(hours=6)))

    session.add_all([
        DisclosurePromptSet(company_id=company_id, completed_at=now - timedelta(days=14)),
        DisclosurePromptSet(company_id=company_id, completed_at=now - timedelta(days=7)),
        DisclosurePromptSet(company_id=company_id, skipped_at=now - timedelta(days=21)),
    ])
    disclosure_rows = [
        ("lost_customer", "MARKET", True, True),
        ("new_debt", "FINANCIAL", True, False),
        ("key_hire", "TRANSFERABILITY", False, False),
        ("price_change", "FINANCIAL", True, False),
        ("new_competitor", "MARKET", True, False),
        ("audit", "FINANCIAL", True, False),
    ]
    for i, (key, category, answer, signal) in enumerate(disclosure_rows):
        session.add(DisclosureResponse(
            company_id=company_id, question_key=key, question_text=f"Any {key.replace('_', ' ')}?",
            category=category, answer=answer, follow_up_answer="Details given" if answer else None,
            responded_at=now - timedelta(days=7, hours=i), signal_created=signal,
        ))

    this_monday = (now - timedelta(days=now.weekday())).date()
    for i in range(4):
        session.add(WeeklyCheckIn(
            company_id=company_id, week_of=this_monday - timedelta(weeks=i),
            team_changes=False, customer_changes=i == 0, customer_changes_note="Won a new account" if i == 0 else None,
            confidence_rating=4, additional_notes=None,
            completed_at=now - timedelta(weeks=i, hours=2),
        ))

    for category in BRI_CATEGORIES[:5]:
        session.add(DataRoomDocument(company_id=company_id, name=f"{category} pack", category=category,
                                     status="CURRENT", updated_at=now - timedelta(days=20)))
    session.add(DataRoomDocument(company_id=company_id, name="Owner transition plan", category="PERSONAL",
                                 status="OVERDUE", updated_at=now - timedelta(days=60)))

    session.add_all([
        Signal(company_id=company_id, title="Customer concentration", category="MARKET",
               severity="HIGH", status="OPEN", created_at=now - timedelta(days=7)),
        Signal(company_id=company_id, title="Late filing", category="LEGAL_TAX",
               severity="LOW", status="ACKNOWLEDGED", created_at=now - timedelta(days=9)),
        Signal(company_id=company_id, title="Old issue", category="FINANCIAL",
               severity="CRITICAL", status="RESOLVED", created_at=now - timedelta(days=90)),
        ValueLedgerEntry(company_id=company_id, event_type="TASK_COMPLETED", delta_value=10_000,
                         narrative_summary="SOPs reduce key-person risk", occurred_at=now - timedelta(days=2)),
        ValueLedgerEntry(company_id=company_id, event_type="SIGNAL_RAISED", delta_value=-5_000,
                         occurred_at=now - timedelta(days=7)),
    ])

    for i, (value, bri) in enumerate(((4.0e6, 0.52), (4.2e6, 0.55), (4.5e6, 0.58), (4.8e6, 0.61))):
        session.add(ValuationSnapshot(
            company_id=company_id, current_value=value, potential_value=6.0e6, bri_score=bri,
            final_multiple=3.2, created_at=now - timedelta(days=90 - i * 30),
        ))

    session.commit()
    return company_id


@pytest.fixture()
def seeded(session_factory, now) -> str:
    session = session_factory()
    try:
        return seed_company(session, now)
    finally:
        session.close()


@pytest.fixture()
def bare_company(session_factory) -> str:
    """A company with no records besides its own row."""
    session = session_factory()
    try:
        session.add(Company(id="bare", name="Bare Co"))
        session.commit()
    finally:
        session.close()
    return "bare"


@pytest.fixture()
def seed():
    """The seeding function itself, for stores opened outside these fixtures."""
    return seed_company
