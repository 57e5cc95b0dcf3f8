"""Pure transforms from raw per-source records to bounded profile sections.

Three aggregators live here, one per supplemental section:

- **NA flags**: explicit "not applicable" markers on assessment questions and
  tasks, plus the categories where most questions were marked NA.
- **Disclosures**: periodic yes/no change answers; a display slice of the most
  recent responses and, independently, material changes and high-change
  categories computed over the *complete* history.
- **Notes**: qualitative commentary from assessment answers, task completions
  (legacy single-field notes and task-note records) and weekly check-ins.

Every list handed in is expected most-recent-first, which is how the record
repository returns them. Nothing here touches storage or logs.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Hashable, Iterable, Sequence, TypeVar

from intel.schemas import (
    AssessmentNAFlag,
    AssessmentNote,
    CheckInDetail,
    DisclosureEntry,
    DisclosuresSection,
    NAFlagsSection,
    NotesSection,
    TaskCompletionNote,
    TaskNAFlag,
)

T = TypeVar("T")

DEFAULT_RECENT_DISCLOSURES = 20
DEFAULT_MATERIAL_CHANGES = 10
DEFAULT_HIGH_CHANGE_THRESHOLD = 2
DEFAULT_HEAVILY_NA_RATIO = 0.5
DEFAULT_ASSESSMENT_NOTES = 30
DEFAULT_TASK_NOTES = 20
DEFAULT_CHECK_INS = 12

# ---------------------------------------------------------------------------
# Input records
# ---------------------------------------------------------------------------


@dataclass
class NAAssessmentResponse:
    question_id: str
    question_text: str
    category: str
    updated_at: datetime


@dataclass
class NATask:
    id: str
    title: str
    category: str


@dataclass
class CategoryBreakdown:
    total_questions: int = 0
    na_count: int = 0


@dataclass
class DisclosurePromptSetInput:
    completed_at: datetime | None
    skipped_at: datetime | None


@dataclass
class DisclosureResponseInput:
    question_key: str
    question_text: str
    category: str
    answer: bool
    follow_up_answer: str | None
    responded_at: datetime
    signal_created: bool


@dataclass
class AssessmentNoteInput:
    question_id: str
    question_text: str
    category: str
    note: str
    updated_at: datetime


@dataclass
class TaskCompletionNoteInput:
    id: str
    title: str
    category: str
    completion_notes: str
    completed_at: datetime


@dataclass
class CheckInInput:
    week_of: date | None
    team_changes: bool | None
    team_changes_note: str | None
    customer_changes: bool | None
    customer_changes_note: str | None
    confidence_rating: int | None
    additional_notes: str | None
    completed_at: datetime


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def dedupe_latest(
    items: Iterable[T], key: Callable[[T], Hashable], timestamp: Callable[[T], datetime],
) -> list[T]:
    """Keep one item per key, the one with the latest timestamp.

    Output is ordered by timestamp descending; ties keep input order.
    """
    ordered = sorted(items, key=timestamp, reverse=True)
    seen: set[Hashable] = set()
    result: list[T] = []
    for item in ordered:
        k = key(item)
        if k in seen:
            continue
        seen.add(k)
        result.append(item)
    return result


def _has_text(value: str | None) -> bool:
    return value is not None and len(value.strip()) > 0


# ---------------------------------------------------------------------------
# NA flags
# ---------------------------------------------------------------------------


def compute_category_breakdown(
    categories: Iterable[str], answers: Iterable[tuple[str, bool]],
) -> dict[str, CategoryBreakdown]:
    """Tally questions and NA answers per category.

    *answers* holds one ``(category, is_na)`` pair per distinct question,
    already de-duplicated by the caller. Every category in *categories* gets
    an entry, zero-filled when it has no data; categories only seen in the
    answers are appended after them.
    """
    breakdown = {c: CategoryBreakdown() for c in categories}
    for category, is_na in answers:
        entry = breakdown.setdefault(category, CategoryBreakdown())
        entry.total_questions += 1
        if is_na:
            entry.na_count += 1
    return breakdown


def heavily_na_categories(
    breakdown: dict[str, CategoryBreakdown], ratio: float = DEFAULT_HEAVILY_NA_RATIO,
) -> list[str]:
    """Categories where more than *ratio* of all questions are NA."""
    return [
        category for category, entry in breakdown.items()
        if entry.total_questions > 0 and entry.na_count / entry.total_questions > ratio
    ]


def aggregate_na_flags(
    na_responses: Sequence[NAAssessmentResponse],
    na_tasks: Sequence[NATask],
    breakdown: dict[str, CategoryBreakdown],
    *,
    heavily_na_ratio: float = DEFAULT_HEAVILY_NA_RATIO,
) -> NAFlagsSection:
    latest = dedupe_latest(na_responses, key=lambda r: r.question_id, timestamp=lambda r: r.updated_at)
    assessment_flags = [
        AssessmentNAFlag(
            question_id=r.question_id, question_text=r.question_text,
            category=r.category, flagged_at=r.updated_at,
        )
        for r in latest
    ]
    task_flags = [TaskNAFlag(task_id=t.id, task_title=t.title, category=t.category) for t in na_tasks]
    return NAFlagsSection(
        assessment_na_flags=assessment_flags,
        task_na_flags=task_flags,
        heavily_na_categories=heavily_na_categories(breakdown, heavily_na_ratio),
        total_na_count=len(assessment_flags) + len(task_flags),
    )


# ---------------------------------------------------------------------------
# Disclosures
# ---------------------------------------------------------------------------


def compute_high_change_categories(
    responses: Iterable[DisclosureResponseInput], threshold: int = DEFAULT_HIGH_CHANGE_THRESHOLD,
) -> list[str]:
    """Categories with at least *threshold* affirmative answers, most first.

    Ties keep the order in which categories were first encountered.
    """
    yes_counts: Counter[str] = Counter()
    for r in responses:
        if r.answer:
            yes_counts[r.category] += 1
    # Counter preserves insertion order and sorted() is stable.
    ranked = sorted(yes_counts.items(), key=lambda kv: kv[1], reverse=True)
    return [category for category, count in ranked if count >= threshold]


def _disclosure_entry(r: DisclosureResponseInput) -> DisclosureEntry:
    return DisclosureEntry(
        question_key=r.question_key,
        question_text=r.question_text,
        category=r.category,
        answer=r.answer,
        follow_up_text=r.follow_up_answer,
        responded_at=r.responded_at,
        triggered_follow_up=r.signal_created,
    )


def aggregate_disclosures(
    prompt_sets: Sequence[DisclosurePromptSetInput],
    responses: Sequence[DisclosureResponseInput],
    *,
    recent_limit: int = DEFAULT_RECENT_DISCLOSURES,
    material_limit: int = DEFAULT_MATERIAL_CHANGES,
    high_change_threshold: int = DEFAULT_HIGH_CHANGE_THRESHOLD,
) -> DisclosuresSection:
    entries = [_disclosure_entry(r) for r in responses]
    return DisclosuresSection(
        total_completed=sum(1 for ps in prompt_sets if ps.completed_at is not None),
        total_skipped=sum(1 for ps in prompt_sets if ps.skipped_at is not None),
        recent_responses=entries[:recent_limit],
        material_changes=[e for e in entries if e.triggered_follow_up][:material_limit],
        high_change_categories=compute_high_change_categories(responses, high_change_threshold),
    )


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------


def has_qualitative_content(
    team_changes_note: str | None,
    customer_changes_note: str | None,
    additional_notes: str | None,
) -> bool:
    """True if any of the check-in text fields is non-blank after trimming."""
    return any(_has_text(v) for v in (team_changes_note, customer_changes_note, additional_notes))


def merge_task_notes(
    legacy_notes: Sequence[TaskCompletionNoteInput],
    task_note_records: Sequence[TaskCompletionNoteInput],
    *,
    sort_by_time: bool = False,
) -> list[TaskCompletionNote]:
    """Concatenate legacy and task-note-record notes, tagging provenance.

    By default the legacy notes come first and the combined list is not
    re-sorted; with *sort_by_time* it is ordered by timestamp descending.
    """
    merged = [
        TaskCompletionNote(
            task_id=n.id, task_title=n.title, category=n.category,
            text=n.completion_notes, completed_at=n.completed_at, source=source,
        )
        for source, notes in (("legacy", legacy_notes), ("task_note", task_note_records))
        for n in notes
        if _has_text(n.completion_notes)
    ]
    if sort_by_time:
        merged.sort(key=lambda n: n.completed_at, reverse=True)
    return merged


def aggregate_notes(
    assessment_notes: Sequence[AssessmentNoteInput],
    legacy_task_notes: Sequence[TaskCompletionNoteInput],
    task_note_records: Sequence[TaskCompletionNoteInput],
    check_ins: Sequence[CheckInInput],
    *,
    assessment_limit: int = DEFAULT_ASSESSMENT_NOTES,
    task_limit: int = DEFAULT_TASK_NOTES,
    check_in_limit: int = DEFAULT_CHECK_INS,
    sort_task_notes: bool = False,
) -> NotesSection:
    capped_assessment = [
        AssessmentNote(
            question_id=n.question_id, question_text=n.question_text,
            category=n.category, text=n.note, updated_at=n.updated_at,
        )
        for n in assessment_notes if _has_text(n.note)
    ][:assessment_limit]

    capped_tasks = merge_task_notes(
        legacy_task_notes, task_note_records, sort_by_time=sort_task_notes,
    )[:task_limit]

    capped_check_ins = [
        CheckInDetail(
            week_of=c.week_of,
            team_changes=c.team_changes,
            team_changes_note=c.team_changes_note,
            customer_changes=c.customer_changes,
            customer_changes_note=c.customer_changes_note,
            confidence_rating=c.confidence_rating,
            additional_notes=c.additional_notes,
            completed_at=c.completed_at,
        )
        for c in check_ins[:check_in_limit]
    ]

    # Counted after capping: a check-in outside the window never contributes.
    qualitative_check_ins = sum(
        1 for c in capped_check_ins
        if has_qualitative_content(c.team_changes_note, c.customer_changes_note, c.additional_notes)
    )
    return NotesSection(
        assessment_notes=capped_assessment,
        task_completion_notes=capped_tasks,
        check_in_details=capped_check_ins,
        total_notes_count=len(capped_assessment) + len(capped_tasks) + qualitative_check_ins,
    )
