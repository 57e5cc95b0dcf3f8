"""Company intelligence profile assembly.

``CompanyIntelligenceBuilder`` reads the current dossier snapshot (rebuilding
it when a company has none yet), fetches the supplemental sections and the
freshness timestamps concurrently, and attaches per-section metadata.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import AsyncIterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Any, Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError

from intel.aggregators import (
    NAAssessmentResponse,
    aggregate_disclosures,
    aggregate_na_flags,
    aggregate_notes,
    compute_category_breakdown,
    dedupe_latest,
)
from intel.config import Settings, get_settings
from intel.dossier import DossierProvider
from intel.errors import IntelligenceError, RebuildConflict, SourceUnavailable
from intel.repository import RecordRepository
from intel.schemas import (
    CompanyIntelligence,
    DisclosuresSection,
    DossierContent,
    DossierSnapshot,
    NAFlagsSection,
    NotesSection,
    SUPPLEMENTAL_SECTIONS,
    SectionName,
)
from intel.section_meta import SectionTimestamps, build_section_meta
from intel.utils import utcnow

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Empty defaults for skipped or failed supplemental sections
# ---------------------------------------------------------------------------


def empty_na_flags() -> NAFlagsSection:
    return NAFlagsSection()


def empty_disclosures() -> DisclosuresSection:
    return DisclosuresSection()


def empty_notes() -> NotesSection:
    return NotesSection()


EMPTY_SECTIONS: dict[SectionName, Callable[[], Any]] = {
    SectionName.NA_FLAGS: empty_na_flags,
    SectionName.DISCLOSURES: empty_disclosures,
    SectionName.NOTES: empty_notes,
}


def resolve_sections(sections: Iterable[str | SectionName] | None) -> set[SectionName]:
    """Parse a requested subset; ``None`` means every section."""
    if sections is None:
        return set(SectionName)
    return {SectionName.parse(s) for s in sections}


class CompanyIntelligenceBuilder:
    """Builds intelligence profiles and single sections for one company at a time.

    Rebuilds triggered by a missing dossier are serialised per company with
    an ``asyncio.Lock`` owned by this instance; a company's lock is dropped
    once nobody holds or awaits it. Store reads run on a thread pool owned
    by the builder, released with ``shutdown()``.
    """

    def __init__(
        self,
        repository: RecordRepository,
        dossiers: DossierProvider,
        settings: Settings | None = None,
    ):
        self._repo = repository
        self._dossiers = dossiers
        self._settings = settings or get_settings()
        # company id -> (lock, number of tasks holding or awaiting it)
        self._rebuild_locks: dict[str, tuple[asyncio.Lock, int]] = {}
        self._executor = ThreadPoolExecutor(
            max_workers=self._settings.fetch_workers, thread_name_prefix="intel-fetch")
        self._fetchers: dict[SectionName, Callable[[str], Any]] = {
            SectionName.NA_FLAGS: self._fetch_na_flags,
            SectionName.DISCLOSURES: self._fetch_disclosures,
            SectionName.NOTES: self._fetch_notes,
        }

    # -- Public operations -------------------------------------------------

    async def build_profile(
        self, company_id: str, sections: Iterable[str | SectionName] | None = None,
    ) -> CompanyIntelligence:
        """Assemble the full profile, or a subset of supplemental sections.

        Supplemental sections outside *sections* are not fetched and carry
        their empty defaults; base sections always come from the snapshot.
        Metadata is produced for all twelve sections either way.
        """
        requested = resolve_sections(sections)
        started = time.perf_counter()
        snapshot = await self._get_or_rebuild_dossier(company_id)

        wanted = [name for name in SUPPLEMENTAL_SECTIONS if name in requested]
        jobs = [self._guarded(name.value, self._fetchers[name], company_id) for name in wanted]
        jobs.append(self._guarded("timestamps", self._repo.latest_timestamps, company_id, snapshot.created_at))
        results = await asyncio.gather(*jobs, return_exceptions=True)

        supplemental = {name: factory() for name, factory in EMPTY_SECTIONS.items()}
        degraded: list[SectionName] = []
        for name, result in zip(wanted, results[:-1]):
            if isinstance(result, BaseException):
                self._absorb_failure(company_id, name.value, result)
                degraded.append(name)
            else:
                supplemental[name] = result

        timestamps = results[-1]
        timestamps_failed = isinstance(timestamps, BaseException)
        if timestamps_failed:
            self._absorb_failure(company_id, "timestamps", timestamps)
            timestamps = SectionTimestamps(dossier_updated_at=snapshot.created_at)

        now = utcnow()
        base = {name: getattr(snapshot.content, name) for name in DossierContent.model_fields}
        contents: dict[SectionName, Any] = {SectionName(name): section for name, section in base.items()}
        contents.update(supplemental)

        profile = CompanyIntelligence(
            company_id=company_id,
            generated_at=now,
            dossier_version=snapshot.version,
            **base,
            na_flags=supplemental[SectionName.NA_FLAGS],
            disclosures=supplemental[SectionName.DISCLOSURES],
            notes=supplemental[SectionName.NOTES],
            section_meta=build_section_meta(contents, timestamps, now),
            degraded=bool(degraded) or timestamps_failed,
            degraded_sections=degraded,
        )
        log.info(
            "Built intelligence profile for %s (dossier v%d, %d supplemental fetched, degraded=%s)",
            company_id, snapshot.version, len(wanted), profile.degraded,
        )
        log.debug("Profile for %s took %.1f ms", company_id, (time.perf_counter() - started) * 1000)
        return profile

    async def build_section(self, company_id: str, section_name: str | SectionName) -> Any:
        """Content of one section only.

        Supplemental sections run just their own aggregator; base sections
        are read from the (possibly rebuilt) dossier snapshot.
        """
        name = SectionName.parse(section_name)
        if name.is_supplemental:
            return await self._guarded(name.value, self._fetchers[name], company_id)
        snapshot = await self._get_or_rebuild_dossier(company_id)
        return getattr(snapshot.content, name.value)

    async def rebuild_dossier(self, company_id: str, reason: str = "manual_rebuild") -> DossierSnapshot:
        """Force a new dossier version, serialised with fallback rebuilds."""
        async with self._company_lock(company_id):
            return await self._rebuild(company_id, reason)

    # -- Lifecycle ---------------------------------------------------------

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # -- Dossier -----------------------------------------------------------

    @asynccontextmanager
    async def _company_lock(self, company_id: str) -> AsyncIterator[None]:
        lock, users = self._rebuild_locks.get(company_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._rebuild_locks[company_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._rebuild_locks[company_id]
            if users == 1:
                del self._rebuild_locks[company_id]
            else:
                self._rebuild_locks[company_id] = (lock, users - 1)

    async def _get_or_rebuild_dossier(self, company_id: str) -> DossierSnapshot:
        snapshot = await self._guarded("dossier", self._dossiers.get_current, company_id)
        if snapshot is not None:
            return snapshot
        async with self._company_lock(company_id):
            # Another build may have finished the rebuild while we waited.
            snapshot = await self._guarded("dossier", self._dossiers.get_current, company_id)
            if snapshot is not None:
                return snapshot
            log.info("No dossier for %s, rebuilding", company_id)
            return await self._rebuild(company_id, "manual_rebuild")

    async def _rebuild(self, company_id: str, reason: str) -> DossierSnapshot:
        try:
            return await self._guarded("dossier", self._dossiers.rebuild, company_id, reason)
        except RebuildConflict:
            log.warning("Concurrent dossier rebuild for %s, using the stored snapshot", company_id)
            snapshot = await self._guarded("dossier", self._dossiers.get_current, company_id)
            if snapshot is None:
                raise SourceUnavailable(
                    f"Dossier for {company_id} could not be obtained",
                    details={"company_id": company_id},
                ) from None
            return snapshot

    # -- Fetch plumbing ----------------------------------------------------

    async def _guarded(self, source: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking read on the builder's pool, mapping failures to SourceUnavailable."""
        timeout = self._settings.fetch_timeout_seconds
        read = asyncio.get_running_loop().run_in_executor(self._executor, functools.partial(fn, *args))
        try:
            if timeout:
                return await asyncio.wait_for(read, timeout)
            return await read
        except TimeoutError as exc:
            raise SourceUnavailable(
                f"Timed out reading {source} after {timeout}s", details={"source": source},
            ) from exc
        except SQLAlchemyError as exc:
            raise SourceUnavailable(f"Failed to read {source}", details={"source": source}) from exc

    def _absorb_failure(self, company_id: str, source: str, exc: BaseException) -> None:
        """Re-raise *exc* unless source failures are isolated."""
        if not isinstance(exc, IntelligenceError) or not self._settings.isolate_source_failures:
            raise exc
        log.warning("Source %s failed for %s, substituting empty data: %s", source, company_id, exc.message)

    # -- Supplemental fetchers (run on worker threads) ---------------------

    def _fetch_na_flags(self, company_id: str) -> NAFlagsSection:
        responses = self._repo.list_assessment_responses(company_id)
        # Latest answer per question decides both the flag and the breakdown.
        latest = dedupe_latest(responses, key=lambda r: r.question_id, timestamp=lambda r: r.updated_at)
        breakdown = compute_category_breakdown(
            self._settings.categories, [(r.category, r.is_na) for r in latest])
        na_responses = [
            NAAssessmentResponse(r.question_id, r.question_text, r.category, r.updated_at)
            for r in latest if r.is_na
        ]
        return aggregate_na_flags(
            na_responses,
            self._repo.list_na_tasks(company_id),
            breakdown,
            heavily_na_ratio=self._settings.limits.heavily_na_ratio,
        )

    def _fetch_disclosures(self, company_id: str) -> DisclosuresSection:
        limits = self._settings.limits
        return aggregate_disclosures(
            self._repo.list_disclosure_prompt_sets(company_id),
            self._repo.list_disclosure_responses(company_id),
            recent_limit=limits.recent_disclosures,
            material_limit=limits.material_changes,
            high_change_threshold=limits.high_change_threshold,
        )

    def _fetch_notes(self, company_id: str) -> NotesSection:
        limits = self._settings.limits
        return aggregate_notes(
            self._repo.list_assessment_notes(company_id),
            self._repo.list_legacy_task_notes(company_id),
            self._repo.list_task_note_records(company_id),
            self._repo.list_completed_check_ins(company_id),
            assessment_limit=limits.assessment_notes,
            task_limit=limits.task_notes,
            check_in_limit=limits.check_ins,
            sort_task_notes=self._settings.sort_task_notes,
        )


def create_builder(session_factory, settings: Settings | None = None) -> CompanyIntelligenceBuilder:
    """Wire a builder over one session factory."""
    settings = settings or get_settings()
    return CompanyIntelligenceBuilder(
        RecordRepository(session_factory),
        DossierProvider(session_factory, categories=settings.categories),
        settings,
    )
