"""Orchestrator tests: fallback rebuild, subsets, single sections, failures."""
from __future__ import annotations

import asyncio
import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from intel.dossier import DossierProvider
from intel.errors import InvalidSection, RebuildConflict, SourceUnavailable
from intel.intelligence import CompanyIntelligenceBuilder, create_builder, resolve_sections
from intel.models import CompanyDossier
from intel.repository import RecordRepository
from intel.schemas import (
    Completeness,
    DossierContent,
    DossierSnapshot,
    FinancialsSection,
    NAFlagsSection,
    SectionName,
)
from intel.section_meta import SectionTimestamps
from intel.utils import utcnow


@pytest.fixture()
def builder(session_factory, settings):
    builder = create_builder(session_factory, settings)
    yield builder
    builder.shutdown()


def _dossier_count(session_factory, company_id: str) -> int:
    session = session_factory()
    try:
        return session.execute(
            select(func.count()).select_from(CompanyDossier).where(CompanyDossier.company_id == company_id)
        ).scalar()
    finally:
        session.close()


def _db_error() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("database is locked"))


class TestResolveSections:
    def test_none_means_all(self):
        assert resolve_sections(None) == set(SectionName)

    def test_camel_case_alias(self):
        assert resolve_sections(["naFlags", "aiContext"]) == {SectionName.NA_FLAGS, SectionName.AI_CONTEXT}

    def test_unknown_name(self):
        with pytest.raises(InvalidSection) as exc_info:
            resolve_sections(["notes", "gossip"])
        assert exc_info.value.details["section"] == "gossip"


class TestBuildProfile:
    @pytest.mark.asyncio
    async def test_full_profile_has_twelve_meta_keys(self, builder, seeded):
        profile = await builder.build_profile(seeded)
        assert set(profile.section_meta) == set(SectionName)
        assert len(profile.section_meta) == 12
        assert profile.company_id == seeded
        assert profile.degraded is False
        assert all(meta.has_data for meta in profile.section_meta.values())

    @pytest.mark.asyncio
    async def test_missing_dossier_is_rebuilt_once(self, builder, session_factory, seeded):
        first = await builder.build_profile(seeded)
        second = await builder.build_profile(seeded)
        assert first.dossier_version == 1
        assert second.dossier_version == 1
        assert _dossier_count(session_factory, seeded) == 1

    @pytest.mark.asyncio
    async def test_supplemental_sections_aggregated(self, builder, seeded):
        profile = await builder.build_profile(seeded)
        assert profile.na_flags.total_na_count == 4
        assert profile.na_flags.heavily_na_categories == ["PERSONAL"]
        assert profile.disclosures.total_completed == 2
        assert profile.disclosures.high_change_categories == ["FINANCIAL", "MARKET"]
        assert [m.question_key for m in profile.disclosures.material_changes] == ["lost_customer"]
        assert profile.notes.total_notes_count == 6
        assert profile.section_meta[SectionName.NOTES].completeness == Completeness.PARTIAL

    @pytest.mark.asyncio
    async def test_meta_grades_from_content(self, builder, seeded):
        meta = (await builder.build_profile(seeded)).section_meta
        assert meta[SectionName.IDENTITY].completeness == Completeness.COMPLETE
        assert meta[SectionName.FINANCIALS].completeness == Completeness.COMPLETE
        assert meta[SectionName.ASSESSMENT].completeness == Completeness.COMPLETE
        assert meta[SectionName.VALUATION].completeness == Completeness.COMPLETE
        assert meta[SectionName.TASKS].completeness == Completeness.COMPLETE
        assert meta[SectionName.EVIDENCE].completeness == Completeness.PARTIAL
        assert meta[SectionName.SIGNALS].completeness == Completeness.COMPLETE
        assert meta[SectionName.ENGAGEMENT].completeness == Completeness.COMPLETE
        assert meta[SectionName.NA_FLAGS].completeness == Completeness.COMPLETE
        assert meta[SectionName.DISCLOSURES].completeness == Completeness.COMPLETE

    @pytest.mark.asyncio
    async def test_freshness_from_sources(self, builder, seeded, now):
        profile = await builder.build_profile(seeded)
        meta = profile.section_meta
        assert meta[SectionName.TASKS].last_updated_at == now - timedelta(days=1)
        assert meta[SectionName.ENGAGEMENT].last_updated_at == now - timedelta(hours=2)
        assert meta[SectionName.DISCLOSURES].last_updated_at == now - timedelta(days=7)
        # No dedicated source: the snapshot build time.
        dossier_at = builder._dossiers.get_current(seeded).created_at
        assert meta[SectionName.IDENTITY].last_updated_at == dossier_at

    @pytest.mark.asyncio
    async def test_subset_skips_other_supplemental_sections(self, builder, seeded):
        with patch.object(builder, "_fetch_disclosures") as disclosures, \
                patch.object(builder, "_fetch_na_flags") as na_flags:
            builder._fetchers[SectionName.DISCLOSURES] = disclosures
            builder._fetchers[SectionName.NA_FLAGS] = na_flags
            profile = await builder.build_profile(seeded, ["notes"])
        disclosures.assert_not_called()
        na_flags.assert_not_called()
        assert profile.notes.total_notes_count == 6
        assert profile.na_flags.total_na_count == 0
        assert profile.disclosures.recent_responses == []
        assert profile.identity.name == "Acme Tooling"
        assert len(profile.section_meta) == 12
        assert profile.degraded is False

    @pytest.mark.asyncio
    async def test_invalid_subset_rejected(self, builder, seeded):
        with pytest.raises(InvalidSection):
            await builder.build_profile(seeded, ["notes", "horoscope"])

    @pytest.mark.asyncio
    async def test_unknown_company(self, builder):
        with pytest.raises(SourceUnavailable):
            await builder.build_profile("nobody")

    @pytest.mark.asyncio
    async def test_bare_company_profile(self, builder, bare_company):
        profile = await builder.build_profile(bare_company)
        meta = profile.section_meta
        assert meta[SectionName.NA_FLAGS].completeness == Completeness.NONE
        assert meta[SectionName.ENGAGEMENT].completeness == Completeness.NONE
        assert meta[SectionName.IDENTITY].completeness == Completeness.MINIMAL
        # Supplemental sections without data are stamped with the build time.
        assert meta[SectionName.NOTES].last_updated_at == profile.generated_at


class TestSourceFailures:
    @pytest.mark.asyncio
    async def test_failed_source_aborts_build(self, builder, seeded):
        with patch.object(RecordRepository, "list_disclosure_responses", side_effect=_db_error()):
            with pytest.raises(SourceUnavailable) as exc_info:
                await builder.build_profile(seeded)
        assert isinstance(exc_info.value.__cause__, OperationalError)

    @pytest.mark.asyncio
    async def test_isolated_failure_degrades(self, session_factory, settings, seeded):
        settings.isolate_source_failures = True
        builder = create_builder(session_factory, settings)
        with patch.object(RecordRepository, "list_disclosure_responses", side_effect=_db_error()):
            profile = await builder.build_profile(seeded)
        assert profile.degraded is True
        assert profile.degraded_sections == [SectionName.DISCLOSURES]
        assert profile.disclosures.recent_responses == []
        assert profile.notes.total_notes_count == 6
        assert profile.section_meta[SectionName.DISCLOSURES].has_data is False

    @pytest.mark.asyncio
    async def test_isolated_timestamp_failure(self, session_factory, settings, seeded):
        settings.isolate_source_failures = True
        builder = create_builder(session_factory, settings)
        await builder.build_profile(seeded)  # create the snapshot first
        with patch.object(RecordRepository, "latest_timestamps", side_effect=_db_error()):
            profile = await builder.build_profile(seeded)
        dossier_at = builder._dossiers.get_current(seeded).created_at
        assert profile.degraded is True
        assert profile.degraded_sections == []
        assert profile.section_meta[SectionName.TASKS].last_updated_at == dossier_at
        assert profile.section_meta[SectionName.NOTES].last_updated_at == profile.generated_at

    @pytest.mark.asyncio
    async def test_programming_errors_are_not_isolated(self, session_factory, settings, seeded):
        settings.isolate_source_failures = True
        builder = create_builder(session_factory, settings)
        with patch.object(RecordRepository, "list_na_tasks", side_effect=KeyError("boom")):
            with pytest.raises(KeyError):
                await builder.build_profile(seeded)

    @pytest.mark.asyncio
    async def test_timeout_is_source_unavailable(self, session_factory, settings, seeded):
        settings.fetch_timeout_seconds = 0.05

        def slow(*args, **kwargs):
            time.sleep(0.3)
            return []

        builder = create_builder(session_factory, settings)
        with patch.object(RecordRepository, "list_completed_check_ins", side_effect=slow):
            with pytest.raises(SourceUnavailable, match="Timed out"):
                await builder.build_section(seeded, "notes")


class TestBuildSection:
    @pytest.mark.asyncio
    async def test_supplemental_section_runs_only_its_aggregator(self, seeded):
        repo = MagicMock(spec=RecordRepository)
        repo.list_assessment_responses.return_value = []
        repo.list_na_tasks.return_value = []
        dossiers = MagicMock(spec=DossierProvider)
        builder = CompanyIntelligenceBuilder(repo, dossiers)
        section = await builder.build_section(seeded, "naFlags")
        assert isinstance(section, NAFlagsSection)
        repo.list_disclosure_responses.assert_not_called()
        repo.list_assessment_notes.assert_not_called()
        dossiers.get_current.assert_not_called()

    @pytest.mark.asyncio
    async def test_base_section_from_snapshot(self, builder, seeded):
        section = await builder.build_section(seeded, SectionName.FINANCIALS)
        assert isinstance(section, FinancialsSection)
        assert section.annual_revenue == 1_500_000

    @pytest.mark.asyncio
    async def test_invalid_section_before_any_io(self):
        repo = MagicMock(spec=RecordRepository)
        dossiers = MagicMock(spec=DossierProvider)
        builder = CompanyIntelligenceBuilder(repo, dossiers)
        with pytest.raises(InvalidSection):
            await builder.build_section("acme", "weather")
        assert repo.method_calls == []
        assert dossiers.method_calls == []


class TestRebuildCoordination:
    @pytest.mark.asyncio
    async def test_concurrent_builds_rebuild_once(self, builder, session_factory, seeded):
        profiles = await asyncio.gather(*(builder.build_profile(seeded) for _ in range(3)))
        assert {p.dossier_version for p in profiles} == {1}
        assert _dossier_count(session_factory, seeded) == 1

    @pytest.mark.asyncio
    async def test_conflict_resolved_by_reading_winner(self):
        snapshot = DossierSnapshot(
            company_id="acme", version=3, build_reason="scheduled", created_at=utcnow(), content=DossierContent())
        dossiers = MagicMock(spec=DossierProvider)
        dossiers.get_current.side_effect = [None, None, snapshot]
        dossiers.rebuild.side_effect = RebuildConflict("version taken")
        repo = MagicMock(spec=RecordRepository)
        repo.latest_timestamps.return_value = SectionTimestamps()
        builder = CompanyIntelligenceBuilder(repo, dossiers)
        section = await builder.build_section("acme", "identity")
        assert section == snapshot.content.identity
        assert dossiers.rebuild.call_count == 1

    @pytest.mark.asyncio
    async def test_explicit_rebuild_bumps_version(self, builder, seeded):
        await builder.build_profile(seeded)
        snapshot = await builder.rebuild_dossier(seeded, "task_completed")
        assert snapshot.version == 2
        profile = await builder.build_profile(seeded)
        assert profile.dossier_version == 2

    @pytest.mark.asyncio
    async def test_locks_dropped_for_unknown_companies(self, builder):
        for i in range(20):
            with pytest.raises(SourceUnavailable):
                await builder.build_profile(f"missing-{i}")
        assert builder._rebuild_locks == {}

    @pytest.mark.asyncio
    async def test_lock_shared_while_contended_then_dropped(self, builder, seeded):
        await asyncio.gather(
            builder.rebuild_dossier(seeded), builder.rebuild_dossier(seeded), builder.build_profile(seeded))
        assert builder._rebuild_locks == {}
        assert (await builder.build_profile(seeded)).dossier_version in (2, 3)

    @pytest.mark.asyncio
    async def test_lock_released_after_cancelled_waiter(self, builder, seeded):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def hold():
            async with builder._company_lock(seeded):
                entered.set()
                await release.wait()

        holder = asyncio.create_task(hold())
        await entered.wait()
        waiter = asyncio.create_task(builder.rebuild_dossier(seeded))
        await asyncio.sleep(0)
        assert builder._rebuild_locks[seeded][1] == 2
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        release.set()
        await holder
        assert builder._rebuild_locks == {}


class TestFetchPool:
    @pytest.mark.asyncio
    async def test_reads_run_on_builder_pool(self, builder, seeded):
        seen = []

        def record(company_id):
            seen.append(threading.current_thread().name)
            return []

        with patch.object(RecordRepository, "list_completed_check_ins", side_effect=record):
            await builder.build_section(seeded, "notes")
        assert seen and seen[0].startswith("intel-fetch")

    @pytest.mark.asyncio
    async def test_pool_size_from_settings(self, session_factory, settings):
        settings.fetch_workers = 2
        builder = create_builder(session_factory, settings)
        try:
            assert builder._executor._max_workers == 2
        finally:
            builder.shutdown()


class TestTaskNoteOrdering:
    @pytest.mark.asyncio
    async def test_default_keeps_legacy_first(self, builder, seeded):
        notes = await builder.build_section(seeded, "notes")
        assert [n.source for n in notes.task_completion_notes] == ["legacy", "legacy", "task_note"]

    @pytest.mark.asyncio
    async def test_sort_setting_orders_by_time(self, session_factory, settings, seeded):
        settings.sort_task_notes = True
        builder = create_builder(session_factory, settings)
        notes = await builder.build_section(seeded, "notes")
        assert notes.task_completion_notes[0].source == "task_note"
