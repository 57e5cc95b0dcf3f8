from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel

from intel.db import get_session_factory, init_db
from intel.dossier import REBUILD_REASONS
from intel.errors import IntelligenceError, InvalidSection, RebuildConflict
from intel.intelligence import CompanyIntelligenceBuilder, create_builder
from intel.schemas import CompanyIntelligence, DossierSnapshot, SectionName

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.builder = create_builder(get_session_factory())
    try:
        yield
    finally:
        app.state.builder.shutdown()


app = FastAPI(
    title="Company Intelligence",
    version="0.1.0",
    description=(
        "Read-only intelligence profiles for companies: nine dossier sections plus "
        "NA flags, disclosures and notes, each with freshness and completeness metadata. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Intelligence", "description": "Full profiles, section subsets and single sections."},
        {"name": "Dossier", "description": "Rebuild the persisted dossier snapshot."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def get_builder(request: Request) -> CompanyIntelligenceBuilder:
    return request.app.state.builder


def _http_error(exc: IntelligenceError) -> HTTPException:
    if isinstance(exc, InvalidSection):
        return HTTPException(400, {"message": exc.message, **exc.details})
    if isinstance(exc, RebuildConflict):
        return HTTPException(409, exc.message)
    log.warning("Intelligence unavailable: %s", exc.message)
    return HTTPException(503, f"Intelligence temporarily unavailable: {exc.message}")


def _split_sections(raw: str | None) -> list[str] | None:
    if raw is None or not raw.strip():
        return None
    return [part.strip() for part in raw.split(",") if part.strip()]


# ---------------------------------------------------------------------------
# Routes: Intelligence
# ---------------------------------------------------------------------------


class SectionsOut(BaseModel):
    sections: list[SectionName]
    supplemental: list[SectionName]


@app.get("/api/sections", response_model=SectionsOut,
         tags=["Intelligence"], summary="List the twelve profile section names")
async def list_sections():
    return SectionsOut(
        sections=list(SectionName),
        supplemental=[s for s in SectionName if s.is_supplemental],
    )


@app.get("/api/companies/{company_id}/intelligence", response_model=CompanyIntelligence,
         tags=["Intelligence"], summary="Build the intelligence profile for a company")
async def get_intelligence(
    company_id: str,
    sections: str | None = Query(None, description="Comma-separated subset of sections to fetch"),
    builder: CompanyIntelligenceBuilder = Depends(get_builder),
):
    try:
        return await builder.build_profile(company_id, _split_sections(sections))
    except IntelligenceError as exc:
        raise _http_error(exc) from exc


@app.get("/api/companies/{company_id}/intelligence/{section_name}",
         tags=["Intelligence"], summary="Build a single intelligence section")
async def get_intelligence_section(
    company_id: str, section_name: str,
    builder: CompanyIntelligenceBuilder = Depends(get_builder),
):
    try:
        name = SectionName.parse(section_name)
        content = await builder.build_section(company_id, name)
    except IntelligenceError as exc:
        raise _http_error(exc) from exc
    return {"section": name.value, "content": content.model_dump(mode="json")}


# ---------------------------------------------------------------------------
# Routes: Dossier
# ---------------------------------------------------------------------------


@app.post("/api/companies/{company_id}/dossier/rebuild", response_model=DossierSnapshot,
          tags=["Dossier"], summary="Rebuild and persist a new dossier snapshot")
async def rebuild_dossier(
    company_id: str,
    reason: str = Query("manual_rebuild"),
    builder: CompanyIntelligenceBuilder = Depends(get_builder),
):
    if reason not in REBUILD_REASONS:
        raise HTTPException(400, f"reason must be one of {list(REBUILD_REASONS)}")
    try:
        return await builder.rebuild_dossier(company_id, reason)
    except IntelligenceError as exc:
        raise _http_error(exc) from exc


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("intel.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
