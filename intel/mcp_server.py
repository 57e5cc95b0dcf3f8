from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from intel.db import current_db_path, get_session_factory, init_db
from intel.errors import IntelligenceError
from intel.intelligence import CompanyIntelligenceBuilder, create_builder
from intel.schemas import BASE_SECTIONS, SUPPLEMENTAL_SECTIONS, SectionName

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@dataclass
class IntelContext:
    builder: CompanyIntelligenceBuilder


@asynccontextmanager
async def intel_lifespan(server: FastMCP) -> AsyncIterator[IntelContext]:
    init_db()
    builder = create_builder(get_session_factory())
    try:
        yield IntelContext(builder=builder)
    finally:
        builder.shutdown()


mcp = FastMCP(
    "Company Intelligence",
    instructions=(
        "Company Intelligence exposes one read-only profile per company, split into twelve sections "
        "each carrying freshness and completeness metadata. "
        "Start with list_sections(), then get_company_intelligence(company_id) for the whole profile, "
        "or get_intelligence_section(company_id, name) when only one section is needed."
    ),
    lifespan=intel_lifespan,
    json_response=True,
)


def _builder(ctx: Context) -> CompanyIntelligenceBuilder:
    return ctx.request_context.lifespan_context.builder


def _error(exc: IntelligenceError) -> dict:
    return {"error": exc.message, **({"details": exc.details} if exc.details else {})}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("intel://overview")
def intel_overview() -> str:
    """Overview of the intelligence profile: sections, grades, and workflow."""
    db_path = current_db_path()
    return json.dumps({
        "system": "Company Intelligence: aggregated read-model per company",
        "database": str(db_path) if db_path else None,
        "base_sections": [s.value for s in BASE_SECTIONS],
        "supplemental_sections": [s.value for s in SUPPLEMENTAL_SECTIONS],
        "section_meta": {
            "last_updated_at": "When the underlying data for the section last changed.",
            "has_data": "Whether the section holds anything at all.",
            "completeness": "none | minimal | partial | complete",
        },
        "workflow": [
            "1. list_sections() to see every section name.",
            "2. get_company_intelligence(company_id) for the full profile.",
            "3. get_company_intelligence(company_id, sections='notes,na_flags') to fetch only some supplemental sections.",
            "4. get_intelligence_section(company_id, section_name) for one section.",
        ],
        "degraded": "True when a supplemental source failed and its empty default was substituted.",
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def list_sections() -> dict:
    """List the twelve profile section names."""
    return {
        "sections": [s.value for s in SectionName],
        "supplemental": [s.value for s in SUPPLEMENTAL_SECTIONS],
    }


@mcp.tool()
async def get_company_intelligence(company_id: str, ctx: Context, sections: str | None = None) -> dict:
    """Build the intelligence profile for a company.

    Args:
        company_id: Company identifier.
        sections: Optional comma-separated subset (e.g. "notes,na_flags").
                  Supplemental sections not listed are returned empty.
    """
    subset = [s.strip() for s in sections.split(",") if s.strip()] if sections else None
    try:
        profile = await _builder(ctx).build_profile(company_id, subset)
    except IntelligenceError as exc:
        return _error(exc)
    return profile.model_dump(mode="json")


@mcp.tool()
async def get_intelligence_section(company_id: str, section_name: str, ctx: Context) -> dict:
    """Build a single section of a company's intelligence profile.

    Args:
        company_id: Company identifier.
        section_name: One of the names from list_sections(); camelCase is accepted.
    """
    try:
        name = SectionName.parse(section_name)
        content = await _builder(ctx).build_section(company_id, name)
    except IntelligenceError as exc:
        return _error(exc)
    return {"section": name.value, "content": content.model_dump(mode="json")}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Company Intelligence MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
