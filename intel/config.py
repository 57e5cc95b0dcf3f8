from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field


def _resolve_home() -> Path:
    override = os.getenv("INTEL_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path(__file__).parent / "data"


def _resolve_database_path() -> Path:
    override = os.getenv("INTEL_DATABASE_PATH", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return _resolve_home() / "intel.db"


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str) -> float | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        return default
    return value if value > 0 else default


BRI_CATEGORIES: tuple[str, ...] = (
    "FINANCIAL", "TRANSFERABILITY", "OPERATIONAL", "MARKET", "LEGAL_TAX", "PERSONAL",
)


class SectionLimits(BaseModel):
    recent_disclosures: int = 20
    material_changes: int = 10
    high_change_threshold: int = 2
    heavily_na_ratio: float = 0.5
    assessment_notes: int = 30
    task_notes: int = 20
    check_ins: int = 12


class Settings(BaseModel):
    home: Path = Field(default_factory=_resolve_home)
    database_path: Path = Field(default_factory=_resolve_database_path)

    categories: tuple[str, ...] = BRI_CATEGORIES
    limits: SectionLimits = Field(default_factory=SectionLimits)

    # Deadline for each store read; None disables it. A read that misses it
    # keeps running on its worker until the query returns, holding that worker.
    fetch_timeout_seconds: float | None = Field(default_factory=lambda: _env_float("INTEL_FETCH_TIMEOUT"))
    # Worker threads the builder owns for store reads.
    fetch_workers: int = Field(default_factory=lambda: _env_int("INTEL_FETCH_WORKERS", 8))
    # Substitute empty sections for failed sources instead of failing the build.
    isolate_source_failures: bool = Field(
        default_factory=lambda: _env_flag("INTEL_ISOLATE_SOURCE_FAILURES"))
    # Sort merged legacy + task-note completion notes by time before capping.
    sort_task_notes: bool = Field(default_factory=lambda: _env_flag("INTEL_SORT_TASK_NOTES"))

    def ensure_directories(self) -> None:
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.database_path}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
