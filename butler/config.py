"""Runtime configuration read from the environment (and .env via python-dotenv)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from butler.engine.aggregator import (
    GLOBAL_CAP,
    MAX_FOLDERS,
    MAX_PER_FOLDER,
    MIN_PER_FOLDER,
    PAGE_SIZE,
    ScanLimits,
)
from butler.engine.orchestrator import DUPLICATES_FOLDER
from butler.mail.owa_client import DEFAULT_BASE_URL, DEFAULT_TIMEOUT_SECONDS
from butler.triage.types import DEFAULT_LABELS

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    """Integer env var; invalid or too-small values fall back to ``default``."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("Invalid %s %r; defaulting to %d", name, raw, default)
        return default
    if value < minimum:
        logger.warning("%s must be at least %d (got %d); defaulting to %d", name, minimum, value, default)
        return default
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name, "")
    items = tuple(part.strip() for part in raw.split(",") if part.strip())
    return items or default


@dataclass(frozen=True)
class ButlerConfig:
    """Everything the CLI needs to wire up a run."""

    owa_base_url: str = DEFAULT_BASE_URL
    request_timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    limits: ScanLimits = field(default_factory=ScanLimits)
    duplicates_folder: str = DUPLICATES_FOLDER
    include_subfolders: bool = True
    db_path: Path = field(default_factory=lambda: Path("data/butler.db"))
    static_token: str | None = None
    triage_labels: tuple[str, ...] = DEFAULT_LABELS
    triage_max_items: int = 50
    anthropic_api_key: str | None = None

    @classmethod
    def from_env(cls) -> ButlerConfig:
        """Build ButlerConfig from environment variables."""
        return cls(
            owa_base_url=os.environ.get("BUTLER_OWA_BASE_URL", "").strip() or DEFAULT_BASE_URL,
            request_timeout_seconds=_env_int(
                "BUTLER_REQUEST_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS
            ),
            limits=ScanLimits(
                global_cap=_env_int("BUTLER_MAX_EMAILS", GLOBAL_CAP),
                max_folders=_env_int("BUTLER_MAX_FOLDERS", MAX_FOLDERS),
                min_per_folder=_env_int("BUTLER_MIN_PER_FOLDER", MIN_PER_FOLDER),
                max_per_folder=_env_int("BUTLER_MAX_PER_FOLDER", MAX_PER_FOLDER),
                page_size=_env_int("BUTLER_PAGE_SIZE", PAGE_SIZE),
            ),
            duplicates_folder=os.environ.get("BUTLER_DUPLICATES_FOLDER", "").strip()
            or DUPLICATES_FOLDER,
            include_subfolders=_env_bool("BUTLER_INCLUDE_SUBFOLDERS", True),
            db_path=Path(os.environ.get("BUTLER_DB_PATH", "").strip() or "data/butler.db"),
            static_token=os.environ.get("BUTLER_TOKEN", "").strip() or None,
            triage_labels=_env_list("BUTLER_TRIAGE_LABELS", DEFAULT_LABELS),
            triage_max_items=_env_int("BUTLER_TRIAGE_MAX_ITEMS", 50),
            anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY") or None,
        )
