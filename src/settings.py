"""Pipeline configuration loaded from the environment (.env supported)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv

DEFAULT_MODEL = "gemini/gemini-2.5-flash"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_BATCH_SIZE = 10  # reasoning calls are slow, keep groups small
CORRELATION_BATCH_SIZE = 50
DEFAULT_MIN_LOG_DAYS = 14


def _parse_allowlist(raw: Optional[str]) -> Optional[Tuple[str, ...]]:
    if not raw:
        return None
    ids = tuple(part.strip() for part in raw.split(",") if part.strip())
    return ids or None


@dataclass(frozen=True)
class PipelineSettings:
    """Operational knobs for the insights pipeline."""

    pipeline_enabled: bool = True
    user_allowlist: Optional[Tuple[str, ...]] = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    batch_size: int = DEFAULT_BATCH_SIZE
    min_log_days: int = DEFAULT_MIN_LOG_DAYS
    model: str = DEFAULT_MODEL
    api_key: Optional[str] = None
    status_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        load_dotenv()
        return cls(
            pipeline_enabled=os.getenv("INSIGHTS_PIPELINE_ENABLED", "true").strip().lower() != "false",
            user_allowlist=_parse_allowlist(os.getenv("INSIGHTS_PIPELINE_USER_ALLOWLIST")),
            timeout_seconds=float(os.getenv("INSIGHTS_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS))),
            batch_size=max(1, int(os.getenv("INSIGHTS_BATCH_SIZE", str(DEFAULT_BATCH_SIZE)))),
            min_log_days=int(os.getenv("INSIGHTS_MIN_LOG_DAYS", str(DEFAULT_MIN_LOG_DAYS))),
            model=os.getenv("INSIGHTS_LLM_MODEL", DEFAULT_MODEL),
            api_key=os.getenv("GOOGLE_API_KEY"),
            status_path=os.getenv("INSIGHTS_STATUS_PATH") or None,
        )


def get_conn_str() -> str:
    """PostgreSQL DSN from POSTGRES_CONNECTION_STRING, else DATABASE_URL.

    A ``postgres://`` scheme is rewritten to ``postgresql://`` for psycopg2.
    """
    load_dotenv()
    url = (os.getenv("POSTGRES_CONNECTION_STRING") or os.getenv("DATABASE_URL") or "").strip()
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url
