from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

# Logical table name -> env var holding the store's table id
TABLE_ENV_VARS: dict[str, str] = {
    "contacts": "AIRTABLE_CONTACTS_TABLE_ID",
    "members": "AIRTABLE_MEMBERS_TABLE_ID",
    "participation": "AIRTABLE_PARTICIPATION_TABLE_ID",
    "cohorts": "AIRTABLE_COHORTS_TABLE_ID",
    "initiatives": "AIRTABLE_INITIATIVES_TABLE_ID",
    "teams": "AIRTABLE_TEAMS_TABLE_ID",
    "submissions": "AIRTABLE_SUBMISSIONS_TABLE_ID",
    "invites": "AIRTABLE_INVITES_TABLE_ID",
}

DEFAULT_DB_PATH = Path(__file__).parent / "data" / "roster.db"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name, "")
    if not raw.strip():
        return list(default)
    return [part.strip() for part in raw.split(",") if part.strip()]


def _table_ids() -> dict[str, str]:
    return {name: os.getenv(env, "").strip() or name for name, env in TABLE_ENV_VARS.items()}


class Settings(BaseModel):
    backend: str = Field(default_factory=lambda: os.getenv("ROSTER_BACKEND", "airtable").strip().lower())

    airtable_api_key: str = Field(default_factory=lambda: os.getenv("AIRTABLE_API_KEY", ""))
    airtable_base_id: str = Field(default_factory=lambda: os.getenv("AIRTABLE_BASE_ID", ""))
    airtable_api_url: str = Field(
        default_factory=lambda: os.getenv("AIRTABLE_API_URL", "https://api.airtable.com/v0")
    )
    tables: dict[str, str] = Field(default_factory=_table_ids)

    database_path: Path = Field(
        default_factory=lambda: Path(os.getenv("ROSTER_DB_PATH", "") or DEFAULT_DB_PATH)
    )

    request_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("ROSTER_REQUEST_TIMEOUT", "15.0"))
    )
    max_retries: int = Field(default_factory=lambda: int(os.getenv("ROSTER_MAX_RETRIES", "3")))
    backoff_seconds: float = Field(default_factory=lambda: float(os.getenv("ROSTER_BACKOFF_SECONDS", "1.0")))
    max_backoff_seconds: float = Field(
        default_factory=lambda: float(os.getenv("ROSTER_MAX_BACKOFF_SECONDS", "16.0"))
    )

    fail_open: bool = Field(default_factory=lambda: _env_bool("ROSTER_FAIL_OPEN", True))
    exempt_initiatives: list[str] = Field(
        default_factory=lambda: _env_list("ROSTER_EXEMPT_INITIATIVES", ["Xperiment"])
    )
    member_batch_size: int = Field(default_factory=lambda: int(os.getenv("ROSTER_MEMBER_BATCH_SIZE", "10")))

    invalidation_url: str = Field(default_factory=lambda: os.getenv("ROSTER_INVALIDATION_URL", ""))
    invalidation_token: str = Field(default_factory=lambda: os.getenv("ROSTER_INVALIDATION_TOKEN", ""))

    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
