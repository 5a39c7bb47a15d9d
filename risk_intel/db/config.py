from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.engine import make_url


DEFAULT_SQLITE_PATH = Path("data") / "risk_intel.db"
DEFAULT_DATABASE_URL = f"sqlite:///{DEFAULT_SQLITE_PATH.as_posix()}"


@dataclass(frozen=True)
class DBSettings:
    database_url: str
    echo_sql: bool


def get_db_settings() -> DBSettings:
    database_url = os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL).strip() or DEFAULT_DATABASE_URL
    echo_sql = str(os.environ.get("DB_ECHO_SQL", "")).strip().lower() in {"1", "true", "yes", "on"}
    return DBSettings(database_url=database_url, echo_sql=echo_sql)


def redact_database_url(url: str) -> str:
    raw = (url or "").strip()
    if not raw:
        return ""
    try:
        return make_url(raw).render_as_string(hide_password=True)
    except Exception:
        return raw
