from __future__ import annotations

import logging
import os
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from risk_intel.db.base import Base
from risk_intel.db.config import get_db_settings, redact_database_url
from risk_intel.db.engine import make_engine
from risk_intel.db import models  # noqa: F401
from risk_intel.db.repo import EventsRepo, RunsRepo, SourcesRepo
from risk_intel.errors import PIPE_STORE_UNREACHABLE, PipelineFatalError


REQUIRED_TABLES = (
    "feed_sources",
    "keyword_entries",
    "org_settings",
    "external_events",
    "intelligence_alerts",
    "scan_runs",
    "source_fetch_events",
    "risks",
)

_PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _sqlite_path_from_url(url: str) -> Path | None:
    try:
        parsed = make_url(url)
    except Exception:
        return None
    if not parsed.drivername.startswith("sqlite"):
        return None
    db_name = parsed.database or ""
    if not db_name or db_name == ":memory:":
        return None
    return Path(db_name)


class IntelDatabase:
    """
    Engine, session factory and repositories for the event/alert store.

    `ensure_schema()` upgrades a fresh database through Alembic; when the package is
    installed without its migration scripts it creates the tables from metadata.
    """

    def __init__(self, database_url: str | None = None, *, auto_init: bool = True) -> None:
        db_settings = get_db_settings()
        self.database_url = (database_url or db_settings.database_url).strip()
        db_path = _sqlite_path_from_url(self.database_url)
        if db_path is not None:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine: Engine = make_engine(self.database_url, extra_options={"echo": db_settings.echo_sql})
        self.session_factory: sessionmaker[Session] = sessionmaker(
            bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False
        )
        self.sources = SourcesRepo(self.session_factory)
        self.events = EventsRepo(self.session_factory)
        self.runs = RunsRepo(self.session_factory)
        self._logger = logging.getLogger("risk_intel.db")
        if auto_init:
            self.ensure_schema()

    def _run_alembic_upgrade(self) -> bool:
        alembic_ini = _PROJECT_ROOT / "alembic.ini"
        script_location = _PROJECT_ROOT / "alembic"
        if not alembic_ini.exists() or not script_location.exists():
            return False
        cfg = Config(str(alembic_ini))
        cfg.set_main_option("script_location", str(script_location))
        cfg.set_main_option("sqlalchemy.url", self.database_url)
        prev = os.environ.get("DATABASE_URL")
        try:
            os.environ["DATABASE_URL"] = self.database_url
            command.upgrade(cfg, "head")
        finally:
            if prev is None:
                os.environ.pop("DATABASE_URL", None)
            else:
                os.environ["DATABASE_URL"] = prev
        return True

    def ensure_schema(self) -> None:
        self.ping()
        insp = inspect(self.engine)
        missing = [name for name in REQUIRED_TABLES if not insp.has_table(name)]
        if not missing:
            return
        try:
            if not self._run_alembic_upgrade():
                self._logger.info("alembic config not found; creating tables from metadata")
                Base.metadata.create_all(self.engine)
            insp = inspect(self.engine)
            still_missing = [name for name in REQUIRED_TABLES if not insp.has_table(name)]
            if still_missing:
                raise RuntimeError(f"missing tables after migration: {still_missing}")
        except Exception as e:
            raise RuntimeError(
                "Database schema is not ready; run `alembic upgrade head` "
                f"(url={redact_database_url(self.database_url)}): {e}"
            ) from e

    def ping(self) -> None:
        try:
            with self.engine.connect() as conn:
                conn.exec_driver_sql("SELECT 1")
        except SQLAlchemyError as e:
            raise PipelineFatalError(
                PIPE_STORE_UNREACHABLE, f"url={redact_database_url(self.database_url)} error={e}"
            ) from e

    def observability_info(self) -> dict[str, str]:
        backend = "postgresql" if self.database_url.lower().startswith("postgresql") else "sqlite"
        return {
            "db_backend": backend,
            "db_url": redact_database_url(self.database_url),
        }

    def dispose(self) -> None:
        self.engine.dispose()
