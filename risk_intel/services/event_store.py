from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from risk_intel.core.keywords import ClassifiedItem
from risk_intel.db.repo import EventsRepo
from risk_intel.errors import (
    PIPE_STORE_UNREACHABLE,
    STORE_001_DUPLICATE,
    STORE_002_WRITE_FAILED,
    PersistenceError,
    PipelineFatalError,
    StoreConflictError,
)
from risk_intel.utils.clock import utc_now_iso


STORED = "stored"
DUPLICATE = "duplicate"
FILTERED = "filtered"
ERROR = "error"

logger = logging.getLogger("risk_intel.store")


@dataclass(frozen=True)
class StoreOutcome:
    status: str
    event_id: int | None = None
    reason: str = ""


class EventStoreGateway:
    """Dedup-then-insert for classified feed items, one organization at a time."""

    def __init__(
        self,
        repo: EventsRepo,
        *,
        retry_backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.repo = repo
        self.retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep
        self._now = now

    def _insert(self, organization_id: str, item: ClassifiedItem) -> int:
        try:
            return self.repo.insert_event(organization_id, item.to_event_fields(), now=self._now())
        except IntegrityError as e:
            raise StoreConflictError(STORE_001_DUPLICATE, item.source_url) from e
        except SQLAlchemyError as e:
            raise PersistenceError(STORE_002_WRITE_FAILED, f"{type(e).__name__}: {e}") from e

    def store_if_new(self, organization_id: str, item: ClassifiedItem) -> StoreOutcome:
        if item.filter_reason:
            return StoreOutcome(FILTERED, reason=item.filter_reason)
        if not item.source_url:
            return StoreOutcome(FILTERED, reason="no_link")
        try:
            existing = self.repo.find_by_url(organization_id, item.source_url)
        except OperationalError as e:
            raise PipelineFatalError(PIPE_STORE_UNREACHABLE, str(e)) from e
        if existing is not None:
            return StoreOutcome(DUPLICATE, event_id=int(existing["id"]))

        for attempt in (1, 2):
            try:
                return StoreOutcome(STORED, event_id=self._insert(organization_id, item))
            except StoreConflictError:
                # an overlapping run inserted the same URL between lookup and insert
                return StoreOutcome(DUPLICATE)
            except PersistenceError as e:
                if attempt == 1:
                    logger.warning("event insert failed, retrying url=%s err=%s", item.source_url, e)
                    self._sleep(self.retry_backoff_seconds)
                    continue
                logger.error("event insert failed url=%s err=%s", item.source_url, e)
                return StoreOutcome(ERROR, reason=str(e))
        return StoreOutcome(ERROR)
