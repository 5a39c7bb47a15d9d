from __future__ import annotations

import logging
import time
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError

from risk_intel.db.repo import EventsRepo
from risk_intel.errors import STORE_002_WRITE_FAILED, PersistenceError
from risk_intel.services.relevance_analyzer import RelevanceJudgement
from risk_intel.utils.clock import utc_now_iso


logger = logging.getLogger("risk_intel.publisher")


def alerts_for(judgement: RelevanceJudgement, min_confidence: float) -> list[dict[str, Any]]:
    """One alert row per matched risk code, or none when the judgement does not clear the gate."""
    if not judgement.relevant or judgement.confidence < float(min_confidence):
        return []
    return [
        {
            "risk_code": code,
            "confidence_score": float(judgement.confidence),
            "suggested_likelihood_delta": int(judgement.likelihood_delta),
            "reasoning": judgement.reasoning,
            "impact_assessment": judgement.impact_assessment,
            "suggested_controls": list(judgement.suggested_controls),
            "judgement_source": judgement.source,
        }
        for code in dict.fromkeys(judgement.matched_risk_codes)
    ]


class AlertPublisher:
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

    def publish(
        self,
        organization_id: str,
        event: dict[str, Any],
        judgement: RelevanceJudgement,
        min_confidence: float,
    ) -> int:
        """
        Create missing alerts for the event and stamp it analyzed, atomically.

        The write is retried once; a second failure raises PersistenceError and
        leaves `analyzed_at` NULL so the event stays in the backlog.
        """
        rows = alerts_for(judgement, min_confidence)
        event_id = int(event["id"])
        last_error: Exception | None = None
        for attempt in (1, 2):
            try:
                return self.repo.publish(organization_id, event_id, rows, analyzed_at=self._now())
            except SQLAlchemyError as e:
                last_error = e
                if attempt == 1:
                    logger.warning("publish failed, retrying event_id=%s err=%s", event_id, e)
                    self._sleep(self.retry_backoff_seconds)
        logger.error("publish failed event_id=%s err=%s", event_id, last_error)
        raise PersistenceError(STORE_002_WRITE_FAILED, f"event_id={event_id} {type(last_error).__name__}: {last_error}")
