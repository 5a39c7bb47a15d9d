from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Protocol

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session, sessionmaker

from risk_intel.db.models import RegisterRisk


@dataclass(frozen=True)
class RiskSummary:
    risk_code: str
    risk_title: str
    category: str = ""


class RiskRegister(Protocol):
    def get_active_risks(self, organization_id: str) -> list[RiskSummary]: ...


class SqlRiskRegister:
    """Reads the register's `risks` table. Never writes to it."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._Session = session_factory

    def get_active_risks(self, organization_id: str) -> list[RiskSummary]:
        with self._Session() as s:
            rows = s.execute(
                select(RegisterRisk)
                .where(
                    and_(
                        RegisterRisk.organization_id == organization_id,
                        func.lower(RegisterRisk.status) == "active",
                    )
                )
                .order_by(RegisterRisk.risk_code.asc())
            ).scalars().all()
            return [RiskSummary(str(r.risk_code), str(r.risk_title), str(r.category or "")) for r in rows]


class StaticRiskRegister:
    def __init__(self, risks_by_org: dict[str, Iterable[RiskSummary]] | None = None):
        self._risks = {org: list(rows) for org, rows in (risks_by_org or {}).items()}

    def get_active_risks(self, organization_id: str) -> list[RiskSummary]:
        return list(self._risks.get(organization_id, []))
