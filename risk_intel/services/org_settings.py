from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from risk_intel.config import PipelineSettings, normalize_scanner_mode
from risk_intel.db.repo import SourcesRepo
from risk_intel.errors import InvalidRequestError
from risk_intel.utils.clock import utc_now_iso


@dataclass(frozen=True)
class OrgConfig:
    organization_id: str
    scanner_mode: str
    min_confidence_threshold: float
    lookback_days: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def resolve_org_config(repo: SourcesRepo, organization_id: str, defaults: PipelineSettings) -> OrgConfig:
    row = repo.get_settings(organization_id) or {}
    return OrgConfig(
        organization_id=organization_id,
        scanner_mode=normalize_scanner_mode(row.get("scanner_mode"), defaults.default_scanner_mode),
        min_confidence_threshold=float(row.get("min_confidence_threshold", defaults.default_min_confidence)),
        lookback_days=int(row.get("lookback_days", defaults.default_lookback_days)),
    )


def update_org_config(
    repo: SourcesRepo, organization_id: str, defaults: PipelineSettings, changes: dict[str, Any]
) -> OrgConfig:
    current = resolve_org_config(repo, organization_id, defaults)
    mode = current.scanner_mode
    if changes.get("scanner_mode") is not None:
        mode = normalize_scanner_mode(changes["scanner_mode"], "")
        if not mode:
            raise InvalidRequestError(f"scanner_mode must be one of ai, keyword-only: {changes['scanner_mode']!r}")
    threshold = current.min_confidence_threshold
    if changes.get("min_confidence_threshold") is not None:
        try:
            threshold = float(changes["min_confidence_threshold"])
        except (TypeError, ValueError) as e:
            raise InvalidRequestError("min_confidence_threshold must be a number") from e
        if not 0.0 <= threshold <= 1.0:
            raise InvalidRequestError("min_confidence_threshold must be within 0..1")
    lookback = current.lookback_days
    if changes.get("lookback_days") is not None:
        try:
            lookback = int(changes["lookback_days"])
        except (TypeError, ValueError) as e:
            raise InvalidRequestError("lookback_days must be an integer") from e
        if lookback < 1:
            raise InvalidRequestError("lookback_days must be >= 1")
    repo.upsert_settings(
        organization_id,
        scanner_mode=mode,
        min_confidence_threshold=threshold,
        lookback_days=lookback,
        now=utc_now_iso(),
    )
    return resolve_org_config(repo, organization_id, defaults)
