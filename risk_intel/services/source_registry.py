from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from risk_intel.db.repo import SourcesRepo


DEFAULT_SOURCES_FILE = Path(__file__).resolve().parents[1] / "data" / "default_sources.yaml"

logger = logging.getLogger("risk_intel.registry")


class SourceRegistryError(RuntimeError):
    pass


def _normalize_source(raw: dict[str, Any], *, origin: str) -> dict[str, Any]:
    url = str(raw.get("url") or "").strip()
    return {
        "id": raw.get("id") if isinstance(raw.get("id"), int) else None,
        "name": str(raw.get("name") or url).strip(),
        "url": url,
        "category": str(raw.get("category") or "other").strip().lower(),
        "country": str(raw.get("country") or "").strip(),
        "active": bool(raw.get("active", True)),
        "origin": origin,
    }


@lru_cache(maxsize=4)
def _load_defaults_cached(path_str: str) -> tuple[dict[str, Any], ...]:
    path = Path(path_str)
    obj = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(obj, dict) or not isinstance(obj.get("sources"), list):
        raise SourceRegistryError(f"invalid default sources file: {path}")
    out = []
    for raw in obj["sources"]:
        if not isinstance(raw, dict) or not str(raw.get("url") or "").strip():
            raise SourceRegistryError(f"source without url in {path}: {raw!r}")
        out.append(_normalize_source(raw, origin="default"))
    return tuple(out)


def load_default_sources(path: Path | None = None) -> list[dict[str, Any]]:
    return [dict(x) for x in _load_defaults_cached(str(path or DEFAULT_SOURCES_FILE))]


class SourceRegistry:
    """
    Effective feed list for one organization.

    Global rows (organization_id NULL) replace the shipped defaults when any exist.
    Organization rows then override by URL: they add sources, and an inactive org
    row switches a global source off for that organization only.
    """

    def __init__(self, repo: SourcesRepo, *, defaults_path: Path | None = None) -> None:
        self.repo = repo
        self.defaults_path = defaults_path

    def global_sources(self) -> list[dict[str, Any]]:
        rows = self.repo.list_sources(None)
        if rows:
            return [_normalize_source(r, origin="global") for r in rows]
        return load_default_sources(self.defaults_path)

    def sources_for(self, organization_id: str, *, include_inactive: bool = False) -> list[dict[str, Any]]:
        merged: dict[str, dict[str, Any]] = {}
        for src in self.global_sources():
            merged[src["url"]] = src
        for row in self.repo.list_sources(organization_id):
            src = _normalize_source(row, origin="organization")
            merged[src["url"]] = src
        out = list(merged.values())
        if not include_inactive:
            out = [s for s in out if s["active"]]
        return out

    def active_sources(self, organization_id: str, *, max_feeds: int = 0) -> list[dict[str, Any]]:
        out = self.sources_for(organization_id)
        if max_feeds and len(out) > max_feeds:
            logger.info("capping feeds org=%s total=%d cap=%d", organization_id, len(out), max_feeds)
            out = out[:max_feeds]
        return out
