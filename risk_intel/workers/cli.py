from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any

from risk_intel.db.database import IntelDatabase
from risk_intel.errors import InvalidRequestError, RiskIntelError
from risk_intel.workers.pipeline import IntelPipeline


USAGE = (
    "Usage: risk-intel "
    "scan|analyze|reset|purge|test-alert|sources|db:upgrade --org ORG [options]\n"
    "  scan        [--deadline SECONDS]\n"
    "  analyze     [--max-batch N] [--deadline SECONDS]\n"
    "  reset       [--event-ids 1,2,3] [--category C] [--since ISO] [--all]\n"
    "  purge       [--scope unanalyzed|all] [--include-alerts]\n"
    "  test-alert  --risk-code CODE\n"
    "  sources     [--include-inactive]\n"
    "  db:upgrade"
)


def _get_opt(argv: list[str], key: str) -> str | None:
    if key not in argv:
        return None
    idx = argv.index(key)
    if idx + 1 >= len(argv):
        return None
    return argv[idx + 1]


def _has_flag(argv: list[str], key: str) -> bool:
    return key in argv


def _float_opt(argv: list[str], key: str) -> float | None:
    raw = _get_opt(argv, key)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise InvalidRequestError(f"{key} must be a number: {raw!r}") from e


def _int_opt(argv: list[str], key: str) -> int | None:
    raw = _get_opt(argv, key)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise InvalidRequestError(f"{key} must be an integer: {raw!r}") from e


def _org(argv: list[str]) -> str:
    org = (_get_opt(argv, "--org") or os.environ.get("RISK_INTEL_ORG", "")).strip()
    if not org:
        raise InvalidRequestError("--org is required")
    return org


def _build_pipeline() -> IntelPipeline:
    return IntelPipeline(IntelDatabase())


def _print(obj: dict[str, Any]) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def cmd_scan(argv: list[str]) -> int:
    out = _build_pipeline().run_full_scan(_org(argv), triggered_by="cli", deadline_seconds=_float_opt(argv, "--deadline"))
    _print({"ok": True, **out})
    return 0


def cmd_analyze(argv: list[str]) -> int:
    out = _build_pipeline().analyze_backlog(
        _org(argv),
        _int_opt(argv, "--max-batch"),
        triggered_by="cli",
        deadline_seconds=_float_opt(argv, "--deadline"),
    )
    _print({"ok": True, **out})
    return 0


def cmd_reset(argv: list[str]) -> int:
    flt: dict[str, Any] = {"all": _has_flag(argv, "--all")}
    ids = _get_opt(argv, "--event-ids")
    if ids is not None:
        flt["event_ids"] = [x.strip() for x in ids.split(",") if x.strip()]
    if _get_opt(argv, "--category"):
        flt["category"] = _get_opt(argv, "--category")
    if _get_opt(argv, "--since"):
        flt["since"] = _get_opt(argv, "--since")
    out = _build_pipeline().reset_analysis(_org(argv), flt, triggered_by="cli")
    _print({"ok": True, **out})
    return 0


def cmd_purge(argv: list[str]) -> int:
    out = _build_pipeline().purge_events(
        _org(argv),
        _get_opt(argv, "--scope") or "unanalyzed",
        include_alerts=_has_flag(argv, "--include-alerts"),
        triggered_by="cli",
    )
    _print({"ok": True, **out})
    return 0


def cmd_test_alert(argv: list[str]) -> int:
    code = _get_opt(argv, "--risk-code")
    if not code:
        raise InvalidRequestError("--risk-code is required")
    out = _build_pipeline().create_test_alert(_org(argv), code, triggered_by="cli")
    _print({"ok": True, **out})
    return 0


def cmd_sources(argv: list[str]) -> int:
    pipeline = _build_pipeline()
    rows = pipeline.registry.sources_for(_org(argv), include_inactive=_has_flag(argv, "--include-inactive"))
    _print({"ok": True, "count": len(rows), "sources": rows})
    return 0


def cmd_db_upgrade(argv: list[str]) -> int:
    db = IntelDatabase(auto_init=False)
    db.ensure_schema()
    _print({"ok": True, **db.observability_info()})
    return 0


COMMANDS = {
    "scan": cmd_scan,
    "analyze": cmd_analyze,
    "reset": cmd_reset,
    "purge": cmd_purge,
    "test-alert": cmd_test_alert,
    "sources": cmd_sources,
    "db:upgrade": cmd_db_upgrade,
}


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )
    if not argv or argv[0] in ("-h", "--help"):
        print(USAGE, file=sys.stderr)
        return 2

    cmd = argv[0]
    handler = COMMANDS.get(cmd)
    if handler is None:
        print(f"Unknown command: {cmd}\n{USAGE}", file=sys.stderr)
        return 2
    try:
        return handler(argv[1:])
    except InvalidRequestError as e:
        _print({"ok": False, "error_code": e.err.code, "error": str(e)})
        return 2
    except RiskIntelError as e:
        _print({"ok": False, "error_code": e.err.code, "error": str(e)})
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
