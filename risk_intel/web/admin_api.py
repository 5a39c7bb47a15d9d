from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, Literal

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBasic, HTTPBasicCredentials, HTTPBearer
from pydantic import BaseModel, Field

from risk_intel import __version__
from risk_intel.db.database import IntelDatabase
from risk_intel.errors import (
    PIPE_INVALID_REQUEST,
    InvalidRequestError,
    PipelineFatalError,
    RiskIntelError,
    RunLockError,
)
from risk_intel.services.org_settings import resolve_org_config, update_org_config
from risk_intel.workers.pipeline import IntelPipeline


class ScanPayload(BaseModel):
    deadline_seconds: float | None = Field(default=None, ge=0)


class AnalyzePayload(BaseModel):
    max_batch: int | None = Field(default=None, ge=1, le=1000)
    deadline_seconds: float | None = Field(default=None, ge=0)


class ResetPayload(BaseModel):
    event_ids: list[int] | None = None
    category: str | None = None
    since: str | None = None
    all: bool = False


class PurgePayload(BaseModel):
    scope: Literal["unanalyzed", "all"] = "unanalyzed"
    include_alerts: bool = False


class TestAlertPayload(BaseModel):
    risk_code: str = Field(min_length=1, max_length=64)


class SettingsPayload(BaseModel):
    scanner_mode: str | None = None
    min_confidence_threshold: float | None = None
    lookback_days: int | None = None


basic = HTTPBasic(auto_error=False)
bearer = HTTPBearer(auto_error=False)


def _is_loopback(host: str | None) -> bool:
    return host in {"127.0.0.1", "::1", "localhost"}


def _auth_guard(
    request: Request,
    basic_cred: HTTPBasicCredentials | None = Depends(basic),
    bearer_cred: HTTPAuthorizationCredentials | None = Depends(bearer),
) -> dict[str, str]:
    admin_token = os.environ.get("ADMIN_TOKEN", "").strip()
    admin_user = os.environ.get("ADMIN_USER", "").strip()
    admin_pass = os.environ.get("ADMIN_PASS", "").strip()

    if admin_token:
        if bearer_cred and bearer_cred.scheme.lower() == "bearer" and bearer_cred.credentials == admin_token:
            return {"auth": "bearer", "principal": "token-user"}
        raise HTTPException(
            status_code=401,
            detail="unauthorized: bearer token required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if admin_user and admin_pass:
        if basic_cred and basic_cred.username == admin_user and basic_cred.password == admin_pass:
            return {"auth": "basic", "principal": basic_cred.username}
        raise HTTPException(
            status_code=401,
            detail="unauthorized: basic auth required",
            headers={"WWW-Authenticate": 'Basic realm="RiskIntelAdmin"'},
        )

    host = request.client.host if request.client else None
    if _is_loopback(host):
        return {"auth": "local", "principal": "localhost"}
    raise HTTPException(
        status_code=401,
        detail="unauthorized: configure ADMIN_TOKEN or ADMIN_USER/ADMIN_PASS",
        headers={"WWW-Authenticate": 'Basic realm="RiskIntelAdmin"'},
    )


def _status_for(exc: RiskIntelError) -> int:
    if isinstance(exc, InvalidRequestError):
        return 400
    if isinstance(exc, RunLockError):
        return 409
    if isinstance(exc, PipelineFatalError):
        return 503
    return 500


def create_app(database: IntelDatabase | None = None, *, pipeline: IntelPipeline | None = None) -> FastAPI:
    """
    Operator API over one pipeline. Every route below /api/orgs/{org} acts on that
    organization only; auth is the same guard for all of them.
    """
    if pipeline is None:
        pipeline = IntelPipeline(database or IntelDatabase())
    db = pipeline.db
    app = FastAPI(title="Risk Intelligence Admin API", version=__version__)

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        # No auth: used by container healthchecks.
        obs = db.observability_info()
        try:
            db.ping()
            db_ok = True
        except PipelineFatalError:
            db_ok = False
        return {
            "ok": db_ok,
            "service": "risk-intel-admin",
            "db_url": obs["db_url"],
            "db_backend": obs["db_backend"],
            "ts": datetime.now(timezone.utc).isoformat(),
        }

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(_: Request, exc: HTTPException) -> JSONResponse:  # type: ignore[override]
        payload = {"ok": False, "error": {"code": f"HTTP_{exc.status_code}", "message": str(exc.detail)}}
        return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)

    @app.exception_handler(RiskIntelError)
    async def _pipeline_error_handler(_: Request, exc: RiskIntelError) -> JSONResponse:
        payload = {"ok": False, "error": {"code": exc.err.code, "message": str(exc)}}
        return JSONResponse(status_code=_status_for(exc), content=payload)

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"path": ".".join(str(p) for p in e.get("loc", ())), "message": str(e.get("msg", ""))}
            for e in exc.errors()
        ]
        payload = {
            "ok": False,
            "error": {"code": PIPE_INVALID_REQUEST.code, "message": PIPE_INVALID_REQUEST.message, "details": errors},
        }
        return JSONResponse(status_code=400, content=payload)

    @app.post("/api/orgs/{org}/scan")
    def scan(org: str, payload: ScanPayload | None = None, auth: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        p = payload or ScanPayload()
        res = pipeline.run_full_scan(org, triggered_by=auth["principal"], deadline_seconds=p.deadline_seconds)
        return {"ok": True, **res}

    @app.post("/api/orgs/{org}/analyze")
    def analyze(
        org: str, payload: AnalyzePayload | None = None, auth: dict[str, str] = Depends(_auth_guard)
    ) -> dict[str, Any]:
        p = payload or AnalyzePayload()
        res = pipeline.analyze_backlog(
            org, p.max_batch, triggered_by=auth["principal"], deadline_seconds=p.deadline_seconds
        )
        return {"ok": True, **res}

    @app.post("/api/orgs/{org}/reset-analysis")
    def reset_analysis(org: str, payload: ResetPayload, auth: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        res = pipeline.reset_analysis(org, payload.model_dump(exclude_none=True), triggered_by=auth["principal"])
        return {"ok": True, **res}

    @app.post("/api/orgs/{org}/purge")
    def purge(org: str, payload: PurgePayload, auth: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        res = pipeline.purge_events(
            org, payload.scope, include_alerts=payload.include_alerts, triggered_by=auth["principal"]
        )
        return {"ok": True, **res}

    @app.post("/api/orgs/{org}/test-alert")
    def test_alert(org: str, payload: TestAlertPayload, auth: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        res = pipeline.create_test_alert(org, payload.risk_code, triggered_by=auth["principal"])
        return {"ok": True, **res}

    @app.get("/api/orgs/{org}/settings")
    def get_settings(org: str, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return {"ok": True, "settings": resolve_org_config(db.sources, org, pipeline.settings).to_dict()}

    @app.put("/api/orgs/{org}/settings")
    def put_settings(org: str, payload: SettingsPayload, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        cfg = update_org_config(db.sources, org, pipeline.settings, payload.model_dump(exclude_none=True))
        return {"ok": True, "settings": cfg.to_dict()}

    @app.get("/api/orgs/{org}/sources")
    def list_sources(
        org: str, include_inactive: bool = False, _: dict[str, str] = Depends(_auth_guard)
    ) -> dict[str, Any]:
        rows = pipeline.registry.sources_for(org, include_inactive=include_inactive)
        return {"ok": True, "sources": rows}

    @app.get("/api/orgs/{org}/events")
    def list_events(
        org: str,
        status: Literal["all", "pending", "analyzed"] = "all",
        limit: int = Query(default=100, ge=1, le=1000),
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        return {"ok": True, "events": db.events.list_events(org, status=status, limit=limit)}

    @app.get("/api/orgs/{org}/alerts")
    def list_alerts(
        org: str,
        status: str | None = None,
        event_id: int | None = None,
        limit: int = Query(default=100, ge=1, le=1000),
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        return {"ok": True, "alerts": db.events.list_alerts(org, status=status, event_id=event_id, limit=limit)}

    @app.get("/api/orgs/{org}/runs")
    def list_runs(
        org: str, limit: int = Query(default=20, ge=1, le=200), _: dict[str, str] = Depends(_auth_guard)
    ) -> dict[str, Any]:
        runs = db.runs.recent_runs(org, limit=limit)
        for r in runs:
            if r["operation"] == "scan":
                r["sources"] = db.runs.fetch_events(r["run_id"])
        return {"ok": True, "runs": runs}

    return app


def run_server() -> None:
    host = os.environ.get("ADMIN_API_HOST", "127.0.0.1")
    port = int(os.environ.get("ADMIN_API_PORT", "8790"))
    uvicorn.run("risk_intel.web.admin_api:create_app", host=host, port=port, reload=False, factory=True)


if __name__ == "__main__":
    run_server()
