from __future__ import annotations

"""HTTP API surface for scan ingestion, readiness queries and manual approvals."""

from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .errors import DomainError, EntityNotFoundError
from .service import ReadinessService
from .telemetry import sanitize_actor_id


API_VERSION = "0.1"


class IngestScanRequest(BaseModel):
    """AI-readiness report as produced by the CI action; `checks` stays loosely typed."""

    metadata: dict[str, Any]
    checks: dict[str, Any] = Field(default_factory=dict)


class ApproveQuestRequest(BaseModel):
    team_id: str = Field(min_length=1, max_length=200)
    quest_key: str = Field(min_length=1, max_length=200)
    approved_by: str = Field(min_length=1, max_length=200)
    level: int | None = Field(default=None, ge=1)


class RevokeQuestRequest(BaseModel):
    quest_key: str = Field(min_length=1, max_length=200)
    actor_id: str | None = Field(default=None, max_length=200)


def _error_response(exc: DomainError) -> JSONResponse:
    status_code = 404 if isinstance(exc, EntityNotFoundError) else 400
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app(service: ReadinessService) -> FastAPI:
    """Create API routes backed by `ReadinessService` with trace-id attribution."""

    app = FastAPI(title="Questboard API", version=API_VERSION)

    @app.middleware("http")
    async def trace_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
        incoming = (request.headers.get("x-questboard-trace-id") or "").strip()
        trace_id = sanitize_actor_id(incoming) if incoming else f"api:{uuid4()}"
        if not trace_id or trace_id == "unknown":
            trace_id = f"api:{uuid4()}"
        request.state.trace_id = trace_id
        try:
            response = await call_next(request)
        except Exception as exc:  # noqa: BLE001
            service.telemetry.log_event(
                "risk.flagged",
                actor="system",
                actor_id="api:unknown",
                source="api",
                trace_id=trace_id,
                data={
                    "reason": "api_internal_error",
                    "endpoint": request.url.path,
                    "error_type": exc.__class__.__name__,
                },
            )
            response = JSONResponse(
                status_code=500,
                content={
                    "code": "INTERNAL_SERVER_ERROR",
                    "message": "Internal server error",
                    "trace_id": trace_id,
                },
            )
        response.headers["X-Questboard-Trace-Id"] = trace_id
        return response

    def request_trace_id(request: Request) -> str:
        value = getattr(request.state, "trace_id", None)
        if isinstance(value, str) and value:
            return value
        return f"api:{uuid4()}"

    def request_actor_id(request: Request, fallback: str | None = None) -> str:
        header_actor_id = (request.headers.get("x-questboard-actor-id") or "").strip()
        return header_actor_id or (fallback or "").strip() or "api:unknown"

    @app.get("/v1/health")
    def health() -> dict[str, Any]:
        return {"status": "ok", "version": API_VERSION, "schema_versions": {"quest": "0.1", "state": "0.1"}}

    @app.get("/v1/quests")
    def list_quests() -> list[dict[str, Any]]:
        return service.list_quests()

    @app.get("/v1/quests/{quest_key}")
    def get_quest(quest_key: str) -> Any:
        try:
            return service.get_quest(quest_key)
        except DomainError as exc:
            return _error_response(exc)

    @app.post("/v1/ingest-scan")
    def ingest_scan(request: IngestScanRequest, http_request: Request) -> Any:
        try:
            return service.ingest_scan(
                request.model_dump(),
                source="api",
                actor="ci",
                actor_id=request_actor_id(http_request),
                trace_id=request_trace_id(http_request),
            )
        except DomainError as exc:
            return _error_response(exc)

    @app.get("/v1/repos/{repo_id}/readiness")
    def get_readiness(repo_id: str) -> Any:
        try:
            return service.get_readiness(repo_id)
        except DomainError as exc:
            return _error_response(exc)

    @app.post("/v1/repos/{repo_id}/quests/approve")
    def approve_quest(repo_id: str, request: ApproveQuestRequest, http_request: Request) -> Any:
        try:
            return service.approve_quest(
                repo_id,
                request.team_id,
                request.quest_key,
                request.approved_by,
                request.level,
                source="api",
                trace_id=request_trace_id(http_request),
            )
        except DomainError as exc:
            return _error_response(exc)

    @app.post("/v1/repos/{repo_id}/quests/revoke")
    def revoke_quest(repo_id: str, request: RevokeQuestRequest, http_request: Request) -> Any:
        try:
            return service.revoke_quest_approval(
                repo_id,
                request.quest_key,
                actor_id=request_actor_id(http_request, request.actor_id),
                source="api",
                trace_id=request_trace_id(http_request),
            )
        except DomainError as exc:
            return _error_response(exc)

    @app.get("/v1/repos/{repo_id}/scan-runs")
    def list_scan_runs(repo_id: str) -> Any:
        try:
            return service.list_scan_runs(repo_id)
        except DomainError as exc:
            return _error_response(exc)

    @app.get("/v1/teams/{team_id}")
    def get_team(team_id: str) -> Any:
        try:
            return service.get_team(team_id)
        except DomainError as exc:
            return _error_response(exc)

    return app
