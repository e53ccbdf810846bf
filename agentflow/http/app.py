"""FastAPI adapter over the runtime service."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from agentflow.runtime.errors import (
    AgentFlowError,
    AgentInactiveError,
    AgentNotFoundError,
    AlreadyTerminalError,
    CredentialNotFoundError,
    JobNotFoundError,
    MissingCredentialsError,
    RateLimitExceeded,
    ScheduleNotFoundError,
    ValidationError,
)
from agentflow.runtime.service import RuntimeService
from agentflow.runtime.types import EnqueueRequest, JobFilter, ScheduleUpdate

_STATUS_CODES: dict[type[AgentFlowError], int] = {
    ValidationError: 400,
    AgentInactiveError: 400,
    AgentNotFoundError: 404,
    CredentialNotFoundError: 404,
    JobNotFoundError: 404,
    ScheduleNotFoundError: 404,
    AlreadyTerminalError: 409,
    MissingCredentialsError: 422,
    RateLimitExceeded: 429,
}


class EnqueueBody(BaseModel):
    agent_id: str
    user_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    scheduled_at: datetime | None = None
    max_retries: int | None = Field(default=None, ge=0)
    tenant_id: str = "default"


class CancelBody(BaseModel):
    reason: str | None = None


class FeedbackBody(BaseModel):
    user_id: str
    verdict: Literal["worked", "failed"]
    comment: str | None = None


class ScheduleCreateBody(BaseModel):
    agent_id: str
    user_id: str
    cron_expression: str
    timezone: str = "UTC"
    name: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    max_retries: int | None = Field(default=None, ge=0)
    tenant_id: str = "default"


class ScheduleUpdateBody(BaseModel):
    cron_expression: str | None = None
    timezone: str | None = None
    name: str | None = None
    payload: dict[str, Any] | None = None
    priority: int | None = None
    is_active: bool | None = None
    max_retries: int | None = Field(default=None, ge=0)


def create_app(service: RuntimeService, *, runtime: Any | None = None, run_workers: bool = True) -> FastAPI:
    """Create FastAPI app bound to the runtime service.

    When ``runtime`` is given its connections are released on shutdown, and
    with ``run_workers`` its worker pool and poller follow the app lifecycle.
    """

    @asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        if runtime is not None and run_workers:
            await runtime.start()
        try:
            yield
        finally:
            if runtime is not None:
                await runtime.stop()

    app = FastAPI(title="AgentFlow Runtime", lifespan=_lifespan)
    app.state.service = service

    @app.middleware("http")
    async def _request_id_middleware(request: Request, call_next: Any) -> Any:
        request.state.request_id = request.headers.get("x-request-id", str(uuid4()))
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.request_id
        return response

    @app.exception_handler(AgentFlowError)
    async def _runtime_error_handler(request: Request, exc: AgentFlowError) -> JSONResponse:
        return _error_response(exc, request_id=_request_id(request))

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content=_envelope(
                "validation_error",
                "Request body is invalid",
                {"errors": _jsonable_errors(exc.errors())},
                request_id=_request_id(request),
            ),
        )

    @app.post("/jobs")
    async def enqueue_job(body: EnqueueBody) -> JSONResponse:
        job_id = await service.enqueue(
            EnqueueRequest(
                agent_id=body.agent_id,
                user_id=body.user_id,
                payload=body.payload,
                priority=body.priority,
                scheduled_at=body.scheduled_at,
                max_retries=body.max_retries,
                source="api",
                tenant_id=body.tenant_id,
            )
        )
        if runtime is not None:
            runtime.pool.wake()
        return JSONResponse(status_code=202, content={"job_id": job_id, "status": "pending"})

    @app.get("/jobs")
    async def list_jobs(
        status: str | None = None,
        agent_id: str | None = None,
        user_id: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> JSONResponse:
        jobs = await service.list_jobs(
            JobFilter(
                status=status,  # type: ignore[arg-type]
                agent_id=agent_id,
                user_id=user_id,
                offset=max(0, offset),
                limit=min(max(1, limit), 500),
            )
        )
        return JSONResponse(
            status_code=200,
            content={
                "items": [
                    {
                        "job_id": job.id,
                        "agent_id": job.agent_id,
                        "user_id": job.user_id,
                        "status": job.status,
                        "priority": job.priority,
                        "retry_count": job.retry_count,
                        "created_at": job.created_at.isoformat(),
                    }
                    for job in jobs
                ]
            },
        )

    @app.get("/jobs/{job_id}")
    async def job_status(job_id: str) -> JSONResponse:
        view = await service.status(job_id)
        return JSONResponse(status_code=200, content=view.to_dict())

    @app.post("/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str, body: CancelBody | None = None) -> JSONResponse:
        job = await service.cancel(job_id, body.reason if body is not None else None)
        return JSONResponse(status_code=200, content={"job_id": job.id, "status": job.status})

    @app.post("/jobs/{job_id}/feedback")
    async def job_feedback(job_id: str, body: FeedbackBody) -> JSONResponse:
        evaluation = await service.record_feedback(job_id, body.user_id, body.verdict, body.comment)
        return JSONResponse(
            status_code=200,
            content={
                "job_id": job_id,
                "agent_id": evaluation.agent_id,
                "considered": evaluation.considered,
                "failures": evaluation.failures,
                "agent_deactivated": evaluation.deactivated,
            },
        )

    @app.post("/schedules")
    async def create_schedule(body: ScheduleCreateBody) -> JSONResponse:
        schedule = await service.create_schedule(
            agent_id=body.agent_id,
            user_id=body.user_id,
            cron_expression=body.cron_expression,
            timezone_name=body.timezone,
            name=body.name,
            payload=body.payload,
            priority=body.priority,
            max_retries=body.max_retries,
            tenant_id=body.tenant_id,
        )
        return JSONResponse(status_code=201, content=schedule.to_dict())

    @app.get("/schedules/{schedule_id}")
    async def get_schedule(schedule_id: str) -> JSONResponse:
        schedule = await service.get_schedule(schedule_id)
        return JSONResponse(status_code=200, content=schedule.to_dict())

    @app.put("/schedules/{schedule_id}")
    async def update_schedule(schedule_id: str, body: ScheduleUpdateBody) -> JSONResponse:
        schedule = await service.update_schedule(schedule_id, ScheduleUpdate(**body.model_dump()))
        return JSONResponse(status_code=200, content=schedule.to_dict())

    @app.get("/users/{user_id}/credentials")
    async def list_credentials(user_id: str, tenant_id: str = "default") -> JSONResponse:
        summaries = await service.list_credentials(user_id, tenant_id=tenant_id)
        return JSONResponse(status_code=200, content={"items": [item.to_dict() for item in summaries]})

    @app.post("/users/{user_id}/credentials/{provider}/revoke")
    async def revoke_credential(user_id: str, provider: str, tenant_id: str = "default") -> JSONResponse:
        await service.revoke_credential(user_id, provider, tenant_id=tenant_id)
        return JSONResponse(status_code=200, content={"user_id": user_id, "provider": provider, "status": "revoked"})

    @app.get("/health")
    async def health() -> JSONResponse:
        view = await service.health()
        content = view.to_dict()
        content["timestamp"] = datetime.now(timezone.utc).isoformat()
        return JSONResponse(status_code=200, content=content)

    return app


def _request_id(request: Request) -> str:
    return str(getattr(request.state, "request_id", uuid4()))


def _jsonable_errors(errors: Any) -> list[dict[str, Any]]:
    return [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": str(error.get("msg", "")), "type": error.get("type")}
        for error in errors
    ]


def _error_details(exc: AgentFlowError) -> dict[str, Any]:
    if isinstance(exc, MissingCredentialsError):
        return {"missing": exc.missing}
    if isinstance(exc, RateLimitExceeded):
        return {"retry_after_seconds": exc.retry_after_seconds}
    if isinstance(exc, AlreadyTerminalError):
        return {"job_id": exc.job_id, "status": exc.status}
    if isinstance(exc, AgentInactiveError):
        return {"agent_id": exc.agent_id, "reason": exc.reason}
    return {}


def _envelope(code: str, message: str, details: dict[str, Any], *, request_id: str) -> dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details,
            "request_id": request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    }


def _error_response(exc: AgentFlowError, *, request_id: str) -> JSONResponse:
    status_code = next((code for kind, code in _STATUS_CODES.items() if isinstance(exc, kind)), 500)
    headers = None
    if isinstance(exc, RateLimitExceeded):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(
        status_code=status_code,
        content=_envelope(exc.code, str(exc), _error_details(exc), request_id=request_id),
        headers=headers,
    )
