# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the mail dispatcher.

The HTTP surface is a thin adapter over
:meth:`mail_dispatch.core.MailDispatchCore.handle_command`:

- ``POST /schedule`` hands a batch to the enqueuer
- ``GET /jobs`` and ``GET /jobs/{email_id}`` expose read-only job state
- ``DELETE /jobs/{email_id}`` cancels a job that is still waiting
- ``/commands/*`` control the workers
- ``/stats`` and ``/metrics`` support monitoring

Every endpoint except ``/health`` requires the ``X-API-Token`` header when a
token is configured.

Example:
    Creating and running the API application::

        from mail_dispatch.core import MailDispatchCore
        from mail_dispatch.api import create_app

        core = MailDispatchCore(db_path="/data/mail_dispatch.db")
        app = create_app(core, api_token="secret-token")
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import MailDispatchCore
from .errors import InvalidInput, PartialSubmission

logger = logging.getLogger(__name__)

app = FastAPI(title="Mail Dispatch Service")
service: MailDispatchCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: str | None = None


class BasicOkResponse(CommandStatus):
    pass


class ActiveResponse(CommandStatus):
    active: bool | None = None


class ScheduleResponse(CommandStatus):
    """Result of ``POST /schedule``."""
    count: int = 0
    ids: list[str] = Field(default_factory=list)


class JobRecord(BaseModel):
    """An Email joined with its EmailJob."""
    id: str
    sender_id: str
    recipient: str
    subject: str
    body: str
    scheduled_at_ms: int
    status: str
    sent_at_ms: int | None = None
    error: str | None = None
    created_at_ms: int
    updated_at_ms: int
    job_status: str | None = None
    external_job_id: str | None = None
    min_delay_ms: int | None = None
    hourly_limit: int | None = None


class JobsResponse(CommandStatus):
    jobs: list[JobRecord]


class JobResponse(CommandStatus):
    job: JobRecord
    queue: dict[str, Any] | None = None


class ReconcileResponse(CommandStatus):
    resubmitted: list[str] = Field(default_factory=list)


class StatsResponse(CommandStatus):
    active: bool
    emails: dict[str, int]
    jobs: dict[str, int]
    queue: dict[str, int]


def _require_service() -> MailDispatchCore:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def create_app(
    svc: MailDispatchCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        The :class:`mail_dispatch.core.MailDispatchCore` serving the commands.
    api_token:
        Optional secret; when set, the ``X-API-Token`` header must match it.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Mail Dispatch Service", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", response_model=ActiveResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_status():
        svc = _require_service()
        return ActiveResponse(ok=True, active=svc.active)

    @api.post("/schedule", response_model=ScheduleResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def schedule(payload: Any = Body(...)):
        """Validate, persist and queue a batch of emails for one sender."""
        svc = _require_service()
        result = await svc.handle_command("schedule", payload)
        if result.get("ok") is not True:
            code = result.get("code")
            if code == InvalidInput.code:
                raise HTTPException(status.HTTP_400_BAD_REQUEST, result.get("error"))
            if code == PartialSubmission.code:
                logger.error("Partial submission: %s", result.get("error"))
                raise HTTPException(
                    status.HTTP_503_SERVICE_UNAVAILABLE,
                    {"error": result.get("error"), "count": result.get("count"), "missing": result.get("missing")},
                )
            raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, result.get("error"))
        return ScheduleResponse.model_validate(result)

    @api.get("/jobs", response_model=JobsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_jobs(sender_id: str, limit: int = 100):
        """List the latest jobs of a sender, newest first."""
        svc = _require_service()
        result = await svc.handle_command("listJobs", {"sender_id": sender_id, "limit": max(1, min(limit, 1000))})
        if not result.get("ok"):
            raise HTTPException(status.HTTP_400_BAD_REQUEST, result.get("error"))
        return JobsResponse.model_validate(result)

    @api.get("/jobs/{email_id}", response_model=JobResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_job(email_id: str):
        svc = _require_service()
        result = await svc.handle_command("getJob", {"id": email_id})
        if not result.get("ok"):
            raise HTTPException(status.HTTP_404_NOT_FOUND, f"Job '{email_id}' not found")
        return JobResponse.model_validate(result)

    @api.delete("/jobs/{email_id}", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def cancel_job(email_id: str):
        """Cancel a job that has not started yet."""
        svc = _require_service()
        result = await svc.handle_command("cancel", {"id": email_id})
        if not result.get("ok"):
            raise HTTPException(status.HTTP_409_CONFLICT, result.get("error"))
        return BasicOkResponse.model_validate(result)

    @router.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        svc = _require_service()
        result = await svc.handle_command("run now", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/suspend", response_model=ActiveResponse, response_model_exclude_none=True)
    async def suspend():
        """Stop the workers from dequeuing new jobs."""
        svc = _require_service()
        result = await svc.handle_command("suspend", {})
        return ActiveResponse.model_validate(result)

    @router.post("/activate", response_model=ActiveResponse, response_model_exclude_none=True)
    async def activate():
        """Resume dequeuing."""
        svc = _require_service()
        result = await svc.handle_command("activate", {})
        return ActiveResponse.model_validate(result)

    @router.post("/reconcile", response_model=ReconcileResponse, response_model_exclude_none=True)
    async def reconcile(older_than_seconds: int | None = None):
        """Resubmit persisted jobs that never reached the queue."""
        svc = _require_service()
        result = await svc.handle_command("reconcile", {"older_than_seconds": older_than_seconds})
        return ReconcileResponse.model_validate(result)

    @api.get("/stats", response_model=StatsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def stats():
        svc = _require_service()
        result = await svc.handle_command("stats", {})
        return StatsResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the dispatcher."""
        svc = _require_service()
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
