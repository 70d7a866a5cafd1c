"""
FastAPI application for the CloudPRNT print queue

Exposes the enqueue/operator endpoints and, when enabled, the CloudPRNT
endpoints printers poll.
"""

import base64
import binascii
from contextlib import asynccontextmanager
from typing import List, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response

from .. import __version__
from ..core.exceptions import (
    PrintQueueError,
    ValidationError,
    JobNotFoundError,
    PrinterNotFoundError,
    InvalidTransitionError,
    error_registry,
)
from ..core.orchestrator import PrintQueueOrchestrator
from ..models.job import JobStatus
from ..utils.config import Settings
from ..utils.logger import get_logger
from .schemas import (
    EnqueueRequest,
    EnqueueResponse,
    ReasonRequest,
    CancelResponse,
    PollStatusResponse,
)


logger = get_logger(__name__)

ERROR_STATUS_CODES = {
    ValidationError: 422,
    JobNotFoundError: 404,
    PrinterNotFoundError: 404,
    InvalidTransitionError: 409,
}


def get_orchestrator(request: Request) -> PrintQueueOrchestrator:
    return request.app.state.orchestrator


def create_app(config: Union[Settings, PrintQueueOrchestrator, None] = None) -> FastAPI:
    """
    Create the FastAPI app.

    Args:
        config: Settings to build an orchestrator from, or a ready
            orchestrator (tests inject one with an in-memory store)

    Returns:
        FastAPI application whose lifespan starts and stops the orchestrator
    """
    if isinstance(config, PrintQueueOrchestrator):
        orchestrator = config
    else:
        orchestrator = PrintQueueOrchestrator(config or Settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await orchestrator.start()
        try:
            yield
        finally:
            await orchestrator.stop()

    app = FastAPI(title="CloudPRNT Print Queue", version=__version__, lifespan=lifespan)
    app.state.orchestrator = orchestrator

    @app.exception_handler(PrintQueueError)
    async def print_queue_error_handler(request: Request, exc: PrintQueueError):
        status_code = 500
        for error_type, code in ERROR_STATUS_CODES.items():
            if isinstance(exc, error_type):
                status_code = code
                break
        if status_code == 500:
            logger.error("Request failed", extra={"path": request.url.path, "error": exc.message})
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    app.include_router(_jobs_router())
    app.include_router(_operations_router())
    if orchestrator.settings.cloudprnt_enabled:
        app.include_router(_cloudprnt_router())
    else:
        logger.info("CloudPRNT endpoints disabled by configuration")

    return app


def _jobs_router() -> APIRouter:
    router = APIRouter(tags=["jobs"])

    @router.post("/jobs", response_model=EnqueueResponse, response_model_by_alias=True)
    async def enqueue_job(body: EnqueueRequest, response: Response,
                          orchestrator: PrintQueueOrchestrator = Depends(get_orchestrator)):
        if body.payload_encoding == "base64":
            try:
                payload = base64.b64decode(body.payload, validate=True)
            except (binascii.Error, ValueError):
                raise HTTPException(status_code=400, detail="payload is not valid base64")
        else:
            payload = body.payload.encode("utf-8")

        correlation = body.correlation
        result = await orchestrator.enqueue(
            printer_id=body.printer_id,
            idempotency_key=body.idempotency_key,
            payload=payload,
            content_type=body.content_type,
            job_type=body.job_type,
            priority=body.priority,
            max_retries=body.max_retries,
            order_id=correlation.order_id if correlation else None,
            table_id=correlation.table_id if correlation else None,
            metadata=body.metadata
        )
        response.status_code = 201 if result.created else 200
        return EnqueueResponse(job_id=result.job_id, status=result.status.value, created=result.created)

    @router.get("/jobs/failed")
    async def list_failed_jobs(limit: int = Query(100, ge=1, le=1000),
                               orchestrator: PrintQueueOrchestrator = Depends(get_orchestrator)):
        jobs = await orchestrator.list_failures(limit)
        return {"jobs": [job.to_dict() for job in jobs], "count": len(jobs)}

    @router.get("/jobs/{job_id}")
    async def get_job(job_id: str, include_payload: bool = Query(False, alias="includePayload"),
                      orchestrator: PrintQueueOrchestrator = Depends(get_orchestrator)):
        job = await orchestrator.get_job(job_id)
        return job.to_dict(include_payload=include_payload)

    @router.get("/jobs/{job_id}/logs")
    async def get_job_logs(job_id: str, orchestrator: PrintQueueOrchestrator = Depends(get_orchestrator)):
        entries = await orchestrator.get_job_logs(job_id)
        return {"jobId": job_id, "logs": [entry.to_dict() for entry in entries]}

    @router.post("/jobs/{job_id}/reprint", status_code=201,
                 response_model=EnqueueResponse, response_model_by_alias=True)
    async def reprint_job(job_id: str, body: Optional[ReasonRequest] = None,
                          orchestrator: PrintQueueOrchestrator = Depends(get_orchestrator)):
        result = await orchestrator.reprint(job_id, body.reason if body else None)
        return EnqueueResponse(job_id=result.job_id, status=result.status.value, created=result.created)

    @router.post("/jobs/{job_id}/cancel", response_model=CancelResponse, response_model_by_alias=True)
    async def cancel_job(job_id: str, body: Optional[ReasonRequest] = None,
                         strict: bool = Query(False),
                         orchestrator: PrintQueueOrchestrator = Depends(get_orchestrator)):
        result = await orchestrator.cancel_job(job_id, body.reason if body else None, strict=strict)
        return CancelResponse(job_id=job_id, status=result.status.value, changed=result.applied)

    @router.get("/printers/{printer_id}/jobs")
    async def list_printer_jobs(printer_id: str,
                                status: Optional[List[str]] = Query(None),
                                limit: int = Query(100, ge=1, le=1000),
                                orchestrator: PrintQueueOrchestrator = Depends(get_orchestrator)):
        if orchestrator.printers.get(printer_id) is None:
            raise PrinterNotFoundError(printer_id)
        statuses = _parse_statuses(status)
        jobs = await orchestrator.list_jobs(printer_id, statuses, limit)
        return {"printerId": printer_id, "jobs": [job.to_dict() for job in jobs], "count": len(jobs)}

    return router


def _operations_router() -> APIRouter:
    router = APIRouter(tags=["operations"])

    @router.get("/printers")
    async def list_printers(orchestrator: PrintQueueOrchestrator = Depends(get_orchestrator)):
        return {"printers": orchestrator.list_printers()}

    @router.get("/health")
    async def health(orchestrator: PrintQueueOrchestrator = Depends(get_orchestrator)):
        health_status = await orchestrator.get_health()
        health_status["errors"] = error_registry.get_error_statistics()
        return JSONResponse(
            status_code=200 if health_status["status"] == "healthy" else 503,
            content=health_status
        )

    @router.get("/metrics")
    async def metrics(orchestrator: PrintQueueOrchestrator = Depends(get_orchestrator)):
        return Response(
            content=await orchestrator.render_metrics(),
            media_type=orchestrator.reporter.metrics_content_type
        )

    return router


def _cloudprnt_router() -> APIRouter:
    router = APIRouter(tags=["cloudprnt"])

    @router.post("/printers/{printer_id}/job", response_model=PollStatusResponse,
                 response_model_by_alias=True, response_model_exclude_none=True)
    async def poll_status(printer_id: str, request: Request,
                          orchestrator: PrintQueueOrchestrator = Depends(get_orchestrator)):
        body = await request.body()
        answer = await orchestrator.dispatcher.handle_status_report(printer_id, body)
        return PollStatusResponse(
            job_ready=answer.job_ready,
            media_types=answer.media_types if answer.job_ready else None,
            job_token=answer.job_token
        )

    @router.get("/printers/{printer_id}/job")
    async def fetch_job(printer_id: str, requested_type: Optional[str] = Query(None, alias="type"),
                        orchestrator: PrintQueueOrchestrator = Depends(get_orchestrator)):
        job = await orchestrator.dispatcher.fetch_content(printer_id, requested_type)
        if job is None:
            return Response(status_code=204)
        return Response(
            content=job.payload,
            media_type=job.content_type,
            headers={"X-Star-Job-Token": job.id}
        )

    @router.delete("/printers/{printer_id}/job", response_model=CancelResponse,
                   response_model_by_alias=True)
    async def confirm_job(printer_id: str,
                          token: Optional[str] = Query(None),
                          code: Optional[str] = Query(None),
                          mac: Optional[str] = Query(None),
                          orchestrator: PrintQueueOrchestrator = Depends(get_orchestrator)):
        result = await orchestrator.dispatcher.confirm(printer_id, token, code, mac)
        return CancelResponse(
            job_id=token or "",
            status=result.status.value if result else None,
            changed=bool(result and result.applied)
        )

    return router


def _parse_statuses(values: Optional[List[str]]) -> Optional[List[JobStatus]]:
    if not values:
        return None
    statuses = []
    for value in values:
        for part in value.split(","):
            part = part.strip().upper()
            if not part:
                continue
            try:
                statuses.append(JobStatus(part))
            except ValueError:
                raise ValidationError("status", f"unknown status {part}", part)
    return statuses or None
