"""FastAPI server - HTTP surface for transcription jobs"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from api.auth import IdentityResolver, check_admin_token
from config.settings import get_settings
from core.abuse_detector import ClientSignals
from core.admission import AdmissionContext, Identity
from core.error_handling import (
    IdentityBlocked,
    InvalidTransitionError,
    JobNotFoundError,
    QueueFullError,
    QuotaExceeded,
    RateLimited,
    UnsupportedJobType,
)
from core.models import OUTPUT_FORMATS, JobOptions, SourceDescriptor
from core.poller import PollStatus
from core.service import PipelineComponents, build_components
from workers.job_worker import JobWorker

logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    "txt": "text/plain; charset=utf-8",
    "srt": "application/x-subrip; charset=utf-8",
    "vtt": "text/vtt; charset=utf-8",
    "json": "application/json",
    "md": "text/markdown; charset=utf-8",
}


# Pydantic models
class ClientInfo(BaseModel):
    screen_resolution: Optional[str] = None
    timezone: Optional[str] = None


class SubmitJobRequest(BaseModel):
    source: SourceDescriptor
    options: JobOptions = Field(default_factory=JobOptions)
    client: ClientInfo = Field(default_factory=ClientInfo)
    challenge_token: Optional[str] = None


bearer = HTTPBearer(auto_error=False)


def create_app(
    components: Optional[PipelineComponents] = None,
    start_worker: bool = True,
    identity_resolver: Optional[IdentityResolver] = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        components: Pre-wired pipeline; built from settings when omitted
        start_worker: Run an embedded JobWorker for the lifetime of the app
        identity_resolver: Maps request credentials to callers; configured
            from settings when omitted

    Returns:
        Configured FastAPI app
    """
    if components is None:
        components = build_components(get_settings())
    service = components.service
    resolver = identity_resolver or IdentityResolver.from_settings(components.settings)

    async def current_identity(
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
        x_api_key: Optional[str] = Header(None),
        x_account_id: Optional[str] = Header(None),
        x_tier: Optional[str] = Header(None),
    ) -> Identity:
        api_key = credentials.credentials if credentials else x_api_key
        return resolver.resolve(api_key, x_account_id, x_tier)

    async def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
        check_admin_token(components.settings.admin_token, x_admin_token)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if components.db_manager is not None:
            await components.db_manager.initialize()
        worker = None
        worker_task = None
        if start_worker:
            worker = JobWorker(components, idle_sleep=components.settings.worker_idle_sleep)
            worker_task = asyncio.create_task(worker.run_forever())
        app.state.worker = worker
        logger.info("Transcription API started")
        try:
            yield
        finally:
            if worker is not None:
                worker.stop()
                await worker_task
            if components.db_manager is not None:
                await components.db_manager.close()
            logger.info("Transcription API stopped")

    app = FastAPI(
        title="Media Transcription API",
        description="API for submitting transcription jobs, polling their status and fetching outputs",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Clipped previews are served back to the providers from here
    app.mount(
        "/blobs",
        StaticFiles(directory=str(components.settings.storage_path), check_dir=False),
        name="blobs",
    )

    # Health check
    @app.get("/")
    async def root():
        worker = getattr(app.state, "worker", None)
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "queue_depth": (await components.queue.get_stats()).total_pending,
            "worker": worker.get_status() if worker else None,
            "endpoints": [
                "/docs",
                "/api/v1/jobs",
                "/api/v1/jobs/{job_id}",
                "/api/v1/jobs/{job_id}/output/{format}",
            ],
        }

    @app.post("/api/v1/jobs", status_code=202)
    async def submit_job(
        body: SubmitJobRequest,
        request: Request,
        identity: Identity = Depends(current_identity),
    ) -> Dict[str, Any]:
        """Admit and queue a transcription job

        Denials: 400 unsupported job type, 429 rate limited (Retry-After),
        402 quota exceeded, 403 blocked, 503 queue full.
        """
        context = AdmissionContext(
            ip=request.client.host if request.client else "",
            signals=ClientSignals(
                user_agent=request.headers.get("user-agent", ""),
                accept_language=request.headers.get("accept-language"),
                accept_encoding=request.headers.get("accept-encoding"),
                screen_resolution=body.client.screen_resolution,
                timezone=body.client.timezone,
            ),
            challenge_token=body.challenge_token,
        )
        try:
            submitted = await service.submit_job(identity, body.source, body.options, context)
        except UnsupportedJobType as e:
            raise HTTPException(status_code=400, detail={"reason": "unsupported_job_type", "message": str(e)})
        except RateLimited as e:
            retry_after = int(e.retry_after or 1)
            raise HTTPException(
                status_code=429,
                detail={"reason": e.reason, "retry_after": retry_after},
                headers={"Retry-After": str(retry_after)},
            )
        except QuotaExceeded as e:
            raise HTTPException(status_code=402, detail={"reason": e.reason, "remaining": e.remaining})
        except IdentityBlocked as e:
            raise HTTPException(status_code=403, detail={"reason": e.reason})
        except QueueFullError as e:
            raise HTTPException(status_code=503, detail={"reason": "queue_full", "message": str(e)})
        return submitted.to_dict()

    @app.get("/api/v1/jobs/{job_id}")
    async def get_job(job_id: str, identity: Identity = Depends(current_identity)):
        """Current job status in the poll vocabulary"""
        result = await service.get_job_status(job_id, owner=identity.key)
        if result.status == PollStatus.NOT_FOUND:
            raise HTTPException(status_code=404, detail="Job not found")
        return result.to_dict()

    @app.delete("/api/v1/jobs/{job_id}")
    async def cancel_job(job_id: str, identity: Identity = Depends(current_identity)):
        """Cancel a job that has not started processing"""
        if not identity.key:
            raise HTTPException(status_code=404, detail="Job not found")
        try:
            result = await service.cancel_job(job_id, identity.key)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Job not found")
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return result.to_dict()

    @app.get("/api/v1/jobs/{job_id}/output/{fmt}")
    async def get_output(job_id: str, fmt: str, identity: Identity = Depends(current_identity)):
        """Rendered output of a completed job"""
        if fmt not in OUTPUT_FORMATS:
            raise HTTPException(status_code=400, detail=f"Format must be one of: {list(OUTPUT_FORMATS)}")
        try:
            content = await service.get_output(job_id, fmt, owner=identity.key)
        except JobNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return PlainTextResponse(content, media_type=MEDIA_TYPES[fmt])

    @app.post("/api/v1/admin/identities/{identity_key}/reset", dependencies=[Depends(require_admin)])
    async def reset_identity(identity_key: str):
        """Clear rate-limit counters and abuse state for an identity"""
        service.reset_identity(identity_key)
        return {"identity": identity_key, "reset": True}

    return app


def __getattr__(name: str):
    # ``uvicorn api.main:app`` builds the app on first access
    if name == "app":
        application = create_app()
        globals()["app"] = application
        return application
    raise AttributeError(name)
