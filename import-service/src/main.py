# import-service/src/main.py
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request

from db import get_pool, init_schema
from errors import Conflict, InvalidSubmission, NotFound
from job_store import InMemoryJobStore, PostgresJobStore
from loader import PostgresSink
from log import configure_logging, get_logger
from models import ImportJob, JobStatusResponse, Status, SubmitRequest, SubmitResponse
from notify import LogNotifier, WebhookNotifier
from orchestrator import JobOrchestrator
from reference_data import load_reference_data
from settings import load_settings
from sources import HttpObjectStore, LocalObjectStore

logger = get_logger(__name__)

router = APIRouter()


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "import"}


@router.post("/jobs", response_model=SubmitResponse)
async def submit_job(job_request: SubmitRequest, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    try:
        job_id = await orchestrator.submit(
            job_request.jobKind,
            source_ref=job_request.sourceReference,
            target_collection=job_request.targetCollection,
            notify_address=job_request.notifyAddress,
        )
    except Conflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidSubmission as e:
        raise HTTPException(status_code=422, detail=str(e))
    return SubmitResponse(jobId=job_id, status=Status.pending, message="Job submitted successfully")


@router.get("/jobs/{job_id}/status", response_model=JobStatusResponse)
async def get_job_status(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    try:
        job = await orchestrator.status(job_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobStatusResponse(
        jobId=job.id,
        status=job.status,
        progress=job.progress.percent,
        message=job.progress.message,
    )


@router.get("/jobs/{job_id}", response_model=ImportJob)
async def get_job_details(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    try:
        return await orchestrator.status(job_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Job not found")


def create_app(orchestrator: Optional[JobOrchestrator] = None) -> FastAPI:
    """Build the service; pass ``orchestrator`` to skip wiring Postgres and HTTP clients."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if orchestrator is not None:
            app.state.orchestrator = orchestrator
            await orchestrator.recover_interrupted()
            yield
            await orchestrator.shutdown()
            return

        settings = load_settings()
        configure_logging(settings.log_level)
        reference = load_reference_data(settings.reference_data_dir)
        # body reads are unbounded; only connecting is timed
        http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=30.0),
            follow_redirects=True,
        )
        pool = await get_pool(settings)
        await init_schema(pool)
        store = PostgresJobStore(pool) if settings.job_store == "postgres" else InMemoryJobStore()
        object_store = (
            HttpObjectStore(settings.object_store_url, http_client)
            if settings.object_store_url
            else LocalObjectStore(settings.data_dir)
        )
        notifier = (
            WebhookNotifier(settings.notify_webhook_url, http_client)
            if settings.notify_webhook_url
            else LogNotifier()
        )
        orch = JobOrchestrator(
            store, PostgresSink(pool), reference, settings,
            http_client=http_client, object_store=object_store, notifier=notifier,
        )
        app.state.orchestrator = orch
        await orch.recover_interrupted()
        logger.info("import service started job_store=%s", settings.job_store)
        try:
            yield
        finally:
            await orch.shutdown()
            await http_client.aclose()
            await pool.close()

    app = FastAPI(title="Bulk Import Service", version="1.0.0", lifespan=lifespan)
    app.include_router(router)
    return app


app = create_app()
