"""
Sync job API endpoints

- POST /api/sync/jobs           plan and create a sync job for the caller
- GET  /api/sync/jobs           the caller's recent jobs
- GET  /api/sync/jobs/{job_id}  one job's progress
- POST /api/sync/process-batch  one batch worker invocation (continues in the background)
- POST /api/sync/run-all        scheduled pass over every account (admin)
"""
from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
import logging
import uuid

from mailsync.api.auth import CAP_SYNC, CAP_SYNC_ALL, Principal, require
from mailsync.api.dependencies import SessionFactory, get_blob_store, get_client_factory, get_session_factory
from mailsync.api.schemas import (
    ProcessBatchRequest,
    ProcessBatchResponse,
    RunAllResponse,
    SyncJobListResponse,
    SyncJobResponse,
)
from mailsync.core.config import get_settings
from mailsync.core.database import get_db
from mailsync.core.database.job_store import SyncJobStore
from mailsync.core.email.imap_monitor import MailboxClientFactory
from mailsync.core.errors import sanitize_error_message
from mailsync.core.storage.blob_store import BlobStore
from mailsync.core.sync.service import NO_NEW_EMAILS, SyncService
from mailsync.core.sync.worker import BatchWorker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


def _error_response(e: Exception) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": sanitize_error_message(str(e) or type(e).__name__)})


def continue_job(job_id: str, worker_id: str, owner_id: Optional[str],
                 session_factory: SessionFactory,
                 client_factory: MailboxClientFactory,
                 blob_store: BlobStore):
    """
    Background continuation: keep processing batches of one job under the
    same lease until it is finished or the batch cap is reached.
    """
    max_batches = get_settings().worker_max_batches
    db = session_factory()
    try:
        worker = BatchWorker(
            db,
            worker_id=worker_id,
            client_factory=client_factory,
            blob_store=blob_store,
            owner_id=owner_id,
        )
        current: Optional[str] = job_id
        batches = 0
        while current is not None and batches < max_batches:
            result = worker.process_batch(current)
            batches += 1
            current = result.job_id if result.has_more else None
        logger.info(f"Background continuation of sync job {job_id} ran {batches} batch(es)")
    except Exception as e:
        logger.error(f"Background continuation of sync job {job_id} crashed: {sanitize_error_message(str(e))}")
    finally:
        db.close()


@router.post("/jobs")
def create_sync_job(
    principal: Principal = Depends(require(CAP_SYNC)),
    db: Session = Depends(get_db),
    client_factory: MailboxClientFactory = Depends(get_client_factory),
):
    """
    Plan a sync for the caller's mailbox.

    Returns the job, or {"message": "No new emails."} when the server has
    nothing that is not already stored (no job is created).
    """
    try:
        service = SyncService(db, client_factory=client_factory)
        job = service.create_sync_job(principal.owner_id)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to create sync job for owner {principal.owner_id}: {sanitize_error_message(str(e))}")
        return _error_response(e)

    if job is None:
        return {"message": NO_NEW_EMAILS}
    return SyncJobResponse.model_validate(job)


@router.get("/jobs", response_model=SyncJobListResponse)
async def list_sync_jobs(
    limit: int = Query(20, ge=1, le=100, description="Maximum jobs to return"),
    principal: Principal = Depends(require(CAP_SYNC)),
    db: Session = Depends(get_db),
):
    jobs = SyncJobStore(db).list_for_owner(principal.owner_id, limit=limit)
    return SyncJobListResponse(jobs=[SyncJobResponse.model_validate(job) for job in jobs])


@router.get("/jobs/{job_id}", response_model=SyncJobResponse)
async def get_sync_job(
    job_id: str,
    principal: Principal = Depends(require(CAP_SYNC)),
    db: Session = Depends(get_db),
):
    job = SyncJobStore(db).get_for_owner(job_id, principal.owner_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Sync job not found")
    return SyncJobResponse.model_validate(job)


@router.post("/process-batch")
def process_batch(
    background_tasks: BackgroundTasks,
    request: Optional[ProcessBatchRequest] = Body(None),
    principal: Principal = Depends(require(CAP_SYNC)),
    db: Session = Depends(get_db),
    session_factory: SessionFactory = Depends(get_session_factory),
    client_factory: MailboxClientFactory = Depends(get_client_factory),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """
    Run one batch of the caller's job (the given one, or the oldest pending).
    When work remains, the job continues as a background task.
    """
    job_id = request.job_id if request else None
    if job_id is not None and SyncJobStore(db).get_for_owner(job_id, principal.owner_id) is None:
        raise HTTPException(status_code=404, detail="Sync job not found")

    worker_id = f"api-{uuid.uuid4().hex[:12]}"

    def schedule(next_job_id: str):
        background_tasks.add_task(
            continue_job, next_job_id, worker_id, principal.owner_id,
            session_factory, client_factory, blob_store,
        )

    try:
        worker = BatchWorker(
            db,
            worker_id=worker_id,
            client_factory=client_factory,
            blob_store=blob_store,
            continuation=schedule,
            owner_id=principal.owner_id,
        )
        result = worker.process_batch(job_id)
    except Exception as e:
        db.rollback()
        logger.error(f"Batch processing failed for owner {principal.owner_id}: {sanitize_error_message(str(e))}")
        return _error_response(e)

    return ProcessBatchResponse(**result.to_dict())


@router.post("/run-all", response_model=RunAllResponse)
def run_all(
    principal: Principal = Depends(require(CAP_SYNC_ALL, owner_required=False)),
    db: Session = Depends(get_db),
    client_factory: MailboxClientFactory = Depends(get_client_factory),
):
    """Create a sync job for every configured account"""
    try:
        summary = SyncService(db, client_factory=client_factory).sync_all_accounts()
    except Exception as e:
        db.rollback()
        logger.error(f"Scheduled sync pass failed: {sanitize_error_message(str(e))}")
        return _error_response(e)
    return RunAllResponse(**summary)
