"""
Sync Job Store - persistence and lifecycle of resumable sync jobs.

Only this module changes SyncJob.status:

    pending --claim--> processing --advance--> completed
                            |
                            +--fail--> failed

Claims, lease renewals and progress updates are single conditional UPDATE
statements whose row count tells the caller whether it won, so concurrent
workers never need in-process locks.
"""
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union
from datetime import datetime, timedelta
from sqlalchemy.orm import Session
from sqlalchemy import select, update, and_, or_, case, func
from sqlalchemy.exc import IntegrityError
import logging

from .models import SyncJob, SyncJobItem, JobStatus, ItemStatus, TERMINAL_STATUSES
from mailsync.core.errors import JobStateError, sanitize_error_message
from mailsync.core.sync.models import WorkPlan, ItemOutcome

logger = logging.getLogger(__name__)

# Claim candidates inspected per call; losing a race on one moves on to the next
CLAIM_CANDIDATES = 5


class SyncJobStore:
    """
    Repository for SyncJob / SyncJobItem rows.

    Every public mutator commits before returning.
    """

    def __init__(self, db: Session, stale_after: Optional[timedelta] = None):
        """
        Args:
            db: SQLAlchemy session
            stale_after: Age after which a processing job's lease may be taken
                over by another worker (None disables re-claiming)
        """
        self.db = db
        self.stale_after = stale_after

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    def create(self, owner_id: str, plan: Union[WorkPlan, Mapping[str, Sequence[int]]]) -> SyncJob:
        """
        Persist a pending job for a non-empty plan.

        Items are laid out in sorted mailbox order, ascending uid within a mailbox.
        An owner has at most one pending or processing job; if another one
        already exists it is returned and the plan is dropped.

        Raises:
            ValueError: If the plan contains no identifiers
        """
        mailboxes = plan.mailboxes if isinstance(plan, WorkPlan) else plan
        ordered: Dict[str, List[int]] = {
            mailbox: sorted({int(uid) for uid in uids})
            for mailbox, uids in sorted(mailboxes.items())
            if uids
        }
        total = sum(len(uids) for uids in ordered.values())
        if total == 0:
            raise ValueError("Refusing to create a sync job with an empty plan")

        job = SyncJob(
            owner_id=owner_id,
            status=JobStatus.PENDING.value,
            uids_to_process=ordered,
            total_count=total,
            processed_count=0,
        )
        position = 0
        for mailbox, uids in ordered.items():
            for uid in uids:
                job.items.append(SyncJobItem(position=position, mailbox=mailbox, uid=uid))
                position += 1

        self.db.add(job)
        try:
            self.db.commit()
        except IntegrityError:
            # uq_sync_jobs_owner_active: a concurrent create won
            self.db.rollback()
            active = self.get_active_job(owner_id)
            if active is None:
                raise
            logger.info(f"Owner {owner_id} got sync job {active.id} from a concurrent create")
            return active
        logger.info(f"Created sync job {job.id} for owner {owner_id}: {total} message(s) in {len(ordered)} mailbox(es)")
        return job

    def get(self, job_id: str) -> Optional[SyncJob]:
        return self.db.get(SyncJob, job_id, populate_existing=True)

    def get_for_owner(self, job_id: str, owner_id: str) -> Optional[SyncJob]:
        job = self.get(job_id)
        if job is None or job.owner_id != owner_id:
            return None
        return job

    def list_for_owner(self, owner_id: str, limit: int = 20) -> List[SyncJob]:
        stmt = (
            select(SyncJob)
            .where(SyncJob.owner_id == owner_id)
            .order_by(SyncJob.created_at.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars())

    def get_active_job(self, owner_id: str) -> Optional[SyncJob]:
        """Newest pending or processing job of an owner"""
        stmt = (
            select(SyncJob)
            .where(SyncJob.owner_id == owner_id, SyncJob.status.notin_(TERMINAL_STATUSES))
            .order_by(SyncJob.created_at.desc())
            .limit(1)
        )
        return self.db.execute(stmt).scalars().first()

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    def try_claim(self, job_id: str, worker_id: str, expected_status: str,
                  expected_claimed_at: Optional[datetime] = None) -> bool:
        """
        Compare-and-set claim of one job.

        The UPDATE only matches while the job is still in the state the caller
        observed, so of several concurrent callers exactly one sees rowcount 1.

        Returns:
            True if this worker now holds the job
        """
        now = datetime.utcnow()
        stmt = (
            update(SyncJob)
            .where(SyncJob.id == job_id)
            .where(SyncJob.status == expected_status)
        )
        if expected_status == JobStatus.PROCESSING.value:
            # Re-claim of a stale lease: the lease must not have been renewed meanwhile
            stmt = stmt.where(SyncJob.claimed_at == expected_claimed_at)
        stmt = stmt.values(
            status=JobStatus.PROCESSING.value,
            worker_id=worker_id,
            claimed_at=now,
            updated_at=now,
        ).execution_options(synchronize_session=False)

        result = self.db.execute(stmt)
        self.db.commit()
        return result.rowcount == 1

    def claim_next_pending(self, worker_id: str, owner_id: Optional[str] = None) -> Optional[SyncJob]:
        """
        Atomically take the oldest claimable job.

        Claimable: pending, or processing with a lease older than stale_after.

        Args:
            worker_id: Lease holder name
            owner_id: Restrict to one owner's jobs

        Returns:
            The claimed job (status processing), or None if nothing is claimable
        """
        conditions = [SyncJob.status == JobStatus.PENDING.value]
        if self.stale_after is not None:
            cutoff = datetime.utcnow() - self.stale_after
            conditions.append(and_(
                SyncJob.status == JobStatus.PROCESSING.value,
                SyncJob.claimed_at < cutoff,
            ))

        stmt = select(SyncJob.id, SyncJob.status, SyncJob.claimed_at).where(or_(*conditions))
        if owner_id is not None:
            stmt = stmt.where(SyncJob.owner_id == owner_id)
        candidates = self.db.execute(
            stmt.order_by(SyncJob.created_at, SyncJob.id).limit(CLAIM_CANDIDATES)
        ).all()

        for job_id, status, claimed_at in candidates:
            if self.try_claim(job_id, worker_id, status, claimed_at):
                if status == JobStatus.PROCESSING.value:
                    logger.warning(f"Worker {worker_id} re-claimed stale sync job {job_id} (lease from {claimed_at})")
                else:
                    logger.info(f"Worker {worker_id} claimed sync job {job_id}")
                return self.get(job_id)
            logger.debug(f"Lost claim race for sync job {job_id}")

        return None

    def resume(self, job_id: str, worker_id: str) -> Optional[SyncJob]:
        """
        Renew the lease on a job this worker already holds (continuation).

        Returns:
            The job, or None if it is no longer processing under this worker
        """
        now = datetime.utcnow()
        result = self.db.execute(
            update(SyncJob)
            .where(
                SyncJob.id == job_id,
                SyncJob.status == JobStatus.PROCESSING.value,
                SyncJob.worker_id == worker_id,
            )
            .values(claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            logger.info(f"Sync job {job_id} is not held by worker {worker_id}; not resuming")
            return None
        return self.get(job_id)

    # ------------------------------------------------------------------
    # Work list
    # ------------------------------------------------------------------

    def next_items(self, job_id: str, limit: int) -> List[SyncJobItem]:
        """Next pending items of a job in plan order"""
        stmt = (
            select(SyncJobItem)
            .where(SyncJobItem.job_id == job_id, SyncJobItem.status == ItemStatus.PENDING.value)
            .order_by(SyncJobItem.position)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars())

    def count_pending_items(self, job_id: str) -> int:
        stmt = select(func.count(SyncJobItem.id)).where(
            SyncJobItem.job_id == job_id,
            SyncJobItem.status == ItemStatus.PENDING.value,
        )
        return self.db.execute(stmt).scalar_one()

    def mark_items(self, outcomes: Iterable[ItemOutcome]) -> int:
        """
        Record per-item results. Flushed only; the following advance() commits
        them together with the progress counter.

        Returns:
            Number of items that moved out of pending (items already settled
            by an overlapping invocation are not counted again)
        """
        now = datetime.utcnow()
        settled = 0
        for outcome in outcomes:
            values = {
                'status': ItemStatus.FAILED.value if outcome.failed else ItemStatus.DONE.value,
                'error': sanitize_error_message(outcome.error) if outcome.error else None,
                'attempted_at': now,
            }
            result = self.db.execute(
                update(SyncJobItem)
                .where(SyncJobItem.id == outcome.item_id, SyncJobItem.status == ItemStatus.PENDING.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            settled += result.rowcount
        self.db.flush()
        return settled

    # ------------------------------------------------------------------
    # Progress and termination
    # ------------------------------------------------------------------

    def advance(self, job_id: str, processed_delta: int, worker_id: Optional[str] = None) -> SyncJob:
        """
        Add processed_delta to processed_count (clamped to total_count) and
        complete the job when it reaches the total, in one UPDATE.

        Args:
            job_id: Job to advance
            processed_delta: Number of items attempted since the last advance
            worker_id: When given, only the current lease holder may advance

        Raises:
            ValueError: If processed_delta is negative
            JobStateError: If the job is not processing
        """
        if processed_delta < 0:
            raise ValueError(f"processed_delta must be >= 0, got {processed_delta}")

        new_count = SyncJob.processed_count + processed_delta
        stmt = update(SyncJob).where(SyncJob.id == job_id, SyncJob.status == JobStatus.PROCESSING.value)
        if worker_id is not None:
            stmt = stmt.where(SyncJob.worker_id == worker_id)
        result = self.db.execute(
            stmt
            .values(
                processed_count=case(
                    (new_count > SyncJob.total_count, SyncJob.total_count),
                    else_=new_count,
                ),
                status=case(
                    (new_count >= SyncJob.total_count, JobStatus.COMPLETED.value),
                    else_=SyncJob.status,
                ),
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            job = self.get(job_id)
            state = job.status if job else "missing"
            raise JobStateError(f"Cannot advance sync job {job_id}: job is {state}")

        self.db.commit()
        job = self.get(job_id)
        if job.status == JobStatus.COMPLETED.value:
            logger.info(f"Sync job {job_id} completed ({job.processed_count}/{job.total_count})")
        else:
            logger.debug(f"Sync job {job_id} progress {job.processed_count}/{job.total_count}")
        return job

    def fail(self, job_id: str, error_message: str) -> Optional[SyncJob]:
        """
        Move a pending or processing job to failed. Failing a job that is
        already terminal leaves it as it is.

        Returns:
            The job, or None if it does not exist
        """
        message = sanitize_error_message(error_message or "Unknown error")
        result = self.db.execute(
            update(SyncJob)
            .where(SyncJob.id == job_id, SyncJob.status.notin_(TERMINAL_STATUSES))
            .values(
                status=JobStatus.FAILED.value,
                error_message=message,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        job = self.get(job_id)
        if result.rowcount == 1:
            logger.error(f"Sync job {job_id} failed: {message}")
        elif job is not None:
            logger.warning(f"Sync job {job_id} already {job.status}; not marking failed")
        return job
