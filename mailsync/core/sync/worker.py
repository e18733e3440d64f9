"""
Batch Worker - processes a sync job in bounded slices.

One invocation:
    1. claim a pending job (or resume the job handed over by a continuation)
    2. take the next SYNC_BATCH_SIZE pending items in plan order
    3. open one IMAP session, fetch, normalize and store each message
    4. mark the items and advance the job's progress
    5. hand the job id to the continuation if work remains

Per-message problems (unparseable message, already stored, attachment
write failure) are recorded on the item and never stop the batch. Anything
else (credentials, connection, configuration) fails the job.
"""
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
from sqlalchemy.orm import Session
from sqlalchemy.exc import OperationalError, SQLAlchemyError
import logging
import os
import socket

from mailsync.core.config import get_settings
from mailsync.core.database.encryption import CredentialVault
from mailsync.core.database.job_store import SyncJobStore
from mailsync.core.database.models import JobStatus, MailMessage
from mailsync.core.database.repository import AccountRepository, MessageRepository
from mailsync.core.email.imap_monitor import MailboxClientFactory, create_mailbox_client, open_session
from mailsync.core.email.models import NormalizedMessage
from mailsync.core.email.processor import MessageNormalizer
from mailsync.core.errors import (
    DuplicateKeyError, JobStateError, ParseError, StorageError, SyncError, describe_error,
)
from mailsync.core.storage.blob_store import BlobStore, LocalBlobStore, attachment_key, safe_filename
from .accounts import load_account, resolve_imap_config
from .models import BatchResult, ItemOutcome

logger = logging.getLogger(__name__)

Continuation = Callable[[str], None]

# (item id, mailbox, uid)
PlannedItem = Tuple[int, str, int]


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class BatchWorker:
    """
    Usage:
        worker = BatchWorker(db)
        result = worker.process_batch()      # one slice
        results = worker.run_until_idle()    # loop until no work is left
    """

    def __init__(self, db: Session,
                 worker_id: Optional[str] = None,
                 batch_size: Optional[int] = None,
                 vault: Optional[CredentialVault] = None,
                 client_factory: Optional[MailboxClientFactory] = None,
                 blob_store: Optional[BlobStore] = None,
                 normalizer: Optional[MessageNormalizer] = None,
                 continuation: Optional[Continuation] = None,
                 stale_after: Optional[timedelta] = None,
                 owner_id: Optional[str] = None):
        """
        Args:
            db: SQLAlchemy session
            worker_id: Lease holder name (defaults to host-pid)
            batch_size: Items per invocation (defaults to settings.sync_batch_size)
            vault: Credential vault (defaults to the configured master key, loaded lazily)
            client_factory: Builds the IMAP client for a config
            blob_store: Attachment storage (defaults to LocalBlobStore at settings.attachment_storage_dir)
            normalizer: Message normalizer
            continuation: Called with the job id when a batch leaves work behind
            stale_after: Lease age after which abandoned jobs are re-claimed
            owner_id: Only work on this owner's jobs
        """
        settings = get_settings()
        if stale_after is None:
            stale_after = timedelta(seconds=settings.sync_stale_after_seconds)

        self.db = db
        self.worker_id = worker_id or default_worker_id()
        self.batch_size = max(1, batch_size or settings.sync_batch_size)
        self.store = SyncJobStore(db, stale_after=stale_after)
        self.accounts = AccountRepository(db)
        self.messages = MessageRepository(db)
        self.client_factory = client_factory or create_mailbox_client
        self.blob_store = blob_store or LocalBlobStore.from_settings()
        self.normalizer = normalizer or MessageNormalizer()
        self.continuation = continuation
        self.owner_id = owner_id
        self._vault = vault

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = CredentialVault.from_settings()
        return self._vault

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def process_batch(self, job_id: Optional[str] = None) -> BatchResult:
        """
        Run one invocation and trigger the continuation if work remains.

        Args:
            job_id: Job to continue; None claims the oldest pending job
        """
        result = self._process(job_id)
        if result.has_more and self.continuation is not None:
            logger.debug(f"Scheduling continuation for sync job {result.job_id}")
            self.continuation(result.job_id)
        return result

    def run_until_idle(self, max_batches: Optional[int] = None) -> List[BatchResult]:
        """
        Keep processing until no claimable work is left or max_batches is hit.
        The loop is its own continuation.
        """
        if max_batches is None:
            max_batches = get_settings().worker_max_batches

        results: List[BatchResult] = []
        current_job: Optional[str] = None
        while len(results) < max_batches:
            result = self._process(current_job)
            if result.idle:
                if current_job is None:
                    break
                # Lost the job to another worker; look for other work
                current_job = None
                continue
            results.append(result)
            current_job = result.job_id if result.has_more else None

        if len(results) >= max_batches:
            logger.warning(f"Worker {self.worker_id} stopped after {max_batches} batches; work may remain")
        return results

    # ------------------------------------------------------------------
    # One invocation
    # ------------------------------------------------------------------

    def _acquire(self, job_id: Optional[str]):
        if job_id is None:
            return self.store.claim_next_pending(self.worker_id, owner_id=self.owner_id)

        job = self.store.get(job_id)
        if job is None or (self.owner_id is not None and job.owner_id != self.owner_id):
            logger.warning(f"Sync job {job_id} not found")
            return None
        if job.status == JobStatus.PENDING.value:
            if not self.store.try_claim(job_id, self.worker_id, job.status):
                return None
            logger.info(f"Worker {self.worker_id} claimed sync job {job_id}")
            return self.store.get(job_id)
        if job.status == JobStatus.PROCESSING.value:
            if job.worker_id == self.worker_id:
                return self.store.resume(job_id, self.worker_id)
            claimed_at = job.claimed_at
            stale_after = self.store.stale_after
            if stale_after is not None and claimed_at is not None:
                if claimed_at < datetime.utcnow() - stale_after:
                    if self.store.try_claim(job_id, self.worker_id, job.status, claimed_at):
                        logger.warning(f"Worker {self.worker_id} took over stale sync job {job_id}")
                        return self.store.get(job_id)
            logger.info(f"Sync job {job_id} is held by worker {job.worker_id}")
            return None
        logger.info(f"Sync job {job_id} is already {job.status}")
        return None

    def _process(self, job_id: Optional[str]) -> BatchResult:
        job = self._acquire(job_id)
        if job is None:
            return BatchResult()

        job_id, owner_id = job.id, job.owner_id
        try:
            return self._run_slice(job_id, owner_id)
        except JobStateError as e:
            # Lease lost mid-batch; the new holder carries on
            self.db.rollback()
            logger.warning(f"Worker {self.worker_id} gave up sync job {job_id}: {e}")
            current = self.store.get(job_id)
            return BatchResult(job_id=job_id, status=current.status if current else None, error=str(e))
        except Exception as e:
            self.db.rollback()
            error = describe_error(e)
            logger.error(f"Sync job {job_id} failed: {error}", exc_info=not isinstance(e, SyncError))
            self.store.fail(job_id, error)
            return BatchResult(job_id=job_id, status=JobStatus.FAILED.value, error=error)

    def _run_slice(self, job_id: str, owner_id: str) -> BatchResult:
        items = self.store.next_items(job_id, self.batch_size)
        planned: List[PlannedItem] = [(item.id, item.mailbox, item.uid) for item in items]

        if not planned:
            job = self.store.get(job_id)
            logger.warning(f"Sync job {job_id} has no pending items at {job.processed_count}/{job.total_count}; completing")
            job = self.store.advance(job_id, job.total_count - job.processed_count, self.worker_id)
            return BatchResult(job_id=job_id, status=job.status)

        account = load_account(self.accounts, owner_id)
        config = resolve_imap_config(account, self.vault)

        groups: Dict[str, List[PlannedItem]] = OrderedDict()
        for planned_item in planned:
            groups.setdefault(planned_item[1], []).append(planned_item)

        outcomes: List[ItemOutcome] = []
        with open_session(config, client_factory=self.client_factory) as client:
            for mailbox, group in groups.items():
                by_uid = {uid: item_id for item_id, _mailbox, uid in group}
                fetched = set()
                for uid, raw_email in client.fetch_raw(mailbox, list(by_uid)):
                    if uid not in by_uid or uid in fetched:
                        continue
                    fetched.add(uid)
                    outcomes.append(self._ingest(owner_id, by_uid[uid], mailbox, uid, raw_email))

                for uid, item_id in by_uid.items():
                    if uid not in fetched:
                        logger.info(f"{mailbox}/{uid} is gone from the server; skipping")
                        outcomes.append(ItemOutcome(item_id=item_id, mailbox=mailbox, uid=uid, missing=True))

        settled = self.store.mark_items(outcomes)
        job = self.store.advance(job_id, settled, self.worker_id)
        remaining = self.store.count_pending_items(job_id)

        result = BatchResult(
            job_id=job_id,
            status=job.status,
            attempted=len(outcomes),
            stored=sum(1 for o in outcomes if o.stored),
            duplicates=sum(1 for o in outcomes if o.duplicate),
            failed=sum(1 for o in outcomes if o.failed),
            remaining=remaining,
        )
        logger.info(f"Sync job {job_id}: {result.message} [{job.processed_count}/{job.total_count}]")
        return result

    # ------------------------------------------------------------------
    # Per message
    # ------------------------------------------------------------------

    def _ingest(self, owner_id: str, item_id: int, mailbox: str, uid: int, raw_email: bytes) -> ItemOutcome:
        outcome = ItemOutcome(item_id=item_id, mailbox=mailbox, uid=uid)

        try:
            message = self.normalizer.parse(raw_email)
        except ParseError as e:
            logger.warning(f"Skipping unparseable message {mailbox}/{uid}: {e}")
            outcome.error = describe_error(e)
            return outcome

        try:
            row = self.messages.insert_message(owner_id, mailbox, uid, message)
        except DuplicateKeyError:
            logger.debug(f"{mailbox}/{uid} already ingested")
            outcome.duplicate = True
            return outcome
        except OperationalError:
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Failed to store message {mailbox}/{uid}: {e}")
            outcome.error = describe_error(e)
            return outcome

        outcome.stored = True
        try:
            self._store_attachments(owner_id, row, message)
        except OperationalError:
            raise
        except (StorageError, SQLAlchemyError) as e:
            self.db.rollback()
            logger.warning(f"Attachments of {mailbox}/{uid} not fully stored: {e}")
            outcome.error = describe_error(e)
        return outcome

    def _store_attachments(self, owner_id: str, row: MailMessage, message: NormalizedMessage):
        """Store each named attachment at {owner}/{message id}/{filename}"""
        used_names = set()
        for attachment in message.attachments:
            if not attachment.filename:
                continue

            name = safe_filename(attachment.filename)
            stem, dot, ext = name.rpartition('.')
            if not dot:
                stem, ext = name, ''
            counter = 1
            while name in used_names:
                name = f"{stem}-{counter}.{ext}" if ext else f"{stem}-{counter}"
                counter += 1
            used_names.add(name)

            key = attachment_key(owner_id, row.id, name)
            self.blob_store.put(key, attachment.content, attachment.content_type)
            self.messages.add_attachment(row, attachment.filename, key, attachment.content_type, attachment.size)
            logger.debug(f"Stored attachment {key} ({attachment.size} bytes)")
