"""
SQLAlchemy Database Models for mailbox sync

Stores:
- Mail accounts (encrypted IMAP credentials, one per owner)
- Sync jobs (resumable unit-of-work with progress counters)
- Sync job items (ordered work list, one row per planned message)
- Ingested messages and their attachment records

Encryption:
- Mailbox passwords are encrypted by the credential vault (AES-256-GCM)
  before they reach the database; see encryption.py
"""
from sqlalchemy import Column, String, Integer, BigInteger, DateTime, Text, JSON, ForeignKey, Index, CheckConstraint, text
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime
from enum import Enum
import uuid

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class JobStatus(str, Enum):
    """Sync job lifecycle: pending -> processing -> completed | failed"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)
ACTIVE_JOB_CLAUSE = "status IN ('pending', 'processing')"


class ItemStatus(str, Enum):
    """Status of a single planned message within a job"""
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class MailAccount(Base):
    """
    Owner's mailbox account. Written by the owner's settings action,
    read-only to the sync subsystem.
    """
    __tablename__ = "mail_accounts"

    id = Column(String(36), primary_key=True, default=_new_id)
    owner_id = Column(String(100), nullable=False, unique=True, index=True)

    email_address = Column(String(500), nullable=False)
    imap_host = Column(String(255))  # Falls back to settings.imap_host
    imap_port = Column(Integer)      # Falls back to settings.imap_port
    imap_username = Column(String(500), nullable=False)

    # Credential vault output (base64); plaintext is never stored
    encrypted_password = Column(Text, nullable=False)
    iv = Column(String(64), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SyncJob(Base):
    """
    Resumable sync job.

    uids_to_process keeps the plan as created (mailbox -> sorted uids) for display;
    the remaining work is tracked in sync_job_items.
    """
    __tablename__ = "sync_jobs"

    id = Column(String(36), primary_key=True, default=_new_id)
    owner_id = Column(String(100), nullable=False, index=True)

    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    uids_to_process = Column(JSON, nullable=False, default=dict)
    total_count = Column(Integer, nullable=False, default=0)
    processed_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)

    # Lease held by the worker currently processing the job
    worker_id = Column(String(100))
    claimed_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    items = relationship(
        "SyncJobItem",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="SyncJobItem.position",
    )

    __table_args__ = (
        Index('ix_sync_jobs_status_created', 'status', 'created_at'),  # claim_next_pending
        Index('ix_sync_jobs_owner_created', 'owner_id', 'created_at'),
        CheckConstraint('processed_count <= total_count', name='ck_sync_jobs_progress_bounded'),
        # At most one pending or processing job per owner
        Index('uq_sync_jobs_owner_active', 'owner_id', unique=True,
              postgresql_where=text(ACTIVE_JOB_CLAUSE), sqlite_where=text(ACTIVE_JOB_CLAUSE)),
    )


class SyncJobItem(Base):
    """One planned message of a job. Items are consumed in position order."""
    __tablename__ = "sync_job_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey('sync_jobs.id', ondelete='CASCADE'), nullable=False)
    position = Column(Integer, nullable=False)
    mailbox = Column(String(500), nullable=False)
    uid = Column(BigInteger, nullable=False)  # IMAP UIDs are unsigned 32-bit
    status = Column(String(20), nullable=False, default=ItemStatus.PENDING.value)
    error = Column(Text)
    attempted_at = Column(DateTime)

    job = relationship("SyncJob", back_populates="items")

    __table_args__ = (
        Index('ix_sync_job_items_job_status_position', 'job_id', 'status', 'position'),
        Index('ix_sync_job_items_job_mailbox_uid', 'job_id', 'mailbox', 'uid', unique=True),
    )


class MailMessage(Base):
    """
    Ingested message. Created exactly once by the batch worker, never mutated.
    (owner_id, mailbox, uid) is the idempotency key.
    """
    __tablename__ = "mail_messages"

    id = Column(String(36), primary_key=True, default=_new_id)
    owner_id = Column(String(100), nullable=False)
    mailbox = Column(String(500), nullable=False)
    uid = Column(BigInteger, nullable=False)  # IMAP UIDs are unsigned 32-bit

    message_id = Column(String(998))  # RFC822 Message-ID header
    from_address = Column(Text)
    to_address = Column(Text)
    subject = Column(Text)
    sent_at = Column(DateTime(timezone=True))
    body_text = Column(Text)
    body_html = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    attachments = relationship(
        "MailAttachment",
        back_populates="message",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index('ix_mail_messages_owner_mailbox_uid', 'owner_id', 'mailbox', 'uid', unique=True),
        Index('ix_mail_messages_owner_sent', 'owner_id', 'sent_at'),
    )


class MailAttachment(Base):
    """Attachment record; bytes live in the blob store at storage_path."""
    __tablename__ = "mail_attachments"

    id = Column(String(36), primary_key=True, default=_new_id)
    message_id = Column(String(36), ForeignKey('mail_messages.id', ondelete='CASCADE'), nullable=False, index=True)
    file_name = Column(String(500), nullable=False)
    storage_path = Column(String(1000), nullable=False)
    content_type = Column(String(255))
    size = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    message = relationship("MailMessage", back_populates="attachments")
