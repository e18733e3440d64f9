"""
FastAPI dependencies for sync collaborators.

Tests replace these through app.dependency_overrides.
"""
from typing import Callable
from sqlalchemy.orm import Session

from mailsync.core.database import connection
from mailsync.core.email.imap_monitor import MailboxClientFactory, create_mailbox_client
from mailsync.core.storage.blob_store import BlobStore, LocalBlobStore

SessionFactory = Callable[[], Session]


def get_session_factory() -> SessionFactory:
    """
    Session factory for work that outlives the request (background
    continuation of a sync job).
    """
    if connection.SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return connection.SessionLocal


def get_client_factory() -> MailboxClientFactory:
    return create_mailbox_client


def get_blob_store() -> BlobStore:
    return LocalBlobStore.from_settings()
