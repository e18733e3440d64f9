"""Database module: models, connection management, repositories and the sync job store"""
from .models import (
    Base, JobStatus, ItemStatus, TERMINAL_STATUSES,
    MailAccount, SyncJob, SyncJobItem, MailMessage, MailAttachment,
)
from .connection import get_db, init_db, create_tables

__all__ = [
    'Base',
    'JobStatus',
    'ItemStatus',
    'TERMINAL_STATUSES',
    'MailAccount',
    'SyncJob',
    'SyncJobItem',
    'MailMessage',
    'MailAttachment',
    'get_db',
    'init_db',
    'create_tables',
]
