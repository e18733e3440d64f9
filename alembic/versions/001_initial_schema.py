"""Initial schema - creates all tables and indexes for mailsync.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

This migration creates the complete database schema from scratch.
For existing databases, use `alembic stamp head` instead of running this.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables and indexes."""

    # mail_accounts - one IMAP account per owner, password encrypted (AES-GCM)
    op.create_table('mail_accounts',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('owner_id', sa.String(100), nullable=False),
        sa.Column('email_address', sa.String(500), nullable=False),
        sa.Column('imap_host', sa.String(255), nullable=True),
        sa.Column('imap_port', sa.Integer(), nullable=True),
        sa.Column('imap_username', sa.String(500), nullable=False),
        sa.Column('encrypted_password', sa.Text(), nullable=False),
        sa.Column('iv', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_mail_accounts_owner_id', 'mail_accounts', ['owner_id'], unique=True)

    # sync_jobs - one planned sync per owner, advanced by batch workers
    op.create_table('sync_jobs',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('owner_id', sa.String(100), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('uids_to_process', sa.JSON(), nullable=False),
        sa.Column('total_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('worker_id', sa.String(100), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('processed_count <= total_count', name='ck_sync_jobs_progress_bounded'),
    )
    op.create_index('ix_sync_jobs_owner_id', 'sync_jobs', ['owner_id'])
    op.create_index('ix_sync_jobs_status_created', 'sync_jobs', ['status', 'created_at'])
    op.create_index('ix_sync_jobs_owner_created', 'sync_jobs', ['owner_id', 'created_at'])
    op.create_index(
        'uq_sync_jobs_owner_active', 'sync_jobs', ['owner_id'], unique=True,
        postgresql_where=sa.text("status IN ('pending', 'processing')"),
        sqlite_where=sa.text("status IN ('pending', 'processing')"),
    )

    # sync_job_items - the plan, one row per (mailbox, uid)
    op.create_table('sync_job_items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('job_id', sa.String(36), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('mailbox', sa.String(500), nullable=False),
        sa.Column('uid', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('attempted_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['job_id'], ['sync_jobs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_sync_job_items_job_status_position', 'sync_job_items', ['job_id', 'status', 'position'])
    op.create_index('ix_sync_job_items_job_mailbox_uid', 'sync_job_items', ['job_id', 'mailbox', 'uid'], unique=True)

    # mail_messages - ingested messages, (owner_id, mailbox, uid) is the idempotency key
    op.create_table('mail_messages',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('owner_id', sa.String(100), nullable=False),
        sa.Column('mailbox', sa.String(500), nullable=False),
        sa.Column('uid', sa.BigInteger(), nullable=False),
        sa.Column('message_id', sa.String(998), nullable=True),
        sa.Column('from_address', sa.Text(), nullable=True),
        sa.Column('to_address', sa.Text(), nullable=True),
        sa.Column('subject', sa.Text(), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('body_text', sa.Text(), nullable=True),
        sa.Column('body_html', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_mail_messages_owner_mailbox_uid', 'mail_messages', ['owner_id', 'mailbox', 'uid'], unique=True)
    op.create_index('ix_mail_messages_owner_sent', 'mail_messages', ['owner_id', 'sent_at'])

    # mail_attachments - bytes live in the blob store at storage_path
    op.create_table('mail_attachments',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('message_id', sa.String(36), nullable=False),
        sa.Column('file_name', sa.String(500), nullable=False),
        sa.Column('storage_path', sa.String(1000), nullable=False),
        sa.Column('content_type', sa.String(255), nullable=True),
        sa.Column('size', sa.Integer(), server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['message_id'], ['mail_messages.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_mail_attachments_message_id', 'mail_attachments', ['message_id'])


def downgrade() -> None:
    """Drop all tables."""
    # Drop in reverse order due to foreign key constraints
    op.drop_table('mail_attachments')
    op.drop_table('mail_messages')
    op.drop_table('sync_job_items')
    op.drop_table('sync_jobs')
    op.drop_table('mail_accounts')
