"""
Sync service - the operations exposed to the API and the worker CLI.

Creates sync jobs from plans, runs the scheduled pass over every account,
and owns the owner's account settings action (the only writer of
MailAccount rows).
"""
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session
import logging

from mailsync.core.config import get_settings
from mailsync.core.database.encryption import CredentialVault
from mailsync.core.database.job_store import SyncJobStore
from mailsync.core.database.models import MailAccount, SyncJob
from mailsync.core.database.repository import AccountRepository
from mailsync.core.email.imap_monitor import MailboxClientFactory
from mailsync.core.errors import describe_error
from .planner import SyncPlanner

logger = logging.getLogger(__name__)

NO_NEW_EMAILS = "No new emails."


def account_to_dict(account: MailAccount) -> Dict[str, Any]:
    """Public view of an account (never includes the password or IV)"""
    return {
        'email_address': account.email_address,
        'imap_username': account.imap_username,
        'imap_host': account.imap_host,
        'imap_port': account.imap_port,
        'created_at': account.created_at.isoformat() if account.created_at else None,
        'updated_at': account.updated_at.isoformat() if account.updated_at else None,
    }


class SyncService:
    """Entry points shared by the HTTP API and sync_worker.py"""

    def __init__(self, db: Session,
                 vault: Optional[CredentialVault] = None,
                 client_factory: Optional[MailboxClientFactory] = None):
        self.db = db
        self.accounts = AccountRepository(db)
        self.store = SyncJobStore(db)
        self.planner = SyncPlanner(db, vault=vault, client_factory=client_factory)
        self._vault = vault

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = CredentialVault.from_settings()
        return self._vault

    # ------------------------------------------------------------------
    # Sync jobs
    # ------------------------------------------------------------------

    def create_sync_job(self, owner_id: str) -> Optional[SyncJob]:
        """
        Plan and persist a sync job for an owner.

        An owner with a pending or processing job gets that job back instead
        of a second, overlapping one.

        Returns:
            The job, or None when the server has nothing new
        """
        active = self.store.get_active_job(owner_id)
        if active is not None:
            logger.info(f"Owner {owner_id} already has sync job {active.id} ({active.status})")
            return active

        plan = self.planner.plan(owner_id)
        if plan is None:
            return None
        return self.store.create(owner_id, plan)

    def sync_all_accounts(self) -> Dict[str, Any]:
        """
        Scheduled pass: create a sync job for every configured account.
        A failing account is reported and does not stop the others.
        """
        accounts = self.accounts.list_all()
        if not accounts:
            logger.info("No configured mail accounts found")
            return {'message': "No accounts to sync.", 'results': []}

        logger.info(f"Starting scheduled sync for {len(accounts)} account(s)")
        owner_ids = [account.owner_id for account in accounts]
        results: List[Dict[str, Any]] = []
        for owner_id in owner_ids:
            try:
                job = self.create_sync_job(owner_id)
            except Exception as e:
                self.db.rollback()
                error = describe_error(e)
                logger.error(f"Scheduled sync failed for owner {owner_id}: {error}")
                results.append({'owner_id': owner_id, 'status': 'error', 'error': error})
                continue

            if job is None:
                results.append({'owner_id': owner_id, 'status': 'up_to_date', 'message': NO_NEW_EMAILS})
            else:
                results.append({
                    'owner_id': owner_id,
                    'status': 'job',
                    'job_id': job.id,
                    'job_status': job.status,
                    'total_count': job.total_count,
                })

        failed = sum(1 for r in results if r['status'] == 'error')
        logger.info(f"Scheduled sync finished: {len(results) - failed} ok, {failed} failed")
        return {
            'message': f"Sync process initiated for {len(owner_ids)} account(s).",
            'results': results,
        }

    # ------------------------------------------------------------------
    # Account settings
    # ------------------------------------------------------------------

    def save_account(self, owner_id: str, email_address: str, imap_username: str, password: str,
                     imap_host: Optional[str] = None, imap_port: Optional[int] = None) -> MailAccount:
        """
        Create or replace the owner's account, encrypting the password.

        Raises:
            ValueError: If email address, username or password is missing
            ConfigurationError: If the master key is missing or malformed
        """
        missing = [
            name for name, value in (
                ('email_address', email_address),
                ('imap_username', imap_username),
                ('imap_password', password),
            )
            if not value or not str(value).strip()
        ]
        if missing:
            raise ValueError(f"All fields are required (missing: {', '.join(missing)})")

        ciphertext, iv = self.vault.encrypt(password)
        return self.accounts.upsert(
            owner_id=owner_id,
            email_address=email_address.strip(),
            imap_username=imap_username.strip(),
            encrypted_password=ciphertext,
            iv=iv,
            imap_host=imap_host.strip() if imap_host else None,
            imap_port=imap_port,
        )

    def get_account(self, owner_id: str) -> Optional[Dict[str, Any]]:
        account = self.accounts.get_by_owner(owner_id)
        return account_to_dict(account) if account else None


def config_status() -> Dict[str, bool]:
    """Which server-side settings are present. Values are never returned."""
    settings = get_settings()
    return {
        'APP_ENCRYPTION_KEY': bool(settings.app_encryption_key),
        'IMAP_HOST': bool(settings.imap_host),
        'DATABASE_URL': bool(settings.database_url),
    }
