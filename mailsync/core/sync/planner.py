"""
Sync Planner - what has the server got that we have not ingested yet?

Read-only: planning opens one IMAP session, lists every selectable mailbox,
and diffs the server's UIDs against the stored ones. Nothing is written;
persisting the plan is the job store's business.
"""
from typing import Dict, Iterable, List, Mapping, Optional, Set
from sqlalchemy.orm import Session
import logging

from mailsync.core.database.encryption import CredentialVault
from mailsync.core.database.repository import AccountRepository, MessageRepository
from mailsync.core.email.imap_monitor import MailboxClientFactory, create_mailbox_client, open_session
from .accounts import load_account, resolve_imap_config
from .models import WorkPlan

logger = logging.getLogger(__name__)


def compute_delta(server_uids: Mapping[str, Iterable[int]],
                  ingested_uids: Mapping[str, Set[int]]) -> Dict[str, List[int]]:
    """
    Per-mailbox set difference, mailboxes sorted, uids ascending.
    Mailboxes with nothing new are left out.
    """
    delta: Dict[str, List[int]] = {}
    for mailbox in sorted(server_uids):
        known = ingested_uids.get(mailbox, set())
        new_uids = sorted(set(server_uids[mailbox]) - known)
        if new_uids:
            delta[mailbox] = new_uids
    return delta


class SyncPlanner:
    """Computes the work plan for one owner"""

    def __init__(self, db: Session,
                 vault: Optional[CredentialVault] = None,
                 client_factory: Optional[MailboxClientFactory] = None):
        self.accounts = AccountRepository(db)
        self.messages = MessageRepository(db)
        self._vault = vault
        self.client_factory = client_factory or create_mailbox_client

    @property
    def vault(self) -> CredentialVault:
        # Master key is only required once a credential is actually needed
        if self._vault is None:
            self._vault = CredentialVault.from_settings()
        return self._vault

    def plan(self, owner_id: str) -> Optional[WorkPlan]:
        """
        Diff the owner's mailboxes against already-ingested messages.

        Returns:
            WorkPlan with at least one identifier, or None if nothing is new

        Raises:
            AccountNotConfiguredError: Owner has no stored account
            ConfigurationError: No server host / master key
            IntegrityError: Stored password does not decrypt
            MailboxConnectionError: Server unreachable or login rejected
        """
        account = load_account(self.accounts, owner_id)
        config = resolve_imap_config(account, self.vault)

        server_uids: Dict[str, List[int]] = {}
        with open_session(config, client_factory=self.client_factory) as client:
            for mailbox in client.list_mailboxes():
                server_uids[mailbox] = client.list_message_ids(mailbox)
            ingested = self.messages.ingested_uids(owner_id)

        delta = compute_delta(server_uids, ingested)
        if not delta:
            logger.info(f"No new messages for owner {owner_id} across {len(server_uids)} mailbox(es)")
            return None

        plan = WorkPlan(owner_id=owner_id, mailboxes=delta)
        logger.info(
            f"Planned {plan.total_count} new message(s) for owner {owner_id}: "
            + ", ".join(f"{mailbox}={len(uids)}" for mailbox, uids in delta.items())
        )
        return plan
