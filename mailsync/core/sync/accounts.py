"""
Turning a stored MailAccount into IMAP connection settings.
"""
from typing import Optional
import logging

from mailsync.core.config import Settings, get_settings
from mailsync.core.database.encryption import CredentialVault
from mailsync.core.database.models import MailAccount
from mailsync.core.database.repository import AccountRepository
from mailsync.core.email.imap_monitor import IMAPConfig
from mailsync.core.errors import AccountNotConfiguredError, ConfigurationError

logger = logging.getLogger(__name__)


def load_account(accounts: AccountRepository, owner_id: str) -> MailAccount:
    """
    Raises:
        AccountNotConfiguredError: If the owner has no stored account
    """
    account = accounts.get_by_owner(owner_id)
    if account is None:
        raise AccountNotConfiguredError(f"No mail account configured for owner {owner_id}")
    return account


def resolve_imap_config(account: MailAccount, vault: CredentialVault,
                        settings: Optional[Settings] = None) -> IMAPConfig:
    """
    Build connection settings for an account, decrypting its password.

    The account's own host/port win over the configured defaults.

    Raises:
        ConfigurationError: If neither the account nor settings name a server
        IntegrityError: If the stored password does not decrypt
    """
    settings = settings or get_settings()
    host = account.imap_host or settings.imap_host
    if not host:
        raise ConfigurationError(
            f"No IMAP host for owner {account.owner_id}: set IMAP_HOST or store a host on the account"
        )

    password = vault.decrypt(account.encrypted_password, account.iv)
    return IMAPConfig(
        host=host,
        username=account.imap_username,
        password=password,
        port=account.imap_port or settings.imap_port,
        use_ssl=settings.imap_use_ssl,
    )
