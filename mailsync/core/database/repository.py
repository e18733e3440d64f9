"""
Database Repository - message and account persistence for mailbox sync.

MessageRepository is the only writer of mail_messages / mail_attachments.
AccountRepository is written by the owner's settings action and read by the sync core.
"""
from typing import Optional, List, Dict, Set, Tuple
from datetime import datetime
from sqlalchemy.orm import Session, selectinload
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
import logging

from .models import MailAccount, MailMessage, MailAttachment
from mailsync.core.email.models import NormalizedMessage
from mailsync.core.errors import DuplicateKeyError

logger = logging.getLogger(__name__)


def clean_text(text: Optional[str], field_name: str = "text", max_length: Optional[int] = None) -> Optional[str]:
    """
    Make parsed header/body text storable.

    PostgreSQL text columns reject NUL characters, and lone surrogates
    (left behind by lenient charset decoding) cannot be encoded as UTF-8.

    Args:
        text: Value to clean (None passes through)
        field_name: Column name, for debug logging
        max_length: Truncate to this many characters

    Returns:
        Cleaned text or None
    """
    if text is None:
        return None

    cleaned = text.replace('\x00', '')
    if len(cleaned) != len(text):
        logger.debug(f"Removed {len(text) - len(cleaned)} NUL byte(s) from {field_name}")

    try:
        cleaned.encode('utf-8')
    except UnicodeEncodeError:
        cleaned = cleaned.encode('utf-8', errors='replace').decode('utf-8')
        logger.debug(f"Replaced surrogate characters in {field_name}")

    if max_length and len(cleaned) > max_length:
        cleaned = cleaned[:max_length]
    return cleaned


class MessageRepository:
    """
    Ingested message storage.

    (owner_id, mailbox, uid) is the idempotency key: a second insert for the
    same key raises DuplicateKeyError and leaves the stored row untouched.
    """

    def __init__(self, db: Session):
        self.db = db

    def ingested_uids(self, owner_id: str) -> Dict[str, Set[int]]:
        """
        Load every ingested identifier for an owner, grouped by mailbox.

        Returns:
            Dict of mailbox -> set of uids (mailboxes with nothing stored are absent)
        """
        rows = self.db.execute(
            select(MailMessage.mailbox, MailMessage.uid).where(MailMessage.owner_id == owner_id)
        ).all()

        ingested: Dict[str, Set[int]] = {}
        for mailbox, uid in rows:
            ingested.setdefault(mailbox, set()).add(uid)
        return ingested

    def exists(self, owner_id: str, mailbox: str, uid: int) -> bool:
        stmt = select(MailMessage.id).where(
            MailMessage.owner_id == owner_id,
            MailMessage.mailbox == mailbox,
            MailMessage.uid == uid,
        )
        return self.db.execute(stmt).first() is not None

    def insert_message(self, owner_id: str, mailbox: str, uid: int, message: NormalizedMessage) -> MailMessage:
        """
        Insert a normalized message and commit it.

        Args:
            owner_id: Owner the message belongs to
            mailbox: Mailbox path the message was fetched from
            uid: Server UID within the mailbox
            message: Output of the message normalizer

        Returns:
            The new MailMessage row

        Raises:
            DuplicateKeyError: If (owner_id, mailbox, uid) is already stored
        """
        if self.exists(owner_id, mailbox, uid):
            raise DuplicateKeyError(f"Message {mailbox}/{uid} already stored for owner {owner_id}")

        row = MailMessage(
            owner_id=owner_id,
            mailbox=mailbox,
            uid=uid,
            message_id=clean_text(message.message_id, 'message_id', max_length=998),
            from_address=clean_text(message.from_address, 'from_address'),
            to_address=clean_text(message.to_address, 'to_address'),
            subject=clean_text(message.subject, 'subject'),
            sent_at=message.sent_at,
            body_text=clean_text(message.body_text, 'body_text'),
            body_html=clean_text(message.body_html, 'body_html'),
        )

        try:
            self.db.add(row)
            self.db.commit()
        except IntegrityError:
            # Lost a race with another worker inserting the same key
            self.db.rollback()
            logger.debug(f"Message {mailbox}/{uid} inserted concurrently for owner {owner_id}")
            raise DuplicateKeyError(f"Message {mailbox}/{uid} already stored for owner {owner_id}")

        logger.debug(f"Stored message {mailbox}/{uid} as {row.id}")
        return row

    def add_attachment(self, message: MailMessage, file_name: str, storage_path: str,
                       content_type: Optional[str], size: int) -> MailAttachment:
        attachment = MailAttachment(
            message_id=message.id,
            file_name=clean_text(file_name, 'file_name', max_length=500),
            storage_path=storage_path,
            content_type=content_type,
            size=size,
        )
        self.db.add(attachment)
        self.db.commit()
        return attachment

    def list_messages(self, owner_id: str, mailbox: Optional[str] = None,
                      limit: int = 50, offset: int = 0) -> Tuple[List[MailMessage], int]:
        """
        Page through an owner's messages, newest first.

        Returns:
            (messages, total matching count)
        """
        filters = [MailMessage.owner_id == owner_id]
        if mailbox:
            filters.append(MailMessage.mailbox == mailbox)

        total = self.db.execute(select(func.count(MailMessage.id)).where(*filters)).scalar_one()
        stmt = (
            select(MailMessage)
            .where(*filters)
            .order_by(MailMessage.sent_at.desc(), MailMessage.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.db.execute(stmt).scalars()), total

    def get_message(self, owner_id: str, message_id: str) -> Optional[MailMessage]:
        """Fetch one message (with attachments) if it belongs to the owner."""
        stmt = (
            select(MailMessage)
            .options(selectinload(MailMessage.attachments))
            .where(MailMessage.id == message_id, MailMessage.owner_id == owner_id)
        )
        return self.db.execute(stmt).scalar_one_or_none()


class AccountRepository:
    """Mailbox accounts, at most one per owner."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_owner(self, owner_id: str) -> Optional[MailAccount]:
        return self.db.execute(
            select(MailAccount).where(MailAccount.owner_id == owner_id)
        ).scalar_one_or_none()

    def list_all(self) -> List[MailAccount]:
        return list(self.db.execute(select(MailAccount).order_by(MailAccount.created_at)).scalars())

    def upsert(self, owner_id: str, email_address: str, imap_username: str,
               encrypted_password: str, iv: str,
               imap_host: Optional[str] = None, imap_port: Optional[int] = None) -> MailAccount:
        """
        Create or replace the owner's account.

        Args:
            encrypted_password: Vault ciphertext (base64), never plaintext
            iv: Vault IV (base64)
        """
        account = self.get_by_owner(owner_id)
        if account is None:
            account = MailAccount(owner_id=owner_id)
            self.db.add(account)
            logger.info(f"Creating mail account for owner {owner_id}")
        else:
            logger.info(f"Updating mail account for owner {owner_id}")

        account.email_address = email_address
        account.imap_username = imap_username
        account.encrypted_password = encrypted_password
        account.iv = iv
        account.imap_host = imap_host
        account.imap_port = imap_port
        account.updated_at = datetime.utcnow()

        try:
            self.db.commit()
        except IntegrityError:
            # Concurrent first save for the same owner; keep the other writer's row and overwrite it
            self.db.rollback()
            account = self.get_by_owner(owner_id)
            account.email_address = email_address
            account.imap_username = imap_username
            account.encrypted_password = encrypted_password
            account.iv = iv
            account.imap_host = imap_host
            account.imap_port = imap_port
            account.updated_at = datetime.utcnow()
            self.db.commit()

        self.db.refresh(account)
        return account
