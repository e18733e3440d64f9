"""
Shared fixtures: an SQLite database per test, a scripted in-memory IMAP
server, and raw RFC 822 messages.
"""
# Settings are read at import time by several modules; configure them first
import os

TEST_ENCRYPTION_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
TEST_API_KEY = "test-api-key"
TEST_ADMIN_API_KEY = "test-admin-api-key"

os.environ["APP_ENCRYPTION_KEY"] = TEST_ENCRYPTION_KEY
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["API_KEY"] = TEST_API_KEY
os.environ["ADMIN_API_KEY"] = TEST_ADMIN_API_KEY
os.environ["IMAP_HOST"] = ""

import pytest
from email.message import EmailMessage
from typing import Dict, List, Optional
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from mailsync.core.config import reload_settings
from mailsync.core.database.encryption import reset_master_key
from mailsync.core.database.models import Base
from mailsync.core.storage.blob_store import LocalBlobStore

reload_settings()
reset_master_key()

OWNER = "alice"

POISON_MESSAGE = b"this is not an rfc822 message\r\n"


def make_message(uid: int, subject: Optional[str] = None, body: Optional[str] = None,
                 sender: str = "Bob Sender <bob@example.org>",
                 attachments: Optional[List[tuple]] = None) -> bytes:
    """Raw RFC 822 bytes; attachments are (filename, bytes, maintype, subtype)"""
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = "alice@example.org"
    msg["Subject"] = subject or f"Message {uid}"
    msg["Date"] = f"Mon, {uid % 28 + 1} Jan 2024 12:00:00 +0000"
    msg["Message-ID"] = f"<msg-{uid}@example.org>"
    msg.set_content(body or f"Body of message {uid}")
    for filename, content, maintype, subtype in attachments or []:
        msg.add_attachment(content, maintype=maintype, subtype=subtype, filename=filename)
    return msg.as_bytes()


class FakeMailboxClient:
    """Stands in for MailboxClient; reads from a FakeMailServer"""

    def __init__(self, server: "FakeMailServer", config):
        self.server = server
        self.config = config
        self.connected = False
        self.closed = False

    def connect(self):
        if self.server.connect_error is not None:
            raise self.server.connect_error
        self.connected = True

    def list_mailboxes(self) -> List[str]:
        return list(self.server.mailboxes)

    def list_message_ids(self, mailbox: str) -> List[int]:
        return sorted(self.server.mailboxes.get(mailbox, {}))

    def fetch_raw(self, mailbox, uids, chunk_size=25):
        self.server.fetched.append((mailbox, sorted(uids)))
        messages = self.server.mailboxes.get(mailbox, {})
        for uid in sorted(uids):
            if self.server.fetch_error is not None and uid == self.server.fetch_error_at:
                raise self.server.fetch_error
            if uid in messages:
                yield uid, messages[uid]

    def close(self):
        self.closed = True


class FakeMailServer:
    """
    Mailbox contents keyed by mailbox then uid.

    Pass server.factory wherever a MailboxClientFactory is accepted.
    """

    def __init__(self, mailboxes: Optional[Dict[str, Dict[int, bytes]]] = None):
        self.mailboxes: Dict[str, Dict[int, bytes]] = mailboxes or {}
        self.connect_error: Optional[Exception] = None
        # fetch_raw raises fetch_error on reaching uid fetch_error_at
        self.fetch_error: Optional[Exception] = None
        self.fetch_error_at: Optional[int] = None
        self.clients: List[FakeMailboxClient] = []
        self.fetched: List[tuple] = []

    def factory(self, config) -> FakeMailboxClient:
        client = FakeMailboxClient(self, config)
        self.clients.append(client)
        return client

    def fill(self, mailbox: str, uids) -> "FakeMailServer":
        box = self.mailboxes.setdefault(mailbox, {})
        for uid in uids:
            box[uid] = make_message(uid)
        return self


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so separate sessions see each other's commits"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'mailsync.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def mail_server():
    return FakeMailServer()


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def account(db_session):
    """Alice's stored account pointing at imap.example.org"""
    from mailsync.core.sync.service import SyncService

    return SyncService(db_session).save_account(
        OWNER, "alice@example.org", "alice", "correct horse battery staple",
        imap_host="imap.example.org",
    )


@pytest.fixture
def raw_email_simple():
    return b"""From: Bob Sender <bob@example.org>
To: alice@example.org
Subject: Test Email
Date: Mon, 1 Jan 2024 12:00:00 +0200
Message-ID: <test@example.org>

This is a test email.
"""


@pytest.fixture
def poison_message():
    return POISON_MESSAGE


@pytest.fixture
def message_factory():
    return make_message


@pytest.fixture
def api_client(session_factory, mail_server, blob_store):
    """TestClient wired to the test database, mail server and blob store"""
    from fastapi.testclient import TestClient
    from mailsync.api.dependencies import get_blob_store, get_client_factory, get_session_factory
    from mailsync.api.main import app
    from mailsync.core.database import get_db

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_client_factory] = lambda: mail_server.factory
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def owner_headers():
    return {"X-API-Key": TEST_API_KEY, "X-Owner-Id": OWNER}


@pytest.fixture
def admin_headers():
    return {"X-API-Key": TEST_ADMIN_API_KEY}
