"""
Test sync planning: the delta between server and stored messages.
"""
import pytest

from mailsync.core.database.models import SyncJob
from mailsync.core.database.repository import MessageRepository
from mailsync.core.email.models import NormalizedMessage
from mailsync.core.errors import AccountNotConfiguredError, AuthenticationError, ConfigurationError
from mailsync.core.sync.planner import SyncPlanner, compute_delta
from mailsync.core.sync.service import SyncService

OWNER = "alice"


class TestComputeDelta:

    def test_set_difference_per_mailbox(self):
        delta = compute_delta(
            {"INBOX": [3, 1, 2, 4], "Sent": [10], "Archive": [5]},
            {"INBOX": {1, 2}, "Sent": {10}},
        )

        assert delta == {"Archive": [5], "INBOX": [3, 4]}
        assert list(delta) == ["Archive", "INBOX"]

    def test_nothing_new(self):
        assert compute_delta({"INBOX": [1, 2]}, {"INBOX": {1, 2}}) == {}

    def test_stored_uids_missing_on_server_are_ignored(self):
        assert compute_delta({"INBOX": [2]}, {"INBOX": {1, 2, 3}, "Gone": {9}}) == {}


class TestSyncPlanner:

    def test_plan_lists_every_mailbox(self, db_session, account, mail_server):
        mail_server.fill("INBOX", [1, 2, 3]).fill("Sent", [7])

        plan = SyncPlanner(db_session, client_factory=mail_server.factory).plan(OWNER)

        assert plan.owner_id == OWNER
        assert plan.mailboxes == {"INBOX": [1, 2, 3], "Sent": [7]}
        assert plan.total_count == 4

    def test_plan_skips_ingested(self, db_session, account, mail_server):
        mail_server.fill("INBOX", [1, 2, 3])
        MessageRepository(db_session).insert_message(OWNER, "INBOX", 2, NormalizedMessage(subject="stored"))

        plan = SyncPlanner(db_session, client_factory=mail_server.factory).plan(OWNER)

        assert plan.mailboxes == {"INBOX": [1, 3]}

    def test_nothing_new_returns_none(self, db_session, account, mail_server):
        mail_server.fill("INBOX", [])

        assert SyncPlanner(db_session, client_factory=mail_server.factory).plan(OWNER) is None

    def test_session_is_closed(self, db_session, account, mail_server):
        mail_server.fill("INBOX", [1])

        SyncPlanner(db_session, client_factory=mail_server.factory).plan(OWNER)

        assert len(mail_server.clients) == 1
        assert mail_server.clients[0].closed

    def test_connects_with_decrypted_credentials(self, db_session, account, mail_server):
        mail_server.fill("INBOX", [1])

        SyncPlanner(db_session, client_factory=mail_server.factory).plan(OWNER)

        config = mail_server.clients[0].config
        assert config.host == "imap.example.org"
        assert config.username == "alice"
        assert config.password == "correct horse battery staple"
        assert config.port == 993

    def test_unknown_owner(self, db_session, mail_server):
        with pytest.raises(AccountNotConfiguredError):
            SyncPlanner(db_session, client_factory=mail_server.factory).plan("nobody")

    def test_no_imap_host(self, db_session, mail_server):
        SyncService(db_session).save_account("bob", "bob@example.org", "bob", "pw")

        with pytest.raises(ConfigurationError, match="IMAP_HOST"):
            SyncPlanner(db_session, client_factory=mail_server.factory).plan("bob")

    def test_login_failure_propagates(self, db_session, account, mail_server):
        mail_server.connect_error = AuthenticationError("rejected")

        with pytest.raises(AuthenticationError):
            SyncPlanner(db_session, client_factory=mail_server.factory).plan(OWNER)
        assert mail_server.clients[0].closed


class TestCreateSyncJob:

    def test_creates_job_from_plan(self, db_session, account, mail_server):
        mail_server.fill("INBOX", [1, 2, 3])

        job = SyncService(db_session, client_factory=mail_server.factory).create_sync_job(OWNER)

        assert job.status == "pending"
        assert job.total_count == 3
        assert job.uids_to_process == {"INBOX": [1, 2, 3]}

    def test_no_job_when_up_to_date(self, db_session, account, mail_server):
        mail_server.fill("INBOX", [])

        job = SyncService(db_session, client_factory=mail_server.factory).create_sync_job(OWNER)

        assert job is None
        assert db_session.query(SyncJob).count() == 0

    def test_returns_active_job(self, db_session, account, mail_server):
        mail_server.fill("INBOX", [1])
        service = SyncService(db_session, client_factory=mail_server.factory)

        first = service.create_sync_job(OWNER)
        mail_server.fill("INBOX", [2])
        second = service.create_sync_job(OWNER)

        assert second.id == first.id
        assert db_session.query(SyncJob).count() == 1
