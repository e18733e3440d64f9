"""
Test the service layer: account settings and the scheduled pass.
"""
import pytest

from mailsync.core.database.encryption import CredentialVault
from mailsync.core.database.models import MailAccount
from mailsync.core.sync.models import BatchResult, WorkPlan
from mailsync.core.sync.service import SyncService, config_status

OWNER = "alice"


class TestSaveAccount:

    def test_password_is_encrypted(self, db_session):
        SyncService(db_session).save_account(OWNER, " alice@example.org ", "alice", "s3cret")

        row = db_session.query(MailAccount).filter_by(owner_id=OWNER).one()
        assert row.email_address == "alice@example.org"
        assert row.encrypted_password != "s3cret"
        assert CredentialVault.from_settings().decrypt(row.encrypted_password, row.iv) == "s3cret"

    @pytest.mark.parametrize("email_address,username,password,missing", [
        ("", "alice", "pw", "email_address"),
        ("alice@example.org", None, "pw", "imap_username"),
        ("alice@example.org", "alice", "   ", "imap_password"),
    ])
    def test_missing_fields(self, db_session, email_address, username, password, missing):
        with pytest.raises(ValueError, match=f"All fields are required.*{missing}"):
            SyncService(db_session).save_account(OWNER, email_address, username, password)
        assert db_session.query(MailAccount).count() == 0

    def test_get_account_hides_secrets(self, db_session, account):
        view = SyncService(db_session).get_account(OWNER)

        assert view["email_address"] == "alice@example.org"
        assert view["imap_host"] == "imap.example.org"
        assert "encrypted_password" not in view
        assert "iv" not in view
        assert SyncService(db_session).get_account("nobody") is None


class TestSyncAllAccounts:

    def test_no_accounts(self, db_session):
        summary = SyncService(db_session).sync_all_accounts()

        assert summary == {"message": "No accounts to sync.", "results": []}

    def test_failing_account_does_not_stop_others(self, db_session, account, mail_server):
        mail_server.fill("INBOX", [1, 2])
        # No host on the account and no IMAP_HOST configured
        SyncService(db_session).save_account("bob", "bob@example.org", "bob", "pw")

        summary = SyncService(db_session, client_factory=mail_server.factory).sync_all_accounts()

        assert summary["message"] == "Sync process initiated for 2 account(s)."
        by_owner = {r["owner_id"]: r for r in summary["results"]}
        assert by_owner["alice"]["status"] == "job"
        assert by_owner["alice"]["total_count"] == 2
        assert by_owner["bob"]["status"] == "error"
        assert "ConfigurationError" in by_owner["bob"]["error"]

    def test_up_to_date_account(self, db_session, account, mail_server):
        mail_server.fill("INBOX", [])

        summary = SyncService(db_session, client_factory=mail_server.factory).sync_all_accounts()

        assert summary["results"] == [{"owner_id": "alice", "status": "up_to_date", "message": "No new emails."}]


class TestConfigStatus:

    def test_reports_presence_only(self):
        status = config_status()

        assert status == {"APP_ENCRYPTION_KEY": True, "IMAP_HOST": False, "DATABASE_URL": True}


class TestValueObjects:

    def test_work_plan(self):
        plan = WorkPlan(owner_id=OWNER, mailboxes={"INBOX": [1, 2], "Empty": []})

        assert plan.total_count == 2
        assert not plan.is_empty
        assert plan.to_dict() == {"INBOX": [1, 2]}
        assert WorkPlan(owner_id=OWNER).is_empty

    def test_batch_result_messages(self):
        assert BatchResult().message == "No pending sync jobs."
        assert BatchResult(job_id="j", status="failed", error="boom").message == "Sync job j failed: boom"

        partial = BatchResult(job_id="j", status="processing", attempted=5, stored=3,
                              duplicates=1, failed=1, remaining=4)
        assert partial.has_more
        assert partial.message == "Processed 5 message(s) (3 new, 1 already stored, 1 failed). 4 remaining."
        assert partial.to_dict()["processed"] == 5

        done = BatchResult(job_id="j", status="completed", attempted=2, stored=2)
        assert not done.has_more
        assert done.message == "Processed 2 message(s) (2 new). Sync completed."
