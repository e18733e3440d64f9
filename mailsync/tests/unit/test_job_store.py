"""
Test sync job persistence: creation, claiming, progress and failure.
"""
import pytest
from datetime import datetime, timedelta
from sqlalchemy import BigInteger, update
from sqlalchemy.exc import IntegrityError

from mailsync.core.database.job_store import SyncJobStore
from mailsync.core.database.models import MailMessage, SyncJob, SyncJobItem
from mailsync.core.errors import JobStateError
from mailsync.core.sync.models import ItemOutcome, WorkPlan

OWNER = "alice"


@pytest.fixture
def store(db_session):
    return SyncJobStore(db_session, stale_after=timedelta(minutes=15))


@pytest.fixture
def job(store):
    return store.create(OWNER, {"INBOX": [3, 1, 2], "Archive": [7]})


def _backdate_claim(session, job_id, minutes):
    session.execute(
        update(SyncJob)
        .where(SyncJob.id == job_id)
        .values(claimed_at=datetime.utcnow() - timedelta(minutes=minutes))
    )
    session.commit()


class TestCreate:

    def test_create_orders_plan(self, store, job):
        assert job.status == "pending"
        assert job.total_count == 4
        assert job.processed_count == 0
        assert job.uids_to_process == {"Archive": [7], "INBOX": [1, 2, 3]}

        items = store.next_items(job.id, 10)
        assert [(i.position, i.mailbox, i.uid) for i in items] == [
            (0, "Archive", 7), (1, "INBOX", 1), (2, "INBOX", 2), (3, "INBOX", 3),
        ]

    def test_create_from_work_plan(self, store):
        job = store.create(OWNER, WorkPlan(owner_id=OWNER, mailboxes={"INBOX": [5], "Empty": []}))

        assert job.total_count == 1
        assert job.uids_to_process == {"INBOX": [5]}

    def test_empty_plan_is_rejected(self, store, db_session):
        with pytest.raises(ValueError):
            store.create(OWNER, {"INBOX": []})
        assert db_session.query(SyncJob).count() == 0

    def test_get_for_owner(self, store, job):
        assert store.get_for_owner(job.id, OWNER).id == job.id
        assert store.get_for_owner(job.id, "mallory") is None

    def test_active_job(self, store, job):
        assert store.get_active_job(OWNER).id == job.id
        store.fail(job.id, "gone")
        assert store.get_active_job(OWNER) is None

    def test_one_active_job_per_owner(self, store, job, db_session):
        again = store.create(OWNER, {"INBOX": [9]})

        assert again.id == job.id
        assert db_session.query(SyncJob).filter_by(owner_id=OWNER).count() == 1

    def test_active_job_index(self, job, db_session):
        with pytest.raises(IntegrityError):
            db_session.execute(SyncJob.__table__.insert().values(
                id="second", owner_id=OWNER, status="processing", uids_to_process={},
                total_count=1, processed_count=0,
                created_at=datetime.utcnow(), updated_at=datetime.utcnow(),
            ))
        db_session.rollback()

    def test_new_job_after_terminal_one(self, store, job, db_session):
        store.fail(job.id, "gone")

        fresh = store.create(OWNER, {"INBOX": [9]})

        assert fresh.id != job.id
        assert fresh.status == "pending"

    def test_uid_columns_hold_unsigned_32_bit(self):
        assert isinstance(SyncJobItem.__table__.c.uid.type, BigInteger)
        assert isinstance(MailMessage.__table__.c.uid.type, BigInteger)


class TestClaim:

    def test_claim_next_pending(self, store, job):
        claimed = store.claim_next_pending("worker-1")

        assert claimed.id == job.id
        assert claimed.status == "processing"
        assert claimed.worker_id == "worker-1"
        assert claimed.claimed_at is not None

    def test_claim_is_exclusive_across_sessions(self, store, job, session_factory):
        other_session = session_factory()
        try:
            other = SyncJobStore(other_session)

            first = store.try_claim(job.id, "worker-1", "pending")
            second = other.try_claim(job.id, "worker-2", "pending")

            assert first is True
            assert second is False
            assert other.get(job.id).worker_id == "worker-1"
        finally:
            other_session.close()

    def test_nothing_to_claim(self, store, job):
        assert store.claim_next_pending("worker-1") is not None
        assert store.claim_next_pending("worker-2") is None

    def test_owner_filter(self, store, job):
        assert store.claim_next_pending("worker-1", owner_id="bob") is None
        assert store.claim_next_pending("worker-1", owner_id=OWNER).id == job.id

    def test_oldest_job_first(self, store, job):
        newer = store.create("bob", {"INBOX": [1]})

        assert store.claim_next_pending("worker-1").id == job.id
        assert store.claim_next_pending("worker-1").id == newer.id

    def test_stale_lease_is_reclaimed(self, store, job, db_session):
        store.claim_next_pending("worker-1")
        _backdate_claim(db_session, job.id, minutes=30)

        reclaimed = store.claim_next_pending("worker-2")

        assert reclaimed.id == job.id
        assert reclaimed.worker_id == "worker-2"
        assert reclaimed.status == "processing"

    def test_fresh_lease_is_not_reclaimed(self, store, job, db_session):
        store.claim_next_pending("worker-1")
        _backdate_claim(db_session, job.id, minutes=5)

        assert store.claim_next_pending("worker-2") is None

    def test_reclaim_requires_unchanged_lease(self, store, job):
        store.claim_next_pending("worker-1")
        observed = store.get(job.id).claimed_at

        assert store.try_claim(job.id, "worker-2", "processing", observed - timedelta(seconds=1)) is False
        assert store.try_claim(job.id, "worker-2", "processing", observed) is True

    def test_resume_only_by_holder(self, store, job):
        store.claim_next_pending("worker-1")

        assert store.resume(job.id, "worker-2") is None
        assert store.resume(job.id, "worker-1").id == job.id


class TestProgress:

    def test_advance_and_complete(self, store, job):
        store.claim_next_pending("worker-1")

        job = store.advance(job.id, 3)
        assert job.processed_count == 3
        assert job.status == "processing"

        job = store.advance(job.id, 1)
        assert job.processed_count == 4
        assert job.status == "completed"

    def test_advance_is_clamped(self, store, job):
        store.claim_next_pending("worker-1")

        job = store.advance(job.id, 10)

        assert job.processed_count == job.total_count == 4
        assert job.status == "completed"

    def test_advance_zero_keeps_processing(self, store, job):
        store.claim_next_pending("worker-1")

        assert store.advance(job.id, 0).status == "processing"

    def test_advance_negative(self, store, job):
        store.claim_next_pending("worker-1")

        with pytest.raises(ValueError):
            store.advance(job.id, -1)

    def test_advance_requires_processing(self, store, job):
        with pytest.raises(JobStateError, match="pending"):
            store.advance(job.id, 1)

    def test_advance_after_completion(self, store, job):
        store.claim_next_pending("worker-1")
        store.advance(job.id, 4)

        with pytest.raises(JobStateError, match="completed"):
            store.advance(job.id, 1)
        assert store.get(job.id).processed_count == 4

    def test_advance_by_former_lease_holder(self, store, job, db_session):
        store.claim_next_pending("worker-1")
        _backdate_claim(db_session, job.id, minutes=30)
        store.claim_next_pending("worker-2")

        with pytest.raises(JobStateError):
            store.advance(job.id, 1, worker_id="worker-1")
        assert store.advance(job.id, 1, worker_id="worker-2").processed_count == 1

    def test_mark_items_counts_each_item_once(self, store, job, db_session):
        store.claim_next_pending("worker-1")
        first, second = store.next_items(job.id, 2)

        settled = store.mark_items([
            ItemOutcome(item_id=first.id, mailbox=first.mailbox, uid=first.uid, stored=True),
            ItemOutcome(item_id=second.id, mailbox=second.mailbox, uid=second.uid, error="ParseError: bad"),
        ])
        db_session.commit()
        again = store.mark_items([ItemOutcome(item_id=first.id, mailbox=first.mailbox, uid=first.uid, stored=True)])
        db_session.commit()

        assert settled == 2
        assert again == 0
        assert store.count_pending_items(job.id) == 2

        db_session.expire_all()
        statuses = {item.id: (item.status, item.error) for item in db_session.query(SyncJobItem)}
        assert statuses[first.id] == ("done", None)
        assert statuses[second.id] == ("failed", "ParseError: bad")


class TestFail:

    def test_fail_records_error(self, store, job):
        store.claim_next_pending("worker-1")

        failed = store.fail(job.id, "MailboxConnectionError: connection refused")

        assert failed.status == "failed"
        assert failed.error_message == "MailboxConnectionError: connection refused"

    def test_fail_scrubs_secrets(self, store, job):
        failed = store.fail(job.id, "login failed password=hunter2")

        assert "hunter2" not in failed.error_message

    def test_fail_does_not_override_completed(self, store, job):
        store.claim_next_pending("worker-1")
        store.advance(job.id, 4)

        result = store.fail(job.id, "late failure")

        assert result.status == "completed"
        assert result.error_message is None

    def test_fail_missing_job(self, store):
        assert store.fail("no-such-job", "error") is None
