"""
Test the read-only email API.
"""
import pytest
from datetime import datetime, timezone

from mailsync.core.database.repository import MessageRepository
from mailsync.core.email.models import NormalizedMessage


@pytest.fixture
def stored(db_session):
    messages = MessageRepository(db_session)
    rows = []
    for uid in range(1, 4):
        rows.append(messages.insert_message("alice", "INBOX", uid, NormalizedMessage(
            subject=f"Message {uid}",
            body_text=f"Body {uid}",
            sent_at=datetime(2024, 1, uid, tzinfo=timezone.utc),
        )))
    messages.insert_message("alice", "Sent", 1, NormalizedMessage(subject="Sent one"))
    messages.insert_message("bob", "INBOX", 1, NormalizedMessage(subject="Bob's"))
    messages.add_attachment(rows[0], "a.txt", f"alice/{rows[0].id}/a.txt", "text/plain", 3)
    return [row.id for row in rows]


def test_list_emails(api_client, owner_headers, stored):
    data = api_client.get("/api/emails", headers=owner_headers, params={"mailbox": "INBOX"}).json()

    assert data["total"] == 3
    assert data["total_pages"] == 1
    assert [e["subject"] for e in data["emails"]] == ["Message 3", "Message 2", "Message 1"]
    assert "body_text" not in data["emails"][0]


def test_pagination(api_client, owner_headers, stored):
    data = api_client.get("/api/emails", headers=owner_headers,
                          params={"mailbox": "INBOX", "page": 2, "page_size": 2}).json()

    assert data["total"] == 3
    assert data["total_pages"] == 2
    assert data["page"] == 2
    assert [e["subject"] for e in data["emails"]] == ["Message 1"]


def test_owner_sees_only_own_emails(api_client, owner_headers, stored):
    data = api_client.get("/api/emails", headers=owner_headers).json()

    assert data["total"] == 4
    assert "Bob's" not in [e["subject"] for e in data["emails"]]


def test_email_detail(api_client, owner_headers, stored):
    data = api_client.get(f"/api/emails/{stored[0]}", headers=owner_headers).json()

    assert data["subject"] == "Message 1"
    assert data["body_text"] == "Body 1"
    assert [a["file_name"] for a in data["attachments"]] == ["a.txt"]


def test_email_detail_other_owner(api_client, stored):
    response = api_client.get(f"/api/emails/{stored[0]}",
                              headers={"X-API-Key": "test-api-key", "X-Owner-Id": "bob"})

    assert response.status_code == 404
