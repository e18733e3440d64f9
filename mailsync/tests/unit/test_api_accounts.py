"""
Test the account settings API.
"""
import inspect

from mailsync.api.routes import accounts
from mailsync.core.database.models import MailAccount


def test_save_account(api_client, owner_headers, db_session):
    response = api_client.put("/api/account", headers=owner_headers, json={
        "email_address": "alice@example.org",
        "imap_username": "alice",
        "imap_password": "s3cret",
        "imap_host": "imap.example.org",
        "imap_port": 993,
    })

    assert response.status_code == 200
    data = response.json()
    assert data["email_address"] == "alice@example.org"
    assert data["imap_host"] == "imap.example.org"
    assert "imap_password" not in data
    assert "s3cret" not in response.text

    row = db_session.query(MailAccount).filter_by(owner_id="alice").one()
    assert row.encrypted_password != "s3cret"


def test_save_account_missing_fields(api_client, owner_headers):
    response = api_client.put("/api/account", headers=owner_headers, json={"email_address": "alice@example.org"})

    assert response.status_code == 400
    assert response.json()["error"].startswith("All fields are required")


def test_save_account_rejects_bad_port(api_client, owner_headers):
    response = api_client.put("/api/account", headers=owner_headers, json={
        "email_address": "alice@example.org",
        "imap_username": "alice",
        "imap_password": "pw",
        "imap_port": 70000,
    })

    assert response.status_code == 422


def test_get_account(api_client, owner_headers, account):
    data = api_client.get("/api/account", headers=owner_headers).json()

    assert data["email_address"] == "alice@example.org"
    assert data["imap_username"] == "alice"


def test_get_missing_account(api_client):
    response = api_client.get("/api/account", headers={"X-API-Key": "test-api-key", "X-Owner-Id": "nobody"})

    assert response.status_code == 200
    assert response.json() is None


def test_config_status(api_client, owner_headers):
    response = api_client.get("/api/account/config-status", headers=owner_headers)

    assert response.status_code == 200
    assert response.json() == {
        "status": {"APP_ENCRYPTION_KEY": True, "IMAP_HOST": False, "DATABASE_URL": True}
    }


def test_blocking_account_routes_run_in_threadpool():
    assert not inspect.iscoroutinefunction(accounts.save_account)
    assert not inspect.iscoroutinefunction(accounts.get_account)
