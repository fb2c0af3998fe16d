import sys
from pathlib import Path

import pytest
import requests

sys.path.append(str(Path(__file__).resolve().parents[1]))
import app as helpdesk_app  # noqa: E402


def configure_db(tmp_path):
    helpdesk_app.configure_database(f"sqlite:///{tmp_path / 'helpdesk.db'}")
    with helpdesk_app.app.app_context():
        helpdesk_app.init_db()


def seed_user(db, name, designations, branch="LUSAKA", is_admin=False):
    profile = helpdesk_app.create_account(
        db,
        email=f"{name.lower().replace(' ', '.')}@example.com",
        password="secret123",
        name=name,
        designations=designations,
        branch=branch,
        is_admin=is_admin,
    )
    return profile.user_id


def client_for(user_id):
    client = helpdesk_app.app.test_client()
    with client.session_transaction() as session:
        session["user"] = {"id": user_id}
    return client


class UnreachableAuthority:
    def acquire_token_for_client(self, scopes):
        raise requests.ConnectionError("login.microsoftonline.com unreachable")


@pytest.fixture
def mail_configured(tmp_path, monkeypatch):
    configure_db(tmp_path)
    monkeypatch.setattr(helpdesk_app, "CLIENT_ID", "client-id")
    monkeypatch.setattr(helpdesk_app, "CLIENT_SECRET", "client-secret")
    monkeypatch.setattr(helpdesk_app, "AUTHORITY", "https://login.microsoftonline.com/tenant")
    monkeypatch.setattr(helpdesk_app, "_app_token_cache", {"token": "", "expires": 0.0})
    monkeypatch.setenv("MICROSOFT_MAIL_SENDER", "helpdesk@example.com")
    with helpdesk_app.app.app_context():
        db = helpdesk_app.get_db()
        ids = {
            "admin": seed_user(db, "Ada Admin", ["Accounts"], is_admin=True),
            "doctor": seed_user(db, "Dora Doctor", ["Doctor"]),
        }
        db.commit()
    return ids


def test_app_token_outage_is_logged_not_raised(mail_configured, monkeypatch):
    monkeypatch.setattr(helpdesk_app, "msal_app", lambda *args, **kwargs: UnreachableAuthority())

    with helpdesk_app.app.test_request_context():
        assert helpdesk_app._get_app_graph_token() is None
        assert helpdesk_app.send_email("ada.admin@example.com", "Hello", "<p>Hi</p>") is False


def test_new_ticket_survives_mail_outage(mail_configured, monkeypatch):
    monkeypatch.setattr(helpdesk_app, "msal_app", lambda *args, **kwargs: UnreachableAuthority())

    response = client_for(mail_configured["doctor"]).post(
        "/new", data={"title": "VPN drops", "description": "Every ten minutes", "priority": "High"}
    )

    assert response.status_code == 302
    with helpdesk_app.app.app_context():
        tickets = helpdesk_app.get_db().query(helpdesk_app.Ticket).all()
        assert [(t.title, t.creator_id) for t in tickets] == [("VPN drops", mail_configured["doctor"])]
