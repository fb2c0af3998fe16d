import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

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


def load_profile(user_id):
    with helpdesk_app.app.app_context():
        profile = helpdesk_app.get_db().get(helpdesk_app.Profile, user_id)
        return helpdesk_app.profile_to_dict(profile) if profile else None


@pytest.fixture
def people(tmp_path, monkeypatch):
    configure_db(tmp_path)
    monkeypatch.setattr(helpdesk_app, "ADMIN_EMAILS", set())
    with helpdesk_app.app.app_context():
        db = helpdesk_app.get_db()
        ids = {
            "admin": seed_user(db, "Ada Admin", ["Accounts"], branch="GA", is_admin=True),
            "it_lusaka": seed_user(db, "Ian Tech", ["IT"]),
            "it_ga": seed_user(db, "Gwen Tech", ["IT"], branch="GA"),
            "doctor": seed_user(db, "Dora Doctor", ["Doctor"]),
            "hybrid": seed_user(db, "Nia Hybrid", ["Nurse", "it"]),
        }
        db.commit()
    return ids


def new_user_form(**overrides):
    form = {
        "name": "Paul Pharmacist",
        "email": "paul@example.com",
        "password": "secret1",
        "designations": ["Pharmacist"],
        "branch": "EPZ",
        "phone_number": "+260 97 000 0000",
    }
    form.update(overrides)
    return form


def test_admin_filters_users_by_branch_and_designation(people):
    response = client_for(people["admin"]).get("/api/users?branch=LUSAKA&designation=IT")

    assert response.status_code == 200
    assert {u["id"] for u in response.get_json()["users"]} == {people["it_lusaka"], people["hybrid"]}


def test_user_search_is_case_insensitive(people):
    body = client_for(people["admin"]).get("/users?q=DORA").get_data(as_text=True)

    assert "Dora Doctor" in body
    assert "Gwen Tech" not in body


def test_user_directory_requires_it_or_admin(people):
    assert client_for(people["it_lusaka"]).get("/users").status_code == 200
    assert client_for(people["doctor"]).get("/users").status_code == 403
    assert client_for(people["doctor"]).get("/api/users").status_code == 403


def test_profiles_are_visible_to_owner_and_it(people):
    own = f"/users/{people['doctor']}"
    other = f"/users/{people['it_ga']}"

    assert client_for(people["doctor"]).get(own).status_code == 200
    assert client_for(people["doctor"]).get(other).status_code == 403
    assert client_for(people["it_lusaka"]).get(own).status_code == 200

    redirect = client_for(people["doctor"]).get("/profile")
    assert redirect.headers["Location"].endswith(own)


def test_create_user_requires_admin(people):
    response = client_for(people["it_lusaka"]).post("/users/new", data=new_user_form())

    assert response.status_code == 403
    with helpdesk_app.app.app_context():
        assert helpdesk_app.find_account_by_email(helpdesk_app.get_db(), "paul@example.com") is None


def test_admin_creates_user(people):
    response = client_for(people["admin"]).post(
        "/users/new", data=new_user_form(designations=["Pharmacist", "Intern"], is_admin="1")
    )

    assert response.status_code == 302
    with helpdesk_app.app.app_context():
        account = helpdesk_app.find_account_by_email(helpdesk_app.get_db(), "paul@example.com")
        profile = helpdesk_app.profile_to_dict(account.profile)

    assert profile["designations"] == ["Intern", "Pharmacist"]
    assert profile["branch"] == "EPZ"
    assert profile["is_admin"] is True


@pytest.mark.parametrize(
    "overrides",
    [
        {"password": "12345"},
        {"designations": []},
        {"branch": "Cary"},
        {"email": "dora.doctor@example.com"},
    ],
)
def test_create_user_rejects_invalid_input(people, overrides):
    response = client_for(people["admin"]).post("/users/new", data=new_user_form(**overrides))

    assert response.status_code == 400
    with helpdesk_app.app.app_context():
        assert helpdesk_app.get_db().query(helpdesk_app.Profile).count() == 5


def test_admin_edits_user(people):
    response = client_for(people["admin"]).post(
        f"/users/{people['doctor']}/edit",
        data={
            "name": "Dora D. Doctor",
            "email": "dora@example.com",
            "designations": ["Doctor", "IT"],
            "branch": "JKIA",
            "is_admin": "1",
        },
    )

    assert response.status_code == 302
    profile = load_profile(people["doctor"])
    assert profile["name"] == "Dora D. Doctor"
    assert profile["email"] == "dora@example.com"
    assert profile["designations"] == ["Doctor", "IT"]
    assert profile["branch"] == "JKIA"
    assert profile["is_admin"] is True
    with helpdesk_app.app.app_context():
        assert helpdesk_app.find_account_by_email(helpdesk_app.get_db(), "dora@example.com") is not None


def test_edit_user_requires_admin(people):
    response = client_for(people["it_lusaka"]).post(
        f"/users/{people['doctor']}/edit",
        data={"name": "X", "email": "x@example.com", "designations": ["IT"], "branch": "GA", "is_admin": "1"},
    )

    assert response.status_code == 403
    assert load_profile(people["doctor"])["is_admin"] is False


def test_edit_user_refuses_taken_email(people):
    client_for(people["admin"]).post(
        f"/users/{people['doctor']}/edit",
        data={"name": "Dora", "email": "ian.tech@example.com", "designations": ["Doctor"], "branch": "LUSAKA"},
    )

    assert load_profile(people["doctor"])["email"] == "dora.doctor@example.com"


def test_password_reset_link_is_shown_when_mail_fails(people, monkeypatch):
    monkeypatch.setattr(helpdesk_app, "send_email", lambda *args, **kwargs: False)
    admin = client_for(people["admin"])

    response = admin.post(f"/users/{people['doctor']}/reset-password", follow_redirects=True)
    body = response.get_data(as_text=True)

    with helpdesk_app.app.app_context():
        token = helpdesk_app.get_db().get(helpdesk_app.Account, people["doctor"]).reset_token
    assert token
    assert f"/reset-password/{token}" in body

    visitor = helpdesk_app.app.test_client()
    assert visitor.get(f"/reset-password/{token}").status_code == 200
    visitor.post(f"/reset-password/{token}", data={"password": "newpass1", "confirm_password": "newpass1"})

    login = visitor.post("/login", data={"email": "dora.doctor@example.com", "password": "newpass1"})
    assert login.status_code == 302
    assert visitor.get(f"/reset-password/{token}").status_code == 404


def test_password_reset_emails_the_user(people, monkeypatch):
    sent = []
    monkeypatch.setattr(
        helpdesk_app, "send_email", lambda to_addrs, subject, html_body: sent.append(to_addrs) or True
    )

    response = client_for(people["admin"]).post(
        f"/users/{people['doctor']}/reset-password", follow_redirects=True
    )

    assert sent == ["dora.doctor@example.com"]
    assert "has been sent to dora.doctor@example.com" in response.get_data(as_text=True)


def test_expired_reset_token_is_rejected(people):
    with helpdesk_app.app.app_context():
        db = helpdesk_app.get_db()
        account = db.get(helpdesk_app.Account, people["doctor"])
        account.reset_token = "expired-token"
        account.reset_expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        db.commit()

    client = helpdesk_app.app.test_client()
    client.post("/reset-password/expired-token", data={"password": "newpass1", "confirm_password": "newpass1"})

    assert client.post(
        "/login", data={"email": "dora.doctor@example.com", "password": "newpass1"}
    ).status_code == 401


def test_reset_password_requires_admin(people):
    response = client_for(people["it_lusaka"]).post(f"/users/{people['doctor']}/reset-password")

    assert response.status_code == 403


def test_registration_never_grants_admin_from_input(people):
    client = helpdesk_app.app.test_client()

    response = client.post(
        "/register",
        data=new_user_form(email="new.hire@example.com", is_admin="1"),
    )

    assert response.status_code == 302
    with client.session_transaction() as session:
        user_id = session["user"]["id"]
    profile = load_profile(user_id)
    assert profile["is_admin"] is False
    assert profile["phone_number"] == "+260 97 000 0000"


def test_registration_does_not_bootstrap_configured_admins(people, monkeypatch):
    monkeypatch.setattr(helpdesk_app, "ADMIN_EMAILS", {"chief@example.com"})
    client = helpdesk_app.app.test_client()

    client.post("/register", data=new_user_form(email="Chief@Example.com"))

    with client.session_transaction() as session:
        user_id = session["user"]["id"]
    assert load_profile(user_id)["is_admin"] is False

    response = client.post("/users/new", data=new_user_form(email="crony@example.com"))
    assert response.status_code == 403
    with helpdesk_app.app.app_context():
        assert helpdesk_app.find_account_by_email(helpdesk_app.get_db(), "crony@example.com") is None


def test_registration_refuses_existing_sso_account(people):
    with helpdesk_app.app.app_context():
        db = helpdesk_app.get_db()
        account = helpdesk_app.Account(
            id=uuid.uuid4().hex, email="paul@example.com", created_at=datetime.now(timezone.utc)
        )
        db.add(account)
        db.commit()
        account_id = account.id

    client = helpdesk_app.app.test_client()
    response = client.post("/register", data=new_user_form(email="Paul@Example.com"))

    assert response.status_code == 400
    with client.session_transaction() as session:
        assert "user" not in session
    assert load_profile(account_id) is None
    with helpdesk_app.app.app_context():
        assert helpdesk_app.get_db().get(helpdesk_app.Account, account_id).password_hash is None


@pytest.mark.parametrize("target", ["/\\evil.com", "https://evil.com/", "//evil.com"])
def test_login_ignores_offsite_next(people, target):
    client = helpdesk_app.app.test_client()

    response = client.post(
        "/login", data={"email": "ian.tech@example.com", "password": "secret123", "next": target}
    )

    assert response.status_code == 302
    assert response.headers["Location"].endswith("/tickets")


def test_grant_admin_command_promotes_account(people):
    runner = helpdesk_app.app.test_cli_runner()

    result = runner.invoke(args=["grant-admin", "Dora.Doctor@example.com"])

    assert result.exit_code == 0
    assert load_profile(people["doctor"])["is_admin"] is True
    with helpdesk_app.app.app_context():
        assert helpdesk_app.get_db().get(helpdesk_app.Account, people["doctor"]).email_verified is True

    missing = runner.invoke(args=["grant-admin", "nobody@example.com"])
    assert missing.exit_code != 0


def test_verified_sso_account_on_admin_list_is_bootstrapped(people, monkeypatch):
    monkeypatch.setattr(helpdesk_app, "ADMIN_EMAILS", {"paul@example.com"})
    with helpdesk_app.app.app_context():
        db = helpdesk_app.get_db()
        account = helpdesk_app.Account(
            id=uuid.uuid4().hex,
            email="paul@example.com",
            email_verified=True,
            created_at=datetime.now(timezone.utc),
        )
        db.add(account)
        db.commit()
        account_id = account.id

    client_for(people["admin"]).post("/users/new", data=new_user_form())

    assert load_profile(account_id)["is_admin"] is True


def test_removing_it_role_releases_assigned_tickets(people):
    with helpdesk_app.app.app_context():
        db = helpdesk_app.get_db()
        now = datetime.now(timezone.utc)
        ticket = helpdesk_app.Ticket(
            title="Scanner offline",
            description="Front desk scanner",
            status="In Progress",
            priority="Medium",
            creator_id=people["doctor"],
            assigned_to=people["it_lusaka"],
            created_at=now,
            updated_at=now,
        )
        db.add(ticket)
        db.commit()
        ticket_id = ticket.id

    response = client_for(people["admin"]).post(
        f"/users/{people['it_lusaka']}/edit",
        data={
            "name": "Ian Tech",
            "email": "ian.tech@example.com",
            "designations": ["Accounts"],
            "branch": "LUSAKA",
        },
    )

    assert response.status_code == 302
    with helpdesk_app.app.app_context():
        assert helpdesk_app.get_db().get(helpdesk_app.Ticket, ticket_id).assigned_to is None


def test_login_with_password(people):
    client = helpdesk_app.app.test_client()

    bad = client.post("/login", data={"email": "ian.tech@example.com", "password": "wrong"})
    good = client.post(
        "/login", data={"email": "IAN.TECH@example.com", "password": "secret123", "next": "/users"}
    )

    assert bad.status_code == 401
    assert good.status_code == 302
    assert good.headers["Location"].endswith("/users")


def test_unprovisioned_account_is_denied_user_pages(people):
    with helpdesk_app.app.app_context():
        db = helpdesk_app.get_db()
        account = helpdesk_app.Account(
            id=uuid.uuid4().hex, email="sso.only@example.com", created_at=datetime.now(timezone.utc)
        )
        db.add(account)
        db.commit()
        pending_id = account.id

    client = client_for(pending_id)
    assert client.get("/users").status_code == 403
    assert client.get(f"/users/{pending_id}").status_code == 403
    assert client.get("/profile").status_code == 403


def test_admin_provisions_profile_for_sso_account(people):
    with helpdesk_app.app.app_context():
        db = helpdesk_app.get_db()
        account = helpdesk_app.Account(
            id=uuid.uuid4().hex, email="paul@example.com", created_at=datetime.now(timezone.utc)
        )
        db.add(account)
        db.commit()
        account_id = account.id

    client_for(people["admin"]).post("/users/new", data=new_user_form())

    assert load_profile(account_id)["name"] == "Paul Pharmacist"


def test_activity_summary(people):
    with helpdesk_app.app.app_context():
        db = helpdesk_app.get_db()
        now = datetime.now(timezone.utc)
        ticket = helpdesk_app.Ticket(
            title="Lab PC slow",
            description="Takes minutes to boot",
            status="Open",
            priority="Low",
            creator_id=people["doctor"],
            assigned_to=people["it_lusaka"],
            created_at=now,
            updated_at=now,
        )
        db.add(ticket)
        db.flush()
        db.add(helpdesk_app.Comment(
            ticket_id=ticket.id, author_id=people["it_lusaka"], message="Checking", created_at=now
        ))
        db.commit()

        doctor = helpdesk_app.user_activity(db, people["doctor"])
        tech = helpdesk_app.user_activity(db, people["it_lusaka"])

    assert doctor["tickets_created"] == 1
    assert [t["title"] for t in doctor["recent_tickets"]] == ["Lab PC slow"]
    assert tech["tickets_assigned"] == 1
    assert tech["comments_count"] == 1
    assert tech["last_activity"] is not None
