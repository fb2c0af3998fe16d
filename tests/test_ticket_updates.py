import io
import sys
from datetime import datetime, timezone
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


def seed_ticket(db, creator_id, title, **overrides):
    now = datetime.now(timezone.utc)
    fields = {
        "description": "Details",
        "status": "Open",
        "priority": "Medium",
        "created_at": now,
        "updated_at": now,
    }
    fields.update(overrides)
    ticket = helpdesk_app.Ticket(title=title, creator_id=creator_id, **fields)
    db.add(ticket)
    db.flush()
    return ticket.id


@pytest.fixture
def world(tmp_path, monkeypatch):
    configure_db(tmp_path)
    sent = []
    monkeypatch.setattr(
        helpdesk_app,
        "send_email",
        lambda to_addrs, subject, html_body: sent.append((to_addrs, subject)) or True,
    )
    with helpdesk_app.app.app_context():
        db = helpdesk_app.get_db()
        ids = {
            "admin": seed_user(db, "Ada Admin", ["Accounts"], is_admin=True),
            "it": seed_user(db, "Ian Tech", ["IT"]),
            "doctor": seed_user(db, "Dora Doctor", ["Doctor"]),
            "nurse": seed_user(db, "Nina Nurse", ["Nurse"], branch="GA"),
        }
        ids["ticket"] = seed_ticket(db, ids["doctor"], "Dictation Software Crash")
        ids["other_ticket"] = seed_ticket(db, ids["nurse"], "Badge Reader Broken")
        db.commit()
    ids["sent"] = sent
    return ids


def client_for(user_id):
    client = helpdesk_app.app.test_client()
    with client.session_transaction() as session:
        session["user"] = {"id": user_id}
    return client


def load_ticket(ticket_id):
    with helpdesk_app.app.app_context():
        ticket = helpdesk_app.get_db().get(helpdesk_app.Ticket, ticket_id)
        return helpdesk_app.ticket_to_dict(ticket) if ticket else None


def test_doctor_creates_ticket_with_forced_defaults(world):
    client = client_for(world["doctor"])

    response = client.post(
        "/new",
        data={
            "title": "Printer jam",
            "description": "Tray 2 keeps jamming",
            "priority": "Medium",
            "creator_id": world["nurse"],
            "status": "Closed",
            "assigned_to": world["it"],
        },
    )

    assert response.status_code == 302
    ticket_id = int(response.headers["Location"].rstrip("/").split("/")[-1])
    ticket = load_ticket(ticket_id)
    assert ticket["title"] == "Printer jam"
    assert ticket["status"] == "Open"
    assert ticket["priority"] == "Medium"
    assert ticket["creator_id"] == world["doctor"]
    assert ticket["assigned_to"] is None
    assert ticket["completed_at"] is None
    assert world["sent"][0][0] == ["ada.admin@example.com"]


def test_new_ticket_requires_title_and_description(world):
    client = client_for(world["doctor"])

    response = client.post("/new", data={"title": "", "description": ""}, follow_redirects=True)

    assert "Missing or invalid: title, description." in response.get_data(as_text=True)
    with helpdesk_app.app.app_context():
        assert helpdesk_app.get_db().query(helpdesk_app.Ticket).count() == 2


def test_attachments_are_stored_and_downloadable_by_viewers(world):
    client = client_for(world["doctor"])

    response = client.post(
        "/new",
        data={
            "title": "Scanner error",
            "description": "See attached log",
            "attachments": (io.BytesIO(b"E42 feed failure"), "error log.txt"),
        },
        content_type="multipart/form-data",
    )
    ticket_id = int(response.headers["Location"].rstrip("/").split("/")[-1])

    with helpdesk_app.app.app_context():
        attachment = (
            helpdesk_app.get_db()
            .query(helpdesk_app.Attachment)
            .filter_by(ticket_id=ticket_id)
            .one()
        )
        file_name = attachment.file_name
        file_url = attachment.file_url

    assert file_name == "error_log.txt"
    download = client.get(file_url)
    assert download.status_code == 200
    assert download.data == b"E42 feed failure"
    assert client_for(world["nurse"]).get(file_url).status_code == 403
    assert client_for(world["it"]).get(file_url).status_code == 200


def test_attachment_total_size_is_capped(world, monkeypatch):
    monkeypatch.setattr(helpdesk_app, "MAX_ATTACHMENT_TOTAL_BYTES", 4)
    client = client_for(world["doctor"])

    response = client.post(
        "/new",
        data={
            "title": "Big upload",
            "description": "Too large",
            "attachments": (io.BytesIO(b"0123456789"), "dump.bin"),
        },
        content_type="multipart/form-data",
    )

    assert response.status_code == 302
    assert response.headers["Location"].endswith("/new")
    with helpdesk_app.app.app_context():
        assert helpdesk_app.get_db().query(helpdesk_app.Ticket).filter_by(title="Big upload").count() == 0


def test_ticket_detail_follows_listing_rule(world):
    path = f"/ticket/{world['ticket']}"

    assert client_for(world["doctor"]).get(path).status_code == 200
    assert client_for(world["it"]).get(path).status_code == 200
    assert client_for(world["admin"]).get(path).status_code == 200
    assert client_for(world["nurse"]).get(path).status_code == 403
    assert client_for(world["doctor"]).get("/ticket/9999").status_code == 404


def test_it_resolves_another_users_ticket(world):
    client = client_for(world["it"])

    response = client.post(f"/ticket/{world['ticket']}/status", data={"status": "Resolved"})

    assert response.status_code == 302
    ticket = load_ticket(world["ticket"])
    assert ticket["status"] == "Resolved"
    assert ticket["completed_at"] is not None
    assert world["sent"] == [("dora.doctor@example.com", "Ticket resolved: Dictation Software Crash")]

    client.post(f"/ticket/{world['ticket']}/status", data={"status": "Open"})
    reopened = load_ticket(world["ticket"])
    assert reopened["status"] == "Open"
    assert reopened["completed_at"] is None


def test_creator_cannot_change_status_of_own_ticket(world):
    response = client_for(world["doctor"]).post(
        f"/ticket/{world['ticket']}/status", data={"status": "Closed"}
    )

    assert response.status_code == 403
    assert load_ticket(world["ticket"])["status"] == "Open"


def test_unknown_status_is_rejected(world):
    client_for(world["admin"]).post(f"/ticket/{world['ticket']}/status", data={"status": "Escalated"})

    assert load_ticket(world["ticket"])["status"] == "Open"


def test_assignee_must_be_it_or_admin(world):
    client = client_for(world["it"])
    path = f"/ticket/{world['ticket']}/assignee"

    client.post(path, data={"assigned_to": world["nurse"]})
    assert load_ticket(world["ticket"])["assigned_to"] is None

    client.post(path, data={"assigned_to": world["it"]})
    assert load_ticket(world["ticket"])["assigned_to"] == world["it"]

    client.post(path, data={"assigned_to": world["admin"]})
    assert load_ticket(world["ticket"])["assigned_to"] == world["admin"]

    client.post(path, data={"assigned_to": ""})
    assert load_ticket(world["ticket"])["assigned_to"] is None


def test_regular_user_cannot_assign(world):
    response = client_for(world["doctor"]).post(
        f"/ticket/{world['ticket']}/assignee", data={"assigned_to": world["it"]}
    )

    assert response.status_code == 403
    assert load_ticket(world["ticket"])["assigned_to"] is None


def test_priority_updates(world):
    path = f"/ticket/{world['ticket']}/priority"

    client_for(world["it"]).post(path, data={"priority": "Urgent"})
    assert load_ticket(world["ticket"])["priority"] == "Urgent"

    client_for(world["it"]).post(path, data={"priority": "Critical"})
    assert load_ticket(world["ticket"])["priority"] == "Urgent"

    assert client_for(world["doctor"]).post(path, data={"priority": "Low"}).status_code == 403


def test_bulk_status_update(world):
    ticket_ids = [str(world["ticket"]), str(world["other_ticket"])]

    response = client_for(world["it"]).post(
        "/tickets/bulk",
        data={"action": "status", "status": "Closed", "ticket_ids": ticket_ids},
        follow_redirects=True,
    )

    assert "Updated 2 tickets successfully" in response.get_data(as_text=True)
    for ticket_id in (world["ticket"], world["other_ticket"]):
        ticket = load_ticket(ticket_id)
        assert ticket["status"] == "Closed"
        assert ticket["completed_at"] is not None


def test_bulk_assign_validates_assignee(world):
    client = client_for(world["admin"])
    ticket_ids = [str(world["ticket"]), str(world["other_ticket"])]

    client.post("/tickets/bulk", data={"action": "assign", "assigned_to": world["doctor"], "ticket_ids": ticket_ids})
    assert load_ticket(world["ticket"])["assigned_to"] is None

    client.post("/tickets/bulk", data={"action": "assign", "assigned_to": world["it"], "ticket_ids": ticket_ids})
    assert load_ticket(world["ticket"])["assigned_to"] == world["it"]
    assert load_ticket(world["other_ticket"])["assigned_to"] == world["it"]


def test_bulk_update_requires_management_rights(world):
    response = client_for(world["doctor"]).post(
        "/tickets/bulk",
        data={"action": "priority", "priority": "Urgent", "ticket_ids": [str(world["ticket"])]},
    )

    assert response.status_code == 403
    assert load_ticket(world["ticket"])["priority"] == "Medium"


def test_bulk_update_without_selection_changes_nothing(world):
    response = client_for(world["it"]).post(
        "/tickets/bulk", data={"action": "priority", "priority": "Low"}, follow_redirects=True
    )

    assert "Please select an action and tickets." in response.get_data(as_text=True)
    assert load_ticket(world["ticket"])["priority"] == "Medium"


def test_comments_follow_visibility_and_notify_creator(world):
    path = f"/ticket/{world['ticket']}/comment"

    client_for(world["doctor"]).post(path, data={"message": "Still broken after reboot"})
    assert world["sent"] == []

    assert client_for(world["nurse"]).post(path, data={"message": "me too"}).status_code == 403

    client_for(world["it"]).post(path, data={"message": "Reinstalling the client now"})
    assert world["sent"] == [("dora.doctor@example.com", "Ticket update: Dictation Software Crash")]

    client_for(world["it"]).post(path, data={"message": "   "})

    with helpdesk_app.app.app_context():
        messages = [
            c.message
            for c in helpdesk_app.get_db()
            .query(helpdesk_app.Comment)
            .order_by(helpdesk_app.Comment.id)
            .all()
        ]
    assert messages == ["Still broken after reboot", "Reinstalling the client now"]

    body = client_for(world["doctor"]).get(f"/ticket/{world['ticket']}").get_data(as_text=True)
    assert "Reinstalling the client now" in body


def test_creator_is_immutable(world):
    with helpdesk_app.app.app_context():
        ticket = helpdesk_app.get_db().get(helpdesk_app.Ticket, world["ticket"])
        with pytest.raises(ValueError):
            ticket.creator_id = world["nurse"]


def test_analytics_and_activity_are_scoped(world):
    client_for(world["it"]).post(f"/ticket/{world['other_ticket']}/comment", data={"message": "On my way"})

    doctor = client_for(world["doctor"])
    stats = doctor.get("/api/analytics").get_json()["stats"]
    activity = doctor.get("/api/activity").get_json()["activity"]

    assert stats["total"] == 1
    assert stats["mine"] == 1
    assert [item["ticket_id"] for item in activity] == [world["ticket"]]

    it_activity = client_for(world["it"]).get("/api/activity").get_json()["activity"]
    assert it_activity[0]["type"] == "comment_added"
    assert client_for(world["it"]).get("/analytics").status_code == 200
