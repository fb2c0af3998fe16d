from __future__ import annotations
import io
import os
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from functools import wraps
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlparse

from flask import (
    Flask,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template_string,
    request,
    send_file,
    session,
    url_for,
)

import click
import requests
from jinja2 import DictLoader
from markupsafe import escape
from msal import ConfidentialClientApplication
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    create_engine,
    func,
    inspect,
    or_,
    text,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import (
    Session,
    declarative_base,
    joinedload,
    relationship,
    scoped_session,
    sessionmaker,
    validates,
)

from analytics import activity_feed, build_analytics, ticket_stats
from policy import (
    BRANCHES,
    COMPLETED_STATUSES,
    DESIGNATIONS,
    IT_DESIGNATION,
    MIN_PASSWORD_LENGTH,
    PRIORITIES,
    STATUSES,
    AuthenticationRequired,
    BackendUnavailable,
    HelpdeskError,
    Principal,
    ValidationFailed,
    allowed_transitions,
    can_be_assignee,
    can_manage_tickets,
    completed_at_for,
    normalize_designations,
    prepare_new_ticket,
    require_admin,
    require_comment,
    require_profile,
    require_profile_view,
    require_ticket_management,
    require_ticket_view,
    require_user_directory,
    ticket_scope,
    transition,
    validate_new_password,
    validate_priority,
    validate_profile_fields,
)

GRAPH_DEFAULT_SCOPE = "https://graph.microsoft.com/.default"
_app_token_cache: dict[str, float | str] = {"token": "", "expires": 0.0}


def _graph_send_mail(token: str, endpoint: str, payload: dict) -> bool:
    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }
    try:
        resp = requests.post(endpoint, headers=headers, json=payload, timeout=10)
    except requests.RequestException as exc:
        app.logger.warning("Graph sendMail request failed: %s", exc)
        return False
    if resp.status_code in (200, 202):
        return True
    app.logger.warning(
        "Graph sendMail returned %s: %s",
        resp.status_code,
        resp.text[:200],
    )
    return False


def _get_app_graph_token() -> str | None:
    if not (CLIENT_ID and CLIENT_SECRET and AUTHORITY):
        return None
    now = time.time()
    cached_token = _app_token_cache.get("token") or ""
    expires = float(_app_token_cache.get("expires") or 0.0)
    if cached_token and now < expires - 60:
        return str(cached_token)
    try:
        result = msal_app().acquire_token_for_client(scopes=[GRAPH_DEFAULT_SCOPE])
    except Exception as exc:
        app.logger.warning("Unable to acquire app token: %s", exc)
        return None
    token = result.get("access_token")
    if not token:
        error = result.get("error_description") or result.get("error") or "Unknown error"
        app.logger.warning("App token missing from MSAL response: %s", error)
        return None
    _app_token_cache["token"] = token
    _app_token_cache["expires"] = now + max(0, int(result.get("expires_in") or 0))
    return token


def _resolve_sender_address() -> Optional[str]:
    configured = os.getenv("MICROSOFT_MAIL_SENDER")
    if configured:
        return configured.strip()
    if ADMIN_EMAILS:
        return sorted(ADMIN_EMAILS)[0]
    return None


def send_email(to_addrs, subject, html_body) -> bool:
    """Send an email via Microsoft Graph using delegated or application tokens."""

    if isinstance(to_addrs, str):
        to_addrs = [to_addrs]
    to_addrs = sorted({addr for addr in to_addrs if addr})
    if not to_addrs:
        return False

    payload = {
        "message": {
            "subject": subject,
            "body": {"contentType": "HTML", "content": html_body},
            "toRecipients": [{"emailAddress": {"address": a}} for a in to_addrs],
        }
    }

    token = session.get("access_token")
    if token and _graph_send_mail(token, "https://graph.microsoft.com/v1.0/me/sendMail", payload):
        return True

    sender = _resolve_sender_address()
    app_token = _get_app_graph_token()
    if sender and app_token:
        endpoint = f"https://graph.microsoft.com/v1.0/users/{quote(sender)}/sendMail"
        if _graph_send_mail(app_token, endpoint, payload):
            return True

    app.logger.warning("Failed to send email to %s", ", ".join(to_addrs))
    return False


# --------------------------------------------------------------------------------------
# Flask app config
# --------------------------------------------------------------------------------------
app = Flask(__name__)
app.config["SECRET_KEY"] = os.environ.get("FLASK_SECRET", "dev-secret")
app.config["MAX_CONTENT_LENGTH"] = 16 * 1024 * 1024  # 16 MB overall request cap


def _candidate_path_from_env(value: str) -> Path | None:
    """Return a filesystem path for supported SQLite URI formats."""

    cleaned = value.strip()
    if not cleaned or cleaned == ":memory:":
        return None

    if cleaned.startswith("sqlite:///"):
        cleaned = cleaned[len("sqlite:///"):]
    elif cleaned.startswith("sqlite://"):
        cleaned = cleaned[len("sqlite://"):]

    if cleaned == ":memory:" or cleaned.startswith("file:") or "://" in cleaned:
        return None

    if "?" in cleaned:
        cleaned = cleaned.split("?", 1)[0]

    return Path(cleaned)


def _resolve_db_path(
    env_override: str | None = None,
    data_dir_override: str | None = None,
) -> str:
    """Determine the SQLite database location and ensure the directory exists."""

    env_value = env_override if env_override is not None else os.environ.get("HELPDESK_DB")
    data_dir = data_dir_override if data_dir_override is not None else os.environ.get("HELPDESK_DATA_DIR")
    base_dir = Path(data_dir) if data_dir else Path(app.instance_path)

    if env_value:
        candidate = _candidate_path_from_env(env_value)
        if candidate is None:
            return env_value
        candidate = candidate.expanduser()
    else:
        candidate = base_dir / "helpdesk.db"

    if not candidate.is_absolute():
        candidate = (base_dir / candidate).resolve()

    candidate.parent.mkdir(parents=True, exist_ok=True)
    return str(candidate)


def _build_engine(database_url: str):
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        pool_pre_ping=True,
        connect_args={"sslmode": "require"},
    )


DB_PATH = _resolve_db_path()
DATABASE_URL = os.getenv("DATABASE_URL")

engine = _build_engine(DATABASE_URL or f"sqlite:///{DB_PATH}")
app.logger.info("DB engine: %s", "Postgres" if DATABASE_URL else f"SQLite @ {DB_PATH}")

SessionLocal = scoped_session(
    sessionmaker(bind=engine, autoflush=False, autocommit=False)
)
Base = declarative_base()


class Account(Base):
    __tablename__ = "accounts"

    id = Column(String(32), primary_key=True)
    email = Column(String, unique=True, nullable=False)
    password_hash = Column(String)
    # True once the address has been proven, e.g. by a Microsoft sign-in
    email_verified = Column(Boolean, nullable=False, default=False)
    reset_token = Column(String, index=True)
    reset_expires_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_sign_in_at = Column(DateTime(timezone=True))

    profile = relationship(
        "Profile",
        back_populates="account",
        uselist=False,
        cascade="all, delete-orphan",
    )


class Profile(Base):
    __tablename__ = "profiles"

    user_id = Column(String(32), ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    phone_number = Column(String)
    branch = Column(String)
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    account = relationship("Account", back_populates="profile")
    designation_rows = relationship(
        "ProfileDesignation",
        back_populates="profile",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="ProfileDesignation.designation",
    )

    @property
    def designations(self) -> frozenset[str]:
        return frozenset(row.designation for row in self.designation_rows)

    def set_designations(self, value) -> None:
        existing = {row.designation: row for row in self.designation_rows}
        self.designation_rows = [
            existing.get(tag) or ProfileDesignation(designation=tag)
            for tag in sorted(normalize_designations(value))
        ]


class ProfileDesignation(Base):
    __tablename__ = "profile_designations"

    user_id = Column(String(32), ForeignKey("profiles.user_id", ondelete="CASCADE"), primary_key=True)
    designation = Column(String, primary_key=True)

    profile = relationship("Profile", back_populates="designation_rows")


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(Integer, primary_key=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    status = Column(String, nullable=False, index=True)
    priority = Column(String, nullable=False, index=True)
    creator_id = Column(String(32), ForeignKey("profiles.user_id"), nullable=False, index=True)
    assigned_to = Column(String(32), ForeignKey("profiles.user_id"), index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))

    creator = relationship("Profile", foreign_keys=[creator_id], lazy="joined")
    assignee = relationship("Profile", foreign_keys=[assigned_to], lazy="joined")
    comments = relationship(
        "Comment",
        back_populates="ticket",
        lazy="select",
        cascade="all, delete-orphan",
    )
    attachments = relationship(
        "Attachment",
        back_populates="ticket",
        lazy="select",
        cascade="all, delete-orphan",
    )

    @validates("creator_id")
    def _validate_creator(self, key, value):  # noqa: ARG002
        if self.creator_id is not None and value != self.creator_id:
            raise ValueError("A ticket's creator cannot be changed.")
        return value


class Comment(Base):
    __tablename__ = "comments"

    id = Column(Integer, primary_key=True)
    ticket_id = Column(Integer, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    author_id = Column(String(32), ForeignKey("profiles.user_id"), nullable=False, index=True)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    ticket = relationship("Ticket", back_populates="comments", lazy="select")
    author = relationship("Profile", lazy="joined")


class Attachment(Base):
    __tablename__ = "attachments"

    id = Column(Integer, primary_key=True)
    ticket_id = Column(Integer, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    file_name = Column(String, nullable=False)
    file_url = Column(String)
    content_type = Column(String)
    size = Column(Integer, nullable=False, default=0)
    data = Column(LargeBinary, nullable=False)
    uploaded_at = Column(DateTime(timezone=True), nullable=False)

    ticket = relationship("Ticket", back_populates="attachments", lazy="select")

# Microsoft Entra (Azure AD / M365) app details come from environment variables
CLIENT_ID = os.getenv("MICROSOFT_CLIENT_ID")
TENANT_ID = os.getenv("MICROSOFT_TENANT_ID")
CLIENT_SECRET = os.getenv("MICROSOFT_CLIENT_SECRET")
REDIRECT_URI = os.getenv("REDIRECT_URI")  # e.g., https://helpdesk.example.com/auth/callback
AUTHORITY = f"https://login.microsoftonline.com/{TENANT_ID}" if TENANT_ID else None
SCOPE = ["User.Read", "Mail.Send"]

try:
    PASSWORD_RESET_TTL = timedelta(hours=float(os.getenv("PASSWORD_RESET_TTL_HOURS", "24")))
except ValueError:
    PASSWORD_RESET_TTL = timedelta(hours=24)

try:
    MAX_ATTACHMENT_TOTAL_BYTES = int(float(os.getenv("MAX_ATTACHMENT_MB", "10")) * 1024 * 1024)
except ValueError:
    MAX_ATTACHMENT_TOTAL_BYTES = 10 * 1024 * 1024


# --------------------------------------------------------------------------------------
# DB helpers
# --------------------------------------------------------------------------------------


def get_db() -> Session:
    return SessionLocal()


@app.teardown_appcontext
def _teardown_sqlalchemy(exc: BaseException | None):  # noqa: ARG001
    SessionLocal.remove()


def configure_database(database_url: str) -> None:
    """Point the app at a different database, e.g. a per-test SQLite file."""
    global engine
    SessionLocal.remove()
    engine.dispose()
    engine = _build_engine(database_url)
    SessionLocal.configure(bind=engine)
    app.config["DB_READY"] = False


def init_db():
    Base.metadata.create_all(engine)

    # Ensure legacy databases include the email_verified column
    account_columns = {col["name"] for col in inspect(engine).get_columns("accounts")}
    if "email_verified" not in account_columns:
        with engine.begin() as conn:
            conn.execute(
                text("ALTER TABLE accounts ADD COLUMN email_verified BOOLEAN NOT NULL DEFAULT FALSE")
            )

    # Bootstrap administrators listed in ADMIN_EMAILS, for verified addresses only
    if ADMIN_EMAILS:
        db = get_db()
        try:
            promoted = (
                db.query(Profile)
                .join(Profile.account)
                .filter(func.lower(Account.email).in_(sorted(ADMIN_EMAILS)))
                .filter(Account.email_verified.is_(True))
                .filter(Profile.is_admin.is_(False))
                .all()
            )
            for profile in promoted:
                profile.is_admin = True
                profile.updated_at = utcnow()
            if promoted:
                db.commit()
                app.logger.info("Granted admin to %d bootstrap profile(s)", len(promoted))
        finally:
            SessionLocal.remove()
    app.config["DB_READY"] = True


@app.before_request
def _ensure_schema():
    if not app.config.get("DB_READY"):
        init_db()

# --------------------------------------------------------------------------------------
# Auth helpers
# --------------------------------------------------------------------------------------

def msal_app() -> ConfidentialClientApplication:
    if not (CLIENT_ID and CLIENT_SECRET and AUTHORITY):
        raise RuntimeError("M365 env vars missing (MICROSOFT_CLIENT_ID/SECRET, MICROSOFT_TENANT_ID).")
    return ConfidentialClientApplication(
        CLIENT_ID,
        authority=AUTHORITY,
        client_credential=CLIENT_SECRET,
    )


def microsoft_login_enabled() -> bool:
    return bool(CLIENT_ID and CLIENT_SECRET and AUTHORITY and REDIRECT_URI)


def _load_admin_emails() -> set[str]:
    """Return the set of admin email addresses configured for the app."""

    raw = os.getenv("ADMIN_EMAILS", "")
    return {item.strip().lower() for item in raw.split(",") if item.strip()}


ADMIN_EMAILS = _load_admin_emails()


def find_account_by_email(db: Session, email: str | None) -> Optional[Account]:
    if not email:
        return None
    return (
        db.query(Account)
        .filter(func.lower(Account.email) == email.strip().lower())
        .one_or_none()
    )


def principal_from_profile(profile: Profile) -> Principal:
    return Principal(
        user_id=profile.user_id,
        email=profile.email,
        name=profile.name,
        designations=profile.designations,
        branch=profile.branch,
        is_admin=bool(profile.is_admin),
    )


def load_principal(db: Session, user: dict | None) -> Principal:
    """Resolve the signed-in session user to a principal.

    Accounts without a profile resolve to an unprovisioned principal that can
    do nothing until an administrator finishes setting them up.
    """
    if not user:
        raise AuthenticationRequired()
    account = None
    if user.get("id"):
        account = db.get(Account, user["id"])
    elif user.get("email"):
        account = find_account_by_email(db, user["email"])
    if account is None:
        raise AuthenticationRequired("Your session has expired. Please sign in again.")
    if account.profile is None:
        return Principal.unprovisioned(account.id, account.email)
    return principal_from_profile(account.profile)


def current_principal() -> Principal:
    if "principal" not in g:
        g.principal = load_principal(get_db(), session.get("user"))
    return g.principal


def login_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        if not session.get("user"):
            raise AuthenticationRequired()
        return view_func(*args, **kwargs)
    return wrapper


def _sign_in(account: Account) -> None:
    session.clear()
    profile = account.profile
    session["user"] = {
        "id": account.id,
        "email": account.email,
        "name": profile.name if profile else account.email,
    }
    account.last_sign_in_at = utcnow()


def _safe_next(target: str | None) -> str:
    # Browsers treat "\" like "/", so "/\host" is protocol-relative too
    cleaned = (target or "").replace("\\", "/")
    parsed = urlparse(cleaned)
    if cleaned.startswith("/") and not cleaned.startswith("//") and not (parsed.scheme or parsed.netloc):
        return cleaned
    return url_for("tickets")


def create_account(
    db: Session,
    *,
    email: str,
    password: str | None,
    name: str,
    designations,
    branch: str,
    phone_number: str | None = None,
    is_admin: bool = False,
    attach_existing: bool = False,
) -> Profile:
    """Create an account and its profile.

    With ``attach_existing`` an administrator may provision the profile of an
    account that signed in through Microsoft before it had one. Self
    registration never attaches: the registrant has not proven they own the
    address. ``ADMIN_EMAILS`` only grants admin to verified addresses.
    """
    email = email.strip().lower()
    account = find_account_by_email(db, email)
    if account is not None and (account.profile is not None or not attach_existing):
        raise ValidationFailed(["email"], "An account with this email already exists.")
    ts = utcnow()
    if account is None:
        account = Account(id=uuid.uuid4().hex, email=email, created_at=ts)
        db.add(account)
    if password:
        account.password_hash = generate_password_hash(password)
    profile = Profile(
        user_id=account.id,
        name=name,
        email=email,
        phone_number=phone_number,
        branch=branch,
        is_admin=bool(is_admin) or (bool(account.email_verified) and email in ADMIN_EMAILS),
        created_at=ts,
        updated_at=ts,
    )
    profile.set_designations(designations)
    account.profile = profile
    db.flush()
    return profile


def bootstrap_admin(db: Session, account: Account, name: str | None = None) -> Profile:
    """Grant admin to a verified account, creating a bare profile when it has none."""
    ts = utcnow()
    profile = account.profile
    if profile is None:
        profile = Profile(
            user_id=account.id,
            name=name or account.email,
            email=account.email,
            is_admin=True,
            created_at=ts,
            updated_at=ts,
        )
        account.profile = profile
        app.logger.info("Created bootstrap admin profile for %s", account.email)
    elif not profile.is_admin:
        profile.is_admin = True
        profile.updated_at = ts
    db.flush()
    return profile

# --------------------------------------------------------------------------------------
# Constants / helpers
# --------------------------------------------------------------------------------------
STATUS_BADGES = {
    "Open": {"cls": "badge-chip badge-open", "icon": "bi bi-lightning-charge"},
    "In Progress": {"cls": "badge-chip badge-progress", "icon": "bi bi-arrow-repeat"},
    "Resolved": {"cls": "badge-chip badge-complete", "icon": "bi bi-check-circle"},
    "Closed": {"cls": "badge-chip badge-closed", "icon": "bi bi-check2-all"},
}
PRIORITY_BADGES = {
    "Urgent": {"cls": "badge-chip priority-urgent", "icon": "bi bi-exclamation-triangle"},
    "High": {"cls": "badge-chip priority-high", "icon": "bi bi-exclamation-octagon"},
    "Medium": {"cls": "badge-chip priority-medium", "icon": "bi bi-activity"},
    "Low": {"cls": "badge-chip priority-low", "icon": "bi bi-arrow-down"},
}
BULK_ACTIONS = ["status", "priority", "assign"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def format_file_size(num_bytes: int) -> str:
    """Convert a byte count to a human-friendly label."""
    if num_bytes <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    value = float(num_bytes)
    for unit in units:
        if value < 1024 or unit == units[-1]:
            if unit == "B":
                return f"{int(value)} {unit}"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


def format_timestamp(value) -> str:
    if not value:
        return "—"
    if isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            return text
    return _as_utc(value).strftime("%b %d, %Y %I:%M %p UTC")


def _iso(value: datetime | None) -> str | None:
    value = _as_utc(value)
    return value.isoformat() if value else None


def profile_to_dict(profile: Profile) -> dict:
    return {
        "id": profile.user_id,
        "name": profile.name,
        "email": profile.email,
        "phone_number": profile.phone_number,
        "designations": sorted(profile.designations),
        "branch": profile.branch,
        "is_admin": bool(profile.is_admin),
        "created_at": profile.created_at,
    }


def ticket_to_dict(ticket: Ticket) -> dict:
    creator = ticket.creator
    assignee = ticket.assignee
    return {
        "id": ticket.id,
        "title": ticket.title,
        "description": ticket.description,
        "status": ticket.status,
        "priority": ticket.priority,
        "creator_id": ticket.creator_id,
        "creator_name": creator.name if creator else None,
        "creator_branch": creator.branch if creator else None,
        "creator_designations": sorted(creator.designations) if creator else [],
        "assigned_to": ticket.assigned_to,
        "assignee_name": assignee.name if assignee else None,
        "created_at": _as_utc(ticket.created_at),
        "updated_at": _as_utc(ticket.updated_at),
        "completed_at": _as_utc(ticket.completed_at),
    }


def _jsonable(row: dict) -> dict:
    return {key: _iso(value) if isinstance(value, datetime) else value for key, value in row.items()}


def ticket_query(db: Session, principal: Principal):
    """Tickets the principal may list; the visibility rule is part of the query."""
    q = db.query(Ticket)
    scope = ticket_scope(principal)
    if scope is not None:
        q = q.filter(Ticket.creator_id == scope)
    return q


def get_visible_ticket(db: Session, principal: Principal, ticket_id: int) -> Ticket:
    ticket = db.get(Ticket, ticket_id)
    if ticket is None:
        abort(404)
    require_ticket_view(principal, ticket.creator_id)
    return ticket


def assignable_profiles(db: Session) -> list[Profile]:
    it_tag = IT_DESIGNATION.lower()
    return (
        db.query(Profile)
        .filter(
            or_(
                Profile.is_admin.is_(True),
                Profile.designation_rows.any(func.lower(ProfileDesignation.designation) == it_tag),
            )
        )
        .order_by(Profile.name)
        .all()
    )


def user_query(db: Session, search: str = "", branch: str = "", designation: str = ""):
    q = db.query(Profile)
    if search:
        like = f"%{search.lower()}%"
        q = q.filter(or_(func.lower(Profile.name).like(like), func.lower(Profile.email).like(like)))
    if branch:
        q = q.filter(Profile.branch == branch)
    if designation:
        q = q.filter(
            Profile.designation_rows.any(
                func.lower(ProfileDesignation.designation) == designation.lower()
            )
        )
    return q.order_by(Profile.name, Profile.email)


def user_activity(db: Session, user_id: str) -> dict:
    created = (
        db.query(Ticket)
        .filter(Ticket.creator_id == user_id)
        .order_by(Ticket.created_at.desc(), Ticket.id.desc())
        .all()
    )
    assigned = db.query(func.count(Ticket.id)).filter(Ticket.assigned_to == user_id).scalar() or 0
    comments = db.query(func.count(Comment.id)).filter(Comment.author_id == user_id).scalar() or 0
    last_comment = db.query(func.max(Comment.created_at)).filter(Comment.author_id == user_id).scalar()
    return {
        "tickets_created": len(created),
        "tickets_assigned": assigned,
        "comments_count": comments,
        "last_activity": _as_utc(last_comment),
        "recent_tickets": [ticket_to_dict(t) for t in created[:5]],
    }


def _apply_status(ticket: Ticket, new_status: str, ts: datetime) -> str:
    previous = ticket.status
    ticket.status = transition(previous, new_status)
    ticket.completed_at = completed_at_for(previous, ticket.status, ticket.completed_at, ts)
    ticket.updated_at = ts
    return previous


def _resolve_assignee(db: Session, user_id: str | None) -> Optional[Profile]:
    user_id = (user_id or "").strip()
    if not user_id:
        return None
    profile = db.get(Profile, user_id)
    if profile is None or not can_be_assignee(profile.designations, profile.is_admin):
        raise ValidationFailed(
            ["assigned_to"], "Tickets can only be assigned to IT staff or administrators."
        )
    return profile


def admin_recipients(db: Session) -> list[str]:
    emails = {p.email for p in db.query(Profile).filter(Profile.is_admin.is_(True)).all()}
    return sorted(emails | ADMIN_EMAILS)


def ticket_detail_link(ticket_id: int) -> str:
    return url_for("ticket_detail", ticket_id=ticket_id, _external=True)


def notify_new_ticket(db: Session, ticket: Ticket, principal: Principal) -> bool:
    description_html = str(escape(ticket.description)).replace("\n", "<br>")
    subject = f"New helpdesk ticket from {principal.name or principal.email}"
    body = f"""
    <p><strong>A new ticket has been submitted to the IT helpdesk.</strong></p>
    <p><strong>Submitted by:</strong> {escape(principal.name or '')} &lt;{escape(principal.email or '')}&gt;<br>
    <strong>Branch:</strong> {escape(principal.branch or '—')}<br>
    <strong>Priority:</strong> {escape(ticket.priority)}</p>
    <p><strong>{escape(ticket.title)}</strong><br>{description_html}</p>
    <p><a href="{ticket_detail_link(ticket.id)}">Open the ticket</a></p>
    """
    return send_email(admin_recipients(db), subject, body)


def notify_status_change(ticket: Ticket, previous: str) -> bool:
    creator = ticket.creator
    if not creator or not creator.email or previous == ticket.status:
        return False
    if ticket.status in COMPLETED_STATUSES and previous not in COMPLETED_STATUSES:
        subject = f"Ticket {ticket.status.lower()}: {ticket.title}"
    else:
        subject = f"Ticket status update: {ticket.title}"
    body = f"""
    <p>Hi {escape(creator.name or 'there')},</p>
    <p>Your ticket <strong>{escape(ticket.title)}</strong> is now marked <strong>{escape(ticket.status)}</strong>.</p>
    <p><a href="{ticket_detail_link(ticket.id)}">Open your ticket</a> to review progress or add more information.</p>
    <p>Thank you,<br>IT Support</p>
    """
    return send_email(creator.email, subject, body)


def notify_comment(ticket: Ticket, comment: Comment, principal: Principal) -> bool:
    creator = ticket.creator
    if not creator or not creator.email or creator.user_id == principal.user_id:
        return False
    comment_html = str(escape(comment.message)).replace("\n", "<br>")
    body = f"""
    <p>Hi {escape(creator.name or 'there')},</p>
    <p>{escape(principal.name or 'IT Support')} added an update to your ticket <strong>{escape(ticket.title)}</strong>.</p>
    <div style="border-left:4px solid #1d4ed8;padding-left:12px;margin:16px 0;">
      <p style="margin:0;">{comment_html}</p>
    </div>
    <p><a href="{ticket_detail_link(ticket.id)}">Open your ticket</a> to reply.</p>
    """
    return send_email(creator.email, f"Ticket update: {ticket.title}", body)


def send_password_reset(account: Account, link: str) -> bool:
    name = account.profile.name if account.profile else account.email
    body = f"""
    <p>Hi {escape(name)},</p>
    <p>An administrator started a password reset for your helpdesk account.</p>
    <p><a href="{link}">Choose a new password</a>. The link expires in {int(PASSWORD_RESET_TTL.total_seconds() // 3600)} hours.</p>
    <p>If you did not expect this, contact IT Support.</p>
    """
    return send_email(account.email, "Reset your helpdesk password", body)

# --------------------------------------------------------------------------------------
# Error handling
# --------------------------------------------------------------------------------------

def _wants_json() -> bool:
    return request.path.startswith("/api/")


@app.errorhandler(HelpdeskError)
def handle_helpdesk_error(exc: HelpdeskError):
    if isinstance(exc, AuthenticationRequired):
        if _wants_json():
            return jsonify({"error": exc.message}), exc.status_code
        session.pop("user", None)
        return redirect(url_for("login", next=request.path))
    if _wants_json():
        payload = {"error": exc.message}
        if isinstance(exc, ValidationFailed):
            payload["fields"] = exc.fields
        return jsonify(payload), exc.status_code
    return render_template_string(ERROR_HTML, error=exc), exc.status_code


@app.errorhandler(SQLAlchemyError)
def handle_database_error(exc: SQLAlchemyError):
    app.logger.exception("Database request failed: %s", exc)
    SessionLocal.rollback()
    return handle_helpdesk_error(BackendUnavailable())


@app.context_processor
def _inject_viewer():
    viewer = None
    if session.get("user"):
        try:
            viewer = current_principal()
        except AuthenticationRequired:
            viewer = None
    return {
        "viewer": viewer,
        "format_ts": format_timestamp,
        "status_badges": STATUS_BADGES,
        "priority_badges": PRIORITY_BADGES,
        "microsoft_login": microsoft_login_enabled(),
    }

# --------------------------------------------------------------------------------------
# Templates (kept inline for single-file simplicity)
# --------------------------------------------------------------------------------------
BASE_HTML = """
<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>IT Helpdesk</title>
  <link href="https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/css/bootstrap.min.css" rel="stylesheet">
  <link href="https://cdn.jsdelivr.net/npm/bootstrap-icons@1.11.3/font/bootstrap-icons.css" rel="stylesheet">
  <style>
    :root {
      --hd-ink: #0f172a;
      --hd-blue: #1d4ed8;
      --hd-blue-dark: #1e3a8a;
      --hd-sky: #e0e7ff;
      --hd-surface: #ffffff;
      --hd-bg: #f1f5f9;
    }
    body { background: var(--hd-bg); color: var(--hd-ink); font-family: "Segoe UI", "Helvetica Neue", Arial, sans-serif; }
    a { color: var(--hd-blue); text-decoration: none; }
    .app-header { background: var(--hd-ink); color: #fff; padding: .8rem 1.5rem; display: flex; align-items: center; justify-content: space-between; }
    .app-shell { display: flex; min-height: calc(100vh - 60px); }
    .app-sidebar { width: 230px; padding: 1.5rem 1rem; background: #fff; border-right: 1px solid #e2e8f0; }
    .app-content { flex: 1; padding: 2rem; display: flex; flex-direction: column; gap: 1.5rem; }
    .nav-pill { display: flex; gap: .6rem; align-items: center; padding: .55rem .8rem; border-radius: 10px; color: var(--hd-ink); }
    .nav-pill.active, .nav-pill:hover { background: var(--hd-sky); color: var(--hd-blue-dark); }
    .nav-section-title { font-size: .75rem; text-transform: uppercase; color: #64748b; margin: 1rem 0 .4rem; }
    .surface-card { background: var(--hd-surface); border-radius: 16px; box-shadow: 0 8px 24px rgba(15,23,42,.06); }
    .stat-value { font-size: 2rem; font-weight: 600; margin: 0; }
    .badge-chip { display: inline-flex; gap: .35rem; align-items: center; padding: .25rem .65rem; border-radius: 999px; font-size: .8rem; font-weight: 600; }
    .badge-open { background: #fee2e2; color: #b91c1c; }
    .badge-progress { background: #fef3c7; color: #b45309; }
    .badge-complete { background: #dcfce7; color: #15803d; }
    .badge-closed { background: #e2e8f0; color: #334155; }
    .priority-urgent { background: #7f1d1d; color: #fff; }
    .priority-high { background: #fecaca; color: #991b1b; }
    .priority-medium { background: #fef9c3; color: #854d0e; }
    .priority-low { background: #d1fae5; color: #065f46; }
    .flash-message { border-radius: 12px; padding: .85rem 1rem; background: var(--hd-sky); border: 1px solid #c7d2fe; white-space: pre-line; }
    .btn-primary { background: var(--hd-blue); border-color: var(--hd-blue); }
    .btn-primary:hover { background: var(--hd-blue-dark); border-color: var(--hd-blue-dark); }
    @media (max-width: 991px) { .app-shell { flex-direction: column; } .app-sidebar { width: 100%; } }
  </style>
</head>
<body>
{% if viewer %}
  <header class="app-header">
    <a class="text-white fw-semibold" href="{{ url_for('tickets') }}"><i class="bi bi-headset me-2"></i>IT Helpdesk</a>
    <div class="d-flex align-items-center gap-3">
      <span class="text-white-50">Signed in as <strong>{{ viewer.name or viewer.email }}</strong></span>
      <a class="btn btn-outline-light btn-sm" href="{{ url_for('logout') }}">Logout</a>
      {% if viewer.provisioned %}
      <a class="btn btn-primary btn-sm" href="{{ url_for('new_ticket') }}"><i class="bi bi-plus-lg me-1"></i>New Ticket</a>
      {% endif %}
    </div>
  </header>
  <div class="app-shell">
    <aside class="app-sidebar">
      <div class="nav-section-title">Workspace</div>
      <a class="nav-pill {% if request.endpoint == 'tickets' %}active{% endif %}" href="{{ url_for('tickets') }}"><i class="bi bi-speedometer"></i>Dashboard</a>
      {% if viewer.provisioned %}
      <a class="nav-pill {% if request.endpoint == 'new_ticket' %}active{% endif %}" href="{{ url_for('new_ticket') }}"><i class="bi bi-plus-circle"></i>New Ticket</a>
      <a class="nav-pill {% if request.endpoint == 'analytics_dashboard' %}active{% endif %}" href="{{ url_for('analytics_dashboard') }}"><i class="bi bi-bar-chart"></i>Analytics</a>
      <a class="nav-pill {% if request.endpoint == 'user_detail' %}active{% endif %}" href="{{ url_for('my_profile') }}"><i class="bi bi-person"></i>My Profile</a>
      {% endif %}
      {% if viewer.is_manager %}
      <div class="nav-section-title">IT Management</div>
      <a class="nav-pill {% if request.endpoint in ('users', 'new_user') %}active{% endif %}" href="{{ url_for('users') }}"><i class="bi bi-people"></i>Users</a>
      {% endif %}
    </aside>
    <main class="app-content">
      {% with messages = get_flashed_messages() %}
        {% if messages %}
          <div class="flash-message">{{ messages|join('\n') }}</div>
        {% endif %}
      {% endwith %}
      {% block workspace_content %}{% endblock %}
    </main>
  </div>
{% else %}
  <main class="container py-5" style="max-width: 560px;">
    {% with messages = get_flashed_messages() %}
      {% if messages %}
        <div class="flash-message mb-4">{{ messages|join('\n') }}</div>
      {% endif %}
    {% endwith %}
    {% block home_content %}{% endblock %}
  </main>
{% endif %}
<script src="https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/js/bootstrap.bundle.min.js"></script>
</body>
</html>
"""

HOME_HTML = """
{% extends 'base.html' %}
{% block home_content %}
<div class="surface-card p-5 text-center">
  <i class="bi bi-headset display-4 text-primary"></i>
  <h1 class="fw-semibold mt-3">IT Helpdesk</h1>
  <p class="text-secondary">File support requests, follow their progress, and keep in touch with the IT team.</p>
  <div class="d-flex justify-content-center gap-2 mt-4">
    <a class="btn btn-primary" href="{{ url_for('login') }}">Sign in</a>
    <a class="btn btn-outline-dark" href="{{ url_for('register') }}">Create account</a>
  </div>
</div>
{% endblock %}
"""

LOGIN_HTML = """
{% extends 'base.html' %}
{% block home_content %}
<div class="surface-card p-4">
  <h2 class="fw-semibold mb-3">Sign in</h2>
  <form method="post" class="d-flex flex-column gap-3">
    <input type="hidden" name="next" value="{{ next_url }}">
    <div>
      <label class="form-label">Email</label>
      <input class="form-control" type="email" name="email" value="{{ email }}" required>
    </div>
    <div>
      <label class="form-label">Password</label>
      <input class="form-control" type="password" name="password" required>
    </div>
    <button class="btn btn-primary" type="submit">Sign in</button>
  </form>
  {% if microsoft_login %}
  <hr>
  <a class="btn btn-outline-dark w-100" href="{{ url_for('login_microsoft') }}"><i class="bi bi-microsoft me-2"></i>Sign in with Microsoft</a>
  {% endif %}
  <p class="text-secondary small mt-3 mb-0">No account yet? <a href="{{ url_for('register') }}">Register</a></p>
</div>
{% endblock %}
"""

PROFILE_FIELDS_HTML = """
<div class="row g-3">
  <div class="col-md-6">
    <label class="form-label">Full name *</label>
    <input class="form-control" name="name" value="{{ form.get('name', '') }}" required>
  </div>
  <div class="col-md-6">
    <label class="form-label">Email *</label>
    <input class="form-control" type="email" name="email" value="{{ form.get('email', '') }}" required>
  </div>
  {% if with_password %}
  <div class="col-md-6">
    <label class="form-label">Password *</label>
    <input class="form-control" type="password" name="password" minlength="{{ min_password }}" placeholder="Minimum {{ min_password }} characters" required>
  </div>
  {% endif %}
  <div class="col-md-6">
    <label class="form-label">Phone number</label>
    <input class="form-control" name="phone_number" value="{{ form.get('phone_number') or '' }}">
  </div>
  <div class="col-md-6">
    <label class="form-label">Branch *</label>
    <select class="form-select" name="branch" required>
      <option value="">Select branch</option>
      {% for b in branches %}<option value="{{ b }}" {% if b == form.get('branch') %}selected{% endif %}>{{ b }}</option>{% endfor %}
    </select>
  </div>
  <div class="col-12">
    <label class="form-label">Designations *</label>
    <div class="d-flex flex-wrap gap-3">
      {% for d in designations %}
      <label class="form-check-label d-flex gap-1 align-items-center">
        <input class="form-check-input" type="checkbox" name="designations" value="{{ d }}" {% if d in form.get('designations', []) %}checked{% endif %}>{{ d }}
      </label>
      {% endfor %}
    </div>
  </div>
</div>
"""

REGISTER_HTML = """
{% extends 'base.html' %}
{% block home_content %}
<div class="surface-card p-4">
  <h2 class="fw-semibold mb-3">Create your account</h2>
  <form method="post" class="d-flex flex-column gap-3">
    {% include 'profile_fields.html' %}
    <button class="btn btn-primary" type="submit">Register</button>
  </form>
  <p class="text-secondary small mt-3 mb-0">Already registered? <a href="{{ url_for('login') }}">Sign in</a></p>
</div>
{% endblock %}
"""

RESET_PASSWORD_HTML = """
{% extends 'base.html' %}
{% block home_content %}
<div class="surface-card p-4">
  <h2 class="fw-semibold mb-3">Choose a new password</h2>
  {% if valid %}
  <form method="post" class="d-flex flex-column gap-3">
    <input class="form-control" type="password" name="password" placeholder="New password" minlength="{{ min_password }}" required>
    <input class="form-control" type="password" name="confirm_password" placeholder="Confirm password" required>
    <button class="btn btn-primary" type="submit">Update password</button>
  </form>
  {% else %}
  <p class="text-secondary mb-0">This reset link is invalid or has expired. Ask an administrator for a new one.</p>
  {% endif %}
</div>
{% endblock %}
"""

DASHBOARD_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
<section class="d-flex flex-wrap align-items-center justify-content-between gap-3">
  <div>
    <h1 class="fw-semibold mb-1">{% if viewer.is_manager %}All Tickets{% else %}My Tickets{% endif %}</h1>
    <p class="text-secondary mb-0">
      {% if not viewer.provisioned %}Your account is awaiting profile setup by an administrator.
      {% elif viewer.is_manager %}Triage, assign and resolve requests across every branch.
      {% else %}Track the requests you have filed with IT.{% endif %}
    </p>
  </div>
</section>

<div class="row g-3">
  {% for label, key in [('Total', 'total'), ('Open', 'open'), ('In Progress', 'in_progress'), ('Resolved', 'resolved'), ('High Priority', 'high_priority'), ('Mine', 'mine')] %}
  <div class="col-6 col-md-4 col-xl-2">
    <div class="surface-card p-3 h-100">
      <div class="text-secondary small text-uppercase">{{ label }}</div>
      <p class="stat-value">{{ stats[key] }}</p>
    </div>
  </div>
  {% endfor %}
</div>

<div class="surface-card p-4">
  <form class="row g-3 align-items-end" method="get">
    <div class="col-md-4">
      <label class="form-label small text-uppercase">Search</label>
      <input class="form-control" name="q" value="{{ search }}" placeholder="Title or description">
    </div>
    <div class="col-md-3">
      <label class="form-label small text-uppercase">Status</label>
      <select class="form-select" name="status">
        <option value="">All statuses</option>
        {% for s in statuses %}<option value="{{ s }}" {% if s == selected_status %}selected{% endif %}>{{ s }}</option>{% endfor %}
      </select>
    </div>
    <div class="col-md-3">
      <label class="form-label small text-uppercase">Priority</label>
      <select class="form-select" name="priority">
        <option value="">All priorities</option>
        {% for p in priorities %}<option value="{{ p }}" {% if p == selected_priority %}selected{% endif %}>{{ p }}</option>{% endfor %}
      </select>
    </div>
    <div class="col-md-2 d-flex gap-2">
      <button class="btn btn-primary" type="submit"><i class="bi bi-funnel"></i> Filter</button>
      <a class="btn btn-link" href="{{ url_for('tickets') }}">Clear</a>
    </div>
  </form>
</div>

<div class="surface-card p-0 overflow-hidden">
  <form method="post" action="{{ url_for('bulk_update') }}">
  {% if can_manage %}
  <div class="d-flex flex-wrap gap-2 align-items-end p-3 border-bottom">
    <div>
      <label class="form-label small text-uppercase">Bulk action</label>
      <select class="form-select form-select-sm" name="action">
        <option value="">Choose…</option>
        <option value="status">Set status</option>
        <option value="priority">Set priority</option>
        <option value="assign">Assign</option>
      </select>
    </div>
    <select class="form-select form-select-sm w-auto" name="status">
      {% for s in statuses %}<option value="{{ s }}">{{ s }}</option>{% endfor %}
    </select>
    <select class="form-select form-select-sm w-auto" name="priority">
      {% for p in priorities %}<option value="{{ p }}">{{ p }}</option>{% endfor %}
    </select>
    <select class="form-select form-select-sm w-auto" name="assigned_to">
      {% for person in assignees %}<option value="{{ person.user_id }}">{{ person.name }}</option>{% endfor %}
    </select>
    <button class="btn btn-outline-dark btn-sm" type="submit">Apply to selected</button>
  </div>
  {% endif %}
  <div class="table-responsive">
    <table class="table align-middle mb-0">
      <thead>
        <tr>
          {% if can_manage %}<th></th>{% endif %}
          <th>#</th><th>Title</th><th>Status</th><th>Priority</th><th>Requester</th><th>Assignee</th><th>Created</th>
        </tr>
      </thead>
      <tbody>
        {% for t in tickets %}
        {% set status_style = status_badges.get(t.status, status_badges['Open']) %}
        {% set priority_style = priority_badges.get(t.priority, priority_badges['Medium']) %}
        <tr>
          {% if can_manage %}<td><input class="form-check-input" type="checkbox" name="ticket_ids" value="{{ t.id }}"></td>{% endif %}
          <td>{{ t.id }}</td>
          <td><a href="{{ url_for('ticket_detail', ticket_id=t.id) }}">{{ t.title }}</a></td>
          <td><span class="{{ status_style.cls }}"><i class="{{ status_style.icon }}"></i>{{ t.status }}</span></td>
          <td><span class="{{ priority_style.cls }}"><i class="{{ priority_style.icon }}"></i>{{ t.priority }}</span></td>
          <td>{{ t.creator_name or 'Unknown' }}</td>
          <td>{{ t.assignee_name or 'Unassigned' }}</td>
          <td class="text-secondary small">{{ format_ts(t.created_at) }}</td>
        </tr>
        {% else %}
        <tr><td colspan="8" class="text-center text-secondary py-4">No tickets found.</td></tr>
        {% endfor %}
      </tbody>
    </table>
  </div>
  </form>
</div>
{% endblock %}
"""

NEW_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
<div class="surface-card p-4">
  <h2 class="fw-semibold mb-1">Create support ticket</h2>
  <p class="text-secondary">Describe the problem and IT will pick it up.</p>
  <form method="post" enctype="multipart/form-data" class="d-flex flex-column gap-3">
    <div>
      <label class="form-label">Title *</label>
      <input class="form-control" name="title" placeholder="Brief description of the issue" required>
    </div>
    <div>
      <label class="form-label">Description *</label>
      <textarea class="form-control" name="description" rows="5" placeholder="What happened, and what have you tried?" required></textarea>
    </div>
    <div>
      <label class="form-label">Priority</label>
      <select class="form-select" name="priority">
        {% for p in priorities %}<option value="{{ p }}" {% if p == 'Medium' %}selected{% endif %}>{{ p }}</option>{% endfor %}
      </select>
    </div>
    <div>
      <label class="form-label">Attachments</label>
      <input class="form-control" type="file" name="attachments" multiple>
      <div class="form-text">Up to {{ attachment_limit }} in total.</div>
    </div>
    <div class="d-flex justify-content-end">
      <button class="btn btn-primary" type="submit"><i class="bi bi-send me-1"></i>Submit ticket</button>
    </div>
  </form>
</div>
{% endblock %}
"""

DETAIL_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
{% set status_style = status_badges.get(t.status, status_badges['Open']) %}
{% set priority_style = priority_badges.get(t.priority, priority_badges['Medium']) %}
<div class="d-flex flex-wrap align-items-start justify-content-between gap-3">
  <div>
    <span class="badge-chip badge-closed"><i class="bi bi-ticket-detailed"></i> Ticket #{{ t.id }}</span>
    <h2 class="fw-semibold mt-2 mb-1">{{ t.title }}</h2>
    <div class="text-secondary small">
      <i class="bi bi-person-circle me-1"></i>{{ t.creator_name or 'Unknown' }}
      {% if t.creator_branch %}• <i class="bi bi-geo-alt me-1"></i>{{ t.creator_branch }}{% endif %}
      • Created {{ format_ts(t.created_at) }}
    </div>
  </div>
  <div class="d-flex gap-2">
    <span class="{{ status_style.cls }}"><i class="{{ status_style.icon }}"></i>{{ t.status }}</span>
    <span class="{{ priority_style.cls }}"><i class="{{ priority_style.icon }}"></i>{{ t.priority }} Priority</span>
  </div>
</div>

<div class="row g-4">
  <div class="col-xl-8 d-flex flex-column gap-4">
    <div class="surface-card p-4">
      <h5 class="fw-semibold">Issue details</h5>
      <p class="mb-0" style="white-space: pre-line;">{{ t.description }}</p>
      <div class="d-flex flex-wrap gap-3 text-secondary small mt-4">
        <span><i class="bi bi-clock-history me-1"></i>Updated {{ format_ts(t.updated_at) }}</span>
        <span><i class="bi bi-calendar-check me-1"></i>Completed {{ format_ts(t.completed_at) }}</span>
        <span><i class="bi bi-person-bounding-box me-1"></i>Assigned to {{ t.assignee_name or 'Unassigned' }}</span>
      </div>
    </div>
    <div class="surface-card p-4">
      <h5 class="fw-semibold mb-3">Comments</h5>
      {% for c in comments %}
      <div class="border-start border-3 border-primary ps-3 mb-3">
        <div class="fw-semibold">{{ c.author_name or 'Unknown' }}</div>
        <div class="text-secondary small">{{ format_ts(c.created_at) }}</div>
        <div class="mt-1" style="white-space: pre-line;">{{ c.message }}</div>
      </div>
      {% else %}
      <p class="text-secondary">No comments yet.</p>
      {% endfor %}
      <form method="post" action="{{ url_for('add_comment', ticket_id=t.id) }}" class="mt-3">
        <textarea class="form-control" name="message" rows="3" placeholder="Add a comment" required></textarea>
        <div class="d-flex justify-content-end mt-2">
          <button class="btn btn-primary" type="submit"><i class="bi bi-chat-text me-1"></i>Post comment</button>
        </div>
      </form>
    </div>
  </div>
  <div class="col-xl-4 d-flex flex-column gap-4">
    <div class="surface-card p-4">
      <h5 class="fw-semibold mb-3">Attachments</h5>
      {% for file in attachments %}
      <div class="d-flex justify-content-between">
        <a href="{{ file.file_url }}"><i class="bi bi-paperclip"></i> {{ file.file_name }}</a>
        <span class="text-secondary small">{{ file.size_label }}</span>
      </div>
      {% else %}
      <p class="text-secondary small mb-0">No attachments uploaded for this ticket.</p>
      {% endfor %}
    </div>
    <div class="surface-card p-4">
      <h5 class="fw-semibold mb-3">Ticket controls</h5>
      {% if can_manage %}
      <form method="post" action="{{ url_for('update_status', ticket_id=t.id) }}" class="mb-3">
        <label class="form-label small text-uppercase">Status</label>
        <div class="d-flex gap-2">
          <select name="status" class="form-select">
            {% for s in next_statuses %}<option value="{{ s }}" {% if s == t.status %}selected{% endif %}>{{ s }}</option>{% endfor %}
          </select>
          <button class="btn btn-primary" type="submit">Save</button>
        </div>
      </form>
      <form method="post" action="{{ url_for('update_priority', ticket_id=t.id) }}" class="mb-3">
        <label class="form-label small text-uppercase">Priority</label>
        <div class="d-flex gap-2">
          <select name="priority" class="form-select">
            {% for p in priorities %}<option value="{{ p }}" {% if p == t.priority %}selected{% endif %}>{{ p }}</option>{% endfor %}
          </select>
          <button class="btn btn-primary" type="submit">Save</button>
        </div>
      </form>
      <form method="post" action="{{ url_for('update_assignee', ticket_id=t.id) }}">
        <label class="form-label small text-uppercase">Assignee</label>
        <div class="d-flex gap-2">
          <select name="assigned_to" class="form-select">
            <option value="">Unassigned</option>
            {% for person in assignees %}<option value="{{ person.user_id }}" {% if person.user_id == t.assigned_to %}selected{% endif %}>{{ person.name }}</option>{% endfor %}
          </select>
          <button class="btn btn-outline-dark" type="submit">Save</button>
        </div>
      </form>
      {% else %}
      <p class="text-secondary small mb-0">Status and assignment are managed by IT staff.</p>
      {% endif %}
    </div>
  </div>
</div>
{% endblock %}
"""

ANALYTICS_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
<h1 class="fw-semibold mb-0">Analytics</h1>
<div class="row g-3">
  <div class="col-md-3"><div class="surface-card p-3"><div class="text-secondary small text-uppercase">Active tickets</div><p class="stat-value">{{ data.stats.active }}</p></div></div>
  <div class="col-md-3"><div class="surface-card p-3"><div class="text-secondary small text-uppercase">Resolution rate</div><p class="stat-value">{{ data.resolution_rate }}%</p></div></div>
  <div class="col-md-3"><div class="surface-card p-3"><div class="text-secondary small text-uppercase">Avg. resolution</div><p class="stat-value">{% if data.avg_resolution_hours is not none %}{{ data.avg_resolution_hours }}h{% else %}—{% endif %}</p></div></div>
  <div class="col-md-3"><div class="surface-card p-3"><div class="text-secondary small text-uppercase">This week</div>
    <p class="stat-value">{{ data.week_over_week.this_week }}</p>
    <span class="text-secondary small">{% if data.week_over_week.change is not none %}{{ '%+.1f'|format(data.week_over_week.change) }}% vs last week{% endif %}</span>
  </div></div>
</div>
<div class="row g-3">
  {% for title, rows in [('By status', data.by_status), ('By priority', data.by_priority), ('By branch', data.by_branch), ('By designation', data.by_designation)] %}
  <div class="col-md-6 col-xl-3">
    <div class="surface-card p-4 h-100">
      <h6 class="text-uppercase small text-secondary">{{ title }}</h6>
      {% for row in rows %}
      <div class="d-flex justify-content-between"><span>{{ row.name }}</span><span class="fw-semibold">{{ row.value }}</span></div>
      {% else %}
      <div class="text-secondary">No tickets yet.</div>
      {% endfor %}
    </div>
  </div>
  {% endfor %}
</div>
<div class="row g-3">
  <div class="col-xl-6">
    <div class="surface-card p-4">
      <h6 class="text-uppercase small text-secondary">Last seven days</h6>
      <table class="table table-sm mb-0">
        <thead><tr><th>Day</th><th>Created</th><th>Resolved</th></tr></thead>
        <tbody>
          {% for day in data.weekly_trend %}<tr><td>{{ day.day }}</td><td>{{ day.tickets }}</td><td>{{ day.resolved }}</td></tr>{% endfor %}
        </tbody>
      </table>
    </div>
  </div>
  <div class="col-xl-6">
    <div class="surface-card p-4">
      <h6 class="text-uppercase small text-secondary">Recent activity</h6>
      {% for item in activity %}
      <div class="mb-2">
        <div class="fw-semibold small">{{ item.title }} · {{ item.user }}</div>
        <div class="small">{% if item.ticket_id %}<a href="{{ url_for('ticket_detail', ticket_id=item.ticket_id) }}">{{ item.description }}</a>{% else %}{{ item.description }}{% endif %}</div>
        <div class="text-secondary small">{{ format_ts(item.timestamp) }}</div>
      </div>
      {% else %}
      <div class="text-secondary">No recent activity.</div>
      {% endfor %}
    </div>
  </div>
</div>
{% endblock %}
"""

USERS_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
<section class="d-flex flex-wrap align-items-center justify-content-between gap-3">
  <h1 class="fw-semibold mb-0">Users</h1>
  {% if viewer.is_admin %}<a class="btn btn-primary" href="{{ url_for('new_user') }}"><i class="bi bi-person-plus me-1"></i>Add user</a>{% endif %}
</section>
<div class="surface-card p-4">
  <form class="row g-3 align-items-end" method="get">
    <div class="col-md-4"><input class="form-control" name="q" value="{{ search }}" placeholder="Search by name or email"></div>
    <div class="col-md-3">
      <select class="form-select" name="branch">
        <option value="">All branches</option>
        {% for b in branches %}<option value="{{ b }}" {% if b == selected_branch %}selected{% endif %}>{{ b }}</option>{% endfor %}
      </select>
    </div>
    <div class="col-md-3">
      <select class="form-select" name="designation">
        <option value="">All designations</option>
        {% for d in designations %}<option value="{{ d }}" {% if d == selected_designation %}selected{% endif %}>{{ d }}</option>{% endfor %}
      </select>
    </div>
    <div class="col-md-2"><button class="btn btn-primary" type="submit">Filter</button></div>
  </form>
</div>
<div class="surface-card p-0 overflow-hidden">
  <table class="table align-middle mb-0">
    <thead><tr><th>Name</th><th>Email</th><th>Designations</th><th>Branch</th><th>Role</th></tr></thead>
    <tbody>
      {% for u in users %}
      <tr>
        <td><a href="{{ url_for('user_detail', user_id=u.id) }}">{{ u.name }}</a></td>
        <td>{{ u.email }}</td>
        <td>{{ u.designations|join(', ') }}</td>
        <td>{{ u.branch or '—' }}</td>
        <td>{% if u.is_admin %}<span class="badge-chip badge-open">Admin</span>{% else %}User{% endif %}</td>
      </tr>
      {% else %}
      <tr><td colspan="5" class="text-center text-secondary py-4">No users match these filters.</td></tr>
      {% endfor %}
    </tbody>
  </table>
</div>
{% endblock %}
"""

USER_DETAIL_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
<div class="row g-4">
  <div class="col-xl-5 d-flex flex-column gap-4">
    <div class="surface-card p-4">
      <h2 class="fw-semibold mb-1">{{ u.name }}</h2>
      <div class="text-secondary">{{ u.email }}{% if u.phone_number %} · {{ u.phone_number }}{% endif %}</div>
      <div class="mt-2">{{ u.designations|join(', ') }} · {{ u.branch or 'No branch' }}{% if u.is_admin %} · <span class="badge-chip badge-open">Admin</span>{% endif %}</div>
    </div>
    <div class="surface-card p-4">
      <h6 class="text-uppercase small text-secondary">Activity</h6>
      <div class="d-flex justify-content-between"><span>Tickets created</span><strong>{{ activity.tickets_created }}</strong></div>
      <div class="d-flex justify-content-between"><span>Tickets assigned</span><strong>{{ activity.tickets_assigned }}</strong></div>
      <div class="d-flex justify-content-between"><span>Comments</span><strong>{{ activity.comments_count }}</strong></div>
      <div class="d-flex justify-content-between"><span>Last comment</span><strong>{{ format_ts(activity.last_activity) }}</strong></div>
      <h6 class="text-uppercase small text-secondary mt-3">Recent tickets</h6>
      {% for t in activity.recent_tickets %}
      <div><a href="{{ url_for('ticket_detail', ticket_id=t.id) }}">#{{ t.id }} {{ t.title }}</a> <span class="text-secondary small">{{ t.status }}</span></div>
      {% else %}
      <div class="text-secondary">No tickets yet.</div>
      {% endfor %}
    </div>
  </div>
  {% if viewer.is_admin %}
  <div class="col-xl-7 d-flex flex-column gap-4">
    <div class="surface-card p-4">
      <h5 class="fw-semibold mb-3">Edit user</h5>
      <form method="post" action="{{ url_for('edit_user', user_id=u.id) }}" class="d-flex flex-column gap-3">
        {% include 'profile_fields.html' %}
        <label class="form-check-label d-flex gap-2"><input class="form-check-input" type="checkbox" name="is_admin" value="1" {% if form.get('is_admin') %}checked{% endif %}>Administrator</label>
        <div class="d-flex justify-content-end"><button class="btn btn-primary" type="submit">Save changes</button></div>
      </form>
    </div>
    <div class="surface-card p-4">
      <h5 class="fw-semibold mb-2">Password</h5>
      <form method="post" action="{{ url_for('reset_user_password', user_id=u.id) }}">
        <p class="text-secondary small">Send {{ u.name }} a link to choose a new password.</p>
        <button class="btn btn-outline-dark" type="submit"><i class="bi bi-key me-1"></i>Reset password</button>
      </form>
    </div>
  </div>
  {% endif %}
</div>
{% endblock %}
"""

NEW_USER_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
<div class="surface-card p-4">
  <h2 class="fw-semibold mb-1">Add new user</h2>
  <p class="text-secondary">Create a user account for the IT support system.</p>
  <form method="post" class="d-flex flex-column gap-3">
    {% include 'profile_fields.html' %}
    <label class="form-check-label d-flex gap-2"><input class="form-check-input" type="checkbox" name="is_admin" value="1" {% if form.get('is_admin') %}checked{% endif %}>Administrator</label>
    <div class="d-flex justify-content-end gap-2">
      <a class="btn btn-link" href="{{ url_for('users') }}">Cancel</a>
      <button class="btn btn-primary" type="submit">Create user</button>
    </div>
  </form>
</div>
{% endblock %}
"""

ERROR_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
<div class="surface-card p-5 text-center">
  <i class="bi bi-shield-lock display-5 text-secondary"></i>
  <h2 class="fw-semibold mt-3">{{ error.status_code }}</h2>
  <p class="text-secondary mb-0">{{ error.message }}</p>
</div>
{% endblock %}
{% block home_content %}
<div class="surface-card p-5 text-center">
  <h2 class="fw-semibold">{{ error.status_code }}</h2>
  <p class="text-secondary mb-0">{{ error.message }}</p>
</div>
{% endblock %}
"""

# --------------------------------------------------------------------------------------
# Routes
# --------------------------------------------------------------------------------------

def _profile_form_context(form: dict, with_password: bool) -> dict:
    return {
        "form": form,
        "with_password": with_password,
        "min_password": MIN_PASSWORD_LENGTH,
        "branches": BRANCHES,
        "designations": sorted(set(DESIGNATIONS) | set(form.get("designations") or [])),
    }


def _submitted_profile() -> dict:
    return {
        "name": request.form.get("name"),
        "email": request.form.get("email"),
        "password": request.form.get("password"),
        "phone_number": request.form.get("phone_number"),
        "branch": request.form.get("branch"),
        "designations": request.form.getlist("designations"),
        "is_admin": bool(request.form.get("is_admin")),
    }


@app.route("/")
def home():
    if session.get("user"):
        return redirect(url_for("tickets"))
    return render_template_string(HOME_HTML)


@app.route("/login", methods=["GET", "POST"])
def login():
    if request.method == "GET" and session.get("user"):
        return redirect(url_for("tickets"))
    next_url = request.values.get("next") or ""
    if request.method == "POST":
        email = (request.form.get("email") or "").strip().lower()
        password = request.form.get("password") or ""
        db = get_db()
        account = find_account_by_email(db, email)
        if not account or not account.password_hash or not check_password_hash(account.password_hash, password):
            flash("Invalid email or password.")
            return render_template_string(LOGIN_HTML, next_url=next_url, email=email), 401
        _sign_in(account)
        db.commit()
        return redirect(_safe_next(next_url))
    return render_template_string(LOGIN_HTML, next_url=next_url, email="")


@app.route("/register", methods=["GET", "POST"])
def register():
    if session.get("user"):
        return redirect(url_for("tickets"))
    if request.method == "POST":
        submitted = _submitted_profile()
        try:
            cleaned = validate_profile_fields(submitted, require_password=True)
            db = get_db()
            profile = create_account(
                db,
                email=cleaned["email"],
                password=cleaned["password"],
                name=cleaned["name"],
                designations=cleaned["designations"],
                branch=cleaned["branch"],
                phone_number=cleaned["phone_number"],
            )
        except ValidationFailed as exc:
            flash(exc.message)
            return render_template_string(
                REGISTER_HTML, **_profile_form_context(submitted, with_password=True)
            ), 400
        _sign_in(profile.account)
        db.commit()
        flash("Registration successful! Welcome to the IT Helpdesk.")
        return redirect(url_for("tickets"))
    return render_template_string(REGISTER_HTML, **_profile_form_context({}, with_password=True))


@app.route("/reset-password/<token>", methods=["GET", "POST"])
def reset_password(token: str):
    db = get_db()
    account = db.query(Account).filter(Account.reset_token == token).one_or_none()
    valid = bool(
        account
        and account.reset_expires_at
        and _as_utc(account.reset_expires_at) > utcnow()
    )
    if request.method == "POST" and valid:
        try:
            password = validate_new_password(
                request.form.get("password"), request.form.get("confirm_password")
            )
        except ValidationFailed as exc:
            flash(exc.message)
            return redirect(url_for("reset_password", token=token))
        account.password_hash = generate_password_hash(password)
        account.reset_token = None
        account.reset_expires_at = None
        db.commit()
        flash("Password updated. You can now sign in.")
        return redirect(url_for("login"))
    return render_template_string(
        RESET_PASSWORD_HTML, valid=valid, min_password=MIN_PASSWORD_LENGTH
    ), (200 if valid else 404)


@app.route("/tickets")
@login_required
def tickets():
    principal = current_principal()
    db = get_db()

    status_filter = (request.args.get("status") or "").strip()
    priority_filter = (request.args.get("priority") or "").strip()
    search = (request.args.get("q") or "").strip()
    selected_status = status_filter if status_filter in STATUSES else ""
    selected_priority = priority_filter if priority_filter in PRIORITIES else ""

    visible = [ticket_to_dict(t) for t in ticket_query(db, principal).all()]
    stats = ticket_stats(visible, principal.user_id)

    q = ticket_query(db, principal)
    if selected_status:
        q = q.filter(Ticket.status == selected_status)
    if selected_priority:
        q = q.filter(Ticket.priority == selected_priority)
    if search:
        like = f"%{search.lower()}%"
        q = q.filter(or_(func.lower(Ticket.title).like(like), func.lower(Ticket.description).like(like)))
    rows = q.order_by(Ticket.created_at.desc(), Ticket.id.desc()).all()

    can_manage = can_manage_tickets(principal)
    return render_template_string(
        DASHBOARD_HTML,
        tickets=[ticket_to_dict(t) for t in rows],
        stats=stats,
        statuses=STATUSES,
        priorities=PRIORITIES,
        selected_status=selected_status,
        selected_priority=selected_priority,
        search=search,
        can_manage=can_manage,
        assignees=assignable_profiles(db) if can_manage else [],
    )


@app.route("/new", methods=["GET", "POST"])
@login_required
def new_ticket():
    principal = current_principal()
    require_profile(principal)
    if request.method == "POST":
        try:
            fields = prepare_new_ticket(principal, request.form)
        except ValidationFailed as exc:
            flash(exc.message)
            return redirect(url_for("new_ticket"))

        attachments_to_save: list[dict[str, object]] = []
        total_size = 0
        for upload in request.files.getlist("attachments"):
            if not upload or not upload.filename:
                continue
            file_data = upload.read()
            if not file_data:
                continue
            total_size += len(file_data)
            if total_size > MAX_ATTACHMENT_TOTAL_BYTES:
                flash(
                    "Attachments exceed the total upload limit of "
                    f"{format_file_size(MAX_ATTACHMENT_TOTAL_BYTES)}."
                )
                return redirect(url_for("new_ticket"))
            attachments_to_save.append(
                {
                    "file_name": secure_filename(upload.filename) or f"attachment-{len(attachments_to_save) + 1}",
                    "content_type": upload.mimetype,
                    "data": file_data,
                }
            )

        db = get_db()
        ts = utcnow()
        ticket = Ticket(created_at=ts, updated_at=ts, completed_at=None, **fields)
        db.add(ticket)
        db.flush()

        for item in attachments_to_save:
            attachment = Attachment(
                ticket_id=ticket.id,
                file_name=item["file_name"],
                content_type=item["content_type"],
                size=len(item["data"]),
                data=item["data"],
                uploaded_at=ts,
            )
            db.add(attachment)
            db.flush()
            attachment.file_url = url_for(
                "download_attachment", ticket_id=ticket.id, attachment_id=attachment.id
            )

        db.commit()
        app.logger.info("Ticket %s created by %s", ticket.id, principal.user_id)
        notify_new_ticket(db, ticket, principal)
        flash("Ticket created successfully!")
        return redirect(url_for("ticket_detail", ticket_id=ticket.id))

    return render_template_string(
        NEW_HTML,
        priorities=PRIORITIES,
        attachment_limit=format_file_size(MAX_ATTACHMENT_TOTAL_BYTES),
    )


@app.route("/ticket/<int:ticket_id>")
@login_required
def ticket_detail(ticket_id: int):
    principal = current_principal()
    db = get_db()
    ticket = (
        db.query(Ticket)
        .options(joinedload(Ticket.comments), joinedload(Ticket.attachments))
        .filter(Ticket.id == ticket_id)
        .one_or_none()
    )
    if ticket is None:
        abort(404)
    require_ticket_view(principal, ticket.creator_id)

    epoch = datetime.min.replace(tzinfo=timezone.utc)
    comments = [
        {
            "id": c.id,
            "author_name": c.author.name if c.author else None,
            "message": c.message,
            "created_at": _as_utc(c.created_at),
        }
        for c in sorted(ticket.comments, key=lambda c: (_as_utc(c.created_at) or epoch, c.id or 0))
    ]
    attachments = [
        {
            "id": a.id,
            "file_name": a.file_name,
            "file_url": a.file_url or url_for("download_attachment", ticket_id=ticket.id, attachment_id=a.id),
            "size_label": format_file_size(a.size or 0),
        }
        for a in sorted(ticket.attachments, key=lambda a: a.id)
    ]
    can_manage = can_manage_tickets(principal)
    return render_template_string(
        DETAIL_HTML,
        t=ticket_to_dict(ticket),
        comments=comments,
        attachments=attachments,
        can_manage=can_manage,
        next_statuses=[s for s in STATUSES if s in allowed_transitions(ticket.status) | {ticket.status}],
        priorities=PRIORITIES,
        assignees=assignable_profiles(db) if can_manage else [],
    )


@app.route("/ticket/<int:ticket_id>/attachment/<int:attachment_id>")
@login_required
def download_attachment(ticket_id: int, attachment_id: int):
    principal = current_principal()
    db = get_db()
    ticket = get_visible_ticket(db, principal, ticket_id)
    attachment = (
        db.query(Attachment)
        .filter(Attachment.id == attachment_id, Attachment.ticket_id == ticket.id)
        .one_or_none()
    )
    if not attachment:
        abort(404)
    return send_file(
        io.BytesIO(attachment.data or b""),
        download_name=attachment.file_name,
        mimetype=attachment.content_type or "application/octet-stream",
        as_attachment=True,
    )


@app.route("/ticket/<int:ticket_id>/comment", methods=["POST"])
@login_required
def add_comment(ticket_id: int):
    principal = current_principal()
    db = get_db()
    ticket = db.get(Ticket, ticket_id)
    if ticket is None:
        abort(404)
    require_comment(principal, ticket.creator_id)
    message = (request.form.get("message") or "").strip()
    if not message:
        flash("Comment cannot be empty.")
        return redirect(url_for("ticket_detail", ticket_id=ticket_id))

    ts = utcnow()
    comment = Comment(ticket_id=ticket.id, author_id=principal.user_id, message=message, created_at=ts)
    db.add(comment)
    ticket.updated_at = ts
    db.commit()
    if principal.is_manager:
        notify_comment(ticket, comment, principal)
    flash("Comment added.")
    return redirect(url_for("ticket_detail", ticket_id=ticket_id))


@app.route("/ticket/<int:ticket_id>/status", methods=["POST"])
@login_required
def update_status(ticket_id: int):
    principal = current_principal()
    require_ticket_management(principal)
    db = get_db()
    ticket = get_visible_ticket(db, principal, ticket_id)
    try:
        previous = _apply_status(ticket, request.form.get("status"), utcnow())
    except ValidationFailed as exc:
        flash(exc.message)
        return redirect(url_for("ticket_detail", ticket_id=ticket_id))
    db.commit()
    notify_status_change(ticket, previous)
    flash("Status updated.")
    return redirect(url_for("ticket_detail", ticket_id=ticket_id))


@app.route("/ticket/<int:ticket_id>/assignee", methods=["POST"])
@login_required
def update_assignee(ticket_id: int):
    principal = current_principal()
    require_ticket_management(principal)
    db = get_db()
    ticket = get_visible_ticket(db, principal, ticket_id)
    try:
        assignee = _resolve_assignee(db, request.form.get("assigned_to"))
    except ValidationFailed as exc:
        flash(exc.message)
        return redirect(url_for("ticket_detail", ticket_id=ticket_id))
    ticket.assigned_to = assignee.user_id if assignee else None
    ticket.updated_at = utcnow()
    db.commit()
    flash("Assignee updated.")
    return redirect(url_for("ticket_detail", ticket_id=ticket_id))


@app.route("/ticket/<int:ticket_id>/priority", methods=["POST"])
@login_required
def update_priority(ticket_id: int):
    principal = current_principal()
    require_ticket_management(principal)
    db = get_db()
    ticket = get_visible_ticket(db, principal, ticket_id)
    try:
        ticket.priority = validate_priority(request.form.get("priority"))
    except ValidationFailed as exc:
        flash(exc.message)
        return redirect(url_for("ticket_detail", ticket_id=ticket_id))
    ticket.updated_at = utcnow()
    db.commit()
    flash("Priority updated.")
    return redirect(url_for("ticket_detail", ticket_id=ticket_id))


@app.route("/tickets/bulk", methods=["POST"])
@login_required
def bulk_update():
    principal = current_principal()
    require_ticket_management(principal)
    db = get_db()
    action = (request.form.get("action") or "").strip()
    try:
        ticket_ids = sorted({int(value) for value in request.form.getlist("ticket_ids")})
    except ValueError:
        ticket_ids = []
    try:
        if action not in BULK_ACTIONS or not ticket_ids:
            raise ValidationFailed(
                [name for name, ok in (("action", action in BULK_ACTIONS), ("ticket_ids", ticket_ids)) if not ok],
                "Please select an action and tickets.",
            )
        rows = db.query(Ticket).filter(Ticket.id.in_(ticket_ids)).all()
        ts = utcnow()
        changes: list[tuple[Ticket, str]] = []
        if action == "status":
            new_status = request.form.get("status")
            for ticket in rows:
                changes.append((ticket, _apply_status(ticket, new_status, ts)))
        elif action == "priority":
            priority = validate_priority(request.form.get("priority"))
            for ticket in rows:
                ticket.priority = priority
                ticket.updated_at = ts
        else:
            assignee = _resolve_assignee(db, request.form.get("assigned_to"))
            if assignee is None:
                raise ValidationFailed(["assigned_to"], "Please select a user to assign to.")
            for ticket in rows:
                ticket.assigned_to = assignee.user_id
                ticket.updated_at = ts
    except ValidationFailed as exc:
        db.rollback()
        flash(exc.message)
        return redirect(url_for("tickets"))
    db.commit()
    for ticket, previous in changes:
        notify_status_change(ticket, previous)
    flash(f"Updated {len(rows)} tickets successfully")
    return redirect(url_for("tickets"))


@app.route("/analytics")
@login_required
def analytics_dashboard():
    principal = current_principal()
    require_profile(principal)
    db = get_db()
    visible = [ticket_to_dict(t) for t in ticket_query(db, principal).all()]
    return render_template_string(
        ANALYTICS_HTML,
        data=build_analytics(visible, principal.user_id),
        activity=_recent_activity(db, principal),
    )


def _recent_activity(db: Session, principal: Principal) -> list[dict]:
    recent_tickets = (
        ticket_query(db, principal)
        .order_by(Ticket.created_at.desc(), Ticket.id.desc())
        .limit(10)
        .all()
    )
    comment_q = db.query(Comment, Ticket).join(Comment.ticket)
    scope = ticket_scope(principal)
    if scope is not None:
        comment_q = comment_q.filter(Ticket.creator_id == scope)
    recent_comments = comment_q.order_by(Comment.created_at.desc(), Comment.id.desc()).limit(10).all()
    return activity_feed(
        [ticket_to_dict(t) for t in recent_tickets],
        [
            {
                "id": comment.id,
                "ticket_id": ticket.id,
                "ticket_title": ticket.title,
                "message": comment.message,
                "author_name": comment.author.name if comment.author else None,
                "created_at": _as_utc(comment.created_at),
            }
            for comment, ticket in recent_comments
        ],
    )

# --------------------------------------------------------------------------------------
# JSON endpoints (used for explicit refetch by dashboard widgets)
# --------------------------------------------------------------------------------------

@app.route("/api/tickets")
@login_required
def api_tickets():
    principal = current_principal()
    db = get_db()
    q = ticket_query(db, principal)
    status_filter = (request.args.get("status") or "").strip()
    priority_filter = (request.args.get("priority") or "").strip()
    if status_filter in STATUSES:
        q = q.filter(Ticket.status == status_filter)
    if priority_filter in PRIORITIES:
        q = q.filter(Ticket.priority == priority_filter)
    rows = q.order_by(Ticket.created_at.desc(), Ticket.id.desc()).all()
    return jsonify({"tickets": [_jsonable(ticket_to_dict(t)) for t in rows]})


@app.route("/api/analytics")
@login_required
def api_analytics():
    principal = current_principal()
    require_profile(principal)
    db = get_db()
    visible = [ticket_to_dict(t) for t in ticket_query(db, principal).all()]
    return jsonify(build_analytics(visible, principal.user_id))


@app.route("/api/activity")
@login_required
def api_activity():
    principal = current_principal()
    require_profile(principal)
    return jsonify({"activity": [_jsonable(item) for item in _recent_activity(get_db(), principal)]})


@app.route("/api/users")
@login_required
def api_users():
    principal = current_principal()
    require_user_directory(principal)
    rows = user_query(
        get_db(),
        search=(request.args.get("q") or "").strip(),
        branch=(request.args.get("branch") or "").strip(),
        designation=(request.args.get("designation") or "").strip(),
    ).all()
    return jsonify({"users": [_jsonable(profile_to_dict(p)) for p in rows]})

# --------------------------------------------------------------------------------------
# User management
# --------------------------------------------------------------------------------------

@app.route("/users")
@login_required
def users():
    principal = current_principal()
    require_user_directory(principal)
    search = (request.args.get("q") or "").strip()
    branch = (request.args.get("branch") or "").strip()
    designation = (request.args.get("designation") or "").strip()
    rows = user_query(get_db(), search=search, branch=branch, designation=designation).all()
    return render_template_string(
        USERS_HTML,
        users=[profile_to_dict(p) for p in rows],
        search=search,
        branches=BRANCHES,
        designations=DESIGNATIONS,
        selected_branch=branch,
        selected_designation=designation,
    )


@app.route("/profile")
@login_required
def my_profile():
    principal = current_principal()
    require_profile(principal)
    return redirect(url_for("user_detail", user_id=principal.user_id))


@app.route("/users/<user_id>")
@login_required
def user_detail(user_id: str):
    principal = current_principal()
    require_profile_view(principal, user_id)
    db = get_db()
    profile = db.get(Profile, user_id)
    if profile is None:
        abort(404)
    data = profile_to_dict(profile)
    return render_template_string(
        USER_DETAIL_HTML,
        u=data,
        activity=user_activity(db, user_id),
        **_profile_form_context(data, with_password=False),
    )


@app.route("/users/new", methods=["GET", "POST"])
@login_required
def new_user():
    principal = current_principal()
    require_admin(principal)
    if request.method == "POST":
        submitted = _submitted_profile()
        db = get_db()
        try:
            cleaned = validate_profile_fields(submitted, require_password=True)
            profile = create_account(
                db,
                email=cleaned["email"],
                password=cleaned["password"],
                name=cleaned["name"],
                designations=cleaned["designations"],
                branch=cleaned["branch"],
                phone_number=cleaned["phone_number"],
                is_admin=submitted["is_admin"],
                attach_existing=True,
            )
        except ValidationFailed as exc:
            db.rollback()
            flash(exc.message)
            return render_template_string(
                NEW_USER_HTML, **_profile_form_context(submitted, with_password=True)
            ), 400
        db.commit()
        app.logger.info("User %s created by admin %s", profile.user_id, principal.user_id)
        flash(f"User created successfully. {profile.name} has been added to the system.")
        return redirect(url_for("users"))
    return render_template_string(NEW_USER_HTML, **_profile_form_context({}, with_password=True))


@app.route("/users/<user_id>/edit", methods=["POST"])
@login_required
def edit_user(user_id: str):
    principal = current_principal()
    require_admin(principal)
    db = get_db()
    profile = db.get(Profile, user_id)
    if profile is None:
        abort(404)
    submitted = _submitted_profile()
    try:
        cleaned = validate_profile_fields(submitted)
        other = find_account_by_email(db, cleaned["email"])
        if other is not None and other.id != profile.user_id:
            raise ValidationFailed(["email"], "Another account already uses this email.")
    except ValidationFailed as exc:
        flash(exc.message)
        return redirect(url_for("user_detail", user_id=user_id))
    profile.name = cleaned["name"]
    profile.email = cleaned["email"]
    if profile.account.email != cleaned["email"]:
        profile.account.email_verified = False
    profile.account.email = cleaned["email"]
    profile.phone_number = cleaned["phone_number"]
    profile.branch = cleaned["branch"]
    profile.is_admin = submitted["is_admin"]
    profile.set_designations(cleaned["designations"])
    ts = utcnow()
    profile.updated_at = ts

    released = []
    if not can_be_assignee(profile.designations, profile.is_admin):
        released = db.query(Ticket).filter(Ticket.assigned_to == profile.user_id).all()
        for ticket in released:
            ticket.assigned_to = None
            ticket.updated_at = ts
    db.commit()
    flash("User updated successfully")
    if released:
        app.logger.info("Unassigned %d ticket(s) from %s", len(released), profile.user_id)
        flash(f"{len(released)} ticket(s) assigned to {profile.name} are now unassigned.")
    return redirect(url_for("user_detail", user_id=user_id))


@app.route("/users/<user_id>/reset-password", methods=["POST"])
@login_required
def reset_user_password(user_id: str):
    principal = current_principal()
    require_admin(principal)
    db = get_db()
    account = db.get(Account, user_id)
    if account is None:
        abort(404)
    account.reset_token = secrets.token_urlsafe(32)
    account.reset_expires_at = utcnow() + PASSWORD_RESET_TTL
    db.commit()
    link = url_for("reset_password", token=account.reset_token, _external=True)
    if send_password_reset(account, link):
        flash(f"A password reset link has been sent to {account.email}")
    else:
        flash(f"Email delivery is unavailable. Share this reset link with the user: {link}")
    return redirect(url_for("user_detail", user_id=user_id))

# --------------------------------------------------------------------------------------
# Microsoft 365 sign-in routes
# --------------------------------------------------------------------------------------

@app.route("/login/microsoft")
def login_microsoft():
    if not microsoft_login_enabled():
        flash("Microsoft login not configured.")
        return redirect(url_for("login"))
    state = str(uuid.uuid4())
    session["state"] = state
    auth_url = msal_app().get_authorization_request_url(
        scopes=SCOPE,
        redirect_uri=REDIRECT_URI,
        state=state,
        response_mode="query",
        prompt="select_account",
    )
    return redirect(auth_url)


@app.route("/auth/callback", methods=["GET", "POST"])
def auth_callback():
    # state & code can arrive via GET (args) or POST (form)
    state = request.values.get("state")
    if state != session.get("state"):
        return ("State mismatch", 400)

    code = request.values.get("code")
    if not code:
        flash("No authorization code returned.")
        return redirect(url_for("login"))

    result = msal_app().acquire_token_by_authorization_code(
        code,
        scopes=SCOPE,
        redirect_uri=REDIRECT_URI,
    )
    if "id_token_claims" not in result:
        flash("Login failed.")
        return redirect(url_for("login"))

    email = (result["id_token_claims"].get("preferred_username") or "").strip().lower()
    if not email:
        flash("Login failed.")
        return redirect(url_for("login"))

    db = get_db()
    account = find_account_by_email(db, email)
    if account is None:
        account = Account(id=uuid.uuid4().hex, email=email, created_at=utcnow())
        db.add(account)
        app.logger.info("Created account %s from Microsoft sign-in", account.id)
    account.email_verified = True
    if email in ADMIN_EMAILS:
        bootstrap_admin(db, account, result["id_token_claims"].get("name"))
    _sign_in(account)
    session["access_token"] = result.get("access_token")
    db.commit()
    if account.profile is None:
        flash(f"Signed in as {email}. An administrator still needs to set up your profile.")
    else:
        flash(f"Signed in as {email}")
    return redirect(url_for("tickets"))


@app.route("/logout")
def logout():
    session.clear()
    flash("Signed out.")
    return redirect(url_for("home"))

# --------------------------------------------------------------------------------------
# Operator commands
# --------------------------------------------------------------------------------------

@app.cli.command("grant-admin")
@click.argument("email")
def grant_admin_command(email: str):
    """Mark EMAIL as verified and make its account an administrator."""
    init_db()
    db = get_db()
    account = find_account_by_email(db, email)
    if account is None:
        raise click.ClickException(f"No account found for {email}.")
    account.email_verified = True
    bootstrap_admin(db, account)
    db.commit()
    click.echo(f"{account.email} is now an administrator.")

# --------------------------------------------------------------------------------------
# Jinja loader (since we keep templates inline in this single file)
# --------------------------------------------------------------------------------------
app.jinja_loader = DictLoader({
    "base.html": BASE_HTML,
    "profile_fields.html": PROFILE_FIELDS_HTML,
})

# --------------------------------------------------------------------------------------
# Entrypoint
# --------------------------------------------------------------------------------------
if __name__ == "__main__":
    with app.app_context():
        init_db()
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
