"""Authorization and ticket lifecycle rules for the helpdesk.

Every function here is pure: callers pass the acting ``Principal`` explicitly
and get back a decision, a normalized value, or an exception from the
``HelpdeskError`` family. Nothing in this module touches the database or the
Flask request context.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

# --------------------------------------------------------------------------------------
# Vocabularies
# --------------------------------------------------------------------------------------
STATUSES = ["Open", "In Progress", "Resolved", "Closed"]
COMPLETED_STATUSES = {"Resolved", "Closed"}
DEFAULT_STATUS = "Open"
PRIORITIES = ["Low", "Medium", "High", "Urgent"]
HIGH_PRIORITIES = {"High", "Urgent"}
DEFAULT_PRIORITY = "Medium"

IT_DESIGNATION = "IT"
DESIGNATIONS = [
    "Doctor",
    "Nurse",
    "Pharmacist",
    "Dispatch",
    "Xpresscheck",
    "Accounts",
    "Customer Care",
    "Claims",
    "CDM",
    "IT",
    "Intern",
]
BRANCHES = ["LUSAKA", "GA", "JKIA", "EPZ"]

MIN_PASSWORD_LENGTH = 6

# Any status may follow any other, including reopening a completed ticket.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    status: frozenset(STATUSES) for status in STATUSES
}


# --------------------------------------------------------------------------------------
# Errors
# --------------------------------------------------------------------------------------
class HelpdeskError(Exception):
    """Base class for errors surfaced to the caller of a helpdesk operation."""

    status_code = 500
    default_message = "The request could not be completed."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class AuthenticationRequired(HelpdeskError):
    status_code = 401
    default_message = "Please sign in to continue."


class AuthorizationDenied(HelpdeskError):
    status_code = 403
    default_message = "You do not have permission to perform this action."


class ValidationFailed(HelpdeskError):
    """Raised when required fields are missing or malformed.

    ``fields`` names every offending input so the caller can point at them.
    """

    status_code = 400
    default_message = "Please fill in all required fields."

    def __init__(self, fields: Iterable[str], message: str | None = None):
        self.fields = list(dict.fromkeys(fields))
        if message is None and self.fields:
            message = "Missing or invalid: " + ", ".join(self.fields) + "."
        super().__init__(message)


class BackendUnavailable(HelpdeskError):
    status_code = 503
    default_message = "The helpdesk is temporarily unavailable. Please try again."


# --------------------------------------------------------------------------------------
# Principals
# --------------------------------------------------------------------------------------
def normalize_designations(value) -> frozenset[str]:
    """Return designation tags as a set.

    Accepts an iterable of labels or a single comma-separated string, the
    shape older profiles were stored in.
    """
    if value is None:
        return frozenset()
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value)
    return frozenset(item.strip() for item in items if item and item.strip())


def has_designation(designations: Iterable[str], label: str) -> bool:
    wanted = label.strip().casefold()
    return any(tag.casefold() == wanted for tag in designations)


@dataclass(frozen=True)
class Principal:
    """Snapshot of the signed-in account and its profile."""

    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    designations: frozenset[str] = field(default_factory=frozenset)
    branch: Optional[str] = None
    is_admin: bool = False
    provisioned: bool = True

    @classmethod
    def unprovisioned(cls, user_id: str, email: str | None = None) -> "Principal":
        return cls(user_id=user_id, email=email, provisioned=False)

    @property
    def is_it_staff(self) -> bool:
        return self.provisioned and has_designation(self.designations, IT_DESIGNATION)

    @property
    def is_manager(self) -> bool:
        """Admins and IT staff: the principals that triage every ticket."""
        return self.provisioned and (self.is_admin or self.is_it_staff)


# --------------------------------------------------------------------------------------
# Ticket rules
# --------------------------------------------------------------------------------------
def ticket_scope(principal: Principal) -> Optional[str]:
    """Return the creator id a ticket listing is restricted to, or None for all."""
    if principal.is_manager:
        return None
    return principal.user_id


def can_view_ticket(principal: Principal, creator_id: str | None) -> bool:
    scope = ticket_scope(principal)
    return scope is None or (creator_id is not None and creator_id == scope)


def visible_tickets(principal: Principal, tickets: Iterable[dict]) -> list[dict]:
    return [t for t in tickets if can_view_ticket(principal, t.get("creator_id"))]


def require_profile(principal: Principal) -> None:
    if not principal.provisioned:
        raise AuthorizationDenied(
            "Your account is awaiting profile setup by an administrator."
        )


def require_ticket_view(principal: Principal, creator_id: str | None) -> None:
    if not can_view_ticket(principal, creator_id):
        raise AuthorizationDenied("You do not have access to this ticket.")


def require_comment(principal: Principal, creator_id: str | None) -> None:
    require_profile(principal)
    require_ticket_view(principal, creator_id)


def can_manage_tickets(principal: Principal) -> bool:
    return principal.is_manager


def require_ticket_management(principal: Principal) -> None:
    if not can_manage_tickets(principal):
        raise AuthorizationDenied("Only IT staff and administrators can update tickets.")


def prepare_new_ticket(principal: Principal, data: dict) -> dict:
    """Validate ticket input and return the fields to persist.

    The creator is always the acting principal; status and assignee always
    start empty, whatever the submitted data says.
    """
    require_profile(principal)
    title = (data.get("title") or "").strip()
    description = (data.get("description") or "").strip()
    missing = []
    if not title:
        missing.append("title")
    if not description:
        missing.append("description")
    priority = (data.get("priority") or "").strip() or DEFAULT_PRIORITY
    if priority not in PRIORITIES:
        missing.append("priority")
    if missing:
        raise ValidationFailed(missing)
    return {
        "title": title,
        "description": description,
        "priority": priority,
        "status": DEFAULT_STATUS,
        "creator_id": principal.user_id,
        "assigned_to": None,
    }


def can_be_assignee(designations: Iterable[str], is_admin: bool) -> bool:
    return bool(is_admin) or has_designation(designations, IT_DESIGNATION)


# --------------------------------------------------------------------------------------
# Lifecycle
# --------------------------------------------------------------------------------------
def validate_status(value: str | None) -> str:
    status = (value or "").strip()
    if status not in STATUSES:
        raise ValidationFailed(["status"], f"Unknown status: {status or 'blank'}.")
    return status


def validate_priority(value: str | None) -> str:
    priority = (value or "").strip()
    if priority not in PRIORITIES:
        raise ValidationFailed(["priority"], f"Unknown priority: {priority or 'blank'}.")
    return priority


def allowed_transitions(status: str) -> frozenset[str]:
    return ALLOWED_TRANSITIONS.get(status, frozenset(STATUSES))


def is_completed(status: str | None) -> bool:
    return status in COMPLETED_STATUSES


def transition(current: str | None, new_status: str) -> str:
    new_status = validate_status(new_status)
    if current in ALLOWED_TRANSITIONS and new_status not in allowed_transitions(current):
        raise ValidationFailed(
            ["status"], f"A ticket cannot move from {current} to {new_status}."
        )
    return new_status


def completed_at_for(
    previous: str | None,
    new_status: str,
    current_value: datetime | None,
    now: datetime,
) -> datetime | None:
    """Return the completion timestamp after a status change."""
    if not is_completed(new_status):
        return None
    if is_completed(previous) and current_value is not None:
        return current_value
    return now


# --------------------------------------------------------------------------------------
# User management rules
# --------------------------------------------------------------------------------------
def can_view_profile(principal: Principal, user_id: str) -> bool:
    if principal.is_manager:
        return True
    return principal.provisioned and principal.user_id == user_id


def require_profile_view(principal: Principal, user_id: str) -> None:
    if not can_view_profile(principal, user_id):
        raise AuthorizationDenied("You can only view your own profile.")


def require_user_directory(principal: Principal) -> None:
    if not principal.is_manager:
        raise AuthorizationDenied("Only IT staff and administrators can browse users.")


def require_admin(principal: Principal) -> None:
    if not (principal.provisioned and principal.is_admin):
        raise AuthorizationDenied("Only administrators can manage user accounts.")


def validate_profile_fields(data: dict, require_password: bool = False) -> dict:
    """Validate account/profile form input and return the cleaned values."""
    cleaned = {
        "name": (data.get("name") or "").strip(),
        "email": (data.get("email") or "").strip().lower(),
        "designations": normalize_designations(data.get("designations")),
        "branch": (data.get("branch") or "").strip(),
        "phone_number": (data.get("phone_number") or "").strip() or None,
    }
    invalid = []
    if not cleaned["name"]:
        invalid.append("name")
    if not cleaned["email"] or "@" not in cleaned["email"]:
        invalid.append("email")
    if require_password:
        password = data.get("password") or ""
        if len(password) < MIN_PASSWORD_LENGTH:
            invalid.append("password")
        cleaned["password"] = password
    if not cleaned["designations"]:
        invalid.append("designations")
    if cleaned["branch"] not in BRANCHES:
        invalid.append("branch")
    if invalid:
        raise ValidationFailed(invalid)
    return cleaned


def validate_new_password(password: str | None, confirm: str | None) -> str:
    password = password or ""
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(
            ["password"],
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.",
        )
    if password != (confirm or ""):
        raise ValidationFailed(["confirm_password"], "Passwords do not match.")
    return password
