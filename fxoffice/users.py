import logging
import secrets
from datetime import timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from fxoffice.clock import as_utc, utcnow
from fxoffice.errors import (
    AuthenticationError,
    BusinessRuleError,
    DuplicateKeyError,
    InputValidationError,
    RecordNotFoundError,
)
from fxoffice.models import Till, TillSession, User

logger = logging.getLogger(__name__)

ROLE_FLAGS = ("is_manager", "is_compliance_officer", "is_template")
PERMISSION_FLAGS = (
    "can_modify_exchange_rates",
    "can_edit_fees_commissions",
    "can_transfer_between_accounts",
    "can_reconcile_accounts",
)
CAP_FIELDS = ("max_modification_individual", "max_modification_corporate")


def _normalize_email(email: str) -> str:
    email = (email or "").strip().lower()
    if "@" not in email:
        raise InputValidationError("A valid email address is required", email=email)
    return email


def resolve_subject(db: Session, subject: Optional[str]) -> User:
    if not subject:
        raise AuthenticationError("Authentication required")
    user = db.execute(select(User).where(User.subject == subject)).scalar_one_or_none()
    if user is None:
        raise AuthenticationError("Unknown user", subject=subject)
    if not user.is_active:
        raise AuthenticationError("User account is inactive", subject=subject)
    return user


def get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise RecordNotFoundError("User not found", user_id=user_id)
    return user


def _apply_flags(user: User, fields: dict[str, Any]) -> None:
    for key in ROLE_FLAGS + PERMISSION_FLAGS:
        if fields.get(key) is not None:
            setattr(user, key, bool(fields[key]))
    for key in CAP_FIELDS:
        if key in fields:
            value = fields[key]
            if value is not None and Decimal(value) < 0:
                raise InputValidationError("Modification caps cannot be negative")
            setattr(user, key, value)


def _new_user(db: Session, email: str, fields: dict[str, Any]) -> User:
    email = _normalize_email(email)
    if db.execute(select(User.id).where(User.email == email)).first():
        raise DuplicateKeyError(f"A user with email {email} already exists", email=email)
    now = utcnow()
    user = User(
        email=email,
        first_name=fields.get("first_name"),
        last_name=fields.get("last_name"),
        is_active=True,
        is_manager=False,
        is_compliance_officer=False,
        is_template=False,
        can_modify_exchange_rates=False,
        can_edit_fees_commissions=False,
        can_transfer_between_accounts=False,
        can_reconcile_accounts=False,
        created_at=now,
        updated_at=now,
    )
    _apply_flags(user, fields)
    return user


def create_user(db: Session, *, email: str, subject: Optional[str] = None, **fields: Any) -> User:
    user = _new_user(db, email, fields)
    if subject:
        if db.execute(select(User.id).where(User.subject == subject)).first():
            raise DuplicateKeyError("Identity is already linked to a user", subject=subject)
        user.subject = subject
    user.invitation_status = "accepted"
    user.accepted_at = user.created_at
    db.add(user)
    db.flush()
    logger.info("User %s created", user.email)
    return user


def invite_user(db: Session, *, email: str, invited_by: User, expiry_days: int, **fields: Any) -> User:
    user = _new_user(db, email, fields)
    user.invitation_status = "pending"
    user.invitation_token = secrets.token_urlsafe(32)
    user.invitation_expires_at = user.created_at + timedelta(days=expiry_days)
    user.invited_by = invited_by.id
    db.add(user)
    db.flush()
    logger.info("User %s invited by %s", user.email, invited_by.email)
    return user


def accept_invitation(db: Session, token: str, subject: str) -> User:
    if not subject:
        raise AuthenticationError("Authentication required")
    user = db.execute(select(User).where(User.invitation_token == token)).scalar_one_or_none()
    if user is None or user.invitation_status != "pending":
        raise BusinessRuleError("Invitation is invalid or has already been used")
    if as_utc(user.invitation_expires_at) <= utcnow():
        raise BusinessRuleError("Invitation has expired")
    if db.execute(select(User.id).where(User.subject == subject)).first():
        raise DuplicateKeyError("Identity is already linked to a user", subject=subject)
    now = utcnow()
    user.subject = subject
    user.invitation_status = "accepted"
    user.invitation_token = None
    user.accepted_at = now
    user.updated_at = now
    db.flush()
    logger.info("User %s accepted invitation", user.email)
    return user


def update_user(db: Session, user: User, changes: dict[str, Any], acting_user: User) -> User:
    if "is_active" in changes and changes["is_active"] is False and user.id == acting_user.id:
        raise BusinessRuleError("You cannot deactivate your own account")
    if changes.get("first_name") is not None:
        user.first_name = changes["first_name"]
    if changes.get("last_name") is not None:
        user.last_name = changes["last_name"]
    if changes.get("is_active") is not None:
        user.is_active = bool(changes["is_active"])
    _apply_flags(user, changes)
    user.updated_at = utcnow()
    db.flush()
    logger.info("User %s updated by %s", user.email, acting_user.email)
    return user


def delete_user(db: Session, user: User, acting_user: User) -> None:
    if user.id == acting_user.id:
        raise BusinessRuleError("You cannot delete your own account")
    in_till = db.execute(select(Till.id).where(Till.current_user_id == user.id)).first()
    open_session = db.execute(
        select(TillSession.id).where(TillSession.user_id == user.id, TillSession.is_active.is_(True))
    ).first()
    if in_till or open_session:
        raise BusinessRuleError("User is signed into a till; sign them out first")
    # users with history are deactivated, never removed
    user.is_active = False
    user.invitation_token = None
    user.updated_at = utcnow()
    db.flush()
    logger.info("User %s deactivated by %s", user.email, acting_user.email)
