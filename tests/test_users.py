from datetime import datetime, timedelta, timezone

import pytest

from fxoffice import users
from fxoffice.errors import AuthenticationError, BusinessRuleError, DuplicateKeyError


def test_invitation_accept_binds_subject(db, manager) -> None:
    invited = users.invite_user(
        db, email="Teller@Example.com", invited_by=manager, expiry_days=7, can_reconcile_accounts=True
    )
    assert invited.email == "teller@example.com"
    assert invited.invitation_status == "pending"
    assert invited.can_reconcile_accounts is True

    accepted = users.accept_invitation(db, invited.invitation_token, "auth|teller")
    assert accepted.subject == "auth|teller"
    assert accepted.invitation_status == "accepted"
    assert accepted.invitation_token is None
    assert users.resolve_subject(db, "auth|teller") is accepted


def test_expired_invitation_rejected(db, manager) -> None:
    invited = users.invite_user(db, email="late@example.com", invited_by=manager, expiry_days=7)
    invited.invitation_expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    db.flush()
    with pytest.raises(BusinessRuleError):
        users.accept_invitation(db, invited.invitation_token, "auth|late")
    assert invited.invitation_status == "pending"


def test_used_invitation_rejected(db, manager) -> None:
    invited = users.invite_user(db, email="once@example.com", invited_by=manager, expiry_days=7)
    token = invited.invitation_token
    users.accept_invitation(db, token, "auth|once")
    with pytest.raises(BusinessRuleError):
        users.accept_invitation(db, token, "auth|twice")


def test_duplicate_email_rejected(db, manager) -> None:
    with pytest.raises(DuplicateKeyError):
        users.invite_user(db, email="MANAGER@example.com", invited_by=manager, expiry_days=7)


def test_unknown_or_missing_identity(db, manager) -> None:
    with pytest.raises(AuthenticationError):
        users.resolve_subject(db, None)
    with pytest.raises(AuthenticationError):
        users.resolve_subject(db, "auth|nobody")


def test_cannot_deactivate_self(db, manager) -> None:
    with pytest.raises(BusinessRuleError):
        users.update_user(db, manager, {"is_active": False}, manager)
