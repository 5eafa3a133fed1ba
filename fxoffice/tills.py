import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from fxoffice import ledger
from fxoffice.clock import as_utc, utcnow
from fxoffice.errors import (
    BusinessRuleError,
    DuplicateKeyError,
    InputValidationError,
    NoActiveTillSessionError,
    RecordNotFoundError,
)
from fxoffice.models import CashLedgerAccount, Till, TillSession, User

logger = logging.getLogger(__name__)


def normalize_till_id(value: str) -> str:
    till_id = (value or "").strip().upper()
    if not till_id:
        raise InputValidationError("Till ID is required")
    return till_id


def get_till(db: Session, till_id: str) -> Till:
    till = db.execute(select(Till).where(Till.till_id == normalize_till_id(till_id))).scalar_one_or_none()
    if till is None:
        raise RecordNotFoundError("Till not found", till_id=till_id)
    return till


def create_till(
    db: Session,
    *,
    till_id: str,
    till_name: str,
    reserve_for_admin: bool,
    share_till: bool,
    user: User,
) -> tuple[Till, list[CashLedgerAccount]]:
    till_id = normalize_till_id(till_id)
    if not till_name or not till_name.strip():
        raise InputValidationError("Till name is required")
    if db.execute(select(Till.id).where(Till.till_id == till_id)).first():
        raise DuplicateKeyError(f"Till with ID {till_id} already exists", till_id=till_id)
    now = utcnow()
    till = Till(
        till_id=till_id,
        till_name=till_name.strip(),
        reserve_for_admin=reserve_for_admin,
        share_till=share_till,
        is_active=True,
        created_at=now,
        last_updated=now,
        created_by=user.id,
    )
    db.add(till)
    db.flush()
    accounts = ledger.provision_till(db, till)
    logger.info("Till %s created with %d currency accounts", till_id, len(accounts))
    return till, accounts


def update_till(
    db: Session,
    till: Till,
    *,
    till_name: Optional[str] = None,
    reserve_for_admin: Optional[bool] = None,
    share_till: Optional[bool] = None,
    is_active: Optional[bool] = None,
) -> Till:
    if till_name is not None:
        if not till_name.strip():
            raise InputValidationError("Till name is required")
        till.till_name = till_name.strip()
    if reserve_for_admin is not None:
        till.reserve_for_admin = reserve_for_admin
    if share_till is not None:
        till.share_till = share_till
    if is_active is not None:
        till.is_active = is_active
    till.last_updated = utcnow()
    db.flush()
    return till


def active_session(db: Session, user_id: int) -> Optional[TillSession]:
    return db.execute(
        select(TillSession)
        .where(TillSession.user_id == user_id, TillSession.is_active.is_(True))
        .order_by(TillSession.sign_in_time.desc())
        .limit(1)
    ).scalar_one_or_none()


def require_session(db: Session, user_id: int, till_id: Optional[str] = None) -> TillSession:
    session = active_session(db, user_id)
    if session is None:
        raise NoActiveTillSessionError(
            "No active till session found. Please sign into a till to continue."
        )
    if till_id is not None and session.till_id != normalize_till_id(till_id):
        raise NoActiveTillSessionError(
            "You must be signed into this till to record till transactions",
            till_id=till_id,
        )
    return session


def delete_till(db: Session, till: Till) -> None:
    if till.current_user_id is not None:
        raise BusinessRuleError("Cannot delete till that is currently in use")
    open_sessions = db.execute(
        select(TillSession.id).where(TillSession.till_id == till.till_id, TillSession.is_active.is_(True))
    ).first()
    if open_sessions:
        raise BusinessRuleError("Cannot delete till with active sessions")
    accounts = ledger.balances(db, till.till_id)
    if any(account.balance != 0 for account in accounts):
        raise BusinessRuleError("Cannot delete till holding cash; transfer the balances first")
    for account in db.execute(
        select(CashLedgerAccount).where(CashLedgerAccount.till_id == till.till_id)
    ).scalars():
        db.delete(account)
    db.delete(till)
    db.flush()
    logger.info("Till %s deleted", till.till_id)


def sign_in(db: Session, till_id: str, user: User) -> TillSession:
    till = get_till(db, till_id)
    if not till.is_active:
        raise BusinessRuleError("Till is not active")
    if till.reserve_for_admin and not user.is_manager:
        raise BusinessRuleError("Till is reserved for administrators")
    current = active_session(db, user.id)
    if current is not None:
        raise BusinessRuleError(f"You are already signed into till {current.till_id}")
    if till.current_user_id is not None and not till.share_till:
        raise BusinessRuleError("Till is currently occupied and not shared")

    now = utcnow()
    session = TillSession(till_id=till.till_id, user_id=user.id, sign_in_time=now, is_active=True)
    db.add(session)
    if not till.share_till:
        till.current_user_id = user.id
        till.sign_in_time = now
    till.last_updated = now
    db.flush()
    logger.info("User %s signed into till %s", user.email, till.till_id)
    return session


def _close(db: Session, session: TillSession) -> None:
    now = utcnow()
    session.sign_out_time = now
    session.session_duration_seconds = int((now - as_utc(session.sign_in_time)).total_seconds())
    session.is_active = False
    till = db.execute(select(Till).where(Till.till_id == session.till_id)).scalar_one_or_none()
    if till is not None and till.current_user_id == session.user_id:
        till.current_user_id = None
        till.sign_in_time = None
        till.last_updated = now


def sign_out(db: Session, user: User) -> TillSession:
    session = require_session(db, user.id)
    _close(db, session)
    db.flush()
    logger.info("User %s signed out of till %s", user.email, session.till_id)
    return session


def cleanup_stale_sessions(db: Session, max_age_hours: int) -> int:
    cutoff = utcnow() - timedelta(hours=max_age_hours)
    stale = [
        session
        for session in db.execute(select(TillSession).where(TillSession.is_active.is_(True))).scalars()
        if as_utc(session.sign_in_time) < cutoff
    ]
    for session in stale:
        _close(db, session)
    db.flush()
    if stale:
        logger.info("Closed %d stale till sessions", len(stale))
    return len(stale)


def list_sessions(db: Session, till_id: str) -> list[TillSession]:
    return list(
        db.execute(
            select(TillSession)
            .where(TillSession.till_id == normalize_till_id(till_id))
            .order_by(TillSession.sign_in_time.desc(), TillSession.id.desc())
        ).scalars()
    )
