"""Till balance ledger.

Balances live in one ``CashLedgerAccount`` row per (till, currency). Every
change goes through :func:`_apply` and leaves a ``TillTransaction`` row with
the signed delta and the balance on either side of it.

Nothing here commits. A handler validates a whole movement set before the
first row is touched and commits once; any error leaves the session to be
rolled back, so a balance set is never half written.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from fxoffice.clock import utcnow
from fxoffice.errors import BusinessRuleError, InputValidationError, InsufficientBalanceError
from fxoffice.models import (
    CashLedgerAccount,
    Currency,
    Till,
    TillReconciliation,
    TillTransaction,
    Transaction,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def account_name(currency_code: str, till_id: str) -> str:
    return f"Cash-{currency_code}-{till_id}"


def provision_accounts(db: Session, till_id: str, currency_codes: Iterable[str]) -> list[CashLedgerAccount]:
    now = utcnow()
    existing = {
        account.currency_code
        for account in db.execute(
            select(CashLedgerAccount).where(CashLedgerAccount.till_id == till_id)
        ).scalars()
    }
    created = []
    for code in currency_codes:
        if code in existing:
            continue
        account = CashLedgerAccount(
            account_name=account_name(code, till_id),
            till_id=till_id,
            currency_code=code,
            balance=ZERO,
            is_active=True,
            created_at=now,
            last_updated=now,
        )
        db.add(account)
        created.append(account)
    db.flush()
    return created


def provision_till(db: Session, till: Till) -> list[CashLedgerAccount]:
    codes = db.execute(
        select(Currency.code).where(Currency.is_active.is_(True)).order_by(Currency.code)
    ).scalars().all()
    return provision_accounts(db, till.till_id, codes)


def provision_currency(db: Session, currency_code: str) -> int:
    till_ids = db.execute(select(Till.till_id)).scalars().all()
    for till_id in till_ids:
        provision_accounts(db, till_id, [currency_code])
    return len(till_ids)


def balances(db: Session, till_id: str) -> list[CashLedgerAccount]:
    return list(
        db.execute(
            select(CashLedgerAccount)
            .where(CashLedgerAccount.till_id == till_id, CashLedgerAccount.is_active.is_(True))
            .order_by(CashLedgerAccount.currency_code)
        ).scalars()
    )


def get_account(db: Session, till_id: str, currency_code: str) -> CashLedgerAccount:
    account = db.execute(
        select(CashLedgerAccount)
        .where(
            CashLedgerAccount.till_id == till_id,
            CashLedgerAccount.currency_code == currency_code,
        )
        .with_for_update()
    ).scalar_one_or_none()
    if account is None:
        raise BusinessRuleError(
            f"Cash account for {currency_code} not found in till {till_id}",
            till_id=till_id,
            currency_code=currency_code,
        )
    return account


@dataclass(frozen=True)
class Movement:
    currency: str
    delta: Decimal
    kind: str


def _positive(amount: Decimal, label: str = "amount") -> Decimal:
    amount = Decimal(amount)
    if amount <= ZERO:
        raise InputValidationError(f"{label} must be greater than zero", amount=amount)
    return amount


def _plan(db: Session, till_id: str, movements: Iterable[Movement]) -> list[tuple[CashLedgerAccount, Movement]]:
    """Resolve accounts and check every resulting balance before any change."""
    planned = []
    projected: dict[str, Decimal] = {}
    for movement in movements:
        account = get_account(db, till_id, movement.currency)
        current = projected.get(movement.currency, Decimal(account.balance))
        after = current + movement.delta
        if after < ZERO:
            raise InsufficientBalanceError(till_id, movement.currency, current, -movement.delta)
        projected[movement.currency] = after
        planned.append((account, movement))
    return planned


def _apply(
    db: Session,
    till_id: str,
    planned: list[tuple[CashLedgerAccount, Movement]],
    *,
    user_id: Optional[int],
    reference: Optional[str] = None,
    notes: Optional[str] = None,
) -> list[TillTransaction]:
    now = utcnow()
    entries = []
    for account, movement in planned:
        before = Decimal(account.balance)
        account.balance = before + movement.delta
        account.last_updated = now
        entry = TillTransaction(
            till_id=till_id,
            user_id=user_id,
            type=movement.kind,
            amount=movement.delta,
            currency=movement.currency,
            balance_before=before,
            balance_after=account.balance,
            status="completed",
            reference=reference,
            notes=notes,
            created_at=now,
        )
        db.add(entry)
        entries.append(entry)
    db.flush()
    return entries


def cash_in(db: Session, till_id: str, currency: str, amount: Decimal, *, user_id: int, notes: Optional[str] = None) -> TillTransaction:
    planned = _plan(db, till_id, [Movement(currency, _positive(amount), "cash_in")])
    return _apply(db, till_id, planned, user_id=user_id, notes=notes)[0]


def cash_out(db: Session, till_id: str, currency: str, amount: Decimal, *, user_id: int, notes: Optional[str] = None) -> TillTransaction:
    planned = _plan(db, till_id, [Movement(currency, -_positive(amount), "cash_out")])
    return _apply(db, till_id, planned, user_id=user_id, notes=notes)[0]


def adjust(db: Session, till_id: str, currency: str, target: Decimal, *, user_id: int, notes: Optional[str] = None) -> TillTransaction:
    """Set a balance to ``target``; the log keeps the signed delta."""
    target = Decimal(target)
    if target < ZERO:
        raise InputValidationError("adjusted balance cannot be negative", amount=target)
    account = get_account(db, till_id, currency)
    delta = target - Decimal(account.balance)
    planned = _plan(db, till_id, [Movement(currency, delta, "adjustment")])
    return _apply(db, till_id, planned, user_id=user_id, notes=notes)[0]


def exchange_movements(transaction: Transaction) -> list[Movement]:
    """The till takes in ``from_currency`` and pays out ``to_currency``.

    Buys and sells settle the same way; the type only labels the log rows.
    """
    return [
        Movement(transaction.from_currency, Decimal(transaction.from_amount), transaction.type),
        Movement(transaction.to_currency, -Decimal(transaction.to_amount), transaction.type),
    ]


def apply_exchange(db: Session, transaction: Transaction, till_id: str, *, user_id: int) -> list[TillTransaction]:
    planned = _plan(db, till_id, exchange_movements(transaction))
    entries = _apply(db, till_id, planned, user_id=user_id, reference=transaction.transaction_id)
    logger.info(
        "Till %s settled %s %s: %s %s / %s %s",
        till_id,
        transaction.type,
        transaction.transaction_id,
        transaction.from_amount,
        transaction.from_currency,
        transaction.to_amount,
        transaction.to_currency,
    )
    return entries


def transfer(
    db: Session,
    source_till_id: str,
    destination_till_id: str,
    amounts: Mapping[str, Decimal],
    *,
    user_id: int,
    notes: Optional[str] = None,
) -> tuple[str, list[TillTransaction]]:
    """Move several currencies between tills; all or nothing."""
    if source_till_id == destination_till_id:
        raise InputValidationError("Source and destination tills must differ")
    if not amounts:
        raise InputValidationError("Enter at least one transfer amount")
    outgoing = [
        Movement(code, -_positive(amount, f"{code} amount"), "transfer")
        for code, amount in sorted(amounts.items())
    ]
    incoming = [Movement(m.currency, -m.delta, "transfer") for m in outgoing]

    planned_out = _plan(db, source_till_id, outgoing)
    planned_in = _plan(db, destination_till_id, incoming)

    reference = f"TRF-{uuid.uuid4().hex[:12].upper()}"
    entries = _apply(db, source_till_id, planned_out, user_id=user_id, reference=reference, notes=notes)
    entries += _apply(db, destination_till_id, planned_in, user_id=user_id, reference=reference, notes=notes)
    logger.info(
        "Transfer %s from till %s to till %s: %s",
        reference,
        source_till_id,
        destination_till_id,
        ", ".join(f"{code} {amount}" for code, amount in sorted(amounts.items())),
    )
    return reference, entries


def reconcile(
    db: Session,
    till_id: str,
    counted: Mapping[str, Decimal],
    *,
    user_id: int,
    apply_adjustments: bool = False,
    notes: Optional[str] = None,
) -> list[TillReconciliation]:
    if not counted:
        raise InputValidationError("Enter at least one counted balance")
    now = utcnow()
    rows = []
    for code, counted_amount in sorted(counted.items()):
        counted_amount = Decimal(counted_amount)
        if counted_amount < ZERO:
            raise InputValidationError(f"{code} counted amount cannot be negative")
        account = get_account(db, till_id, code)
        expected = Decimal(account.balance)
        variance = counted_amount - expected
        row = TillReconciliation(
            till_id=till_id,
            currency_code=code,
            expected_balance=expected,
            counted_balance=counted_amount,
            variance=variance,
            adjusted=False,
            counted_at=now,
            user_id=user_id,
            notes=notes,
        )
        if apply_adjustments and variance != ZERO:
            adjust(db, till_id, code, counted_amount, user_id=user_id, notes=f"Reconciliation variance {variance}")
            row.adjusted = True
        db.add(row)
        rows.append(row)
    db.flush()
    if any(row.variance != ZERO for row in rows):
        logger.warning(
            "Till %s reconciliation variance: %s",
            till_id,
            ", ".join(f"{row.currency_code} {row.variance}" for row in rows if row.variance != ZERO),
        )
    return rows
