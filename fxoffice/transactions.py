"""Currency exchange transactions.

A transaction is created ``pending`` and only ever moves forward:

    pending    -> processing | failed | cancelled
    processing -> completed | cancelled

Completion is the one step that touches till balances. It needs an open till
session for the acting user and settles both legs through
:func:`fxoffice.ledger.apply_exchange` in the caller's database transaction.
"""

import logging
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from fxoffice import alerts, audit, ledger, tills
from fxoffice.aml import AMLConfig
from fxoffice.authz import Capability, modification_cap, require_capability
from fxoffice.clock import as_utc, utcnow
from fxoffice.customers import get_customer
from fxoffice.errors import (
    BusinessRuleError,
    ComplianceBlockError,
    InputValidationError,
    InvalidTransitionError,
    PermissionDeniedError,
    RecordNotFoundError,
    TransactionLockedError,
)
from fxoffice.limits import LimitCheck, check_limits, kyc_incomplete, requires_aml, transaction_amount
from fxoffice.models import ComplianceAlert, Currency, Customer, Transaction, User
from fxoffice.screening import PENDING, check_transaction_allowed

logger = logging.getLogger(__name__)

STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
TYPES = ("currency_buy", "currency_sell")
FEE_TYPES = ("flat", "percentage")

TRANSITIONS = {
    "pending": {"processing", "failed", "cancelled"},
    "processing": {"completed", "cancelled"},
}
EDITABLE_STATUSES = {"pending"}
DELETABLE_STATUSES = {"pending", "failed"}

_ID_ALPHABET = string.ascii_uppercase + string.digits
_AMOUNT = Decimal("0.0001")
_RATE = Decimal("0.00000001")


def generate_transaction_id(now: Optional[datetime] = None) -> str:
    stamp = int((now or utcnow()).timestamp() * 1000)
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"TXN-{stamp}-{suffix}"


@dataclass
class ComplianceEvaluation:
    warnings: list[str] = field(default_factory=list)
    requires_compliance: bool = False
    requires_aml: bool = False
    limit_check: Optional[LimitCheck] = None


def _daily_total(db: Session, customer_id: str, now: datetime, exclude_id: Optional[int] = None) -> Decimal:
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    query = select(Transaction).where(
        Transaction.customer_id == customer_id,
        Transaction.status.not_in(("failed", "cancelled")),
    )
    if exclude_id is not None:
        query = query.where(Transaction.id != exclude_id)
    rows = db.execute(query).scalars()
    return sum(
        (
            transaction_amount(row.from_amount, row.to_amount)
            for row in rows
            if as_utc(row.created_at) >= day_start
        ),
        Decimal("0"),
    )


def _has_recent_transactions(
    db: Session, customer_id: str, days: int, now: datetime, exclude_id: Optional[int] = None
) -> bool:
    cutoff = now - timedelta(days=days)
    query = select(Transaction.created_at).where(Transaction.customer_id == customer_id)
    if exclude_id is not None:
        query = query.where(Transaction.id != exclude_id)
    rows = db.execute(query).scalars()
    return any(as_utc(created_at) >= cutoff for created_at in rows)


def evaluate_compliance(
    db: Session,
    config: AMLConfig,
    from_amount: Decimal,
    to_amount: Decimal,
    customer: Optional[Customer],
    now: Optional[datetime] = None,
    exclude_id: Optional[int] = None,
) -> ComplianceEvaluation:
    """Collect the non-blocking warnings for a prospective transaction.

    ``exclude_id`` leaves an existing transaction out of the daily total and
    the repeat-visit check, so an edit is measured against the rest of the day.
    """
    now = now or utcnow()
    amount = transaction_amount(from_amount, to_amount)
    result = ComplianceEvaluation(requires_aml=requires_aml(from_amount, to_amount, config.disclosure_threshold))

    if result.requires_aml:
        result.requires_compliance = True
        if customer is None:
            result.warnings.append("CUSTOMER_PROFILE_REQUIRED")
    if amount > config.lct_threshold:
        result.requires_compliance = True
        result.warnings.append("LCT_THRESHOLD_EXCEEDED")
    if amount > config.require_sin_threshold:
        result.requires_compliance = True
        result.warnings.append("SIN_REQUIRED")
    if amount > config.require_pep_threshold:
        result.requires_compliance = True
        result.warnings.append("PEP_DOCUMENTATION_REQUIRED")

    daily_total = Decimal("0")
    if customer is not None:
        if config.warn_incomplete_kyc and kyc_incomplete(customer):
            result.warnings.append("INCOMPLETE_KYC")
        if config.warn_repeat_transactions_days > 0 and _has_recent_transactions(
            db, customer.customer_id, config.warn_repeat_transactions_days, now, exclude_id
        ):
            result.warnings.append("REPEAT_TRANSACTION_WARNING")
        if customer.risk_level == "high":
            result.requires_compliance = True
            result.warnings.append("HIGH_RISK_CUSTOMER")
        if customer.sanctions_screening_status == PENDING:
            result.requires_compliance = True
            result.warnings.append("SANCTIONS_PENDING")
        if customer.aml_status == "pending":
            result.requires_compliance = True
            result.warnings.append("COMPLIANCE_REVIEW_REQUIRED")
        daily_total = _daily_total(db, customer.customer_id, now, exclude_id)

    check = check_limits(
        amount,
        customer.type if customer is not None else None,
        config.transaction_limits,
        daily_total,
    )
    result.limit_check = check
    if check.exceeds_transaction:
        result.requires_compliance = True
        result.warnings.append("TRANSACTION_LIMIT_EXCEEDED")
    if check.exceeds_daily:
        result.requires_compliance = True
        result.warnings.append("DAILY_LIMIT_EXCEEDED")

    if config.require_two_person_approval and result.requires_compliance:
        result.warnings.append("TWO_PERSON_APPROVAL_REQUIRED")
    return result


def _ensure_allowed(customer: Optional[Customer], now: datetime) -> None:
    try:
        check_transaction_allowed(customer, now)
    except ComplianceBlockError as exc:
        logger.warning("Transaction blocked for customer %s: %s", exc.customer_id, exc.code)
        raise
    if customer is not None and customer.status == "suspended":
        raise BusinessRuleError(
            "Customer account is suspended",
            customer_id=customer.customer_id,
        )


def _currency(db: Session, code: str) -> Currency:
    currency = db.execute(select(Currency).where(Currency.code == code)).scalar_one_or_none()
    if currency is None:
        raise RecordNotFoundError(f"Currency {code} not found", currency_code=code)
    if not currency.is_active:
        raise BusinessRuleError(f"Currency {code} is not active", currency_code=code)
    return currency


def _positive(value: Any, label: str) -> Decimal:
    value = Decimal(value)
    if value <= 0:
        raise InputValidationError(f"{label} must be greater than zero")
    return value


def _check_fee(service_fee: Optional[Decimal], service_fee_type: Optional[str]) -> None:
    if service_fee is not None and Decimal(service_fee) < 0:
        raise InputValidationError("Service fee cannot be negative")
    if service_fee_type is not None and service_fee_type not in FEE_TYPES:
        raise InputValidationError("Service fee type must be flat or percentage")


def get_transaction(db: Session, transaction_id: str) -> Transaction:
    transaction = db.execute(
        select(Transaction).where(Transaction.transaction_id == transaction_id)
    ).scalar_one_or_none()
    if transaction is None:
        raise RecordNotFoundError("Transaction not found", transaction_id=transaction_id)
    return transaction


def _raise_limit_alert(
    db: Session,
    evaluation: ComplianceEvaluation,
    customer: Optional[Customer],
    transaction: Transaction,
) -> Optional[ComplianceAlert]:
    check = evaluation.limit_check
    if check is None or not check.exceeded:
        return None
    return alerts.raise_alert(
        db,
        alert_type="threshold_exceeded",
        severity="high" if check.exceeds_transaction else "medium",
        description=(
            f"Transaction {transaction.transaction_id} of {check.amount} exceeds "
            f"{check.customer_type} limits (per transaction {check.transaction_limit}, "
            f"daily {check.daily_limit}, today {check.daily_total})"
        ),
        customer=customer,
        transaction=transaction,
    )


def create_transaction(
    db: Session,
    config: AMLConfig,
    user: User,
    *,
    base_currency: str,
    from_currency: str,
    from_amount: Decimal,
    to_currency: str,
    to_amount: Decimal,
    exchange_rate: Decimal,
    type: Optional[str] = None,
    customer_id: Optional[str] = None,
    customer_name: Optional[str] = None,
    customer_email: Optional[str] = None,
    customer_phone: Optional[str] = None,
    service_fee: Optional[Decimal] = None,
    service_fee_type: Optional[str] = None,
    payment_method: Optional[str] = None,
    notes: Optional[str] = None,
    override_warnings: bool = False,
    override_reason: Optional[str] = None,
) -> tuple[Transaction, ComplianceEvaluation]:
    now = utcnow()
    customer = get_customer(db, customer_id) if customer_id else None
    _ensure_allowed(customer, now)

    from_currency = from_currency.strip().upper()
    to_currency = to_currency.strip().upper()
    if from_currency == to_currency:
        raise InputValidationError("From and to currencies must differ")
    _currency(db, from_currency)
    _currency(db, to_currency)
    from_amount = _positive(from_amount, "From amount")
    to_amount = _positive(to_amount, "To amount")
    exchange_rate = _positive(exchange_rate, "Exchange rate")
    _check_fee(service_fee, service_fee_type)
    if service_fee is not None and Decimal(service_fee) > 0:
        require_capability(user, Capability.EDIT_FEES_COMMISSIONS)

    if type is None:
        type = "currency_sell" if to_currency == base_currency.upper() else "currency_buy"
    elif type not in TYPES:
        raise InputValidationError("Transaction type must be currency_buy or currency_sell")

    evaluation = evaluate_compliance(db, config, from_amount, to_amount, customer, now)
    override_reason = (override_reason or "").strip() or None
    if override_warnings and config.require_override_reason and not override_reason:
        raise InputValidationError("Override reason is required when bypassing compliance warnings")
    if override_reason:
        notes = f"{notes or ''}\n\nOverride Reason: {override_reason}".lstrip()

    transaction_id = generate_transaction_id(now)
    while db.execute(select(Transaction.id).where(Transaction.transaction_id == transaction_id)).first():
        transaction_id = generate_transaction_id(now)

    transaction = Transaction(
        transaction_id=transaction_id,
        type=type,
        category="currency_exchange",
        from_currency=from_currency,
        from_amount=from_amount,
        to_currency=to_currency,
        to_amount=to_amount,
        exchange_rate=exchange_rate,
        service_fee=service_fee,
        service_fee_type=service_fee_type,
        payment_method=payment_method,
        customer_id=customer.customer_id if customer is not None else None,
        customer_name=customer_name or (customer.full_name or customer.business_name if customer else None),
        customer_email=customer_email or (customer.email if customer else None),
        customer_phone=customer_phone or (customer.phone if customer else None),
        user_id=user.id,
        status="pending",
        requires_aml=evaluation.requires_aml,
        requires_compliance=evaluation.requires_compliance,
        warnings=list(evaluation.warnings),
        notes=notes,
        created_at=now,
        updated_at=now,
    )
    db.add(transaction)
    db.flush()

    _raise_limit_alert(db, evaluation, customer, transaction)
    if override_warnings and evaluation.warnings:
        audit.record(
            db,
            user,
            "compliance_override",
            "transaction",
            transaction.transaction_id,
            f"warnings={','.join(evaluation.warnings)} reason={override_reason or '-'}",
        )
    logger.info(
        "Transaction %s created: %s %s %s -> %s %s",
        transaction.transaction_id,
        type,
        from_amount,
        from_currency,
        to_amount,
        to_currency,
    )
    return transaction, evaluation


def update_transaction(
    db: Session,
    transaction: Transaction,
    changes: dict[str, Any],
    user: User,
    config: AMLConfig,
) -> Transaction:
    if transaction.status not in EDITABLE_STATUSES:
        raise TransactionLockedError(
            f"Only pending transactions can be edited; this one is {transaction.status}",
            transaction_id=transaction.transaction_id,
        )
    customer = get_customer(db, transaction.customer_id) if transaction.customer_id else None

    for key in ("from_amount", "to_amount", "exchange_rate"):
        if changes.get(key) is not None:
            changes[key] = _positive(changes[key], key.replace("_", " ").capitalize())
    from_amount = changes.get("from_amount") or transaction.from_amount
    to_amount = changes.get("to_amount") or transaction.to_amount

    rate = changes.get("exchange_rate")
    if rate is not None and Decimal(rate) != Decimal(transaction.exchange_rate):
        require_capability(user, Capability.MODIFY_EXCHANGE_RATES)
        cap = modification_cap(user, customer.type if customer is not None else None)
        amount = transaction_amount(from_amount, to_amount)
        if cap is not None and amount > cap:
            raise PermissionDeniedError(
                f"Rate changes are limited to transactions up to {cap}",
                cap=cap,
                amount=amount,
            )
    if "service_fee" in changes or "service_fee_type" in changes:
        require_capability(user, Capability.EDIT_FEES_COMMISSIONS)
        _check_fee(changes.get("service_fee"), changes.get("service_fee_type"))

    amounts_changed = (
        Decimal(from_amount) != Decimal(transaction.from_amount)
        or Decimal(to_amount) != Decimal(transaction.to_amount)
    )
    for key, value in changes.items():
        if value is not None or key in ("service_fee", "service_fee_type", "notes"):
            setattr(transaction, key, value)
    now = utcnow()
    if amounts_changed:
        evaluation = evaluate_compliance(
            db, config, from_amount, to_amount, customer, now, exclude_id=transaction.id
        )
        transaction.requires_aml = evaluation.requires_aml
        transaction.requires_compliance = evaluation.requires_compliance
        transaction.warnings = list(evaluation.warnings)
        _raise_limit_alert(db, evaluation, customer, transaction)
    transaction.updated_at = now
    db.flush()
    logger.info("Transaction %s edited by %s", transaction.transaction_id, user.email)
    return transaction


def change_status(db: Session, transaction: Transaction, status: str, user: User) -> Transaction:
    if status not in STATUSES:
        raise InputValidationError(f"Unknown transaction status {status}")
    if status not in TRANSITIONS.get(transaction.status, set()):
        raise InvalidTransitionError("transaction", transaction.status, status)

    now = utcnow()
    if status == "completed":
        customer = get_customer(db, transaction.customer_id) if transaction.customer_id else None
        _ensure_allowed(customer, now)
        if transaction.requires_aml and customer is None:
            raise BusinessRuleError(
                "A customer profile is required to complete this transaction",
                transaction_id=transaction.transaction_id,
            )
        session = tills.require_session(db, user.id)
        ledger.apply_exchange(db, transaction, session.till_id, user_id=user.id)
        transaction.till_id = session.till_id
        transaction.completed_at = max(now, as_utc(transaction.created_at))

    previous = transaction.status
    transaction.status = status
    transaction.updated_at = now
    db.flush()
    audit.record(
        db,
        user,
        "transaction_status_changed",
        "transaction",
        transaction.transaction_id,
        f"{previous} -> {status}",
    )
    logger.info("Transaction %s -> %s by %s", transaction.transaction_id, status, user.email)
    return transaction


def delete_transaction(db: Session, transaction: Transaction) -> None:
    if transaction.status not in DELETABLE_STATUSES:
        raise TransactionLockedError(
            f"Cannot delete a {transaction.status} transaction",
            transaction_id=transaction.transaction_id,
        )
    for alert in db.execute(
        select(ComplianceAlert).where(ComplianceAlert.transaction_id == transaction.id)
    ).scalars():
        alert.transaction_id = None
    db.delete(transaction)
    db.flush()
    logger.info("Transaction %s deleted", transaction.transaction_id)


def _quote_rate(currency: Currency, base_currency: str, side: str) -> Decimal:
    if currency.code == base_currency:
        return Decimal(currency.market_rate)
    return Decimal(currency.sell_rate if side == "sell" else currency.buy_rate)


def quote(db: Session, from_code: str, to_code: str, amount: Decimal, base_currency: str) -> dict:
    """Price ``amount`` of ``from_code`` handed in by the customer in ``to_code``."""
    base_currency = base_currency.upper()
    amount = _positive(amount, "Amount")
    given = _currency(db, from_code.strip().upper())
    received = _currency(db, to_code.strip().upper())
    if given.code == received.code:
        raise InputValidationError("From and to currencies must differ")
    given_rate = _quote_rate(given, base_currency, "buy")
    received_rate = _quote_rate(received, base_currency, "sell")
    if given_rate <= 0 or received_rate <= 0:
        raise BusinessRuleError("Exchange rate is not set for this currency pair")
    rate = (received_rate / given_rate).quantize(_RATE, rounding=ROUND_HALF_UP)
    return {
        "from_currency": given.code,
        "to_currency": received.code,
        "from_amount": amount,
        "exchange_rate": rate,
        "to_amount": (amount * received_rate / given_rate).quantize(_AMOUNT, rounding=ROUND_HALF_UP),
        "type": "currency_sell" if received.code == base_currency else "currency_buy",
    }


def stats(db: Session, user_id: Optional[int] = None) -> dict:
    query = select(Transaction)
    if user_id is not None:
        query = query.where(Transaction.user_id == user_id)
    rows = db.execute(query).scalars().all()
    volume: dict[str, Decimal] = {}
    for row in rows:
        if row.status == "completed":
            volume[row.from_currency] = volume.get(row.from_currency, Decimal("0")) + Decimal(row.from_amount)
    return {
        "total": len(rows),
        "by_status": {status: sum(1 for row in rows if row.status == status) for status in STATUSES},
        "buys": sum(1 for row in rows if row.type == "currency_buy"),
        "sells": sum(1 for row in rows if row.type == "currency_sell"),
        "completed_volume": {code: volume[code] for code in sorted(volume)},
    }
