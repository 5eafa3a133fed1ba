import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from fxoffice import ledger
from fxoffice.clock import utcnow
from fxoffice.errors import BusinessRuleError, DuplicateKeyError, InputValidationError, RecordNotFoundError
from fxoffice.models import CashLedgerAccount, Currency, Denomination, Transaction
from fxoffice.rates import apply_market_rate

logger = logging.getLogger(__name__)


def normalize_code(value: str) -> str:
    code = (value or "").strip().upper()
    if not code.isalpha() or not 3 <= len(code) <= 8:
        raise InputValidationError("Currency code must be 3 to 8 letters", currency_code=value)
    return code


def get_currency(db: Session, code: str) -> Currency:
    currency = db.execute(select(Currency).where(Currency.code == normalize_code(code))).scalar_one_or_none()
    if currency is None:
        raise RecordNotFoundError("Currency not found", currency_code=code)
    return currency


def _check_percent(value: Optional[Decimal], label: str) -> None:
    if value is not None and not 0 <= Decimal(value) < 100:
        raise InputValidationError(f"{label} must be between 0 and 100")


def create_currency(db: Session, fields: dict[str, Any]) -> tuple[Currency, int]:
    """Add a currency and give every existing till a zero balance in it."""
    code = normalize_code(fields.pop("code"))
    if db.execute(select(Currency.id).where(Currency.code == code)).first():
        raise DuplicateKeyError(f"Currency {code} already exists", currency_code=code)
    _check_percent(fields.get("discount_percent"), "Discount percent")
    _check_percent(fields.get("markup_percent"), "Markup percent")
    market_rate = fields.pop("market_rate", None) or Decimal("1")
    currency = Currency(code=code, last_updated=utcnow(), **{k: v for k, v in fields.items() if v is not None})
    if currency.discount_percent is None:
        currency.discount_percent = Decimal("2.5")
    if currency.markup_percent is None:
        currency.markup_percent = Decimal("3.5")
    for flag in ("manual_buy_rate", "manual_sell_rate"):
        if getattr(currency, flag) is None:
            setattr(currency, flag, False)
    if currency.is_active is None:
        currency.is_active = True
    if currency.buy_rate is None:
        currency.buy_rate = Decimal(market_rate)
    if currency.sell_rate is None:
        currency.sell_rate = Decimal(market_rate)
    apply_market_rate(currency, market_rate)
    db.add(currency)
    db.flush()
    provisioned = ledger.provision_currency(db, code) if currency.is_active else 0
    logger.info("Currency %s created; provisioned into %d tills", code, provisioned)
    return currency, provisioned


def update_currency(db: Session, currency: Currency, changes: dict[str, Any]) -> Currency:
    _check_percent(changes.get("discount_percent"), "Discount percent")
    _check_percent(changes.get("markup_percent"), "Markup percent")
    market_rate = changes.pop("market_rate", None)
    for key in ("buy_rate", "sell_rate"):
        if changes.get(key) is not None and Decimal(changes[key]) <= 0:
            raise InputValidationError(f"{key.replace('_', ' ').capitalize()} must be greater than zero")
    for key, value in changes.items():
        if value is not None:
            setattr(currency, key, value)
    apply_market_rate(currency, market_rate if market_rate is not None else currency.market_rate)
    if currency.is_active:
        ledger.provision_currency(db, currency.code)
    db.flush()
    return currency


def delete_currency(db: Session, currency: Currency) -> None:
    referenced = db.execute(
        select(Transaction.id).where(
            or_(Transaction.from_currency == currency.code, Transaction.to_currency == currency.code)
        )
    ).first()
    if referenced:
        raise BusinessRuleError(
            f"Currency {currency.code} is used by transactions; deactivate it instead",
            currency_code=currency.code,
        )
    accounts = db.execute(
        select(CashLedgerAccount).where(CashLedgerAccount.currency_code == currency.code)
    ).scalars().all()
    if any(account.balance != 0 for account in accounts):
        raise BusinessRuleError(
            f"Tills still hold {currency.code}; transfer the balances first",
            currency_code=currency.code,
        )
    for account in accounts:
        db.delete(account)
    for denomination in db.execute(
        select(Denomination).where(Denomination.currency_code == currency.code)
    ).scalars():
        db.delete(denomination)
    db.delete(currency)
    db.flush()
    logger.info("Currency %s deleted", currency.code)


def add_denomination(db: Session, currency_code: str, value: Decimal, is_coin: bool, image_url: Optional[str] = None) -> Denomination:
    currency = get_currency(db, currency_code)
    value = Decimal(value)
    if value <= 0:
        raise InputValidationError("Denomination value must be greater than zero")
    duplicate = db.execute(
        select(Denomination.id).where(
            Denomination.currency_code == currency.code,
            Denomination.value == value,
            Denomination.is_coin == is_coin,
        )
    ).first()
    if duplicate:
        raise DuplicateKeyError(f"{currency.code} {value} denomination already exists")
    denomination = Denomination(currency_code=currency.code, value=value, is_coin=is_coin, image_url=image_url)
    db.add(denomination)
    db.flush()
    return denomination


def list_denominations(db: Session, currency_code: str) -> list[Denomination]:
    return list(
        db.execute(
            select(Denomination)
            .where(Denomination.currency_code == normalize_code(currency_code))
            .order_by(Denomination.is_coin, Denomination.value.desc())
        ).scalars()
    )
