import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fxoffice.aml import AMLConfig, load_aml_config, save_aml_config
from fxoffice.clock import utcnow
from fxoffice.errors import AuthenticationError, PermissionDeniedError
from fxoffice.models import AMLSettings, Currency, User
from fxoffice.users import create_user

logger = logging.getLogger(__name__)

DEFAULT_CURRENCIES = {
    "USD": ("US Dollar", "$", "United States"),
    "CAD": ("Canadian Dollar", "$", "Canada"),
    "EUR": ("Euro", "€", "European Union"),
    "GBP": ("British Pound", "£", "United Kingdom"),
}


def initialize_system(
    db: Session,
    *,
    subject: Optional[str],
    email: str,
    base_currency: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> dict:
    """Seed a fresh install. Safe to call again; existing rows are kept."""
    if not subject:
        raise AuthenticationError("Authentication required")
    summary = {"manager_created": False, "aml_settings_created": False, "currencies_created": []}

    user_count = db.execute(select(func.count(User.id))).scalar_one()
    if user_count == 0:
        create_user(
            db,
            email=email,
            subject=subject,
            first_name=first_name,
            last_name=last_name,
            is_manager=True,
        )
        summary["manager_created"] = True
    else:
        caller = db.execute(select(User).where(User.subject == subject)).scalar_one_or_none()
        if caller is None or not caller.is_manager:
            raise PermissionDeniedError("System is already initialized")

    if db.execute(select(AMLSettings.id)).first() is None:
        save_aml_config(db, AMLConfig())
        summary["aml_settings_created"] = True

    if db.execute(select(Currency.id)).first() is None:
        now = utcnow()
        base_currency = base_currency.upper()
        codes = dict(DEFAULT_CURRENCIES)
        codes.setdefault(base_currency, (base_currency, None, None))
        for code, (name, symbol, country) in codes.items():
            db.add(
                Currency(
                    code=code,
                    name=name,
                    symbol=symbol,
                    country=country,
                    market_rate=Decimal("1"),
                    buy_rate=Decimal("1"),
                    sell_rate=Decimal("1"),
                    discount_percent=Decimal("2.5"),
                    markup_percent=Decimal("3.5"),
                    manual_buy_rate=code == base_currency,
                    manual_sell_rate=code == base_currency,
                    is_active=True,
                    last_updated=now,
                )
            )
            summary["currencies_created"].append(code)
    db.flush()
    logger.info(
        "System initialized: manager=%s aml=%s currencies=%s",
        summary["manager_created"],
        summary["aml_settings_created"],
        ",".join(summary["currencies_created"]) or "none",
    )
    summary["aml_settings"] = load_aml_config(db).model_dump(mode="json")
    return summary
