"""Market rates and the customer buy/sell spread."""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

import requests
from sqlalchemy import select
from sqlalchemy.orm import Session

from fxoffice.clock import utcnow
from fxoffice.config import settings
from fxoffice.errors import InputValidationError, RateSourceError
from fxoffice.models import Currency

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
_RATE = Decimal("0.00000001")

RateFetcher = Callable[[str], dict[str, Decimal]]


def _q(value: Decimal) -> Decimal:
    return value.quantize(_RATE, rounding=ROUND_HALF_UP)


def apply_market_rate(currency: Currency, market_rate: Decimal) -> Currency:
    """Set the market rate and derive unpinned buy/sell rates from it."""
    market_rate = Decimal(market_rate)
    if market_rate <= 0:
        raise InputValidationError("Market rate must be greater than zero", currency_code=currency.code)
    currency.market_rate = _q(market_rate)
    if not currency.manual_buy_rate:
        currency.buy_rate = _q(market_rate * (1 - Decimal(currency.discount_percent) / HUNDRED))
    if not currency.manual_sell_rate:
        currency.sell_rate = _q(market_rate * (1 + Decimal(currency.markup_percent) / HUNDRED))
    currency.last_updated = utcnow()
    return currency


def fetch_rates(base_currency: str) -> dict[str, Decimal]:
    url = f"{settings.rate_api_url.rstrip('/')}/{base_currency}"
    try:
        response = requests.get(url, timeout=settings.rate_api_timeout_seconds)
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as exc:
        raise RateSourceError(f"Failed to fetch exchange rates: {exc}", base_currency=base_currency) from exc
    rates = data.get("rates") if isinstance(data, dict) else None
    if not isinstance(rates, dict):
        raise RateSourceError("Rate source returned no rates", base_currency=base_currency)
    return {code.upper(): Decimal(str(value)) for code, value in rates.items()}


def bulk_update_rates(
    db: Session,
    base_currency: str,
    fetcher: Optional[RateFetcher] = None,
) -> dict:
    """Refresh every active currency; one bad currency never stops the rest."""
    fetcher = fetcher or fetch_rates
    currencies = db.execute(
        select(Currency).where(Currency.is_active.is_(True)).order_by(Currency.code)
    ).scalars().all()
    try:
        rates = fetcher(base_currency)
    except RateSourceError as exc:
        logger.warning("Rate refresh against %s failed: %s", base_currency, exc.message)
        return {
            "updated": 0,
            "failed": len(currencies),
            "errors": [f"{currency.code}: {exc.message}" for currency in currencies],
        }

    updated = 0
    errors = []
    for currency in currencies:
        rate = rates.get(currency.code)
        if rate is None:
            errors.append(f"{currency.code}: no rate returned")
            continue
        try:
            apply_market_rate(currency, rate)
        except InputValidationError as exc:
            errors.append(f"{currency.code}: {exc.message}")
            continue
        updated += 1
    db.flush()
    if errors:
        logger.warning("Rate refresh: %d updated, %d failed", updated, len(errors))
    else:
        logger.info("Rate refresh: %d currencies updated against %s", updated, base_currency)
    return {"updated": updated, "failed": len(errors), "errors": errors}
