"""Sanction screening and compliance blocks.

Screening compares a customer's name (or business name) and date of birth
against the locally loaded entries of the enabled sanction lists. The result
is always one of ``clear``, ``flagged`` or ``pending``; ``pending`` means the
screen could not run (no list enabled, no list data, nothing to screen) and is
left for a compliance officer to resolve.
"""

import re
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Sequence

from fxoffice.clock import as_utc
from fxoffice.errors import SanctionBlockedError, SuspiciousBlockedError

CLEAR = "clear"
FLAGGED = "flagged"
PENDING = "pending"
SCREENING_STATUSES = (CLEAR, FLAGGED, PENDING)

_NON_WORD = re.compile(r"[^\w\s]", re.UNICODE)


@dataclass(frozen=True)
class SanctionRecord:
    list_id: str
    name: str
    date_of_birth: Optional[str] = None
    reference: Optional[str] = None


@dataclass(frozen=True)
class ScreeningResult:
    status: str
    matches: tuple[SanctionRecord, ...] = ()
    lists_checked: tuple[str, ...] = ()
    reason: Optional[str] = None


@dataclass(frozen=True)
class Identity:
    name: Optional[str]
    date_of_birth: Optional[str] = None
    aliases: tuple[str, ...] = field(default_factory=tuple)


def normalize_name(value: Optional[str]) -> str:
    if not value:
        return ""
    text = unicodedata.normalize("NFKD", value)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = _NON_WORD.sub(" ", text.casefold())
    return " ".join(text.split())


def _name_key(value: Optional[str]) -> tuple[str, ...]:
    return tuple(sorted(normalize_name(value).split()))


def _same_birth_date(left: Optional[str], right: Optional[str]) -> bool:
    if not left or not right:
        return True
    return left.strip() == right.strip()


def screen_identity(
    identity: Identity,
    enabled_lists: Sequence[str],
    records: Iterable[SanctionRecord],
) -> ScreeningResult:
    if not enabled_lists:
        return ScreeningResult(PENDING, reason="no sanction lists enabled")
    names = [identity.name, *identity.aliases]
    keys = {_name_key(name) for name in names if normalize_name(name)}
    if not keys:
        return ScreeningResult(PENDING, reason="no screenable name")

    enabled = set(enabled_lists)
    candidates = [record for record in records if record.list_id in enabled]
    lists_with_data = tuple(sorted({record.list_id for record in candidates}))
    if not lists_with_data:
        return ScreeningResult(PENDING, reason="no data loaded for enabled lists")

    matches = tuple(
        record
        for record in candidates
        if _name_key(record.name) in keys
        and _same_birth_date(identity.date_of_birth, record.date_of_birth)
    )
    if matches:
        return ScreeningResult(FLAGGED, matches=matches, lists_checked=lists_with_data)
    return ScreeningResult(CLEAR, lists_checked=lists_with_data)


def customer_identity(customer) -> Identity:
    if customer.type == "corporate":
        return Identity(name=customer.business_name)
    name = customer.full_name
    if not name and customer.first_name and customer.last_name:
        name = f"{customer.first_name} {customer.last_name}"
    return Identity(name=name, date_of_birth=customer.date_of_birth)


def whitelist_active(customer, now: datetime) -> bool:
    """A whitelist without expiry stays active until it is revoked."""
    if not customer.is_whitelisted:
        return False
    expiry = as_utc(customer.whitelist_expiry)
    return expiry is None or expiry > now


def check_transaction_allowed(customer, now: datetime) -> None:
    """Raise the compliance block that stops a new transaction, if any."""
    if customer is None:
        return
    if customer.sanctions_screening_status == FLAGGED and not whitelist_active(customer, now):
        raise SanctionBlockedError(customer.customer_id)
    if customer.is_suspicious:
        raise SuspiciousBlockedError(customer.customer_id)
