from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from fxoffice.aml import AMLConfig
from fxoffice.customers import create_customer, record_false_positive, screen_customer
from fxoffice.errors import SanctionBlockedError, SuspiciousBlockedError
from fxoffice.models import ComplianceAlert, SanctionEntry
from fxoffice.screening import (
    Identity,
    SanctionRecord,
    check_transaction_allowed,
    normalize_name,
    screen_identity,
    whitelist_active,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

RECORDS = [
    SanctionRecord("OFAC_SDN", "PETROV, Ivan", "1970-01-01", "SDN-1"),
    SanctionRecord("UN", "Acme Trading LLC"),
]


def _flagged_customer(**overrides) -> SimpleNamespace:
    fields = {
        "customer_id": "CUST-000001001",
        "sanctions_screening_status": "flagged",
        "is_whitelisted": False,
        "whitelist_expiry": None,
        "is_suspicious": False,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


def test_normalize_name_strips_case_accents_and_punctuation() -> None:
    assert normalize_name("  José  O'Neil-Smith ") == "jose o neil smith"


def test_token_order_does_not_matter() -> None:
    result = screen_identity(Identity("Ivan Petrov"), ["OFAC_SDN"], RECORDS)
    assert result.status == "flagged"
    assert result.matches[0].reference == "SDN-1"


def test_different_birth_date_is_not_a_match() -> None:
    result = screen_identity(Identity("Ivan Petrov", "1988-05-05"), ["OFAC_SDN"], RECORDS)
    assert result.status == "clear"
    assert result.lists_checked == ("OFAC_SDN",)


def test_disabled_list_is_ignored() -> None:
    result = screen_identity(Identity("Acme Trading LLC"), ["OFAC_SDN"], RECORDS)
    assert result.status == "clear"


def test_pending_when_nothing_can_be_screened() -> None:
    assert screen_identity(Identity("Ivan Petrov"), [], RECORDS).status == "pending"
    assert screen_identity(Identity(None), ["OFAC_SDN"], RECORDS).status == "pending"
    assert screen_identity(Identity("Ivan Petrov"), ["EU"], RECORDS).status == "pending"


def test_whitelist_without_expiry_stays_active() -> None:
    assert whitelist_active(_flagged_customer(is_whitelisted=True), NOW)


def test_whitelisted_customer_not_blocked_until_expiry() -> None:
    customer = _flagged_customer(is_whitelisted=True, whitelist_expiry=NOW + timedelta(days=30))
    check_transaction_allowed(customer, NOW)
    with pytest.raises(SanctionBlockedError):
        check_transaction_allowed(customer, NOW + timedelta(days=31))


def test_naive_expiry_is_read_as_utc() -> None:
    customer = _flagged_customer(is_whitelisted=True, whitelist_expiry=datetime(2026, 3, 2))
    check_transaction_allowed(customer, NOW)


def test_suspicious_customer_blocked() -> None:
    customer = _flagged_customer(sanctions_screening_status="clear", is_suspicious=True)
    with pytest.raises(SuspiciousBlockedError) as excinfo:
        check_transaction_allowed(customer, NOW)
    body = excinfo.value.to_dict()
    assert body["code"] == "SUSPICIOUS_BLOCKED"
    assert "compliance department" in body["directive"]


def test_walk_in_is_never_blocked() -> None:
    check_transaction_allowed(None, NOW)


def test_create_customer_flags_and_alerts(db, manager) -> None:
    db.add(SanctionEntry(list_id="OFAC_SDN", name="Ivan Petrov", created_at=NOW))
    db.flush()
    config = AMLConfig(enabled_sanction_lists=["OFAC_SDN"], auto_hold_on_match=True)
    customer, result = create_customer(
        db,
        {"type": "individual", "first_name": "Ivan", "last_name": "Petrov", "phone": "555-0100"},
        config,
        manager,
    )
    assert result.status == "flagged"
    assert customer.sanctions_screening_status == "flagged"
    assert customer.status == "flagged"
    assert customer.risk_level == "medium"
    alert = db.execute(select(ComplianceAlert)).scalar_one()
    assert alert.alert_type == "sanction_match"
    assert alert.severity == "critical"
    assert alert.customer_id == customer.id


def test_create_customer_without_lists_stays_pending(db, manager) -> None:
    customer, result = create_customer(
        db,
        {"type": "corporate", "business_name": "Northwind Ltd", "email": "ops@northwind.example"},
        AMLConfig(),
        manager,
    )
    assert result.status == "pending"
    assert customer.sanctions_screening_status == "pending"
    assert customer.customer_id.startswith("CUST-")
    assert len(customer.customer_id) == len("CUST-") + 9


def test_false_positive_whitelist_lifts_block(db, manager) -> None:
    db.add(SanctionEntry(list_id="UN", name="Ivan Petrov", created_at=NOW))
    db.flush()
    config = AMLConfig(enabled_sanction_lists=["UN"])
    customer, _ = create_customer(
        db,
        {"type": "individual", "first_name": "Ivan", "last_name": "Petrov", "email": "ivan@example.com"},
        config,
        manager,
    )
    expiry = datetime.now(timezone.utc) + timedelta(days=90)
    record_false_positive(
        db,
        customer,
        config,
        basis="Different nationality and date of birth.",
        whitelist=True,
        whitelist_expiry=expiry,
    )
    check_transaction_allowed(customer, datetime.now(timezone.utc))
    with pytest.raises(SanctionBlockedError):
        check_transaction_allowed(customer, expiry + timedelta(seconds=1))

    # a new match on rescreen voids the false-positive finding
    screen_customer(db, customer, config)
    assert customer.sanction_false_positive is False
