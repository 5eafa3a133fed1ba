from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import add_currency
from fxoffice import ledger, tills, transactions
from fxoffice.aml import AMLConfig
from fxoffice.customers import create_customer
from fxoffice.errors import InputValidationError
from fxoffice.models import AuditLogEntry, ComplianceAlert


def _customer(db, manager, **fields):
    values = {
        "type": "individual",
        "first_name": "Maria",
        "last_name": "Gomez",
        "phone": "555-0199",
        "address": "12 King St W",
    }
    values.update(fields)
    customer, _ = create_customer(db, values, AMLConfig(), manager)
    return customer


def _order(db, manager, config, customer=None, from_amount="500", to_amount="540", **extra):
    transaction, evaluation = transactions.create_transaction(
        db,
        config,
        manager,
        base_currency="USD",
        from_currency="EUR",
        from_amount=Decimal(from_amount),
        to_currency="USD",
        to_amount=Decimal(to_amount),
        exchange_rate=Decimal("1.08"),
        customer_id=customer.customer_id if customer is not None else None,
        **extra,
    )
    return transaction, evaluation


def _threshold_alerts(db) -> list:
    return db.execute(
        select(ComplianceAlert).where(ComplianceAlert.alert_type == "threshold_exceeded")
    ).scalars().all()


@pytest.fixture()
def desk(db):
    for code in ("USD", "EUR"):
        add_currency(db, code)
    return db


def test_amount_edit_reruns_limit_checks(desk, manager) -> None:
    db = desk
    config = AMLConfig()
    customer = _customer(db, manager)
    transaction, evaluation = _order(db, manager, config, customer)
    assert "TRANSACTION_LIMIT_EXCEEDED" not in evaluation.warnings
    assert _threshold_alerts(db) == []

    transactions.update_transaction(
        db,
        transaction,
        {"from_amount": Decimal("20000"), "to_amount": Decimal("21600")},
        manager,
        config,
    )
    assert "TRANSACTION_LIMIT_EXCEEDED" in transaction.warnings
    assert "LCT_THRESHOLD_EXCEEDED" in transaction.warnings
    assert transaction.requires_aml is True
    assert transaction.requires_compliance is True
    alerts = _threshold_alerts(db)
    assert len(alerts) == 1
    assert alerts[0].transaction_id == transaction.id
    assert alerts[0].severity == "high"


def test_amount_edit_does_not_count_itself_toward_daily_total(desk, manager) -> None:
    db = desk
    config = AMLConfig()
    customer = _customer(db, manager)
    transaction, _ = _order(db, manager, config, customer, "3000", "3240")

    transactions.update_transaction(
        db, transaction, {"from_amount": Decimal("8000"), "to_amount": Decimal("8640")}, manager, config
    )
    assert "TRANSACTION_LIMIT_EXCEEDED" in transaction.warnings
    assert "DAILY_LIMIT_EXCEEDED" not in transaction.warnings
    assert "REPEAT_TRANSACTION_WARNING" not in transaction.warnings


def test_notes_edit_keeps_stored_warnings(desk, manager) -> None:
    db = desk
    config = AMLConfig()
    transaction, evaluation = _order(db, manager, config, None, "1500", "1620")
    transactions.update_transaction(db, transaction, {"notes": "counted twice"}, manager, config)
    assert transaction.warnings == evaluation.warnings
    assert transaction.notes == "counted twice"


def test_identity_and_pep_thresholds() -> None:
    config = AMLConfig()
    small = transactions.evaluate_compliance(None, config, Decimal("900"), Decimal("972"), None)
    assert small.warnings == []
    assert small.requires_compliance is False

    large = transactions.evaluate_compliance(None, config, Decimal("3500"), Decimal("3780"), None)
    assert {"CUSTOMER_PROFILE_REQUIRED", "SIN_REQUIRED", "PEP_DOCUMENTATION_REQUIRED"} <= set(large.warnings)
    assert large.requires_compliance is True

    middle = transactions.evaluate_compliance(None, config, Decimal("2000"), Decimal("2160"), None)
    assert "PEP_DOCUMENTATION_REQUIRED" in middle.warnings
    assert "SIN_REQUIRED" not in middle.warnings


def test_pending_aml_review_is_flagged(desk, manager) -> None:
    db = desk
    config = AMLConfig()
    customer = _customer(db, manager)
    assert customer.aml_status == "pending"
    pending = transactions.evaluate_compliance(db, config, Decimal("100"), Decimal("108"), customer)
    assert "COMPLIANCE_REVIEW_REQUIRED" in pending.warnings
    assert pending.requires_compliance is True

    customer.aml_status = "approved"
    approved = transactions.evaluate_compliance(db, config, Decimal("100"), Decimal("108"), customer)
    assert "COMPLIANCE_REVIEW_REQUIRED" not in approved.warnings


def test_override_is_audited_with_reason(desk, manager) -> None:
    db = desk
    config = AMLConfig()
    with pytest.raises(InputValidationError):
        _order(db, manager, config, None, "1500", "1620", override_warnings=True)

    transaction, _ = _order(
        db, manager, config, None, "1500", "1620", override_warnings=True, override_reason="Regular client, ID on file"
    )
    assert transaction.notes.endswith("Override Reason: Regular client, ID on file")
    entry = db.execute(
        select(AuditLogEntry).where(AuditLogEntry.action == "compliance_override")
    ).scalar_one()
    assert entry.entity_id == transaction.transaction_id
    assert entry.user_id == manager.id
    assert "CUSTOMER_PROFILE_REQUIRED" in entry.details
    assert "Regular client" in entry.details


def test_cancel_from_processing_leaves_balances_untouched(desk, manager) -> None:
    db = desk
    config = AMLConfig()
    till, _ = tills.create_till(
        db, till_id="T1", till_name="Front Desk", reserve_for_admin=False, share_till=False, user=manager
    )
    tills.sign_in(db, till.till_id, manager)
    ledger.cash_in(db, "T1", "USD", Decimal("1000"), user_id=manager.id)
    transaction, _ = _order(db, manager, config)

    transactions.change_status(db, transaction, "processing", manager)
    transactions.change_status(db, transaction, "cancelled", manager)

    assert transaction.status == "cancelled"
    assert transaction.completed_at is None
    assert transaction.till_id is None
    assert {a.currency_code: a.balance for a in ledger.balances(db, "T1")} == {
        "EUR": 0,
        "USD": Decimal("1000"),
    }
    history = db.execute(
        select(AuditLogEntry.details)
        .where(AuditLogEntry.entity_id == transaction.transaction_id)
        .order_by(AuditLogEntry.id)
    ).scalars().all()
    assert history == ["pending -> processing", "processing -> cancelled"]


def test_sell_settles_customer_currency_into_till(desk, manager) -> None:
    db = desk
    config = AMLConfig()
    tills.create_till(db, till_id="T1", till_name="Front Desk", reserve_for_admin=False, share_till=False, user=manager)
    tills.sign_in(db, "T1", manager)
    ledger.cash_in(db, "T1", "USD", Decimal("1000"), user_id=manager.id)
    transaction, _ = _order(db, manager, config)
    assert transaction.type == "currency_sell"

    transactions.change_status(db, transaction, "processing", manager)
    transactions.change_status(db, transaction, "completed", manager)

    assert {a.currency_code: a.balance for a in ledger.balances(db, "T1")} == {
        "EUR": Decimal("500"),
        "USD": Decimal("460"),
    }
