from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from conftest import add_currency
from fxoffice import ledger
from fxoffice.errors import InputValidationError, InsufficientBalanceError
from fxoffice.models import TillReconciliation, TillTransaction
from fxoffice.tills import create_till


def _balances(db, till_id: str) -> dict:
    return {account.currency_code: account.balance for account in ledger.balances(db, till_id)}


def _till(db, manager, till_id: str, name: str = "Front Desk"):
    till, _ = create_till(db, till_id=till_id, till_name=name, reserve_for_admin=False, share_till=False, user=manager)
    return till


def test_new_till_gets_zero_balance_per_active_currency(db, manager) -> None:
    for code in ("USD", "EUR", "CAD"):
        add_currency(db, code)
    add_currency(db, "GBP", is_active=False)

    till, accounts = create_till(
        db, till_id="01", till_name="Front Desk", reserve_for_admin=False, share_till=False, user=manager
    )
    assert till.till_id == "01"
    assert sorted(account.currency_code for account in accounts) == ["CAD", "EUR", "USD"]
    assert all(account.balance == 0 for account in accounts)
    assert {account.account_name for account in accounts} == {"Cash-USD-01", "Cash-EUR-01", "Cash-CAD-01"}


def test_currency_added_later_is_provisioned_into_existing_tills(db, manager) -> None:
    add_currency(db, "USD")
    _till(db, manager, "T1")
    _till(db, manager, "T2")
    add_currency(db, "JPY")
    assert ledger.provision_currency(db, "JPY") == 2
    assert _balances(db, "T2") == {"JPY": 0, "USD": 0}


def test_cash_out_cannot_go_negative(db, manager) -> None:
    add_currency(db, "USD")
    _till(db, manager, "T1")
    ledger.cash_in(db, "T1", "USD", Decimal("100"), user_id=manager.id)
    with pytest.raises(InsufficientBalanceError):
        ledger.cash_out(db, "T1", "USD", Decimal("100.01"), user_id=manager.id)
    entry = ledger.cash_out(db, "T1", "USD", Decimal("100"), user_id=manager.id)
    assert entry.amount == Decimal("-100")
    assert entry.balance_after == 0


def test_non_positive_amounts_rejected(db, manager) -> None:
    add_currency(db, "USD")
    _till(db, manager, "T1")
    with pytest.raises(InputValidationError):
        ledger.cash_in(db, "T1", "USD", Decimal("0"), user_id=manager.id)


def test_adjustment_logs_signed_delta(db, manager) -> None:
    add_currency(db, "USD")
    _till(db, manager, "T1")
    ledger.cash_in(db, "T1", "USD", Decimal("250"), user_id=manager.id)
    entry = ledger.adjust(db, "T1", "USD", Decimal("200"), user_id=manager.id)
    assert entry.type == "adjustment"
    assert entry.amount == Decimal("-50")
    assert _balances(db, "T1")["USD"] == Decimal("200")


def test_transfer_shortfall_leaves_every_balance_untouched(db, manager) -> None:
    for code in ("USD", "EUR"):
        add_currency(db, code)
    _till(db, manager, "T1")
    _till(db, manager, "T2")
    ledger.cash_in(db, "T1", "USD", Decimal("400"), user_id=manager.id)
    ledger.cash_in(db, "T1", "EUR", Decimal("1000"), user_id=manager.id)
    entries_before = len(db.execute(select(TillTransaction)).scalars().all())

    with pytest.raises(InsufficientBalanceError) as excinfo:
        ledger.transfer(db, "T1", "T2", {"EUR": Decimal("300"), "USD": Decimal("500")}, user_id=manager.id)

    assert excinfo.value.currency_code == "USD"
    assert _balances(db, "T1") == {"EUR": Decimal("1000"), "USD": Decimal("400")}
    assert _balances(db, "T2") == {"EUR": 0, "USD": 0}
    assert len(db.execute(select(TillTransaction)).scalars().all()) == entries_before


def test_transfer_moves_every_currency(db, manager) -> None:
    for code in ("USD", "EUR"):
        add_currency(db, code)
    _till(db, manager, "T1")
    _till(db, manager, "T2")
    ledger.cash_in(db, "T1", "USD", Decimal("400"), user_id=manager.id)
    ledger.cash_in(db, "T1", "EUR", Decimal("50"), user_id=manager.id)

    reference, entries = ledger.transfer(
        db, "T1", "T2", {"USD": Decimal("400"), "EUR": Decimal("20")}, user_id=manager.id
    )
    assert reference.startswith("TRF-")
    assert len(entries) == 4
    assert {entry.reference for entry in entries} == {reference}
    assert _balances(db, "T1") == {"EUR": Decimal("30"), "USD": 0}
    assert _balances(db, "T2") == {"EUR": Decimal("20"), "USD": Decimal("400")}


def test_transfer_to_same_till_rejected(db, manager) -> None:
    add_currency(db, "USD")
    _till(db, manager, "T1")
    with pytest.raises(InputValidationError):
        ledger.transfer(db, "T1", "T1", {"USD": Decimal("1")}, user_id=manager.id)


def test_exchange_takes_in_from_and_pays_out_to() -> None:
    buy = SimpleNamespace(
        type="currency_buy", from_currency="USD", from_amount=Decimal("540"), to_currency="EUR", to_amount=Decimal("500")
    )
    sell = SimpleNamespace(
        type="currency_sell", from_currency="EUR", from_amount=Decimal("500"), to_currency="USD", to_amount=Decimal("540")
    )
    assert [(m.currency, m.delta) for m in ledger.exchange_movements(buy)] == [
        ("USD", Decimal("540")),
        ("EUR", Decimal("-500")),
    ]
    assert [(m.currency, m.delta, m.kind) for m in ledger.exchange_movements(sell)] == [
        ("EUR", Decimal("500"), "currency_sell"),
        ("USD", Decimal("-540"), "currency_sell"),
    ]


def test_exchange_with_short_leg_changes_nothing(db, manager) -> None:
    for code in ("USD", "EUR"):
        add_currency(db, code)
    _till(db, manager, "T1")
    ledger.cash_in(db, "T1", "EUR", Decimal("100"), user_id=manager.id)
    transaction = SimpleNamespace(
        transaction_id="TXN-1",
        type="currency_buy",
        from_currency="USD",
        from_amount=Decimal("540"),
        to_currency="EUR",
        to_amount=Decimal("500"),
    )
    with pytest.raises(InsufficientBalanceError):
        ledger.apply_exchange(db, transaction, "T1", user_id=manager.id)
    assert _balances(db, "T1") == {"EUR": Decimal("100"), "USD": 0}


def test_reconcile_records_variance_and_adjusts(db, manager) -> None:
    for code in ("USD", "EUR"):
        add_currency(db, code)
    _till(db, manager, "T1")
    ledger.cash_in(db, "T1", "USD", Decimal("500"), user_id=manager.id)

    rows = ledger.reconcile(
        db, "T1", {"USD": Decimal("480"), "EUR": Decimal("0")}, user_id=manager.id, apply_adjustments=True
    )
    by_code = {row.currency_code: row for row in rows}
    assert by_code["USD"].variance == Decimal("-20")
    assert by_code["USD"].adjusted is True
    assert by_code["EUR"].adjusted is False
    assert _balances(db, "T1")["USD"] == Decimal("480")
    assert len(db.execute(select(TillReconciliation)).scalars().all()) == 2
