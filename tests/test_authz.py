from decimal import Decimal
from types import SimpleNamespace

import pytest

from fxoffice.authz import Capability, authorize, modification_cap, require_capability
from fxoffice.errors import PermissionDeniedError


def _user(**flags) -> SimpleNamespace:
    fields = {
        "is_active": True,
        "is_manager": False,
        "is_compliance_officer": False,
        "is_template": False,
        "can_modify_exchange_rates": False,
        "can_edit_fees_commissions": False,
        "can_transfer_between_accounts": False,
        "can_reconcile_accounts": False,
        "max_modification_individual": None,
        "max_modification_corporate": None,
    }
    fields.update(flags)
    return SimpleNamespace(**fields)


def test_manager_holds_every_capability() -> None:
    manager = _user(is_manager=True)
    assert all(authorize(manager, capability) for capability in Capability)


def test_compliance_officer_scope() -> None:
    officer = _user(is_compliance_officer=True)
    assert authorize(officer, Capability.MANAGE_AML_SETTINGS)
    assert authorize(officer, Capability.MANAGE_USERS)
    assert authorize(officer, Capability.REVIEW_COMPLIANCE)
    assert not authorize(officer, Capability.MANAGE_TILLS)
    assert not authorize(officer, Capability.MODIFY_EXCHANGE_RATES)


def test_financial_flags_grant_matching_capability() -> None:
    teller = _user(can_transfer_between_accounts=True)
    assert authorize(teller, Capability.TRANSFER_BETWEEN_TILLS)
    assert not authorize(teller, Capability.RECONCILE_TILLS)
    assert not authorize(teller, Capability.MANAGE_AML_SETTINGS)


def test_inactive_and_template_users_cannot_act() -> None:
    assert not authorize(_user(is_manager=True, is_active=False), Capability.MANAGE_TILLS)
    assert not authorize(_user(is_manager=True, is_template=True), Capability.MANAGE_TILLS)
    assert not authorize(None, Capability.MANAGE_TILLS)


def test_require_capability_raises_with_code() -> None:
    with pytest.raises(PermissionDeniedError) as excinfo:
        require_capability(_user(), Capability.MANAGE_USERS)
    assert excinfo.value.to_dict()["details"] == {"capability": "manage_users"}


def test_modification_cap_by_customer_type() -> None:
    teller = _user(max_modification_individual=Decimal("2500"), max_modification_corporate=Decimal("10000"))
    assert modification_cap(teller, "individual") == Decimal("2500")
    assert modification_cap(teller, None) == Decimal("2500")
    assert modification_cap(teller, "corporate") == Decimal("10000")
    assert modification_cap(_user(is_manager=True), "corporate") is None
