"""Capability checks for the acting user.

Every permission decision in the service goes through :func:`authorize`.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional

from fxoffice.errors import PermissionDeniedError
from fxoffice.models import User


class Capability(str, Enum):
    MANAGE_USERS = "manage_users"
    MANAGE_AML_SETTINGS = "manage_aml_settings"
    REVIEW_COMPLIANCE = "review_compliance"
    MANAGE_TILLS = "manage_tills"
    MANAGE_CURRENCIES = "manage_currencies"
    MODIFY_EXCHANGE_RATES = "modify_exchange_rates"
    EDIT_FEES_COMMISSIONS = "edit_fees_commissions"
    TRANSFER_BETWEEN_TILLS = "transfer_between_tills"
    RECONCILE_TILLS = "reconcile_tills"
    VIEW_ALL_TRANSACTIONS = "view_all_transactions"


_COMPLIANCE_OFFICER = frozenset(
    {
        Capability.MANAGE_USERS,
        Capability.MANAGE_AML_SETTINGS,
        Capability.REVIEW_COMPLIANCE,
        Capability.VIEW_ALL_TRANSACTIONS,
    }
)

_PERMISSION_FLAGS = {
    Capability.MODIFY_EXCHANGE_RATES: "can_modify_exchange_rates",
    Capability.EDIT_FEES_COMMISSIONS: "can_edit_fees_commissions",
    Capability.TRANSFER_BETWEEN_TILLS: "can_transfer_between_accounts",
    Capability.RECONCILE_TILLS: "can_reconcile_accounts",
}


def authorize(user: Optional[User], capability: Capability) -> bool:
    if user is None or not user.is_active or user.is_template:
        return False
    if user.is_manager:
        return True
    if user.is_compliance_officer and capability in _COMPLIANCE_OFFICER:
        return True
    flag = _PERMISSION_FLAGS.get(capability)
    return bool(flag and getattr(user, flag))


def require_capability(user: Optional[User], capability: Capability) -> None:
    if not authorize(user, capability):
        raise PermissionDeniedError(
            f"Missing permission: {capability.value}",
            capability=capability.value,
        )


def modification_cap(user: User, customer_type: Optional[str]) -> Optional[Decimal]:
    """The largest transaction whose rate this user may change; None is uncapped."""
    if user.is_manager:
        return None
    if customer_type == "corporate":
        return user.max_modification_corporate
    return user.max_modification_individual
