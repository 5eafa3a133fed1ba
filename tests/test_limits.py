from decimal import Decimal
from types import SimpleNamespace

import pytest

from fxoffice.aml import AMLConfig, RiskThresholds, TransactionLimits
from fxoffice.limits import (
    check_limits,
    classify_risk,
    requires_aml,
    score_customer,
    transaction_amount,
)


def _customer(**overrides) -> SimpleNamespace:
    fields = {
        "type": "individual",
        "first_name": "Maria",
        "last_name": "Gomez",
        "address": "12 King St W",
        "phone": "+1 416 555 0100",
        "business_name": None,
        "incorporation_number": None,
        "is_msb": False,
        "is_pep": False,
        "is_suspicious": False,
        "sanctions_screening_status": "clear",
        "sanction_false_positive": False,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


def test_individual_transaction_over_limit_is_flagged() -> None:
    limits = TransactionLimits(individual_transaction=Decimal("3000"))
    check = check_limits(Decimal("3500"), "individual", limits)
    assert check.exceeds_transaction
    assert check.exceeded
    assert check.transaction_limit == Decimal("3000")


def test_amount_equal_to_limit_is_allowed() -> None:
    check = check_limits(Decimal("5000"), "individual", TransactionLimits())
    assert not check.exceeds_transaction


def test_walk_in_uses_individual_limits() -> None:
    check = check_limits(Decimal("6000"), None, TransactionLimits())
    assert check.customer_type == "individual"
    assert check.exceeds_transaction


def test_corporate_limits_and_daily_total() -> None:
    limits = TransactionLimits()
    check = check_limits(Decimal("20000"), "corporate", limits, daily_total=Decimal("35000"))
    assert not check.exceeds_transaction
    assert check.exceeds_daily


def test_transaction_amount_is_larger_leg() -> None:
    assert transaction_amount(Decimal("500"), Decimal("680.25")) == Decimal("680.25")
    assert requires_aml(Decimal("900"), Decimal("1000.01"), Decimal("1000"))
    assert not requires_aml(Decimal("900"), Decimal("1000"), Decimal("1000"))


@pytest.mark.parametrize(
    "score, expected",
    [(0, "low"), (30, "low"), (31, "medium"), (70, "medium"), (71, "high"), (100, "high")],
)
def test_classify_risk_buckets(score: int, expected: str) -> None:
    assert classify_risk(score, RiskThresholds()) == expected


def test_scores_above_high_threshold_are_high() -> None:
    thresholds = RiskThresholds(low=10, medium=20, high=50)
    assert classify_risk(90, thresholds) == "high"


def test_thresholds_must_be_ordered() -> None:
    with pytest.raises(ValueError):
        RiskThresholds(low=80, medium=40, high=100)


def test_unknown_sanction_list_rejected() -> None:
    with pytest.raises(ValueError):
        AMLConfig(enabled_sanction_lists=["OFAC_SDN", "MARS"])


def test_score_customer_factors() -> None:
    assert score_customer(_customer()) == 0
    assert score_customer(_customer(is_pep=True)) == 40
    assert score_customer(_customer(sanctions_screening_status="pending")) == 10
    assert score_customer(_customer(address=None)) == 10


def test_false_positive_removes_sanction_weight() -> None:
    flagged = _customer(sanctions_screening_status="flagged")
    cleared = _customer(sanctions_screening_status="flagged", sanction_false_positive=True)
    assert score_customer(flagged) == 60
    assert score_customer(cleared) == 0


def test_score_is_capped() -> None:
    customer = _customer(is_pep=True, is_suspicious=True, sanctions_screening_status="flagged")
    assert score_customer(customer) == 100
