"""Risk bucketing and transaction-limit evaluation."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from fxoffice.aml import RiskThresholds, TransactionLimits

INDIVIDUAL = "individual"
CORPORATE = "corporate"

LOW = "low"
MEDIUM = "medium"
HIGH = "high"

_PEP_WEIGHT = 40
_SUSPICIOUS_WEIGHT = 40
_SANCTION_FLAGGED_WEIGHT = 60
_SANCTION_PENDING_WEIGHT = 10
_MSB_WEIGHT = 20
_INCOMPLETE_KYC_WEIGHT = 10


@dataclass(frozen=True)
class LimitCheck:
    customer_type: str
    amount: Decimal
    daily_total: Decimal
    transaction_limit: Decimal
    daily_limit: Decimal

    @property
    def exceeds_transaction(self) -> bool:
        return self.amount > self.transaction_limit

    @property
    def exceeds_daily(self) -> bool:
        return self.daily_total + self.amount > self.daily_limit

    @property
    def exceeded(self) -> bool:
        return self.exceeds_transaction or self.exceeds_daily


def transaction_amount(from_amount: Decimal, to_amount: Decimal) -> Decimal:
    return max(Decimal(from_amount), Decimal(to_amount))


def requires_aml(from_amount: Decimal, to_amount: Decimal, disclosure_threshold: Decimal) -> bool:
    return transaction_amount(from_amount, to_amount) > disclosure_threshold


def check_limits(
    amount: Decimal,
    customer_type: Optional[str],
    limits: TransactionLimits,
    daily_total: Decimal = Decimal("0"),
) -> LimitCheck:
    # walk-in customers are held to individual limits
    if customer_type == CORPORATE:
        transaction_limit = limits.corporate_transaction
        daily_limit = limits.corporate_daily
    else:
        customer_type = INDIVIDUAL
        transaction_limit = limits.individual_transaction
        daily_limit = limits.individual_daily
    return LimitCheck(
        customer_type=customer_type,
        amount=Decimal(amount),
        daily_total=Decimal(daily_total),
        transaction_limit=transaction_limit,
        daily_limit=daily_limit,
    )


def classify_risk(score: int, thresholds: RiskThresholds) -> str:
    if score <= thresholds.low:
        return LOW
    if score <= thresholds.medium:
        return MEDIUM
    return HIGH


def kyc_incomplete(customer) -> bool:
    if customer.type == CORPORATE:
        required = (customer.business_name, customer.incorporation_number, customer.address)
    else:
        required = (customer.first_name, customer.last_name, customer.address, customer.phone)
    return not all(required)


def score_customer(customer) -> int:
    score = 0
    if customer.is_pep:
        score += _PEP_WEIGHT
    if customer.is_suspicious:
        score += _SUSPICIOUS_WEIGHT
    if customer.sanctions_screening_status == "flagged" and not customer.sanction_false_positive:
        score += _SANCTION_FLAGGED_WEIGHT
    elif customer.sanctions_screening_status == "pending":
        score += _SANCTION_PENDING_WEIGHT
    if customer.type == CORPORATE and customer.is_msb:
        score += _MSB_WEIGHT
    if kyc_incomplete(customer):
        score += _INCOMPLETE_KYC_WEIGHT
    return min(score, 100)
