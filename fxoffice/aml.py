"""AML settings: the process-wide compliance configuration.

The settings live in a single ``aml_settings`` row. Handlers load them once per
request with :func:`load_aml_config` and pass the resulting :class:`AMLConfig`
to the screening and limit evaluators, which never read the database
themselves.
"""

import logging
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy import select
from sqlalchemy.orm import Session

from fxoffice import audit
from fxoffice.clock import utcnow
from fxoffice.models import AMLSettings, User

logger = logging.getLogger(__name__)

SANCTION_LISTS = {
    "OFAC_SDN": "US Treasury Office of Foreign Assets Control - Specially Designated Nationals",
    "OSFI": "Office of the Superintendent of Financial Institutions (Canada)",
    "SEMA": "Securities and Exchange Monitoring Authority",
    "NZ": "New Zealand Sanctions List",
    "UK": "UK Government Sanctions List",
    "UN": "United Nations Sanctions List",
    "AUSTRAC": "Australian Transaction Reports and Analysis Centre",
    "EU": "European Union Sanctions List",
}


class RiskThresholds(BaseModel):
    low: int = Field(default=30, ge=0, le=100)
    medium: int = Field(default=70, ge=0, le=100)
    high: int = Field(default=100, ge=0, le=100)

    @model_validator(mode="after")
    def _ordered(self) -> "RiskThresholds":
        if not self.low <= self.medium <= self.high:
            raise ValueError("risk thresholds must satisfy low <= medium <= high")
        return self


class TransactionLimits(BaseModel):
    individual_daily: Decimal = Field(default=Decimal("10000"), gt=0)
    individual_transaction: Decimal = Field(default=Decimal("5000"), gt=0)
    corporate_daily: Decimal = Field(default=Decimal("50000"), gt=0)
    corporate_transaction: Decimal = Field(default=Decimal("25000"), gt=0)


class AMLConfig(BaseModel):
    enabled_sanction_lists: list[str] = Field(default_factory=list)
    risk_thresholds: RiskThresholds = Field(default_factory=RiskThresholds)
    transaction_limits: TransactionLimits = Field(default_factory=TransactionLimits)
    auto_screening_enabled: bool = True
    auto_hold_on_match: bool = False
    auto_report_suspicious: bool = False
    require_two_person_approval: bool = False
    require_override_reason: bool = True
    retention_period_days: int = Field(default=2555, ge=1)
    disclosure_threshold: Decimal = Field(default=Decimal("1000"), gt=0)
    lct_threshold: Decimal = Field(default=Decimal("10000"), gt=0)
    require_sin_threshold: Decimal = Field(default=Decimal("3000"), gt=0)
    require_pep_threshold: Decimal = Field(default=Decimal("1000"), gt=0)
    warn_incomplete_kyc: bool = True
    warn_repeat_transactions_days: int = Field(default=7, ge=0)

    @field_validator("enabled_sanction_lists")
    @classmethod
    def _known_lists(cls, value: list[str]) -> list[str]:
        unknown = sorted(set(value) - set(SANCTION_LISTS))
        if unknown:
            raise ValueError(f"unknown sanction lists: {', '.join(unknown)}")
        # keep caller order, drop repeats
        return list(dict.fromkeys(value))


def _row_to_config(row: AMLSettings) -> AMLConfig:
    return AMLConfig(
        enabled_sanction_lists=list(row.enabled_sanction_lists or []),
        risk_thresholds=RiskThresholds(
            low=row.risk_threshold_low,
            medium=row.risk_threshold_medium,
            high=row.risk_threshold_high,
        ),
        transaction_limits=TransactionLimits(
            individual_daily=row.individual_daily,
            individual_transaction=row.individual_transaction,
            corporate_daily=row.corporate_daily,
            corporate_transaction=row.corporate_transaction,
        ),
        auto_screening_enabled=row.auto_screening_enabled,
        auto_hold_on_match=row.auto_hold_on_match,
        auto_report_suspicious=row.auto_report_suspicious,
        require_two_person_approval=row.require_two_person_approval,
        require_override_reason=row.require_override_reason,
        retention_period_days=row.retention_period_days,
        disclosure_threshold=row.disclosure_threshold,
        lct_threshold=row.lct_threshold,
        require_sin_threshold=row.require_sin_threshold,
        require_pep_threshold=row.require_pep_threshold,
        warn_incomplete_kyc=row.warn_incomplete_kyc,
        warn_repeat_transactions_days=row.warn_repeat_transactions_days,
    )


def _settings_row(db: Session) -> Optional[AMLSettings]:
    return db.execute(select(AMLSettings).order_by(AMLSettings.id).limit(1)).scalar_one_or_none()


def load_aml_config(db: Session) -> AMLConfig:
    """Return the stored AML settings, or the defaults when none were saved."""
    row = _settings_row(db)
    if row is None:
        return AMLConfig()
    return _row_to_config(row)


def save_aml_config(db: Session, config: AMLConfig, user: Optional[User] = None) -> AMLConfig:
    row = _settings_row(db)
    if row is None:
        row = AMLSettings()
        db.add(row)
    row.enabled_sanction_lists = list(config.enabled_sanction_lists)
    row.risk_threshold_low = config.risk_thresholds.low
    row.risk_threshold_medium = config.risk_thresholds.medium
    row.risk_threshold_high = config.risk_thresholds.high
    row.individual_daily = config.transaction_limits.individual_daily
    row.individual_transaction = config.transaction_limits.individual_transaction
    row.corporate_daily = config.transaction_limits.corporate_daily
    row.corporate_transaction = config.transaction_limits.corporate_transaction
    row.auto_screening_enabled = config.auto_screening_enabled
    row.auto_hold_on_match = config.auto_hold_on_match
    row.auto_report_suspicious = config.auto_report_suspicious
    row.require_two_person_approval = config.require_two_person_approval
    row.require_override_reason = config.require_override_reason
    row.retention_period_days = config.retention_period_days
    row.disclosure_threshold = config.disclosure_threshold
    row.lct_threshold = config.lct_threshold
    row.require_sin_threshold = config.require_sin_threshold
    row.require_pep_threshold = config.require_pep_threshold
    row.warn_incomplete_kyc = config.warn_incomplete_kyc
    row.warn_repeat_transactions_days = config.warn_repeat_transactions_days
    row.updated_at = utcnow()
    row.updated_by = user.id if user is not None else None
    db.flush()
    audit.record(
        db,
        user,
        "aml_settings_updated",
        "aml_settings",
        str(row.id),
        f"lists={','.join(config.enabled_sanction_lists) or 'none'} "
        f"limits={config.transaction_limits.model_dump(mode='json')}",
    )
    logger.info(
        "AML settings updated by %s: lists=%s",
        user.email if user is not None else "system",
        ",".join(config.enabled_sanction_lists) or "none",
    )
    return config
