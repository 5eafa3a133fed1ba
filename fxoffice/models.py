from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from fxoffice.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
MONEY = Numeric(18, 4)
RATE = Numeric(18, 8)


class Currency(Base):
    __tablename__ = "currency"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(8), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    symbol: Mapped[str | None] = mapped_column(Text)
    country: Mapped[str | None] = mapped_column(Text)
    flag: Mapped[str | None] = mapped_column(Text)
    market_rate: Mapped[Decimal] = mapped_column(RATE, nullable=False, default=Decimal("1"))
    buy_rate: Mapped[Decimal] = mapped_column(RATE, nullable=False, default=Decimal("1"))
    sell_rate: Mapped[Decimal] = mapped_column(RATE, nullable=False, default=Decimal("1"))
    discount_percent: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("2.5"))
    markup_percent: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("3.5"))
    manual_buy_rate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    manual_sell_rate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Denomination(Base):
    __tablename__ = "denomination"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    currency_code: Mapped[str] = mapped_column(
        String(8), ForeignKey("currency.code"), nullable=False
    )
    value: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    is_coin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    image_url: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (CheckConstraint("value > 0", name="denomination_value_positive"),)


class Customer(Base):
    __tablename__ = "customer"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    customer_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    first_name: Mapped[str | None] = mapped_column(Text)
    last_name: Mapped[str | None] = mapped_column(Text)
    full_name: Mapped[str | None] = mapped_column(Text)
    date_of_birth: Mapped[str | None] = mapped_column(Text)
    occupation: Mapped[str | None] = mapped_column(Text)
    business_name: Mapped[str | None] = mapped_column(Text)
    incorporation_number: Mapped[str | None] = mapped_column(Text)
    business_type: Mapped[str | None] = mapped_column(Text)
    is_msb: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email: Mapped[str | None] = mapped_column(Text, unique=True)
    phone: Mapped[str | None] = mapped_column(Text)
    address: Mapped[str | None] = mapped_column(Text)
    city: Mapped[str | None] = mapped_column(Text)
    province: Mapped[str | None] = mapped_column(Text)
    postal_code: Mapped[str | None] = mapped_column(Text)
    country: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    risk_level: Mapped[str] = mapped_column(Text, nullable=False, default="low")
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    aml_status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    sanctions_screening_status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    sanction_screening_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    sanction_false_positive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    false_positive_basis: Mapped[str | None] = mapped_column(Text)
    is_whitelisted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    whitelist_expiry: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_pep: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pep_details: Mapped[str | None] = mapped_column(Text)
    is_suspicious: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    suspicious_reason: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("app_user.id"))

    __table_args__ = (
        CheckConstraint("type IN ('individual', 'corporate')", name="customer_type"),
        CheckConstraint(
            "sanctions_screening_status IN ('clear', 'flagged', 'pending')",
            name="customer_screening_status",
        ),
        CheckConstraint("risk_level IN ('low', 'medium', 'high')", name="customer_risk_level"),
    )


class SanctionEntry(Base):
    __tablename__ = "sanction_entry"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    list_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    date_of_birth: Mapped[str | None] = mapped_column(Text)
    reference: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Till(Base):
    __tablename__ = "till"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    till_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    till_name: Mapped[str] = mapped_column(Text, nullable=False)
    reserve_for_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    share_till: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    current_user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("app_user.id"))
    sign_in_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("app_user.id"))


class TillSession(Base):
    __tablename__ = "till_session"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    till_id: Mapped[str] = mapped_column(String(32), ForeignKey("till.till_id"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("app_user.id"), nullable=False, index=True)
    sign_in_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sign_out_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    session_duration_seconds: Mapped[int | None] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class CashLedgerAccount(Base):
    __tablename__ = "cash_ledger_account"
    __table_args__ = (
        Index(
            "ix_cash_ledger_account_till_currency",
            "till_id",
            "currency_code",
            unique=True,
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    account_name: Mapped[str] = mapped_column(Text, nullable=False)
    till_id: Mapped[str] = mapped_column(String(32), ForeignKey("till.till_id"), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(8), ForeignKey("currency.code"), nullable=False)
    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TillTransaction(Base):
    __tablename__ = "till_transaction"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    till_id: Mapped[str] = mapped_column(String(32), ForeignKey("till.till_id"), nullable=False, index=True)
    user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("app_user.id"))
    type: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="completed")
    reference: Mapped[str | None] = mapped_column(Text, index=True)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "type IN ('cash_in', 'cash_out', 'adjustment', 'currency_buy', 'currency_sell', 'transfer')",
            name="till_transaction_type",
        ),
    )


class TillReconciliation(Base):
    __tablename__ = "till_reconciliation"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    till_id: Mapped[str] = mapped_column(String(32), ForeignKey("till.till_id"), nullable=False, index=True)
    currency_code: Mapped[str] = mapped_column(String(8), nullable=False)
    expected_balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    counted_balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    variance: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    adjusted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    counted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("app_user.id"))
    notes: Mapped[str | None] = mapped_column(Text)


class Transaction(Base):
    __tablename__ = "fx_transaction"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(48), nullable=False, unique=True)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False, default="currency_exchange")
    from_currency: Mapped[str] = mapped_column(String(8), nullable=False)
    from_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    to_currency: Mapped[str] = mapped_column(String(8), nullable=False)
    to_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    service_fee: Mapped[Decimal | None] = mapped_column(MONEY)
    service_fee_type: Mapped[str | None] = mapped_column(Text)
    payment_method: Mapped[str | None] = mapped_column(Text)
    customer_id: Mapped[str | None] = mapped_column(
        String(32), ForeignKey("customer.customer_id"), index=True
    )
    customer_name: Mapped[str | None] = mapped_column(Text)
    customer_email: Mapped[str | None] = mapped_column(Text)
    customer_phone: Mapped[str | None] = mapped_column(Text)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("app_user.id"), nullable=False, index=True)
    till_id: Mapped[str | None] = mapped_column(String(32), ForeignKey("till.till_id"))
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    requires_aml: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requires_compliance: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    warnings: Mapped[list | None] = mapped_column(JSON_TYPE)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint("type IN ('currency_buy', 'currency_sell')", name="fx_transaction_type"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="fx_transaction_status",
        ),
        CheckConstraint("from_amount > 0 AND to_amount > 0", name="fx_transaction_amounts_positive"),
    )


class ComplianceAlert(Base):
    __tablename__ = "compliance_alert"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    alert_type: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(Text, nullable=False)
    customer_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("customer.id"), index=True)
    transaction_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("fx_transaction.id"))
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    reviewed_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("app_user.id"))
    resolution_notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "alert_type IN ('sanction_match', 'suspicious_activity', 'threshold_exceeded')",
            name="compliance_alert_type",
        ),
        CheckConstraint("severity IN ('critical', 'high', 'medium', 'low')", name="compliance_alert_severity"),
        CheckConstraint(
            "status IN ('pending', 'reviewed', 'resolved', 'escalated')",
            name="compliance_alert_status",
        ),
    )


class User(Base):
    __tablename__ = "app_user"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    subject: Mapped[str | None] = mapped_column(String(128), unique=True)
    email: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    first_name: Mapped[str | None] = mapped_column(Text)
    last_name: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_manager: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_compliance_officer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_template: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_modify_exchange_rates: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_edit_fees_commissions: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_transfer_between_accounts: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_reconcile_accounts: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    max_modification_individual: Mapped[Decimal | None] = mapped_column(MONEY)
    max_modification_corporate: Mapped[Decimal | None] = mapped_column(MONEY)
    invitation_status: Mapped[str] = mapped_column(Text, nullable=False, default="accepted")
    invitation_token: Mapped[str | None] = mapped_column(String(64), unique=True)
    invitation_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    invited_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("app_user.id"))
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AMLSettings(Base):
    __tablename__ = "aml_settings"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    enabled_sanction_lists: Mapped[list] = mapped_column(JSON_TYPE, nullable=False, default=list)
    risk_threshold_low: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_threshold_medium: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_threshold_high: Mapped[int] = mapped_column(Integer, nullable=False)
    individual_daily: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    individual_transaction: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    corporate_daily: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    corporate_transaction: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    auto_screening_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    auto_hold_on_match: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_report_suspicious: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    require_two_person_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    require_override_reason: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    retention_period_days: Mapped[int] = mapped_column(Integer, nullable=False)
    disclosure_threshold: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    lct_threshold: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    require_sin_threshold: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("3000"))
    require_pep_threshold: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("1000"))
    warn_incomplete_kyc: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    warn_repeat_transactions_days: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("app_user.id"))


class AuditLogEntry(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("app_user.id"))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[str | None] = mapped_column(Text)
    details: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_audit_log_created_at", "created_at"),
        Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )
