import logging
import secrets
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from fxoffice import alerts, audit
from fxoffice.aml import AMLConfig
from fxoffice.clock import as_utc, utcnow
from fxoffice.errors import BusinessRuleError, DuplicateKeyError, InputValidationError, RecordNotFoundError
from fxoffice.limits import classify_risk, score_customer
from fxoffice.models import Customer, SanctionEntry, Transaction, User
from fxoffice.screening import (
    FLAGGED,
    PENDING,
    SanctionRecord,
    ScreeningResult,
    customer_identity,
    screen_identity,
)

logger = logging.getLogger(__name__)

CUSTOMER_TYPES = ("individual", "corporate")
CUSTOMER_STATUSES = ("pending", "active", "inactive", "flagged", "suspended")
_ID_ATTEMPTS = 10


def generate_customer_id(now: Optional[datetime] = None) -> str:
    stamp = str(int((now or utcnow()).timestamp() * 1000))[-6:]
    return f"CUST-{stamp}{secrets.randbelow(1000):03d}"


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def validate_identity(fields: dict[str, Any]) -> None:
    customer_type = fields.get("type")
    if customer_type not in CUSTOMER_TYPES:
        raise InputValidationError("Customer type must be individual or corporate")
    if customer_type == "individual":
        if not _clean(fields.get("first_name")) or not _clean(fields.get("last_name")):
            raise InputValidationError("First name and last name are required for individual customers")
    elif not _clean(fields.get("business_name")):
        raise InputValidationError("Business name is required for corporate customers")
    if not _clean(fields.get("phone")) and not _clean(fields.get("email")):
        raise InputValidationError("At least one contact method (phone or email) is required")


def _ensure_unique_email(db: Session, email: Optional[str], exclude_id: Optional[int] = None) -> None:
    if not email:
        return
    query = select(Customer.id).where(Customer.email == email)
    if exclude_id is not None:
        query = query.where(Customer.id != exclude_id)
    if db.execute(query).first():
        raise DuplicateKeyError(f"A customer with email {email} already exists", email=email)


def get_customer(db: Session, customer_id: str) -> Customer:
    customer = db.execute(select(Customer).where(Customer.customer_id == customer_id)).scalar_one_or_none()
    if customer is None:
        raise RecordNotFoundError("Customer not found", customer_id=customer_id)
    return customer


def _full_name(customer: Customer) -> Optional[str]:
    if customer.type == "individual" and customer.first_name and customer.last_name:
        return f"{customer.first_name} {customer.last_name}"
    return customer.full_name


def sanction_records(db: Session, list_ids: list[str]) -> list[SanctionRecord]:
    if not list_ids:
        return []
    rows = db.execute(select(SanctionEntry).where(SanctionEntry.list_id.in_(list_ids))).scalars()
    return [
        SanctionRecord(
            list_id=row.list_id,
            name=row.name,
            date_of_birth=row.date_of_birth,
            reference=row.reference,
        )
        for row in rows
    ]


def refresh_risk(customer: Customer, config: AMLConfig) -> None:
    customer.risk_score = score_customer(customer)
    customer.risk_level = classify_risk(customer.risk_score, config.risk_thresholds)


def screen_customer(db: Session, customer: Customer, config: AMLConfig) -> ScreeningResult:
    result = screen_identity(
        customer_identity(customer),
        config.enabled_sanction_lists,
        sanction_records(db, config.enabled_sanction_lists),
    )
    customer.sanctions_screening_status = result.status
    customer.sanction_screening_date = utcnow()
    if result.status == FLAGGED:
        # a fresh match voids any earlier false-positive finding
        customer.sanction_false_positive = False
        if config.auto_hold_on_match:
            customer.status = "flagged"
        alerts.raise_alert(
            db,
            alert_type="sanction_match",
            severity="critical",
            description=(
                f"Customer {customer.customer_id} matched "
                + ", ".join(sorted({f"{m.list_id}: {m.name}" for m in result.matches}))
            ),
            customer=customer,
        )
    elif result.status == PENDING:
        alerts.raise_alert(
            db,
            alert_type="sanction_match",
            severity="medium",
            description=f"Sanction screening for {customer.customer_id} could not complete: {result.reason}",
            customer=customer,
        )
    refresh_risk(customer, config)
    customer.updated_at = utcnow()
    db.flush()
    logger.info("Screened customer %s: %s", customer.customer_id, result.status)
    return result


def create_customer(db: Session, fields: dict[str, Any], config: AMLConfig, user: User) -> tuple[Customer, ScreeningResult | None]:
    fields = {key: _clean(value) if isinstance(value, str) else value for key, value in fields.items()}
    validate_identity(fields)
    _ensure_unique_email(db, fields.get("email"))

    now = utcnow()
    for _ in range(_ID_ATTEMPTS):
        customer_id = generate_customer_id(now)
        if not db.execute(select(Customer.id).where(Customer.customer_id == customer_id)).first():
            break
    else:
        raise BusinessRuleError("Failed to generate unique customer ID")

    customer = Customer(
        customer_id=customer_id,
        status="pending",
        risk_level="low",
        risk_score=0,
        aml_status="pending",
        sanctions_screening_status=PENDING,
        created_at=now,
        updated_at=now,
        created_by=user.id,
        **fields,
    )
    customer.full_name = _full_name(customer)
    db.add(customer)
    db.flush()

    result = None
    if config.auto_screening_enabled:
        result = screen_customer(db, customer, config)
    else:
        refresh_risk(customer, config)
        db.flush()
    logger.info("Customer %s created (%s)", customer.customer_id, customer.type)
    return customer, result


def update_customer(db: Session, customer: Customer, changes: dict[str, Any], config: AMLConfig) -> Customer:
    changes = {key: _clean(value) if isinstance(value, str) else value for key, value in changes.items()}
    merged = {
        "type": customer.type,
        "first_name": customer.first_name,
        "last_name": customer.last_name,
        "business_name": customer.business_name,
        "phone": customer.phone,
        "email": customer.email,
    }
    merged.update({key: value for key, value in changes.items() if key in merged})
    validate_identity(merged)
    if "email" in changes:
        _ensure_unique_email(db, changes["email"], exclude_id=customer.id)
    for key, value in changes.items():
        setattr(customer, key, value)
    customer.full_name = _full_name(customer)
    refresh_risk(customer, config)
    customer.updated_at = utcnow()
    db.flush()
    return customer


def update_kyc(
    db: Session,
    customer: Customer,
    config: AMLConfig,
    *,
    is_pep: Optional[bool] = None,
    pep_details: Optional[str] = None,
    is_suspicious: Optional[bool] = None,
    suspicious_reason: Optional[str] = None,
    aml_status: Optional[str] = None,
) -> Customer:
    became_suspicious = is_suspicious is True and not customer.is_suspicious
    if is_pep is not None:
        customer.is_pep = is_pep
    if pep_details is not None:
        customer.pep_details = pep_details
    if is_suspicious is not None:
        customer.is_suspicious = is_suspicious
        customer.suspicious_reason = suspicious_reason if is_suspicious else None
    if aml_status is not None:
        if aml_status not in ("pending", "approved", "rejected"):
            raise InputValidationError(f"Unknown AML status {aml_status}")
        customer.aml_status = aml_status
    if became_suspicious:
        if not suspicious_reason:
            raise InputValidationError("A reason is required when flagging a customer as suspicious")
        if config.auto_report_suspicious:
            alerts.raise_alert(
                db,
                alert_type="suspicious_activity",
                severity="high",
                description=f"Customer {customer.customer_id} flagged suspicious: {suspicious_reason}",
                customer=customer,
            )
    refresh_risk(customer, config)
    customer.updated_at = utcnow()
    db.flush()
    return customer


def record_false_positive(
    db: Session,
    customer: Customer,
    config: AMLConfig,
    *,
    basis: str,
    whitelist: bool,
    whitelist_expiry: Optional[datetime],
    user: Optional[User] = None,
) -> Customer:
    if customer.sanctions_screening_status != FLAGGED:
        raise BusinessRuleError("Only a flagged screening result can be recorded as a false positive")
    if not basis or not basis.strip():
        raise InputValidationError("A false positive basis narrative is required")
    expiry = as_utc(whitelist_expiry)
    if whitelist and expiry is not None and expiry <= utcnow():
        raise InputValidationError("Whitelist expiry must be in the future")
    customer.sanction_false_positive = True
    customer.false_positive_basis = basis.strip()
    customer.is_whitelisted = whitelist
    customer.whitelist_expiry = expiry if whitelist else None
    if customer.status == "flagged":
        customer.status = "active"
    refresh_risk(customer, config)
    customer.updated_at = utcnow()
    db.flush()
    audit.record(
        db,
        user,
        "sanction_false_positive",
        "customer",
        customer.customer_id,
        f"whitelisted={whitelist} expiry={customer.whitelist_expiry} basis={customer.false_positive_basis}",
    )
    logger.info("Customer %s sanction match recorded as false positive", customer.customer_id)
    return customer


def set_status(
    db: Session,
    customer: Customer,
    status: str,
    notes: Optional[str] = None,
    user: Optional[User] = None,
) -> Customer:
    if status not in CUSTOMER_STATUSES:
        raise InputValidationError(f"Unknown customer status {status}")
    previous = customer.status
    customer.status = status
    if notes:
        customer.notes = notes
    customer.updated_at = utcnow()
    db.flush()
    audit.record(db, user, "customer_status_changed", "customer", customer.customer_id, f"{previous} -> {status}")
    return customer


def delete_customer(db: Session, customer: Customer) -> None:
    if db.execute(select(Transaction.id).where(Transaction.customer_id == customer.customer_id)).first():
        raise BusinessRuleError("Cannot delete customer with existing transactions; change the status instead")
    db.delete(customer)
    db.flush()
