import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from fxoffice.clock import utcnow
from fxoffice.errors import InputValidationError, InvalidTransitionError
from fxoffice.models import ComplianceAlert, Customer, Transaction, User

logger = logging.getLogger(__name__)

ALERT_TYPES = ("sanction_match", "suspicious_activity", "threshold_exceeded")
SEVERITIES = ("critical", "high", "medium", "low")
ALERT_STATUSES = ("pending", "reviewed", "resolved", "escalated")

ALERT_TRANSITIONS = {
    "pending": {"reviewed", "escalated"},
    "reviewed": {"resolved"},
    "escalated": {"resolved"},
    "resolved": {"pending"},
}


def raise_alert(
    db: Session,
    *,
    alert_type: str,
    severity: str,
    description: str,
    customer: Optional[Customer] = None,
    transaction: Optional[Transaction] = None,
) -> ComplianceAlert:
    if alert_type not in ALERT_TYPES:
        raise InputValidationError(f"Unknown alert type {alert_type}")
    if severity not in SEVERITIES:
        raise InputValidationError(f"Unknown severity {severity}")
    if not description or not description.strip():
        raise InputValidationError("Alert description is required")
    alert = ComplianceAlert(
        alert_type=alert_type,
        severity=severity,
        customer_id=customer.id if customer is not None else None,
        transaction_id=transaction.id if transaction is not None else None,
        description=description.strip(),
        status="pending",
        created_at=utcnow(),
    )
    db.add(alert)
    db.flush()
    logger.warning("Compliance alert %s (%s): %s", alert_type, severity, alert.description)
    return alert


def transition_alert(
    db: Session,
    alert: ComplianceAlert,
    status: str,
    user: User,
    resolution_notes: Optional[str] = None,
) -> ComplianceAlert:
    if status not in ALERT_STATUSES:
        raise InputValidationError(f"Unknown alert status {status}")
    if status not in ALERT_TRANSITIONS.get(alert.status, set()):
        raise InvalidTransitionError("alert", alert.status, status)
    alert.status = status
    alert.reviewed_at = utcnow()
    alert.reviewed_by = user.id
    if resolution_notes:
        alert.resolution_notes = resolution_notes
    db.flush()
    return alert


def alert_stats(db: Session) -> dict:
    alerts = db.execute(select(ComplianceAlert)).scalars().all()
    pending = [alert for alert in alerts if alert.status == "pending"]
    return {
        "total": len(alerts),
        "by_status": {status: sum(1 for a in alerts if a.status == status) for status in ALERT_STATUSES},
        "pending_by_severity": {
            severity: sum(1 for a in pending if a.severity == severity) for severity in SEVERITIES
        },
        "by_type": {alert_type: sum(1 for a in alerts if a.alert_type == alert_type) for alert_type in ALERT_TYPES},
    }


def sar_alerts(
    db: Session,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    status: Optional[str] = None,
) -> list[ComplianceAlert]:
    query = select(ComplianceAlert).where(
        (ComplianceAlert.alert_type.in_(("suspicious_activity", "sanction_match")))
        | (ComplianceAlert.severity.in_(("high", "critical")))
    )
    if date_from is not None:
        query = query.where(ComplianceAlert.created_at >= date_from)
    if date_to is not None:
        query = query.where(ComplianceAlert.created_at <= date_to)
    if status is not None:
        query = query.where(ComplianceAlert.status == status)
    return list(db.execute(query.order_by(ComplianceAlert.created_at.desc(), ComplianceAlert.id.desc())).scalars())


def ctr_transactions(
    db: Session,
    threshold: Decimal,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    customer_id: Optional[str] = None,
) -> list[Transaction]:
    query = select(Transaction).where(Transaction.status == "completed")
    if date_from is not None:
        query = query.where(Transaction.created_at >= date_from)
    if date_to is not None:
        query = query.where(Transaction.created_at <= date_to)
    if customer_id is not None:
        query = query.where(Transaction.customer_id == customer_id)
    rows = db.execute(query.order_by(Transaction.created_at.desc(), Transaction.id.desc())).scalars()
    return [row for row in rows if max(row.from_amount, row.to_amount) >= threshold]
