from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from fxoffice import alerts
from fxoffice.errors import InputValidationError, InvalidTransitionError
from fxoffice.models import Transaction


def _transaction(db, user, transaction_id: str, amount: str, status: str = "completed") -> Transaction:
    now = datetime.now(timezone.utc)
    transaction = Transaction(
        transaction_id=transaction_id,
        type="currency_buy",
        category="currency_exchange",
        from_currency="USD",
        from_amount=Decimal(amount),
        to_currency="EUR",
        to_amount=Decimal(amount) * Decimal("0.9"),
        exchange_rate=Decimal("0.9"),
        user_id=user.id,
        status=status,
        requires_aml=False,
        requires_compliance=False,
        created_at=now,
        updated_at=now,
    )
    db.add(transaction)
    db.flush()
    return transaction


def test_review_then_resolve_then_reopen(db, manager) -> None:
    alert = alerts.raise_alert(db, alert_type="suspicious_activity", severity="high", description="Structuring")
    alerts.transition_alert(db, alert, "reviewed", manager)
    alerts.transition_alert(db, alert, "resolved", manager, "Documents verified")
    assert alert.resolution_notes == "Documents verified"
    assert alert.reviewed_by == manager.id
    alerts.transition_alert(db, alert, "pending", manager)
    assert alert.status == "pending"


def test_pending_cannot_jump_to_resolved(db, manager) -> None:
    alert = alerts.raise_alert(db, alert_type="sanction_match", severity="critical", description="OFAC hit")
    with pytest.raises(InvalidTransitionError):
        alerts.transition_alert(db, alert, "resolved", manager)
    assert alert.status == "pending"


def test_unknown_severity_rejected(db) -> None:
    with pytest.raises(InputValidationError):
        alerts.raise_alert(db, alert_type="sanction_match", severity="urgent", description="x")


def test_alert_stats(db, manager) -> None:
    alerts.raise_alert(db, alert_type="sanction_match", severity="critical", description="a")
    alerts.raise_alert(db, alert_type="threshold_exceeded", severity="medium", description="b")
    escalated = alerts.raise_alert(db, alert_type="suspicious_activity", severity="high", description="c")
    alerts.transition_alert(db, escalated, "escalated", manager)

    stats = alerts.alert_stats(db)
    assert stats["total"] == 3
    assert stats["by_status"]["pending"] == 2
    assert stats["by_status"]["escalated"] == 1
    assert stats["pending_by_severity"] == {"critical": 1, "high": 0, "medium": 1, "low": 0}
    assert stats["by_type"]["threshold_exceeded"] == 1


def test_sar_filter(db) -> None:
    alerts.raise_alert(db, alert_type="threshold_exceeded", severity="medium", description="limit")
    alerts.raise_alert(db, alert_type="threshold_exceeded", severity="high", description="big limit")
    alerts.raise_alert(db, alert_type="suspicious_activity", severity="low", description="odd")
    rows = alerts.sar_alerts(db)
    assert sorted(row.description for row in rows) == ["big limit", "odd"]


def test_ctr_uses_threshold_and_completed_only(db, manager) -> None:
    _transaction(db, manager, "TXN-1", "10000")
    _transaction(db, manager, "TXN-2", "9999.99")
    _transaction(db, manager, "TXN-3", "25000", status="pending")
    rows = alerts.ctr_transactions(db, Decimal("10000"))
    assert [row.transaction_id for row in rows] == ["TXN-1"]

    tomorrow = datetime.now(timezone.utc) + timedelta(days=1)
    assert alerts.ctr_transactions(db, Decimal("10000"), date_from=tomorrow) == []
