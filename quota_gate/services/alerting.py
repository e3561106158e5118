"""Alert creation & escalation for the background paths.

Rules:
1. LEDGER_DELTAS_LOST -> severity HIGH; escalates to CRITICAL when the same
   tenant already lost deltas inside ``repeat_window_hours``.
2. OVERAGE_CHARGE_FAILED -> severity HIGH (revenue impact, manual follow-up).
3. COUNTER_STORE_DEGRADED -> severity CRITICAL (admission is failing closed).

Alert persistence must never break the loop that raised it: database errors
are logged and swallowed here, the caller carries on.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from quota_gate.config import ALERTING_SETTINGS
from quota_gate.database import SessionLocal
from quota_gate.models.db import Alert
from quota_gate.models.db.enums import AlertSeverity, AlertType
from quota_gate.utils import get_logger
from quota_gate.utils.time import utc_now

logger = get_logger(__name__)

DEFAULT_SEVERITY: dict[AlertType, AlertSeverity] = {
    AlertType.LEDGER_DELTAS_LOST: AlertSeverity.HIGH,
    AlertType.OVERAGE_CHARGE_FAILED: AlertSeverity.HIGH,
    AlertType.COUNTER_STORE_DEGRADED: AlertSeverity.CRITICAL,
}


def _is_repeat(session: Session, tenant_id: Optional[str], alert_type: AlertType, now: datetime) -> bool:
    if tenant_id is None:
        return False
    window_hours = float(ALERTING_SETTINGS.get("repeat_window_hours", 6))
    window_start = now - timedelta(hours=window_hours)
    count = (
        session.query(Alert)
        .filter(
            Alert.tenant_id == tenant_id,
            Alert.alert_type == alert_type,
            Alert.created_at >= window_start,
        )
        .count()
    )
    return count > 0


def create_alert(
    session: Session,
    alert_type: AlertType,
    *,
    title: str,
    message: str,
    tenant_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    severity: Optional[AlertSeverity] = None,
) -> Alert:
    """Add an alert to ``session`` (caller commits)."""
    now = utc_now()
    if severity is None:
        severity = DEFAULT_SEVERITY.get(alert_type, AlertSeverity.MEDIUM)
        if alert_type == AlertType.LEDGER_DELTAS_LOST and _is_repeat(session, tenant_id, alert_type, now):
            severity = AlertSeverity.CRITICAL
    alert = Alert(
        tenant_id=tenant_id,
        alert_type=alert_type,
        title=title,
        message=message,
        details=details,
        severity=severity,
    )
    session.add(alert)
    logger.warning(
        "Alert raised",
        alert_type=alert_type.value,
        severity=severity.value,
        tenant_id=tenant_id,
        title=title,
    )
    return alert


class AlertService:
    """Opens its own session per alert; used from background tasks/threads."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def raise_alert(
        self,
        alert_type: AlertType,
        *,
        title: str,
        message: str,
        tenant_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[AlertSeverity] = None,
    ) -> Optional[int]:
        session = self._session_factory()
        try:
            alert = create_alert(
                session,
                alert_type,
                title=title,
                message=message,
                tenant_id=tenant_id,
                details=details,
                severity=severity,
            )
            session.commit()
            return alert.id
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(
                "Failed to persist alert",
                alert_type=alert_type.value,
                tenant_id=tenant_id,
                error=str(e),
                exc_info=True,
            )
            return None
        finally:
            session.close()


__all__ = ["AlertService", "create_alert"]
