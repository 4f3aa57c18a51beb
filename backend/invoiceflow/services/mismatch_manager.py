"""Mismatch alerts raised by failed scan comparisons, and their admin review."""
from __future__ import annotations

from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional

from invoiceflow.core.config import Settings, get_settings
from invoiceflow.core.errors import ConflictError, ValidationError
from invoiceflow.core.logging import logger
from invoiceflow.models.scan import AlertStatus, MismatchAlert, ScanResult, ScanStep
from invoiceflow.services.invoice_store import InvoiceStore
from invoiceflow.services.sequences import SequenceCounter


class MismatchManager:
    """Owns the alert list. Each alert leaves ``pending`` exactly once."""

    def __init__(
        self,
        store: InvoiceStore,
        sequences: Optional[SequenceCounter] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._store = store
        self._sequences = sequences or SequenceCounter()
        self.settings = settings or get_settings()
        self._lock = Lock()
        self._alerts: Dict[str, MismatchAlert] = {}

    def raise_alert(
        self,
        user: Optional[str],
        customer: Optional[str],
        invoice_id: Optional[str],
        step: ScanStep | str,
        customer_scan: ScanResult,
        autoliv_scan: ScanResult,
    ) -> MismatchAlert:
        """Record a pending alert. ``invoice_id`` is trusted to reference a known invoice."""
        alert = MismatchAlert(
            id=self._sequences.next_id("alert", "ALERT"),
            user=user,
            customer=customer,
            invoice_id=invoice_id,
            step=ScanStep(step),
            customer_scan=customer_scan,
            autoliv_scan=autoliv_scan,
            timestamp=datetime.now(timezone.utc),
        )
        with self._lock:
            self._alerts[alert.id] = alert

        logger.warning(
            "Scan mismatch raised",
            alert_id=alert.id,
            invoice_id=invoice_id,
            step=alert.step.value,
            customer_raw=customer_scan.raw_value,
            autoliv_raw=autoliv_scan.raw_value,
        )

        if invoice_id and self.settings.block_on_mismatch:
            self._store.set_blocked(invoice_id, True)
        return alert.model_copy()

    def resolve(self, alert_id: str, status: AlertStatus | str, reviewed_by: str) -> Optional[MismatchAlert]:
        """Approve or reject a pending alert. Approval unblocks the invoice."""
        decision = AlertStatus(status)
        if decision == AlertStatus.PENDING:
            raise ValidationError("An alert can only be resolved to approved or rejected")

        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                logger.info("Alert resolution ignored for unknown alert", alert_id=alert_id)
                return None
            if alert.status != AlertStatus.PENDING:
                raise ConflictError(
                    f"Alert {alert_id} was already {alert.status.value}",
                    alert_id=alert_id,
                )
            resolved = alert.model_copy(
                update={
                    "status": decision,
                    "reviewed_by": reviewed_by,
                    "reviewed_at": datetime.now(timezone.utc),
                }
            )
            self._alerts[alert_id] = resolved

        logger.info("Alert resolved", alert_id=alert_id, status=decision.value, reviewed_by=reviewed_by)

        if decision == AlertStatus.APPROVED and resolved.invoice_id and not self._has_other_pending(resolved):
            self._store.set_blocked(resolved.invoice_id, False)
        return resolved.model_copy()

    def _has_other_pending(self, alert: MismatchAlert) -> bool:
        return any(
            other.id != alert.id and other.invoice_id == alert.invoice_id
            for other in self.pending()
        )

    def get(self, alert_id: str) -> Optional[MismatchAlert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
        return alert.model_copy() if alert is not None else None

    def list_alerts(
        self,
        status: AlertStatus | str | None = None,
        invoice_id: Optional[str] = None,
    ) -> List[MismatchAlert]:
        with self._lock:
            alerts = [alert.model_copy() for alert in self._alerts.values()]
        if status is not None:
            wanted = AlertStatus(status)
            alerts = [alert for alert in alerts if alert.status == wanted]
        if invoice_id is not None:
            alerts = [alert for alert in alerts if alert.invoice_id == invoice_id]
        return sorted(alerts, key=lambda alert: (alert.timestamp, alert.id))

    def pending(self) -> List[MismatchAlert]:
        """Pending alerts, oldest first."""
        return self.list_alerts(AlertStatus.PENDING)
