"""
Post-commit events

Core services return a list of CoreEvent instead of sending notifications,
audit entries or alerts inline. EventDispatcher drains that list after the
state change has been committed. Every delivery is best-effort: a failure is
logged and never propagates back into the payment path.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from admin_alerts import AdminAlertSystem, AlertCategory, AlertSeverity
from services.repositories import ActivityRepository

logger = logging.getLogger(__name__)

class EventChannel(Enum):
    NOTIFICATION = "notification"
    AUDIT = "audit"
    ALERT = "alert"

@dataclass(frozen=True)
class CoreEvent:
    kind: str
    subject_id: str
    channel: EventChannel = EventChannel.NOTIFICATION
    customer_id: Optional[str] = None
    actor_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

def notification(kind: str, subject_id: str, customer_id: Optional[str], **payload: Any) -> CoreEvent:
    return CoreEvent(kind=kind, subject_id=subject_id, channel=EventChannel.NOTIFICATION,
                     customer_id=customer_id, payload=payload)

def audit(kind: str, subject_id: str, actor_id: Optional[str] = None, **payload: Any) -> CoreEvent:
    return CoreEvent(kind=kind, subject_id=subject_id, channel=EventChannel.AUDIT,
                     actor_id=actor_id, payload=payload)

def alert(kind: str, subject_id: str, severity: AlertSeverity, category: AlertCategory,
          message: str, **details: Any) -> CoreEvent:
    return CoreEvent(kind=kind, subject_id=subject_id, channel=EventChannel.ALERT,
                     payload={'severity': severity.value, 'category': category.value,
                              'message': message, 'details': details})

NOTIFICATION_TEMPLATES = {
    'payment_confirmed': ("Payment confirmed",
                          "We've received your payment of {amount}. Your services are being set up."),
    'invoice_paid': ("Invoice paid", "Invoice {invoice_number} has been marked as paid."),
    'order_manually_approved': ("Domain order approved",
                                "Your order for {domain_name} has been approved."),
    'order_manually_rejected': ("Domain order not approved",
                                "Your order for {domain_name} could not be approved. {notes}"),
    'order_cancelled': ("Order cancelled", "Your order has been cancelled. No payment was taken."),
}

def render_notification(event: CoreEvent) -> tuple:
    title, template = NOTIFICATION_TEMPLATES.get(event.kind, (event.kind.replace('_', ' ').capitalize(), ""))
    try:
        message = template.format(**event.payload)
    except (KeyError, IndexError):
        message = template
    return title, message.strip()

class EventDispatcher:
    """Drains post-commit events into the ledger, audit log and admin alerts"""

    def __init__(self, activity: ActivityRepository, alerts: Optional[AdminAlertSystem] = None):
        self.activity = activity
        self.alerts = alerts

    async def drain(self, events: Iterable[CoreEvent]) -> int:
        """
        Deliver events; returns how many were delivered

        A notification already present in the ledger counts as not delivered.
        """
        delivered = 0
        for event in events:
            try:
                if await self._deliver(event):
                    delivered += 1
            except Exception as e:
                logger.error(f"❌ Event delivery failed for {event.kind} on {event.subject_id}: {e}")
        return delivered

    async def _deliver(self, event: CoreEvent) -> bool:
        if event.channel is EventChannel.NOTIFICATION:
            title, message = render_notification(event)
            inserted = await self.activity.record_notification(
                event.subject_id, event.kind, event.customer_id, title, message
            )
            if not inserted:
                logger.info(f"🔁 Notification {event.kind} for {event.subject_id} already sent, skipping")
            return inserted

        if event.channel is EventChannel.AUDIT:
            await self.activity.log_activity(event.subject_id, event.kind, event.actor_id, event.payload)
            return True

        if self.alerts is None:
            logger.warning(f"⚠️ Alert {event.kind} for {event.subject_id} dropped: no alert system configured")
            return False
        return await self.alerts.send_alert(
            event.payload['severity'],
            event.payload['category'],
            event.kind,
            event.payload['message'],
            event.payload.get('details') or None,
        )
