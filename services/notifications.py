"""
Notification collaborator for the payout engine.

The engine only needs one operation:

    send_notification(user_id, type, title, message, data)

Delivery transport (email, push, Telegram...) lives elsewhere; the database
sink here persists Notification rows that those channels pick up.

Notifying is fire-and-forget. SafeNotifier wraps any sink so a failure to
notify is logged and never rolls back or fails a payment transition.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy.orm import Session

from database.models import Notification

logger = logging.getLogger(__name__)


# Notification types used by the engine
PAYMENT_RECEIVED = "payment_received"
PAYMENT_PENDING = "payment_pending"
PAYMENT_FAILED = "payment_failed"
PAYMENT_DISPUTED = "payment_disputed"
PAYMENT_DISPUTE_RESOLVED = "payment_dispute_resolved"
RECONCILIATION_REQUIRED = "reconciliation_required"


class NotificationService(Protocol):
    def send_notification(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


class DatabaseNotificationService:
    """Persists notifications in the notifications table."""

    def __init__(self, db: Session):
        self.db = db

    def send_notification(self, user_id, type, title, message, data=None):
        notification = Notification(user_id=user_id, type=type, title=title, message=message, data=data or {})
        self.db.add(notification)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"Notification stored for user {user_id}: {type}")


class LoggingNotificationService:
    """Log-only sink (no database), used when nothing consumes notifications."""

    def send_notification(self, user_id, type, title, message, data=None):
        logger.info(f"Notification for user {user_id} [{type}] {title}: {message}")


class SafeNotifier:
    """
    Fire-and-forget wrapper around a NotificationService.

    Args:
        service: underlying sink
        operator_user_ids: users that receive operator alerts (failures,
            reconciliation). With none configured, alerts are only logged.
    """

    def __init__(self, service: NotificationService, operator_user_ids: Optional[List[str]] = None):
        self.service = service
        self.operator_user_ids = list(operator_user_ids or [])

    def notify(self, user_id: Optional[str], type: str, title: str, message: str,
               data: Optional[Dict[str, Any]] = None) -> bool:
        """Send one notification. Returns False (after logging) if it could not be sent."""
        if not user_id:
            logger.warning(f"Notification '{type}' dropped: no recipient")
            return False
        try:
            self.service.send_notification(user_id, type, title, message, data or {})
            return True
        except Exception as e:
            logger.error(f"Failed to send '{type}' notification to {user_id}: {e}")
            return False

    def notify_operators(self, type: str, title: str, message: str,
                         data: Optional[Dict[str, Any]] = None) -> int:
        """Alert every operator. Returns how many notifications went out."""
        logger.error(f"Operator alert [{type}] {title}: {message}")
        sent = 0
        for operator_id in self.operator_user_ids:
            if self.notify(operator_id, type, title, message, data):
                sent += 1
        return sent
