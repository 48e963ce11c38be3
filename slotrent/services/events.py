"""
Outbound event queue.

Core mutations call ``publish`` inside their own transaction; nothing is
delivered synchronously. ``dispatch_pending_events`` (scheduled) hands each
pending row to the registered publishers and records the outcome.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from slotrent.models.notification import EventStatus, Notification, OutboundEvent
from slotrent.models.user import User, UserRole

logger = logging.getLogger(__name__)

MAX_DELIVERY_ATTEMPTS = 5

Publisher = Callable[[Session, OutboundEvent], None]

# Notification copy per event type: (title, message template)
NOTIFICATION_TEMPLATES: Dict[str, tuple] = {
    "reservation.created": ("Booking received", "New booking {reservation_number} on {date}."),
    "reservation.confirmed": ("Booking confirmed", "Your booking {reservation_number} is confirmed."),
    "reservation.completed": ("Booking completed", "Booking {reservation_number} has been completed."),
    "reservation.cancelled": ("Booking cancelled", "Booking {reservation_number} was cancelled."),
    "reservation.rescheduled": ("Booking rescheduled", "Booking {reservation_number} moved to {date}."),
    "reservation.expired": ("Booking released", "Booking {reservation_number} was released because payment was not received."),
    "subscription.created": ("Recurring booking started", "Your recurring booking has started."),
    "subscription.canceled": ("Recurring booking cancelled", "Your recurring booking was cancelled."),
    "payout.held": ("Payout on hold", "A payout of {amount} is on hold until your payout account is verified."),
    "payout.paid": ("Payout sent", "A payout of {amount} has been sent."),
    "payout.processing": ("Payout processing", "A payout of {amount} is on its way."),
    "payout.failed": ("Payout failed", "Payout for {reservation_number} failed: {failure_message}"),
    "payout.failed_permanently": ("Payout needs attention", "Payout {payout_id} failed after retry: {failure_message}"),
    "payout.released": ("Payouts released", "{count} held payout(s) will be processed shortly."),
    "payout.daily_summary": ("Daily payout summary", "{count} payout(s) totalling {amount} on {date}."),
}


class _SafeDict(dict):
    def __missing__(self, key):
        return ""


def publish(
    db: Session,
    event_type: str,
    payload: Optional[Dict[str, Any]] = None,
    recipient_id: Optional[UUID] = None,
) -> OutboundEvent:
    """Queue an event in the caller's transaction. The caller commits."""
    event = OutboundEvent(
        event_type=event_type,
        recipient_id=recipient_id,
        payload=_jsonable(payload or {}),
    )
    db.add(event)
    return event


def publish_to_admins(db: Session, event_type: str, payload: Optional[Dict[str, Any]] = None) -> List[OutboundEvent]:
    admins = db.query(User).filter(User.role == UserRole.ADMIN.value, User.is_active == True).all()
    if not admins:
        logger.warning("No active admins to receive %s", event_type)
        return [publish(db, event_type, payload)]
    return [publish(db, event_type, payload, recipient_id=admin.id) for admin in admins]


def _jsonable(payload: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, value in payload.items():
        if value is None or isinstance(value, (str, int, float, bool)):
            out[key] = value
        elif isinstance(value, dict):
            out[key] = _jsonable(value)
        elif isinstance(value, (list, tuple)):
            out[key] = [str(v) for v in value]
        else:
            out[key] = str(value)
    return out


# ---------------------------------------------------------------------------
# Publishers
# ---------------------------------------------------------------------------


def notification_publisher(db: Session, event: OutboundEvent) -> None:
    """Write an in-app notification row for events that have a recipient."""
    if event.recipient_id is None:
        return
    title, template = NOTIFICATION_TEMPLATES.get(
        event.event_type, (event.event_type.replace(".", " ").capitalize(), "")
    )
    payload = event.payload or {}
    reference = payload.get("reservation_id") or payload.get("payout_id") or payload.get("subscription_id")
    db.add(
        Notification(
            user_id=event.recipient_id,
            title=title,
            message=template.format_map(_SafeDict(payload)) or title,
            type=event.event_type,
            reference_id=UUID(reference) if reference else None,
        )
    )


DEFAULT_PUBLISHERS: List[Publisher] = [notification_publisher]


def dispatch_pending_events(
    db: Session,
    publishers: Optional[Iterable[Publisher]] = None,
    batch_size: int = 100,
) -> Dict[str, int]:
    """Deliver pending events. A failing event never blocks the rest of the batch."""
    publishers = list(publishers) if publishers is not None else DEFAULT_PUBLISHERS
    events = (
        db.query(OutboundEvent)
        .filter(OutboundEvent.status == EventStatus.PENDING.value)
        .order_by(OutboundEvent.created_at)
        .limit(batch_size)
        .all()
    )

    sent = failed = 0
    for event in events:
        try:
            for publisher in publishers:
                publisher(db, event)
            event.attempt_count = (event.attempt_count or 0) + 1
            event.status = EventStatus.SENT.value
            event.sent_at = datetime.now(timezone.utc)
            db.commit()
            sent += 1
        except Exception as exc:
            logger.exception("Delivery of event %s (%s) failed", event.id, event.event_type)
            # Drop whatever the publishers added, then record the attempt
            db.rollback()
            event.attempt_count = (event.attempt_count or 0) + 1
            event.last_error = str(exc)[:1000]
            if event.attempt_count >= MAX_DELIVERY_ATTEMPTS:
                event.status = EventStatus.FAILED.value
                failed += 1
            db.commit()

    if events:
        logger.info("Dispatched %d event(s), %d failed permanently", sent, failed)
    return {"sent": sent, "failed": failed, "pending": len(events) - sent - failed}
