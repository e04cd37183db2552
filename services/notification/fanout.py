"""
services/notification/fanout.py
Role-scoped notification fan-out.

Subscribes to the change feed with filters derived from the actor and
turns matching events into client-held notifications. Strictly
read-only with respect to the store; duplicated events produce
duplicated notifications.
"""

import asyncio
import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from config.settings import settings
from services.realtime.change_feed import (
    ChangeEvent,
    ChangeFeed,
    ChangeType,
    ColumnEquals,
    Subscription,
)
from shared.middleware.auth import Actor
from shared.models.models import BookingStatus, KycStatus, UserRole
from shared.schemas.schemas import NotificationResponse

logger = logging.getLogger(__name__)

Handler = Callable[[ChangeEvent], Optional[dict]]

TRAVELER_STATUS_MESSAGES = {
    BookingStatus.ACCEPTED.value: (
        "Booking Accepted",
        "Your booking has been accepted by the provider.",
    ),
    BookingStatus.IN_PROGRESS.value: (
        "Booking In Progress",
        "Your pilgrimage is now being performed.",
    ),
    BookingStatus.COMPLETED.value: (
        "Booking Completed 🎉",
        "Your pilgrimage has been completed. Please check proof photos.",
    ),
    BookingStatus.CANCELLED.value: (
        "Booking Cancelled",
        "Your booking has been cancelled.",
    ),
}


def preview(content: str, limit: Optional[int] = None) -> str:
    limit = limit or settings.MESSAGE_PREVIEW_LENGTH
    if len(content) <= limit:
        return content
    return content[:limit] + "..."


def _changed(event: ChangeEvent, column: str) -> bool:
    old = (event.old or {}).get(column)
    return event.new is not None and event.new.get(column) != old


# ── Notification list ─────────────────────────────────────────

class NotificationFeed:
    """Bounded, most-recent-first list of notifications."""

    def __init__(self, limit: Optional[int] = None):
        self._items: deque = deque(maxlen=limit or settings.NOTIFICATION_FEED_LIMIT)

    def add(self, notification: NotificationResponse) -> None:
        self._items.appendleft(notification)

    @property
    def items(self) -> List[NotificationResponse]:
        return list(self._items)

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self._items if not n.is_read)

    def mark_read(self, notification_id: str) -> bool:
        for notification in self._items:
            if notification.id == notification_id:
                notification.is_read = True
                return True
        return False

    def mark_all_read(self) -> None:
        for notification in self._items:
            notification.is_read = True

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


# ── Rules ─────────────────────────────────────────────────────

class Rule:
    def __init__(
        self,
        table: str,
        event_types: tuple,
        handler: Handler,
        column: Optional[str] = None,
        value=None,
    ):
        self.table = table
        self.event_types = event_types
        self.handler = handler
        self.match = ColumnEquals(column, value) if column else None

    def predicate(self, event: ChangeEvent) -> bool:
        if event.type not in self.event_types:
            return False
        return self.match is None or self.match(event)


def traveler_booking_update(event: ChangeEvent) -> Optional[dict]:
    if not _changed(event, "status"):
        return None
    message = TRAVELER_STATUS_MESSAGES.get(event.new["status"])
    if not message:
        return None
    title, body = message
    return dict(
        type="booking_updated",
        title=title,
        message=body,
        entity_id=event.new["id"],
        entity_type="booking",
    )


def kyc_decision(entity_type: str) -> Handler:
    def handler(event: ChangeEvent) -> Optional[dict]:
        if not _changed(event, "kyc_status"):
            return None
        status = event.new["kyc_status"]
        if status == KycStatus.APPROVED.value:
            return dict(
                type="kyc_approved",
                title="KYC Approved! 🎉",
                message="Your verification has been approved. You can now start accepting bookings.",
                entity_id=event.new["id"],
                entity_type=entity_type,
            )
        if status == KycStatus.REJECTED.value:
            return dict(
                type="kyc_rejected",
                title="KYC Rejected",
                message=event.new.get("kyc_notes")
                or "Your verification was rejected. Please review and resubmit.",
                entity_id=event.new["id"],
                entity_type=entity_type,
            )
        return None

    return handler


def provider_assignment(event: ChangeEvent) -> Optional[dict]:
    if event.type == ChangeType.UPDATE and not _changed(event, "provider_id"):
        return None
    return dict(
        type="booking_created",
        title="New Booking Assignment",
        message="You have a new booking request waiting for your review.",
        entity_id=event.new["booking_id"],
        entity_type="booking",
    )


def kyc_submission(entity_type: str) -> Handler:
    label = entity_type.capitalize()

    def handler(event: ChangeEvent) -> Optional[dict]:
        if not _changed(event, "kyc_status") or event.new["kyc_status"] != KycStatus.UNDER_REVIEW.value:
            return None
        name = event.new.get("company_name") or f"A {entity_type}"
        return dict(
            type="kyc_submission",
            title=f"New {label} KYC Submission",
            message=f"{name} has submitted KYC documents for review",
            entity_id=event.new["id"],
            entity_type=entity_type,
        )

    return handler


def new_booking(event: ChangeEvent) -> Optional[dict]:
    return dict(
        type="new_booking",
        title="New Booking Created",
        message="A new booking has been created and is awaiting allocation",
        entity_id=event.new["id"],
        entity_type="booking",
    )


def booking_disputed(event: ChangeEvent) -> Optional[dict]:
    if not _changed(event, "status") or event.new["status"] != BookingStatus.DISPUTED.value:
        return None
    return dict(
        type="dispute",
        title="Booking Disputed",
        message="A booking has been marked as disputed and requires attention",
        entity_id=event.new["id"],
        entity_type="booking",
    )


def new_message(event: ChangeEvent) -> Optional[dict]:
    return dict(
        type="message",
        title="New Message",
        message=preview(event.new["content"]),
        entity_id=event.new["booking_id"],
        entity_type="message",
    )


def rules_for(actor: Actor, provider_id: Optional[uuid.UUID] = None) -> List[Rule]:
    """Subscriptions an actor is entitled to."""
    insert, update = (ChangeType.INSERT,), (ChangeType.UPDATE,)
    rules = [Rule("messages", insert, new_message, "recipient_id", actor.id)]

    if actor.role == UserRole.TRAVELER:
        rules.append(Rule("bookings", update, traveler_booking_update, "traveler_id", actor.id))
    elif actor.role == UserRole.PROVIDER:
        rules.append(Rule("providers", update, kyc_decision("provider"), "user_id", actor.id))
        if provider_id is not None:
            rules.append(
                Rule(
                    "service_allocations",
                    (ChangeType.INSERT, ChangeType.UPDATE),
                    provider_assignment,
                    "provider_id",
                    provider_id,
                )
            )
    elif actor.role == UserRole.VENDOR:
        rules.append(Rule("vendors", update, kyc_decision("vendor"), "user_id", actor.id))
    elif actor.is_admin:
        rules.extend([
            Rule("providers", update, kyc_submission("provider")),
            Rule("vendors", update, kyc_submission("vendor")),
            Rule("bookings", insert, new_booking),
            Rule("bookings", update, booking_disputed),
        ])
    return rules


# ── Fan-out ───────────────────────────────────────────────────

class NotificationFanout:
    """
    Holds one change-feed subscription per rule while started.

    Usage:
        async with NotificationFanout(feed, actor, on_notification=send) as fanout:
            ...
            fanout.notifications.unread_count
    """

    def __init__(
        self,
        feed: ChangeFeed,
        actor: Actor,
        provider_id: Optional[uuid.UUID] = None,
        notifications: Optional[NotificationFeed] = None,
        on_notification: Optional[Callable[[NotificationResponse], Awaitable[None]]] = None,
    ):
        self.feed = feed
        self.actor = actor
        self.provider_id = provider_id
        self.notifications = notifications if notifications is not None else NotificationFeed()
        self.on_notification = on_notification
        self._subscriptions: List[Subscription] = []
        self._tasks: List[asyncio.Task] = []

    async def start(self) -> None:
        for rule in rules_for(self.actor, self.provider_id):
            subscription = await self.feed.subscribe(rule.table, rule.predicate)
            self._subscriptions.append(subscription)
            self._tasks.append(asyncio.create_task(self._pump(subscription, rule.handler)))
        logger.info(f"Notification fan-out started for {self.actor} ({len(self._tasks)} subscriptions)")

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            await subscription.close()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._subscriptions.clear()
        self._tasks.clear()

    def dispatch(self, event: ChangeEvent, handler: Handler) -> Optional[NotificationResponse]:
        payload = handler(event)
        if payload is None:
            return None
        notification = NotificationResponse(
            id=str(uuid.uuid4()),
            is_read=False,
            created_at=datetime.now(timezone.utc),
            **payload,
        )
        self.notifications.add(notification)
        return notification

    async def _pump(self, subscription: Subscription, handler: Handler) -> None:
        async for event in subscription:
            notification = self.dispatch(event, handler)
            if notification is None or self.on_notification is None:
                continue
            try:
                await self.on_notification(notification)
            except Exception as e:
                logger.warning(f"Notification delivery to {self.actor} failed: {e}")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.stop()


def summary(notifications: NotificationFeed) -> Dict[str, object]:
    return {
        "unread_count": notifications.unread_count,
        "items": [n.model_dump(mode="json") for n in notifications.items],
    }
