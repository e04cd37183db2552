"""
services/notification/router.py
In-app notifications via WebSocket.
The socket streams role-scoped notifications from the change feed and
accepts mark_read / mark_all_read / clear commands. Nothing is persisted.
"""

import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.store import provider_for_user
from services.notification.fanout import NotificationFanout, NotificationFeed, summary
from services.realtime.change_feed import ChangeFeed, get_change_feed
from shared.middleware.auth import Actor, decode_token, load_user
from shared.models.models import UserRole
from shared.schemas.schemas import NotificationCommand, NotificationResponse
from shared.utils.exceptions import AppError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


def apply_command(notifications: NotificationFeed, command: NotificationCommand) -> None:
    if command.action == "mark_read" and command.id:
        notifications.mark_read(command.id)
    elif command.action == "mark_all_read":
        notifications.mark_all_read()
    elif command.action == "clear":
        notifications.clear()


@router.websocket("/ws")
async def notifications_ws(
    websocket: WebSocket,
    token: str = Query(...),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """Authenticate with ?token=<access token>, then receive notifications."""
    try:
        user = await load_user(db, decode_token(token))
    except AppError as e:
        logger.info(f"Notification socket rejected: {e.detail}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    actor = Actor.from_user(user)
    provider = None
    if actor.role == UserRole.PROVIDER:
        provider = await provider_for_user(db, actor.id)
    # Release the connection; the socket may stay open for hours
    await db.commit()

    await websocket.accept()
    notifications = NotificationFeed()

    async def push(notification: NotificationResponse) -> None:
        await websocket.send_json({
            "event": "notification",
            "notification": notification.model_dump(mode="json"),
            "unread_count": notifications.unread_count,
        })

    async with NotificationFanout(
        feed,
        actor,
        provider_id=provider.id if provider else None,
        notifications=notifications,
        on_notification=push,
    ):
        await websocket.send_json({"event": "snapshot", **summary(notifications)})
        try:
            while True:
                data = await websocket.receive_json()
                try:
                    command = NotificationCommand.model_validate(data)
                except ValidationError:
                    await websocket.send_json({"event": "error", "detail": "Unknown command"})
                    continue
                apply_command(notifications, command)
                await websocket.send_json({"event": "snapshot", **summary(notifications)})
        except WebSocketDisconnect:
            logger.info(f"Notification socket closed for {actor}")
