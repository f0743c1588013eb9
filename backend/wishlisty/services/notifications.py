"""Notification persistence, badge accounting and channel selection.

A notification is always persisted first. Delivery happens afterwards over
the real-time channel when the recipient holds a live websocket, otherwise
through the push provider. Delivery problems are logged and swallowed here:
the action that triggered the notification has already succeeded.

The badge counter is not the raw unread count. It only counts unread
notifications created after ``User.last_badge_seen_at``, so dismissing the
badge and reading individual notifications stay independent.
"""

import logging
from datetime import datetime
from typing import Any, Literal, Protocol

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wishlisty.core.errors import DeliveryError, InvalidDeviceToken, NotFoundError, RenderError
from wishlisty.core.i18n import MessageCatalog, message_catalog
from wishlisty.core.timeutils import utcnow
from wishlisty.db.session import transaction
from wishlisty.models.models import Notification, NotificationTypeEnum, User
from wishlisty.schemas.notification import (
    BadgeState,
    DispatchResult,
    MarkAllReadResult,
    NotificationPage,
    NotificationPublic,
)
from wishlisty.services.push import NullPushProvider, PushMessage, PushProvider


logger = logging.getLogger("wishlisty.notifications")

Channel = Literal["realtime", "push", "none"]


class PresenceTracker(Protocol):
    async def is_online(self, user_id: int) -> bool: ...


class RealtimeChannel(Protocol):
    async def send_to_user(self, user_id: int, event_name: str, payload: dict[str, Any]) -> int: ...


def badge_filter(user_id: int, last_badge_seen_at: datetime | None) -> list:
    conditions = [Notification.user_id == user_id, Notification.is_read.is_(False)]
    if last_badge_seen_at is not None:
        conditions.append(Notification.created_at > last_badge_seen_at)
    return conditions


async def count_badge(session: AsyncSession, user_id: int, last_badge_seen_at: datetime | None) -> int:
    result = await session.execute(
        select(func.count(Notification.id)).where(*badge_filter(user_id, last_badge_seen_at))
    )
    return int(result.scalar_one())


class NotificationRouter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        presence: PresenceTracker,
        channel: RealtimeChannel,
        push_provider: PushProvider | None = None,
        catalog: MessageCatalog | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._presence = presence
        self._channel = channel
        self._push = push_provider or NullPushProvider()
        self._catalog = catalog or message_catalog

    def _render(
        self,
        message_key: str | None,
        variables: dict[str, Any] | None,
        locale: str | None,
        fallback_message: str | None,
        title: str,
    ) -> str:
        if message_key:
            try:
                rendered = self._catalog.render(message_key, variables, locale)
            except RenderError as exc:
                logger.warning("Render failed key=%s locale=%s error=%s", message_key, locale, exc)
                rendered = None
            except Exception:
                logger.exception("Message catalog crashed key=%s locale=%s", message_key, locale)
                rendered = None
            if rendered:
                return rendered
        return fallback_message or title

    async def dispatch(
        self,
        recipient_id: int,
        notification_type: NotificationTypeEnum,
        title: str,
        message_key: str | None = None,
        variables: dict[str, Any] | None = None,
        *,
        sender_id: int | None = None,
        message: str | None = None,
        related_id: int | None = None,
        related_wishlist_id: int | None = None,
    ) -> DispatchResult:
        async with transaction(self._session_factory, "notification dispatch") as session:
            recipient = await session.get(User, recipient_id)
            if recipient is None:
                raise NotFoundError("Recipient not found", user_id=recipient_id)

            notification = Notification(
                user_id=recipient_id,
                related_user_id=sender_id,
                type=NotificationTypeEnum(notification_type).value,
                title=title,
                message=self._render(message_key, variables, recipient.preferred_language, message, title),
                message_key=message_key,
                related_id=related_id,
                related_wishlist_id=related_wishlist_id,
                is_read=False,
                created_at=utcnow(),
            )
            session.add(notification)
            await session.flush()
            unread_count = await count_badge(session, recipient_id, recipient.last_badge_seen_at)
            device_token = recipient.device_token
            snapshot = NotificationPublic.model_validate(notification)

        logger.info(
            "Notification stored id=%s user_id=%s type=%s unread=%s",
            snapshot.id,
            recipient_id,
            snapshot.type,
            unread_count,
        )
        channel = await self._deliver(recipient_id, device_token, snapshot, unread_count)
        return DispatchResult(notification=snapshot, unread_count=unread_count, channel=channel)

    async def _deliver(
        self,
        recipient_id: int,
        device_token: str | None,
        snapshot: NotificationPublic,
        unread_count: int,
    ) -> Channel:
        try:
            online = await self._presence.is_online(recipient_id)
        except Exception:
            logger.exception("Presence lookup failed user_id=%s", recipient_id)
            online = False

        if online:
            try:
                delivered = await self._channel.send_to_user(
                    recipient_id,
                    "notification",
                    {"notification": snapshot.model_dump(mode="json"), "unreadCount": unread_count},
                )
            except Exception:
                logger.exception("Realtime delivery failed user_id=%s", recipient_id)
                delivered = 0
            if delivered:
                return "realtime"
            logger.info("Realtime delivery reached no socket user_id=%s, falling back to push", recipient_id)

        return await self._send_push(recipient_id, device_token, snapshot, unread_count)

    async def _send_push(
        self,
        recipient_id: int,
        device_token: str | None,
        snapshot: NotificationPublic,
        unread_count: int,
    ) -> Channel:
        if not device_token:
            logger.debug("No device token user_id=%s, skipping push", recipient_id)
            return "none"

        data = {
            "type": snapshot.type,
            "notificationId": str(snapshot.id),
            "unreadCount": str(unread_count),
        }
        if snapshot.related_id is not None:
            data["relatedId"] = str(snapshot.related_id)
        if snapshot.related_wishlist_id is not None:
            data["relatedWishlistId"] = str(snapshot.related_wishlist_id)
        push_message = PushMessage(title=snapshot.title, body=snapshot.message or snapshot.title, data=data)

        try:
            await self._push.send(device_token, push_message)
            logger.info("Push sent user_id=%s notification_id=%s", recipient_id, snapshot.id)
            return "push"
        except InvalidDeviceToken as exc:
            logger.warning("Invalid device token user_id=%s - removing token (%s)", recipient_id, exc)
            await self._clear_device_token(recipient_id, device_token)
        except DeliveryError as exc:
            logger.warning("Push delivery failed user_id=%s error=%s", recipient_id, exc)
        except Exception:
            logger.exception("Push provider crashed user_id=%s", recipient_id)
        return "none"

    async def _clear_device_token(self, user_id: int, device_token: str) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    # Only clear the token we tried; the device may have re-registered meanwhile
                    await session.execute(
                        update(User)
                        .where(User.id == user_id, User.device_token == device_token)
                        .values(device_token=None)
                    )
        except SQLAlchemyError:
            logger.exception("Failed to clear device token user_id=%s", user_id)

    async def publish_unread_count(self, user_id: int, unread_count: int | None = None) -> None:
        """Best-effort multi-device sync of the badge counter."""
        try:
            if unread_count is None:
                unread_count = await self.badge_unread_count(user_id)
            await self._channel.send_to_user(user_id, "unread_count_update", {"unreadCount": unread_count})
        except Exception:
            logger.exception("Failed to publish unread count user_id=%s", user_id)

    async def badge_unread_count(self, user_id: int) -> int:
        async with transaction(self._session_factory, "badge count") as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found", user_id=user_id)
            return await count_badge(session, user_id, user.last_badge_seen_at)

    async def dismiss_badge(self, user_id: int, at: datetime | None = None) -> BadgeState:
        seen_at = at or utcnow()
        async with transaction(self._session_factory, "dismiss badge") as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found", user_id=user_id)
            user.last_badge_seen_at = seen_at
            await session.flush()
            unread_count = await count_badge(session, user_id, seen_at)

        await self.publish_unread_count(user_id, unread_count)
        return BadgeState(last_badge_seen_at=seen_at, unread_count=unread_count)

    async def mark_read(self, user_id: int, notification_id: int) -> int:
        async with transaction(self._session_factory, "mark notification read") as session:
            result = await session.execute(
                select(Notification).where(
                    Notification.id == notification_id,
                    Notification.user_id == user_id,
                )
            )
            notification = result.scalar_one_or_none()
            if notification is None:
                raise NotFoundError("Notification not found", notification_id=notification_id)
            notification.is_read = True
            await session.flush()
            user = await session.get(User, user_id)
            unread_count = await count_badge(session, user_id, user.last_badge_seen_at if user else None)

        await self.publish_unread_count(user_id, unread_count)
        return unread_count

    async def mark_all_read(self, user_id: int) -> MarkAllReadResult:
        async with transaction(self._session_factory, "mark all notifications read") as session:
            result = await session.execute(
                update(Notification)
                .where(Notification.user_id == user_id, Notification.is_read.is_(False))
                .values(is_read=True)
            )
            updated = result.rowcount or 0

        await self.publish_unread_count(user_id, 0)
        return MarkAllReadResult(updated_count=updated, unread_count=0)

    async def delete_notification(self, user_id: int, notification_id: int) -> int:
        async with transaction(self._session_factory, "delete notification") as session:
            result = await session.execute(
                delete(Notification).where(
                    Notification.id == notification_id,
                    Notification.user_id == user_id,
                )
            )
            if not result.rowcount:
                raise NotFoundError("Notification not found", notification_id=notification_id)
            user = await session.get(User, user_id)
            unread_count = await count_badge(session, user_id, user.last_badge_seen_at if user else None)

        await self.publish_unread_count(user_id, unread_count)
        return unread_count

    async def list_notifications(
        self,
        user_id: int,
        read: bool | None = None,
        limit: int = 50,
        page: int = 1,
    ) -> NotificationPage:
        limit = max(1, min(limit, 100))
        page = max(1, page)
        conditions = [Notification.user_id == user_id]
        if read is not None:
            conditions.append(Notification.is_read.is_(read))

        async with transaction(self._session_factory, "list notifications") as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found", user_id=user_id)
            rows = await session.execute(
                select(Notification)
                .where(*conditions)
                .order_by(Notification.created_at.desc(), Notification.id.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            )
            notifications = [NotificationPublic.model_validate(n) for n in rows.scalars().all()]
            total_result = await session.execute(select(func.count(Notification.id)).where(*conditions))
            total = int(total_result.scalar_one())
            unread_count = await count_badge(session, user_id, user.last_badge_seen_at)

        return NotificationPage(
            count=len(notifications),
            total=total,
            unread_count=unread_count,
            data=notifications,
        )

    async def register_device(self, user_id: int, device_token: str | None) -> None:
        async with transaction(self._session_factory, "register device") as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found", user_id=user_id)
            user.device_token = device_token
        logger.info("Device token %s user_id=%s", "updated" if device_token else "removed", user_id)
