"""Reservation ledger: per (item, reserver) state with quantity accounting.

Each item carries one aggregate checkpoint (``reserved_until``) for all of
its active reservations. The checkpoint is opened by the first reservation,
pushed by extensions and cleared once no active reservation is left, when
the hourly sweep expires it, or by a relationship teardown.

The reserve path reads the quantity held by other reservers and then writes
(check-then-act). Two reservers racing for the last units can both succeed;
the unique (item, reserver) constraint only serializes writes of one pair.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wishlisty.core.config import Settings, settings
from wishlisty.core.errors import (
    ExtensionLimitReached,
    Forbidden,
    InvalidState,
    NoActiveReservation,
    NothingToCancel,
    NotFoundError,
    QuantityExceeded,
    StateConflict,
    ValidationError,
)
from wishlisty.core.timeutils import as_utc, utcnow
from wishlisty.db.session import transaction
from wishlisty.models.models import (
    Item,
    NotificationTypeEnum,
    Reservation,
    ReservationStatusEnum,
    User,
    Wishlist,
)
from wishlisty.schemas.reservation import (
    ExtensionOutcome,
    ReservationList,
    ReservationOutcome,
    ReservationPublic,
    ReservedItemPublic,
    SweepSummary,
)
from wishlisty.services.notifications import NotificationRouter


logger = logging.getLogger("wishlisty.reservations")

RESERVED = ReservationStatusEnum.RESERVED.value
CANCELLED = ReservationStatusEnum.CANCELLED.value


class ReservationIntent(str, Enum):
    RESERVE = "reserve"
    CANCEL = "cancel"
    TOGGLE = "toggle"

    @classmethod
    def from_action(cls, action: "str | ReservationIntent | None") -> "ReservationIntent":
        if action is None:
            return cls.TOGGLE
        try:
            return cls(action)
        except ValueError:
            raise ValidationError(f"Unknown reservation action {action!r}") from None

    def resolve(self, has_active: bool) -> "ReservationIntent":
        if self is ReservationIntent.TOGGLE:
            return ReservationIntent.CANCEL if has_active else ReservationIntent.RESERVE
        return self


@dataclass
class _StatusChange:
    intent: ReservationIntent
    reservation: Reservation
    status_changed: bool
    remaining: int


@dataclass
class _SweptItem:
    item_id: int
    title: str
    wishlist_id: int
    owner_id: int
    owner_name: str
    reserver_ids: list[int] = field(default_factory=list)


def clear_checkpoint(item: Item) -> None:
    item.reserved_until = None
    item.reservation_reminder_sent = False
    item.extension_count = 0


async def active_quantity(session: AsyncSession, item_id: int, exclude_reserver_id: int | None = None) -> int:
    conditions = [Reservation.item_id == item_id, Reservation.status == RESERVED]
    if exclude_reserver_id is not None:
        conditions.append(Reservation.reserver_id != exclude_reserver_id)
    result = await session.execute(
        select(func.coalesce(func.sum(Reservation.quantity), 0)).where(*conditions)
    )
    return int(result.scalar_one())


async def release_idle_checkpoints(session: AsyncSession, item_ids: Iterable[int]) -> int:
    """Clear the checkpoint of every given item that has no active reservation left."""
    ids = sorted(set(item_ids))
    if not ids:
        return 0
    still_active = select(Reservation.item_id).where(
        Reservation.item_id.in_(ids),
        Reservation.status == RESERVED,
    )
    result = await session.execute(
        update(Item)
        .where(Item.id.in_(ids), Item.id.not_in(still_active))
        .values(reserved_until=None, reservation_reminder_sent=False, extension_count=0)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


class ReservationLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        router: NotificationRouter,
        config: Settings = settings,
    ) -> None:
        self._session_factory = session_factory
        self._router = router
        self._hold = timedelta(days=config.reservation_hold_days)
        self._max_extensions = config.reservation_max_extensions
        self._reminder_horizon = timedelta(hours=config.reservation_reminder_hours)

    async def _load_item(self, session: AsyncSession, item_id: int) -> tuple[Item, Wishlist]:
        row = (
            await session.execute(
                select(Item, Wishlist).join(Wishlist, Item.wishlist_id == Wishlist.id).where(Item.id == item_id)
            )
        ).first()
        if row is None:
            raise NotFoundError("Item not found", item_id=item_id)
        return row[0], row[1]

    async def set_or_toggle_reservation(
        self,
        item_id: int,
        reserver_id: int,
        quantity: int = 1,
        action: "str | ReservationIntent | None" = None,
        now: datetime | None = None,
    ) -> ReservationOutcome:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        intent = ReservationIntent.from_action(action)
        now = now or utcnow()

        async with transaction(self._session_factory, "reservation change") as session:
            item, wishlist = await self._load_item(session, item_id)
            if wishlist.owner_id == reserver_id:
                raise Forbidden("You cannot reserve your own items")
            if item.is_received:
                raise InvalidState("Cannot reserve an item that has been received")

            existing = (
                await session.execute(
                    select(Reservation).where(
                        Reservation.item_id == item_id,
                        Reservation.reserver_id == reserver_id,
                    )
                )
            ).scalar_one_or_none()
            has_active = existing is not None and existing.status == RESERVED

            concrete = intent.resolve(has_active)
            if concrete is ReservationIntent.CANCEL:
                change = await self._apply_cancel(session, item, existing if has_active else None)
            else:
                change = await self._apply_reserve(session, item, existing, reserver_id, quantity, now)

            outcome = ReservationOutcome(
                reservation_id=change.reservation.id,
                item_id=item.id,
                quantity=change.reservation.quantity,
                status=ReservationStatusEnum(change.reservation.status),
                intent=change.intent.value,
                remaining=change.remaining,
                reserved_until=as_utc(item.reserved_until),
            )
            owner_id = wishlist.owner_id
            item_title = item.title
            wishlist_id = wishlist.id
            wishlist_title = wishlist.title

        logger.info(
            "Reservation %s item_id=%s reserver_id=%s quantity=%s remaining=%s",
            change.intent.value,
            item_id,
            reserver_id,
            outcome.quantity,
            outcome.remaining,
        )
        if change.status_changed:
            await self._notify_owner(change.intent, owner_id, item_id, item_title, wishlist_id, wishlist_title)
        return outcome

    async def _apply_cancel(
        self,
        session: AsyncSession,
        item: Item,
        active: Reservation | None,
    ) -> _StatusChange:
        if active is None:
            raise NothingToCancel("No active reservation to cancel")
        active.status = CANCELLED
        await session.flush()

        total_active = await active_quantity(session, item.id)
        if total_active == 0:
            clear_checkpoint(item)
            await session.flush()
        return _StatusChange(
            intent=ReservationIntent.CANCEL,
            reservation=active,
            status_changed=True,
            remaining=max(0, item.quantity - total_active),
        )

    async def _apply_reserve(
        self,
        session: AsyncSession,
        item: Item,
        existing: Reservation | None,
        reserver_id: int,
        quantity: int,
        now: datetime,
    ) -> _StatusChange:
        reserved_by_others = await active_quantity(session, item.id, exclude_reserver_id=reserver_id)
        available = max(0, item.quantity - reserved_by_others)
        if quantity > available:
            raise QuantityExceeded(remaining=available)

        if existing is None:
            reservation = Reservation(
                item_id=item.id,
                reserver_id=reserver_id,
                quantity=quantity,
                status=RESERVED,
                created_at=now,
                updated_at=now,
            )
            session.add(reservation)
            status_changed = True
        else:
            reservation = existing
            status_changed = existing.status != RESERVED
            reservation.status = RESERVED
            reservation.quantity = quantity

        if item.reserved_until is None:
            item.reserved_until = now + self._hold
            item.reservation_reminder_sent = False
            item.extension_count = 0

        try:
            await session.flush()
        except IntegrityError:
            raise StateConflict("Reservation changed concurrently, please retry") from None

        return _StatusChange(
            intent=ReservationIntent.RESERVE,
            reservation=reservation,
            status_changed=status_changed,
            remaining=max(0, available - quantity),
        )

    async def _notify_owner(
        self,
        intent: ReservationIntent,
        owner_id: int,
        item_id: int,
        item_title: str,
        wishlist_id: int,
        wishlist_title: str,
    ) -> None:
        if intent is ReservationIntent.RESERVE:
            notification_type, title, key = NotificationTypeEnum.ITEM_RESERVED, "Item Reserved", "notif.item_reserved"
        else:
            notification_type, title, key = NotificationTypeEnum.ITEM_UNRESERVED, "Item Unreserved", "notif.item_unreserved"
        try:
            # The reserver stays anonymous to the owner
            await self._router.dispatch(
                owner_id,
                notification_type,
                title,
                key,
                {"itemName": item_title, "wishlistName": wishlist_title},
                sender_id=None,
                related_id=item_id,
                related_wishlist_id=wishlist_id,
            )
        except Exception as e:
            logger.warning("Failed to notify owner_id=%s about item_id=%s: %s", owner_id, item_id, e)

    async def extend_reservation(
        self,
        item_id: int,
        reserver_id: int,
        now: datetime | None = None,
    ) -> ExtensionOutcome:
        now = now or utcnow()
        async with transaction(self._session_factory, "reservation extension") as session:
            item, _ = await self._load_item(session, item_id)
            active = (
                await session.execute(
                    select(Reservation).where(
                        Reservation.item_id == item_id,
                        Reservation.reserver_id == reserver_id,
                        Reservation.status == RESERVED,
                    )
                )
            ).scalar_one_or_none()
            if active is None:
                raise NoActiveReservation("You have no active reservation on this item")
            if (item.extension_count or 0) >= self._max_extensions:
                raise ExtensionLimitReached(
                    f"Reservation can be extended at most {self._max_extensions} time(s)",
                    max_extensions=self._max_extensions,
                )

            current = as_utc(item.reserved_until)
            base = current if current is not None and current > now else now
            item.reserved_until = base + self._hold
            item.reservation_reminder_sent = False
            item.extension_count = (item.extension_count or 0) + 1
            outcome = ExtensionOutcome(
                item_id=item.id,
                reserved_until=item.reserved_until,
                extension_count=item.extension_count,
            )

        logger.info(
            "Reservation extended item_id=%s reserver_id=%s until=%s count=%s",
            item_id,
            reserver_id,
            outcome.reserved_until.isoformat(),
            outcome.extension_count,
        )
        return outcome

    async def list_reservations(
        self,
        reserver_id: int,
        status: ReservationStatusEnum = ReservationStatusEnum.RESERVED,
    ) -> ReservationList:
        async with transaction(self._session_factory, "list reservations") as session:
            rows = await session.execute(
                select(Reservation, Item, Wishlist)
                .join(Item, Reservation.item_id == Item.id)
                .join(Wishlist, Item.wishlist_id == Wishlist.id)
                .where(Reservation.reserver_id == reserver_id, Reservation.status == status.value)
                .order_by(Reservation.created_at.desc(), Reservation.id.desc())
            )
            reservations = [
                ReservedItemPublic(
                    reservation=ReservationPublic.model_validate(reservation),
                    item_title=item.title,
                    wishlist_id=wishlist.id,
                    owner_id=wishlist.owner_id,
                    reserved_until=as_utc(item.reserved_until),
                    is_received=item.is_received,
                    is_purchased=item.is_purchased,
                )
                for reservation, item, wishlist in rows.all()
            ]
        return ReservationList(count=len(reservations), reservations=reservations)

    # ── Sweeps ────────────────────────────────────────────────────────────

    async def _swept_item(self, session: AsyncSession, item_id: int) -> _SweptItem:
        row = (
            await session.execute(
                select(Item.title, Wishlist.id, Wishlist.owner_id, User.name)
                .join(Wishlist, Item.wishlist_id == Wishlist.id)
                .join(User, Wishlist.owner_id == User.id)
                .where(Item.id == item_id)
            )
        ).one()
        title, wishlist_id, owner_id, owner_name = row
        return _SweptItem(
            item_id=item_id,
            title=title or "Item",
            wishlist_id=wishlist_id,
            owner_id=owner_id,
            owner_name=owner_name or "Owner",
        )

    async def _expire_item(self, item_id: int, now: datetime) -> _SweptItem | None:
        async with transaction(self._session_factory, "reservation expiry") as session:
            # Claiming the checkpoint keeps a concurrent sweep from expiring the item twice
            claim = await session.execute(
                update(Item)
                .where(Item.id == item_id, Item.reserved_until.is_not(None), Item.reserved_until <= now)
                .values(reserved_until=None, reservation_reminder_sent=False, extension_count=0)
                .execution_options(synchronize_session=False)
            )
            if not claim.rowcount:
                return None

            swept = await self._swept_item(session, item_id)
            active = (
                await session.execute(
                    select(Reservation).where(Reservation.item_id == item_id, Reservation.status == RESERVED)
                )
            ).scalars().all()
            for reservation in active:
                reservation.status = CANCELLED
                swept.reserver_ids.append(reservation.reserver_id)
        return swept

    async def expire_due(self, now: datetime | None = None) -> SweepSummary:
        now = now or utcnow()
        async with transaction(self._session_factory, "load expired items") as session:
            rows = await session.execute(
                select(Item.id)
                .where(Item.reserved_until.is_not(None), Item.reserved_until <= now)
                .order_by(Item.id)
            )
            item_ids = list(rows.scalars().all())

        summary = SweepSummary()
        for item_id in item_ids:
            try:
                swept = await self._expire_item(item_id, now)
            except Exception:
                summary.failed += 1
                logger.exception("Reservation expiry failed item_id=%s", item_id)
                continue
            if swept is None:
                continue
            summary.processed += 1
            for reserver_id in swept.reserver_ids:
                try:
                    await self._router.dispatch(
                        reserver_id,
                        NotificationTypeEnum.RESERVATION_EXPIRED,
                        "Reservation Expired",
                        "notif.reservation_expired",
                        {"itemName": swept.title, "ownerName": swept.owner_name},
                        sender_id=swept.owner_id,
                        related_id=swept.item_id,
                        related_wishlist_id=swept.wishlist_id,
                    )
                    summary.notified += 1
                except Exception:
                    logger.exception(
                        "Failed to send expiration notice reserver_id=%s item_id=%s",
                        reserver_id,
                        item_id,
                    )

        if item_ids:
            logger.info(
                "Expiry sweep items=%s processed=%s notified=%s failed=%s",
                len(item_ids),
                summary.processed,
                summary.notified,
                summary.failed,
            )
        return summary

    async def _claim_reminder(self, item_id: int, now: datetime, deadline: datetime) -> _SweptItem | None:
        async with transaction(self._session_factory, "reservation reminder") as session:
            claim = await session.execute(
                update(Item)
                .where(
                    Item.id == item_id,
                    Item.reservation_reminder_sent.is_(False),
                    Item.reserved_until > now,
                    Item.reserved_until <= deadline,
                )
                .values(reservation_reminder_sent=True)
                .execution_options(synchronize_session=False)
            )
            if not claim.rowcount:
                return None

            swept = await self._swept_item(session, item_id)
            rows = await session.execute(
                select(Reservation.reserver_id).where(
                    Reservation.item_id == item_id,
                    Reservation.status == RESERVED,
                )
            )
            swept.reserver_ids.extend(rows.scalars().all())
        return swept

    async def remind_approaching(
        self,
        now: datetime | None = None,
        horizon: timedelta | None = None,
    ) -> SweepSummary:
        now = now or utcnow()
        horizon = horizon if horizon is not None else self._reminder_horizon
        deadline = now + horizon
        hours = int(horizon.total_seconds() // 3600)
        async with transaction(self._session_factory, "load items due soon") as session:
            rows = await session.execute(
                select(Item.id)
                .where(
                    Item.reserved_until > now,
                    Item.reserved_until <= deadline,
                    Item.reservation_reminder_sent.is_(False),
                )
                .order_by(Item.id)
            )
            item_ids = list(rows.scalars().all())

        summary = SweepSummary()
        for item_id in item_ids:
            try:
                swept = await self._claim_reminder(item_id, now, deadline)
            except Exception:
                summary.failed += 1
                logger.exception("Reservation reminder failed item_id=%s", item_id)
                continue
            if swept is None:
                continue
            summary.processed += 1
            for reserver_id in swept.reserver_ids:
                try:
                    await self._router.dispatch(
                        reserver_id,
                        NotificationTypeEnum.RESERVATION_REMINDER,
                        "Reservation Reminder",
                        "notif.reservation_reminder",
                        {"itemName": swept.title, "hours": hours},
                        sender_id=None,
                        related_id=swept.item_id,
                        related_wishlist_id=swept.wishlist_id,
                    )
                    summary.notified += 1
                except Exception:
                    logger.exception(
                        "Failed to send reminder reserver_id=%s item_id=%s",
                        reserver_id,
                        item_id,
                    )

        if item_ids:
            logger.info(
                "Reminder sweep items=%s processed=%s notified=%s failed=%s",
                len(item_ids),
                summary.processed,
                summary.notified,
                summary.failed,
            )
        return summary
