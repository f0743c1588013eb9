"""Relationship teardown cascades (unfriend, block) and block removal.

A cascade is an ordered list of named steps executed in one transaction.
Every step is idempotent and returns the number of rows it touched, so a
retried cascade converges and the counts can be reported back to callers.
"""

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wishlisty.core.errors import AlreadyBlocked, NotBlocked, NotFoundError, ValidationError
from wishlisty.core.timeutils import utcnow
from wishlisty.db.session import transaction
from wishlisty.models.models import (
    Event,
    EventInvitation,
    EventInvitee,
    FriendRequest,
    FriendRequestStatusEnum,
    Friendship,
    InvitationStatusEnum,
    Item,
    Notification,
    Reservation,
    ReservationStatusEnum,
    User,
    UserBlock,
    Wishlist,
)
from wishlisty.schemas.social import RelationshipPublic, RelationshipStatus, TeardownResult
from wishlisty.services.notifications import NotificationRouter
from wishlisty.services.reservations import release_idle_checkpoints


logger = logging.getLogger("wishlisty.relationships")

OPEN_INVITATION_STATUSES = (
    InvitationStatusEnum.PENDING.value,
    InvitationStatusEnum.ACCEPTED.value,
    InvitationStatusEnum.MAYBE.value,
)


@dataclass
class CascadeContext:
    user_id: int
    target_id: int
    touched_item_ids: set[int] = field(default_factory=set)


StepFn = Callable[[AsyncSession, CascadeContext], Awaitable[int]]


@dataclass(frozen=True)
class TeardownStep:
    name: str
    run: StepFn


def _pair(column_a, column_b, a: int, b: int):
    return or_(and_(column_a == a, column_b == b), and_(column_a == b, column_b == a))


async def remove_friendship(session: AsyncSession, ctx: CascadeContext) -> int:
    result = await session.execute(
        delete(Friendship).where(_pair(Friendship.user_id, Friendship.friend_id, ctx.user_id, ctx.target_id))
    )
    return result.rowcount or 0


async def reject_accepted_requests(session: AsyncSession, ctx: CascadeContext) -> int:
    result = await session.execute(
        update(FriendRequest)
        .where(
            _pair(FriendRequest.from_user_id, FriendRequest.to_user_id, ctx.user_id, ctx.target_id),
            FriendRequest.status == FriendRequestStatusEnum.ACCEPTED.value,
        )
        .values(status=FriendRequestStatusEnum.REJECTED.value, updated_at=utcnow())
    )
    return result.rowcount or 0


async def purge_pending_requests(session: AsyncSession, ctx: CascadeContext) -> int:
    result = await session.execute(
        delete(FriendRequest).where(
            _pair(FriendRequest.from_user_id, FriendRequest.to_user_id, ctx.user_id, ctx.target_id),
            FriendRequest.status == FriendRequestStatusEnum.PENDING.value,
        )
    )
    return result.rowcount or 0


def _events_created_by(user_id: int):
    return select(Event.id).where(Event.creator_id == user_id)


async def delete_event_invitations(session: AsyncSession, ctx: CascadeContext) -> int:
    result = await session.execute(
        delete(EventInvitation).where(
            EventInvitation.status.in_(OPEN_INVITATION_STATUSES),
            or_(
                and_(
                    EventInvitation.invitee_id == ctx.target_id,
                    EventInvitation.event_id.in_(_events_created_by(ctx.user_id)),
                ),
                and_(
                    EventInvitation.invitee_id == ctx.user_id,
                    EventInvitation.event_id.in_(_events_created_by(ctx.target_id)),
                ),
            ),
        )
    )
    return result.rowcount or 0


async def strip_event_invitees(session: AsyncSession, ctx: CascadeContext) -> int:
    result = await session.execute(
        delete(EventInvitee).where(
            or_(
                and_(
                    EventInvitee.user_id == ctx.target_id,
                    EventInvitee.event_id.in_(_events_created_by(ctx.user_id)),
                ),
                and_(
                    EventInvitee.user_id == ctx.user_id,
                    EventInvitee.event_id.in_(_events_created_by(ctx.target_id)),
                ),
            )
        )
    )
    return result.rowcount or 0


async def _cancel_reservations(
    session: AsyncSession,
    ctx: CascadeContext,
    reserver_id: int,
    owner_id: int,
) -> int:
    rows = await session.execute(
        select(Reservation.id, Reservation.item_id)
        .join(Item, Reservation.item_id == Item.id)
        .join(Wishlist, Item.wishlist_id == Wishlist.id)
        .where(
            Reservation.reserver_id == reserver_id,
            Reservation.status == ReservationStatusEnum.RESERVED.value,
            Wishlist.owner_id == owner_id,
            Item.is_purchased.is_(False),
        )
    )
    found = rows.all()
    if not found:
        return 0
    await session.execute(
        update(Reservation)
        .where(Reservation.id.in_([reservation_id for reservation_id, _ in found]))
        .values(status=ReservationStatusEnum.CANCELLED.value, updated_at=utcnow())
    )
    ctx.touched_item_ids.update(item_id for _, item_id in found)
    return len(found)


async def cancel_mutual_reservations(session: AsyncSession, ctx: CascadeContext) -> int:
    cancelled = await _cancel_reservations(session, ctx, ctx.user_id, ctx.target_id)
    cancelled += await _cancel_reservations(session, ctx, ctx.target_id, ctx.user_id)
    return cancelled


async def cancel_own_reservations(session: AsyncSession, ctx: CascadeContext) -> int:
    return await _cancel_reservations(session, ctx, ctx.user_id, ctx.target_id)


async def release_checkpoints(session: AsyncSession, ctx: CascadeContext) -> int:
    return await release_idle_checkpoints(session, ctx.touched_item_ids)


async def purge_exchanged_notifications(session: AsyncSession, ctx: CascadeContext) -> int:
    result = await session.execute(
        delete(Notification).where(
            _pair(Notification.user_id, Notification.related_user_id, ctx.user_id, ctx.target_id)
        )
    )
    return result.rowcount or 0


async def add_block(session: AsyncSession, ctx: CascadeContext) -> int:
    existing = await session.get(UserBlock, (ctx.user_id, ctx.target_id))
    if existing is not None:
        return 0
    session.add(UserBlock(blocker_id=ctx.user_id, blocked_id=ctx.target_id, created_at=utcnow()))
    await session.flush()
    return 1


def unfriend_steps() -> list[TeardownStep]:
    return [
        TeardownStep("friendship", remove_friendship),
        TeardownStep("accepted_requests", reject_accepted_requests),
        TeardownStep("pending_requests", purge_pending_requests),
        TeardownStep("event_invitations", delete_event_invitations),
        TeardownStep("event_invitees", strip_event_invitees),
        TeardownStep("reservations", cancel_mutual_reservations),
        TeardownStep("checkpoints", release_checkpoints),
        TeardownStep("notifications", purge_exchanged_notifications),
    ]


def block_steps() -> list[TeardownStep]:
    return [
        TeardownStep("friendship", remove_friendship),
        TeardownStep("accepted_requests", reject_accepted_requests),
        TeardownStep("pending_requests", purge_pending_requests),
        TeardownStep("reservations", cancel_own_reservations),
        TeardownStep("checkpoints", release_checkpoints),
        TeardownStep("block", add_block),
    ]


class RelationshipTeardown:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        router: NotificationRouter | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._router = router

    async def _check_target(self, session: AsyncSession, user_id: int, target_id: int) -> None:
        if user_id == target_id:
            raise ValidationError("You cannot target yourself")
        if await session.get(User, target_id) is None:
            raise NotFoundError("User not found", user_id=target_id)

    async def run_cascade(
        self,
        action: str,
        user_id: int,
        target_id: int,
        steps: Sequence[TeardownStep],
        precheck: StepFn | None = None,
    ) -> TeardownResult:
        ctx = CascadeContext(user_id=user_id, target_id=target_id)
        affected: dict[str, int] = {}
        async with transaction(self._session_factory, action) as session:
            await self._check_target(session, user_id, target_id)
            if precheck is not None:
                await precheck(session, ctx)
            for step in steps:
                affected[step.name] = affected.get(step.name, 0) + await step.run(session, ctx)

        logger.info("Teardown %s user_id=%s target_id=%s affected=%s", action, user_id, target_id, affected)
        if self._router is not None:
            await self._router.publish_unread_count(user_id)
            await self._router.publish_unread_count(target_id)
        return TeardownResult(action=action, user_id=user_id, target_id=target_id, affected=affected)

    async def unfriend(self, user_id: int, target_id: int) -> TeardownResult:
        return await self.run_cascade("unfriend", user_id, target_id, unfriend_steps())

    async def block(self, user_id: int, target_id: int) -> TeardownResult:
        return await self.run_cascade("block", user_id, target_id, block_steps(), precheck=self._ensure_not_blocked)

    async def _ensure_not_blocked(self, session: AsyncSession, ctx: CascadeContext) -> int:
        if await session.get(UserBlock, (ctx.user_id, ctx.target_id)) is not None:
            raise AlreadyBlocked("User is already blocked")
        return 0

    async def unblock(self, user_id: int, target_id: int) -> None:
        async with transaction(self._session_factory, "unblock") as session:
            await self._check_target(session, user_id, target_id)
            result = await session.execute(
                delete(UserBlock).where(UserBlock.blocker_id == user_id, UserBlock.blocked_id == target_id)
            )
            if not result.rowcount:
                raise NotBlocked("User is not blocked")
        logger.info("Unblocked user_id=%s target_id=%s", user_id, target_id)

    async def relationship_status(self, user_id: int, target_id: int) -> RelationshipPublic:
        async with transaction(self._session_factory, "relationship status") as session:
            await self._check_target(session, user_id, target_id)
            status = await self._status(session, user_id, target_id)
        return RelationshipPublic(user_id=user_id, target_id=target_id, status=status)

    async def _status(self, session: AsyncSession, user_id: int, target_id: int) -> RelationshipStatus:
        blocked = await session.execute(
            select(UserBlock.blocker_id).where(_pair(UserBlock.blocker_id, UserBlock.blocked_id, user_id, target_id))
        )
        if blocked.first() is not None:
            return "blocked"
        if await session.get(Friendship, (user_id, target_id)) is not None:
            return "friends"
        pending = await session.execute(
            select(FriendRequest.from_user_id).where(
                _pair(FriendRequest.from_user_id, FriendRequest.to_user_id, user_id, target_id),
                FriendRequest.status == FriendRequestStatusEnum.PENDING.value,
            )
        )
        sender = pending.scalars().first()
        if sender is None:
            return "none"
        return "pending_sent" if sender == user_id else "pending_received"
