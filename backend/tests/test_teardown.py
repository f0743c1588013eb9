from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from wishlisty.core.errors import AlreadyBlocked, NotBlocked, NotFoundError, PersistenceError, ValidationError
from wishlisty.models.models import (
    EventInvitation,
    EventInvitee,
    FriendRequest,
    Friendship,
    Item,
    Notification,
    Reservation,
    UserBlock,
)
from wishlisty.services.teardown import RelationshipTeardown, TeardownStep, unfriend_steps


@pytest.fixture
def teardown(session_factory, router) -> RelationshipTeardown:
    return RelationshipTeardown(session_factory, router)


async def _rows(session_factory, model, *conditions):
    async with session_factory() as session:
        result = await session.execute(select(model).where(*conditions))
        return list(result.scalars().all())


@pytest.mark.anyio
async def test_unfriend_cancels_reservation_and_clears_checkpoint(teardown, seed, session_factory, now):
    a = await seed.user("A")
    b = await seed.user("B")
    await seed.friends(a, b)
    item_id = await seed.owned_item(b, reserved_until=now + timedelta(days=3), extension_count=1)
    reservation_id = await seed.reservation(item_id, a)

    result = await teardown.unfriend(a, b)

    assert result.action == "unfriend"
    assert result.affected["friendship"] == 2
    assert result.affected["reservations"] == 1
    assert result.affected["checkpoints"] == 1
    assert await _rows(session_factory, Friendship) == []
    assert (await seed.get(Reservation, reservation_id)).status == "cancelled"
    item = await seed.get(Item, item_id)
    assert item.reserved_until is None
    assert item.extension_count == 0


@pytest.mark.anyio
async def test_unfriend_works_both_ways_and_skips_purchased(teardown, seed, now):
    a = await seed.user("A")
    b = await seed.user("B")
    c = await seed.user("C")
    await seed.friends(a, b)
    b_item = await seed.owned_item(b, reserved_until=now + timedelta(days=3))
    a_item = await seed.owned_item(a, reserved_until=now + timedelta(days=3))
    bought = await seed.owned_item(b, is_purchased=True, reserved_until=now + timedelta(days=3))
    shared = await seed.owned_item(b, quantity=2, reserved_until=now + timedelta(days=3))

    a_on_b = await seed.reservation(b_item, a)
    b_on_a = await seed.reservation(a_item, b)
    a_on_bought = await seed.reservation(bought, a)
    a_on_shared = await seed.reservation(shared, a)
    c_on_shared = await seed.reservation(shared, c)

    await teardown.unfriend(a, b)

    assert (await seed.get(Reservation, a_on_b)).status == "cancelled"
    assert (await seed.get(Reservation, b_on_a)).status == "cancelled"
    assert (await seed.get(Reservation, a_on_bought)).status == "reserved"
    assert (await seed.get(Reservation, a_on_shared)).status == "cancelled"
    assert (await seed.get(Reservation, c_on_shared)).status == "reserved"
    # Someone else still holds the shared item, so its checkpoint stays
    assert (await seed.get(Item, shared)).reserved_until is not None
    assert (await seed.get(Item, bought)).reserved_until is not None


@pytest.mark.anyio
async def test_unfriend_cleans_requests_events_and_notifications(teardown, seed, session_factory, now):
    a = await seed.user("A")
    b = await seed.user("B")
    c = await seed.user("C")
    await seed.friends(a, b)
    accepted = await seed.friend_request(a, b, status="accepted")
    await seed.friend_request(b, a, status="pending")
    other_request = await seed.friend_request(c, a, status="pending")

    party = await seed.event(a, now + timedelta(days=10))
    declined_party = await seed.event(b, now + timedelta(days=10))
    other_party = await seed.event(a, now + timedelta(days=10))
    await seed.invite(party, a, b, status="accepted")
    declined = await seed.invite(declined_party, b, a, status="declined")
    await seed.invite(other_party, a, c)

    exchanged = await seed.notification(b, related_user_id=a)
    reverse = await seed.notification(a, related_user_id=b)
    unrelated = await seed.notification(a, related_user_id=c)

    result = await teardown.unfriend(a, b)

    assert result.affected["accepted_requests"] == 1
    assert result.affected["pending_requests"] == 1
    assert (await seed.get(FriendRequest, accepted)).status == "rejected"
    assert await seed.get(FriendRequest, other_request) is not None

    invitations = await _rows(session_factory, EventInvitation)
    assert {(i.event_id, i.invitee_id) for i in invitations} == {(declined_party, a), (other_party, c)}
    assert (await seed.get(EventInvitation, declined)).status == "declined"
    invitees = await _rows(session_factory, EventInvitee)
    assert {(i.event_id, i.user_id) for i in invitees} == {(other_party, c)}

    assert await seed.get(Notification, exchanged) is None
    assert await seed.get(Notification, reverse) is None
    assert await seed.get(Notification, unrelated) is not None


@pytest.mark.anyio
async def test_unfriend_is_idempotent(teardown, seed):
    a = await seed.user("A")
    b = await seed.user("B")
    await seed.friends(a, b)

    await teardown.unfriend(a, b)
    again = await teardown.unfriend(a, b)
    assert all(count == 0 for count in again.affected.values())


@pytest.mark.anyio
async def test_teardown_publishes_badge_to_both_users(teardown, seed, presence):
    a = await seed.user("A")
    b = await seed.user("B")
    presence.online.update({a, b})
    await seed.notification(a, related_user_id=b)

    await teardown.unfriend(a, b)

    assert presence.events(a, "unread_count_update") == [{"unreadCount": 0}]
    assert presence.events(b, "unread_count_update") == [{"unreadCount": 0}]


@pytest.mark.anyio
async def test_failing_step_rolls_back_whole_cascade(teardown, seed, session_factory, now):
    a = await seed.user("A")
    b = await seed.user("B")
    await seed.friends(a, b)
    item_id = await seed.owned_item(b, reserved_until=now + timedelta(days=3))
    reservation_id = await seed.reservation(item_id, a)

    async def explode(session, ctx):
        raise OperationalError("DELETE", {}, Exception("disk I/O error"))

    steps = unfriend_steps() + [TeardownStep("explode", explode)]
    with pytest.raises(PersistenceError):
        await teardown.run_cascade("unfriend", a, b, steps)

    assert len(await _rows(session_factory, Friendship)) == 2
    assert (await seed.get(Reservation, reservation_id)).status == "reserved"
    assert (await seed.get(Item, item_id)).reserved_until is not None


@pytest.mark.anyio
async def test_self_and_unknown_targets(teardown, seed):
    a = await seed.user("A")
    with pytest.raises(ValidationError):
        await teardown.unfriend(a, a)
    with pytest.raises(ValidationError):
        await teardown.block(a, a)
    with pytest.raises(NotFoundError):
        await teardown.unfriend(a, 999)
    with pytest.raises(NotFoundError):
        await teardown.unblock(a, 999)


# ── Block / unblock ──────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_block_cancels_only_blockers_reservations(teardown, seed, session_factory, now):
    a = await seed.user("A")
    b = await seed.user("B")
    await seed.friends(a, b)
    await seed.friend_request(b, a, status="pending")
    b_item = await seed.owned_item(b, reserved_until=now + timedelta(days=3))
    a_item = await seed.owned_item(a, reserved_until=now + timedelta(days=3))
    a_on_b = await seed.reservation(b_item, a)
    b_on_a = await seed.reservation(a_item, b)

    result = await teardown.block(a, b)

    assert result.affected["block"] == 1
    assert (await seed.get(Reservation, a_on_b)).status == "cancelled"
    assert (await seed.get(Reservation, b_on_a)).status == "reserved"
    assert (await seed.get(Item, b_item)).reserved_until is None
    assert await _rows(session_factory, Friendship) == []
    assert await _rows(session_factory, FriendRequest) == []
    assert await seed.get(UserBlock, (a, b)) is not None


@pytest.mark.anyio
async def test_block_twice_fails_without_side_effects(teardown, seed, session_factory):
    a = await seed.user("A")
    b = await seed.user("B")
    await teardown.block(a, b)
    await seed.friend_request(b, a, status="pending")

    with pytest.raises(AlreadyBlocked):
        await teardown.block(a, b)
    assert len(await _rows(session_factory, FriendRequest)) == 1


@pytest.mark.anyio
async def test_unblock(teardown, seed):
    a = await seed.user("A")
    b = await seed.user("B")
    with pytest.raises(NotBlocked):
        await teardown.unblock(a, b)

    await teardown.block(a, b)
    assert (await teardown.relationship_status(a, b)).status == "blocked"
    assert (await teardown.relationship_status(b, a)).status == "blocked"

    await teardown.unblock(a, b)
    assert (await teardown.relationship_status(a, b)).status == "none"


@pytest.mark.anyio
async def test_relationship_status(teardown, seed):
    a = await seed.user("A")
    b = await seed.user("B")
    c = await seed.user("C")
    await seed.friends(a, b)
    await seed.friend_request(a, c)

    assert (await teardown.relationship_status(a, b)).status == "friends"
    assert (await teardown.relationship_status(a, c)).status == "pending_sent"
    assert (await teardown.relationship_status(c, a)).status == "pending_received"
    assert (await teardown.relationship_status(b, c)).status == "none"
