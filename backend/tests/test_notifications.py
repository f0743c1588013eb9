from datetime import timedelta

import pytest

from wishlisty.core.errors import DeliveryError, InvalidDeviceToken, NotFoundError
from wishlisty.core.i18n import MessageCatalog
from wishlisty.models.models import Notification, NotificationTypeEnum, User
from wishlisty.services.notifications import NotificationRouter


@pytest.mark.anyio
async def test_online_recipient_gets_realtime_event(router, seed, presence, push):
    user = await seed.user("Ann", device_token="device-1")
    presence.online.add(user)

    result = await router.dispatch(
        user,
        NotificationTypeEnum.RESERVATION_REMINDER,
        "Reservation Reminder",
        "notif.reservation_reminder",
        {"itemName": "Lamp", "hours": 48},
        related_id=7,
    )

    assert result.channel == "realtime"
    assert result.unread_count == 1
    events = presence.events(user, "notification")
    assert len(events) == 1
    assert events[0]["unreadCount"] == 1
    assert events[0]["notification"]["id"] == result.notification.id
    assert push.sent == []


@pytest.mark.anyio
async def test_offline_recipient_gets_push_with_badge(router, seed, push):
    user = await seed.user("Ann", device_token="device-1")
    await seed.notification(user)

    result = await router.dispatch(
        user,
        NotificationTypeEnum.ITEM_RESERVED,
        "Item Reserved",
        "notif.item_reserved",
        {"itemName": "Lamp", "wishlistName": "Home"},
        related_id=3,
        related_wishlist_id=9,
    )

    assert result.channel == "push"
    token, message = push.sent[0]
    assert token == "device-1"
    assert message.title == "Item Reserved"
    assert message.body == 'Someone has reserved "Lamp" from your wishlist "Home"'
    assert message.data == {
        "type": "item_reserved",
        "notificationId": str(result.notification.id),
        "unreadCount": "2",
        "relatedId": "3",
        "relatedWishlistId": "9",
    }


@pytest.mark.anyio
async def test_socket_that_rejects_send_falls_back_to_push(router, seed, presence, push):
    user = await seed.user("Ann", device_token="device-1")
    presence.online.add(user)
    presence.accepting = False

    result = await router.dispatch(user, NotificationTypeEnum.EVENT_UPDATE, "Event Updated")

    assert result.channel == "push"
    assert len(push.sent) == 1


@pytest.mark.anyio
async def test_invalid_token_is_cleared(router, seed, push):
    user = await seed.user("Ann", device_token="stale")
    push.error = InvalidDeviceToken("gone")

    result = await router.dispatch(user, NotificationTypeEnum.FRIEND_REQUEST, "Friend Request")

    assert result.channel == "none"
    assert (await seed.get(User, user)).device_token is None
    assert await seed.get(Notification, result.notification.id) is not None


@pytest.mark.anyio
async def test_delivery_failure_keeps_notification_and_token(router, seed, push):
    user = await seed.user("Ann", device_token="device-1")
    push.error = DeliveryError("gateway down")

    result = await router.dispatch(user, NotificationTypeEnum.FRIEND_REQUEST, "Friend Request")

    assert result.channel == "none"
    assert (await seed.get(User, user)).device_token == "device-1"
    assert await seed.get(Notification, result.notification.id) is not None


@pytest.mark.anyio
async def test_no_token_and_offline_means_no_delivery(router, seed, push):
    user = await seed.user("Ann")
    result = await router.dispatch(user, NotificationTypeEnum.FRIEND_REQUEST, "Friend Request")
    assert result.channel == "none"
    assert push.sent == []


@pytest.mark.anyio
async def test_dispatch_to_unknown_recipient(router):
    with pytest.raises(NotFoundError):
        await router.dispatch(404, NotificationTypeEnum.FRIEND_REQUEST, "Friend Request")


@pytest.mark.anyio
async def test_message_uses_recipient_locale(router, seed):
    user = await seed.user("Layla", preferred_language="ar")
    result = await router.dispatch(
        user,
        NotificationTypeEnum.RESERVATION_REMINDER,
        "Reservation Reminder",
        "notif.reservation_reminder",
        {"itemName": "Lamp", "hours": 48},
    )
    assert "Lamp" in result.notification.message
    assert not result.notification.message.startswith("Your reservation")


@pytest.mark.anyio
async def test_render_failure_falls_back_to_message_then_title(session_factory, seed, presence, push):
    catalog = MessageCatalog({"en": {"notif.broken": "Hello {missing}"}}, default_locale="en")
    router = NotificationRouter(session_factory, presence, presence, push, catalog)
    user = await seed.user("Ann")

    with_message = await router.dispatch(
        user,
        NotificationTypeEnum.EVENT_UPDATE,
        "Event Updated",
        "notif.broken",
        {},
        message="Plain text",
    )
    assert with_message.notification.message == "Plain text"

    title_only = await router.dispatch(user, NotificationTypeEnum.EVENT_UPDATE, "Event Updated", "notif.unknown")
    assert title_only.notification.message == "Event Updated"


# ── Badge ────────────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_dismiss_badge_counts_only_newer_unread(router, seed, presence, now):
    user = await seed.user("Ann")
    await seed.notification(user, created_at=now - timedelta(hours=2))
    await seed.notification(user, created_at=now - timedelta(hours=1), is_read=True)
    presence.online.add(user)

    state = await router.dispatch(user, NotificationTypeEnum.FRIEND_REQUEST, "Friend Request")
    assert state.unread_count == 2

    badge = await router.dismiss_badge(user, at=now + timedelta(minutes=1))
    assert badge.unread_count == 0
    assert presence.events(user, "unread_count_update")[-1] == {"unreadCount": 0}

    await seed.notification(user, created_at=now + timedelta(minutes=2))
    await seed.notification(user, created_at=now + timedelta(minutes=3), is_read=True)
    assert await router.badge_unread_count(user) == 1


@pytest.mark.anyio
async def test_read_and_delete_publish_counts(router, seed, presence):
    user = await seed.user("Ann")
    presence.online.add(user)
    first = await seed.notification(user)
    second = await seed.notification(user)

    assert await router.mark_read(user, first) == 1
    assert await router.delete_notification(user, second) == 0
    assert [p["unreadCount"] for p in presence.events(user, "unread_count_update")] == [1, 0]

    with pytest.raises(NotFoundError):
        await router.mark_read(user, second)


@pytest.mark.anyio
async def test_notifications_of_other_users_are_invisible(router, seed):
    ann = await seed.user("Ann")
    bob = await seed.user("Bob")
    bobs = await seed.notification(bob)

    with pytest.raises(NotFoundError):
        await router.mark_read(ann, bobs)
    with pytest.raises(NotFoundError):
        await router.delete_notification(ann, bobs)


@pytest.mark.anyio
async def test_mark_all_read(router, seed):
    user = await seed.user("Ann")
    for _ in range(3):
        await seed.notification(user)

    result = await router.mark_all_read(user)
    assert result.updated_count == 3
    assert result.unread_count == 0
    assert await router.badge_unread_count(user) == 0


@pytest.mark.anyio
async def test_list_notifications_filters_and_pages(router, seed, now):
    user = await seed.user("Ann")
    for minutes in range(5):
        await seed.notification(user, created_at=now + timedelta(minutes=minutes), is_read=minutes % 2 == 0)

    page = await router.list_notifications(user, limit=2, page=1)
    assert page.total == 5
    assert page.count == 2
    assert page.data[0].created_at > page.data[1].created_at
    assert page.unread_count == 2

    unread = await router.list_notifications(user, read=False)
    assert unread.total == 2


@pytest.mark.anyio
async def test_register_and_clear_device(router, seed):
    user = await seed.user("Ann")
    await router.register_device(user, "device-9")
    assert (await seed.get(User, user)).device_token == "device-9"
    await router.register_device(user, None)
    assert (await seed.get(User, user)).device_token is None
