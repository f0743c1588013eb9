import os
import warnings
from datetime import datetime
from typing import Any

import pytest

# Set environment variables BEFORE importing app modules
os.environ["POSTGRES_DSN"] = "sqlite+aiosqlite:///file:wishlisty_tests?mode=memory&cache=shared&uri=true"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-32-chars-minimum!!"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["REDIS_DSN"] = ""
os.environ["PUSH_GATEWAY_URL"] = ""

warnings.filterwarnings("ignore", category=DeprecationWarning)

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from wishlisty.core.config import settings
from wishlisty.core.i18n import message_catalog
from wishlisty.core.security import create_access_token
from wishlisty.core.sweep_lock import SweepLock
from wishlisty.core.timeutils import utcnow
from wishlisty.db.session import Base
from wishlisty.main import app
from wishlisty.models.models import (
    Event,
    EventInvitation,
    EventInvitee,
    FriendRequest,
    Friendship,
    Item,
    Notification,
    Reservation,
    User,
    Wishlist,
)
from wishlisty.realtime.manager import UserConnectionManager
from wishlisty.services.container import build_services
from wishlisty.services.notifications import NotificationRouter
from wishlisty.services.push import PushMessage
from wishlisty.services.reservations import ReservationLedger


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakePresence:
    """Presence tracker and realtime channel in one, recording every send."""

    def __init__(self) -> None:
        self.online: set[int] = set()
        self.accepting = True
        self.sent: list[tuple[int, str, dict[str, Any]]] = []

    async def is_online(self, user_id: int) -> bool:
        return user_id in self.online

    async def send_to_user(self, user_id: int, event_name: str, payload: dict[str, Any]) -> int:
        if user_id not in self.online or not self.accepting:
            return 0
        self.sent.append((user_id, event_name, payload))
        return 1

    def events(self, user_id: int, event_name: str) -> list[dict[str, Any]]:
        return [payload for uid, name, payload in self.sent if uid == user_id and name == event_name]


class FakePush:
    def __init__(self) -> None:
        self.sent: list[tuple[str, PushMessage]] = []
        self.error: Exception | None = None

    async def send(self, device_token: str, message: PushMessage) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append((device_token, message))


class Seeder:
    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory
        self._counter = 0

    async def add(self, obj):
        async with self._session_factory() as session:
            async with session.begin():
                session.add(obj)
            return obj

    async def user(self, name: str = "User", **kwargs) -> int:
        self._counter += 1
        user = await self.add(User(email=f"user{self._counter}@example.com", name=name, **kwargs))
        return user.id

    async def wishlist(self, owner_id: int, title: str = "Birthday") -> int:
        wishlist = await self.add(Wishlist(owner_id=owner_id, title=title))
        return wishlist.id

    async def item(self, wishlist_id: int, title: str = "Book", quantity: int = 1, **kwargs) -> int:
        item = await self.add(Item(wishlist_id=wishlist_id, title=title, quantity=quantity, **kwargs))
        return item.id

    async def owned_item(self, owner_id: int, **kwargs) -> int:
        return await self.item(await self.wishlist(owner_id), **kwargs)

    async def friends(self, a: int, b: int) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add_all([Friendship(user_id=a, friend_id=b), Friendship(user_id=b, friend_id=a)])

    async def friend_request(self, from_user_id: int, to_user_id: int, status: str = "pending") -> int:
        request = await self.add(FriendRequest(from_user_id=from_user_id, to_user_id=to_user_id, status=status))
        return request.id

    async def reservation(self, item_id: int, reserver_id: int, quantity: int = 1, status: str = "reserved") -> int:
        reservation = await self.add(
            Reservation(item_id=item_id, reserver_id=reserver_id, quantity=quantity, status=status)
        )
        return reservation.id

    async def event(self, creator_id: int, date: datetime, name: str = "Party", status: str = "upcoming") -> int:
        event = await self.add(Event(creator_id=creator_id, name=name, date=date, status=status))
        return event.id

    async def invite(self, event_id: int, inviter_id: int, invitee_id: int, status: str = "pending") -> int:
        async with self._session_factory() as session:
            async with session.begin():
                invitation = EventInvitation(
                    event_id=event_id,
                    inviter_id=inviter_id,
                    invitee_id=invitee_id,
                    status=status,
                )
                session.add(invitation)
                session.add(EventInvitee(event_id=event_id, user_id=invitee_id))
            return invitation.id

    async def notification(self, user_id: int, created_at: datetime | None = None, **kwargs) -> int:
        kwargs.setdefault("type", "friend_request")
        kwargs.setdefault("title", "Hello")
        notification = await self.add(
            Notification(user_id=user_id, created_at=created_at or utcnow(), **kwargs)
        )
        return notification.id

    async def get(self, model, ident):
        async with self._session_factory() as session:
            return await session.get(model, ident)


@pytest.fixture
async def session_factory(tmp_path, anyio_backend):
    db_path = tmp_path / "test.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    factory = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield factory
    await engine.dispose()


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
def presence() -> FakePresence:
    return FakePresence()


@pytest.fixture
def push() -> FakePush:
    return FakePush()


@pytest.fixture
def router(session_factory, presence, push) -> NotificationRouter:
    return NotificationRouter(session_factory, presence, presence, push, message_catalog)


@pytest.fixture
def ledger(session_factory, router) -> ReservationLedger:
    return ReservationLedger(session_factory, router, settings)


@pytest.fixture
def now() -> datetime:
    return utcnow().replace(microsecond=0)


@pytest.fixture
def services(session_factory, push):
    services = build_services(
        session_factory,
        settings,
        presence=UserConnectionManager(),
        push_provider=push,
        sweep_lock=SweepLock(redis_dsn=""),
    )
    app.state.services = services
    yield services
    app.state.services = None


@pytest.fixture
async def async_client(services):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def auth_headers(user_id: int) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(str(user_id))}"}
