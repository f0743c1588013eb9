from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wishlisty.core.config import Settings, settings
from wishlisty.core.i18n import MessageCatalog, message_catalog
from wishlisty.core.sweep_lock import SweepLock
from wishlisty.realtime.manager import UserConnectionManager, manager
from wishlisty.services.notifications import NotificationRouter
from wishlisty.services.push import PushProvider, build_push_provider
from wishlisty.services.reservations import ReservationLedger
from wishlisty.services.scheduler import SweepScheduler
from wishlisty.services.teardown import RelationshipTeardown


@dataclass
class Services:
    session_factory: async_sessionmaker[AsyncSession]
    presence: UserConnectionManager
    router: NotificationRouter
    ledger: ReservationLedger
    teardown: RelationshipTeardown
    scheduler: SweepScheduler
    sweep_lock: SweepLock


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    config: Settings = settings,
    presence: UserConnectionManager | None = None,
    push_provider: PushProvider | None = None,
    catalog: MessageCatalog | None = None,
    sweep_lock: SweepLock | None = None,
) -> Services:
    """Wire the services shared by request handlers and the sweep scheduler."""
    presence = presence or manager
    router = NotificationRouter(
        session_factory,
        presence=presence,
        channel=presence,
        push_provider=push_provider or build_push_provider(config),
        catalog=catalog or message_catalog,
    )
    ledger = ReservationLedger(session_factory, router, config)
    lock = sweep_lock or SweepLock(redis_dsn=config.redis_dsn, ttl_seconds=config.sweep_lock_ttl_seconds)
    return Services(
        session_factory=session_factory,
        presence=presence,
        router=router,
        ledger=ledger,
        teardown=RelationshipTeardown(session_factory, router),
        scheduler=SweepScheduler(ledger, router, session_factory, config, lock),
        sweep_lock=lock,
    )
