from typing import Annotated
import logging

from fastapi import Cookie, Depends, HTTPException, Request, status
from sqlalchemy import select

from wishlisty.core.security import decode_access_token
from wishlisty.models.models import User
from wishlisty.services.container import Services
from wishlisty.services.notifications import NotificationRouter
from wishlisty.services.reservations import ReservationLedger
from wishlisty.services.teardown import RelationshipTeardown


logger = logging.getLogger("wishlisty.auth")


def get_services(request: Request) -> Services:
    return request.app.state.services


ServicesDep = Annotated[Services, Depends(get_services)]


def get_ledger(services: ServicesDep) -> ReservationLedger:
    return services.ledger


def get_router(services: ServicesDep) -> NotificationRouter:
    return services.router


def get_teardown(services: ServicesDep) -> RelationshipTeardown:
    return services.teardown


def extract_token(request: Request, access_token: str | None) -> str | None:
    token = access_token
    if not token:
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    return token or None


async def load_user(services: Services, token: str) -> User | None:
    payload = decode_access_token(token)
    if not payload or "sub" not in payload:
        return None
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        return None
    async with services.session_factory() as session:
        result = await session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()


async def get_current_user(
    request: Request,
    services: ServicesDep,
    access_token: str | None = Cookie(default=None, alias="access_token"),
) -> User:
    token = extract_token(request, access_token)
    if not token:
        logger.info(
            "Auth token missing path=%s ip=%s",
            request.url.path,
            request.client.host if request.client else None,
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    try:
        user = await load_user(services, token)
    except Exception:
        logger.exception("get_current_user: DB error path=%s", request.url.path)
        raise HTTPException(status_code=500, detail="Database error") from None

    if not user:
        logger.info("Auth token invalid or user missing path=%s", request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return user


CurrentUser = Annotated[User, Depends(get_current_user)]
LedgerDep = Annotated[ReservationLedger, Depends(get_ledger)]
RouterDep = Annotated[NotificationRouter, Depends(get_router)]
TeardownDep = Annotated[RelationshipTeardown, Depends(get_teardown)]
