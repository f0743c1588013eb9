from fastapi import APIRouter, Query, Request, status

from wishlisty.api.deps import CurrentUser, RouterDep
from wishlisty.core.audit import AuditAction, audit_log
from wishlisty.schemas.notification import (
    BadgeState,
    DeviceRegistration,
    MarkAllReadResult,
    NotificationPage,
    UnreadCount,
)

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationPage)
async def list_notifications(
    current_user: CurrentUser,
    notifications: RouterDep,
    read: bool | None = None,
    limit: int = Query(default=50, ge=1, le=100),
    page: int = Query(default=1, ge=1),
) -> NotificationPage:
    return await notifications.list_notifications(current_user.id, read=read, limit=limit, page=page)


@router.get("/unread-count", response_model=UnreadCount)
async def unread_count(current_user: CurrentUser, notifications: RouterDep) -> UnreadCount:
    return UnreadCount(unread_count=await notifications.badge_unread_count(current_user.id))


@router.post("/dismiss-badge", response_model=BadgeState)
async def dismiss_badge(request: Request, current_user: CurrentUser, notifications: RouterDep) -> BadgeState:
    state = await notifications.dismiss_badge(current_user.id)
    audit_log(AuditAction.BADGE_DISMISS, request=request, user_id=current_user.id)
    return state


@router.post("/read-all", response_model=MarkAllReadResult)
async def mark_all_read(current_user: CurrentUser, notifications: RouterDep) -> MarkAllReadResult:
    return await notifications.mark_all_read(current_user.id)


@router.post("/{notification_id}/read", response_model=UnreadCount)
async def mark_read(notification_id: int, current_user: CurrentUser, notifications: RouterDep) -> UnreadCount:
    return UnreadCount(unread_count=await notifications.mark_read(current_user.id, notification_id))


@router.delete("/{notification_id}", response_model=UnreadCount)
async def delete_notification(
    notification_id: int,
    current_user: CurrentUser,
    notifications: RouterDep,
) -> UnreadCount:
    return UnreadCount(unread_count=await notifications.delete_notification(current_user.id, notification_id))


@router.put("/device", status_code=status.HTTP_204_NO_CONTENT)
async def register_device(
    payload: DeviceRegistration,
    request: Request,
    current_user: CurrentUser,
    notifications: RouterDep,
) -> None:
    await notifications.register_device(current_user.id, payload.device_token)
    audit_log(
        AuditAction.DEVICE_REGISTER,
        request=request,
        user_id=current_user.id,
        details={"device_token": payload.device_token, "cleared": payload.device_token is None},
    )
