"""Audit logging for reservation and relationship changes."""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fastapi import Request


logger = logging.getLogger("wishlisty.audit")


class AuditAction(str, Enum):
    """Audit action types."""
    # Reservations
    RESERVATION_RESERVE = "reservation_reserve"
    RESERVATION_CANCEL = "reservation_cancel"
    RESERVATION_EXTEND = "reservation_extend"

    # Relationships
    UNFRIEND = "unfriend"
    BLOCK = "block"
    UNBLOCK = "unblock"

    # Notifications
    BADGE_DISMISS = "badge_dismiss"
    DEVICE_REGISTER = "device_register"


def audit_log(
    action: AuditAction,
    request: Request | None = None,
    user_id: int | str | None = None,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> None:
    """
    Log an audit event.

    Args:
        action: The action being performed
        request: FastAPI request object (for IP, user agent)
        user_id: ID of the user performing the action
        details: Additional details about the action
        success: Whether the action was successful
    """
    event: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action.value,
        "success": success,
    }

    if user_id is not None:
        event["user_id"] = str(user_id)

    if request:
        client_host = None
        if request.client:
            client_host = request.client.host

        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            client_host = forwarded.split(",")[0].strip()

        event["ip"] = client_host
        event["user_agent"] = request.headers.get("User-Agent", "")[:200]
        event["request_id"] = request.headers.get("X-Request-Id", "")

    if details:
        sanitized = {}
        for key, value in details.items():
            if key in ("password", "token", "device_token", "secret", "key", "authorization"):
                sanitized[key] = "***REDACTED***"
            else:
                sanitized[key] = value
        event["details"] = sanitized

    if success:
        logger.info("AUDIT: %s", event)
    else:
        logger.warning("AUDIT: %s", event)


def audit_reservation_action(
    action: AuditAction,
    request: Request,
    user_id: int,
    item_id: int,
    details: dict[str, Any] | None = None,
) -> None:
    """Log reservation operation."""
    event_details: dict[str, Any] = {"item_id": item_id}
    if details:
        event_details.update(details)
    audit_log(action, request=request, user_id=user_id, details=event_details)


def audit_relationship_action(
    action: AuditAction,
    request: Request,
    user_id: int,
    target_id: int,
    affected: dict[str, int] | None = None,
) -> None:
    """Log unfriend / block / unblock."""
    details: dict[str, Any] = {"target_id": target_id}
    if affected:
        details["affected"] = affected
    audit_log(action, request=request, user_id=user_id, details=details)
