from fastapi import APIRouter, Request

from wishlisty.api.deps import CurrentUser, LedgerDep
from wishlisty.core.audit import AuditAction, audit_reservation_action
from wishlisty.models.models import ReservationStatusEnum
from wishlisty.schemas.reservation import (
    ExtensionOutcome,
    ReservationList,
    ReservationOutcome,
    ReservationRequest,
)
from wishlisty.services.reservations import ReservationIntent

router = APIRouter(tags=["reservations"])


@router.post("/items/{item_id}/reservation", response_model=ReservationOutcome)
async def set_reservation(
    item_id: int,
    request: Request,
    current_user: CurrentUser,
    ledger: LedgerDep,
    payload: ReservationRequest | None = None,
) -> ReservationOutcome:
    payload = payload or ReservationRequest()
    outcome = await ledger.set_or_toggle_reservation(
        item_id,
        current_user.id,
        quantity=payload.quantity,
        action=ReservationIntent.from_action(payload.action),
    )
    action = AuditAction.RESERVATION_RESERVE if outcome.intent == "reserve" else AuditAction.RESERVATION_CANCEL
    audit_reservation_action(
        action,
        request,
        current_user.id,
        item_id,
        details={"quantity": outcome.quantity, "remaining": outcome.remaining},
    )
    return outcome


@router.post("/items/{item_id}/reservation/extend", response_model=ExtensionOutcome)
async def extend_reservation(
    item_id: int,
    request: Request,
    current_user: CurrentUser,
    ledger: LedgerDep,
) -> ExtensionOutcome:
    outcome = await ledger.extend_reservation(item_id, current_user.id)
    audit_reservation_action(
        AuditAction.RESERVATION_EXTEND,
        request,
        current_user.id,
        item_id,
        details={"extension_count": outcome.extension_count},
    )
    return outcome


@router.get("/reservations", response_model=ReservationList)
async def list_reservations(
    current_user: CurrentUser,
    ledger: LedgerDep,
    status: ReservationStatusEnum = ReservationStatusEnum.RESERVED,
) -> ReservationList:
    return await ledger.list_reservations(current_user.id, status)
