from fastapi import APIRouter, Request, status

from wishlisty.api.deps import CurrentUser, TeardownDep
from wishlisty.core.audit import AuditAction, audit_relationship_action
from wishlisty.schemas.social import RelationshipPublic, TeardownResult

router = APIRouter(prefix="/users", tags=["relationships"])


@router.delete("/{user_id}/friend", response_model=TeardownResult)
async def unfriend(user_id: int, request: Request, current_user: CurrentUser, teardown: TeardownDep) -> TeardownResult:
    result = await teardown.unfriend(current_user.id, user_id)
    audit_relationship_action(AuditAction.UNFRIEND, request, current_user.id, user_id, result.affected)
    return result


@router.post("/{user_id}/block", response_model=TeardownResult)
async def block(user_id: int, request: Request, current_user: CurrentUser, teardown: TeardownDep) -> TeardownResult:
    result = await teardown.block(current_user.id, user_id)
    audit_relationship_action(AuditAction.BLOCK, request, current_user.id, user_id, result.affected)
    return result


@router.delete("/{user_id}/block", status_code=status.HTTP_204_NO_CONTENT)
async def unblock(user_id: int, request: Request, current_user: CurrentUser, teardown: TeardownDep) -> None:
    await teardown.unblock(current_user.id, user_id)
    audit_relationship_action(AuditAction.UNBLOCK, request, current_user.id, user_id)


@router.get("/{user_id}/relationship", response_model=RelationshipPublic)
async def relationship(user_id: int, current_user: CurrentUser, teardown: TeardownDep) -> RelationshipPublic:
    return await teardown.relationship_status(current_user.id, user_id)
