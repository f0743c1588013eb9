from typing import Literal

from pydantic import BaseModel


RelationshipStatus = Literal["none", "pending_sent", "pending_received", "friends", "blocked"]


class RelationshipPublic(BaseModel):
    user_id: int
    target_id: int
    status: RelationshipStatus


class TeardownResult(BaseModel):
    action: Literal["unfriend", "block"]
    user_id: int
    target_id: int
    affected: dict[str, int]
