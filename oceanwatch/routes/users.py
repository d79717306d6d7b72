"""
users.py — User administration routes.

Routes:
  PATCH /users/{user_id}/role — promote / demote a user (admin only)

A role change takes effect on the user's next request. Live realtime
connections of that user are moved to the new role room straight away.
"""

from datetime import datetime, timezone

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import APIRouter, Depends, HTTPException

from oceanwatch.core.database import get_db
from oceanwatch.models.user import RoleUpdate, UserOut
from oceanwatch.routes.auth import AdminUser, doc_to_user_out
from oceanwatch.routes.reports import HubDep

router = APIRouter(prefix="/users", tags=["users"])


@router.patch("/{user_id}/role", response_model=UserOut)
async def update_role(
    user_id: str,
    payload: RoleUpdate,
    admin: AdminUser,
    hub: HubDep,
    db=Depends(get_db),
):
    """Set a user's role."""
    if db is None:
        raise HTTPException(status_code=503, detail="Database unavailable")

    try:
        oid = ObjectId(user_id)
    except InvalidId:
        raise HTTPException(status_code=422, detail="Invalid user ID format")

    doc = await db["users"].find_one({"_id": oid})
    if not doc:
        raise HTTPException(status_code=404, detail="User not found")

    now = datetime.now(tz=timezone.utc)
    await db["users"].update_one(
        {"_id": oid},
        {"$set": {"role": payload.role, "updated_at": now}},
    )
    hub.change_role(user_id, payload.role)
    return doc_to_user_out({**doc, "role": payload.role, "updated_at": now})
