"""
Audit Routes
Read-only audit trail
"""
from fastapi import APIRouter, Depends, Query
from typing import List, Optional

from lms.core.rbac import Operation, require
from lms.models.audit import AuditLog
from lms.models.user import User
from lms.api.routes.auth import get_current_user

router = APIRouter()


@router.get("/", response_model=List[AuditLog])
async def list_audit_entries(
    actor: Optional[str] = None,
    target: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    current_user: User = Depends(get_current_user)
):
    """Audit entries, newest first, filtered by actor/target/action"""
    require(current_user.role, Operation.VIEW_AUDIT)

    query = {}
    if actor:
        query["actor"] = actor
    if target:
        query["target"] = target
    if action:
        query["action"] = action

    return await AuditLog.find(query).sort("-created_at").limit(limit).to_list()
