"""
Policy Routes
Leave policy table
"""
from fastapi import APIRouter, Depends
from typing import List

from lms.models.leave import LeaveType
from lms.models.policy import PolicyRules, PolicyUpdate
from lms.models.user import User
from lms.api.routes.auth import get_current_user
from lms.services.policy import policy_service


router = APIRouter()


@router.get("/", response_model=List[PolicyRules])
async def list_policies(current_user: User = Depends(get_current_user)):
    return await policy_service.list_rules()


@router.put("/{leave_type}", response_model=PolicyRules)
async def update_policy(
    leave_type: LeaveType,
    request: PolicyUpdate,
    current_user: User = Depends(get_current_user)
):
    """
    Update one leave type's rules (CEO, HR_ADMIN, HR_HEAD, SYSTEM_ADMIN)
    """
    return await policy_service.update_rule(
        current_user.role,
        leave_type,
        request.model_dump(exclude_unset=True),
        actor=current_user.email,
    )
