"""
Balance Routes
Per user leave balances for a year
"""
from fastapi import APIRouter, Depends
from typing import List, Optional
from beanie import PydanticObjectId

from lms.config import settings
from lms.core.calendar import local_today
from lms.core.exceptions import NotFound
from lms.core.rbac import Operation, require
from lms.models.balance import BalanceResponse
from lms.models.leave import LeaveType
from lms.models.user import User
from lms.api.routes.auth import get_current_user
from lms.services.ledger import ledger


router = APIRouter()


async def _balances(user_id: PydanticObjectId, year: int) -> List[BalanceResponse]:
    rows = []
    for leave_type in LeaveType:
        balance = await ledger.peek(user_id, leave_type, year)
        rows.append(BalanceResponse(
            leave_type=balance.leave_type,
            year=balance.year,
            opening=balance.opening,
            accrued=balance.accrued,
            used=balance.used,
            closing=balance.closing,
            remaining=balance.remaining,
        ))
    return rows


@router.get("/me", response_model=List[BalanceResponse])
async def get_my_balances(
    year: Optional[int] = None,
    current_user: User = Depends(get_current_user)
):
    """
    Balances of the current user (defaults to the current year)
    """
    return await _balances(current_user.id, year or local_today(settings.TIMEZONE).year)


@router.get("/{user_id}", response_model=List[BalanceResponse])
async def get_user_balances(
    user_id: PydanticObjectId,
    year: Optional[int] = None,
    current_user: User = Depends(get_current_user)
):
    """
    Balances of any user (HR, CEO, system admin)
    """
    if user_id != current_user.id:
        require(current_user.role, Operation.VIEW_BALANCES)
    user = await User.get(user_id)
    if not user:
        raise NotFound("User not found")
    return await _balances(user.id, year or local_today(settings.TIMEZONE).year)
