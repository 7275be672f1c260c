"""
Holiday Routes
Admin management and public listing
"""
from fastapi import APIRouter, Depends
from typing import List, Optional
from beanie import PydanticObjectId

from lms.core.calendar import month_bounds, to_datetime
from lms.core.exceptions import NotFound
from lms.core.rbac import Operation, require
from lms.models.holiday import Holiday, HolidayCreate
from lms.models.user import User
from lms.api.routes.auth import get_current_user

router = APIRouter()

@router.get("/", response_model=List[Holiday])
async def get_holidays(year: Optional[int] = None, current_user: User = Depends(get_current_user)):
    """Holidays sorted by date, optionally for one year"""
    query = Holiday.find()
    if year:
        first, _ = month_bounds(year, 1)
        _, last = month_bounds(year, 12)
        query = Holiday.find(Holiday.date >= to_datetime(first), Holiday.date <= to_datetime(last))
    return await query.sort("date").to_list()

@router.post("/", response_model=Holiday)
async def create_holiday(
    request: HolidayCreate,
    current_user: User = Depends(get_current_user)
):
    """Create a holiday (system admin only)"""
    require(current_user.role, Operation.MANAGE_HOLIDAYS)

    holiday = Holiday(
        name=request.name,
        date=to_datetime(request.date),
        type=request.type,
        description=request.description,
        created_by=current_user.email,
    )
    await holiday.insert()
    return holiday

@router.delete("/{holiday_id}")
async def delete_holiday(
    holiday_id: PydanticObjectId,
    current_user: User = Depends(get_current_user)
):
    """Delete a holiday (system admin only)"""
    require(current_user.role, Operation.MANAGE_HOLIDAYS)

    holiday = await Holiday.get(holiday_id)
    if not holiday:
        raise NotFound("Holiday not found")

    await holiday.delete()
    return {"message": "Holiday deleted successfully"}
