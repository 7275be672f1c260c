"""
Dashboard Routes
Counters for the employee and management dashboards
"""
from fastapi import APIRouter, Depends

from lms.config import settings
from lms.core.calendar import local_today, to_datetime
from lms.core.rbac import Operation, require
from lms.models.holiday import Holiday
from lms.models.leave import IN_APPROVAL_STATUSES, LeaveRequest, LeaveStatus
from lms.models.user import User
from lms.api.routes.auth import get_current_user
from lms.services.workflow import workflow


router = APIRouter()


@router.get("/overview")
async def get_dashboard_overview(current_user: User = Depends(get_current_user)):
    """
    Personal dashboard: own open requests, decisions waiting, upcoming holidays
    """
    today = to_datetime(local_today(settings.TIMEZONE))

    my_leaves = await workflow.list_for_requester(current_user)
    awaiting_me = await workflow.list_pending_for(current_user)
    upcoming_holidays = await Holiday.find(Holiday.date >= today).sort("date").limit(5).to_list()

    return {
        "my_pending": sum(1 for leave in my_leaves if leave.status in IN_APPROVAL_STATUSES),
        "my_returned": sum(1 for leave in my_leaves if leave.status == LeaveStatus.RETURNED),
        "awaiting_my_decision": len(awaiting_me),
        "upcoming_holidays": [
            {"name": h.name, "date": h.date.date().isoformat()} for h in upcoming_holidays
        ],
    }


@router.get("/summary")
async def get_dashboard_summary(current_user: User = Depends(get_current_user)):
    """
    Organisation-wide status breakdown and who is on leave today
    """
    require(current_user.role, Operation.VIEW_REPORTS)
    today = to_datetime(local_today(settings.TIMEZONE))

    breakdown = {}
    for status in LeaveStatus:
        breakdown[status.value] = await LeaveRequest.find(LeaveRequest.status == status).count()

    on_leave = await LeaveRequest.find(
        LeaveRequest.status == LeaveStatus.APPROVED,
        LeaveRequest.start_date <= today,
        LeaveRequest.end_date >= today,
    ).to_list()

    return {
        "status_breakdown": breakdown,
        "on_leave_today": [
            {
                "requester_name": leave.requester_name,
                "department": leave.department,
                "leave_type": leave.leave_type,
                "end_date": leave.end_date.date().isoformat(),
            }
            for leave in on_leave
        ],
    }
