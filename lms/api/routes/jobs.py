"""
Job Routes
Cron-triggered accrual and lapse runs
"""
import hmac
from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel
from typing import Optional
from datetime import date

from lms.config import settings
from lms.core.calendar import local_today
from lms.core.rbac import Operation, can
from lms.models.user import User
from lms.api.routes.auth import decode_access_token
from lms.services.jobs import JobSummary, run_annual_lapse, run_monthly_accrual


router = APIRouter()

optional_oauth2 = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


class JobRequest(BaseModel):
    as_of: Optional[date] = None


async def authorize_job(
    token: Optional[str] = Depends(optional_oauth2),
    x_job_token: Optional[str] = Header(default=None),
) -> str:
    """Either the shared cron token or a SYSTEM_ADMIN bearer token"""
    if x_job_token and settings.JOB_TRIGGER_TOKEN and hmac.compare_digest(x_job_token, settings.JOB_TRIGGER_TOKEN):
        return "cron"

    if token:
        token_data = decode_access_token(token)
        if token_data:
            user = await User.find_one(User.employee_id == token_data.employee_id)
            if user and user.is_active and can(user.role, Operation.RUN_JOBS):
                return user.email

    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to run jobs")


@router.post("/accrual", response_model=JobSummary)
async def trigger_accrual(request: Optional[JobRequest] = None, triggered_by: str = Depends(authorize_job)):
    """
    Run monthly Earned Leave accrual for the month before as_of (default today)
    """
    as_of = (request.as_of if request else None) or local_today(settings.TIMEZONE)
    return await run_monthly_accrual(as_of, triggered_by)


@router.post("/lapse", response_model=JobSummary)
async def trigger_lapse(request: Optional[JobRequest] = None, triggered_by: str = Depends(authorize_job)):
    """
    Run the year-end lapse
    """
    as_of = (request.as_of if request else None) or local_today(settings.TIMEZONE)
    return await run_annual_lapse(as_of, triggered_by)
