"""
Scheduled Jobs
Monthly Earned Leave accrual and year-end lapse.

Each user is processed independently: one user's failure is logged and
reported in the summary, and the batch carries on.
"""
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from lms.config import settings
from lms.core.calendar import inclusive_days, month_bounds, overlap_days, previous_month, to_date, to_datetime
from lms.core.rbac import Role
from lms.models.audit import AuditEntry
from lms.models.leave import LeaveRequest, LeaveStatus, LeaveType
from lms.models.user import User
from lms.services.ledger import BalanceLedger, OverflowResult, ledger
from lms.services.policy import PolicyService, policy_service
from lms.services.sink import AuditSink, sink

logger = logging.getLogger(__name__)


class UserJobResult(BaseModel):
    user_id: str
    email: str
    outcome: str  # accrued, lapsed, skipped, failed
    reason: Optional[str] = None
    details: Dict[str, Any] = {}


class JobSummary(BaseModel):
    job: str
    as_of: date
    period: str
    triggered_by: Optional[str] = None
    results: List[UserJobResult] = []
    accrued: List[UserJobResult] = []
    lapsed: List[UserJobResult] = []
    skipped: List[UserJobResult] = []
    failed: List[UserJobResult] = []
    counts: Dict[str, int] = Field(default_factory=lambda: {"accrued": 0, "lapsed": 0, "skipped": 0, "failed": 0})

    def add(self, result: UserJobResult) -> None:
        self.results.append(result)
        getattr(self, result.outcome).append(result)
        self.counts[result.outcome] += 1

    @property
    def total(self) -> int:
        return len(self.results)


def duty_days(user: User, leaves: List[LeaveRequest], year: int, month: int) -> int:
    """Days in the month the user was employed and not on approved leave"""
    first, last = month_bounds(year, month)
    start = max(first, to_date(user.join_date))
    end = min(last, to_date(user.retirement_date)) if user.retirement_date else last
    if end < start:
        return 0

    on_leave = sum(
        overlap_days(to_date(leave.start_date), to_date(leave.end_date), start, end)
        for leave in leaves
    )
    return max(inclusive_days(start, end) - on_leave, 0)


async def _employees() -> List[User]:
    return await User.find(User.is_active == True, User.role != Role.SYSTEM_ADMIN).to_list()  # noqa: E712


class JobRunner:
    """Batch balance jobs, triggered externally (cron or the jobs API)"""

    def __init__(
        self,
        balances: BalanceLedger = ledger,
        policies: PolicyService = policy_service,
        audit: AuditSink = sink,
        system_actor: str = settings.SYSTEM_ACTOR_EMAIL,
        accrual_days: float = settings.EL_ACCRUAL_PER_MONTH,
    ):
        self.ledger = balances
        self.policies = policies
        self.sink = audit
        self.system_actor = system_actor
        self.accrual_days = accrual_days

    async def _audit_overflow(self, user: User, year: int, overflow: Optional[OverflowResult], reason: str) -> None:
        if overflow is None:
            return
        await self.sink.record_audit(AuditEntry(
            actor=self.system_actor,
            action="EL_OVERFLOW_TO_SPECIAL",
            target=user.email,
            details={"year": year, "reason": reason, **overflow.model_dump()},
        ))

    async def run_monthly_accrual(self, as_of: date, triggered_by: Optional[str] = None) -> JobSummary:
        """Accrue Earned Leave for the calendar month before ``as_of``"""
        year, month = previous_month(as_of)
        month_key = f"{year:04d}-{month:02d}"
        summary = JobSummary(job="monthly_accrual", as_of=as_of, period=month_key, triggered_by=triggered_by)
        first, last = month_bounds(year, month)
        logger.info("Monthly accrual for %s started by %s", month_key, triggered_by or "scheduler")

        for user in await _employees():
            try:
                summary.add(await self._accrue_user(user, year, month, month_key, first, last))
            except Exception as e:
                logger.exception("Accrual failed for %s", user.email)
                summary.add(UserJobResult(user_id=str(user.id), email=user.email, outcome="failed", reason=str(e)))

        logger.info("Monthly accrual for %s finished: %s", month_key, summary.counts)
        return summary

    async def _accrue_user(self, user: User, year: int, month: int, month_key: str, first: date, last: date) -> UserJobResult:
        leaves = await LeaveRequest.find(
            LeaveRequest.requester_id == user.id,
            LeaveRequest.status == LeaveStatus.APPROVED,
            LeaveRequest.start_date <= to_datetime(last),
            LeaveRequest.end_date >= to_datetime(first),
        ).to_list()
        days_on_duty = duty_days(user, leaves, year, month)
        if days_on_duty == 0:
            return UserJobResult(user_id=str(user.id), email=user.email, outcome="skipped", reason="no_duty_days")

        result = await self.ledger.accrue(user.id, year, month_key, self.accrual_days)
        if result.already_accrued:
            return UserJobResult(user_id=str(user.id), email=user.email, outcome="skipped", reason="already_accrued")

        await self.sink.record_audit(AuditEntry(
            actor=self.system_actor,
            action="EL_ACCRUED",
            target=user.email,
            details={
                "month": month_key,
                "days": result.accrued,
                "duty_days": days_on_duty,
                "balance_after": result.balance_after,
            },
        ))
        await self._audit_overflow(user, year, result.overflow, "monthly_accrual")
        return UserJobResult(
            user_id=str(user.id),
            email=user.email,
            outcome="accrued",
            details={"days": result.accrued, "balance_after": result.balance_after},
        )

    async def run_annual_lapse(self, as_of: date, triggered_by: Optional[str] = None) -> JobSummary:
        """Year-end lapse; on 31 December the current year closes, otherwise the previous one"""
        year = as_of.year if (as_of.month, as_of.day) == (12, 31) else as_of.year - 1
        summary = JobSummary(job="annual_lapse", as_of=as_of, period=str(year), triggered_by=triggered_by)
        logger.info("Annual lapse for %d started by %s", year, triggered_by or "scheduler")

        rules = await self.policies.list_rules()
        lapse_types = [r.leave_type for r in rules if r.lapses_at_year_end or r.leave_type == LeaveType.EARNED]

        for user in await _employees():
            try:
                summary.add(await self._lapse_user(user, year, lapse_types))
            except Exception as e:
                logger.exception("Lapse failed for %s", user.email)
                summary.add(UserJobResult(user_id=str(user.id), email=user.email, outcome="failed", reason=str(e)))

        logger.info("Annual lapse for %d finished: %s", year, summary.counts)
        return summary

    async def _lapse_user(self, user: User, year: int, lapse_types: List[LeaveType]) -> UserJobResult:
        lapsed: Dict[str, float] = {}
        for leave_type in lapse_types:
            result = await self.ledger.lapse(user.id, leave_type, year)
            if result.lapsed > 0:
                lapsed[leave_type.value] = result.lapsed
                await self.sink.record_audit(AuditEntry(
                    actor=self.system_actor,
                    action="BALANCE_LAPSED",
                    target=user.email,
                    details={
                        "year": year,
                        "leave_type": leave_type.value,
                        "lapsed": result.lapsed,
                        "balance_before": result.balance_before,
                    },
                ))
            await self._audit_overflow(user, year, result.overflow, "annual_lapse")

        if not lapsed:
            return UserJobResult(user_id=str(user.id), email=user.email, outcome="skipped", reason="nothing_to_lapse")
        return UserJobResult(user_id=str(user.id), email=user.email, outcome="lapsed", details={"lapsed": lapsed})


job_runner = JobRunner()


async def run_monthly_accrual(as_of: date, triggered_by: Optional[str] = None) -> JobSummary:
    return await job_runner.run_monthly_accrual(as_of, triggered_by)


async def run_annual_lapse(as_of: date, triggered_by: Optional[str] = None) -> JobSummary:
    return await job_runner.run_annual_lapse(as_of, triggered_by)
