from datetime import date, datetime

from lms.core.exceptions import InternalError
from lms.core.rbac import Role
from lms.models.audit import AuditLog
from lms.models.leave import LeaveRequest, LeaveStatus, LeaveType
from lms.services.jobs import JobRunner, duty_days, run_annual_lapse, run_monthly_accrual
from lms.services.ledger import BalanceLedger, ledger


async def approved_leave(user, start, end):
    leave = LeaveRequest(
        requester_id=user.id,
        requester_name=user.name,
        department=user.department,
        leave_type=LeaveType.EARNED,
        start_date=start,
        end_date=end,
        working_days=(end - start).days + 1,
        status=LeaveStatus.APPROVED,
    )
    await leave.insert()
    return leave


async def test_duty_days_excludes_leave_and_pre_join_days(make_user):
    user = await make_user(join_date=datetime(2025, 3, 11))
    leave = await approved_leave(user, datetime(2025, 3, 20), datetime(2025, 3, 24))

    assert duty_days(user, [leave], 2025, 3) == 21 - 5


async def test_monthly_accrual_credits_previous_month(make_user):
    user = await make_user()

    summary = await run_monthly_accrual(date(2025, 4, 1))

    assert summary.period == "2025-03"
    assert summary.counts["accrued"] == 1
    assert summary.accrued[0].email == user.email
    assert await ledger.get_remaining(user.id, LeaveType.EARNED, 2025) == 2

    entry = await AuditLog.find_one(AuditLog.action == "EL_ACCRUED")
    assert entry.actor == "system@saigo-lms.com"
    assert entry.target == user.email
    assert entry.details["month"] == "2025-03"


async def test_monthly_accrual_is_idempotent(make_user):
    user = await make_user()

    await run_monthly_accrual(date(2025, 4, 1))
    summary = await run_monthly_accrual(date(2025, 4, 15))

    assert summary.counts["skipped"] == 1
    assert summary.skipped[0].reason == "already_accrued"
    assert await ledger.get_remaining(user.id, LeaveType.EARNED, 2025) == 2
    assert await AuditLog.find(AuditLog.action == "EL_ACCRUED").count() == 1


async def test_no_accrual_without_duty_days(make_user):
    on_leave = await make_user()
    await approved_leave(on_leave, datetime(2025, 3, 1), datetime(2025, 3, 31))
    not_joined = await make_user(join_date=datetime(2025, 4, 15))

    summary = await run_monthly_accrual(date(2025, 4, 1))

    assert summary.counts["skipped"] == 2
    assert {r.reason for r in summary.skipped} == {"no_duty_days"}
    assert await ledger.find(on_leave.id, LeaveType.EARNED, 2025) is None
    assert await ledger.find(not_joined.id, LeaveType.EARNED, 2025) is None


async def test_accrual_skips_inactive_and_system_accounts(make_user):
    inactive = await make_user()
    inactive.is_active = False
    await inactive.save()
    await make_user(Role.SYSTEM_ADMIN)

    summary = await run_monthly_accrual(date(2025, 4, 1))

    assert summary.total == 0


async def test_one_failing_user_does_not_stop_the_batch(make_user):
    broken = await make_user()
    healthy = await make_user()

    class FlakyLedger(BalanceLedger):
        async def accrue(self, user_id, year, month_key, days=2.0):
            if user_id == broken.id:
                raise InternalError("balance store unavailable")
            return await super().accrue(user_id, year, month_key, days)

    summary = await JobRunner(balances=FlakyLedger()).run_monthly_accrual(date(2025, 4, 1))

    assert summary.counts == {"accrued": 1, "lapsed": 0, "skipped": 0, "failed": 1}
    assert summary.failed[0].email == broken.email
    assert await ledger.get_remaining(healthy.id, LeaveType.EARNED, 2025) == 2


async def test_accrual_overflow_moves_excess_to_special(make_user, set_balance):
    user = await make_user()
    await set_balance(user, LeaveType.EARNED, 2025, opening=59)

    summary = await run_monthly_accrual(date(2025, 4, 1))

    assert summary.accrued[0].details["balance_after"] == 60
    assert await ledger.get_remaining(user.id, LeaveType.SPECIAL, 2025) == 1
    assert await AuditLog.find(AuditLog.action == "EL_OVERFLOW_TO_SPECIAL").count() == 1


async def test_annual_lapse_zeroes_lapsing_types_only(make_user, set_balance):
    user = await make_user()
    await set_balance(user, LeaveType.CASUAL, 2024, opening=10, used=3)
    await set_balance(user, LeaveType.EARNED, 2024, opening=10)

    summary = await run_annual_lapse(date(2024, 12, 31))

    assert summary.period == "2024"
    assert summary.counts["lapsed"] == 1
    assert summary.lapsed[0].details["lapsed"] == {"CASUAL": 7}
    assert await ledger.get_remaining(user.id, LeaveType.CASUAL, 2024) == 0
    assert await ledger.get_remaining(user.id, LeaveType.EARNED, 2024) == 10

    entries = await AuditLog.find(AuditLog.action == "BALANCE_LAPSED").to_list()
    assert len(entries) == 1
    assert entries[0].details["leave_type"] == "CASUAL"
    assert entries[0].details["lapsed"] == 7


async def test_annual_lapse_after_new_year_closes_previous_year(make_user, set_balance):
    user = await make_user()
    await set_balance(user, LeaveType.CASUAL, 2024, opening=4)

    summary = await run_annual_lapse(date(2025, 1, 1))

    assert summary.period == "2024"
    assert await ledger.get_remaining(user.id, LeaveType.CASUAL, 2024) == 0


async def test_annual_lapse_with_nothing_to_lapse(make_user):
    await make_user()

    summary = await run_annual_lapse(date(2024, 12, 31))

    assert summary.counts["skipped"] == 1
    assert summary.skipped[0].reason == "nothing_to_lapse"


async def test_annual_lapse_caps_earned_leave(make_user, set_balance):
    user = await make_user()
    await set_balance(user, LeaveType.EARNED, 2024, opening=70)

    await run_annual_lapse(date(2024, 12, 31))

    assert await ledger.get_remaining(user.id, LeaveType.EARNED, 2024) == 60
    assert await ledger.get_remaining(user.id, LeaveType.SPECIAL, 2024) == 10
    entry = await AuditLog.find_one(AuditLog.action == "EL_OVERFLOW_TO_SPECIAL")
    assert entry.details["transferred"] == 10
    assert entry.details["reason"] == "annual_lapse"


async def test_one_failing_lapse_does_not_stop_the_batch(make_user, set_balance):
    broken = await make_user()
    healthy = await make_user()
    await set_balance(broken, LeaveType.CASUAL, 2024, opening=6)
    await set_balance(healthy, LeaveType.CASUAL, 2024, opening=5)

    class FlakyLedger(BalanceLedger):
        async def lapse(self, user_id, leave_type, year):
            if user_id == broken.id:
                raise InternalError("balance store unavailable")
            return await super().lapse(user_id, leave_type, year)

    summary = await JobRunner(balances=FlakyLedger()).run_annual_lapse(date(2024, 12, 31), triggered_by="cron")

    assert summary.counts == {"accrued": 0, "lapsed": 1, "skipped": 0, "failed": 1}
    assert summary.failed[0].email == broken.email
    assert summary.failed[0].reason == "balance store unavailable"
    assert summary.lapsed[0].email == healthy.email
    assert summary.triggered_by == "cron"
    assert await ledger.get_remaining(healthy.id, LeaveType.CASUAL, 2024) == 0
    assert await ledger.get_remaining(broken.id, LeaveType.CASUAL, 2024) == 6
