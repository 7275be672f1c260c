import asyncio
from datetime import date

import pytest
from beanie import PydanticObjectId

from lms.core.exceptions import (
    AlreadyDecided,
    ConflictingUpdate,
    Forbidden,
    InsufficientBalance,
    InternalError,
    NotCurrentApprover,
    ValidationFailed,
)
from lms.core.rbac import Role
from lms.models.audit import AuditLog
from lms.models.leave import LeaveCreate, LeaveRequest, LeaveStatus, LeaveType, LeaveVersion, StepStatus
from lms.models.notification import Notification, NotificationType
from lms.services.ledger import BalanceLedger, ledger
from lms.services.policy import policy_service
from lms.services.workflow import LeaveWorkflow, workflow

TODAY = date(2025, 3, 1)

APPROVER_KEYS = {Role.DEPT_HEAD: "dept_head", Role.HR_ADMIN: "hr_admin", Role.HR_HEAD: "hr_head", Role.CEO: "ceo"}


def request(leave_type=LeaveType.EARNED, start=date(2025, 3, 10), end=date(2025, 3, 14), **kwargs):
    return LeaveCreate(leave_type=leave_type, start_date=start, end_date=end, reason="Family visit", **kwargs)


@pytest.fixture
async def submitted(org, set_balance):
    await set_balance(org["employee"], LeaveType.EARNED, 2025, opening=20)
    return await workflow.apply(org["employee"], request(), today=TODAY)


@pytest.fixture
async def final_stage(org, submitted):
    await workflow.forward(submitted.id, org["dept_head"])
    return await workflow.forward(submitted.id, org["hr_admin"])


@pytest.fixture
async def approved(org, final_stage):
    return await workflow.approve(final_stage.id, org["hr_head"])


async def remaining(user, leave_type=LeaveType.EARNED, year=2025):
    return await ledger.get_remaining(user.id, leave_type, year)


async def version_count(leave_id):
    return await LeaveVersion.find(LeaveVersion.leave_id == leave_id).count()


async def test_end_to_end_earned_leave(org, submitted):
    assert submitted.status == LeaveStatus.SUBMITTED
    assert submitted.working_days == 5
    assert [step.role for step in submitted.steps] == [Role.DEPT_HEAD, Role.HR_ADMIN, Role.HR_HEAD]

    leave = await workflow.forward(submitted.id, org["dept_head"])
    assert leave.status == LeaveStatus.PENDING
    assert leave.current_step.role == Role.HR_ADMIN

    leave = await workflow.forward(leave.id, org["hr_admin"])
    assert leave.status == LeaveStatus.PENDING
    assert leave.current_step.role == Role.HR_HEAD

    leave = await workflow.approve(leave.id, org["hr_head"])
    assert leave.status == LeaveStatus.APPROVED
    assert leave.debited_days == 5
    assert await remaining(org["employee"]) == 15

    actions = sorted(entry.action for entry in await AuditLog.find_all().to_list())
    assert actions == sorted(["LEAVE_SUBMITTED", "LEAVE_FORWARDED", "LEAVE_FORWARDED", "LEAVE_APPROVED"])
    assert await version_count(leave.id) == 4


async def test_versions_are_gapless_and_restorable(org, approved):
    versions = await workflow.versions(approved.id, org["employee"])

    assert [v.version for v in versions] == [1, 2, 3, 4]
    assert [v.restore().status for v in versions] == [
        LeaveStatus.SUBMITTED,
        LeaveStatus.PENDING,
        LeaveStatus.PENDING,
        LeaveStatus.APPROVED,
    ]
    assert [v.restore().current_stage_index for v in versions] == [0, 1, 2, 2]
    assert [v.actor_role for v in versions] == ["EMPLOYEE", "DEPT_HEAD", "HR_ADMIN", "HR_HEAD"]

    current = await LeaveRequest.get(approved.id)
    assert versions[-1].restore().snapshot() == current.snapshot()


async def test_concurrent_approvals_debit_once(org, final_stage):
    results = await asyncio.gather(
        workflow.approve(final_stage.id, org["hr_head"]),
        workflow.approve(final_stage.id, org["hr_head"]),
        return_exceptions=True,
    )

    successes = [r for r in results if isinstance(r, LeaveRequest)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], (ConflictingUpdate, AlreadyDecided))

    balance = await ledger.find(org["employee"].id, LeaveType.EARNED, 2025)
    assert balance.used == 5
    assert await version_count(final_stage.id) == 4


async def test_second_approval_is_already_decided(org, approved):
    with pytest.raises(AlreadyDecided):
        await workflow.approve(approved.id, org["hr_head"])
    assert await remaining(org["employee"]) == 15


async def test_wrong_role_is_not_current_approver(org, submitted):
    with pytest.raises(NotCurrentApprover):
        await workflow.forward(submitted.id, org["hr_admin"])


async def test_other_department_head_is_not_current_approver(org, make_user, submitted):
    other_head = await make_user(Role.DEPT_HEAD, department="Finance")
    with pytest.raises(NotCurrentApprover):
        await workflow.forward(submitted.id, other_head)


async def test_requester_cannot_decide_own_request(org, make_user, set_balance):
    hr_admin = org["hr_admin"]
    await set_balance(hr_admin, LeaveType.EARNED, 2025, opening=20)
    leave = await workflow.apply(hr_admin, request(), today=TODAY)
    assert [step.role for step in leave.steps] == [Role.HR_HEAD]

    with pytest.raises(NotCurrentApprover):
        await workflow.approve(leave.id, hr_admin)

    leave = await workflow.approve(leave.id, org["hr_head"])
    assert leave.status == LeaveStatus.APPROVED


async def test_only_final_stage_can_approve(org, submitted):
    with pytest.raises(ValidationFailed) as excinfo:
        await workflow.approve(submitted.id, org["dept_head"])
    assert excinfo.value.sub_kind == "not_final_stage"


async def test_ceo_stage_only_when_required(org):
    leave = await workflow.apply(
        org["employee"], request(LeaveType.MATERNITY, date(2025, 3, 1), date(2025, 3, 10)), today=TODAY,
    )
    assert [step.role for step in leave.steps] == [Role.DEPT_HEAD, Role.HR_ADMIN, Role.HR_HEAD, Role.CEO]


async def test_ceo_request_goes_to_hr_head(org, set_balance):
    await set_balance(org["ceo"], LeaveType.EARNED, 2025, opening=20)
    leave = await workflow.apply(org["ceo"], request(), today=TODAY)
    assert [step.role for step in leave.steps] == [Role.HR_HEAD]


async def test_failed_validation_stores_nothing(org):
    with pytest.raises(ValidationFailed):
        await workflow.apply(org["employee"], request(LeaveType.CASUAL, date(2025, 3, 2), date(2025, 3, 5)), today=TODAY)
    assert await LeaveRequest.find_all().count() == 0


async def test_reject_requires_comment(org, submitted):
    with pytest.raises(ValidationFailed) as excinfo:
        await workflow.reject(submitted.id, org["dept_head"], "  ")
    assert excinfo.value.sub_kind == "comment_required"

    leave = await workflow.reject(submitted.id, org["dept_head"], "Project deadline")
    assert leave.status == LeaveStatus.REJECTED
    assert leave.steps[0].status == StepStatus.REJECTED
    assert leave.steps[0].comment == "Project deadline"
    assert await remaining(org["employee"]) == 20


async def test_return_and_resubmit(org, submitted):
    await workflow.forward(submitted.id, org["dept_head"])
    leave = await workflow.return_to_requester(submitted.id, org["hr_admin"], "Shift by a week")
    assert leave.status == LeaveStatus.RETURNED

    with pytest.raises(ValidationFailed) as excinfo:
        await workflow.forward(leave.id, org["hr_admin"])
    assert excinfo.value.sub_kind == "invalid_transition"

    with pytest.raises(Forbidden):
        await workflow.resubmit(leave.id, org["dept_head"], today=TODAY)

    leave = await workflow.resubmit(
        leave.id,
        org["employee"],
        {"start_date": date(2025, 3, 17), "end_date": date(2025, 3, 18)},
        today=TODAY,
    )
    assert leave.status == LeaveStatus.SUBMITTED
    assert leave.current_stage_index == 0
    assert leave.working_days == 2
    assert all(step.status == StepStatus.PENDING for step in leave.steps)
    assert await version_count(leave.id) == 4


async def test_certificate_is_checked_again_at_final_approval(org):
    await policy_service.update_rule(Role.HR_ADMIN, LeaveType.MEDICAL, {"certificate_required_over_days": None})
    leave = await workflow.apply(
        org["employee"], request(LeaveType.MEDICAL, date(2025, 3, 1), date(2025, 3, 5)), today=TODAY,
    )
    await policy_service.update_rule(Role.HR_ADMIN, LeaveType.MEDICAL, {"certificate_required_over_days": 3})

    await workflow.forward(leave.id, org["dept_head"])
    await workflow.forward(leave.id, org["hr_admin"])
    with pytest.raises(ValidationFailed) as excinfo:
        await workflow.approve(leave.id, org["hr_head"])
    assert excinfo.value.sub_kind == "certificate_required"
    assert (await LeaveRequest.get(leave.id)).status == LeaveStatus.PENDING

    await workflow.attach_certificate(leave.id, org["employee"])
    leave = await workflow.approve(leave.id, org["hr_head"])
    assert leave.status == LeaveStatus.APPROVED
    assert await remaining(org["employee"], LeaveType.MEDICAL) == 9


async def test_ledger_failure_rolls_back_approval(org, final_stage):
    class BrokenLedger(BalanceLedger):
        async def debit(self, user_id, leave_type, year, days, enforce=True):
            raise InternalError("ledger unavailable")

    broken = LeaveWorkflow(balances=BrokenLedger())
    with pytest.raises(InternalError):
        await broken.approve(final_stage.id, org["hr_head"])

    leave = await LeaveRequest.get(final_stage.id)
    assert leave.status == LeaveStatus.PENDING
    assert leave.version == final_stage.version
    assert leave.debited_days == 0
    assert leave.current_step.status == StepStatus.PENDING
    assert await version_count(leave.id) == 3

    leave = await workflow.approve(leave.id, org["hr_head"])
    assert leave.status == LeaveStatus.APPROVED
    assert await version_count(leave.id) == 4


async def test_sink_failure_does_not_fail_transition(org, set_balance, monkeypatch):
    async def broken_insert(self, *args, **kwargs):
        raise RuntimeError("audit store down")

    monkeypatch.setattr(AuditLog, "insert", broken_insert)
    await set_balance(org["employee"], LeaveType.EARNED, 2025, opening=20)

    leave = await workflow.apply(org["employee"], request(), today=TODAY)

    assert leave.status == LeaveStatus.SUBMITTED
    assert await version_count(leave.id) == 1


async def test_approvers_are_notified_and_see_pending(org, submitted):
    assert await Notification.find(Notification.recipient_id == org["dept_head"].id).count() == 1
    assert [leave.id for leave in await workflow.list_pending_for(org["dept_head"])] == [submitted.id]
    assert await workflow.list_pending_for(org["hr_admin"]) == []

    await workflow.forward(submitted.id, org["dept_head"])
    assert [leave.id for leave in await workflow.list_pending_for(org["hr_admin"])] == [submitted.id]


async def test_other_employee_cannot_view_request(org, make_user, submitted):
    stranger = await make_user(Role.EMPLOYEE)
    with pytest.raises(Forbidden):
        await workflow.get_for_viewer(submitted.id, stranger)
    assert (await workflow.get_for_viewer(submitted.id, org["hr_admin"])).id == submitted.id


async def test_draft_is_cancelled_directly(org):
    draft = await workflow.create_draft(org["employee"], request())
    assert draft.status == LeaveStatus.DRAFT
    assert draft.version == 0

    leave = await workflow.request_cancellation(draft.id, org["employee"])
    assert leave.status == LeaveStatus.CANCELLED


async def test_cancel_pending_request(org, submitted):
    leave = await workflow.request_cancellation(submitted.id, org["employee"], "Plans changed")
    assert leave.status == LeaveStatus.CANCELLATION_REQUESTED
    assert leave.status_before_cancellation == LeaveStatus.SUBMITTED

    leave = await workflow.approve_cancellation(leave.id, org["hr_admin"])
    assert leave.status == LeaveStatus.CANCELLED
    assert await remaining(org["employee"]) == 20


async def test_cancel_approved_leave_credits_back(org, approved):
    leave = await workflow.request_cancellation(approved.id, org["employee"])
    assert leave.status == LeaveStatus.CANCELLATION_REQUESTED

    with pytest.raises(Forbidden):
        await workflow.approve_cancellation(leave.id, org["employee"])

    leave = await workflow.approve_cancellation(leave.id, org["hr_admin"])
    assert leave.status == LeaveStatus.CANCELLED
    assert leave.credited_days == 5
    assert await remaining(org["employee"]) == 20


async def test_rejected_cancellation_restores_status(org, approved):
    await workflow.request_cancellation(approved.id, org["employee"])
    leave = await workflow.reject_cancellation(approved.id, org["hr_head"], "Needed for audit week")
    assert leave.status == LeaveStatus.APPROVED
    assert leave.status_before_cancellation is None
    assert await remaining(org["employee"]) == 15


async def test_recall_credits_unused_days(org, approved):
    with pytest.raises(Forbidden):
        await workflow.recall(approved.id, org["employee"], today=date(2025, 3, 12))

    leave = await workflow.recall(approved.id, org["hr_admin"], today=date(2025, 3, 12))
    assert leave.status == LeaveStatus.RECALLED
    assert leave.credited_days == 3
    assert await remaining(org["employee"]) == 18


async def test_recall_after_leave_ended(org, approved):
    with pytest.raises(ValidationFailed) as excinfo:
        await workflow.recall(approved.id, org["ceo"], today=date(2025, 3, 20))
    assert excinfo.value.sub_kind == "recall_past_leave"


async def push_through(org, leave):
    """Forward a request along its chain and approve it at the last stage"""
    while not leave.is_final_stage:
        leave = await workflow.forward(leave.id, org[APPROVER_KEYS[leave.current_step.role]])
    return await workflow.approve(leave.id, org[APPROVER_KEYS[leave.current_step.role]])


async def test_cancellation_during_failed_debit_leaves_balance_untouched(org, final_stage, monkeypatch):
    async def interrupted_debit(user_id, leave_type, year, days, enforce=True):
        await workflow.request_cancellation(final_stage.id, org["employee"], "Plans changed")
        raise InternalError("ledger unavailable")

    monkeypatch.setattr(ledger, "debit", interrupted_debit)
    with pytest.raises(InternalError):
        await workflow.approve(final_stage.id, org["hr_head"])
    monkeypatch.undo()

    leave = await LeaveRequest.get(final_stage.id)
    assert leave.status == LeaveStatus.CANCELLATION_REQUESTED
    assert leave.debited_days == 0

    leave = await workflow.approve_cancellation(leave.id, org["hr_admin"])
    assert leave.status == LeaveStatus.CANCELLED
    assert leave.credited_days == 0
    assert await remaining(org["employee"]) == 20


async def test_lost_approval_race_returns_the_debit(org, final_stage):
    class RacingLedger(BalanceLedger):
        async def debit(self, user_id, leave_type, year, days, enforce=True):
            balance = await super().debit(user_id, leave_type, year, days, enforce)
            await workflow.return_to_requester(final_stage.id, org["hr_head"], "Dates clash with the audit")
            return balance

    with pytest.raises(ConflictingUpdate):
        await LeaveWorkflow(balances=RacingLedger()).approve(final_stage.id, org["hr_head"])

    leave = await LeaveRequest.get(final_stage.id)
    assert leave.status == LeaveStatus.RETURNED
    assert leave.debited_days == 0
    assert await remaining(org["employee"]) == 20


async def test_overlapping_request_is_rejected(org, submitted):
    with pytest.raises(ValidationFailed) as excinfo:
        await workflow.apply(org["employee"], request(start=date(2025, 3, 12), end=date(2025, 3, 20)), today=TODAY)
    assert excinfo.value.sub_kind == "overlapping_leave"
    assert excinfo.value.details == {"start_date": "2025-03-10", "end_date": "2025-03-14"}

    await workflow.request_cancellation(submitted.id, org["employee"])
    await workflow.approve_cancellation(submitted.id, org["hr_admin"])
    leave = await workflow.apply(org["employee"], request(start=date(2025, 3, 12), end=date(2025, 3, 20)), today=TODAY)
    assert leave.status == LeaveStatus.SUBMITTED


async def test_casual_leave_cannot_touch_other_leave(org, submitted):
    for start, end in ((date(2025, 3, 15), date(2025, 3, 16)), (date(2025, 3, 8), date(2025, 3, 9))):
        with pytest.raises(ValidationFailed) as excinfo:
            await workflow.apply(org["employee"], request(LeaveType.CASUAL, start, end), today=TODAY)
        assert excinfo.value.sub_kind == "adjacent_leave"

    leave = await workflow.apply(
        org["employee"], request(LeaveType.CASUAL, date(2025, 3, 17), date(2025, 3, 18)), today=TODAY,
    )
    assert leave.status == LeaveStatus.SUBMITTED


async def test_casual_excess_converts_to_earned_leave(org, set_balance):
    await set_balance(org["employee"], LeaveType.EARNED, 2025, opening=20)
    long_casual = request(LeaveType.CASUAL, date(2025, 3, 20), date(2025, 3, 24))

    with pytest.raises(ValidationFailed) as excinfo:
        await workflow.apply(org["employee"], long_casual, today=TODAY)
    assert excinfo.value.sub_kind == "spell_limit"

    leave = await workflow.apply(
        org["employee"], request(LeaveType.CASUAL, date(2025, 3, 20), date(2025, 3, 24), convert_excess=True), today=TODAY,
    )
    leave = await push_through(org, leave)
    assert leave.charges == {"CASUAL": 3, "EARNED": 2}
    assert await remaining(org["employee"], LeaveType.CASUAL) == 7
    assert await remaining(org["employee"]) == 18

    await workflow.request_cancellation(leave.id, org["employee"])
    leave = await workflow.approve_cancellation(leave.id, org["hr_admin"])
    assert leave.credited_days == 5
    assert leave.charges == {}
    assert await remaining(org["employee"], LeaveType.CASUAL) == 10
    assert await remaining(org["employee"]) == 20


async def test_medical_excess_spills_over_in_order(org, set_balance):
    await set_balance(org["employee"], LeaveType.EARNED, 2025, opening=4)
    leave = await workflow.apply(
        org["employee"],
        request(LeaveType.MEDICAL, date(2025, 3, 1), date(2025, 3, 20), certificate_attached=True, convert_excess=True),
        today=TODAY,
    )
    assert leave.working_days == 20

    leave = await push_through(org, leave)
    assert leave.charges == {"MEDICAL": 14, "EARNED": 4, "EXTRA_WITHOUT_PAY": 2}
    assert await remaining(org["employee"], LeaveType.MEDICAL) == 0
    assert await remaining(org["employee"]) == 0


async def test_conversion_without_enough_balance_is_refused(org):
    await policy_service.update_rule(Role.HR_ADMIN, LeaveType.MEDICAL, {"conversion_targets": ["EARNED"]})
    with pytest.raises(InsufficientBalance):
        await workflow.apply(
            org["employee"],
            request(LeaveType.MEDICAL, date(2025, 3, 1), date(2025, 3, 20), certificate_attached=True, convert_excess=True),
            today=TODAY,
        )
    assert await LeaveRequest.find_all().count() == 0


async def test_fitness_certificate_gates_return_to_duty(org, set_balance):
    await set_balance(org["employee"], LeaveType.EARNED, 2025, opening=20)
    leave = await workflow.apply(
        org["employee"],
        request(LeaveType.MEDICAL, date(2025, 3, 1), date(2025, 3, 10), certificate_attached=True),
        today=TODAY,
    )
    leave = await push_through(org, leave)

    with pytest.raises(ValidationFailed) as excinfo:
        await workflow.return_to_duty(leave.id, org["employee"])
    assert excinfo.value.sub_kind == "fitness_certificate_required"

    leave = await workflow.attach_fitness_certificate(leave.id, org["employee"])
    assert [step.role for step in leave.fitness_steps] == [Role.HR_ADMIN, Role.HR_HEAD, Role.CEO]

    with pytest.raises(NotCurrentApprover):
        await workflow.approve_fitness_certificate(leave.id, org["hr_head"])
    with pytest.raises(Forbidden):
        await workflow.approve_fitness_certificate(leave.id, org["dept_head"])

    for key in ("hr_admin", "hr_head"):
        leave = await workflow.approve_fitness_certificate(leave.id, org[key])
        assert leave.fitness_cleared is False
    with pytest.raises(ValidationFailed):
        await workflow.return_to_duty(leave.id, org["employee"])

    leave = await workflow.approve_fitness_certificate(leave.id, org["ceo"])
    assert leave.fitness_cleared is True
    with pytest.raises(AlreadyDecided):
        await workflow.approve_fitness_certificate(leave.id, org["ceo"])

    leave = await workflow.return_to_duty(leave.id, org["employee"])
    assert leave.duty_resumed_at is not None
    assert await AuditLog.find(AuditLog.action == "FITNESS_CERTIFICATE_APPROVED").count() == 3
    assert await AuditLog.find(AuditLog.action == "DUTY_RESUMED").count() == 1


async def test_earned_leave_needs_no_fitness_certificate(org, approved):
    with pytest.raises(ValidationFailed) as excinfo:
        await workflow.attach_fitness_certificate(approved.id, org["employee"])
    assert excinfo.value.sub_kind == "fitness_not_required"

    leave = await workflow.return_to_duty(approved.id, org["employee"])
    assert leave.duty_resumed_at is not None


async def test_extend_approved_leave(org, approved):
    with pytest.raises(ValidationFailed) as excinfo:
        await workflow.extend(approved.id, org["employee"], date(2025, 3, 17), "Train cancelled", today=date(2025, 3, 5))
    assert excinfo.value.sub_kind == "leave_not_started"

    with pytest.raises(ValidationFailed) as excinfo:
        await workflow.extend(approved.id, org["employee"], date(2025, 3, 14), "Train cancelled", today=date(2025, 3, 12))
    assert excinfo.value.sub_kind == "invalid_date_range"

    extension = await workflow.extend(
        approved.id, org["employee"], date(2025, 3, 17), "Train cancelled", today=date(2025, 3, 12),
    )
    assert extension.status == LeaveStatus.SUBMITTED
    assert extension.parent_leave_id == approved.id
    assert extension.working_days == 3
    assert extension.reason.startswith(f"Extension of leave {approved.id}")

    with pytest.raises(ValidationFailed) as excinfo:
        await workflow.extend(approved.id, org["employee"], date(2025, 3, 18), "Still unwell", today=date(2025, 3, 12))
    assert excinfo.value.sub_kind == "extension_pending"

    await push_through(org, extension)
    assert (await LeaveRequest.get(approved.id)).status == LeaveStatus.APPROVED
    assert await remaining(org["employee"]) == 12


async def test_shorten_approved_leave(org, approved):
    with pytest.raises(ValidationFailed) as excinfo:
        await workflow.shorten(approved.id, org["employee"], date(2025, 3, 14), today=date(2025, 3, 11))
    assert excinfo.value.sub_kind == "invalid_date_range"

    with pytest.raises(ValidationFailed) as excinfo:
        await workflow.shorten(approved.id, org["employee"], date(2025, 3, 10), today=date(2025, 3, 11))
    assert excinfo.value.sub_kind == "end_date_in_past"

    leave = await workflow.shorten(approved.id, org["employee"], date(2025, 3, 12), "Back early", today=date(2025, 3, 11))
    assert leave.status == LeaveStatus.APPROVED
    assert leave.working_days == 3
    assert leave.credited_days == 2
    assert leave.charges == {"EARNED": 3}
    assert await remaining(org["employee"]) == 17

    entry = await AuditLog.find_one(AuditLog.action == "LEAVE_SHORTENED")
    assert entry.details["released_days"] == 2
    shortened = await Notification.find(Notification.type == NotificationType.LEAVE_SHORTENED).to_list()
    assert [n.recipient_id for n in shortened] == [org["hr_admin"].id]


async def test_partial_cancel_keeps_days_taken(org, approved):
    with pytest.raises(ValidationFailed) as excinfo:
        await workflow.partial_cancel(approved.id, org["employee"], today=date(2025, 3, 20))
    assert excinfo.value.sub_kind == "leave_already_ended"

    leave = await workflow.partial_cancel(approved.id, org["employee"], "Back early", today=date(2025, 3, 12))
    assert leave.working_days == 2
    assert leave.credited_days == 3
    assert await remaining(org["employee"]) == 18
    assert await AuditLog.find(AuditLog.action == "PARTIAL_CANCELLATION").count() == 1


async def test_shortened_conversion_returns_converted_days_first(org, set_balance):
    await set_balance(org["employee"], LeaveType.EARNED, 2025, opening=20)
    leave = await workflow.apply(
        org["employee"], request(LeaveType.CASUAL, date(2025, 3, 20), date(2025, 3, 24), convert_excess=True), today=TODAY,
    )
    leave = await push_through(org, leave)

    leave = await workflow.shorten(leave.id, org["employee"], date(2025, 3, 21), today=date(2025, 3, 20))
    assert leave.charges == {"CASUAL": 2}
    assert await remaining(org["employee"]) == 20
    assert await remaining(org["employee"], LeaveType.CASUAL) == 8


async def test_recall_with_full_credit(org, approved):
    await policy_service.update_rule(Role.HR_ADMIN, LeaveType.EARNED, {"recall_credit": "full"})

    leave = await workflow.recall(approved.id, org["hr_admin"], today=date(2025, 3, 12))
    assert leave.credited_days == 5
    assert await remaining(org["employee"]) == 20


async def test_recall_without_credit_then_resubmit(org):
    leave = await workflow.apply(
        org["employee"], request(LeaveType.EXTRA_WITHOUT_PAY, date(2025, 3, 10), date(2025, 3, 14)), today=TODAY,
    )
    assert leave.steps[-1].role == Role.CEO
    leave = await push_through(org, leave)

    leave = await workflow.recall(leave.id, org["hr_admin"], today=date(2025, 3, 12))
    assert leave.status == LeaveStatus.RECALLED
    assert leave.credited_days == 0
    assert leave.charges == {"EXTRA_WITHOUT_PAY": 5}

    leave = await workflow.resubmit(
        leave.id,
        org["employee"],
        {"start_date": date(2025, 3, 20), "end_date": date(2025, 3, 21)},
        today=date(2025, 3, 12),
    )
    assert leave.status == LeaveStatus.SUBMITTED
    assert leave.consumed_days == 5
    assert leave.debited_days == 0
    assert leave.charges == {}
    assert leave.current_stage_index == 0

    balance = await ledger.find(org["employee"].id, LeaveType.EXTRA_WITHOUT_PAY, 2025)
    assert balance.used == 5


async def test_recalled_leave_is_cancelled_directly(org, approved):
    await workflow.recall(approved.id, org["hr_admin"], today=date(2025, 3, 12))

    leave = await workflow.request_cancellation(approved.id, org["employee"])
    assert leave.status == LeaveStatus.CANCELLED
    assert await remaining(org["employee"]) == 18


async def test_bulk_approve_reports_each_request(org, final_stage, make_user, set_balance):
    other = await make_user(Role.EMPLOYEE, dept_head=org["dept_head"])
    await set_balance(other, LeaveType.EARNED, 2025, opening=20)
    early = await workflow.apply(other, request(), today=TODAY)
    missing = PydanticObjectId()

    result = await workflow.bulk_approve([final_stage.id, early.id, missing], org["hr_head"], "Approved in batch")

    assert result.succeeded == [final_stage.id]
    assert [(f.id, f.error) for f in result.failed] == [
        (early.id, "not_current_approver"),
        (missing, "not_found"),
    ]
    assert await remaining(org["employee"]) == 15


async def test_bulk_cancel_own_requests(org, approved, make_user):
    draft = await workflow.create_draft(org["employee"], request(start=date(2025, 4, 1), end=date(2025, 4, 2)))
    stranger = await make_user(Role.EMPLOYEE)
    foreign = await workflow.create_draft(stranger, request())

    result = await workflow.bulk_cancel([draft.id, approved.id, foreign.id], org["employee"], "Trip called off")

    assert result.succeeded == [draft.id, approved.id]
    assert [f.error for f in result.failed] == ["forbidden"]
    assert (await LeaveRequest.get(draft.id)).status == LeaveStatus.CANCELLED
    assert (await LeaveRequest.get(approved.id)).status == LeaveStatus.CANCELLATION_REQUESTED
