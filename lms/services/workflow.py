"""
Approval Workflow Engine
Moves a leave request through its approver chain.

Every transition is a compare-and-swap on the request's ``version`` and
``status``: a stale caller gets ConflictingUpdate instead of overwriting a
decision. A committed transition then writes exactly one LeaveVersion
snapshot, one audit entry and the relevant notifications.

Transitions that move balance days book the ledger first and swap the request
second. If the swap loses, the ledger entries are reversed before the
ConflictingUpdate reaches the caller, so a request's day counters only ever
describe bookings that actually happened.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from beanie import PydanticObjectId, UpdateResponse
from beanie.operators import In, Set

from lms.config import settings
from lms.core.calendar import count_leave_days, local_today, to_date, to_datetime
from lms.core.exceptions import (
    AlreadyDecided,
    ConflictingUpdate,
    Forbidden,
    InsufficientBalance,
    LeaveError,
    NotCurrentApprover,
    NotFound,
    ValidationFailed,
)
from lms.core.rbac import APPROVAL_CHAIN, FITNESS_CHAIN, ROLE_RANK, Operation, Role, can, require
from lms.models.audit import AuditEntry
from lms.models.holiday import Holiday
from lms.models.leave import (
    ACTIVE_STATUSES,
    IN_APPROVAL_STATUSES,
    ApprovalStep,
    BulkFailure,
    BulkResult,
    LeaveCreate,
    LeaveRequest,
    LeaveStatus,
    LeaveType,
    LeaveVersion,
    StepStatus,
)
from lms.models.notification import NotificationType
from lms.models.policy import PolicyRules, RecallCredit
from lms.models.user import User
from lms.services import validator
from lms.services.ledger import BalanceLedger, ledger
from lms.services.policy import PolicyService, policy_service
from lms.services.sink import AuditSink, NotificationEvent, sink

logger = logging.getLogger(__name__)

# Statuses a requester may still cancel outright, without supervisor sign-off
DIRECTLY_CANCELLABLE = {LeaveStatus.DRAFT, LeaveStatus.RETURNED, LeaveStatus.RECALLED}
CANCELLATION_REQUESTABLE = {LeaveStatus.SUBMITTED, LeaveStatus.PENDING, LeaveStatus.APPROVED}
# Statuses in which the request's own fields may still change
EDITABLE_STATUSES = {LeaveStatus.DRAFT, LeaveStatus.SUBMITTED, LeaveStatus.PENDING, LeaveStatus.RETURNED}
RESUBMITTABLE = {LeaveStatus.RETURNED, LeaveStatus.RECALLED}
# Statuses after which the requester may be back at work
DUTY_STATUSES = {LeaveStatus.APPROVED, LeaveStatus.RECALLED}

Charges = Dict[LeaveType, float]


def build_chain(requester: User, rules: PolicyRules) -> List[ApprovalStep]:
    """Approver stages for a request, lowest first

    Stages at or below the requester's own rank are skipped, and the CEO
    stage is only kept when the leave type requires it or nothing else is
    left. A CEO's own request goes to HR_HEAD.
    """
    rank = ROLE_RANK.get(requester.role, 0)
    roles = [role for role in APPROVAL_CHAIN if ROLE_RANK[role] > rank]
    if not rules.ceo_required and len(roles) > 1:
        roles = [role for role in roles if role != Role.CEO]
    if not roles:
        roles = [Role.HR_HEAD]

    steps = []
    for sequence, role in enumerate(roles):
        approver_id = requester.dept_head_id if role == Role.DEPT_HEAD else None
        steps.append(ApprovalStep(sequence=sequence, role=role, approver_id=approver_id))
    return steps


def is_current_approver(leave: LeaveRequest, actor: User) -> bool:
    step = leave.current_step
    if step is None or actor.id == leave.requester_id:
        return False
    if actor.role != step.role:
        return False
    if step.approver_id is not None:
        return step.approver_id == actor.id
    if step.role == Role.DEPT_HEAD:
        return actor.department == leave.department
    return True


def outstanding_charges(leave: LeaveRequest) -> Charges:
    """Days still booked against each balance for this request"""
    if leave.charges:
        return {LeaveType(key): days for key, days in leave.charges.items() if days > 0}
    outstanding = leave.debited_days - leave.credited_days
    return {leave.leave_type: outstanding} if outstanding > 0 else {}


def split_refund(leave: LeaveRequest, days: float) -> Charges:
    """Which balances a refund goes back to; converted days are returned first"""
    refunds: Charges = {}
    left = days
    for leave_type, charged in reversed(list(outstanding_charges(leave).items())):
        if left <= 0:
            break
        portion = min(left, charged)
        refunds[leave_type] = portion
        left -= portion
    return refunds


def _stored(charges: Charges) -> Dict[str, float]:
    return {leave_type.value: days for leave_type, days in charges.items() if days > 0}


def _after_refund(leave: LeaveRequest, refunds: Charges) -> Dict[str, float]:
    left = {
        leave_type: charged - refunds.get(leave_type, 0)
        for leave_type, charged in outstanding_charges(leave).items()
    }
    return _stored(left)


class LeaveWorkflow:
    """State machine over LeaveRequest documents"""

    def __init__(
        self,
        policies: PolicyService = policy_service,
        balances: BalanceLedger = ledger,
        audit: AuditSink = sink,
        timezone: str = settings.TIMEZONE,
        weekend_days: Optional[List[int]] = None,
    ):
        self.policies = policies
        self.ledger = balances
        self.sink = audit
        self.timezone = timezone
        self.weekend_days = settings.weekend_weekdays if weekend_days is None else weekend_days

    def _today(self, today: Optional[date]) -> date:
        return today or local_today(self.timezone)

    # ----- loading -----

    async def get(self, leave_id: PydanticObjectId) -> LeaveRequest:
        leave = await LeaveRequest.get(leave_id)
        if leave is None:
            raise NotFound(f"Leave request {leave_id} not found")
        return leave

    async def get_for_viewer(self, leave_id: PydanticObjectId, viewer: User) -> LeaveRequest:
        leave = await self.get(leave_id)
        if leave.requester_id != viewer.id and not can(viewer.role, Operation.VIEW_ALL_REQUESTS):
            raise Forbidden("You can only view your own leave requests")
        return leave

    async def versions(self, leave_id: PydanticObjectId, viewer: User) -> List[LeaveVersion]:
        await self.get_for_viewer(leave_id, viewer)
        return await LeaveVersion.find(LeaveVersion.leave_id == leave_id).sort("+version").to_list()

    async def list_for_requester(self, requester: User, status: Optional[LeaveStatus] = None) -> List[LeaveRequest]:
        query = LeaveRequest.find(LeaveRequest.requester_id == requester.id)
        if status:
            query = query.find(LeaveRequest.status == status)
        return await query.sort("-created_at").to_list()

    async def list_pending_for(self, actor: User) -> List[LeaveRequest]:
        """Requests waiting on this actor: their approval stage or a cancellation to decide"""
        statuses = list(IN_APPROVAL_STATUSES)
        if can(actor.role, Operation.DECIDE_CANCELLATION):
            statuses.append(LeaveStatus.CANCELLATION_REQUESTED)
        candidates = await LeaveRequest.find(In(LeaveRequest.status, statuses)).sort("+submitted_at").to_list()

        pending = []
        for leave in candidates:
            if leave.status == LeaveStatus.CANCELLATION_REQUESTED:
                if leave.requester_id != actor.id:
                    pending.append(leave)
            elif is_current_approver(leave, actor):
                pending.append(leave)
        return pending

    async def _holidays(self, start: date, end: date) -> List[date]:
        rows = await Holiday.find(Holiday.date >= to_datetime(start), Holiday.date <= to_datetime(end)).to_list()
        return [to_date(row.date) for row in rows]

    async def _previous_starts(self, requester: User, rules: PolicyRules, exclude: Optional[PydanticObjectId]) -> List[date]:
        if rules.max_occasions is None and not rules.min_months_between_occasions:
            return []
        approved = await LeaveRequest.find(
            LeaveRequest.requester_id == requester.id,
            LeaveRequest.leave_type == rules.leave_type,
            LeaveRequest.status == LeaveStatus.APPROVED,
        ).to_list()
        return [to_date(leave.start_date) for leave in approved if leave.id != exclude]

    async def _booked(self, requester: User, exclude: Optional[PydanticObjectId]) -> List[Tuple[date, date]]:
        """Date ranges of the requester's other live requests"""
        live = await LeaveRequest.find(
            LeaveRequest.requester_id == requester.id,
            In(LeaveRequest.status, list(ACTIVE_STATUSES)),
        ).to_list()
        return [(to_date(leave.start_date), to_date(leave.end_date)) for leave in live if leave.id != exclude]

    async def _conversion_targets(
        self, requester_id: PydanticObjectId, rules: PolicyRules, year: int,
    ) -> List[Tuple[PolicyRules, float]]:
        targets = []
        for leave_type in rules.conversion_targets:
            balance = await self.ledger.peek(requester_id, leave_type, year)
            targets.append((await self.policies.get_rules(leave_type), balance.remaining))
        return targets

    async def validate(
        self,
        requester: User,
        leave_type,
        start: date,
        end: date,
        certificate_attached: bool = False,
        today: Optional[date] = None,
        exclude: Optional[PydanticObjectId] = None,
        convert_excess: bool = False,
        require_notice: bool = True,
    ) -> int:
        """Load everything the validator needs and run it"""
        rules = await self.policies.get_rules(leave_type)
        balance = await self.ledger.peek(requester.id, leave_type, start.year)
        conversion = None
        if convert_excess:
            conversion = await self._conversion_targets(requester.id, rules, start.year)
        return validator.validate_leave(
            start,
            end,
            rules,
            today=self._today(today),
            remaining=balance.remaining,
            used_this_year=balance.used,
            join_date=to_date(requester.join_date),
            retirement_date=to_date(requester.retirement_date) if requester.retirement_date else None,
            certificate_attached=certificate_attached,
            weekend_days=self.weekend_days,
            holidays=await self._holidays(start, end),
            previous_starts=await self._previous_starts(requester, rules, exclude),
            booked=await self._booked(requester, exclude),
            conversion_targets=conversion,
            require_notice=require_notice,
        )

    async def _plan(self, leave: LeaveRequest, rules: PolicyRules) -> Charges:
        """Balances an approval debits, recomputed from current balances"""
        if not leave.convert_excess:
            return {leave.leave_type: leave.working_days}
        year = to_date(leave.start_date).year
        balance = await self.ledger.peek(leave.requester_id, leave.leave_type, year)
        return validator.plan_charges(
            leave.working_days,
            rules,
            balance.remaining,
            await self._conversion_targets(leave.requester_id, rules, year),
        )

    # ----- ledger bookings -----

    async def _debit(self, leave: LeaveRequest, charges: Charges, enforce: bool = True) -> None:
        """Debit every balance in ``charges`` or none of them"""
        year = to_date(leave.start_date).year
        done: Charges = {}
        try:
            for leave_type, days in charges.items():
                await self.ledger.debit(leave.requester_id, leave_type, year, days, enforce=enforce)
                done[leave_type] = days
        except Exception:
            for leave_type, days in done.items():
                await self.ledger.credit(leave.requester_id, leave_type, year, days)
            raise

    async def _credit(self, leave: LeaveRequest, refunds: Charges) -> None:
        """Credit every balance in ``refunds`` or none of them"""
        year = to_date(leave.start_date).year
        done: Charges = {}
        try:
            for leave_type, days in refunds.items():
                await self.ledger.credit(leave.requester_id, leave_type, year, days)
                done[leave_type] = days
        except Exception:
            for leave_type, days in done.items():
                await self.ledger.debit(leave.requester_id, leave_type, year, days, enforce=False)
            raise

    async def _refund_then_swap(self, leave: LeaveRequest, refunds: Charges, updates: Dict[str, Any]) -> LeaveRequest:
        await self._credit(leave, refunds)
        try:
            return await self._swap(leave, updates)
        except ConflictingUpdate:
            await self._debit(leave, refunds, enforce=False)
            logger.warning("Reversed refund of %s for leave %s after a conflicting update", _stored(refunds), leave.id)
            raise

    async def _cap_earned_leave(self, leave: LeaveRequest, refunds: Charges) -> None:
        if LeaveType.EARNED in refunds:
            await self.ledger.apply_overflow(leave.requester_id, to_date(leave.start_date).year)

    # ----- compare-and-swap plumbing -----

    async def _swap(self, leave: LeaveRequest, updates: Dict[str, Any]) -> LeaveRequest:
        """Apply updates only if the request still has the status and version we loaded"""
        changes = dict(updates)
        changes["version"] = leave.version + 1
        changes["updated_at"] = datetime.utcnow()
        updated = await LeaveRequest.find_one(
            LeaveRequest.id == leave.id,
            LeaveRequest.version == leave.version,
            LeaveRequest.status == leave.status,
        ).update(Set(changes), response_type=UpdateResponse.NEW_DOCUMENT)
        if updated is None:
            logger.warning("Conflicting update on leave %s (expected %s v%d)", leave.id, leave.status.value, leave.version)
            raise ConflictingUpdate()
        return updated

    async def _record(
        self,
        before: LeaveRequest,
        updated: LeaveRequest,
        action: str,
        actor: User,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        await LeaveVersion(
            leave_id=updated.id,
            version=updated.version,
            action=action,
            actor_id=actor.id,
            actor_role=actor.role.value,
            data=updated.snapshot(),
        ).insert()

        logger.info(
            "Leave %s %s -> %s by %s (%s)",
            updated.id,
            before.status.value,
            updated.status.value,
            actor.email,
            action,
        )

        payload = {
            "leave_id": str(updated.id),
            "requester_id": str(updated.requester_id),
            "leave_type": updated.leave_type.value,
            "from_status": before.status.value,
            "to_status": updated.status.value,
            "version": updated.version,
        }
        payload.update(details or {})
        await self.sink.record_audit(AuditEntry(
            actor=actor.email,
            actor_role=actor.role.value,
            action=action,
            target=str(updated.id),
            details=payload,
        ))

    async def _notify_requester(self, leave: LeaveRequest, kind: NotificationType, title: str, message: str) -> None:
        requester = await User.get(leave.requester_id)
        if requester is None:
            return
        await self.sink.notify(requester, NotificationEvent(
            type=kind, title=title, message=message, leave_id=leave.id, link=f"/leaves/{leave.id}",
        ))

    async def _notify_role(self, leave: LeaveRequest, role: Role, kind: NotificationType, title: str, message: str) -> None:
        for user in await User.find(User.role == role).to_list():
            if user.id != leave.requester_id:
                await self.sink.notify(user, NotificationEvent(
                    type=kind, title=title, message=message, leave_id=leave.id, link=f"/approvals/{leave.id}",
                ))

    async def _notify_approvers(self, leave: LeaveRequest, kind: NotificationType, title: str) -> None:
        step = leave.current_step
        if step is None:
            return
        if step.approver_id is not None:
            approver = await User.get(step.approver_id)
            approvers = [approver] if approver else []
        elif step.role == Role.DEPT_HEAD:
            approvers = await User.find(User.role == step.role, User.department == leave.department).to_list()
        else:
            approvers = await User.find(User.role == step.role).to_list()

        message = (
            f"{leave.requester_name} requested {leave.working_days} days of "
            f"{leave.leave_type.value} leave ({to_date(leave.start_date)} to {to_date(leave.end_date)})."
        )
        for approver in approvers:
            if approver.id != leave.requester_id:
                await self.sink.notify(approver, NotificationEvent(
                    type=kind, title=title, message=message, leave_id=leave.id, link=f"/approvals/{leave.id}",
                ))

    def _check_requester(self, leave: LeaveRequest, actor: User) -> None:
        if leave.requester_id != actor.id:
            raise Forbidden("Only the requester can do this")

    def _check_approver(self, leave: LeaveRequest, actor: User) -> ApprovalStep:
        if actor.id == leave.requester_id:
            raise NotCurrentApprover("You cannot decide your own request")
        if not can(actor.role, Operation.DECIDE_STEP):
            raise NotCurrentApprover()
        if leave.status not in IN_APPROVAL_STATUSES:
            if leave.status in (LeaveStatus.DRAFT, LeaveStatus.RETURNED):
                raise ValidationFailed("invalid_transition", f"Request is {leave.status.value}, not awaiting a decision")
            raise AlreadyDecided(f"Request is already {leave.status.value}")
        step = leave.current_step
        if step is None:
            raise AlreadyDecided()
        if not is_current_approver(leave, actor):
            raise NotCurrentApprover()
        if step.status != StepStatus.PENDING:
            raise AlreadyDecided()
        return step

    def _check_in_progress(self, leave: LeaveRequest, today: date) -> None:
        """Approved leave that has started and not yet ended"""
        if leave.status != LeaveStatus.APPROVED:
            raise ValidationFailed("invalid_transition", f"Only approved leave can be changed (status {leave.status.value})")
        if today < to_date(leave.start_date):
            raise ValidationFailed(
                "leave_not_started", "This leave has not started yet; cancel it and apply again instead",
            )
        if today > to_date(leave.end_date):
            raise ValidationFailed("leave_already_ended", "This leave has already ended")

    @staticmethod
    def _fitness_required(leave: LeaveRequest, rules: PolicyRules) -> bool:
        threshold = rules.fitness_certificate_over_days
        return threshold is not None and leave.working_days > threshold

    def _check_fitness(self, leave: LeaveRequest, rules: PolicyRules) -> None:
        if self._fitness_required(leave, rules) and not leave.fitness_cleared:
            raise ValidationFailed(
                "fitness_certificate_required",
                f"Returning from {leave.leave_type.value} leave over "
                f"{rules.fitness_certificate_over_days} days needs a cleared fitness certificate",
                {"threshold": rules.fitness_certificate_over_days},
            )

    @staticmethod
    def _decided_steps(leave: LeaveRequest, actor: User, status: StepStatus, comment: Optional[str]) -> List[ApprovalStep]:
        steps = [step.model_copy() for step in leave.steps]
        steps[leave.current_stage_index] = steps[leave.current_stage_index].model_copy(update={
            "status": status,
            "decided_by": actor.id,
            "decided_at": datetime.utcnow(),
            "comment": comment,
        })
        return steps

    # ----- requester operations -----

    async def create_draft(
        self,
        requester: User,
        data: LeaveCreate,
        parent_leave_id: Optional[PydanticObjectId] = None,
    ) -> LeaveRequest:
        require(requester.role, Operation.SUBMIT_LEAVE)
        rules = await self.policies.get_rules(data.leave_type)
        validator.check_dates(data.start_date, data.end_date, rules)
        days = validator.compute_days(
            data.start_date, data.end_date, rules, self.weekend_days,
            await self._holidays(data.start_date, data.end_date),
        )

        leave = LeaveRequest(
            requester_id=requester.id,
            requester_name=requester.name,
            department=requester.department,
            leave_type=data.leave_type,
            start_date=to_datetime(data.start_date),
            end_date=to_datetime(data.end_date),
            working_days=days,
            reason=data.reason,
            certificate_attached=data.certificate_attached,
            convert_excess=data.convert_excess,
            parent_leave_id=parent_leave_id,
        )
        await leave.insert()
        logger.info("Draft leave %s created by %s", leave.id, requester.email)
        return leave

    async def submit(self, leave_id: PydanticObjectId, requester: User, today: Optional[date] = None) -> LeaveRequest:
        leave = await self.get(leave_id)
        self._check_requester(leave, requester)
        require(requester.role, Operation.SUBMIT_LEAVE)
        if leave.status != LeaveStatus.DRAFT:
            raise ValidationFailed("invalid_transition", f"Only drafts can be submitted (status {leave.status.value})")

        start, end = to_date(leave.start_date), to_date(leave.end_date)
        days = await self.validate(
            requester, leave.leave_type, start, end, leave.certificate_attached, today,
            exclude=leave.id,
            convert_excess=leave.convert_excess,
            require_notice=leave.parent_leave_id is None,
        )
        rules = await self.policies.get_rules(leave.leave_type)

        updated = await self._swap(leave, {
            "status": LeaveStatus.SUBMITTED,
            "working_days": days,
            "steps": build_chain(requester, rules),
            "current_stage_index": 0,
            "submitted_at": datetime.utcnow(),
        })
        details: Dict[str, Any] = {"working_days": days}
        if leave.parent_leave_id:
            details["parent_leave_id"] = str(leave.parent_leave_id)
        await self._record(leave, updated, "LEAVE_SUBMITTED", requester, details)
        await self._notify_approvers(updated, NotificationType.LEAVE_SUBMITTED, "New Leave Request")
        return updated

    async def apply(self, requester: User, data: LeaveCreate, today: Optional[date] = None) -> LeaveRequest:
        """Create and submit in one step; nothing is stored if validation fails"""
        await self.validate(
            requester, data.leave_type, data.start_date, data.end_date, data.certificate_attached, today,
            convert_excess=data.convert_excess,
        )
        draft = await self.create_draft(requester, data)
        return await self.submit(draft.id, requester, today)

    async def resubmit(
        self,
        leave_id: PydanticObjectId,
        requester: User,
        changes: Optional[Dict[str, Any]] = None,
        today: Optional[date] = None,
    ) -> LeaveRequest:
        """Send a returned or recalled request through its chain again

        Days a recalled request already used stay booked and are moved to
        ``consumed_days``; the new dates are debited afresh on approval.
        """
        leave = await self.get(leave_id)
        self._check_requester(leave, requester)
        if leave.status not in RESUBMITTABLE:
            raise ValidationFailed("invalid_transition", "Only returned or recalled requests can be resubmitted")

        changes = {k: v for k, v in (changes or {}).items() if v is not None}
        leave_type = changes.get("leave_type", leave.leave_type)
        start = changes.get("start_date", to_date(leave.start_date))
        end = changes.get("end_date", to_date(leave.end_date))
        certificate = changes.get("certificate_attached", leave.certificate_attached)

        days = await self.validate(
            requester, leave_type, start, end, certificate, today,
            exclude=leave.id, convert_excess=leave.convert_excess,
        )
        rules = await self.policies.get_rules(leave_type)

        updates = {
            "status": LeaveStatus.SUBMITTED,
            "leave_type": leave_type,
            "start_date": to_datetime(start),
            "end_date": to_datetime(end),
            "reason": changes.get("reason", leave.reason),
            "certificate_attached": certificate,
            "working_days": days,
            "steps": build_chain(requester, rules),
            "current_stage_index": 0,
            "submitted_at": datetime.utcnow(),
            "decided_at": None,
        }
        if leave.status == LeaveStatus.RECALLED:
            updates.update({
                "consumed_days": leave.consumed_days + leave.debited_days - leave.credited_days,
                "debited_days": 0,
                "credited_days": 0,
                "charges": {},
                "fitness_certificate_attached": False,
                "fitness_steps": [],
                "fitness_cleared": False,
                "duty_resumed_at": None,
            })
        updated = await self._swap(leave, updates)
        await self._record(leave, updated, "LEAVE_RESUBMITTED", requester, {
            "changed": sorted(changes),
            "resubmitted_from": leave.status.value,
        })
        await self._notify_approvers(updated, NotificationType.LEAVE_SUBMITTED, "Leave Request Resubmitted")
        return updated

    async def attach_certificate(self, leave_id: PydanticObjectId, requester: User) -> LeaveRequest:
        leave = await self.get(leave_id)
        self._check_requester(leave, requester)
        if leave.status not in EDITABLE_STATUSES:
            raise ValidationFailed("invalid_transition", f"Cannot attach a certificate to a {leave.status.value} request")

        updated = await self._swap(leave, {"certificate_attached": True})
        await self._record(leave, updated, "CERTIFICATE_ATTACHED", requester)
        return updated

    async def request_cancellation(
        self,
        leave_id: PydanticObjectId,
        requester: User,
        reason: Optional[str] = None,
    ) -> LeaveRequest:
        leave = await self.get(leave_id)
        self._check_requester(leave, requester)
        require(requester.role, Operation.REQUEST_CANCELLATION)

        if leave.status in DIRECTLY_CANCELLABLE:
            updated = await self._swap(leave, {"status": LeaveStatus.CANCELLED, "decided_at": datetime.utcnow()})
            await self._record(leave, updated, "LEAVE_CANCELLED", requester, {"reason": reason})
            return updated

        if leave.status not in CANCELLATION_REQUESTABLE:
            raise ValidationFailed("invalid_transition", f"A {leave.status.value} request cannot be cancelled")

        updated = await self._swap(leave, {
            "status": LeaveStatus.CANCELLATION_REQUESTED,
            "status_before_cancellation": leave.status,
        })
        await self._record(leave, updated, "CANCELLATION_REQUESTED", requester, {"reason": reason})
        message = f"{leave.requester_name} asked to cancel their {leave.leave_type.value} leave."
        for role in (Role.HR_ADMIN, Role.HR_HEAD):
            await self._notify_role(updated, role, NotificationType.CANCELLATION_REQUESTED, "Cancellation Requested", message)
        return updated

    async def extend(
        self,
        leave_id: PydanticObjectId,
        requester: User,
        new_end: date,
        reason: str,
        today: Optional[date] = None,
    ) -> LeaveRequest:
        """Ask for more days after an approved leave that is under way

        The extension is a separate request starting the day after the
        current end date. It goes through the full chain on its own while the
        original stays approved.
        """
        parent = await self.get(leave_id)
        self._check_requester(parent, requester)
        today = self._today(today)
        self._check_in_progress(parent, today)

        end = to_date(parent.end_date)
        if new_end <= end:
            raise ValidationFailed("invalid_date_range", "An extension must end after the current end date")
        pending = await LeaveRequest.find(
            LeaveRequest.parent_leave_id == parent.id,
            In(LeaveRequest.status, list(IN_APPROVAL_STATUSES)),
        ).count()
        if pending:
            raise ValidationFailed("extension_pending", "An extension of this leave is already awaiting approval")

        data = LeaveCreate(
            leave_type=parent.leave_type,
            start_date=end + timedelta(days=1),
            end_date=new_end,
            reason=f"Extension of leave {parent.id}: {reason}",
            certificate_attached=parent.certificate_attached,
        )
        await self.validate(
            requester, data.leave_type, data.start_date, data.end_date, data.certificate_attached, today,
            require_notice=False,
        )
        draft = await self.create_draft(requester, data, parent_leave_id=parent.id)
        return await self.submit(draft.id, requester, today)

    async def shorten(
        self,
        leave_id: PydanticObjectId,
        requester: User,
        new_end: date,
        reason: Optional[str] = None,
        today: Optional[date] = None,
    ) -> LeaveRequest:
        """Bring forward the end date of approved leave that is under way"""
        leave = await self.get(leave_id)
        self._check_requester(leave, requester)
        today = self._today(today)
        self._check_in_progress(leave, today)

        if new_end >= to_date(leave.end_date):
            raise ValidationFailed("invalid_date_range", "The new end date must be before the current end date")
        if new_end < today:
            raise ValidationFailed("end_date_in_past", "The new end date cannot be in the past")
        return await self._cut_short(leave, requester, new_end, "LEAVE_SHORTENED", reason)

    async def partial_cancel(
        self,
        leave_id: PydanticObjectId,
        requester: User,
        reason: Optional[str] = None,
        today: Optional[date] = None,
    ) -> LeaveRequest:
        """Give up the days of approved leave that are still ahead

        Days already taken are kept: the leave now ends yesterday, or today
        when it started today.
        """
        leave = await self.get(leave_id)
        self._check_requester(leave, requester)
        today = self._today(today)
        self._check_in_progress(leave, today)

        yesterday = today - timedelta(days=1)
        new_end = yesterday if yesterday >= to_date(leave.start_date) else today
        return await self._cut_short(leave, requester, new_end, "PARTIAL_CANCELLATION", reason)

    async def _cut_short(
        self,
        leave: LeaveRequest,
        actor: User,
        new_end: date,
        action: str,
        reason: Optional[str],
    ) -> LeaveRequest:
        rules = await self.policies.get_rules(leave.leave_type)
        self._check_fitness(leave, rules)

        start = to_date(leave.start_date)
        days = count_leave_days(
            start, new_end, rules.working_days_only, self.weekend_days, await self._holidays(start, new_end),
        )
        released = leave.working_days - days
        if released <= 0:
            raise ValidationFailed("nothing_released", "The new end date does not free any leave days")

        refunds = split_refund(leave, released)
        refund = sum(refunds.values())
        updated = await self._refund_then_swap(leave, refunds, {
            "end_date": to_datetime(new_end),
            "working_days": days,
            "credited_days": leave.credited_days + refund,
            "charges": _after_refund(leave, refunds),
        })
        await self._record(leave, updated, action, actor, {
            "previous_end_date": to_date(leave.end_date).isoformat(),
            "new_end_date": new_end.isoformat(),
            "released_days": released,
            "credited_days": refund,
            "reason": reason,
        })
        await self._notify_role(
            updated, Role.HR_ADMIN, NotificationType.LEAVE_SHORTENED, "Leave Shortened",
            f"{leave.requester_name}'s {leave.leave_type.value} leave now ends on {new_end}; {refund:g} days were credited back.",
        )
        await self._cap_earned_leave(leave, refunds)
        return updated

    async def attach_fitness_certificate(self, leave_id: PydanticObjectId, requester: User) -> LeaveRequest:
        """Hand in a fitness certificate; HR admin, HR head and the CEO review it in turn"""
        leave = await self.get(leave_id)
        self._check_requester(leave, requester)
        rules = await self.policies.get_rules(leave.leave_type)
        if not self._fitness_required(leave, rules):
            raise ValidationFailed("fitness_not_required", "This leave does not need a fitness certificate")
        if leave.status not in DUTY_STATUSES:
            raise ValidationFailed("invalid_transition", f"Cannot attach a fitness certificate to a {leave.status.value} request")
        if leave.fitness_certificate_attached:
            raise AlreadyDecided("A fitness certificate is already under review")

        steps = [ApprovalStep(sequence=i, role=role) for i, role in enumerate(FITNESS_CHAIN)]
        updated = await self._swap(leave, {"fitness_certificate_attached": True, "fitness_steps": steps})
        await self._record(leave, updated, "FITNESS_CERTIFICATE_ATTACHED", requester)
        await self._notify_role(
            updated, steps[0].role, NotificationType.FITNESS_REVIEW, "Fitness Certificate Review Required",
            f"{leave.requester_name}'s fitness certificate needs your review.",
        )
        return updated

    async def return_to_duty(self, leave_id: PydanticObjectId, requester: User) -> LeaveRequest:
        leave = await self.get(leave_id)
        self._check_requester(leave, requester)
        if leave.status not in DUTY_STATUSES:
            raise ValidationFailed("invalid_transition", f"Cannot return to duty from a {leave.status.value} request")
        if leave.duty_resumed_at is not None:
            raise AlreadyDecided("Duty has already been resumed")
        rules = await self.policies.get_rules(leave.leave_type)
        self._check_fitness(leave, rules)

        updated = await self._swap(leave, {"duty_resumed_at": datetime.utcnow()})
        await self._record(leave, updated, "DUTY_RESUMED", requester)
        return updated

    # ----- approver operations -----

    async def forward(self, leave_id: PydanticObjectId, actor: User, comment: Optional[str] = None) -> LeaveRequest:
        leave = await self.get(leave_id)
        self._check_approver(leave, actor)
        if leave.is_final_stage:
            raise ValidationFailed("invalid_transition", "The final approver must approve or reject")

        updated = await self._swap(leave, {
            "status": LeaveStatus.PENDING,
            "steps": self._decided_steps(leave, actor, StepStatus.APPROVED, comment),
            "current_stage_index": leave.current_stage_index + 1,
        })
        await self._record(leave, updated, "LEAVE_FORWARDED", actor, {
            "from_stage": leave.current_step.role.value,
            "to_stage": updated.current_step.role.value,
        })
        await self._notify_approvers(updated, NotificationType.LEAVE_FORWARDED, "Leave Request Awaiting Approval")
        return updated

    async def approve(self, leave_id: PydanticObjectId, actor: User, comment: Optional[str] = None) -> LeaveRequest:
        leave = await self.get(leave_id)
        self._check_approver(leave, actor)
        if not leave.is_final_stage:
            raise ValidationFailed("not_final_stage", "Only the final approver can approve; forward instead")

        rules = await self.policies.get_rules(leave.leave_type)
        validator.check_certificate(leave.working_days, rules, leave.certificate_attached)
        charges = await self._plan(leave, rules)

        try:
            await self._debit(leave, charges)
        except InsufficientBalance:
            # a concurrent approval of this same request may have taken the days
            current = await self.get(leave.id)
            if current.version != leave.version:
                raise ConflictingUpdate()
            raise

        try:
            updated = await self._swap(leave, {
                "status": LeaveStatus.APPROVED,
                "steps": self._decided_steps(leave, actor, StepStatus.APPROVED, comment),
                "debited_days": leave.working_days,
                "charges": _stored(charges),
                "decided_at": datetime.utcnow(),
            })
        except ConflictingUpdate:
            await self._credit(leave, charges)
            logger.warning("Reversed debit of %s for leave %s after a conflicting update", _stored(charges), leave.id)
            raise

        await self._record(leave, updated, "LEAVE_APPROVED", actor, {
            "debited_days": leave.working_days,
            "charges": _stored(charges),
        })
        await self._notify_requester(
            updated,
            NotificationType.LEAVE_APPROVED,
            "Leave Approved",
            f"Your {leave.leave_type.value} leave from {to_date(leave.start_date)} has been approved.",
        )
        return updated

    async def reject(self, leave_id: PydanticObjectId, actor: User, comment: Optional[str]) -> LeaveRequest:
        if not comment or not comment.strip():
            raise ValidationFailed("comment_required", "A comment is required to reject a request")
        leave = await self.get(leave_id)
        self._check_approver(leave, actor)

        updated = await self._swap(leave, {
            "status": LeaveStatus.REJECTED,
            "steps": self._decided_steps(leave, actor, StepStatus.REJECTED, comment),
            "decided_at": datetime.utcnow(),
        })
        await self._record(leave, updated, "LEAVE_REJECTED", actor, {"comment": comment})
        await self._notify_requester(
            updated,
            NotificationType.LEAVE_REJECTED,
            "Leave Rejected",
            f"Your {leave.leave_type.value} leave was rejected: {comment}",
        )
        return updated

    async def return_to_requester(self, leave_id: PydanticObjectId, actor: User, comment: Optional[str]) -> LeaveRequest:
        if not comment or not comment.strip():
            raise ValidationFailed("comment_required", "A comment is required to return a request")
        leave = await self.get(leave_id)
        self._check_approver(leave, actor)

        updated = await self._swap(leave, {
            "status": LeaveStatus.RETURNED,
            "steps": self._decided_steps(leave, actor, StepStatus.RETURNED, comment),
        })
        await self._record(leave, updated, "LEAVE_RETURNED", actor, {"comment": comment})
        await self._notify_requester(
            updated,
            NotificationType.LEAVE_RETURNED,
            "Leave Returned for Changes",
            f"Your {leave.leave_type.value} leave was returned: {comment}",
        )
        return updated

    async def approve_cancellation(
        self,
        leave_id: PydanticObjectId,
        actor: User,
        comment: Optional[str] = None,
    ) -> LeaveRequest:
        leave = await self.get(leave_id)
        require(actor.role, Operation.DECIDE_CANCELLATION)
        if leave.status != LeaveStatus.CANCELLATION_REQUESTED:
            raise ValidationFailed("invalid_transition", "No cancellation is pending on this request")
        if actor.id == leave.requester_id:
            raise NotCurrentApprover("You cannot decide your own cancellation")

        refunds = outstanding_charges(leave)
        refund = sum(refunds.values())
        updated = await self._refund_then_swap(leave, refunds, {
            "status": LeaveStatus.CANCELLED,
            "status_before_cancellation": None,
            "credited_days": leave.credited_days + refund,
            "charges": {},
            "decided_at": datetime.utcnow(),
        })

        await self._record(leave, updated, "LEAVE_CANCELLED", actor, {"credited_days": refund, "comment": comment})
        await self._notify_requester(
            updated,
            NotificationType.LEAVE_CANCELLED,
            "Leave Cancelled",
            f"Your {leave.leave_type.value} leave has been cancelled.",
        )
        await self._cap_earned_leave(leave, refunds)
        return updated

    async def reject_cancellation(
        self,
        leave_id: PydanticObjectId,
        actor: User,
        comment: Optional[str] = None,
    ) -> LeaveRequest:
        leave = await self.get(leave_id)
        require(actor.role, Operation.DECIDE_CANCELLATION)
        if leave.status != LeaveStatus.CANCELLATION_REQUESTED:
            raise ValidationFailed("invalid_transition", "No cancellation is pending on this request")
        if actor.id == leave.requester_id:
            raise NotCurrentApprover("You cannot decide your own cancellation")

        restored = leave.status_before_cancellation or LeaveStatus.SUBMITTED
        updated = await self._swap(leave, {"status": restored, "status_before_cancellation": None})
        await self._record(leave, updated, "CANCELLATION_REJECTED", actor, {"comment": comment})
        await self._notify_requester(
            updated,
            NotificationType.GENERAL,
            "Cancellation Rejected",
            f"Your cancellation request was rejected; the leave stays {restored.value}.",
        )
        return updated

    async def recall(
        self,
        leave_id: PydanticObjectId,
        actor: User,
        today: Optional[date] = None,
        comment: Optional[str] = None,
    ) -> LeaveRequest:
        """Call an employee back from approved leave, crediting days per the type's recall rule"""
        require(actor.role, Operation.RECALL)
        leave = await self.get(leave_id)
        if leave.status != LeaveStatus.APPROVED:
            raise ValidationFailed("invalid_transition", "Only approved leave can be recalled")
        if actor.id == leave.requester_id:
            raise NotCurrentApprover("You cannot recall your own leave")

        today = self._today(today)
        start, end = to_date(leave.start_date), to_date(leave.end_date)
        if end < today:
            raise ValidationFailed("recall_past_leave", "This leave has already ended")

        rules = await self.policies.get_rules(leave.leave_type)
        outstanding = sum(outstanding_charges(leave).values())
        if rules.recall_credit == RecallCredit.FULL:
            refund = outstanding
        elif rules.recall_credit == RecallCredit.UNUSED:
            unused = count_leave_days(
                max(today, start), end, rules.working_days_only, self.weekend_days, await self._holidays(start, end),
            )
            refund = min(unused, outstanding)
        else:
            refund = 0

        refunds = split_refund(leave, refund)
        updated = await self._refund_then_swap(leave, refunds, {
            "status": LeaveStatus.RECALLED,
            "credited_days": leave.credited_days + refund,
            "charges": _after_refund(leave, refunds),
            "decided_at": datetime.utcnow(),
        })

        await self._record(leave, updated, "LEAVE_RECALLED", actor, {
            "credited_days": refund,
            "recall_credit": rules.recall_credit.value,
            "comment": comment,
        })
        await self._notify_requester(
            updated,
            NotificationType.LEAVE_RECALLED,
            "Recalled From Leave",
            f"You have been recalled from {leave.leave_type.value} leave; {refund:g} days were credited back.",
        )
        await self._cap_earned_leave(leave, refunds)
        return updated

    async def approve_fitness_certificate(
        self,
        leave_id: PydanticObjectId,
        actor: User,
        comment: Optional[str] = None,
    ) -> LeaveRequest:
        require(actor.role, Operation.REVIEW_FITNESS)
        leave = await self.get(leave_id)
        if actor.id == leave.requester_id:
            raise NotCurrentApprover("You cannot review your own fitness certificate")
        if leave.fitness_cleared:
            raise AlreadyDecided("The fitness certificate is already cleared")
        step = leave.pending_fitness_step
        if not leave.fitness_certificate_attached or step is None:
            raise ValidationFailed("fitness_certificate_missing", "No fitness certificate has been handed in")
        if actor.role != step.role:
            raise NotCurrentApprover(f"The certificate is waiting on {step.role.value}")

        steps = [s.model_copy() for s in leave.fitness_steps]
        steps[step.sequence] = step.model_copy(update={
            "status": StepStatus.APPROVED,
            "decided_by": actor.id,
            "decided_at": datetime.utcnow(),
            "comment": comment,
        })
        cleared = step.sequence == len(steps) - 1
        updated = await self._swap(leave, {"fitness_steps": steps, "fitness_cleared": cleared})
        await self._record(leave, updated, "FITNESS_CERTIFICATE_APPROVED", actor, {
            "stage": step.role.value,
            "cleared": cleared,
        })

        if cleared:
            await self._notify_requester(
                updated,
                NotificationType.LEAVE_APPROVED,
                "Fitness Certificate Approved",
                "Your fitness certificate has been approved by all reviewers. You may now return to duty.",
            )
        else:
            await self._notify_role(
                updated, steps[step.sequence + 1].role, NotificationType.FITNESS_REVIEW,
                "Fitness Certificate Review Required",
                f"{leave.requester_name}'s fitness certificate needs your review.",
            )
        return updated

    # ----- bulk operations -----

    async def bulk_approve(
        self,
        leave_ids: List[PydanticObjectId],
        actor: User,
        comment: Optional[str] = None,
    ) -> BulkResult:
        """Approve each request on its own; one failure does not stop the rest"""
        result = BulkResult()
        for leave_id in leave_ids:
            try:
                await self.approve(leave_id, actor, comment)
            except LeaveError as e:
                result.failed.append(BulkFailure(id=leave_id, error=e.code, message=e.message))
            else:
                result.succeeded.append(leave_id)
        logger.info(
            "Bulk approval by %s: %d approved, %d failed", actor.email, len(result.succeeded), len(result.failed)
        )
        return result

    async def bulk_cancel(
        self,
        leave_ids: List[PydanticObjectId],
        requester: User,
        reason: Optional[str] = None,
    ) -> BulkResult:
        """Cancel, or ask to cancel, each of the requester's own requests"""
        result = BulkResult()
        for leave_id in leave_ids:
            try:
                await self.request_cancellation(leave_id, requester, reason)
            except LeaveError as e:
                result.failed.append(BulkFailure(id=leave_id, error=e.code, message=e.message))
            else:
                result.succeeded.append(leave_id)
        logger.info(
            "Bulk cancellation by %s: %d done, %d failed", requester.email, len(result.succeeded), len(result.failed)
        )
        return result


workflow = LeaveWorkflow()
