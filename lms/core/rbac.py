"""
Role capability table
Single declarative source for role permissions, used by the workflow core
and by the API layer for UI gating
"""
from enum import Enum
from typing import Dict

from lms.core.exceptions import Forbidden


class Role(str, Enum):
    """Application roles"""
    EMPLOYEE = "EMPLOYEE"
    DEPT_HEAD = "DEPT_HEAD"
    HR_ADMIN = "HR_ADMIN"
    HR_HEAD = "HR_HEAD"
    CEO = "CEO"
    SYSTEM_ADMIN = "SYSTEM_ADMIN"


class Operation(str, Enum):
    """Operations guarded by the capability table"""
    SUBMIT_LEAVE = "submit_leave"
    DECIDE_STEP = "decide_step"
    REQUEST_CANCELLATION = "request_cancellation"
    DECIDE_CANCELLATION = "decide_cancellation"
    RECALL = "recall"
    VIEW_ALL_REQUESTS = "view_all_requests"
    VIEW_BALANCES = "view_balances"
    UPDATE_POLICY = "update_policy"
    VIEW_AUDIT = "view_audit"
    RUN_JOBS = "run_jobs"
    MANAGE_HOLIDAYS = "manage_holidays"
    VIEW_REPORTS = "view_reports"
    REVIEW_FITNESS = "review_fitness"


# Canonical approval chain, lowest stage first
APPROVAL_CHAIN = [Role.DEPT_HEAD, Role.HR_ADMIN, Role.HR_HEAD, Role.CEO]

# Reviewers of a fitness certificate, in order
FITNESS_CHAIN = [Role.HR_ADMIN, Role.HR_HEAD, Role.CEO]

ROLE_RANK: Dict[Role, int] = {
    Role.EMPLOYEE: 0,
    Role.DEPT_HEAD: 1,
    Role.HR_ADMIN: 2,
    Role.HR_HEAD: 3,
    Role.CEO: 4,
    Role.SYSTEM_ADMIN: 0,
}


def _grants(*operations: Operation) -> Dict[Operation, bool]:
    return {op: op in operations for op in Operation}


CAPABILITIES: Dict[Role, Dict[Operation, bool]] = {
    Role.EMPLOYEE: _grants(
        Operation.SUBMIT_LEAVE,
        Operation.REQUEST_CANCELLATION,
    ),
    Role.DEPT_HEAD: _grants(
        Operation.SUBMIT_LEAVE,
        Operation.DECIDE_STEP,
        Operation.REQUEST_CANCELLATION,
        Operation.VIEW_ALL_REQUESTS,
    ),
    Role.HR_ADMIN: _grants(
        Operation.SUBMIT_LEAVE,
        Operation.DECIDE_STEP,
        Operation.REQUEST_CANCELLATION,
        Operation.DECIDE_CANCELLATION,
        Operation.RECALL,
        Operation.VIEW_ALL_REQUESTS,
        Operation.VIEW_BALANCES,
        Operation.UPDATE_POLICY,
        Operation.REVIEW_FITNESS,
        Operation.VIEW_REPORTS,
    ),
    Role.HR_HEAD: _grants(
        Operation.SUBMIT_LEAVE,
        Operation.DECIDE_STEP,
        Operation.REQUEST_CANCELLATION,
        Operation.DECIDE_CANCELLATION,
        Operation.RECALL,
        Operation.VIEW_ALL_REQUESTS,
        Operation.VIEW_BALANCES,
        Operation.UPDATE_POLICY,
        Operation.REVIEW_FITNESS,
        Operation.VIEW_AUDIT,
        Operation.VIEW_REPORTS,
    ),
    Role.CEO: _grants(
        Operation.SUBMIT_LEAVE,
        Operation.DECIDE_STEP,
        Operation.REQUEST_CANCELLATION,
        Operation.DECIDE_CANCELLATION,
        Operation.RECALL,
        Operation.VIEW_ALL_REQUESTS,
        Operation.VIEW_BALANCES,
        Operation.UPDATE_POLICY,
        Operation.REVIEW_FITNESS,
        Operation.VIEW_AUDIT,
        Operation.VIEW_REPORTS,
    ),
    Role.SYSTEM_ADMIN: _grants(
        Operation.VIEW_ALL_REQUESTS,
        Operation.VIEW_BALANCES,
        Operation.UPDATE_POLICY,
        Operation.VIEW_AUDIT,
        Operation.RUN_JOBS,
        Operation.MANAGE_HOLIDAYS,
        Operation.VIEW_REPORTS,
    ),
}


def can(role: Role, operation: Operation) -> bool:
    """Check whether a role may perform an operation"""
    return CAPABILITIES.get(Role(role), {}).get(operation, False)


def require(role: Role, operation: Operation) -> None:
    """Raise Forbidden unless the role may perform the operation"""
    if not can(role, operation):
        raise Forbidden(f"Role {Role(role).value} may not perform {operation.value}")


def capabilities_for(role: Role) -> Dict[str, bool]:
    """Capability map for a role, keyed by operation name"""
    return {op.value: allowed for op, allowed in CAPABILITIES.get(Role(role), {}).items()}
