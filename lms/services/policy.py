"""
Policy Rule Set
Per leave type constraints, seeded with the organisation defaults and
editable by policy administrators
"""
import logging
from datetime import datetime
from typing import Any, Dict, List

from lms.core.exceptions import InvalidField, NotFound
from lms.core.rbac import Operation, Role, require
from lms.models.leave import LeaveType
from lms.models.policy import NUMERIC_RULE_FIELDS, LeavePolicy, PolicyRules, RecallCredit

logger = logging.getLogger(__name__)


DEFAULT_POLICIES: Dict[LeaveType, PolicyRules] = {
    LeaveType.EARNED: PolicyRules(
        leave_type=LeaveType.EARNED,
        min_days=1,
        notice_days_required=5,
        carry_forward_limit=60,
        carry_forward_eligible=True,
        backdate_limit_days=30,
    ),
    LeaveType.CASUAL: PolicyRules(
        leave_type=LeaveType.CASUAL,
        max_consecutive_days=3,
        min_days=1,
        annual_cap=10,
        lapses_at_year_end=True,
        backdate_limit_days=0,
        conversion_limit=3,
        conversion_targets=[LeaveType.EARNED],
        standalone_only=True,
    ),
    LeaveType.MEDICAL: PolicyRules(
        leave_type=LeaveType.MEDICAL,
        min_days=1,
        notice_exempt=True,
        annual_cap=14,
        lapses_at_year_end=True,
        certificate_required_over_days=3,
        backdate_limit_days=30,
        conversion_limit=14,
        conversion_targets=[LeaveType.EARNED, LeaveType.SPECIAL, LeaveType.EXTRA_WITHOUT_PAY],
        fitness_certificate_over_days=7,
    ),
    LeaveType.MATERNITY: PolicyRules(
        leave_type=LeaveType.MATERNITY,
        max_consecutive_days=56,
        uncapped=True,
        ceo_required=True,
    ),
    LeaveType.PATERNITY: PolicyRules(
        leave_type=LeaveType.PATERNITY,
        max_consecutive_days=6,
        uncapped=True,
        max_occasions=2,
        min_months_between_occasions=36,
    ),
    LeaveType.STUDY: PolicyRules(
        leave_type=LeaveType.STUDY,
        max_consecutive_days=365,
        notice_days_required=30,
        uncapped=True,
        min_service_months=60,
        retirement_buffer_days=365,
        ceo_required=True,
    ),
    LeaveType.EXTRA_WITH_PAY: PolicyRules(
        leave_type=LeaveType.EXTRA_WITH_PAY,
        max_consecutive_days=365,
        uncapped=True,
        ceo_required=True,
    ),
    LeaveType.EXTRA_WITHOUT_PAY: PolicyRules(
        leave_type=LeaveType.EXTRA_WITHOUT_PAY,
        max_consecutive_days=365,
        uncapped=True,
        ceo_required=True,
        recall_credit=RecallCredit.NONE,
    ),
    LeaveType.QUARANTINE: PolicyRules(
        leave_type=LeaveType.QUARANTINE,
        max_consecutive_days=30,
        notice_exempt=True,
        uncapped=True,
    ),
    LeaveType.SPECIAL: PolicyRules(
        leave_type=LeaveType.SPECIAL,
        carry_forward_limit=120,
        carry_forward_eligible=True,
    ),
}


def apply_changes(rules: PolicyRules, changes: Dict[str, Any]) -> PolicyRules:
    """Return a copy of ``rules`` with ``changes`` applied; negative numbers are rejected"""
    for field in NUMERIC_RULE_FIELDS:
        value = changes.get(field)
        if value is not None and value < 0:
            raise InvalidField(field)

    unknown = set(changes) - set(PolicyRules.model_fields) - {"leave_type"}
    if unknown:
        raise InvalidField(sorted(unknown)[0], "Unknown policy field")

    data = rules.model_dump()
    data.update({k: v for k, v in changes.items() if k != "leave_type"})
    return PolicyRules.model_validate(data)


class PolicyService:
    """Lookup and update of the persisted policy table"""

    async def seed_defaults(self) -> int:
        """Insert the default row for every leave type that has none"""
        created = 0
        for leave_type, rules in DEFAULT_POLICIES.items():
            existing = await LeavePolicy.find_one(LeavePolicy.leave_type == leave_type)
            if existing:
                continue
            await LeavePolicy(**rules.model_dump()).insert()
            created += 1
        if created:
            logger.info("Seeded %d default leave policies", created)
        return created

    async def get_rules(self, leave_type: LeaveType) -> PolicyRules:
        policy = await LeavePolicy.find_one(LeavePolicy.leave_type == leave_type)
        if policy:
            return policy.rules()
        if leave_type in DEFAULT_POLICIES:
            return DEFAULT_POLICIES[leave_type]
        raise NotFound(f"No policy defined for {leave_type}")

    async def list_rules(self) -> List[PolicyRules]:
        return [await self.get_rules(leave_type) for leave_type in LeaveType]

    async def update_rule(
        self,
        actor_role: Role,
        leave_type: LeaveType,
        changes: Dict[str, Any],
        actor: str = "",
    ) -> PolicyRules:
        """Edit one leave type's rules; only policy administrators may do this"""
        require(actor_role, Operation.UPDATE_POLICY)

        current = await self.get_rules(leave_type)
        updated = apply_changes(current, changes)

        policy = await LeavePolicy.find_one(LeavePolicy.leave_type == leave_type)
        if policy is None:
            policy = LeavePolicy(**updated.model_dump())
        else:
            for key, value in updated.model_dump().items():
                setattr(policy, key, value)
        policy.updated_by = actor or None
        policy.updated_at = datetime.utcnow()
        await policy.save()

        logger.info("Policy for %s updated by %s: %s", leave_type.value, actor or actor_role, sorted(changes))
        return updated


policy_service = PolicyService()
