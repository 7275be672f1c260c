"""
Leave Policy Model
Per leave type rule row
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field
from beanie import Document

from lms.models.leave import LeaveType


class RecallCredit(str, Enum):
    """How much balance a recalled leave gives back"""
    NONE = "none"
    UNUSED = "unused"
    FULL = "full"


class PolicyRules(BaseModel):
    """Constraints for one leave type"""
    leave_type: LeaveType
    max_consecutive_days: Optional[int] = None
    min_days: Optional[int] = None
    notice_days_required: Optional[int] = None
    notice_exempt: bool = False
    carry_forward_limit: Optional[float] = None
    annual_cap: Optional[float] = None
    backdate_limit_days: Optional[int] = None  # None = unrestricted, 0 = no backdating

    working_days_only: bool = False
    uncapped: bool = False
    lapses_at_year_end: bool = False
    carry_forward_eligible: bool = False
    certificate_required_over_days: Optional[int] = None
    min_service_months: Optional[int] = None
    retirement_buffer_days: Optional[int] = None
    max_occasions: Optional[int] = None  # per career
    min_months_between_occasions: Optional[int] = None
    ceo_required: bool = False
    recall_credit: RecallCredit = RecallCredit.UNUSED
    # with convert_excess set, days beyond conversion_limit are charged to
    # conversion_targets in order
    conversion_limit: Optional[int] = None
    conversion_targets: List[LeaveType] = Field(default_factory=list)
    fitness_certificate_over_days: Optional[int] = None  # return to duty needs a cleared fitness certificate
    standalone_only: bool = False  # may not touch any other leave on either side


NUMERIC_RULE_FIELDS = [
    "max_consecutive_days",
    "min_days",
    "notice_days_required",
    "carry_forward_limit",
    "annual_cap",
    "backdate_limit_days",
    "certificate_required_over_days",
    "min_service_months",
    "retirement_buffer_days",
    "max_occasions",
    "min_months_between_occasions",
    "conversion_limit",
    "fitness_certificate_over_days",
]


class LeavePolicy(PolicyRules, Document):
    """Persisted policy row, one per leave type"""
    updated_by: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "leave_policies"
        indexes = ["leave_type"]

    def rules(self) -> PolicyRules:
        return PolicyRules.model_validate(self.model_dump(include=set(PolicyRules.model_fields)))


class PolicyUpdate(BaseModel):
    """Schema for policy edits; unset fields stay as they are"""
    max_consecutive_days: Optional[int] = None
    min_days: Optional[int] = None
    notice_days_required: Optional[int] = None
    notice_exempt: Optional[bool] = None
    carry_forward_limit: Optional[float] = None
    annual_cap: Optional[float] = None
    backdate_limit_days: Optional[int] = None
    working_days_only: Optional[bool] = None
    uncapped: Optional[bool] = None
    lapses_at_year_end: Optional[bool] = None
    carry_forward_eligible: Optional[bool] = None
    certificate_required_over_days: Optional[int] = None
    min_service_months: Optional[int] = None
    retirement_buffer_days: Optional[int] = None
    max_occasions: Optional[int] = None
    min_months_between_occasions: Optional[int] = None
    ceo_required: Optional[bool] = None
    recall_credit: Optional[RecallCredit] = None
    conversion_limit: Optional[int] = None
    conversion_targets: Optional[List[LeaveType]] = None
    fitness_certificate_over_days: Optional[int] = None
    standalone_only: Optional[bool] = None
