"""
Leave Model
Database schema for leave requests, their approval steps and versions
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from beanie import Document, PydanticObjectId
from enum import Enum
from pymongo import ASCENDING, IndexModel

from lms.core.rbac import Role


class LeaveType(str, Enum):
    """Types of leave"""
    EARNED = "EARNED"
    CASUAL = "CASUAL"
    MEDICAL = "MEDICAL"
    MATERNITY = "MATERNITY"
    PATERNITY = "PATERNITY"
    STUDY = "STUDY"
    EXTRA_WITH_PAY = "EXTRA_WITH_PAY"
    EXTRA_WITHOUT_PAY = "EXTRA_WITHOUT_PAY"
    QUARANTINE = "QUARANTINE"
    SPECIAL = "SPECIAL"


class LeaveStatus(str, Enum):
    """Leave request status"""
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    PENDING = "PENDING"
    RETURNED = "RETURNED"
    CANCELLATION_REQUESTED = "CANCELLATION_REQUESTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    RECALLED = "RECALLED"


IN_APPROVAL_STATUSES = {LeaveStatus.SUBMITTED, LeaveStatus.PENDING}
# Requests that hold their dates on the calendar
ACTIVE_STATUSES = IN_APPROVAL_STATUSES | {LeaveStatus.APPROVED, LeaveStatus.CANCELLATION_REQUESTED}


class StepStatus(str, Enum):
    """Decision status of one approval step"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    RETURNED = "RETURNED"


class ApprovalStep(BaseModel):
    """One approver role's slot in the chain"""
    sequence: int
    role: Role
    approver_id: Optional[PydanticObjectId] = None  # fixed approver, e.g. the requester's dept head
    status: StepStatus = StepStatus.PENDING
    decided_by: Optional[PydanticObjectId] = None
    decided_at: Optional[datetime] = None
    comment: Optional[str] = None


class LeaveRequest(Document):
    """Leave request document"""

    # Requester Reference
    requester_id: PydanticObjectId = Field(..., index=True)
    requester_name: str
    department: str

    # Leave Details
    leave_type: LeaveType
    start_date: datetime = Field(..., index=True)
    end_date: datetime = Field(..., index=True)
    working_days: int = 0
    reason: str = ""
    certificate_attached: bool = False
    convert_excess: bool = False  # charge days beyond the type's conversion limit to other types
    parent_leave_id: Optional[PydanticObjectId] = None  # set on extension requests

    # Workflow
    status: LeaveStatus = LeaveStatus.DRAFT
    current_stage_index: int = 0
    steps: List[ApprovalStep] = []
    version: int = 0
    status_before_cancellation: Optional[LeaveStatus] = None

    # Ledger bookkeeping
    debited_days: int = 0
    credited_days: int = 0
    charges: Dict[str, float] = {}  # leave type -> days still charged to that balance
    consumed_days: int = 0  # taken before a recall, kept when the request is resubmitted

    # Return to duty
    fitness_certificate_attached: bool = False
    fitness_steps: List[ApprovalStep] = []
    fitness_cleared: bool = False
    duty_resumed_at: Optional[datetime] = None

    # Metadata
    submitted_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "leave_requests"
        indexes = [
            "requester_id",
            "status",
            "leave_type",
            ("start_date", "end_date"),
        ]

    @property
    def current_step(self) -> Optional[ApprovalStep]:
        if 0 <= self.current_stage_index < len(self.steps):
            return self.steps[self.current_stage_index]
        return None

    @property
    def is_final_stage(self) -> bool:
        return self.current_stage_index == len(self.steps) - 1

    @property
    def pending_fitness_step(self) -> Optional[ApprovalStep]:
        for step in self.fitness_steps:
            if step.status == StepStatus.PENDING:
                return step
        return None

    def snapshot(self) -> Dict[str, Any]:
        """Field values of this request, without storage identity"""
        return self.model_dump(exclude={"id", "revision_id"})


class LeaveVersion(Document):
    """Immutable snapshot written on every state-changing transition"""
    leave_id: PydanticObjectId
    version: int
    action: str
    actor_id: Optional[PydanticObjectId] = None
    actor_role: str
    data: Dict[str, Any]
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "leave_versions"
        indexes = [
            IndexModel([("leave_id", ASCENDING), ("version", ASCENDING)], unique=True),
        ]

    def restore(self) -> LeaveRequest:
        """Rebuild the request as it was when this version was taken"""
        return LeaveRequest.model_validate({**self.data, "id": self.leave_id})


class LeaveCreate(BaseModel):
    """Schema for creating a leave request"""
    leave_type: LeaveType
    start_date: date
    end_date: date
    reason: str = ""
    certificate_attached: bool = False
    convert_excess: bool = False


class LeaveUpdate(BaseModel):
    """Schema for changes made before resubmitting a returned request"""
    leave_type: Optional[LeaveType] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    reason: Optional[str] = None
    certificate_attached: Optional[bool] = None


class DecisionRequest(BaseModel):
    """Schema for approver decisions"""
    comment: Optional[str] = None


class ExtensionRequest(BaseModel):
    """Schema for extending an approved leave past its end date"""
    new_end_date: date
    reason: str = Field(..., min_length=10)


class ShortenRequest(BaseModel):
    """Schema for bringing an approved leave's end date forward"""
    new_end_date: date
    reason: Optional[str] = None


class BulkDecisionRequest(BaseModel):
    """Schema for deciding several requests at once"""
    ids: List[PydanticObjectId] = Field(..., min_length=1)
    comment: Optional[str] = None


class BulkFailure(BaseModel):
    id: PydanticObjectId
    error: str
    message: str


class BulkResult(BaseModel):
    """Per request outcome of a bulk operation"""
    succeeded: List[PydanticObjectId] = []
    failed: List[BulkFailure] = []


class LeaveResponse(BaseModel):
    """Schema for leave response slice"""
    id: PydanticObjectId
    requester_id: PydanticObjectId
    requester_name: str
    department: str
    leave_type: LeaveType
    start_date: datetime
    end_date: datetime
    working_days: int
    reason: str
    certificate_attached: bool
    status: LeaveStatus
    current_stage_index: int
    steps: List[ApprovalStep]
    version: int
    debited_days: int = 0
    credited_days: int = 0
    charges: Dict[str, float] = {}
    convert_excess: bool = False
    parent_leave_id: Optional[PydanticObjectId] = None
    fitness_certificate_attached: bool = False
    fitness_steps: List[ApprovalStep] = []
    fitness_cleared: bool = False
    duty_resumed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class LeaveListResponse(BaseModel):
    """Schema for list of leaves"""
    total: int
    leaves: List[LeaveResponse]
