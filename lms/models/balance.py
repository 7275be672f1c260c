"""
Balance Model
Per user, leave type and year day counts
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field
from beanie import Document, PydanticObjectId
from pymongo import ASCENDING, IndexModel

from lms.models.leave import LeaveType


class Balance(Document):
    """Balance ledger row keyed by (user, leave type, year)"""
    user_id: PydanticObjectId
    leave_type: LeaveType
    year: int

    opening: float = 0.0
    accrued: float = 0.0
    used: float = 0.0
    closing: float = 0.0
    closing_overridden: bool = False  # set by lapse/overflow capping
    opening_overridden: bool = False  # set by hand; never recomputed from the previous year

    last_accrual_month: Optional[str] = None  # "YYYY-MM"
    revision: int = 0

    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "balances"
        indexes = [
            IndexModel(
                [("user_id", ASCENDING), ("leave_type", ASCENDING), ("year", ASCENDING)],
                unique=True,
            ),
        ]

    @property
    def computed_closing(self) -> float:
        return self.opening + self.accrued - self.used

    @property
    def remaining(self) -> float:
        if self.closing_overridden:
            return self.closing
        return self.computed_closing


class BalanceResponse(BaseModel):
    """Schema for balance response slice"""
    leave_type: LeaveType
    year: int
    opening: float
    accrued: float
    used: float
    closing: float
    remaining: float
