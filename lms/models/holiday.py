"""
Holiday Model
Closed days excluded from working-days-only leave counts
"""
from beanie import Document
from pydantic import BaseModel, Field
from datetime import date, datetime
from typing import Optional
from enum import Enum


class HolidayType(str, Enum):
    PUBLIC = "public"
    OPTIONAL = "optional"
    COMPANY = "company"


class Holiday(Document):
    name: str
    date: datetime  # midnight of the closed day
    type: HolidayType = HolidayType.PUBLIC
    description: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "holidays"
        indexes = ["date"]


class HolidayCreate(BaseModel):
    name: str
    date: date
    type: HolidayType = HolidayType.PUBLIC
    description: Optional[str] = None
