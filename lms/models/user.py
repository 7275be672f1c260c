"""
User Model
Database schema for employees and approvers
"""
from datetime import datetime
from typing import Optional
from pydantic import EmailStr, Field
from beanie import Document, PydanticObjectId

from lms.core.rbac import Role


class User(Document):
    """User document model"""

    # Basic Information
    employee_id: str = Field(..., unique=True, index=True)
    name: str
    email: EmailStr = Field(..., unique=True, index=True)

    # Employment Details
    role: Role = Role.EMPLOYEE
    department: str
    designation: Optional[str] = None
    dept_head_id: Optional[PydanticObjectId] = None  # direct department head
    join_date: datetime
    retirement_date: Optional[datetime] = None

    # Authentication
    password_hash: str = ""
    is_active: bool = True

    # Metadata
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    last_login: Optional[datetime] = None

    class Settings:
        name = "users"
        indexes = [
            "employee_id",
            "email",
            "role",
            "department",
        ]
