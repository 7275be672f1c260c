"""
Audit Log Model
Append-only record of state-changing operations
"""
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
from beanie import Document


class AuditLog(Document):
    actor: str  # actor email, or the system actor for jobs
    actor_role: Optional[str] = None
    action: str
    target: str  # affected user email or resource id
    details: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = ["actor", "action", "target", "created_at"]


class AuditEntry(BaseModel):
    """What a component hands to the audit sink"""
    actor: str
    actor_role: Optional[str] = None
    action: str
    target: str
    details: Dict[str, Any] = {}
