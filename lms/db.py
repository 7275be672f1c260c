"""
Database bootstrap shared by the app, the operator scripts and the tests
"""
import logging

from beanie import init_beanie

from lms.models.audit import AuditLog
from lms.models.balance import Balance
from lms.models.holiday import Holiday
from lms.models.leave import LeaveRequest, LeaveVersion
from lms.models.notification import Notification
from lms.models.policy import LeavePolicy
from lms.models.user import User

logger = logging.getLogger(__name__)

DOCUMENT_MODELS = [User, LeaveRequest, LeaveVersion, Balance, LeavePolicy, AuditLog, Notification, Holiday]


async def init_db(database) -> None:
    """Register every document model against the given Motor database"""
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    logger.info("Beanie initialised with %d document models", len(DOCUMENT_MODELS))
