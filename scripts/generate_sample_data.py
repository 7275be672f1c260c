import asyncio
import logging
from datetime import datetime, timedelta
import random
from motor.motor_asyncio import AsyncIOMotorClient

import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from lms.config import settings
from lms.core.log import setup_logging
from lms.core.rbac import Role
from lms.db import init_db
from lms.models.user import User
from lms.models.holiday import Holiday, HolidayType
from lms.models.leave import LeaveType
from lms.services.ledger import ledger
from lms.services.policy import policy_service
from lms.api.routes.auth import get_password_hash

logger = logging.getLogger("generate_sample_data")

async def create_sample_data():
    """Populate database with an approver chain, employees, balances and holidays"""
    logger.info("Starting sample data generation")

    client = AsyncIOMotorClient(settings.MONGODB_URL)
    await init_db(client[settings.MONGODB_DB_NAME])
    await policy_service.seed_defaults()

    depts = ["Engineering", "Finance", "Operations"]
    password_hash = get_password_hash("Employee123!")
    year = datetime.utcnow().year

    # Organisation-wide approvers
    approvers = [
        ("EMP001", "Farhana Rahman", Role.HR_ADMIN, "HR"),
        ("EMP002", "Kamal Hossain", Role.HR_HEAD, "HR"),
        ("EMP003", "Nusrat Jahan", Role.CEO, "Management"),
    ]
    # One department head per department
    for i, dept in enumerate(depts):
        approvers.append((f"EMP01{i}", f"{dept} Head", Role.DEPT_HEAD, dept))

    heads = {}
    for emp_id, name, role, dept in approvers:
        user = await _ensure_user(emp_id, name, role, dept, password_hash)
        if role == Role.DEPT_HEAD:
            heads[dept] = user

    # Employees
    names = ["Arif Chowdhury", "Sadia Islam", "Tanvir Ahmed", "Rumana Akter", "Imran Kabir", "Mitu Sultana"]
    employees = []
    for i, name in enumerate(names):
        dept = random.choice(depts)
        user = await _ensure_user(
            f"EMP{100 + i}", name, Role.EMPLOYEE, dept, password_hash, dept_head=heads[dept],
        )
        employees.append(user)

    # Opening balances for the current year
    for user in employees:
        for leave_type in (LeaveType.EARNED, LeaveType.CASUAL, LeaveType.MEDICAL):
            await ledger.ensure_balance(user.id, leave_type, year)
        el = await ledger.find(user.id, LeaveType.EARNED, year)
        if el.opening == 0:
            el.opening = float(random.randint(10, 40))
            el.closing = el.opening
            el.opening_overridden = True
            await el.save()
    logger.info("Opened balances for %d employees", len(employees))

    holidays = [
        {"name": "Shaheed Day", "date": datetime(year, 2, 21), "type": HolidayType.PUBLIC},
        {"name": "Independence Day", "date": datetime(year, 3, 26), "type": HolidayType.PUBLIC},
        {"name": "Bengali New Year", "date": datetime(year, 4, 14), "type": HolidayType.PUBLIC},
        {"name": "May Day", "date": datetime(year, 5, 1), "type": HolidayType.PUBLIC},
        {"name": "Victory Day", "date": datetime(year, 12, 16), "type": HolidayType.PUBLIC},
        {"name": "Founder's Day", "date": datetime(year, 6, 15), "type": HolidayType.COMPANY},
    ]

    for h_data in holidays:
        existing_h = await Holiday.find_one(Holiday.name == h_data["name"], Holiday.date == h_data["date"])
        if not existing_h:
            await Holiday(**h_data).insert()

    logger.info("Sample data generation complete")
    client.close()

async def _ensure_user(emp_id, name, role, dept, password_hash, dept_head=None) -> User:
    existing = await User.find_one(User.employee_id == emp_id)
    if existing:
        logger.info("%s already exists, skipping", emp_id)
        return existing

    user = User(
        employee_id=emp_id,
        name=name,
        email=f"{name.lower().replace(' ', '.')}@saigo-lms.com",
        role=role,
        department=dept,
        dept_head_id=dept_head.id if dept_head else None,
        join_date=datetime.utcnow() - timedelta(days=random.randint(400, 4000)),
        password_hash=password_hash,
    )
    await user.insert()
    logger.info("Created %s: %s (%s)", role.value, name, emp_id)
    return user

if __name__ == "__main__":
    setup_logging(settings.LOG_LEVEL)
    asyncio.run(create_sample_data())
