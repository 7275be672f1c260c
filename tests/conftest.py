from datetime import datetime

import pytest
from mongomock_motor import AsyncMongoMockClient

from lms.core.rbac import Role
from lms.db import init_db
from lms.models.balance import Balance
from lms.models.leave import LeaveType
from lms.models.user import User
from lms.services.policy import policy_service


@pytest.fixture(autouse=True)
async def db():
    client = AsyncMongoMockClient()
    database = client["lms_test"]
    await init_db(database)
    await policy_service.seed_defaults()
    yield database


@pytest.fixture
def make_user():
    counter = {"n": 0}

    async def _make(
        role: Role = Role.EMPLOYEE,
        department: str = "Engineering",
        dept_head: User = None,
        join_date: datetime = datetime(2015, 1, 1),
        retirement_date: datetime = None,
        password_hash: str = "",
    ) -> User:
        counter["n"] += 1
        n = counter["n"]
        user = User(
            employee_id=f"E{n:03d}",
            name=f"{role.value.title()} {n}",
            email=f"user{n}@saigo-lms.com",
            role=role,
            department=department,
            dept_head_id=dept_head.id if dept_head else None,
            join_date=join_date,
            retirement_date=retirement_date,
            password_hash=password_hash,
        )
        await user.insert()
        return user

    return _make


@pytest.fixture
async def org(make_user):
    """Department head, HR admin, HR head, CEO and one employee in Engineering"""
    dept_head = await make_user(Role.DEPT_HEAD)
    return {
        "dept_head": dept_head,
        "hr_admin": await make_user(Role.HR_ADMIN, department="HR"),
        "hr_head": await make_user(Role.HR_HEAD, department="HR"),
        "ceo": await make_user(Role.CEO, department="Management"),
        "employee": await make_user(Role.EMPLOYEE, dept_head=dept_head),
    }


@pytest.fixture
def set_balance():
    async def _set(user: User, leave_type: LeaveType, year: int, opening: float, used: float = 0.0) -> Balance:
        balance = Balance(
            user_id=user.id,
            leave_type=leave_type,
            year=year,
            opening=opening,
            used=used,
            closing=opening - used,
            opening_overridden=True,
        )
        await balance.insert()
        return balance

    return _set
