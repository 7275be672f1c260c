import argparse
import asyncio
import logging
from datetime import datetime
from motor.motor_asyncio import AsyncIOMotorClient
from passlib.context import CryptContext

import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from lms.config import settings
from lms.core.log import setup_logging
from lms.core.rbac import Role
from lms.db import init_db
from lms.models.user import User

logger = logging.getLogger("create_admin")

pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)

async def create_admin(email: str, password: str):
    logger.info("Connecting to MongoDB at %s", settings.MONGODB_URL)
    client = AsyncIOMotorClient(settings.MONGODB_URL)
    await init_db(client[settings.MONGODB_DB_NAME])

    existing_admin = await User.find_one(User.email == email)

    if existing_admin:
        logger.info("Admin user '%s' already exists.", email)
    else:
        logger.info("Creating admin user: %s", email)
        admin = User(
            employee_id="ADMIN001",
            name="System Admin",
            email=email,
            role=Role.SYSTEM_ADMIN,
            department="Administration",
            designation="Administrator",
            join_date=datetime.utcnow(),
            password_hash=get_password_hash(password),
        )
        await admin.insert()
        logger.info("Admin user created successfully")

    client.close()

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create the first system administrator")
    parser.add_argument("--email", default="admin@saigo-lms.com")
    parser.add_argument("--password", default="admin123")
    args = parser.parse_args()

    setup_logging(settings.LOG_LEVEL)
    asyncio.run(create_admin(args.email, args.password))
