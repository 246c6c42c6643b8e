# authguard/db/mongodb.py

import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorGridFSBucket
from pymongo import ASCENDING, DESCENDING

from authguard.core.config import settings

logger = logging.getLogger(__name__)


class MongoDB:
    client: AsyncIOMotorClient = None


mongodb = MongoDB()


# 🔹 Return database object
async def get_database():
    return mongodb.client[settings.MONGO_DB_NAME]


def get_export_bucket(db) -> AsyncIOMotorGridFSBucket:
    """GridFS bucket holding generated data export files."""
    return AsyncIOMotorGridFSBucket(db, bucket_name="data_exports")


# 🔹 Connect MongoDB (called on startup)
async def connect_to_mongo():
    mongodb.client = AsyncIOMotorClient(settings.MONGO_URI)
    logger.info("Connected to MongoDB")


# 🔹 Close connection (shutdown)
async def close_mongo_connection():
    if mongodb.client is not None:
        mongodb.client.close()
    logger.info("MongoDB connection closed")


async def ensure_indexes(db):
    await db.users.create_index("email", unique=True)
    await db.users.create_index([("identities.provider", ASCENDING), ("identities.provider_id", ASCENDING)])
    await db.mfa_factors.create_index([("user_id", ASCENDING), ("factor_type", ASCENDING)])
    await db.mfa_challenges.create_index("expires_at", expireAfterSeconds=0)
    await db.used_link_tokens.create_index("expires_at", expireAfterSeconds=0)
    await db.device_sessions.create_index([("user_id", ASCENDING), ("is_trusted", ASCENDING)])
    await db.device_sessions.create_index("expires_at")
    await db.devices.create_index("user_id")
    await db.device_verification_codes.create_index("device_session_id")
    await db.device_verification_codes.create_index("expires_at", expireAfterSeconds=0)
    await db.email_verification_codes.create_index("expires_at", expireAfterSeconds=0)
    await db.backup_codes.create_index([("user_id", ASCENDING), ("used", ASCENDING)])
    await db.account_events.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    await db.data_export_requests.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
