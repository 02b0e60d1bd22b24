import logging
from typing import Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from .config import settings

logger = logging.getLogger(__name__)

client: AsyncIOMotorClient = None


async def init_db(mongodb_url: str = settings.mongodb_url):
    global client
    logger.info("Connecting to MongoDB")
    client = AsyncIOMotorClient(mongodb_url)


async def close_db_connection():
    global client
    if client:
        client.close()
        client = None


def get_database(name: str = settings.database_name) -> AsyncIOMotorDatabase:
    return client[name]


async def ensure_indexes(db):
    await db.users.create_index("email", unique=True)
    await db.categories.create_index("name", unique=True)
    await db.books.create_index("category")
    await db.lendings.create_index([("status", 1), ("due_date", 1)])
    await db.lendings.create_index("reader")
    await db.lendings.create_index("book")


def to_object_id(value) -> Optional[ObjectId]:
    """Parse a path id; malformed ids resolve to None so callers report 404."""
    if isinstance(value, ObjectId):
        return value
    if value is None or not ObjectId.is_valid(value):
        return None
    return ObjectId(value)
