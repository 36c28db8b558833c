"""MongoDB async database connection - single source of truth"""
import logging

from motor.motor_asyncio import AsyncIOMotorClient
from core.config import MONGO_URL, DB_NAME

logger = logging.getLogger(__name__)

client: AsyncIOMotorClient = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]


async def ensure_indexes() -> None:
    """Create the lookup indexes the credential routes rely on."""
    await db.twilio_configurations.create_index("id", unique=True)
    await db.twilio_configurations.create_index("tenant_id")
    await db.calls.create_index([("tenant_id", 1), ("created_at", -1)])
    await db.audit_logs.create_index([("tenant_id", 1), ("timestamp", -1)])
    logger.info("MongoDB indexes ensured")
