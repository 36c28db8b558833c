"""Lifecycle helpers to keep server.py thinner."""
import logging

from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


async def startup_resources(ensure_indexes) -> None:
    """Prepare storage; the API still starts if MongoDB is briefly unreachable."""
    try:
        await ensure_indexes()
    except PyMongoError as exc:
        logger.warning(f"Could not ensure MongoDB indexes at startup: {exc}")


async def shutdown_resources(db_client, cipher=None):
    """Drop cached key material and close the DB client."""
    if cipher is not None:
        cipher.clear_key_cache()

    try:
        db_client.close()
        logger.info("MongoDB connection closed")
    except Exception as exc:
        logger.warning(f"Error closing MongoDB client: {exc}")
