"""
Database connection and configuration

The motor client is created on first use so importing the app never
requires a reachable MongoDB. Every driver timeout is bounded.
"""
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

REQUIRED_VARS = {
    "MONGO_URL": "MongoDB connection string (e.g., mongodb://localhost:27017)",
    "DB_NAME": "Database name (e.g., sogan)"
}

_client: Optional[AsyncIOMotorClient] = None


def validate_required_env_vars():
    """
    Validate database environment variables.
    Raises ValueError with a clear message if any are missing.
    """
    missing = [
        f"  - {var}: {description}"
        for var, description in REQUIRED_VARS.items()
        if not os.environ.get(var)
    ]

    if missing:
        raise ValueError(
            "Missing required environment variables:\n"
            + "\n".join(missing)
            + "\nPlease check your .env file or environment configuration."
        )


def get_client() -> AsyncIOMotorClient:
    """Get or create the shared motor client."""
    global _client
    if _client is None:
        validate_required_env_vars()
        timeout_ms = int(os.environ.get("MONGO_TIMEOUT_MS", "5000"))
        try:
            _client = AsyncIOMotorClient(
                os.environ['MONGO_URL'],
                maxPoolSize=50,
                minPoolSize=5,
                connectTimeoutMS=timeout_ms,
                serverSelectionTimeoutMS=timeout_ms,
                socketTimeoutMS=timeout_ms,
                timeoutMS=timeout_ms,
                retryWrites=True
            )
        except Exception as e:
            raise ValueError(f"Failed to create MongoDB client: {e}")
    return _client


def get_db():
    return get_client()[os.environ['DB_NAME']]


def close_client():
    global _client
    if _client is not None:
        _client.close()
        _client = None


async def check_db_connection():
    """
    Test database connection health.

    Returns:
        Tuple[bool, Optional[str]]: (success, error_message)
    """
    try:
        await get_client().admin.command('ping')
        logger.info(f"Database connected successfully: {os.environ['DB_NAME']}")
        return True, None

    except Exception as e:
        error_msg = f"Database connection failed: {e}"
        logger.error(error_msg)
        return False, error_msg
