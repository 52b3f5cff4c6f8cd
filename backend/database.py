from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
from fastapi import Request
import os
import logging
from pathlib import Path
from contextlib import asynccontextmanager

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

# Every storage call is bounded; pymongo raises a timeout error past this budget.
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", "5000"))


def _make_client(mongo_url: str) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(
        mongo_url,
        tz_aware=True,
        serverSelectionTimeoutMS=MONGO_TIMEOUT_MS,
        timeoutMS=MONGO_TIMEOUT_MS,
    )


class Database:
    """Connection holder for one application instance.

    Created in the FastAPI lifespan and stored on app.state; routes receive the
    database handle through the get_db dependency.
    """

    def __init__(self, mongo_url: str = None, db_name: str = None):
        self.mongo_url = mongo_url or os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
        self.db_name = db_name or os.environ.get('DB_NAME', 'vineyard_tour_planner')
        self.client: AsyncIOMotorClient = None
        self.db = None

    async def connect(self):
        try:
            self.client = _make_client(self.mongo_url)
            self.db = self.client[self.db_name]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {self.db_name}")
            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for plan, user and login-code lookups."""
        try:
            await self.db.plans.create_index("plan_id", unique=True)
            await self.db.plans.create_index([("owner_id", 1), ("is_active", 1)])
            await self.db.plans.create_index([("owner_id", 1), ("status", 1), ("is_active", 1)])
            await self.db.plans.create_index([("status", 1), ("expires_at", 1)])

            await self.db.users.create_index("user_id", unique=True)
            await self.db.users.create_index("email", unique=True)
            await self.db.users.create_index("role")

            await self.db.login_codes.create_index("email", unique=True)
            # Expired codes are removed by MongoDB itself
            await self.db.login_codes.create_index("expires_at", expireAfterSeconds=0)

            await self.db.audit_logs.create_index([("resource_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index("action")
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist with other options, log but don't fail
            logger.warning(f"Index creation note: {e}")


def get_db(request: Request):
    """FastAPI dependency: the database handle of the running app."""
    return request.app.state.database.get_db()


@asynccontextmanager
async def get_db_context():
    """Context manager for standalone scripts and scheduled jobs.

    Usage:
        async with get_db_context() as db:
            await db.plans.find_one(...)
    """
    client = None
    try:
        mongo_url = os.environ['MONGO_URL']
        db_name = os.environ['DB_NAME']
        client = _make_client(mongo_url)
        db = client[db_name]
        await db.command("ping")
        logger.info(f"Script connected to MongoDB: {db_name}")
        yield db
    finally:
        if client:
            client.close()
            logger.info("Script MongoDB connection closed")
