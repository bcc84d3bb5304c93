from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path
from contextlib import asynccontextmanager

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

DEFAULT_DB_NAME = "firefly_estimator"

IDEMPOTENCY_TTL_SECONDS = 60 * 60 * 24


class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            db_name = os.environ.get('DB_NAME', DEFAULT_DB_NAME)
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[db_name]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {db_name}")

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
        """Create MongoDB indexes for efficient queries."""
        try:
            # Builds - listed per user, newest first
            await self.db.builds.create_index("build_id", unique=True)
            await self.db.builds.create_index([("user_id", 1), ("updated_at", -1)])
            await self.db.builds.create_index("status")

            # Orders
            await self.db.orders.create_index("order_id", unique=True)
            await self.db.orders.create_index("build_id")
            await self.db.orders.create_index([("user_id", 1), ("created_at", -1)])
            await self.db.orders.create_index([("status", 1), ("created_at", -1)])

            # Bank transfer milestones
            await self.db.bank_transfer_intents.create_index("intent_id", unique=True)
            await self.db.bank_transfer_intents.create_index([("build_id", 1), ("milestone", 1)])
            await self.db.bank_transfer_intents.create_index("stripe_invoice_id", sparse=True)

            # Catalog
            try:
                await self.db.models.create_index("code", unique=True, sparse=True)
            except Exception:
                pass  # Index may already exist with different options
            await self.db.models.create_index("slug")

            await self.db.settings.create_index("key", unique=True)
            await self.db.user_profiles.create_index("user_id", unique=True)

            # Analytics
            await self.db.sessions.create_index("session_id", unique=True)
            await self.db.sessions.create_index([("is_active", 1), ("last_activity", 1)])
            await self.db.sessions.create_index([("user_id", 1), ("started_at", -1)])
            await self.db.page_views.create_index([("session_id", 1), ("timestamp", 1)])
            await self.db.page_views.create_index("page_view_id", unique=True)
            await self.db.analytics_events.create_index([("event_type", 1), ("timestamp", -1)])
            await self.db.funnel_conversions.create_index([("step", 1), ("timestamp", -1)])
            await self.db.funnel_conversions.create_index([("user_id", 1), ("timestamp", 1)])
            await self.db.user_analytics.create_index("user_id", unique=True)

            # Audit log indexes - for timeline queries
            await self.db.audit_logs.create_index([("resource_type", 1), ("resource_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index("timestamp")
            await self.db.audit_logs.create_index([("build_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("order_id", 1), ("timestamp", -1)])

            # Client idempotency keys expire after 24h
            await self.db.idempotency_keys.create_index("key", unique=True)
            try:
                await self.db.idempotency_keys.create_index(
                    "created_at", expireAfterSeconds=IDEMPOTENCY_TTL_SECONDS
                )
            except Exception:
                pass

            # Stripe webhook idempotency - duplicate event_id must not process twice
            try:
                await self.db.stripe_events.create_index("event_id", unique=True)
            except Exception:
                pass
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")


# Global database instance
database = Database()

@asynccontextmanager
async def get_db_context():
    """Context manager for standalone scripts to access the database.

    Usage in scripts:
        async with get_db_context() as db:
            await db.builds.find_one(...)
    """
    client = None
    try:
        mongo_url = os.environ['MONGO_URL']
        db_name = os.environ.get('DB_NAME', DEFAULT_DB_NAME)
        client = AsyncIOMotorClient(mongo_url)
        db = client[db_name]
        await db.command("ping")
        logger.info(f"Script connected to MongoDB: {db_name}")
        yield db
    finally:
        if client:
            client.close()
            logger.info("Script MongoDB connection closed")
