from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import OperationFailure
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

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

    async def ping(self) -> bool:
        """True when the server answers a ping. Used by the admin health check."""
        if self.db is None:
            return False
        try:
            await self.db.command("ping")
            return True
        except Exception as e:
            logger.warning(f"MongoDB ping failed: {e}")
            return False

    async def _create_indexes(self):
        """Create MongoDB indexes for entitlement lookups, admin lists and guard expiry."""
        try:
            # Profiles - id is the auth subject, customer id is the webhook lookup key
            await self.db.profiles.create_index("id", unique=True)
            try:
                # Profiles without a customer store null; only real ids must be unique
                await self.db.profiles.create_index(
                    "stripe_customer_id",
                    unique=True,
                    partialFilterExpression={"stripe_customer_id": {"$type": "string"}},
                )
            except OperationFailure:
                pass  # Index may already exist with different options
            await self.db.profiles.create_index("role")
            await self.db.profiles.create_index([("created_at", -1)])

            # Offers / chats
            await self.db.offers.create_index("id", unique=True)
            await self.db.offers.create_index([("contractor_id", 1), ("created_at", -1)])
            await self.db.offers.create_index("project_id")
            await self.db.chats.create_index("id", unique=True)
            await self.db.chats.create_index([("project_id", 1), ("owner_id", 1), ("contractor_id", 1)])
            await self.db.chat_messages.create_index([("chat_id", 1), ("created_at", 1)])

            # Moderation
            await self.db.projects.create_index("id", unique=True)
            await self.db.reports.create_index("id", unique=True)
            await self.db.reports.create_index([("status", 1), ("created_at", -1)])
            await self.db.projects.create_index([("status", 1), ("created_at", -1)])
            await self.db.blocked_users.create_index([("blocker_id", 1), ("blocked_id", 1)], unique=True)
            await self.db.feature_flags.create_index("id", unique=True)
            await self.db.feature_flags.create_index("name", unique=True)

            # Runtime settings
            await self.db.settings.create_index("key", unique=True)

            # Security events are insert-only and listed newest first
            await self.db.security_events.create_index([("created_at", -1)])
            await self.db.security_events.create_index([("severity", 1), ("created_at", -1)])
            await self.db.security_events.create_index("event_type")

            # Shared admin guard store - documents expire on their own
            await self.db.admin_rate_limits.create_index("expires_at", expireAfterSeconds=0)
            await self.db.admin_idempotency_keys.create_index("expires_at", expireAfterSeconds=0)
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

database = Database()
