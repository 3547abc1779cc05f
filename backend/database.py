from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path
from contextlib import asynccontextmanager

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        mongo_url = os.environ.get('MONGO_URL')
        if not mongo_url:
            logger.warning("MONGO_URL not set - running without MongoDB (in-memory order store)")
            return
        try:
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[os.environ.get('DB_NAME', 'water_orders')]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {self.db.name}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            self.client = None
            self.db = None
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for order lookups and the dashboard."""
        try:
            await self.db.orders.create_index("id", unique=True)
            await self.db.orders.create_index("status")
            await self.db.orders.create_index([("created_on", -1)])
            # Search fields
            await self.db.orders.create_index("tax_id")
            await self.db.orders.create_index("serial_number")
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
            await db.orders.find_one(...)
    """
    client = None
    try:
        mongo_url = os.environ['MONGO_URL']
        db_name = os.environ.get('DB_NAME', 'water_orders')
        client = AsyncIOMotorClient(mongo_url)
        db = client[db_name]
        # Verify connection
        await db.command("ping")
        logger.info(f"Script connected to MongoDB: {db_name}")
        yield db
    finally:
        if client:
            client.close()
            logger.info("Script MongoDB connection closed")
