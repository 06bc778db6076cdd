import logging
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import IndexModel, ASCENDING, DESCENDING
from config import settings

logger = logging.getLogger(__name__)

client: AsyncIOMotorClient = None
_db_instance = None


class _DbProxy:
    """
    Proxy transparent vers l'instance Motor.
    Permet aux services de faire `from database import db` AVANT connect_db().
    db.collection → délégué à _db_instance.collection au moment de l'appel.
    """
    def __getattr__(self, name):
        if _db_instance is None:
            raise RuntimeError("Database not connected. Call connect_db() first.")
        return getattr(_db_instance, name)

    def __getitem__(self, name):
        if _db_instance is None:
            raise RuntimeError("Database not connected. Call connect_db() first.")
        return _db_instance[name]


db = _DbProxy()


def get_db():
    return _db_instance


def bind_db(instance) -> None:
    """Attache une base déjà construite (scripts, tests)."""
    global _db_instance
    _db_instance = instance


async def connect_db():
    global client, _db_instance
    client = AsyncIOMotorClient(
        settings.MONGO_URL,
        serverSelectionTimeoutMS=settings.DB_TIMEOUT_MS,
        connectTimeoutMS=settings.DB_TIMEOUT_MS,
        socketTimeoutMS=settings.DB_TIMEOUT_MS,
    )
    _db_instance = client[settings.DB_NAME]
    logger.info(f"Connected to MongoDB: {settings.DB_NAME}")
    try:
        await create_indexes()
    except Exception as e:
        logger.warning(f"Could not create indexes (non-blocking): {e}")


async def close_db():
    global client
    if client:
        client.close()
        logger.info("MongoDB connection closed")


INDEXES = {
    "users": [
        IndexModel([("user_id", ASCENDING)], unique=True),
        IndexModel([("role", ASCENDING)]),
    ],
    "vehicles": [
        IndexModel([("vehicle_id", ASCENDING)], unique=True),
        IndexModel([("plate_number", ASCENDING)], unique=True),
        IndexModel([("status", ASCENDING)]),
    ],
    "deliveries": [
        IndexModel([("delivery_id", ASCENDING)], unique=True),
        IndexModel([("customer_id", ASCENDING)]),
        IndexModel([("assigned_driver_id", ASCENDING), ("status", ASCENDING)]),
        IndexModel([("assigned_vehicle_id", ASCENDING), ("status", ASCENDING)]),
        IndexModel([("created_at", DESCENDING)]),
    ],
    "wallets": [
        IndexModel([("wallet_id", ASCENDING)], unique=True),
        IndexModel([("owner_id", ASCENDING)], unique=True),
    ],
    # Journal append-only : (wallet_id, seq) unique = point de commit d'une écriture
    "wallet_transactions": [
        IndexModel([("tx_id", ASCENDING)], unique=True),
        IndexModel([("wallet_id", ASCENDING), ("seq", ASCENDING)], unique=True),
        IndexModel([("wallet_id", ASCENDING), ("idempotency_key", ASCENDING)]),
        IndexModel([("delivery_id", ASCENDING)]),
        IndexModel([("transfer_id", ASCENDING)]),
    ],
    "transfers": [
        IndexModel([("transfer_id", ASCENDING)], unique=True),
        IndexModel([("status", ASCENDING), ("created_at", ASCENDING)]),
    ],
    "feedbacks": [
        IndexModel([("delivery_id", ASCENDING)], unique=True),
        IndexModel([("driver_id", ASCENDING)]),
    ],
}


async def create_indexes(target=None):
    target = target if target is not None else _db_instance
    for collection_name, index_models in INDEXES.items():
        try:
            await target[collection_name].create_indexes(index_models)
            logger.info(f"Indexes created for collection: {collection_name}")
        except Exception as e:
            logger.error(f"Failed to create indexes for collection {collection_name}: {e}")

    logger.info("All MongoDB indexes creation attempts completed.")
