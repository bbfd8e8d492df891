"""Document store: the read/write/subscribe contract the live-session core depends on."""

from services.store.base import (
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    DocumentChange,
    DocumentSnapshot,
    DocumentStore,
    ListenerRegistration,
    Query,
    QuerySnapshot,
    Transaction,
    WriteBatch,
)
from services.store.memory import MemoryDocumentStore
from shared.config import ServiceConfig, config
from shared.utils import setup_logging

logger = setup_logging("document-store")

__all__ = [
    "DELETE_FIELD",
    "SERVER_TIMESTAMP",
    "ArrayRemove",
    "ArrayUnion",
    "DocumentChange",
    "DocumentSnapshot",
    "DocumentStore",
    "ListenerRegistration",
    "MemoryDocumentStore",
    "Query",
    "QuerySnapshot",
    "Transaction",
    "WriteBatch",
    "create_store",
]


def create_store(service_config: ServiceConfig | None = None) -> DocumentStore:
    """Build the store driver selected by STORE_DRIVER."""
    cfg = service_config or config
    driver = cfg.get("store_driver", "database")
    attempts = int(cfg.get("transaction_max_attempts", 5))

    if driver == "memory":
        logger.info("Using in-memory document store")
        return MemoryDocumentStore(transaction_max_attempts=attempts)

    if driver == "database":
        from database import SessionLocal, init_database
        from services.store.sql import SqlDocumentStore

        init_database()
        store = SqlDocumentStore(SessionLocal, transaction_max_attempts=attempts)
        redis_url = cfg.get("redis_url")
        if redis_url:
            from services.store.relay import RedisChangeRelay

            RedisChangeRelay(redis_url).attach(store)
        logger.info("Using SQL document store")
        return store

    raise ValueError(f"Unknown store driver: {driver}")
