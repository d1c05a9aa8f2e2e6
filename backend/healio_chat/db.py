import logging
from functools import lru_cache

from pymongo import MongoClient
from pymongo.database import Database

from . import config
from .crypto_utils import SharedKeyCipher
from .memory import MemoryConversationStore
from .messaging import ConversationStore, MongoConversationStore

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_db() -> Database:
    client = MongoClient(config.MONGO_URI)
    return client[config.DB_NAME]


@lru_cache(maxsize=1)
def get_store() -> ConversationStore:
    if config.STORE_BACKEND == "memory":
        logger.info("[db] using in-process conversation store")
        return MemoryConversationStore()
    if config.STORE_BACKEND != "mongo":
        raise ValueError(f"unknown STORE_BACKEND {config.STORE_BACKEND!r}")
    return MongoConversationStore(get_db())


@lru_cache(maxsize=1)
def get_cipher() -> SharedKeyCipher:
    return SharedKeyCipher(config.CHAT_SHARED_SECRET)


def create_indexes():
    store = get_store()
    if isinstance(store, MongoConversationStore):
        store.create_indexes()
        logger.info("[db] MongoDB indexes checked/created")
