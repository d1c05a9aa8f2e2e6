"""
Conversation store gateway.

A store offers three primitives the chat layer depends on:
  create_conversation_if_missing  - upsert-merge with a server-side updatedAt
  append_message                  - insert with a server-side createdAt
  subscribe_messages              - live query pushing full snapshots, newest first

Snapshots are lists of plain dicts, each carrying the message id under "id".
Nothing here knows about encryption; bodies are stored as given.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from . import config
from .errors import StoreSubscriptionError, StoreWriteError

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[List[dict]], None]
ErrorCallback = Callable[[StoreSubscriptionError], None]


class Subscription:
    """Handle for a live query. unsubscribe() is safe to call more than once."""

    def __init__(self, on_close: Callable[[], None] = None):
        self._on_close = on_close
        self._closed = threading.Event()

    @property
    def active(self) -> bool:
        return not self._closed.is_set()

    def unsubscribe(self):
        if self._closed.is_set():
            return
        self._closed.set()
        if self._on_close:
            self._on_close()

    def _mark_inactive(self):
        self._closed.set()


class ConversationStore(ABC):
    """Abstract realtime document store holding conversations and their messages."""

    @abstractmethod
    def create_conversation_if_missing(self, conversation_id: str, meta: Optional[dict] = None) -> None:
        """Merge meta into the conversation record, creating it if absent.

        updatedAt is set to server time on every call. Raises StoreWriteError.
        """
        ...

    @abstractmethod
    def append_message(self, conversation_id: str, payload: dict) -> str:
        """Store a new message with a server createdAt and return its id. Raises StoreWriteError."""
        ...

    @abstractmethod
    def subscribe_messages(
        self,
        conversation_id: str,
        on_change: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """Push the full snapshot to on_change now and after every change.

        Transport failures go to on_error and leave the subscription inactive.
        There is no automatic reconnect.
        """
        ...

    @abstractmethod
    def fetch_messages(self, conversation_id: str) -> List[dict]:
        """One-shot snapshot, same shape and order as subscription snapshots."""
        ...

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    def list_conversations(self, participant_id: str, limit: int = 50) -> List[dict]:
        ...


def _report_subscription_error(conversation_id: str, err: Exception, on_error: Optional[ErrorCallback]):
    logger.error("[messaging] subscription for %s failed: %s", conversation_id, err)
    if on_error is None:
        return
    wrapped = err if isinstance(err, StoreSubscriptionError) else StoreSubscriptionError(str(err), conversation_id)
    try:
        on_error(wrapped)
    except Exception:
        logger.exception("[messaging] on_error callback raised for %s", conversation_id)


def _with_id(doc: dict) -> dict:
    out = dict(doc)
    out["id"] = str(out.pop("_id"))
    return out


class MongoSubscription(Subscription):
    """Change-stream watcher running on its own thread.

    The stream is opened before the first snapshot is read so a write that
    lands in between still triggers a refresh.
    """

    def __init__(self, store: "MongoConversationStore", conversation_id: str,
                 on_change: SnapshotCallback, on_error: Optional[ErrorCallback]):
        super().__init__()
        self._store = store
        self._conversation_id = conversation_id
        self._on_change = on_change
        self._on_error = on_error
        self._thread = threading.Thread(
            target=self._run, name=f"messages-watch-{conversation_id}", daemon=True
        )

    def start(self):
        self._thread.start()
        return self

    def join(self, timeout: float = None):
        self._thread.join(timeout)

    def _pipeline(self) -> List[dict]:
        return [{"$match": {"fullDocument.conversationId": self._conversation_id}}]

    def _emit(self):
        docs = self._store.fetch_messages(self._conversation_id)
        if self.active:
            self._on_change(docs)

    def _run(self):
        try:
            with self._store.messages.watch(
                self._pipeline(),
                full_document="updateLookup",
                max_await_time_ms=self._store.max_await_ms,
            ) as stream:
                self._emit()
                while self.active and stream.alive:
                    change = stream.try_next()
                    if change is not None:
                        self._emit()
        except PyMongoError as e:
            if self.active:
                self._mark_inactive()
                _report_subscription_error(self._conversation_id, e, self._on_error)
        except Exception:
            self._mark_inactive()
            logger.exception("[messaging] snapshot handler failed for %s", self._conversation_id)
        else:
            self._mark_inactive()


class MongoConversationStore(ConversationStore):
    """MongoDB-backed store. Live queries need a replica set for change streams."""

    def __init__(self, db: Database, max_await_ms: int = None):
        self.db = db
        self.conversations = db.conversations
        self.messages = db.messages
        self.max_await_ms = max_await_ms or config.CHANGE_STREAM_MAX_AWAIT_MS

    def create_indexes(self):
        self.conversations.create_index("participants")
        self.conversations.create_index([("updatedAt", DESCENDING)])
        self.messages.create_index([("conversationId", ASCENDING), ("createdAt", DESCENDING)])

    def create_conversation_if_missing(self, conversation_id: str, meta: Optional[dict] = None) -> None:
        update: Dict[str, dict] = {"$currentDate": {"updatedAt": True}}
        fields = {k: v for k, v in (meta or {}).items() if k not in ("_id", "updatedAt")}
        if fields:
            update["$set"] = fields
        try:
            self.conversations.update_one({"_id": conversation_id}, update, upsert=True)
        except PyMongoError as e:
            logger.warning("[messaging] create_conversation_if_missing %s failed: %s", conversation_id, e)
            raise StoreWriteError(str(e), conversation_id) from e

    def append_message(self, conversation_id: str, payload: dict) -> str:
        message_id = ObjectId()
        fields = {k: v for k, v in payload.items() if k not in ("_id", "id", "createdAt")}
        fields["conversationId"] = conversation_id
        try:
            # upsert on a fresh id so createdAt comes from the server clock
            self.messages.update_one(
                {"_id": message_id},
                {"$set": fields, "$currentDate": {"createdAt": True}},
                upsert=True,
            )
        except PyMongoError as e:
            logger.warning("[messaging] append_message to %s failed: %s", conversation_id, e)
            raise StoreWriteError(str(e), conversation_id) from e
        return str(message_id)

    def fetch_messages(self, conversation_id: str) -> List[dict]:
        cursor = self.messages.find({"conversationId": conversation_id}).sort(
            [("createdAt", DESCENDING), ("_id", DESCENDING)]
        )
        return [_with_id(d) for d in cursor]

    def subscribe_messages(self, conversation_id, on_change, on_error=None) -> Subscription:
        return MongoSubscription(self, conversation_id, on_change, on_error).start()

    def get_conversation(self, conversation_id: str) -> Optional[dict]:
        doc = self.conversations.find_one({"_id": conversation_id})
        return _with_id(doc) if doc else None

    def list_conversations(self, participant_id: str, limit: int = 50) -> List[dict]:
        cursor = self.conversations.find({"participants": participant_id}).sort(
            "updatedAt", DESCENDING
        ).limit(limit)
        return [_with_id(d) for d in cursor]
