import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .messaging import ConversationStore, ErrorCallback, SnapshotCallback, Subscription


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryConversationStore(ConversationStore):
    """In-process store with the same semantics as the Mongo one.

    Snapshots are pushed synchronously on the writing thread, after the lock
    is released, so subscribers may write back into the store.
    """

    def __init__(self, clock=_now):
        self._clock = clock
        self._lock = threading.RLock()
        self._conversations: Dict[str, dict] = {}
        self._messages: Dict[str, List[dict]] = {}
        self._subscribers: Dict[str, List[tuple]] = {}

    def create_conversation_if_missing(self, conversation_id: str, meta: Optional[dict] = None) -> None:
        with self._lock:
            record = self._conversations.setdefault(conversation_id, {})
            for k, v in (meta or {}).items():
                if k not in ("_id", "id", "updatedAt"):
                    record[k] = v
            record["updatedAt"] = self._clock()

    def append_message(self, conversation_id: str, payload: dict) -> str:
        message_id = uuid.uuid4().hex
        doc = {k: v for k, v in payload.items() if k not in ("_id", "id", "createdAt")}
        doc.update({"_id": message_id, "conversationId": conversation_id, "createdAt": self._clock()})
        with self._lock:
            self._messages.setdefault(conversation_id, []).append(doc)
        self._publish(conversation_id)
        return message_id

    def fetch_messages(self, conversation_id: str) -> List[dict]:
        with self._lock:
            docs = list(self._messages.get(conversation_id, []))
        # insertion order breaks ties between equal timestamps, newest first
        ordered = sorted(enumerate(docs), key=lambda p: (p[1]["createdAt"], p[0]), reverse=True)
        out = []
        for _, d in ordered:
            item = {k: v for k, v in d.items() if k != "_id"}
            item["id"] = d["_id"]
            out.append(item)
        return out

    def subscribe_messages(self, conversation_id: str, on_change: SnapshotCallback,
                           on_error: Optional[ErrorCallback] = None) -> Subscription:
        entry = []

        def _close():
            with self._lock:
                subs = self._subscribers.get(conversation_id, [])
                if entry and entry[0] in subs:
                    subs.remove(entry[0])

        subscription = Subscription(on_close=_close)
        entry.append((subscription, on_change))
        with self._lock:
            self._subscribers.setdefault(conversation_id, []).append(entry[0])
        on_change(self.fetch_messages(conversation_id))
        return subscription

    def _publish(self, conversation_id: str):
        with self._lock:
            subs = list(self._subscribers.get(conversation_id, []))
        if not subs:
            return
        snapshot = self.fetch_messages(conversation_id)
        for subscription, on_change in subs:
            if subscription.active:
                on_change(list(snapshot))

    def get_conversation(self, conversation_id: str) -> Optional[dict]:
        with self._lock:
            record = self._conversations.get(conversation_id)
            if record is None:
                return None
            return {**record, "id": conversation_id}

    def list_conversations(self, participant_id: str, limit: int = 50) -> List[dict]:
        with self._lock:
            found = [
                {**record, "id": cid}
                for cid, record in self._conversations.items()
                if participant_id in (record.get("participants") or [])
            ]
        found.sort(key=lambda c: c["updatedAt"], reverse=True)
        return found[:limit]
