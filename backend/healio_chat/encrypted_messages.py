"""
Binds one conversation's encrypted message stream to a decrypted list.

EncryptedMessages holds at most one live subscription. Rebinding tears the
old one down first, and snapshots still in flight for an old binding are
dropped by comparing binding generations.
"""

import logging
import threading
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, List, Optional

from pydantic import ValidationError

from .crypto_utils import SharedKeyCipher
from .errors import CallerContractError, StoreSubscriptionError, StoreWriteError
from .messaging import ConversationStore, Subscription
from .schemas import Author, ChatMessage

logger = logging.getLogger(__name__)

Listener = Callable[[List[ChatMessage]], None]


def _get(obj: Any, key: str):
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def _text(value: Any) -> Optional[str]:
    if not value:
        return None
    return value if isinstance(value, str) else str(value)


def normalize_author(raw: dict) -> Author:
    """Nested user.* wins over flat sender* fields, which win over defaults."""
    user = raw.get("user") if isinstance(raw.get("user"), dict) else {}
    author_id = user.get("_id") or user.get("id") or raw.get("sender") or "unknown"
    return Author(
        _id=str(author_id),
        name=_text(user.get("name")) or _text(raw.get("senderName")) or "Unknown",
        avatar=_text(user.get("avatar")) or _text(raw.get("senderAvatar")),
        role=_text(user.get("role")) or _text(raw.get("senderRole")) or "User",
    )


def resolve_created_at(value: Any, now: Optional[datetime] = None) -> datetime:
    """Turn a stored timestamp into an aware UTC datetime.

    A missing, pending or unreadable server timestamp resolves to now.
    """
    now = now or datetime.now(timezone.utc)
    if isinstance(value, datetime):
        # pymongo hands back naive UTC datetimes
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        if isinstance(value, dict) and "seconds" in value:
            seconds = value.get("seconds") or 0
            nanos = value.get("nanoseconds") or value.get("nanos") or 0
            return datetime.fromtimestamp(seconds + nanos / 1e9, tz=timezone.utc)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        if isinstance(value, str):
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return now
    return now


def resolve_text(raw: dict, cipher: SharedKeyCipher) -> str:
    if raw.get("encryptedBody"):
        return cipher.decrypt(raw["encryptedBody"])
    return _text(raw.get("body")) or ""


def _to_chat_message(doc: dict, cipher: SharedKeyCipher, now: datetime) -> ChatMessage:
    message_id = str(doc.get("id") or doc.get("_id") or "")
    try:
        return ChatMessage(
            _id=message_id,
            text=resolve_text(doc, cipher),
            createdAt=resolve_created_at(doc.get("createdAt"), now),
            user=normalize_author(doc),
        )
    except (ValidationError, TypeError, ValueError) as e:
        logger.warning("[encrypted_messages] unreadable message %s: %s", message_id, e)
        return ChatMessage(_id=message_id, text="", createdAt=now, user=Author(_id="unknown", name="Unknown"))


def to_chat_messages(docs: List[dict], cipher: SharedKeyCipher) -> List[ChatMessage]:
    """Map a raw snapshot to chronological ChatMessages, ties broken by id."""
    now = datetime.now(timezone.utc)
    out = [_to_chat_message(d, cipher, now) for d in docs]
    out.sort(key=lambda m: (m.created_at, m.id))
    return out


def send_encrypted(store: ConversationStore, cipher: SharedKeyCipher,
                   conversation_id: Optional[str], text: str, sender: Any) -> Optional[str]:
    """Encrypt text and append it to the conversation.

    Returns the new message id, or None when nothing was written. Never raises
    for store failures or caller mistakes; those are logged.
    """
    if not conversation_id or not text:
        return None
    sender_id = _get(sender, "_id") or _get(sender, "id")
    if not sender_id:
        err = CallerContractError("sender has no _id or id")
        logger.warning("[encrypted_messages] not sending to %s: %s", conversation_id, err)
        return None

    sender_id = str(sender_id)
    name = _text(_get(sender, "name")) or "Unknown"
    avatar = _text(_get(sender, "profileImage")) or _text(_get(sender, "avatar"))
    role = _text(_get(sender, "role")) or "User"
    payload = {
        "encryptedBody": cipher.encrypt(text),
        "sender": sender_id,
        "senderName": name,
        "senderAvatar": avatar,
        "senderRole": role,
        "user": {"_id": sender_id, "name": name, "avatar": avatar, "role": role},
    }
    try:
        return store.append_message(conversation_id, payload)
    except StoreWriteError as e:
        logger.warning("[encrypted_messages] send to %s failed: %s", conversation_id, e)
        return None


class EncryptedMessages:
    """Decrypted, reactive view over one conversation at a time."""

    def __init__(self, store: ConversationStore, cipher: SharedKeyCipher = None,
                 conversation_id: str = None):
        self._store = store
        self._cipher = cipher or SharedKeyCipher()
        self._lock = threading.Lock()
        self._generation = 0
        self._conversation_id: Optional[str] = None
        self._subscription: Optional[Subscription] = None
        self._messages: List[ChatMessage] = []
        self._listeners: List[Listener] = []
        if conversation_id:
            self.bind(conversation_id)

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def messages(self) -> List[ChatMessage]:
        with self._lock:
            return list(self._messages)

    @property
    def active(self) -> bool:
        with self._lock:
            return self._subscription is not None and self._subscription.active

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def bind(self, conversation_id: Optional[str]):
        with self._lock:
            self._generation += 1
            generation = self._generation
            previous, self._subscription = self._subscription, None
            was_bound = self._conversation_id is not None
            self._conversation_id = conversation_id or None
            self._messages = []

        if previous is not None:
            previous.unsubscribe()
        if was_bound:
            self._notify([])
        if not conversation_id:
            return

        try:
            self._store.create_conversation_if_missing(conversation_id)
        except StoreWriteError as e:
            # appends still work without the parent record
            logger.warning("[encrypted_messages] create_conversation_if_missing %s failed: %s", conversation_id, e)

        try:
            subscription = self._store.subscribe_messages(
                conversation_id,
                partial(self._on_snapshot, generation),
                partial(self._on_error, generation),
            )
        except StoreSubscriptionError as e:
            logger.error("[encrypted_messages] could not subscribe to %s: %s", conversation_id, e)
            return

        with self._lock:
            if generation == self._generation:
                self._subscription, subscription = subscription, None
        if subscription is not None:
            # rebound while subscribing
            subscription.unsubscribe()

    def unbind(self):
        self.bind(None)

    def close(self):
        self.unbind()
        self._listeners.clear()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def send_message(self, text: str, sender: Any) -> Optional[str]:
        return send_encrypted(self._store, self._cipher, self._conversation_id, text, sender)

    def _on_snapshot(self, generation: int, docs: List[dict]):
        messages = to_chat_messages(docs, self._cipher)
        with self._lock:
            if generation != self._generation:
                logger.debug("[encrypted_messages] dropping stale snapshot (generation %d)", generation)
                return
            self._messages = messages
        self._notify(messages)

    def _on_error(self, generation: int, err: StoreSubscriptionError):
        with self._lock:
            current = generation == self._generation
            conversation_id = self._conversation_id
        if current:
            logger.error("[encrypted_messages] live updates for %s stopped: %s", conversation_id, err)

    def _notify(self, messages: List[ChatMessage]):
        for listener in list(self._listeners):
            try:
                listener(list(messages))
            except Exception:
                logger.exception("[encrypted_messages] listener failed")
