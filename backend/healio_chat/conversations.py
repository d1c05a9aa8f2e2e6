import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from .auth import auth_required
from .crypto_utils import SharedKeyCipher
from .db import get_cipher, get_store
from .encrypted_messages import send_encrypted, to_chat_messages
from .errors import StoreWriteError
from .messaging import ConversationStore
from .schemas import ChatMessage, ConversationCreateIn, ConversationOut, MessageSendIn, SendResultOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["conversations"])


def sanitize_participants(raw: list) -> List[str]:
    out = []
    for p in raw:
        if isinstance(p, dict):
            p = p.get("_id") or p.get("id")
        if p is None:
            continue
        p = str(p).strip()
        if not p or p in ("undefined", "null"):
            continue
        if p not in out:
            out.append(p)
    return out


def _out(record: dict) -> ConversationOut:
    return ConversationOut(
        id=record["id"],
        participants=record.get("participants") or [],
        meta=record.get("meta") or {},
        updated_at=record.get("updatedAt"),
    )


def _check_participant(record: dict, me: dict):
    # records created lazily by a chat client carry no participant list
    participants = record.get("participants")
    if participants and me["_id"] not in participants:
        raise HTTPException(403, "not a participant")


@router.post("/", response_model=ConversationOut)
def create_conversation(data: ConversationCreateIn, me: dict = Depends(auth_required),
                        store: ConversationStore = Depends(get_store)):
    participants = sanitize_participants(data.participants)
    if me["_id"] not in participants:
        participants.append(me["_id"])
    if len(participants) < 2:
        raise HTTPException(400, "at least two valid participant ids are required")

    conversation_id = data.conversation_id or "_".join(sorted(participants))
    existing = store.get_conversation(conversation_id)
    if existing:
        # only current members may touch an existing conversation
        _check_participant(existing, me)
        kept = existing.get("participants") or []
        participants = kept + [p for p in participants if p not in kept]
    meta = {"participants": participants}
    if data.meta:
        meta["meta"] = data.meta
    try:
        store.create_conversation_if_missing(conversation_id, meta)
    except StoreWriteError as e:
        logger.warning("[conversations] create %s failed: %s", conversation_id, e)
        raise HTTPException(502, f"could not create conversation: {e}")
    return _out(store.get_conversation(conversation_id) or {"id": conversation_id, **meta})


@router.get("/", response_model=List[ConversationOut])
def list_conversations(me: dict = Depends(auth_required), store: ConversationStore = Depends(get_store)):
    return [_out(c) for c in store.list_conversations(me["_id"])]


@router.get("/{conversation_id}", response_model=ConversationOut)
def get_conversation(conversation_id: str, me: dict = Depends(auth_required),
                     store: ConversationStore = Depends(get_store)):
    record = store.get_conversation(conversation_id)
    if not record:
        raise HTTPException(404, "conversation not found")
    _check_participant(record, me)
    return _out(record)


@router.get("/{conversation_id}/messages", response_model=List[ChatMessage])
def list_messages(conversation_id: str, me: dict = Depends(auth_required),
                  store: ConversationStore = Depends(get_store),
                  cipher: SharedKeyCipher = Depends(get_cipher)):
    record = store.get_conversation(conversation_id)
    if record:
        _check_participant(record, me)
    return to_chat_messages(store.fetch_messages(conversation_id), cipher)


@router.post("/{conversation_id}/messages", response_model=SendResultOut)
def send_message(conversation_id: str, data: MessageSendIn, me: dict = Depends(auth_required),
                 store: ConversationStore = Depends(get_store),
                 cipher: SharedKeyCipher = Depends(get_cipher)):
    record = store.get_conversation(conversation_id)
    if record:
        _check_participant(record, me)
    message_id = send_encrypted(store, cipher, conversation_id, data.text, me)
    return SendResultOut(ok=message_id is not None, id=message_id)
