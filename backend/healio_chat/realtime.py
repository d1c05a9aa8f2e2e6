import asyncio
import logging
import threading
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from .auth import decode_token
from .crypto_utils import SharedKeyCipher
from .db import get_cipher, get_store
from .encrypted_messages import EncryptedMessages
from .messaging import ConversationStore
from .schemas import ChatMessage

logger = logging.getLogger(__name__)

router = APIRouter()


def snapshot_frame(conversation_id: Optional[str], messages: List[ChatMessage]) -> dict:
    return {
        "type": "snapshot",
        "conversationId": conversation_id,
        "messages": [m.model_dump(mode="json", by_alias=True) for m in messages],
    }


class ChatSessionManager:
    """One EncryptedMessages per open socket.

    Store calls run in the threadpool and snapshots may arrive on a watcher
    thread, so frames reach the socket through an asyncio.Queue drained by a
    writer task on the event loop.
    """

    def __init__(self):
        self.sessions: Dict[WebSocket, EncryptedMessages] = {}
        self.lock = threading.Lock()

    def open(self, websocket: WebSocket, store: ConversationStore, cipher: SharedKeyCipher,
             queue: asyncio.Queue) -> EncryptedMessages:
        loop = asyncio.get_running_loop()
        hook = EncryptedMessages(store, cipher)

        def push(messages: List[ChatMessage]):
            frame = snapshot_frame(hook.conversation_id, messages)
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                queue.put_nowait(frame)
            else:
                loop.call_soon_threadsafe(queue.put_nowait, frame)

        hook.add_listener(push)
        with self.lock:
            self.sessions[websocket] = hook
        return hook

    def close(self, websocket: WebSocket):
        with self.lock:
            hook = self.sessions.pop(websocket, None)
        if hook is not None:
            hook.close()


manager = ChatSessionManager()


def _may_join(store: ConversationStore, conversation_id: str, sender: dict) -> bool:
    record = store.get_conversation(conversation_id)
    participants = (record or {}).get("participants")
    return not participants or sender["_id"] in participants


async def _drain(websocket: WebSocket, queue: asyncio.Queue):
    while True:
        frame = await queue.get()
        try:
            await websocket.send_json(frame)
        except Exception as e:
            logger.debug("[realtime] dropping frame, socket gone: %s", e)
            return


@router.websocket("/ws/conversations/{conversation_id}")
async def ws_conversation(websocket: WebSocket, conversation_id: str,
                          store: ConversationStore = Depends(get_store),
                          cipher: SharedKeyCipher = Depends(get_cipher)):
    sender = decode_token(websocket.query_params.get("token") or "")
    if sender is None or not await run_in_threadpool(_may_join, store, conversation_id, sender):
        # 1008 policy violation
        await websocket.close(code=1008)
        logger.info("[realtime] rejected socket for %s", conversation_id)
        return

    await websocket.accept()
    queue: asyncio.Queue = asyncio.Queue()
    hook = manager.open(websocket, store, cipher, queue)
    writer = asyncio.create_task(_drain(websocket, queue))
    logger.debug("[realtime] %s joined %s", sender["_id"], conversation_id)
    try:
        await run_in_threadpool(hook.bind, conversation_id)
        while True:
            frame = await websocket.receive_json()
            kind = frame.get("type")
            if kind == "send":
                await run_in_threadpool(hook.send_message, frame.get("text") or "", sender)
            elif kind == "bind":
                target = frame.get("conversationId")
                if target and not await run_in_threadpool(_may_join, store, target, sender):
                    queue.put_nowait({"type": "error", "detail": "not a participant"})
                    continue
                await run_in_threadpool(hook.bind, target)
            else:
                queue.put_nowait({"type": "error", "detail": f"unknown frame type {kind!r}"})
    except WebSocketDisconnect:
        pass
    finally:
        logger.debug("[realtime] %s left %s", sender["_id"], hook.conversation_id)
        manager.close(websocket)
        writer.cancel()
