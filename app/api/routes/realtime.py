# app/api/routes/realtime.py
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError

from app.core.errors import AppError
from app.core.session import build_session
from app.schemas.messages import ChatSocketEvent
from app.services.chat_session import ChatSession
from app.services.chat_store import ChatStore, get_chat_store
from app.services.directory import get_user_directory
from app.services.message_stream import MessageStream, get_message_stream
from app.services.post_store import PostStore, get_post_store
from app.services.unread import UnreadAggregator, get_unread_aggregator

logger = logging.getLogger(__name__)
router = APIRouter()

WS_UNAUTHENTICATED = 4401
WS_FORBIDDEN = 4403


async def _pump(websocket: WebSocket, outbox: asyncio.Queue, chat: Optional[ChatSession] = None) -> None:
    """Single writer for the socket. `None` payloads mean "send the chat view"."""
    while True:
        kind, payload = await outbox.get()
        if payload is None and chat is not None:
            payload = {"data": chat.view().model_dump(mode="json", by_alias=True)}
        await websocket.send_json({"type": kind, **(payload or {})})


@router.websocket("/ws/chats/{chat_id}")
async def chat_socket(
    websocket: WebSocket,
    chat_id: str,
    user_id: Optional[str] = Query(default=None),
    role: Optional[str] = Query(default=None),
    chats: ChatStore = Depends(get_chat_store),
    stream: MessageStream = Depends(get_message_stream),
    posts: PostStore = Depends(get_post_store),
    directory=Depends(get_user_directory),
):
    """
    Live chat. Client events: {"type": "send", "text"}, {"type": "visible",
    "visible"}, {"type": "retry"}. Server events: "state", "messages",
    "error", each carrying the current chat view.
    """
    try:
        session = build_session(user_id, role)
    except AppError:
        await websocket.close(code=WS_UNAUTHENTICATED)
        return

    await websocket.accept()
    outbox: asyncio.Queue = asyncio.Queue()
    chat = ChatSession(session, chats, stream, posts, directory, listener=lambda event: outbox.put_nowait((event, None)))
    writer = asyncio.create_task(_pump(websocket, outbox, chat))
    try:
        try:
            await chat.open_thread(chat_id)
        except AppError as e:
            logger.warning("Chat socket %s refused for %s: %s", chat_id, session.user_id, e.message)
            writer.cancel()
            await websocket.send_json({"type": "error", "detail": e.message})
            await websocket.close(code=WS_FORBIDDEN)
            return
        outbox.put_nowait(("state", None))

        while True:
            raw = await websocket.receive_text()
            try:
                event = ChatSocketEvent.model_validate_json(raw)
            except PydanticValidationError:
                outbox.put_nowait(("error", {"detail": "Unknown event"}))
                continue
            if event.type == "send":
                try:
                    await chat.send(event.text)
                except AppError as e:
                    outbox.put_nowait(("error", {"detail": e.message}))
            elif event.type == "visible":
                await chat.set_visible(event.visible)
            else:
                await chat.retry()
    except WebSocketDisconnect:
        logger.info("Chat socket %s closed by %s", chat_id, session.user_id)
    finally:
        chat.close()
        writer.cancel()


@router.websocket("/ws/unread")
async def unread_socket(
    websocket: WebSocket,
    user_id: Optional[str] = Query(default=None),
    unread: UnreadAggregator = Depends(get_unread_aggregator),
):
    """Pushes {"type": "unread", "total": n} whenever the user's total changes."""
    if not user_id:
        await websocket.close(code=WS_UNAUTHENTICATED)
        return

    await websocket.accept()
    outbox: asyncio.Queue = asyncio.Queue()
    unsubscribe = unread.subscribe_total(
        user_id,
        lambda total: outbox.put_nowait(("unread", {"total": total})),
        lambda exc: outbox.put_nowait(("error", {"detail": str(exc)})),
    )
    writer = asyncio.create_task(_pump(websocket, outbox))
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Unread socket closed by %s", user_id)
    finally:
        unsubscribe()
        writer.cancel()
