from typing import List

from fastapi import APIRouter, Depends

from app.core.errors import PermissionDenied
from app.core.session import Session, get_session
from app.schemas.messages import (
    ChatThread,
    CreateThreadRequest,
    MarkReadResponse,
    Message,
    SendMessageRequest,
    ThreadView,
    UnreadTotal,
)
from app.services.chat_store import ChatStore, get_chat_store, view_for
from app.services.message_stream import MessageStream, get_message_stream
from app.services.unread import UnreadAggregator, get_unread_aggregator

router = APIRouter()


@router.post("", response_model=ThreadView)
async def open_chat(
    payload: CreateThreadRequest,
    session: Session = Depends(get_session),
    chats: ChatStore = Depends(get_chat_store),
):
    """Returns the chat for (post, contributor, acceptor), creating it once."""
    if session.user_id not in (payload.contributor_id, payload.collector_id):
        raise PermissionDenied("Not a participant of this chat")
    thread = await chats.start_thread(payload.post_id, payload.contributor_id, payload.collector_id)
    return view_for(thread, session.user_id)


@router.get("", response_model=List[ThreadView])
async def list_chats(
    session: Session = Depends(get_session),
    chats: ChatStore = Depends(get_chat_store),
):
    return await chats.list_threads_for_user(session.user_id)


@router.get("/unread", response_model=UnreadTotal)
async def total_unread(
    session: Session = Depends(get_session),
    unread: UnreadAggregator = Depends(get_unread_aggregator),
):
    return UnreadTotal(total=await unread.total_unread_for_user(session.user_id))


@router.get("/{chat_id}", response_model=ChatThread)
async def get_chat(
    chat_id: str,
    session: Session = Depends(get_session),
    chats: ChatStore = Depends(get_chat_store),
):
    return await chats.get_thread_for(chat_id, session.user_id)


@router.get("/{chat_id}/messages", response_model=List[Message])
async def list_messages(
    chat_id: str,
    session: Session = Depends(get_session),
    chats: ChatStore = Depends(get_chat_store),
    stream: MessageStream = Depends(get_message_stream),
):
    await chats.get_thread_for(chat_id, session.user_id)
    return await stream.fetch(chat_id)


@router.post("/{chat_id}/messages", response_model=Message, status_code=201)
async def send_message(
    chat_id: str,
    payload: SendMessageRequest,
    session: Session = Depends(get_session),
    stream: MessageStream = Depends(get_message_stream),
):
    return await stream.send(chat_id, session.user_id, payload.text, payload.post_id)


@router.post("/{chat_id}/read", response_model=MarkReadResponse)
async def mark_read(
    chat_id: str,
    session: Session = Depends(get_session),
    stream: MessageStream = Depends(get_message_stream),
):
    return MarkReadResponse(marked=await stream.mark_read(chat_id, session.user_id))
