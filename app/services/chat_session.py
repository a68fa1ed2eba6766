# app/services/chat_session.py
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from app.core.config import settings
from app.core.errors import NotFound, PermissionDenied, ValidationError
from app.core.session import Session
from app.schemas.messages import ChatHeader, ChatThread, ChatView, LocalMessage, Message
from app.services.chat_store import ChatStore
from app.services.message_stream import MessageStream, Subscription
from app.services.post_store import PostStore

logger = logging.getLogger(__name__)

UNKNOWN_USER = "Unknown User"
UNKNOWN_POST = "Unknown"
LOAD_FAILED = "Could not load messages. Please try again."
SEND_FAILED = "Failed to send message"


class ViewState(str, Enum):
    LOADING = "loading"
    EMPTY = "empty"
    READY = "ready"
    FAILED = "failed"


class _Echo:
    def __init__(self, sender_id: str, text: str, baseline: Set[str]):
        self.temp_id = f"temp-{uuid.uuid4().hex}"
        self.sender_id = sender_id
        self.text = text
        self.created_at = datetime.now(timezone.utc)
        # Confirmed ids already on screen when the echo was made can't be its copy
        self.baseline = baseline
        self.server_id: Optional[str] = None
        self.failed = False
        self.timer: Optional[asyncio.TimerHandle] = None


class ChatSession:
    """
    One user's open chat: resolves the thread, keeps the live message list,
    shows unconfirmed sends as pending echoes and marks incoming messages read.

    `listener` is called with "state", "messages" or "error" whenever `view()`
    would return something new. After `close()` it is never called again and
    results of calls still in flight are dropped.
    """

    def __init__(
        self,
        session: Session,
        chats: ChatStore,
        stream: MessageStream,
        posts: PostStore,
        directory,
        listener: Optional[Callable[[str], None]] = None,
        echo_timeout: Optional[float] = None,
        match_window: Optional[float] = None,
    ):
        self.session = session
        self.chats = chats
        self.stream = stream
        self.posts = posts
        self.directory = directory
        self.listener = listener
        self.echo_timeout = settings.ECHO_TIMEOUT_SECONDS if echo_timeout is None else echo_timeout
        self.match_window = settings.ECHO_MATCH_WINDOW_SECONDS if match_window is None else match_window

        self.state = ViewState.LOADING
        self.thread: Optional[ChatThread] = None
        self.header: Optional[ChatHeader] = None
        self.confirmed: List[Message] = []
        self.input_text = ""
        self.error: Optional[str] = None
        self.visible = True
        self.closed = False
        self._echoes: Dict[str, _Echo] = {}
        self._claimed: Set[str] = set()
        self._subscription: Optional[Subscription] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self, post_id: str, contributor_id: str, collector_id: str) -> ChatView:
        if self.session.user_id not in (contributor_id, collector_id):
            raise PermissionDenied("Not a participant of this chat")
        thread = await self.chats.start_thread(post_id, contributor_id, collector_id)
        return await self._attach(thread)

    async def open_thread(self, thread_id: str) -> ChatView:
        thread = await self.chats.get_thread_for(thread_id, self.session.user_id)
        return await self._attach(thread)

    async def _attach(self, thread: ChatThread) -> ChatView:
        self.thread = thread
        self.header = await self._load_header(thread)
        if self.closed:
            return self.view()
        self._subscribe()
        await self.mark_read()
        return self.view()

    def close(self) -> None:
        self.closed = True
        self.listener = None
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        for echo in self._echoes.values():
            if echo.timer is not None:
                echo.timer.cancel()

    async def retry(self) -> None:
        if self.thread is None:
            raise NotFound("Chat is not open")
        if self._subscription is not None:
            self._subscription.close()
        self.error = None
        self._subscribe()

    async def set_visible(self, visible: bool = True) -> None:
        self.visible = visible
        if visible:
            await self.mark_read()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def mark_read(self) -> None:
        if self.closed or self.thread is None:
            return
        try:
            await self.stream.mark_read(self.thread.id, self.session.user_id)
        except Exception as e:
            logger.warning("Marking chat %s read failed: %s", self.thread.id, e)

    async def send(self, text: Optional[str] = None) -> Optional[Message]:
        """
        Show the message at once as a pending echo, then send it. On failure
        the echo goes away and the text returns to the input for a retry.
        """
        raw = self.input_text if text is None else text
        if not (raw or "").strip():
            raise ValidationError("Message text cannot be empty")
        if self.thread is None:
            raise NotFound("Chat is not open")

        thread = self.thread
        echo = _Echo(self.session.user_id, raw.strip(), {m.id for m in self.confirmed})
        self._echoes[echo.temp_id] = echo
        if self.echo_timeout:
            echo.timer = asyncio.get_running_loop().call_later(self.echo_timeout, self._expire, echo.temp_id)
        self.input_text = ""
        self.error = None
        self._refresh_state()
        self._notify("messages")

        try:
            message = await self.stream.send(thread.id, self.session.user_id, raw, thread.post_id)
        except Exception as e:
            logger.warning("Send in chat %s failed: %s", thread.id, e)
            if self.closed:
                return None
            self._drop(echo.temp_id)
            self.input_text = raw
            self.error = SEND_FAILED
            self._refresh_state()
            self._notify("error")
            return None

        if self.closed:
            return message
        if echo.temp_id in self._echoes:
            echo.server_id = message.id
            if any(m.id == message.id for m in self.confirmed):
                self._claimed.add(message.id)
                self._drop(echo.temp_id)
                self._notify("messages")
        return message

    # ------------------------------------------------------------------
    # View
    # ------------------------------------------------------------------

    def view(self) -> ChatView:
        messages = [LocalMessage(**m.model_dump()) for m in self.confirmed]
        for echo in self._echoes.values():
            messages.append(
                LocalMessage(
                    id=echo.temp_id,
                    chat_id=self.thread.id if self.thread else "",
                    sender_id=echo.sender_id,
                    text=echo.text,
                    created_at=echo.created_at,
                    post_id=self.thread.post_id if self.thread else None,
                    pending=not echo.failed,
                    failed=echo.failed,
                )
            )
        return ChatView(
            state=self.state.value,
            thread_id=self.thread.id if self.thread else None,
            header=self.header,
            messages=messages,
            input_text=self.input_text,
            error=self.error,
        )

    @property
    def pending_count(self) -> int:
        return sum(1 for e in self._echoes.values() if not e.failed)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load_header(self, thread: ChatThread) -> ChatHeader:
        other_id = thread.other_participant(self.session.user_id)
        name = UNKNOWN_USER
        try:
            profile = await self.directory.get_user_by_id(other_id)
            if profile:
                name = profile.get("name") or profile.get("email") or UNKNOWN_USER
        except Exception as e:
            logger.warning("Profile lookup for %s failed: %s", other_id, e)

        summary = UNKNOWN_POST
        try:
            post = await self.posts.find_post(thread.post_id)
            if post is not None:
                summary = post.summary()
        except Exception as e:
            logger.warning("Post lookup for %s failed: %s", thread.post_id, e)

        return ChatHeader(other_user_id=other_id, other_user_name=name, post_summary=summary)

    def _subscribe(self) -> None:
        self.state = ViewState.LOADING
        self._notify("state")
        self._subscription = self.stream.subscribe(self.thread.id, self._on_messages, self._on_error)

    def _on_messages(self, messages: List[Message]) -> None:
        if self.closed:
            return
        self.confirmed = messages
        self._reconcile()
        if self.state == ViewState.FAILED:
            self.error = None
        self._refresh_state(loaded=True)
        self._notify("messages")

    def _on_error(self, exc: Exception) -> None:
        if self.closed:
            return
        logger.error("Message feed for chat %s failed: %s", self.thread.id if self.thread else "?", exc)
        self.state = ViewState.FAILED
        self.error = LOAD_FAILED
        self._notify("error")

    def _reconcile(self) -> None:
        by_id = {m.id: m for m in self.confirmed}
        for echo in list(self._echoes.values()):
            if echo.server_id and echo.server_id in by_id:
                self._claimed.add(echo.server_id)
                self._drop(echo.temp_id)
                continue
            for m in self.confirmed:
                if m.id in echo.baseline or m.id in self._claimed:
                    continue
                if self._same_message(echo, m):
                    self._claimed.add(m.id)
                    self._drop(echo.temp_id)
                    break

    def _same_message(self, echo: _Echo, message: Message) -> bool:
        if message.sender_id != echo.sender_id or message.text != echo.text:
            return False
        if message.created_at is None:
            return True
        return abs((message.created_at - echo.created_at).total_seconds()) <= self.match_window

    def _expire(self, temp_id: str) -> None:
        echo = self._echoes.get(temp_id)
        if self.closed or echo is None:
            return
        logger.warning("Message %s not confirmed after %ss", temp_id, self.echo_timeout)
        echo.failed = True
        self._notify("messages")

    def _drop(self, temp_id: str) -> None:
        echo = self._echoes.pop(temp_id, None)
        if echo is not None and echo.timer is not None:
            echo.timer.cancel()

    def _refresh_state(self, loaded: bool = False) -> None:
        if self.state == ViewState.FAILED and not loaded:
            return
        if self.state == ViewState.LOADING and not loaded:
            return
        self.state = ViewState.READY if (self.confirmed or self._echoes) else ViewState.EMPTY

    def _notify(self, event: str) -> None:
        if self.closed or self.listener is None:
            return
        try:
            self.listener(event)
        except Exception:
            logger.exception("Chat listener failed on %s", event)
