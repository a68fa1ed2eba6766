# app/services/message_stream.py
import asyncio
import logging
from typing import Callable, List, Optional

from fastapi import Depends

from app.core.errors import ValidationError
from app.schemas.messages import Message
from app.services.chat_store import ChatStore, get_chat_store
from app.services.document_store import (
    SERVER_TIMESTAMP,
    DocumentStore,
    IndexUnavailableError,
    LiveQueryUnavailableError,
    created_at_key,
    get_document_store,
)

logger = logging.getLogger(__name__)

MESSAGES = "messages"
ORDER_FIELD = "createdAt"
READ_ATTEMPTS = 3

MessagesCallback = Callable[[List[Message]], None]
ErrorCallback = Callable[[Exception], None]


def sort_messages(docs: list) -> List[Message]:
    """Ascending by creation time; messages without a timestamp count as oldest."""
    return [Message.model_validate(d) for d in sorted(docs, key=created_at_key)]


class Subscription:
    """
    Live feed of one thread's messages.

    Modes, tried in order: `ordered` (store-side ordering), `unordered`
    (live feed sorted here) and `one_shot` (a single sorted fetch). Calling
    the subscription cancels it; nothing is delivered afterwards.
    """

    def __init__(
        self,
        store: DocumentStore,
        thread_id: str,
        on_messages: MessagesCallback,
        on_error: Optional[ErrorCallback],
    ):
        self.store = store
        self.thread_id = thread_id
        self.on_messages = on_messages
        self.on_error = on_error
        self.mode: Optional[str] = None
        self.closed = False
        self._cancel: Optional[Callable[[], None]] = None
        self._task: Optional[asyncio.Task] = None

    def __call__(self) -> None:
        self.close()

    def close(self) -> None:
        self.closed = True
        if self._cancel is not None:
            self._cancel()
            self._cancel = None
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def start(self) -> "Subscription":
        try:
            self._cancel = self.store.watch(
                MESSAGES,
                {"chatId": self.thread_id},
                self._deliver,
                self._on_ordered_error,
                order_by=ORDER_FIELD,
            )
            self.mode = "ordered"
        except Exception as exc:
            logger.warning("Ordered feed for chat %s unavailable: %s", self.thread_id, exc)
            self._start_unordered()
        return self

    def _start_unordered(self) -> None:
        if self.closed:
            return
        try:
            self._cancel = self.store.watch(
                MESSAGES,
                {"chatId": self.thread_id},
                self._deliver,
                self._on_unordered_error,
            )
            self.mode = "unordered"
            logger.info("Chat %s using unordered feed with local sort", self.thread_id)
        except Exception as exc:
            logger.warning("Live feed for chat %s unavailable: %s", self.thread_id, exc)
            self._start_one_shot()

    def _start_one_shot(self) -> None:
        self.mode = "one_shot"
        self._cancel = None
        self._task = asyncio.get_running_loop().create_task(self._fetch_once())

    async def _fetch_once(self) -> None:
        try:
            docs = await self.store.query(MESSAGES, {"chatId": self.thread_id})
        except Exception as exc:
            logger.error("One-shot fetch for chat %s failed: %s", self.thread_id, exc)
            self._report(exc)
            return
        self._deliver(docs)

    def _drop_live(self) -> None:
        if self._cancel is not None:
            self._cancel()
            self._cancel = None

    def _on_ordered_error(self, exc: Exception) -> None:
        if isinstance(exc, IndexUnavailableError):
            logger.warning("Missing index for chat %s messages, falling back", self.thread_id)
            self._drop_live()
            self._start_unordered()
            return
        self._on_unordered_error(exc)

    def _on_unordered_error(self, exc: Exception) -> None:
        if isinstance(exc, LiveQueryUnavailableError) and not self.closed:
            logger.warning("Live feed for chat %s lost: %s", self.thread_id, exc)
            self._drop_live()
            self._start_one_shot()
            return
        self._report(exc)

    def _deliver(self, docs: list) -> None:
        if self.closed:
            return
        try:
            self.on_messages(sort_messages(docs))
        except Exception as exc:
            logger.exception("Message listener failed for chat %s", self.thread_id)
            self._report(exc)

    def _report(self, exc: Exception) -> None:
        if self.closed:
            return
        if self.on_error is not None:
            try:
                self.on_error(exc)
            except Exception:
                logger.exception("Error listener failed for chat %s", self.thread_id)


class MessageStream:
    def __init__(self, store: DocumentStore, chats: ChatStore):
        self.store = store
        self.chats = chats

    def subscribe(
        self,
        thread_id: str,
        on_messages: MessagesCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        return Subscription(self.store, thread_id, on_messages, on_error).start()

    async def fetch(self, thread_id: str) -> List[Message]:
        try:
            docs = await self.store.query(MESSAGES, {"chatId": thread_id}, order_by=ORDER_FIELD)
        except IndexUnavailableError:
            logger.warning("Missing index for chat %s messages, sorting locally", thread_id)
            docs = await self.store.query(MESSAGES, {"chatId": thread_id})
        return sort_messages(docs)

    async def send(self, thread_id: str, sender_id: str, text: str, post_id: Optional[str] = None) -> Message:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message text cannot be empty")

        thread = await self.chats.get_thread_for(thread_id, sender_id)
        doc = await self.store.add(
            MESSAGES,
            {
                "chatId": thread_id,
                "senderId": sender_id,
                "text": text,
                "createdAt": SERVER_TIMESTAMP,
                "read": False,
                "postId": post_id or thread.post_id,
            },
        )
        await self.chats.record_outgoing_message(thread_id, sender_id, text)
        logger.info("Message %s sent in chat %s by %s", doc["id"], thread_id, sender_id)
        return Message.model_validate(doc)

    async def mark_read(self, thread_id: str, reader_id: str) -> int:
        """
        Flip `read` on every incoming unread message in one batch, then zero
        the reader's counter. A message that arrives in between moves the
        counter, fails the reset and gets picked up by the next pass.
        """
        marked = 0
        for _ in range(READ_ATTEMPTS):
            thread = await self.chats.get_thread_for(thread_id, reader_id)
            observed = thread.unread_for(reader_id)
            unread = await self.store.query(MESSAGES, {"chatId": thread_id, "read": False})
            incoming = [d["id"] for d in unread if d.get("senderId") != reader_id]
            if incoming:
                await self.store.batch_update(MESSAGES, [(doc_id, {"read": True}) for doc_id in incoming])
                marked += len(incoming)
            if await self.chats.reset_unread(thread_id, reader_id, expected=observed):
                break
        else:
            logger.warning("Unread counter of chat %s kept moving, left for the next read", thread_id)
        if marked:
            logger.info("Marked %d messages read in chat %s for %s", marked, thread_id, reader_id)
        return marked


def get_message_stream(
    store: DocumentStore = Depends(get_document_store),
    chats: ChatStore = Depends(get_chat_store),
) -> MessageStream:
    return MessageStream(store, chats)
