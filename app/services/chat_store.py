# app/services/chat_store.py
import logging
from typing import Callable, Dict, List, Optional

from fastapi import Depends

from app.core.errors import NotFound, PermissionDenied, ValidationError
from app.schemas.messages import ChatThread, ThreadView
from app.services.document_store import (
    SERVER_TIMESTAMP,
    DocumentStore,
    DuplicateKeyError,
    ErrorCallback,
    Increment,
    PreconditionFailed,
    Unsubscribe,
    created_at_key,
    get_document_store,
)
from app.services.post_store import PostStore, get_post_store

logger = logging.getLogger(__name__)

THREADS = "chats"

_UNREAD_FIELD = {"contributor": "unreadContributor", "collector": "unreadCollector"}


def thread_key(post_id: str, user_a: str, user_b: str) -> str:
    """Deterministic id for a (post, unordered participant pair)."""
    low, high = sorted((user_a, user_b))
    return f"{post_id}__{low}__{high}"


def _same_pair(thread: ChatThread, user_a: str, user_b: str) -> bool:
    return {thread.contributor_id, thread.collector_id} == {user_a, user_b}


def view_for(thread: ChatThread, user_id: str) -> ThreadView:
    return ThreadView(
        **thread.model_dump(),
        user_role=thread.role_of(user_id),
        unread_count=thread.unread_for(user_id),
        other_user_id=thread.other_participant(user_id),
    )


class ChatStore:
    def __init__(self, store: DocumentStore, posts: Optional[PostStore] = None):
        self.store = store
        self.posts = posts

    async def find_thread(self, post_id: str, user_a: str, user_b: str) -> Optional[ChatThread]:
        """
        Scans the post's threads and filters the participant pair locally.
        Duplicates left by older clients resolve to the earliest thread.
        """
        docs = await self.store.query(THREADS, {"postId": post_id})
        matches = [ChatThread.model_validate(d) for d in sorted(docs, key=created_at_key)]
        matches = [t for t in matches if _same_pair(t, user_a, user_b)]
        if len(matches) > 1:
            logger.warning("Post %s has %d threads for one pair, using %s", post_id, len(matches), matches[0].id)
        return matches[0] if matches else None

    async def get_or_create_thread(self, post_id: str, contributor_id: str, collector_id: str) -> ChatThread:
        if not post_id or not contributor_id or not collector_id:
            raise ValidationError("postId, contributorId and collectorId are required")
        if contributor_id == collector_id:
            raise ValidationError("A chat needs two different participants")

        existing = await self.find_thread(post_id, contributor_id, collector_id)
        if existing is not None:
            return existing

        key = thread_key(post_id, contributor_id, collector_id)
        try:
            doc = await self.store.create_if_absent(
                THREADS,
                key,
                {
                    "postId": post_id,
                    "contributorId": contributor_id,
                    "collectorId": collector_id,
                    "createdAt": SERVER_TIMESTAMP,
                    "lastMessage": None,
                    "lastMessageTime": SERVER_TIMESTAMP,
                    "unreadContributor": 0,
                    "unreadCollector": 0,
                },
            )
            logger.info("Chat %s created for post %s", key, post_id)
        except DuplicateKeyError:
            # The other participant won the race; use their thread
            logger.info("Chat %s already created concurrently", key)
            doc = await self.store.get(THREADS, key)
            if doc is None:
                raise NotFound(f"Chat {key} not found")
        return ChatThread.model_validate(doc)

    async def start_thread(self, post_id: str, contributor_id: str, collector_id: str) -> ChatThread:
        """
        Opens the chat of a post for its contributor and current acceptor.
        A thread that already exists is returned as is, even once the post has
        been released or deleted; a new one requires the pair to match the post.
        """
        existing = await self.find_thread(post_id, contributor_id, collector_id)
        if existing is not None:
            return existing

        post = await self.posts.get_post(post_id)
        if post.contributor_id != contributor_id:
            raise PermissionDenied(f"{contributor_id} is not the contributor of post {post_id}")
        if post.accepted_by is None or post.accepted_by != collector_id:
            raise PermissionDenied(f"{collector_id} has not accepted post {post_id}")
        return await self.get_or_create_thread(post_id, contributor_id, collector_id)

    async def get_thread(self, thread_id: str) -> ChatThread:
        doc = await self.store.get(THREADS, thread_id)
        if doc is None:
            raise NotFound(f"Chat {thread_id} not found")
        return ChatThread.model_validate(doc)

    async def get_thread_for(self, thread_id: str, user_id: str) -> ChatThread:
        thread = await self.get_thread(thread_id)
        if thread.role_of(user_id) is None:
            raise PermissionDenied("Not a participant of this chat")
        return thread

    async def record_outgoing_message(self, thread_id: str, sender_id: str, text: str) -> None:
        thread = await self.get_thread_for(thread_id, sender_id)
        recipient_role = "collector" if thread.role_of(sender_id) == "contributor" else "contributor"
        await self.store.update(
            THREADS,
            thread_id,
            {
                "lastMessage": text,
                "lastMessageTime": SERVER_TIMESTAMP,
                _UNREAD_FIELD[recipient_role]: Increment(1),
            },
        )

    async def reset_unread(self, thread_id: str, reader_id: str, expected: Optional[int] = None) -> bool:
        """
        Zeroes the reader's counter only if it still holds `expected` (or the
        value read here), so an increment that lands in between survives.
        Returns False when the counter moved.
        """
        thread = await self.get_thread_for(thread_id, reader_id)
        field = _UNREAD_FIELD[thread.role_of(reader_id)]
        observed = thread.unread_for(reader_id) if expected is None else expected
        if observed == 0:
            return True
        try:
            await self.store.update(THREADS, thread_id, {field: 0}, expected={field: observed})
        except PreconditionFailed:
            logger.info("Unread counter of chat %s moved during reset", thread_id)
            return False
        return True

    async def list_threads_for_user(self, user_id: str) -> List[ThreadView]:
        as_contributor = await self.store.query(THREADS, {"contributorId": user_id})
        as_collector = await self.store.query(THREADS, {"collectorId": user_id})
        return self._views(as_contributor + as_collector, user_id)

    async def list_threads_for_post(self, post_id: str) -> List[ChatThread]:
        docs = await self.store.query(THREADS, {"postId": post_id})
        return [ChatThread.model_validate(d) for d in sorted(docs, key=created_at_key)]

    def watch_threads_for_user(
        self,
        user_id: str,
        on_threads: Callable[[List[ThreadView]], None],
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe:
        """
        Push subscription over every thread the user takes part in. Both
        role queries must have reported once before the first delivery.
        """
        latest: Dict[str, Optional[list]] = {"contributorId": None, "collectorId": None}

        def listener(field: str):
            def on_snapshot(docs: list) -> None:
                latest[field] = docs
                if all(v is not None for v in latest.values()):
                    on_threads(self._views(latest["contributorId"] + latest["collectorId"], user_id))

            return on_snapshot

        cancels: List[Unsubscribe] = []
        try:
            for field in latest:
                cancels.append(self.store.watch(THREADS, {field: user_id}, listener(field), on_error))
        except Exception:
            for cancel in cancels:
                cancel()
            raise

        def unsubscribe() -> None:
            for cancel in cancels:
                cancel()

        return unsubscribe

    @staticmethod
    def _views(docs: list, user_id: str) -> List[ThreadView]:
        threads = [ChatThread.model_validate(d) for d in docs]
        threads.sort(key=lambda t: created_at_key({"t": t.last_message_time}, "t"), reverse=True)
        return [view_for(t, user_id) for t in threads]


def get_chat_store(
    store: DocumentStore = Depends(get_document_store),
    posts: PostStore = Depends(get_post_store),
) -> ChatStore:
    return ChatStore(store, posts)
