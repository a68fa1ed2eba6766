import logging
from typing import Callable, List, Optional

from fastapi import Depends

from app.schemas.messages import ThreadView, UnreadForPost
from app.services.chat_store import ChatStore, get_chat_store
from app.services.document_store import ErrorCallback, Unsubscribe

logger = logging.getLogger(__name__)


def sum_unread(threads: List[ThreadView]) -> int:
    return sum(t.unread_count for t in threads)


class UnreadAggregator:
    """Unread counts derived from thread counters; no stored total."""

    def __init__(self, chats: ChatStore):
        self.chats = chats

    async def total_unread_for_user(self, user_id: str) -> int:
        return sum_unread(await self.chats.list_threads_for_user(user_id))

    async def unread_for_post(self, post_id: str, user_id: str) -> Optional[UnreadForPost]:
        for thread in await self.chats.list_threads_for_post(post_id):
            if thread.role_of(user_id) is not None:
                return UnreadForPost(
                    thread_id=thread.id,
                    unread_count=thread.unread_for(user_id),
                    other_participant_id=thread.other_participant(user_id),
                )
        return None

    def subscribe_total(
        self,
        user_id: str,
        on_total: Callable[[int], None],
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe:
        """Push the user's total whenever it changes."""
        last = {"total": None}

        def on_threads(threads: List[ThreadView]) -> None:
            total = sum_unread(threads)
            if total != last["total"]:
                last["total"] = total
                on_total(total)

        return self.chats.watch_threads_for_user(user_id, on_threads, on_error)


def get_unread_aggregator(chats: ChatStore = Depends(get_chat_store)) -> UnreadAggregator:
    return UnreadAggregator(chats)
