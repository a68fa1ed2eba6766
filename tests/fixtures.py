"""
Sessions and helpers shared by the test modules.
"""

import asyncio

from app.core.session import Session
from app.schemas.posts import PostCreate
from app.services.chat_store import ChatStore
from app.services.document_store import InMemoryDocumentStore
from app.services.message_stream import MessageStream
from app.services.post_store import PostStore
from app.services.unread import UnreadAggregator

CONTRIBUTOR = Session(user_id="C", role="contributor", email="carla@example.org")
VOLUNTEER = Session(user_id="V", role="volunteer")
VOLUNTEER_2 = Session(user_id="V2", role="volunteer")


async def drain(rounds: int = 20) -> None:
    """Let scheduled snapshot deliveries run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def plastic(quantity: float = 5) -> PostCreate:
    return PostCreate(waste_type="plastic", quantity=quantity, contributor_email="carla@example.org")


class Services:
    def __init__(self, store: InMemoryDocumentStore):
        self.store = store
        self.posts = PostStore(store)
        self.chats = ChatStore(store, self.posts)
        self.stream = MessageStream(store, self.chats)
        self.unread = UnreadAggregator(self.chats)
