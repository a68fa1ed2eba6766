from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatThread(_CamelModel):
    id: str
    post_id: str
    contributor_id: str
    collector_id: str
    created_at: Optional[datetime] = None
    last_message: Optional[str] = None
    last_message_time: Optional[datetime] = None
    unread_contributor: int = 0
    unread_collector: int = 0

    def role_of(self, user_id: str) -> Optional[str]:
        if user_id == self.contributor_id:
            return "contributor"
        if user_id == self.collector_id:
            return "collector"
        return None

    def unread_for(self, user_id: str) -> int:
        role = self.role_of(user_id)
        if role == "contributor":
            return self.unread_contributor
        if role == "collector":
            return self.unread_collector
        return 0

    def other_participant(self, user_id: str) -> str:
        return self.collector_id if user_id == self.contributor_id else self.contributor_id


class ThreadView(ChatThread):
    """A thread as seen by one participant."""

    user_role: str
    unread_count: int = 0
    other_user_id: str


class Message(_CamelModel):
    id: str
    chat_id: str
    sender_id: str
    text: str
    created_at: Optional[datetime] = None
    read: bool = False
    post_id: Optional[str] = None


class LocalMessage(Message):
    """Message as shown in an open chat, including unconfirmed echoes."""

    pending: bool = False
    failed: bool = False


class CreateThreadRequest(_CamelModel):
    post_id: str
    contributor_id: str
    collector_id: str


class SendMessageRequest(_CamelModel):
    text: str
    post_id: Optional[str] = None


class MarkReadResponse(BaseModel):
    marked: int


class UnreadTotal(BaseModel):
    total: int


class UnreadForPost(_CamelModel):
    thread_id: str
    unread_count: int
    other_participant_id: str


class ChatHeader(_CamelModel):
    other_user_id: str
    other_user_name: str
    post_summary: str


class ChatView(_CamelModel):
    state: str
    thread_id: Optional[str] = None
    header: Optional[ChatHeader] = None
    messages: List[LocalMessage] = []
    input_text: str = ""
    error: Optional[str] = None


class ChatSocketEvent(BaseModel):
    """Client event on the chat socket."""

    type: Literal["send", "visible", "retry"]
    text: Optional[str] = None
    visible: bool = True
