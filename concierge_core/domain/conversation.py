from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol

from .models import Message, MessageContent, Role


@dataclass
class Conversation:
    id: str
    created_at: datetime
    messages: List[Message] = field(default_factory=list)


@dataclass
class ConversationSummary:
    id: str
    created_at: datetime
    message_count: int = 0
    preview: str = "New conversation"


def build_preview(messages: List[Message], limit: int = 60) -> str:
    """取第一条用户消息作为会话预览，结构化内容显示为 "..."。"""

    for msg in messages:
        if msg.role != "user":
            continue
        if isinstance(msg.content, str):
            return msg.content[:limit]
        return "..."
    return "New conversation"


class ConversationStore(Protocol):
    """会话存储协议。

    所有实现都必须保证：
    - 不同会话严格隔离；
    - 读取顺序始终等于追加顺序；
    - 对未知 ID 的 get/push/delete 抛出 ConversationNotFoundError，绝不隐式创建。
    """

    async def create_conversation(self) -> Conversation:
        ...

    async def get_conversation(self, conversation_id: str) -> List[Message]:
        ...

    async def get_all_conversations(self) -> List[ConversationSummary]:
        ...

    async def push_message(self, conversation_id: str, role: Role, content: MessageContent) -> List[Message]:
        ...

    async def delete_conversation(self, conversation_id: str) -> None:
        ...


def summary_of(conversation_id: str, created_at: datetime, messages: Optional[List[Message]]) -> ConversationSummary:
    msgs = messages or []
    return ConversationSummary(
        id=conversation_id,
        created_at=created_at,
        message_count=len(msgs),
        preview=build_preview(msgs),
    )
