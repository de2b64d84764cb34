import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Tuple
from uuid import uuid4

from concierge_core.domain.conversation import Conversation, ConversationStore, ConversationSummary, summary_of
from concierge_core.domain.exceptions import ConversationNotFoundError
from concierge_core.domain.models import Message, MessageContent, Role

from .codec import decode_content, encode_content


@dataclass
class _Entry:
    created_at: datetime
    # (role, 编码后的 content)，保证读出的 Message 与存储互不共享可变对象
    rows: List[Tuple[str, str]] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class InMemoryConversationStore(ConversationStore):
    """进程内会话存储，主要用于测试与本地开发。"""

    def __init__(self) -> None:
        self._entries: Dict[str, _Entry] = {}

    async def create_conversation(self) -> Conversation:
        cid = str(uuid4())
        entry = _Entry(created_at=datetime.now(timezone.utc))
        self._entries[cid] = entry
        return Conversation(id=cid, created_at=entry.created_at, messages=[])

    async def get_conversation(self, conversation_id: str) -> List[Message]:
        entry = self._entry(conversation_id)
        return self._decode(entry)

    async def get_all_conversations(self) -> List[ConversationSummary]:
        items = [summary_of(cid, e.created_at, self._decode(e)) for cid, e in self._entries.items()]
        items.sort(key=lambda s: s.created_at)
        return items

    async def push_message(self, conversation_id: str, role: Role, content: MessageContent) -> List[Message]:
        entry = self._entry(conversation_id)
        async with entry.lock:
            entry.rows.append((role, encode_content(content)))
            return self._decode(entry)

    async def delete_conversation(self, conversation_id: str) -> None:
        self._entry(conversation_id)
        del self._entries[conversation_id]

    def _entry(self, conversation_id: str) -> _Entry:
        entry = self._entries.get(conversation_id)
        if entry is None:
            raise ConversationNotFoundError(conversation_id)
        return entry

    @staticmethod
    def _decode(entry: _Entry) -> List[Message]:
        return [Message(role=role, content=decode_content(raw)) for role, raw in entry.rows]
