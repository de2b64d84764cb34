import asyncio
import json
import os
import shutil
import weakref
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List
from uuid import uuid4

from concierge_core.config.settings import settings
from concierge_core.domain.conversation import Conversation, ConversationStore, ConversationSummary, summary_of
from concierge_core.domain.exceptions import BusinessError, ConversationNotFoundError
from concierge_core.domain.models import Message, MessageContent, Role

from .codec import from_record, to_record


class JsonConversationStore(ConversationStore):
    """基于文件系统的会话存储。

    目录结构：
        <root>/conversations/<id>/meta.json
        <root>/conversations/<id>/messages.jsonl   （每行一条消息，按追加顺序）

    文件读写通过 asyncio.to_thread 执行；同一会话的写入由该会话自己的锁串行化，
    不同会话之间互不阻塞。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)
        # 只为已存在的会话建锁；无人持有时自动回收
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    async def create_conversation(self) -> Conversation:
        cid = f"c-{uuid4().hex}"
        now = datetime.now(timezone.utc)
        await asyncio.to_thread(self._create_sync, cid, now)
        return Conversation(id=cid, created_at=now, messages=[])

    async def get_conversation(self, conversation_id: str) -> List[Message]:
        return await asyncio.to_thread(self._read_messages, conversation_id)

    async def get_all_conversations(self) -> List[ConversationSummary]:
        return await asyncio.to_thread(self._list_sync)

    async def push_message(self, conversation_id: str, role: Role, content: MessageContent) -> List[Message]:
        await asyncio.to_thread(self._conv_dir, conversation_id)
        async with self._lock_for(conversation_id):
            return await asyncio.to_thread(self._append_sync, conversation_id, role, content)

    async def delete_conversation(self, conversation_id: str) -> None:
        await asyncio.to_thread(self._conv_dir, conversation_id)
        async with self._lock_for(conversation_id):
            await asyncio.to_thread(self._delete_sync, conversation_id)

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    # ---- 同步实现 ----

    def _create_sync(self, cid: str, created_at: datetime) -> None:
        cdir = self._conv_root / cid
        cdir.mkdir(parents=True, exist_ok=True)
        (cdir / "messages.jsonl").touch()
        self._write_meta(cdir, {"id": cid, "created_at": _iso(created_at)})

    def _append_sync(self, conversation_id: str, role: Role, content: MessageContent) -> List[Message]:
        cdir = self._conv_dir(conversation_id)
        line = json.dumps(
            {"role": role, "content": to_record(content), "created_at": _iso(datetime.now(timezone.utc))},
            ensure_ascii=False,
        )
        try:
            with (cdir / "messages.jsonl").open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
        return self._read_messages(conversation_id)

    def _read_messages(self, conversation_id: str) -> List[Message]:
        cdir = self._conv_dir(conversation_id)
        msgs_path = cdir / "messages.jsonl"
        if not msgs_path.exists():
            return []
        try:
            lines = msgs_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        items: List[Message] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                raise BusinessError(code="STORE_READ_ERROR", message=f"Corrupt message line in {conversation_id}: {e}")
            items.append(Message(role=data["role"], content=from_record(data.get("content"))))
        return items

    def _list_sync(self) -> List[ConversationSummary]:
        items: List[ConversationSummary] = []
        for cdir in self._conv_root.iterdir():
            if not cdir.is_dir():
                continue
            meta = self._read_meta(cdir)
            if meta is None:
                continue
            items.append(summary_of(meta["id"], _parse_iso(meta["created_at"]), self._read_messages(meta["id"])))
        items.sort(key=lambda s: s.created_at)
        return items

    def _delete_sync(self, conversation_id: str) -> None:
        cdir = self._conv_dir(conversation_id)
        try:
            shutil.rmtree(cdir)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))

    def _conv_dir(self, conversation_id: str) -> Path:
        cdir = self._conv_root / conversation_id
        # 拒绝路径穿越，例如 "../x"
        if cdir.resolve().parent != self._conv_root or not (cdir / "meta.json").exists():
            raise ConversationNotFoundError(conversation_id)
        return cdir

    @staticmethod
    def _read_meta(cdir: Path) -> Dict[str, Any] | None:
        meta_path = cdir / "meta.json"
        if not meta_path.exists():
            return None
        try:
            return json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None

    @staticmethod
    def _write_meta(cdir: Path, obj: Dict[str, Any]) -> None:
        meta_path = cdir / "meta.json"
        tmp_path = cdir / f"meta.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, meta_path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(raw: str) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
