"""对外 API 服务模块。

提供简化的函数接口供 HTTP 层（api.server）或其他上层应用调用：
默认编排器单例、会话增删查，以及把 StreamEvent 序列转换为 SSE 帧的传输中继。
"""

import json
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional

from concierge_core.agents.orchestrator import OrchestratorConfig, TurnOrchestrator
from concierge_core.config.settings import settings
from concierge_core.domain.conversation import ConversationStore
from concierge_core.domain.events import StreamEvent, error_event
from concierge_core.domain.exceptions import BusinessError
from concierge_core.infrastructure.logging.logger import logger
from concierge_core.infrastructure.storage.json_store import JsonConversationStore
from concierge_core.infrastructure.storage.memory_store import InMemoryConversationStore
from concierge_core.providers import create_provider
from concierge_core.tools.executor import default_registry


_store: Optional[ConversationStore] = None
_agent: Optional[TurnOrchestrator] = None


def build_store(backend: Optional[str] = None) -> ConversationStore:
    """根据配置选择会话存储后端（memory / json）。"""
    kind = backend or settings.storage_backend
    if kind == "json":
        return JsonConversationStore(root=settings.storage_root)
    return InMemoryConversationStore()


def get_default_agent() -> TurnOrchestrator:
    """获取默认的编排器实例（单例）。"""
    global _store, _agent
    if _store is None:
        _store = build_store()
    if _agent is None:
        provider = create_provider()
        _agent = TurnOrchestrator(
            store=_store,
            provider_client=provider,
            tool_registry=default_registry(settings),
            config=OrchestratorConfig(
                provider=provider.name,
                model=settings.default_model,
                max_tokens=settings.max_output_tokens,
                max_tool_rounds=settings.max_tool_rounds,
            ),
        )
    return _agent


async def create_conversation(agent: TurnOrchestrator) -> Dict[str, Any]:
    conv = await agent.store.create_conversation()
    logger.info("Created new conversation", extra={"extra": {"conversation_id": conv.id}})
    return {"id": conv.id, "createdAt": conv.created_at.isoformat()}


async def list_conversations(agent: TurnOrchestrator) -> List[Dict[str, Any]]:
    """列出所有会话摘要。

    Returns:
        会话列表，每项包含 id, createdAt, preview, messageCount
    """
    items = await agent.store.get_all_conversations()
    return [
        {
            "id": s.id,
            "createdAt": s.created_at.isoformat(),
            "preview": s.preview,
            "messageCount": s.message_count,
        }
        for s in items
    ]


async def get_conversation_messages(agent: TurnOrchestrator, conversation_id: str) -> List[Dict[str, Any]]:
    """获取会话的所有消息（按追加顺序）。

    Raises:
        ConversationNotFoundError: 会话不存在
    """
    msgs = await agent.store.get_conversation(conversation_id)
    return [m.to_dict() for m in msgs]


async def delete_conversation(agent: TurnOrchestrator, conversation_id: str) -> None:
    await agent.store.delete_conversation(conversation_id)
    logger.info("Deleted conversation", extra={"extra": {"conversation_id": conversation_id}})


def encode_sse(event: StreamEvent) -> str:
    return f"data: {json.dumps(event.to_dict(), ensure_ascii=False, default=str)}\n\n"


async def relay_sse(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    """把事件序列逐条编码为 SSE 帧，遇到 done / error 后结束。

    消费方提前停止迭代（例如客户端断开）时，上游生成器会被关闭，
    未完成的轮次不会写入存储。
    """
    async with aclosing(events) as stream:
        try:
            async for event in stream:
                yield encode_sse(event)
                if event.is_terminal:
                    return
        except BusinessError as e:
            logger.error("Relay failed", extra={"extra": {"code": e.code, "error": e.message}})
            yield encode_sse(error_event(e.message))
