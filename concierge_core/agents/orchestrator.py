"""对话编排核心模块。

负责一条用户消息的完整生命周期：持久化用户消息 → 请求模型（流式）→ 实时转发事件 →
按需执行工具并回填结果 → 重复直到模型结束，最终在每个轮次边界把转写记录写入存储。

持久化顺序严格为：
    user, (assistant[text? + tool_use...], user[tool_result...])*, assistant(final text)
下一轮请求会完整重放该记录，因此任何一个 tool_use 都必须紧跟对应的 tool_result。
"""

import asyncio
import json
import logging
import time
import weakref
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from uuid import uuid4

from concierge_core.agents.stream_decoder import StreamDecoder
from concierge_core.domain.conversation import ConversationStore
from concierge_core.domain.events import StreamEvent, done_event, error_event, side_channel_event
from concierge_core.domain.exceptions import BusinessError, ProviderStreamError
from concierge_core.domain.models import (
    STOP_TOOL_USE,
    ChatRequest,
    ContentBlock,
    TextBlock,
    ToolInvocation,
    ToolResultBlock,
    TurnResult,
)
from concierge_core.infrastructure.logging.logger import logger
from concierge_core.prompts import load_system_prompt
from concierge_core.providers.base import ProviderClient
from concierge_core.tools.executor import ToolRegistry


# 这些工具的原始结果会以旁路事件直接推给前端（例如地图打点），不经过持久化
DEFAULT_SIDE_CHANNEL_TOOLS = {"geocode_venues": "geocode_results"}


@dataclass
class OrchestratorConfig:
    provider: str
    model: str = "concierge-chat"
    max_tokens: Optional[int] = None
    max_tool_rounds: int = 20  # 超过后强制 tool_choice=none，让模型直接作答
    side_channel_tools: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SIDE_CHANNEL_TOOLS))


class TurnOrchestrator:
    def __init__(
        self,
        store: ConversationStore,
        provider_client: ProviderClient,
        tool_registry: Optional[ToolRegistry] = None,
        config: Optional[OrchestratorConfig] = None,
        system_prompt: Optional[str] = None,
    ):
        self._store = store
        self._provider_client = provider_client
        self._tools = tool_registry or ToolRegistry()
        self._config = config or OrchestratorConfig(provider=provider_client.name)
        self._system_prompt = system_prompt if system_prompt is not None else load_system_prompt("concierge")
        # 同一会话的 send_message 串行执行；锁无人持有时自动回收
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @property
    def store(self) -> ConversationStore:
        return self._store

    async def send_message(self, conversation_id: str, message: str) -> AsyncIterator[StreamEvent]:
        """处理一条用户消息，异步产出 StreamEvent，直到 done 或 error。

        会话不存在时，在产出任何事件之前抛出 ConversationNotFoundError；
        此后的任何失败都只会转换成一条 error 事件，已经落盘的记录保持不变。
        """

        start_time = time.time()
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "conversation_id": conversation_id,
            "provider": self._config.provider,
        }

        async with self._lock_for(conversation_id):
            await self._store.push_message(conversation_id, "user", message)
            self._log(logging.INFO, "Stored user message", log_ctx)

            try:
                async with aclosing(self._run_turns(conversation_id, log_ctx)) as turns:
                    async for event in turns:
                        yield event
            except BusinessError as e:
                self._log(logging.ERROR, "Exchange failed", log_ctx, code=e.code, error=e.message)
                yield error_event(e.message)
            except Exception as e:
                logger.exception("Unexpected failure while streaming", extra={"extra": log_ctx})
                yield error_event(str(e) or type(e).__name__)
            finally:
                self._log(
                    logging.INFO,
                    "Completed exchange",
                    log_ctx,
                    elapsed_seconds=round(time.time() - start_time, 2),
                )

    async def _run_turns(self, conversation_id: str, log_ctx: Dict[str, Any]) -> AsyncIterator[StreamEvent]:
        tool_rounds = 0
        while True:
            force_final = tool_rounds >= self._config.max_tool_rounds
            if force_final:
                self._log(logging.WARNING, "Reached max tool rounds", log_ctx, max_rounds=tool_rounds)

            history = await self._store.get_conversation(conversation_id)
            req = ChatRequest(
                provider=self._config.provider,
                model=self._config.model,
                system=self._system_prompt,
                messages=history,
                max_tokens=self._config.max_tokens,
                tools=self._tools.tool_defs() or None,
                tool_choice="none" if force_final else "auto",
            )
            self._log(
                logging.INFO,
                "Calling provider (stream)",
                log_ctx,
                model=self._config.model,
                message_count=len(history),
                round=tool_rounds + 1,
            )

            decoder = StreamDecoder()
            async with aclosing(self._provider_client.stream_turn(req)) as stream:
                async for raw in stream:
                    for event in decoder.feed(raw):
                        yield event
            turn = decoder.finish()
            if turn.stop_reason is None:
                # 流在 message_delta 之前结束，本轮不完整，不落盘
                raise ProviderStreamError("Stream ended without a stop reason", code="STREAM_INCOMPLETE")

            if force_final or not turn.wants_tools:
                await self._finalize(conversation_id, turn, log_ctx)
                yield done_event()
                return

            tool_rounds += 1
            results: List[ToolResultBlock] = []
            side_events: List[StreamEvent] = []
            for invocation in turn.tool_invocations:
                block, side_event = await self._execute_tool(invocation, log_ctx)
                results.append(block)
                if side_event is not None:
                    side_events.append(side_event)

            # tool_use 与 tool_result 必须成对落盘；调用方取消时先等两次写入完成再释放会话锁
            write = asyncio.ensure_future(self._store_tool_round(conversation_id, turn, results, log_ctx))
            try:
                await asyncio.shield(write)
            except asyncio.CancelledError:
                await write
                raise
            for side_event in side_events:
                yield side_event

    async def _store_tool_round(
        self,
        conversation_id: str,
        turn: TurnResult,
        results: List[ToolResultBlock],
        log_ctx: Dict[str, Any],
    ) -> None:
        await self._store.push_message(conversation_id, "assistant", self._assistant_blocks(turn))
        await self._store.push_message(conversation_id, "user", list(results))
        self._log(
            logging.INFO,
            "Stored tool round",
            log_ctx,
            call_count=len(turn.tool_invocations),
            result_count=len(results),
        )

    async def _finalize(self, conversation_id: str, turn: TurnResult, log_ctx: Dict[str, Any]) -> None:
        if turn.stop_reason == STOP_TOOL_USE and not turn.tool_invocations:
            self._log(logging.WARNING, "Stop reason tool_use without tool invocations", log_ctx)
        if turn.text:
            await self._store.push_message(conversation_id, "assistant", turn.text)
            self._log(logging.INFO, "Stored assistant message", log_ctx, stop_reason=turn.stop_reason)

    @staticmethod
    def _assistant_blocks(turn: TurnResult) -> List[ContentBlock]:
        blocks: List[ContentBlock] = []
        if turn.text:
            blocks.append(TextBlock(text=turn.text))
        blocks.extend(inv.to_block() for inv in turn.tool_invocations)
        return blocks

    async def _execute_tool(
        self,
        invocation: ToolInvocation,
        log_ctx: Dict[str, Any],
    ) -> Tuple[ToolResultBlock, Optional[StreamEvent]]:
        self._log(
            logging.INFO,
            "Tool call received",
            log_ctx,
            tool_name=invocation.name,
            tool_call_id=invocation.id,
            tool_args=invocation.input,
        )
        try:
            result = await self._tools.dispatch(invocation.name, invocation.input)
        except Exception as e:
            # 工具失败是给模型看的数据，不是编排器故障
            self._log(logging.ERROR, "Tool execution failed", log_ctx, tool_call_id=invocation.id, error=str(e))
            result = {"error": str(e) or type(e).__name__}

        content = json.dumps(result, ensure_ascii=False, default=str)
        self._log(
            logging.INFO,
            "Tool execution finished",
            log_ctx,
            tool_call_id=invocation.id,
            result_preview=content[:200],
        )

        side_event = None
        event_type = self._config.side_channel_tools.get(invocation.name)
        if event_type and not _is_error_payload(result):
            side_event = side_channel_event(event_type, result)
        return ToolResultBlock(tool_use_id=invocation.id, content=content), side_event

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})


def _is_error_payload(result: Any) -> bool:
    return isinstance(result, dict) and set(result) == {"error"}
