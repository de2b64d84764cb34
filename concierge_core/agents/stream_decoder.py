"""单轮流式响应解码器。

把 Provider 的原始增量事件翻译成少量归一化的 StreamEvent，同时累计出 TurnResult。
解码器对外有两个通道：

- feed(raw): 每喂入一条原始事件，立即返回本条事件产生的 StreamEvent 列表（可能为空），
  调用方据此做无缓冲转发；
- finish(): 原始事件序列结束后取回汇总的 TurnResult。

同一解码器实例只处理一轮响应，每轮都应新建实例。
"""

import json
from typing import Any, Dict, List, Optional

from concierge_core.domain.events import (
    StreamEvent,
    text_event,
    tool_input_event,
    tool_use_start_event,
    tool_use_stop_event,
)
from concierge_core.domain.models import ToolInvocation, TurnResult
from concierge_core.infrastructure.logging.logger import logger


def parse_tool_arguments(raw: str) -> Dict[str, Any]:
    """解析拼接完成的参数文本。

    空字符串是合法的（例如 determine_date 这类无参工具，Provider 可能完全不下发参数片段）；
    无法解析或者解析结果不是对象时，同样按空参数处理，不让整轮失败。
    """

    if not raw or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Malformed tool arguments, using empty input", extra={"extra": {"raw": raw[:200]}})
        return {}
    if not isinstance(value, dict):
        logger.warning("Tool arguments are not an object, using empty input", extra={"extra": {"raw": raw[:200]}})
        return {}
    return value


class StreamDecoder:
    def __init__(self) -> None:
        self._pieces: List[str] = []
        self._invocations: List[ToolInvocation] = []
        self._stop_reason: Optional[str] = None
        # 当前打开的工具调用（name, id）及其参数片段缓冲
        self._open_tool: Optional[Dict[str, str]] = None
        self._arg_buffer: List[str] = []

    def feed(self, raw: Dict[str, Any]) -> List[StreamEvent]:
        kind = raw.get("type")
        if kind == "content_block_start":
            return self._on_block_start(raw.get("content_block") or {})
        if kind == "content_block_delta":
            return self._on_block_delta(raw.get("delta") or {})
        if kind == "content_block_stop":
            return self._on_block_stop()
        if kind == "message_delta":
            reason = (raw.get("delta") or {}).get("stop_reason")
            if reason:
                self._stop_reason = reason
            return []
        # message_start / message_stop / ping 等不影响结果
        return []

    def finish(self) -> TurnResult:
        return TurnResult(
            text="".join(self._pieces),
            tool_invocations=list(self._invocations),
            stop_reason=self._stop_reason,
        )

    def _on_block_start(self, block: Dict[str, Any]) -> List[StreamEvent]:
        if block.get("type") == "tool_use":
            name = str(block.get("name") or "")
            tool_id = str(block.get("id") or "")
            self._open_tool = {"name": name, "id": tool_id}
            self._arg_buffer = []
            return [tool_use_start_event(name, tool_id)]
        if block.get("type") == "text" and block.get("text"):
            self._pieces.append(block["text"])
            return [text_event(block["text"])]
        return []

    def _on_block_delta(self, delta: Dict[str, Any]) -> List[StreamEvent]:
        kind = delta.get("type")
        if kind == "text_delta":
            fragment = delta.get("text") or ""
            if not fragment:
                return []
            self._pieces.append(fragment)
            return [text_event(fragment)]
        if kind == "input_json_delta":
            partial = delta.get("partial_json") or ""
            if self._open_tool is None or not partial:
                return []
            self._arg_buffer.append(partial)
            return [tool_input_event(partial)]
        return []

    def _on_block_stop(self) -> List[StreamEvent]:
        if self._open_tool is None:
            return []
        self._invocations.append(
            ToolInvocation(
                id=self._open_tool["id"],
                name=self._open_tool["name"],
                input=parse_tool_arguments("".join(self._arg_buffer)),
            )
        )
        self._open_tool = None
        self._arg_buffer = []
        return [tool_use_stop_event()]
