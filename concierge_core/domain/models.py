"""统一的消息、内容块与单轮结果数据模型。

本模块定义了编排器、存储层与 Provider 适配层之间共享的标准数据结构：

- TextBlock / ToolUseBlock / ToolResultBlock: 结构化消息内容中的三类内容块。
- Message: 一条持久化消息，content 为纯文本或内容块列表（二选一的 tagged union）。
- ChatRequest: 发给底层 LLM Provider 的完整单轮请求。
- ToolInvocation: 从流式片段中拼装出来的一次工具调用（仅在编排器内部存在）。
- TurnResult: 解码器在一轮流式响应结束后给出的汇总结果。

所有 Provider 适配器都只依赖这些模型，并负责在各自的 API JSON
和这些模型之间做转换；编排器只处理解析后的 union，不接触存储格式。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union, TYPE_CHECKING

if TYPE_CHECKING:
    # 仅在类型检查时导入，避免运行时循环依赖
    from concierge_core.tools.definitions import ToolDef


# 持久化消息的角色。工具结果也以 "user" 角色回传给模型。
Role = Literal["user", "assistant"]

# Provider 报告的停止原因
STOP_TOOL_USE = "tool_use"
STOP_END_TURN = "end_turn"


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: Literal["text"] = "text"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class ToolUseBlock:
    """assistant 消息中的一次工具调用。"""

    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_use"] = "tool_use"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "id": self.id, "name": self.name, "input": dict(self.input)}


@dataclass(frozen=True)
class ToolResultBlock:
    """工具执行结果，content 为 JSON 序列化后的文本。"""

    tool_use_id: str
    content: str
    type: Literal["tool_result"] = "tool_result"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "tool_use_id": self.tool_use_id, "content": self.content}


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]
MessageContent = Union[str, List[ContentBlock]]

BLOCK_TYPES = {"text", "tool_use", "tool_result"}


def block_from_dict(data: Dict[str, Any]) -> ContentBlock:
    """把 Provider/存储中的字典还原为内容块，未知类型抛出 ValueError。"""

    kind = data.get("type")
    if kind == "text":
        return TextBlock(text=str(data.get("text") or ""))
    if kind == "tool_use":
        raw_input = data.get("input")
        return ToolUseBlock(
            id=str(data["id"]),
            name=str(data["name"]),
            input=raw_input if isinstance(raw_input, dict) else {},
        )
    if kind == "tool_result":
        content = data.get("content")
        if not isinstance(content, str):
            content = "" if content is None else str(content)
        return ToolResultBlock(tool_use_id=str(data["tool_use_id"]), content=content)
    raise ValueError(f"Unknown content block type: {kind!r}")


@dataclass(frozen=True)
class Message:
    """一条持久化消息。

    - role: user 或 assistant。
    - content: 纯文本，或有序的内容块列表（文本块 / 工具调用块 / 工具结果块）。
      tool_result 块只允许出现在 role="user" 的消息中。
    """

    role: Role
    content: MessageContent

    @property
    def is_structured(self) -> bool:
        return not isinstance(self.content, str)

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [b.to_dict() for b in self.content]}


@dataclass
class ChatRequest:
    """一次完整的单轮模型请求。

    编排器每一轮都会重新读取完整历史生成 ChatRequest（Provider 是无状态的），
    Provider 适配层负责把本结构转换成具体 API 的 JSON 请求体。
    """

    provider: str  # 逻辑 Provider 名，如 "anthropic"
    model: str  # 逻辑模型名，如 "concierge-chat"（再由 registry 映射为真实模型名）
    system: str
    messages: List[Message]
    max_tokens: Optional[int] = None
    tools: Optional[List["ToolDef"]] = None
    # 模型是否允许使用工具；达到最大工具轮数后编排器会改为 "none"
    tool_choice: Literal["auto", "none"] = "auto"


@dataclass
class ToolInvocation:
    """模型发起的一次工具调用请求。"""

    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)

    def to_block(self) -> ToolUseBlock:
        return ToolUseBlock(id=self.id, name=self.name, input=dict(self.input))


@dataclass
class TurnResult:
    """单轮流式响应的汇总。

    - text: 本轮累计的全部文本片段。
    - tool_invocations: 按出现顺序排列的工具调用。
    - stop_reason: Provider 报告的停止原因；流提前结束时为 None。
    """

    text: str = ""
    tool_invocations: List[ToolInvocation] = field(default_factory=list)
    stop_reason: Optional[str] = None

    @property
    def wants_tools(self) -> bool:
        return self.stop_reason == STOP_TOOL_USE and bool(self.tool_invocations)
