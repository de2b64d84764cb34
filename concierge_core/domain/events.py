"""编排器对外输出的流式事件。

StreamEvent 只在内存中流转，由传输层逐条序列化为 SSE 帧，从不持久化。
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

TEXT = "text"
TOOL_USE_START = "tool_use_start"
TOOL_INPUT = "tool_input"
TOOL_USE_STOP = "tool_use_stop"
DONE = "done"
ERROR = "error"

TERMINAL_TYPES = frozenset({DONE, ERROR})


@dataclass(frozen=True)
class StreamEvent:
    """一条流式事件。

    type 取值：text / tool_use_start / tool_input / tool_use_stop / done / error，
    以及工具旁路事件（如 geocode_results，携带 payload）。
    """

    type: str
    text: Optional[str] = None
    name: Optional[str] = None
    id: Optional[str] = None
    partial: Optional[str] = None
    message: Optional[str] = None
    payload: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_TYPES

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type}
        if self.type == TEXT:
            data["text"] = self.text or ""
        elif self.type == TOOL_USE_START:
            data["name"] = self.name
            data["id"] = self.id
        elif self.type == TOOL_INPUT:
            data["partial"] = self.partial or ""
        elif self.type == ERROR:
            data["message"] = self.message or ""
        elif self.type not in (TOOL_USE_STOP, DONE):
            data["payload"] = self.payload
        return data


def text_event(fragment: str) -> StreamEvent:
    return StreamEvent(type=TEXT, text=fragment)


def tool_use_start_event(name: str, tool_id: str) -> StreamEvent:
    return StreamEvent(type=TOOL_USE_START, name=name, id=tool_id)


def tool_input_event(partial: str) -> StreamEvent:
    return StreamEvent(type=TOOL_INPUT, partial=partial)


def tool_use_stop_event() -> StreamEvent:
    return StreamEvent(type=TOOL_USE_STOP)


def side_channel_event(event_type: str, payload: Any) -> StreamEvent:
    return StreamEvent(type=event_type, payload=payload)


def done_event() -> StreamEvent:
    return StreamEvent(type=DONE)


def error_event(message: str) -> StreamEvent:
    return StreamEvent(type=ERROR, message=message)
