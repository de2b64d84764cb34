"""消息内容在存储边界上的编解码。

内容统一落成 JSON 值，靠 JSON 类型区分两种形式，不做任何猜测：

- 纯文本 -> JSON 字符串，读回时逐字节不变（包括带引号、形似 JSON 的文本）；
- 内容块列表 -> JSON 数组。

to_record / from_record 处理 JSON 值本身（JSON 存储直接写入行内）；
encode_content / decode_content 再多一层 json 文本（内存存储按字符串保存）。
"""

import json
from typing import Any, List

from concierge_core.domain.models import ContentBlock, MessageContent, block_from_dict


def to_record(content: MessageContent) -> Any:
    if isinstance(content, str):
        return content
    return [block.to_dict() for block in content]


def from_record(value: Any) -> MessageContent:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        try:
            return _to_blocks(value)
        except (AttributeError, KeyError, TypeError, ValueError):
            # 损坏的块数据按原文展示，不让整段会话不可读
            return json.dumps(value, ensure_ascii=False)
    if value is None:
        return ""
    return json.dumps(value, ensure_ascii=False)


def encode_content(content: MessageContent) -> str:
    return json.dumps(to_record(content), ensure_ascii=False)


def decode_content(raw: str) -> MessageContent:
    return from_record(json.loads(raw))


def _to_blocks(items: List[dict]) -> List[ContentBlock]:
    return [block_from_dict(item) for item in items]
