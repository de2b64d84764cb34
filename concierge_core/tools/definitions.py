"""工具数据结构定义。

这些 dataclass 描述了"工具调用"的 schema，用于：
- 将可用工具列表暴露给 LLM（ToolDef / ToolParam）。
- 在 ToolRegistry 中校验模型传入的参数（required 字段）。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str
    required: bool
    schema: Dict[str, Any]


@dataclass
class ToolDef:
    """一个可供 LLM 调用的工具定义。"""

    name: str
    description: str
    params: Dict[str, ToolParam] = field(default_factory=dict)

    def required_params(self) -> List[str]:
        return [name for name, param in self.params.items() if param.required]
