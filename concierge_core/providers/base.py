"""Provider 抽象接口。

编排器不直接依赖具体厂商的 HTTP 协议，而是依赖此协议：

- 每个厂商实现一个 ProviderClient。
- stream_turn(req) 发起一轮流式请求，逐条产出厂商原始事件（dict），
  事件词汇表为 content_block_start / content_block_delta /
  content_block_stop / message_delta 等，由 StreamDecoder 负责归一化。
"""

from typing import Any, AsyncIterator, Dict, Protocol

from concierge_core.domain.models import ChatRequest


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志/统计。
    - stream_turn(req): 执行一轮流式调用，异步产出原始事件。
      连接失败或流数据无法解析时抛出 BusinessError 子类。
    """

    name: str

    def stream_turn(self, req: ChatRequest) -> AsyncIterator[Dict[str, Any]]:
        ...
