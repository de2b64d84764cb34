"""Anthropic Messages API Provider 适配器。

本模块负责：

1. 接收统一的 ChatRequest。
2. 将其转换为 Messages API 的请求 JSON（system / messages / tools / max_tokens / stream）。
3. 通过 httpx 异步流式调用接口，处理网络/限流/服务端异常。
4. 逐行解析 SSE，把每个 data 帧的 JSON 原样产出给 StreamDecoder。

这里只做"厂商 JSON ⇄ 项目内部统一模型"的转换，不做任何事件归一化。
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from concierge_core.config.settings import settings
from concierge_core.domain.exceptions import (
    ApiError,
    NetworkError,
    ProviderStreamError,
    RateLimitError,
    ValidationError,
)
from concierge_core.domain.models import ChatRequest, Message
from concierge_core.providers.registry import ANTHROPIC_CONFIG, ModelConfig
from concierge_core.tools.definitions import ToolDef


class AnthropicClient:
    """Anthropic 提供方客户端实现。

    - name: Provider 名称（供日志/调试使用）。
    - stream_turn: 对外统一调用入口，异步产出原始流事件。
    """

    name = "anthropic"

    def __init__(self, cfg=settings):
        # Settings 里包含 base_url、api_key、超时等配置
        self._settings = cfg

    async def stream_turn(self, req: ChatRequest) -> AsyncIterator[Dict[str, Any]]:
        """执行一轮流式对话调用，逐条 yield SSE data 中的事件对象。"""

        api_key = getattr(self._settings, "anthropic_api_key", None)
        if not api_key:
            # 配置缺失走 ValidationError，方便上层统一处理
            raise ValidationError(code="MISSING_API_KEY", message="ANTHROPIC_API_KEY not set")
        model_cfg = ANTHROPIC_CONFIG.resolve_model(req.model)
        payload = self._build_payload(req, model_cfg)
        base = getattr(self._settings, "anthropic_base_url", None) or ANTHROPIC_CONFIG.base_url
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    f"{base}/v1/messages",
                    json=payload,
                    headers={
                        "x-api-key": api_key,
                        "anthropic-version": getattr(self._settings, "anthropic_version", "2023-06-01"),
                        "Content-Type": "application/json",
                    },
                ) as resp:
                    if resp.status_code == 429:
                        # 限流错误不在这里重试，交给调用方
                        raise RateLimitError(code="RATE_LIMIT", message="Anthropic rate limit", http_status=429)
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        raise ApiError(
                            code="API_ERROR",
                            message=body.decode("utf-8", errors="replace"),
                            http_status=resp.status_code,
                        )
                    async for line in resp.aiter_lines():
                        event = self._parse_sse_line(line)
                        if event is not None:
                            yield event
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时、流被中途断开等
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    def _build_payload(self, req: ChatRequest, model_cfg: ModelConfig) -> Dict[str, Any]:
        """将 ChatRequest 转成 Messages API 所需的请求 JSON。"""

        payload: Dict[str, Any] = {
            "model": model_cfg.provider_model,
            "max_tokens": req.max_tokens
            or getattr(self._settings, "max_output_tokens", None)
            or model_cfg.max_tokens,
            "system": req.system,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "stream": True,
        }
        if req.tools:
            payload["tools"] = [self._serialize_tool(tool) for tool in req.tools]
            if req.tool_choice == "none":
                payload["tool_choice"] = {"type": "none"}
        return payload

    @staticmethod
    def _message_to_payload(message: Message) -> Dict[str, Any]:
        return message.to_dict()

    @staticmethod
    def _serialize_tool(tool: ToolDef) -> Dict[str, Any]:
        """把内部的 ToolDef 转成 Messages API 的 tool 描述。"""

        properties: Dict[str, Any] = {}
        required: List[str] = []
        for name, param in tool.params.items():
            schema = param.schema or {"type": "string"}
            if param.description:
                schema = {**schema, "description": param.description}
            properties[name] = schema
            if param.required:
                required.append(name)
        input_schema: Dict[str, Any] = {"type": "object", "properties": properties}
        if required:
            input_schema["required"] = required
        return {"name": tool.name, "description": tool.description, "input_schema": input_schema}

    @staticmethod
    def _parse_sse_line(line: str) -> Optional[Dict[str, Any]]:
        """解析一行 SSE。

        只关心 data 帧；event/注释/空行返回 None。data 无法解析为 JSON，
        或者是 Provider 下发的 error 事件时，抛出 ProviderStreamError。
        """

        if not line or not line.startswith("data:"):
            return None
        data_str = line[5:].strip()
        if not data_str or data_str == "[DONE]":
            return None
        try:
            event = json.loads(data_str)
        except json.JSONDecodeError:
            raise ProviderStreamError(f"Malformed stream data: {data_str[:200]}")
        if not isinstance(event, dict):
            raise ProviderStreamError(f"Unexpected stream payload: {data_str[:200]}")
        if event.get("type") == "error":
            err = event.get("error") or {}
            raise ProviderStreamError(
                err.get("message") or "Provider reported an error",
                code=str(err.get("type") or "PROVIDER_STREAM_ERROR"),
            )
        return event
