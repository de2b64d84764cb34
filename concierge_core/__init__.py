"""Concierge Core 顶层包。

该包提供餐厅/酒吧礼宾聊天后端的核心实现，包括配置加载、领域模型、
Provider 流式适配、工具注册与分发、多轮工具调用编排、会话持久化，
以及基于 SSE 的 HTTP 传输层。
"""

from concierge_core.agents.orchestrator import OrchestratorConfig, TurnOrchestrator

__all__ = ["OrchestratorConfig", "TurnOrchestrator"]
