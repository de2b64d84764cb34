"""领域层模型与协议。

包含：
- models: Message / 内容块 / ChatRequest / ToolInvocation / TurnResult。
- conversation: 会话模型与 ConversationStore 抽象。
- events: 编排器对外输出的 StreamEvent。
- exceptions: 业务异常类型定义。
"""
