"""领域层模型与协议。

包含：
- models: ChatConfig 快照、Message / Conversation 以及发给 Provider 的 ChatRequest。
- conversation: 内存中的 ConversationStore，负责把流式事件落到目标消息上。
- exceptions: 业务异常类型定义。
"""
