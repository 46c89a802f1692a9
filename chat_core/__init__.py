"""Chat Core 顶层包。

该包提供单用户聊天客户端的核心实现：配置加载、领域模型、
Azure OpenAI 流式请求、增量解码与会话生命周期管理，
以及多会话的内存存储。界面渲染与表单校验不在此包内。
"""

from chat_core.api.service import ChatService, get_default_service

__all__ = ["ChatService", "get_default_service"]
