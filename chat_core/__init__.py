"""Chat Core 顶层包。

该包提供流式对话客户端的核心实现，
包括配置加载、领域模型、服务端通信、会话状态容器、
流式回复控制与反馈提交等能力。
"""

from chat_core.api.service import ChatService, create_service

__all__ = ["ChatService", "create_service"]
