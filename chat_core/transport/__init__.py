"""服务端通信层。

该包下的模块负责：
- 定义 Transport / Persistence 抽象接口 (base)。
- 解码 text/event-stream 帧 (sse)。
- 提供基于 httpx 的具体实现 (http_client)。
"""

from chat_core.transport.base import Persistence, Transport
from chat_core.transport.http_client import ApiClient

__all__ = ["ApiClient", "Persistence", "Transport"]
