"""Transport / Persistence 抽象接口。

StreamController、FeedbackRecorder 与 ChatService 不直接依赖 httpx，
而是依赖这里的协议：

- Transport: 打开流式通道、停止任务、提交反馈。
- Persistence: 会话与消息的列表、重命名、删除。

测试中可以用简单的假对象替换，线上由 ApiClient 同时实现两者。
"""

from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from chat_core.domain.models import StreamEvent


class Transport(Protocol):
    def open_chat_stream(
        self,
        question: str,
        conversation_id: Optional[str] = None,
        deep_thinking: bool = False,
    ) -> AsyncIterator[StreamEvent]:
        """打开一次流式对话，逐个产出已解码事件。"""

        ...

    async def stop_task(self, task_id: str) -> None:
        ...

    async def submit_feedback(self, message_id: str, vote: int) -> None:
        ...


class Persistence(Protocol):
    async def list_conversations(self) -> List[Dict[str, Any]]:
        ...

    async def list_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        ...

    async def rename_conversation(self, conversation_id: str, title: str) -> None:
        ...

    async def delete_conversation(self, conversation_id: str) -> None:
        ...
