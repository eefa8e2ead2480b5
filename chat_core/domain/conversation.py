"""会话与消息的内存模型。

Session / Message 由 SessionStore 独占修改，其他组件只读；
StreamTask 由 TaskRegistry 维护，用于判断流式事件是否仍然有效。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .models import FeedbackValue, MessageStatus, Role


TERMINAL_STATUSES = frozenset({"done", "cancelled", "error"})


@dataclass
class Message:
    """一条会话消息。

    - content: 回答阶段累积的正文。
    - thinking: 思考阶段累积的推理文本（可为空）。
    - thinking_duration: 思考耗时（秒），只在思考阶段结束时写入一次。
    - is_deep_thinking: 本条回复是否包含思考阶段，创建时决定，不再变化。
    - is_thinking: 思考阶段正在流式输出时为 True，收到第一段正文后清除。
    """

    id: str
    conversation_id: str
    role: Role
    content: str = ""
    thinking: str = ""
    thinking_duration: Optional[int] = None
    is_deep_thinking: bool = False
    is_thinking: bool = False
    created_at: Optional[datetime] = None
    feedback: FeedbackValue = None
    status: MessageStatus = "done"
    error: Optional[str] = None
    # 单调时钟起点，用于计算 thinking_duration
    started_at: float = field(default=0.0, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class Session:
    id: str
    title: str
    last_time: Optional[datetime] = None
    messages: List[Message] = field(default_factory=list)

    @property
    def is_draft(self) -> bool:
        """尚未从服务端拿到 conversationId 的本地会话。"""
        return self.id.startswith("draft-")


@dataclass
class StreamTask:
    """一次流式回复在客户端的登记信息。

    seq 记录最后一个被接受的通道事件序号，只增不减，
    用于拒绝重复或重放的事件。
    """

    task_id: str
    conversation_id: str
    message_id: str
    seq: int = -1
