"""流式对话协议的统一数据模型。

服务端通过 text/event-stream 推送一组有序事件：

- meta: 首个事件，携带 conversationId 与 taskId。
- message: 增量文本，type 区分思考（think）与回答（response）。
- finish: 完成事件，可携带持久化后的 messageId 与生成的标题。
- cancel / reject / title / error / done: 其余控制事件。

transport 层负责把原始 SSE 帧解码为 StreamEvent，
StreamController 只依赖这里定义的结构。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional


Role = Literal["user", "assistant"]

MessageStatus = Literal["streaming", "done", "cancelled", "error"]

# 反馈取值；None 表示未评价
FeedbackValue = Optional[Literal["like", "dislike"]]

DeltaKind = Literal["thinking", "answer"]

# 服务端 message 事件里 type 字段的取值与内部 DeltaKind 的对应关系
_DELTA_TYPE_ALIASES: Dict[str, DeltaKind] = {
    "think": "thinking",
    "thinking": "thinking",
    "response": "answer",
    "answer": "answer",
}

_VOTE_TO_FEEDBACK: Dict[int, FeedbackValue] = {1: "like", -1: "dislike"}


def delta_kind(raw_type: Optional[str]) -> Optional[DeltaKind]:
    """把服务端的 delta type 映射为内部类型，未知类型返回 None。"""

    if not raw_type:
        return None
    return _DELTA_TYPE_ALIASES.get(str(raw_type).lower())


def vote_to_feedback(vote: Optional[int]) -> FeedbackValue:
    if vote is None:
        return None
    return _VOTE_TO_FEEDBACK.get(int(vote))


def feedback_to_vote(value: FeedbackValue) -> Optional[int]:
    if value == "like":
        return 1
    if value == "dislike":
        return -1
    return None


@dataclass
class MetaPayload:
    conversation_id: str
    task_id: str


@dataclass
class DeltaPayload:
    type: str
    delta: str

    @property
    def kind(self) -> Optional[DeltaKind]:
        return delta_kind(self.type)


@dataclass
class CompletionPayload:
    """finish / cancel 事件的负载，两个字段都可能缺失。"""

    message_id: Optional[str] = None
    title: Optional[str] = None


@dataclass
class StreamEvent:
    """一个已解码的通道事件。

    - name: SSE event 名（meta/message/finish/cancel/reject/title/error/done）。
    - data: JSON 解析后的数据；无法解析时为原始字符串。
    - seq: 通道内的到达序号，从 0 开始；为 None 时由消费方按到达顺序编号。
    """

    name: str
    data: Any = None
    seq: Optional[int] = None
    raw: Optional[str] = field(default=None, repr=False)

    def meta(self) -> MetaPayload:
        data = self._mapping()
        return MetaPayload(
            conversation_id=str(data.get("conversationId") or ""),
            task_id=str(data.get("taskId") or ""),
        )

    def delta(self) -> DeltaPayload:
        data = self._mapping()
        return DeltaPayload(type=str(data.get("type") or ""), delta=str(data.get("delta") or ""))

    def completion(self) -> CompletionPayload:
        data = self._mapping()
        message_id = data.get("messageId")
        title = data.get("title")
        return CompletionPayload(
            message_id=str(message_id) if message_id not in (None, "") else None,
            title=str(title) if title else None,
        )

    def error_text(self) -> str:
        if isinstance(self.data, dict):
            return str(self.data.get("error") or self.data.get("message") or self.data)
        return str(self.data or "stream error")

    def _mapping(self) -> Dict[str, Any]:
        return self.data if isinstance(self.data, dict) else {}
