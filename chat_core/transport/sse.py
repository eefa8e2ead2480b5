"""text/event-stream 解码。

按行消费，规则：
- "event:" 设置事件名，默认 "message"；
- "data:" 行累积，多行以换行拼接；
- 空行分发当前事件；以 ":" 开头的是注释；
- 流结束时若仍有未分发的数据，也会分发。

data 能按 JSON 解析就解析，否则保留原始字符串。
"""

import json
from typing import Any, AsyncIterable, AsyncIterator, List, Optional

from chat_core.domain.models import StreamEvent

DEFAULT_EVENT = "message"


def _parse_data(raw: str) -> Any:
    if not raw:
        return ""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


class SseDecoder:
    """有状态的逐行解码器。feed() 每次返回 0 或 1 个事件。"""

    def __init__(self) -> None:
        self._event = DEFAULT_EVENT
        self._data: List[str] = []
        self._seq = 0

    def feed(self, line: str) -> Optional[StreamEvent]:
        line = line.rstrip("\r")
        if not line:
            return self.flush()
        if line.startswith(":"):
            return None
        if line.startswith("event:"):
            self._event = line[6:].strip() or DEFAULT_EVENT
        elif line.startswith("data:"):
            self._data.append(line[5:].strip())
        return None

    def flush(self) -> Optional[StreamEvent]:
        if not self._data:
            self._event = DEFAULT_EVENT
            return None
        raw = "\n".join(self._data)
        event = StreamEvent(name=self._event, data=_parse_data(raw), seq=self._seq, raw=raw)
        self._seq += 1
        self._event = DEFAULT_EVENT
        self._data = []
        return event


async def decode_sse(lines: AsyncIterable[str]) -> AsyncIterator[StreamEvent]:
    decoder = SseDecoder()
    async for line in lines:
        event = decoder.feed(line)
        if event is not None:
            yield event
    tail = decoder.flush()
    if tail is not None:
        yield tail
