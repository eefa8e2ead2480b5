"""每个会话至多一个进行中的流式任务。

TaskRegistry 是“事件是否仍属于当前任务”的唯一判定方，
SessionStore 的 taskId 校验全部委托给这里。
所有方法都是同步的，检查与登记之间没有挂起点。
"""

from typing import Dict, Optional

from chat_core.domain.conversation import StreamTask
from chat_core.domain.exceptions import AlreadyStreaming


class TaskRegistry:
    def __init__(self) -> None:
        self._tasks: Dict[str, StreamTask] = {}

    def register(self, conversation_id: str, task_id: str, message_id: str) -> StreamTask:
        existing = self._tasks.get(conversation_id)
        if existing is not None:
            raise AlreadyStreaming(
                code="ALREADY_STREAMING",
                message="当前会话处理中，请稍后再发起新的对话",
                conversation_id=conversation_id,
                task_id=existing.task_id,
            )
        task = StreamTask(task_id=task_id, conversation_id=conversation_id, message_id=message_id)
        self._tasks[conversation_id] = task
        return task

    def current(self, conversation_id: str) -> Optional[StreamTask]:
        return self._tasks.get(conversation_id)

    def is_current(self, conversation_id: str, task_id: Optional[str]) -> bool:
        task = self._tasks.get(conversation_id)
        return task is not None and task_id is not None and task.task_id == task_id

    def advance(self, conversation_id: str, task_id: str, seq: int) -> bool:
        """接受序号严格递增的事件，重复或回退的序号返回 False。"""

        task = self._tasks.get(conversation_id)
        if task is None or task.task_id != task_id or seq <= task.seq:
            return False
        task.seq = seq
        return True

    def retire(self, conversation_id: str, task_id: str) -> None:
        task = self._tasks.get(conversation_id)
        if task is not None and task.task_id == task_id:
            del self._tasks[conversation_id]

    def clear(self) -> None:
        self._tasks.clear()

    def __len__(self) -> int:
        return len(self._tasks)
