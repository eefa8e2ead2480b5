"""会话状态：SessionStore 与 TaskRegistry。"""

from chat_core.session.store import SessionStore
from chat_core.session.task_registry import TaskRegistry

__all__ = ["SessionStore", "TaskRegistry"]
