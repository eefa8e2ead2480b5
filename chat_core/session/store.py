"""会话状态容器。

SessionStore 是 Session / Message 的唯一修改入口：
StreamController 与 FeedbackRecorder 只通过这里的方法请求修改，
不会直接改字段。每个测试用例可以构造独立实例，不存在全局单例。

流式相关的修改（delta / complete / cancel / fail）都要带 taskId，
taskId 是否仍然有效由 TaskRegistry 判定；失效事件静默忽略。
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from chat_core.domain.conversation import Message, Session
from chat_core.domain.exceptions import InvalidState
from chat_core.domain.models import FeedbackValue
from chat_core.infrastructure.logging.logger import logger
from chat_core.session.task_registry import TaskRegistry

DEFAULT_TITLE = "新对话"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:
    def __init__(
        self,
        registry: TaskRegistry,
        *,
        default_title: str = DEFAULT_TITLE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._registry = registry
        self._default_title = default_title
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._messages: Dict[str, Message] = {}

    # ---- 读取 ----

    def sessions(self) -> List[Session]:
        """按最近活动时间倒序返回会话列表。"""

        floor = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(self._sessions.values(), key=lambda s: s.last_time or floor, reverse=True)

    def get_session(self, conversation_id: str) -> Session:
        session = self._sessions.get(conversation_id)
        if session is None:
            raise InvalidState(code="SESSION_NOT_FOUND", message=conversation_id, http_status=404)
        return session

    def has_session(self, conversation_id: str) -> bool:
        return conversation_id in self._sessions

    def get_message(self, message_id: str) -> Optional[Message]:
        return self._messages.get(message_id)

    def streaming_message(self, conversation_id: str) -> Optional[Message]:
        session = self._sessions.get(conversation_id)
        if session is None:
            return None
        for message in session.messages:
            if message.status == "streaming":
                return message
        return None

    # ---- 会话级操作 ----

    def create_session(self, title: Optional[str] = None, conversation_id: Optional[str] = None) -> Session:
        """创建本地会话；未指定 id 时生成 draft- 前缀的临时 id。"""

        cid = conversation_id or f"draft-{uuid4().hex}"
        if cid in self._sessions:
            raise InvalidState(code="SESSION_EXISTS", message=cid)
        session = Session(id=cid, title=title or self._default_title, last_time=_utcnow())
        self._sessions[cid] = session
        return session

    def rebind_session(self, old_id: str, new_id: str) -> Session:
        """把本地会话换成服务端分配的 conversationId。

        若 new_id 已存在，则把本地会话的消息并入其末尾。
        """

        session = self.get_session(old_id)
        if old_id == new_id:
            return session
        del self._sessions[old_id]
        target = self._sessions.get(new_id)
        if target is None:
            session.id = new_id
            target = session
        else:
            target.messages.extend(session.messages)
            target.last_time = max(filter(None, [target.last_time, session.last_time]), default=None)
        for message in target.messages:
            message.conversation_id = new_id
        self._sessions[new_id] = target
        return target

    def update_title(self, conversation_id: str, title: str) -> None:
        title = (title or "").strip()
        if not title:
            return
        self.get_session(conversation_id).title = title

    def remove_session(self, conversation_id: str) -> None:
        if self.streaming_message(conversation_id) is not None:
            raise InvalidState(code="INVALID_STATE", message="cannot remove a session while a reply is streaming")
        session = self._sessions.pop(conversation_id, None)
        if session is None:
            return
        for message in session.messages:
            self._messages.pop(message.id, None)

    def load_sessions(self, sessions: Iterable[Session]) -> None:
        """用服务端列表替换会话集合。

        本地草稿会话和正在流式输出的会话会保留，已加载的消息不丢失。
        """

        incoming: Dict[str, Session] = {}
        for item in sessions:
            existing = self._sessions.get(item.id)
            if existing is not None:
                existing.title = item.title or existing.title
                existing.last_time = item.last_time or existing.last_time
                incoming[item.id] = existing
            else:
                incoming[item.id] = item
        for cid, session in self._sessions.items():
            if cid in incoming:
                continue
            if session.is_draft or self.streaming_message(cid) is not None:
                incoming[cid] = session
            else:
                for message in session.messages:
                    self._messages.pop(message.id, None)
        self._sessions = incoming
        for session in incoming.values():
            for message in session.messages:
                self._messages[message.id] = message

    def load_messages(self, conversation_id: str, messages: Iterable[Message]) -> None:
        if self.streaming_message(conversation_id) is not None:
            raise InvalidState(code="INVALID_STATE", message="cannot reload messages while a reply is streaming")
        if conversation_id not in self._sessions:
            self.create_session(conversation_id=conversation_id)
        session = self._sessions[conversation_id]
        for message in session.messages:
            self._messages.pop(message.id, None)
        session.messages = list(messages)
        for message in session.messages:
            message.conversation_id = conversation_id
            self._messages[message.id] = message

    def reset(self) -> None:
        self._sessions.clear()
        self._messages.clear()

    # ---- 追加消息 ----

    def append_user_message(self, conversation_id: str, text: str) -> Message:
        message = Message(
            id=f"user-{uuid4().hex}",
            conversation_id=conversation_id,
            role="user",
            content=text,
            created_at=_utcnow(),
            status="done",
        )
        self._append(message)
        return message

    def create_pending_reply(self, conversation_id: str, is_deep_thinking: bool) -> str:
        self._ensure_idle(conversation_id)
        message = Message(
            id=f"assistant-{uuid4().hex}",
            conversation_id=conversation_id,
            role="assistant",
            is_deep_thinking=is_deep_thinking,
            is_thinking=is_deep_thinking,
            created_at=_utcnow(),
            status="streaming",
            started_at=self._clock(),
        )
        self._append(message)
        return message.id

    def submit_prompt(self, conversation_id: str, text: str, is_deep_thinking: bool) -> Tuple[Message, Message]:
        """追加用户消息与待生成的回复；会话忙时两者都不会创建。"""

        self._ensure_idle(conversation_id)
        user = self.append_user_message(conversation_id, text)
        reply_id = self.create_pending_reply(conversation_id, is_deep_thinking)
        return user, self._messages[reply_id]

    def discard_message(self, message_id: str) -> None:
        """移除尚未被任何任务登记的消息（服务端拒绝本次提交时使用）。"""

        message = self._messages.get(message_id)
        if message is None:
            return
        task = self._registry.current(message.conversation_id)
        if task is not None and task.message_id == message_id:
            raise InvalidState(code="INVALID_STATE", message="message is bound to an active task")
        session = self._sessions.get(message.conversation_id)
        if session is not None:
            session.messages = [m for m in session.messages if m.id != message_id]
        del self._messages[message_id]

    # ---- 流式修改 ----

    def apply_thinking_delta(self, message_id: str, task_id: str, text: str) -> bool:
        """追加思考文本；思考阶段结束后迟到的片段仍会追加，但不会重新打开 is_thinking。"""

        message = self._live(message_id, task_id)
        if message is None or not message.is_deep_thinking or not text:
            return False
        message.thinking += text
        return True

    def apply_answer_delta(self, message_id: str, task_id: str, text: str) -> bool:
        message = self._live(message_id, task_id)
        if message is None or not text:
            return False
        if message.is_thinking:
            self._close_thinking(message)
        message.content += text
        return True

    def complete(
        self,
        message_id: str,
        task_id: str,
        final_title: Optional[str] = None,
        persisted_id: Optional[str] = None,
    ) -> bool:
        message = self._live(message_id, task_id)
        if message is None:
            return False
        self._close_thinking(message)
        message.status = "done"
        if final_title:
            self.update_title(message.conversation_id, final_title)
        if persisted_id and persisted_id != message.id:
            self._rewrite_id(message, persisted_id)
        self._log(logging.INFO, "Reply completed", message, task_id=task_id)
        return True

    def cancel(
        self,
        message_id: str,
        task_id: Optional[str] = None,
        persisted_id: Optional[str] = None,
    ) -> bool:
        """把回复置为 cancelled；已是终态时是幂等的空操作。

        task_id 为 None 只在该会话尚未登记任务（meta 之前）时允许。
        """

        message = self._terminal_target(message_id, task_id)
        if message is None:
            return False
        self._close_thinking(message)
        message.status = "cancelled"
        if persisted_id and persisted_id != message.id:
            self._rewrite_id(message, persisted_id)
        self._log(logging.INFO, "Reply cancelled", message, task_id=task_id)
        return True

    def fail(self, message_id: str, task_id: Optional[str], error_info: Any = None) -> bool:
        message = self._terminal_target(message_id, task_id)
        if message is None:
            return False
        self._close_thinking(message)
        message.status = "error"
        message.error = str(error_info) if error_info is not None else None
        self._log(logging.WARNING, "Reply failed", message, task_id=task_id, error=message.error)
        return True

    # ---- 反馈 ----

    def set_feedback(self, message_id: str, vote: FeedbackValue) -> None:
        message = self._messages.get(message_id)
        if message is None:
            raise InvalidState(code="MESSAGE_NOT_FOUND", message=message_id, http_status=404)
        if message.role != "assistant":
            raise InvalidState(code="INVALID_STATE", message="feedback is only allowed on assistant messages")
        message.feedback = vote

    # ---- 内部 ----

    def _ensure_idle(self, conversation_id: str) -> None:
        if self.streaming_message(conversation_id) is not None:
            raise InvalidState(
                code="INVALID_STATE",
                message="conversation already has a streaming reply",
                conversation_id=conversation_id,
            )

    def _append(self, message: Message) -> None:
        session = self.get_session(message.conversation_id)
        session.messages.append(message)
        session.last_time = message.created_at or _utcnow()
        self._messages[message.id] = message

    def _live(self, message_id: str, task_id: Optional[str]) -> Optional[Message]:
        message = self._messages.get(message_id)
        if message is None or message.status != "streaming":
            return None
        task = self._registry.current(message.conversation_id)
        if task is None or task.task_id != task_id or task.message_id != message_id:
            logger.debug(
                "Discarded stale event",
                extra={"extra": {"message_id": message_id, "task_id": task_id}},
            )
            return None
        return message

    def _terminal_target(self, message_id: str, task_id: Optional[str]) -> Optional[Message]:
        if task_id is not None:
            return self._live(message_id, task_id)
        message = self._messages.get(message_id)
        if message is None or message.status != "streaming":
            return None
        if self._registry.current(message.conversation_id) is not None:
            return None
        return message

    def _close_thinking(self, message: Message) -> None:
        if not message.is_thinking:
            return
        message.is_thinking = False
        if message.thinking_duration is None:
            elapsed = self._clock() - message.started_at
            message.thinking_duration = max(1, round(elapsed))

    def _rewrite_id(self, message: Message, new_id: str) -> None:
        if new_id in self._messages:
            self._log(logging.WARNING, "Persisted message id already in use", message, persisted_id=new_id)
            return
        del self._messages[message.id]
        message.id = new_id
        self._messages[new_id] = message

    @staticmethod
    def _log(level: int, text: str, message: Message, **fields: Any) -> None:
        payload: Dict[str, Any] = {
            "conversation_id": message.conversation_id,
            "message_id": message.id,
            "status": message.status,
        }
        payload.update(fields)
        logger.log(level, text, extra={"extra": payload})
