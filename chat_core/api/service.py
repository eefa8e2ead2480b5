"""对外服务模块。

ChatService 把配置、ApiClient、SessionStore、TaskRegistry、
StreamController 与 FeedbackRecorder 组装在一起，供上层 UI 调用。
各组件都通过构造参数注入，测试可以替换任意一个。
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from chat_core.config.settings import settings as default_settings
from chat_core.domain.conversation import Message, Session
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import FeedbackValue, vote_to_feedback
from chat_core.feedback.recorder import FeedbackRecorder
from chat_core.infrastructure.logging.logger import logger
from chat_core.session.store import SessionStore
from chat_core.session.task_registry import TaskRegistry
from chat_core.streaming.controller import StreamController, StreamOutcome
from chat_core.transport.http_client import ApiClient


def _parse_time(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class ChatService:
    def __init__(
        self,
        client: ApiClient,
        *,
        store: Optional[SessionStore] = None,
        registry: Optional[TaskRegistry] = None,
        cfg=default_settings,
    ):
        self._settings = cfg
        self._client = client
        self._registry = registry or TaskRegistry()
        self._store = store or SessionStore(self._registry, default_title=cfg.default_session_title)
        self._controller = StreamController(
            self._store,
            self._registry,
            client,
            idle_timeout=cfg.stream_idle_timeout,
            on_conversation_change=self._follow_conversation,
        )
        self._recorder = FeedbackRecorder(self._store, client)
        self.current_session_id: Optional[str] = None
        self.deep_thinking_enabled: bool = cfg.deep_thinking_default

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def controller(self) -> StreamController:
        return self._controller

    # ---- 认证 ----

    async def login(self, username: str, password: str) -> Dict[str, Any]:
        user = await self._client.login(username, password)
        self._reset_state()
        return user

    async def logout(self) -> None:
        try:
            await self._client.logout()
        finally:
            self._reset_state()

    # ---- 会话 ----

    async def refresh_sessions(self) -> List[Session]:
        items = await self._call("list_conversations")
        self._store.load_sessions(
            Session(
                id=str(item.get("conversationId")),
                title=item.get("title") or self._settings.default_session_title,
                last_time=_parse_time(item.get("lastTime")),
            )
            for item in items
            if item.get("conversationId")
        )
        return self._store.sessions()

    async def select_session(self, conversation_id: str) -> List[Message]:
        """切换到指定会话并加载消息；其他会话中进行中的回复会先被取消。"""

        if self.current_session_id and self.current_session_id != conversation_id:
            self._controller.cancel(self.current_session_id)
        self.current_session_id = conversation_id
        if self._controller.is_streaming(conversation_id):
            return list(self._store.get_session(conversation_id).messages)
        items = await self._call("list_messages", conversation_id)
        self._store.load_messages(
            conversation_id,
            [
                Message(
                    id=str(item.get("id")),
                    conversation_id=conversation_id,
                    role="assistant" if item.get("role") == "assistant" else "user",
                    content=item.get("content") or "",
                    created_at=_parse_time(item.get("createTime")),
                    feedback=vote_to_feedback(item.get("vote")),
                    status="done",
                )
                for item in items
            ],
        )
        return list(self._store.get_session(conversation_id).messages)

    async def rename_session(self, conversation_id: str, title: str) -> None:
        next_title = (title or "").strip()
        if not next_title:
            return
        await self._call("rename_conversation", conversation_id, next_title)
        self._store.update_title(conversation_id, next_title)

    async def delete_session(self, conversation_id: str) -> None:
        self._controller.cancel(conversation_id)
        await self._call("delete_conversation", conversation_id)
        self._store.remove_session(conversation_id)
        if self.current_session_id == conversation_id:
            self.current_session_id = None

    # ---- 对话 ----

    async def send_message(self, content: str, conversation_id: Optional[str] = None) -> StreamOutcome:
        """提交问题并等待本次流式回复结束。"""

        return await self.start_message(content, conversation_id)

    def start_message(self, content: str, conversation_id: Optional[str] = None) -> "asyncio.Task[StreamOutcome]":
        """在后台开始一次回复；新会话在 meta 到达前以草稿 id 作为当前会话。"""

        target = conversation_id or self.current_session_id
        runner = self._controller.start(content, target, self.deep_thinking_enabled)
        if target:
            self.current_session_id = target
        return runner

    def cancel_generation(self, conversation_id: Optional[str] = None) -> bool:
        target = conversation_id or self.current_session_id
        if not target:
            return False
        return self._controller.cancel(target)

    async def submit_feedback(self, message_id: str, value: FeedbackValue) -> None:
        await self._recorder.vote(message_id, value)

    async def aclose(self) -> None:
        self._controller.cancel_all()
        await self._controller.wait_background()

    # ---- 内部 ----

    async def _call(self, method: str, *args: Any) -> Any:
        try:
            return await getattr(self._client, method)(*args)
        except BusinessError as e:
            logger.error(f"{method} failed: {e.message}", extra={"extra": {
                "code": e.code,
                "args": [str(a) for a in args],
            }})
            raise

    def _follow_conversation(self, previous: Optional[str], current: Optional[str]) -> None:
        if previous is None or self.current_session_id == previous:
            self.current_session_id = current

    def _reset_state(self) -> None:
        self._controller.cancel_all()
        self._registry.clear()
        self._store.reset()
        self.current_session_id = None
        self.deep_thinking_enabled = self._settings.deep_thinking_default


def create_service(cfg=default_settings, token: Optional[str] = None) -> ChatService:
    """按配置创建完整的 ChatService。"""

    return ChatService(ApiClient(cfg, token=token), cfg=cfg)
