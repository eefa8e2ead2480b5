"""流式回复的生命周期控制。

一次提问对应一个流式通道：
1. meta 必须是第一个事件，携带 conversationId 与 taskId，随即在 TaskRegistry 登记；
2. message 事件按到达顺序转成 SessionStore 的 thinking / answer delta；
3. finish 事件完成回复并注销任务；通道提前关闭视为失败。

取消在本地同步生效：先更新状态并注销任务，再以 fire-and-forget 方式
通知服务端停止。之后到达的事件因 taskId 不再是当前任务而被丢弃。
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Optional, Set
from uuid import uuid4

from chat_core.domain.exceptions import (
    AlreadyStreaming,
    BusinessError,
    CancellationRequestFailed,
    ChannelTerminatedUnexpectedly,
    ConcurrentStreamRejected,
    InvalidState,
    ValidationError,
)
from chat_core.domain.models import MessageStatus, StreamEvent
from chat_core.infrastructure.logging.logger import logger
from chat_core.session.store import SessionStore
from chat_core.session.task_registry import TaskRegistry
from chat_core.transport.base import Transport

_EXHAUSTED = object()


async def _read(iterator: AsyncIterator[StreamEvent]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


@dataclass
class StreamHandle:
    """客户端一侧的一次流式回复。"""

    conversation_id: str
    message_id: str
    user_message_id: Optional[str] = None
    task_id: Optional[str] = None
    cancel_requested: bool = False
    closed: bool = False
    error: Optional[BusinessError] = None
    # 已分发的事件数，事件自身没有序号时作为到达序号
    received: int = 0
    key: str = field(default_factory=lambda: uuid4().hex)
    closing: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)

    def close(self) -> None:
        """标记结束并唤醒正在等待下一个事件的消费者。"""

        self.closed = True
        self.closing.set()


@dataclass
class StreamOutcome:
    conversation_id: str
    message_id: str
    status: MessageStatus
    task_id: Optional[str] = None
    error: Optional[BusinessError] = None


class StreamController:
    def __init__(
        self,
        store: SessionStore,
        registry: TaskRegistry,
        transport: Transport,
        *,
        idle_timeout: Optional[float] = None,
        on_conversation_change: Optional[Callable[[Optional[str], Optional[str]], None]] = None,
    ):
        self._store = store
        self._registry = registry
        self._transport = transport
        self._idle_timeout = idle_timeout
        # (旧会话 id, 新会话 id)：草稿会话创建、换成服务端 id 或被撤销时通知调用方
        self._on_conversation_change = on_conversation_change
        self._handles: Dict[str, StreamHandle] = {}
        self._background: Set["asyncio.Task[None]"] = set()

    # ---- 提交 ----

    def is_streaming(self, conversation_id: str) -> bool:
        return (
            self._registry.current(conversation_id) is not None
            or self._store.streaming_message(conversation_id) is not None
        )

    def prepare(
        self,
        question: str,
        conversation_id: Optional[str] = None,
        deep_thinking: bool = False,
    ) -> StreamHandle:
        """同步地创建用户消息与待生成回复。

        会话忙时抛出 ConcurrentStreamRejected，且不会创建任何消息。
        """

        text = (question or "").strip()
        if not text:
            raise ValidationError(code="EMPTY_QUESTION", message="question must not be empty")
        if conversation_id and self.is_streaming(conversation_id):
            raise self._rejected(conversation_id)
        if conversation_id is None:
            conversation_id = self._store.create_session().id
            self._notify(None, conversation_id)
        elif not self._store.has_session(conversation_id):
            self._store.create_session(conversation_id=conversation_id)
        try:
            user, reply = self._store.submit_prompt(conversation_id, text, deep_thinking)
        except InvalidState as exc:
            raise self._rejected(conversation_id) from exc
        handle = StreamHandle(conversation_id=conversation_id, message_id=reply.id, user_message_id=user.id)
        self._handles[handle.key] = handle
        return handle

    async def submit(
        self,
        question: str,
        conversation_id: Optional[str] = None,
        deep_thinking: bool = False,
    ) -> StreamOutcome:
        handle = self.prepare(question, conversation_id, deep_thinking)
        return await self.consume(handle, self._open(handle, question, deep_thinking))

    def start(
        self,
        question: str,
        conversation_id: Optional[str] = None,
        deep_thinking: bool = False,
    ) -> "asyncio.Task[StreamOutcome]":
        """在后台任务里运行一次提交；拒绝与参数错误会立即抛出。"""

        handle = self.prepare(question, conversation_id, deep_thinking)
        return asyncio.get_running_loop().create_task(
            self.consume(handle, self._open(handle, question, deep_thinking))
        )

    # ---- 消费通道 ----

    async def consume(self, handle: StreamHandle, events: AsyncIterator[StreamEvent]) -> StreamOutcome:
        """按到达顺序消费一个通道，直到完成、失败或取消。

        handle.close() 会打断正在等待的读取，通道随即被关闭。
        """

        iterator = events.__aiter__()
        try:
            while not handle.closed:
                try:
                    event = await self._next_event(handle, iterator)
                except StopAsyncIteration:
                    self._terminate(handle, "CHANNEL_CLOSED", "stream closed before completion")
                    break
                except asyncio.TimeoutError:
                    self._terminate(handle, "CHANNEL_IDLE_TIMEOUT", f"no event within {self._idle_timeout}s")
                    break
                except BusinessError as exc:
                    self._terminate(handle, "CHANNEL_ERROR", exc.message, cause=exc.code)
                    break
                if event is None or handle.closed:
                    break
                self._dispatch(handle, event)
                handle.received += 1
        finally:
            self._handles.pop(handle.key, None)
            await self._close_channel(iterator)
        return self._outcome(handle)

    async def _next_event(
        self,
        handle: StreamHandle,
        iterator: AsyncIterator[StreamEvent],
    ) -> Optional[StreamEvent]:
        """等待下一个事件；handle 被关闭时返回 None，空闲超时抛出 TimeoutError。"""

        pending = asyncio.ensure_future(_read(iterator))
        closing = asyncio.ensure_future(handle.closing.wait())
        try:
            done, _ = await asyncio.wait(
                {pending, closing},
                timeout=self._idle_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            pending.cancel()
            await asyncio.wait({pending})
            raise
        finally:
            closing.cancel()
        if pending in done:
            event = pending.result()
            if event is _EXHAUSTED:
                raise StopAsyncIteration
            return event
        # 读取被打断：等它退出后通道才能安全关闭
        pending.cancel()
        await asyncio.wait({pending})
        if handle.closed:
            return None
        raise asyncio.TimeoutError()

    @staticmethod
    async def _close_channel(iterator: AsyncIterator[StreamEvent]) -> None:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()

    def _open(self, handle: StreamHandle, question: str, deep_thinking: bool) -> AsyncIterator[StreamEvent]:
        draft = self._store.get_session(handle.conversation_id).is_draft
        return self._transport.open_chat_stream(
            question.strip(),
            conversation_id=None if draft else handle.conversation_id,
            deep_thinking=deep_thinking,
        )

    # ---- 事件分发 ----

    def _dispatch(self, handle: StreamHandle, event: StreamEvent) -> None:
        if handle.task_id is None:
            if event.name == "meta":
                self._on_meta(handle, event)
            elif event.name == "error":
                self._terminate(handle, "SERVER_ERROR", event.error_text())
            else:
                self._terminate(handle, "PROTOCOL_ERROR", f"expected meta as first event, got {event.name!r}")
            return

        seq = self._sequence(handle, event)
        if not self._registry.advance(handle.conversation_id, handle.task_id, seq):
            self._log(logging.DEBUG, "Discarded stale event", handle, event_name=event.name, seq=seq)
            return

        name = event.name
        if name == "message":
            payload = event.delta()
            if payload.kind == "thinking":
                self._store.apply_thinking_delta(handle.message_id, handle.task_id, payload.delta)
            elif payload.kind == "answer":
                self._store.apply_answer_delta(handle.message_id, handle.task_id, payload.delta)
            else:
                self._log(logging.DEBUG, "Ignored delta of unknown type", handle, delta_type=payload.type)
        elif name == "reject":
            self._store.apply_answer_delta(handle.message_id, handle.task_id, event.delta().delta)
        elif name == "title":
            title = event.completion().title
            if title:
                self._store.update_title(handle.conversation_id, title)
        elif name == "finish":
            payload = event.completion()
            message = self._store.get_message(handle.message_id)
            if self._store.complete(handle.message_id, handle.task_id, payload.title, payload.message_id):
                handle.message_id = message.id
            self._retire(handle)
        elif name == "cancel":
            payload = event.completion()
            message = self._store.get_message(handle.message_id)
            if self._store.cancel(handle.message_id, handle.task_id, payload.message_id):
                handle.message_id = message.id
            if payload.title:
                self._store.update_title(handle.conversation_id, payload.title)
            self._retire(handle)
        elif name == "error":
            self._terminate(handle, "SERVER_ERROR", event.error_text())
        elif name == "meta":
            self._log(logging.WARNING, "Ignored duplicate meta event", handle)

    def _on_meta(self, handle: StreamHandle, event: StreamEvent) -> None:
        meta = event.meta()
        if not meta.task_id:
            self._terminate(handle, "PROTOCOL_ERROR", "meta event without taskId")
            return
        target = meta.conversation_id or handle.conversation_id

        if handle.cancel_requested:
            # 已在 meta 之前取消：补发停止请求后关闭通道
            handle.task_id = meta.task_id
            handle.close()
            if target != handle.conversation_id and self._registry.current(target) is None:
                self._rebind(handle, target)
            self._fire_stop(meta.task_id)
            return

        if target != handle.conversation_id:
            if self._registry.current(target) is not None:
                self._abandon(handle)
                raise self._rejected(target)
            self._rebind(handle, target)
        try:
            self._registry.register(target, meta.task_id, handle.message_id)
        except AlreadyStreaming as exc:
            self._abandon(handle)
            raise self._rejected(target) from exc
        handle.task_id = meta.task_id
        self._registry.advance(target, meta.task_id, self._sequence(handle, event))
        self._log(logging.INFO, "Stream registered", handle)

    # ---- 取消 ----

    def cancel(self, conversation_id: str) -> bool:
        """取消会话中进行中的回复；本地状态立即更新，不等待服务端确认。"""

        handle = self._find_handle(conversation_id)
        task = self._registry.current(conversation_id)
        if task is not None:
            self._fire_stop(task.task_id)
            changed = self._store.cancel(task.message_id, task.task_id)
            self._registry.retire(conversation_id, task.task_id)
            if handle is not None:
                handle.close()
            return changed

        message = self._store.streaming_message(conversation_id)
        if message is None:
            return False
        changed = self._store.cancel(message.id)
        if handle is not None:
            handle.cancel_requested = True
        return changed

    def cancel_all(self) -> None:
        for handle in list(self._handles.values()):
            self.cancel(handle.conversation_id)

    async def wait_background(self) -> None:
        """等待已发出的停止请求结束（关闭或测试时使用）。"""

        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _fire_stop(self, task_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "Stop request skipped: no running event loop",
                extra={"extra": {"task_id": task_id}},
            )
            return
        job = loop.create_task(self._send_stop(task_id))
        self._background.add(job)
        job.add_done_callback(self._background.discard)

    async def _send_stop(self, task_id: str) -> None:
        try:
            await self._transport.stop_task(task_id)
        except BusinessError as exc:
            failure = CancellationRequestFailed(code="STOP_FAILED", message=exc.message, task_id=task_id)
            logger.warning(
                "Stop request failed",
                extra={"extra": {"task_id": task_id, "code": failure.code, "error": failure.message}},
            )

    # ---- 内部 ----

    def _terminate(self, handle: StreamHandle, code: str, message: str, **extra: Any) -> None:
        if handle.cancel_requested or handle.closed:
            # 回复已在本地取消，通道结束不再算作失败
            handle.close()
            return
        error = ChannelTerminatedUnexpectedly(code=code, message=message, **extra)
        handle.error = error
        handle.close()
        self._store.fail(handle.message_id, handle.task_id, message)
        if handle.task_id is not None:
            self._registry.retire(handle.conversation_id, handle.task_id)
        self._log(logging.WARNING, "Stream terminated", handle, code=code, error=message)

    def _retire(self, handle: StreamHandle) -> None:
        handle.close()
        if handle.task_id is not None:
            self._registry.retire(handle.conversation_id, handle.task_id)

    def _abandon(self, handle: StreamHandle) -> None:
        """撤销 prepare() 创建的两条消息，草稿会话为空时一并移除。"""

        handle.close()
        self._store.discard_message(handle.message_id)
        if handle.user_message_id:
            self._store.discard_message(handle.user_message_id)
        session = self._store.get_session(handle.conversation_id)
        if session.is_draft and not session.messages:
            self._store.remove_session(session.id)
            self._notify(session.id, None)

    def _rebind(self, handle: StreamHandle, target: str) -> None:
        previous = handle.conversation_id
        self._store.rebind_session(previous, target)
        handle.conversation_id = target
        self._notify(previous, target)

    def _notify(self, previous: Optional[str], current: Optional[str]) -> None:
        if self._on_conversation_change is not None:
            self._on_conversation_change(previous, current)

    @staticmethod
    def _sequence(handle: StreamHandle, event: StreamEvent) -> int:
        return event.seq if event.seq is not None else handle.received

    def _find_handle(self, conversation_id: str) -> Optional[StreamHandle]:
        for handle in self._handles.values():
            if handle.conversation_id == conversation_id:
                return handle
        return None

    def _outcome(self, handle: StreamHandle) -> StreamOutcome:
        message = self._store.get_message(handle.message_id)
        status: MessageStatus = message.status if message is not None else "cancelled"
        return StreamOutcome(
            conversation_id=handle.conversation_id,
            message_id=handle.message_id,
            status=status,
            task_id=handle.task_id,
            error=handle.error,
        )

    @staticmethod
    def _rejected(conversation_id: str) -> ConcurrentStreamRejected:
        return ConcurrentStreamRejected(
            code="CONCURRENT_STREAM_REJECTED",
            message="当前会话处理中，请稍后再发起新的对话",
            conversation_id=conversation_id,
        )

    @staticmethod
    def _log(level: int, text: str, handle: StreamHandle, **fields: Any) -> None:
        payload: Dict[str, Any] = {
            "conversation_id": handle.conversation_id,
            "message_id": handle.message_id,
            "task_id": handle.task_id,
        }
        payload.update(fields)
        logger.log(level, text, extra={"extra": payload})
