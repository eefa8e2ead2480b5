"""点赞 / 点踩的乐观提交。

两阶段：先本地写入投票，再请求服务端；请求失败时把投票恢复为之前的值，
并抛出 FeedbackSyncFailed 通知调用方。回滚是一次普通的 set_feedback。
同一消息连续投票以最后一次为准，旧请求失败不会覆盖新投票。
"""

import itertools
from typing import Dict

from chat_core.domain.exceptions import BusinessError, FeedbackSyncFailed, InvalidState
from chat_core.domain.models import FeedbackValue, feedback_to_vote
from chat_core.infrastructure.logging.logger import logger
from chat_core.session.store import SessionStore
from chat_core.transport.base import Transport


class FeedbackRecorder:
    def __init__(self, store: SessionStore, transport: Transport):
        self._store = store
        self._transport = transport
        # 每条消息最近一次投票的编号；编号全局递增，清理后也不会重复
        self._generations: Dict[str, int] = {}
        self._counter = itertools.count(1)

    async def vote(self, message_id: str, value: FeedbackValue) -> None:
        message = self._store.get_message(message_id)
        if message is None:
            raise InvalidState(code="MESSAGE_NOT_FOUND", message=message_id, http_status=404)
        prior = message.feedback
        self._store.set_feedback(message_id, value)
        generation = next(self._counter)
        self._generations[message_id] = generation

        vote = feedback_to_vote(value)
        if vote is None:
            # 服务端没有“取消评价”接口，只在本地清除
            self._settle(message_id, generation)
            return
        try:
            await self._transport.submit_feedback(message_id, vote)
        except BusinessError as exc:
            superseded = self._generations.get(message_id) != generation
            self._settle(message_id, generation)
            if not superseded:
                self._store.set_feedback(message_id, prior)
            logger.warning(
                "Feedback sync failed",
                extra={"extra": {
                    "message_id": message_id,
                    "vote": vote,
                    "rolled_back": not superseded,
                    "error": exc.message,
                }},
            )
            raise FeedbackSyncFailed(code="FEEDBACK_SYNC_FAILED", message=exc.message, message_id=message_id) from exc
        self._settle(message_id, generation)

    def _settle(self, message_id: str, generation: int) -> None:
        """请求结束后清理计数；被更新的投票覆盖时保留给后者判断。"""

        if self._generations.get(message_id) == generation:
            del self._generations[message_id]
