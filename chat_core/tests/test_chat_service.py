"""ChatService 组装与会话操作测试。"""

import asyncio

import pytest

from chat_core.api.service import ChatService
from chat_core.config.settings import Settings
from chat_core.domain.models import StreamEvent


class FakeClient:
    def __init__(self, events=None, queue=None):
        self.events = events or []
        self.queue = queue
        self.conversations = []
        self.messages = {}
        self.calls = []

    async def login(self, username, password):
        self.calls.append(("login", username))
        return {"userId": "u1", "token": "abc"}

    async def logout(self):
        self.calls.append(("logout",))

    async def list_conversations(self):
        return self.conversations

    async def list_messages(self, conversation_id):
        self.calls.append(("list_messages", conversation_id))
        return self.messages.get(conversation_id, [])

    async def rename_conversation(self, conversation_id, title):
        self.calls.append(("rename", conversation_id, title))

    async def delete_conversation(self, conversation_id):
        self.calls.append(("delete", conversation_id))

    async def submit_feedback(self, message_id, vote):
        self.calls.append(("feedback", message_id, vote))

    async def stop_task(self, task_id):
        self.calls.append(("stop", task_id))

    async def open_chat_stream(self, question, conversation_id=None, deep_thinking=False):
        self.calls.append(("stream", question, conversation_id, deep_thinking))
        for event in self.events:
            yield event
        while self.queue is not None:
            item = await self.queue.get()
            if item is None:
                return
            yield item


def make_service(client):
    return ChatService(client, cfg=Settings(api_base_url="http://ragent.test"))


@pytest.mark.asyncio
async def test_refresh_sessions_sorted_by_last_time():
    client = FakeClient()
    client.conversations = [
        {"conversationId": "c1", "title": "Older", "lastTime": "2024-05-01T10:00:00"},
        {"conversationId": "c2", "title": "", "lastTime": "2024-05-02T10:00:00Z"},
    ]
    service = make_service(client)
    sessions = await service.refresh_sessions()
    assert [s.id for s in sessions] == ["c2", "c1"]
    assert sessions[0].title == "新对话"


@pytest.mark.asyncio
async def test_select_session_maps_history():
    client = FakeClient()
    client.messages["c1"] = [
        {"id": 1, "role": "user", "content": "hi", "createTime": "2024-05-01T10:00:00"},
        {"id": 2, "role": "assistant", "content": "hello", "vote": -1},
        {"id": 3, "role": "assistant", "content": "again", "vote": None},
    ]
    service = make_service(client)
    messages = await service.select_session("c1")

    assert service.current_session_id == "c1"
    assert [m.id for m in messages] == ["1", "2", "3"]
    assert [m.role for m in messages] == ["user", "assistant", "assistant"]
    assert messages[1].feedback == "dislike"
    assert messages[2].feedback is None
    assert all(m.status == "done" for m in messages)
    assert messages[0].created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_rename_trims_and_ignores_blank():
    client = FakeClient()
    service = make_service(client)
    service.store.create_session(conversation_id="c1")
    await service.rename_session("c1", "   ")
    await service.rename_session("c1", "  Plans  ")
    assert client.calls == [("rename", "c1", "Plans")]
    assert service.store.get_session("c1").title == "Plans"


@pytest.mark.asyncio
async def test_delete_session_clears_selection():
    client = FakeClient()
    service = make_service(client)
    await service.select_session("c1")
    await service.delete_session("c1")
    assert not service.store.has_session("c1")
    assert service.current_session_id is None
    assert ("delete", "c1") in client.calls


@pytest.mark.asyncio
async def test_send_message_end_to_end():
    client = FakeClient(events=[
        StreamEvent(name="meta", data={"conversationId": "c7", "taskId": "t7"}, seq=0),
        StreamEvent(name="message", data={"type": "think", "delta": "let me see"}, seq=1),
        StreamEvent(name="message", data={"type": "response", "delta": "Sunny"}, seq=2),
        StreamEvent(name="finish", data={"messageId": 900, "title": "Weather"}, seq=3),
    ])
    service = make_service(client)
    service.deep_thinking_enabled = True
    outcome = await service.send_message("  weather?  ")

    assert outcome.status == "done"
    assert service.current_session_id == "c7"
    assert ("stream", "weather?", None, True) in client.calls
    reply = service.store.get_message("900")
    assert reply.thinking == "let me see"
    assert reply.content == "Sunny"
    assert service.store.get_session("c7").title == "Weather"

    await service.submit_feedback("900", "like")
    assert client.calls[-1] == ("feedback", "900", 1)


@pytest.mark.asyncio
async def test_logout_resets_local_state():
    client = FakeClient()
    service = make_service(client)
    service.store.create_session(conversation_id="c1")
    service.current_session_id = "c1"
    service.deep_thinking_enabled = True
    await service.logout()
    assert service.store.sessions() == []
    assert service.current_session_id is None
    assert service.deep_thinking_enabled is False


@pytest.mark.asyncio
async def test_cancel_generation_without_selection():
    service = make_service(FakeClient())
    assert service.cancel_generation() is False


async def _settle(predicate, rounds=200):
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.mark.asyncio
async def test_cancel_first_reply_of_new_conversation():
    queue = asyncio.Queue()
    client = FakeClient(queue=queue)
    service = make_service(client)
    runner = service.start_message("hello")
    assert service.store.get_session(service.current_session_id).is_draft

    queue.put_nowait(StreamEvent(name="meta", data={"conversationId": "c9", "taskId": "t9"}, seq=0))
    queue.put_nowait(StreamEvent(name="message", data={"type": "response", "delta": "par"}, seq=1))
    await _settle(lambda: service.current_session_id == "c9"
                  and service.store.streaming_message("c9") is not None
                  and service.store.streaming_message("c9").content == "par")

    assert service.cancel_generation() is True
    outcome = await asyncio.wait_for(runner, 1.0)
    await service.aclose()

    assert outcome.status == "cancelled"
    assert service.store.get_message(outcome.message_id).content == "par"
    assert ("stop", "t9") in client.calls


@pytest.mark.asyncio
async def test_cancel_new_conversation_before_meta():
    queue = asyncio.Queue()
    client = FakeClient(queue=queue)
    service = make_service(client)
    runner = service.start_message("hello")
    draft_id = service.current_session_id
    await asyncio.sleep(0)

    assert service.cancel_generation() is True
    queue.put_nowait(StreamEvent(name="meta", data={"conversationId": "c9", "taskId": "t9"}, seq=0))
    outcome = await asyncio.wait_for(runner, 1.0)
    await service.aclose()

    assert outcome.status == "cancelled"
    assert service.current_session_id == "c9"
    assert not service.store.has_session(draft_id)
    assert ("stop", "t9") in client.calls
