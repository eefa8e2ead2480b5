import asyncio

import pytest

from chat_core.domain.exceptions import ApiError, FeedbackSyncFailed, InvalidState
from chat_core.feedback.recorder import FeedbackRecorder
from chat_core.session.store import SessionStore
from chat_core.session.task_registry import TaskRegistry


class FakeFeedbackTransport:
    def __init__(self):
        self.calls = []
        self.fail = False
        self.fail_votes = set()
        self.gate = None

    async def submit_feedback(self, message_id, vote):
        self.calls.append((message_id, vote))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail or vote in self.fail_votes:
            raise ApiError(code="API_ERROR", message="feedback rejected")


def make_recorder():
    registry = TaskRegistry()
    store = SessionStore(registry)
    store.create_session(conversation_id="c1")
    _, reply = store.submit_prompt("c1", "q", False)
    registry.register("c1", "t1", reply.id)
    store.apply_answer_delta(reply.id, "t1", "answer")
    store.complete(reply.id, "t1")
    registry.retire("c1", "t1")
    transport = FakeFeedbackTransport()
    return FeedbackRecorder(store, transport), store, transport, reply


@pytest.mark.asyncio
async def test_vote_is_applied_and_sent():
    recorder, store, transport, reply = make_recorder()
    await recorder.vote(reply.id, "like")
    assert reply.feedback == "like"
    assert transport.calls == [(reply.id, 1)]

    await recorder.vote(reply.id, "dislike")
    assert reply.feedback == "dislike"
    assert transport.calls[-1] == (reply.id, -1)


@pytest.mark.asyncio
async def test_failed_sync_rolls_back_to_prior_value():
    recorder, store, transport, reply = make_recorder()
    await recorder.vote(reply.id, "like")
    transport.fail = True
    with pytest.raises(FeedbackSyncFailed) as exc:
        await recorder.vote(reply.id, "dislike")
    assert exc.value.code == "FEEDBACK_SYNC_FAILED"
    assert reply.feedback == "like"


@pytest.mark.asyncio
async def test_clearing_vote_is_local_only():
    recorder, store, transport, reply = make_recorder()
    await recorder.vote(reply.id, "like")
    await recorder.vote(reply.id, None)
    assert reply.feedback is None
    assert transport.calls == [(reply.id, 1)]


@pytest.mark.asyncio
async def test_optimistic_value_visible_before_request_finishes():
    recorder, store, transport, reply = make_recorder()
    transport.gate = asyncio.Event()
    pending = asyncio.create_task(recorder.vote(reply.id, "like"))
    await asyncio.sleep(0)
    assert reply.feedback == "like"
    transport.gate.set()
    await pending


@pytest.mark.asyncio
async def test_superseded_vote_failure_does_not_roll_back():
    recorder, store, transport, reply = make_recorder()
    transport.gate = asyncio.Event()
    transport.fail_votes = {1}
    first = asyncio.create_task(recorder.vote(reply.id, "like"))
    await asyncio.sleep(0)
    second = asyncio.create_task(recorder.vote(reply.id, "dislike"))
    await asyncio.sleep(0)
    transport.gate.set()
    results = await asyncio.gather(first, second, return_exceptions=True)

    assert isinstance(results[0], FeedbackSyncFailed)
    assert results[1] is None
    assert reply.feedback == "dislike"


@pytest.mark.asyncio
async def test_vote_on_unknown_or_user_message_fails():
    recorder, store, transport, reply = make_recorder()
    user = store.get_session("c1").messages[0]
    with pytest.raises(InvalidState):
        await recorder.vote("missing", "like")
    with pytest.raises(InvalidState):
        await recorder.vote(user.id, "like")
    assert transport.calls == []


@pytest.mark.asyncio
async def test_settled_votes_leave_no_bookkeeping():
    recorder, store, transport, reply = make_recorder()
    await recorder.vote(reply.id, "like")
    await recorder.vote(reply.id, None)
    transport.fail = True
    with pytest.raises(FeedbackSyncFailed):
        await recorder.vote(reply.id, "dislike")
    assert recorder._generations == {}
