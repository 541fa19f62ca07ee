import json

import pytest

from tell_relay.models import QueuedMessage
from tell_relay.retry_queue import RetryQueue


def make_entry(message_id="m1", **overrides):
    data = {
        "id": message_id,
        "from": "bob",
        "toName": "helper-bot",
        "consumer": "helper",
        "content": "rendered",
        "rawBody": "raw",
        "accountId": "default",
        "apiKey": "acct-key",
        "replyApiKey": "route-key",
    }
    data.update(overrides)
    return QueuedMessage.model_validate(data)


@pytest.fixture
def queue(tmp_path):
    return RetryQueue(tmp_path / "accounts" / "default" / "inbox-queue.json")


@pytest.mark.asyncio
async def test_missing_file_reads_empty(queue):
    assert await queue.list_pending() == []
    assert await queue.list_dead_letter() == []


@pytest.mark.asyncio
async def test_enqueue_is_idempotent(queue):
    assert await queue.enqueue(make_entry()) is True
    assert await queue.enqueue(make_entry(content="other")) is False
    pending = await queue.list_pending()
    assert [entry.id for entry in pending] == ["m1"]
    assert pending[0].content == "rendered"


@pytest.mark.asyncio
async def test_file_layout(queue):
    await queue.enqueue(make_entry())
    data = json.loads(queue.path.read_text())
    assert set(data) == {"pending", "deadLetter"}
    assert data["pending"][0]["replyApiKey"] == "route-key"
    assert data["pending"][0]["attempts"] == 1
    assert not queue.path.with_name(queue.path.name + ".tmp").exists()


@pytest.mark.asyncio
async def test_dequeue(queue):
    await queue.enqueue(make_entry("m1"))
    await queue.enqueue(make_entry("m2"))
    assert await queue.dequeue("m1") is True
    assert await queue.dequeue("m1") is False
    assert [entry.id for entry in await queue.list_pending()] == ["m2"]


@pytest.mark.asyncio
async def test_dead_letter_at_exactly_max_attempts(queue):
    await queue.enqueue(make_entry())

    # Enqueue counts as attempt 1; attempts 2..9 stay pending.
    for attempt in range(2, 10):
        assert await queue.mark_attempt("m1", f"fail {attempt}") is None
        [entry] = await queue.list_pending()
        assert entry.attempts == attempt

    dead = await queue.mark_attempt("m1", "fail 10")
    assert dead is not None
    assert dead.attempts == 10
    assert dead.last_error == "fail 10"
    assert await queue.list_pending() == []
    assert [entry.id for entry in await queue.list_dead_letter()] == ["m1"]


@pytest.mark.asyncio
async def test_mark_attempt_unknown_id(queue):
    assert await queue.mark_attempt("nope", "x") is None


@pytest.mark.asyncio
async def test_dead_letter_is_capped(tmp_path):
    queue = RetryQueue(tmp_path / "q.json", max_attempts=2, dead_letter_cap=100)
    for i in range(105):
        await queue.enqueue(make_entry(f"m{i}"))
        assert await queue.mark_attempt(f"m{i}", "boom") is not None

    dead = await queue.list_dead_letter()
    assert len(dead) == 100
    assert dead[0].id == "m5"
    assert dead[-1].id == "m104"


@pytest.mark.asyncio
async def test_corrupt_file_reads_empty(queue):
    queue.path.parent.mkdir(parents=True)
    queue.path.write_text("{not json")
    assert await queue.list_pending() == []
    assert await queue.enqueue(make_entry()) is True
    assert await queue.counts() == (1, 0)
