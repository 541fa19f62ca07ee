import asyncio
from typing import List

import pytest

from tell_relay.config_loader import AccountConfig
from tell_relay.errors import BrokerError
from tell_relay.models import Message, TransportMode
from tell_relay.transport import AcquisitionTransport, SeenIds, reconnect_delay, wait_or_stop


class DummyBroker:
    def __init__(self):
        self.inbox: List[dict] = []
        self.polled: List[dict] = []
        self.acked: List[List[str]] = []
        self.read: List[str] = []
        self.fail_read = set()
        self.streams: List = []

    async def fetch_inbox(self, api_key, unread_only=True, limit=50):
        return list(self.inbox)

    async def poll_account(self, api_key, limit=50, wait=5):
        return list(self.polled)

    async def ack(self, api_key, ids):
        self.acked.append(list(ids))

    async def mark_read(self, api_key, message_id):
        if message_id in self.fail_read:
            raise BrokerError("read failed")
        self.read.append(message_id)

    async def stream_lines(self, api_key, url=None, on_connected=None):
        script = self.streams.pop(0) if self.streams else BrokerError("no more streams")
        if isinstance(script, Exception):
            raise script
        if on_connected is not None:
            await on_connected()
        for line in script:
            yield line


def make_account(mode, **overrides):
    data = {"account_id": "default", "api_key": "k", "name": "alice", "mode": mode}
    data.update(overrides)
    return AccountConfig(**data)


class RecordingHandler:
    def __init__(self, stop: asyncio.Event, stop_after_fallbacks: int = 1):
        self.stop = stop
        self.connected = 0
        self.messages: List[Message] = []
        self.fallbacks = 0
        self.errors: List[int] = []
        self.stop_after_fallbacks = stop_after_fallbacks

    async def on_connected(self):
        self.connected += 1

    async def on_messages(self, messages):
        self.messages.extend(messages)

    async def on_poll_fallback(self):
        self.fallbacks += 1
        if self.fallbacks >= self.stop_after_fallbacks:
            self.stop.set()

    async def on_stream_error(self, error, failures):
        self.errors.append(failures)


def test_seen_ids_truncates_to_most_recent():
    seen = SeenIds(limit=1000, keep=500)
    for i in range(1001):
        assert seen.add(f"m{i}")
    assert len(seen) == 500
    assert "m500" not in seen
    assert "m501" in seen
    assert "m1000" in seen
    assert not seen.add("m1000")


def test_reconnect_delay_is_linear_and_capped():
    assert [reconnect_delay(n) for n in (1, 2, 3, 5, 9)] == [2.0, 4.0, 6.0, 10.0, 10.0]
    assert reconnect_delay(0) == 2.0


@pytest.mark.asyncio
async def test_wait_or_stop():
    stop = asyncio.Event()
    assert await wait_or_stop(stop, 0.01) is False
    stop.set()
    assert await wait_or_stop(stop, 10) is True


@pytest.mark.asyncio
async def test_legacy_poll_dedupes_and_fills_recipient():
    broker = DummyBroker()
    broker.inbox = [{"id": "m1", "from": "bob", "body": "x"}, {"id": "m2", "from": "carol"}, {"from": "no-id"}]
    transport = AcquisitionTransport(broker, make_account(TransportMode.LEGACY))

    first = await transport.poll()
    assert [msg.id for msg in first] == ["m1", "m2"]
    assert first[0].to_name == "alice"
    assert await transport.poll() == []

    transport.release(["m2"])
    assert [msg.id for msg in await transport.poll()] == ["m2"]


@pytest.mark.asyncio
async def test_legacy_ack_marks_each_read_and_forgets_failures():
    broker = DummyBroker()
    broker.inbox = [{"id": "m1"}, {"id": "m2"}]
    broker.fail_read = {"m2"}
    transport = AcquisitionTransport(broker, make_account(TransportMode.LEGACY))
    await transport.poll()

    assert await transport.acknowledge(["m1", "m2"]) == ["m1"]
    assert broker.read == ["m1"]
    assert "m1" in transport.seen
    assert "m2" not in transport.seen


@pytest.mark.asyncio
async def test_poll_mode_batch_ack():
    broker = DummyBroker()
    broker.polled = [{"id": "m1", "to_name": "helper-bot"}]
    transport = AcquisitionTransport(broker, make_account(TransportMode.POLL))
    [msg] = await transport.poll()
    assert msg.to_name == "helper-bot"
    assert await transport.acknowledge(["m1", "m1", "m2"]) == ["m1", "m2"]
    assert broker.acked == [["m1", "m2"]]
    assert await transport.acknowledge([]) == []


@pytest.mark.asyncio
async def test_stream_delivers_messages_and_reconnects_on_timeout(monkeypatch):
    monkeypatch.setattr("tell_relay.transport.reconnect_delay", lambda failures: 0)
    monkeypatch.setattr("tell_relay.transport.RECONNECT_STEP", 0)
    broker = DummyBroker()
    broker.streams = [
        [": keepalive\n", "event: message\n", 'data: {"id": "m1", "from": "bob"}\n', "\n", "event: timeout\n", "\n"],
        ["event: message\n", 'data: {"message": {"id": "m2", "from": "carol"}}\n', "\n"],
        BrokerError("down"),
        BrokerError("down"),
        BrokerError("down"),
    ]
    stop = asyncio.Event()
    handler = RecordingHandler(stop)
    transport = AcquisitionTransport(broker, make_account(TransportMode.STREAM))

    await asyncio.wait_for(transport.run_stream(stop, handler), timeout=2)

    assert [msg.id for msg in handler.messages] == ["m1", "m2"]
    assert handler.connected == 2
    assert handler.errors == [1, 2, 3]
    assert handler.fallbacks == 1
    assert transport.stream_failures == 0


@pytest.mark.asyncio
async def test_stream_failure_counter_resets_on_connect(monkeypatch):
    monkeypatch.setattr("tell_relay.transport.reconnect_delay", lambda failures: 0)
    monkeypatch.setattr("tell_relay.transport.RECONNECT_STEP", 0)
    broker = DummyBroker()
    broker.streams = [
        BrokerError("down"),
        BrokerError("down"),
        [],
        BrokerError("down"),
        BrokerError("down"),
        BrokerError("down"),
    ]
    stop = asyncio.Event()
    handler = RecordingHandler(stop)
    transport = AcquisitionTransport(broker, make_account(TransportMode.STREAM))

    await asyncio.wait_for(transport.run_stream(stop, handler), timeout=2)

    assert handler.errors == [1, 2, 1, 2, 3]
    assert handler.fallbacks == 1


def test_malformed_stream_payload_is_ignored():
    transport = AcquisitionTransport(DummyBroker(), make_account(TransportMode.STREAM))
    assert transport._decode_event_data("not json") is None
    assert transport._decode_event_data('{"from": "bob"}') is None
    assert transport.take_undeliverable() == []


@pytest.mark.asyncio
async def test_poll_remembers_invalid_messages_with_an_id():
    broker = DummyBroker()
    broker.polled = [{"id": "m1", "from": "bob"}, {"id": "m3", "threadId": ["x"]}, {"threadId": ["x"]}]
    transport = AcquisitionTransport(broker, make_account(TransportMode.POLL))

    messages = await transport.poll()

    assert [msg.id for msg in messages] == ["m1"]
    assert transport.take_undeliverable() == ["m3"]
    assert transport.take_undeliverable() == []


@pytest.mark.asyncio
async def test_stream_hands_over_undeliverable_event(monkeypatch):
    monkeypatch.setattr("tell_relay.transport.reconnect_delay", lambda failures: 0)
    monkeypatch.setattr("tell_relay.transport.RECONNECT_STEP", 0)
    broker = DummyBroker()
    broker.streams = [
        ["event: message\n", 'data: {"id": "m3", "threadId": ["x"]}\n', "\n"],
        BrokerError("down"),
        BrokerError("down"),
        BrokerError("down"),
    ]
    stop = asyncio.Event()
    calls = []
    handler = RecordingHandler(stop)

    async def on_messages(messages):
        calls.append((list(messages), transport.take_undeliverable()))

    handler.on_messages = on_messages
    transport = AcquisitionTransport(broker, make_account(TransportMode.STREAM))

    await asyncio.wait_for(transport.run_stream(stop, handler), timeout=2)

    assert calls == [([], ["m3"])]
