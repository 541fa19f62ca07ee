import asyncio

import pytest

from tell_relay.config_loader import AccountConfig, RelayConfig
from tell_relay.errors import ConfigError
from tell_relay.host import LocalConsumerHost
from tell_relay.models import QueuedMessage
from tell_relay.service import RelayService


class DummyBroker:
    def __init__(self):
        self.batches = {}
        self.acked = []
        self.sent = []
        self.unreachable = set()

    async def poll_account(self, api_key, limit=50, wait=5):
        batches = self.batches.get(api_key) or []
        return batches.pop(0) if batches else []

    async def ack(self, api_key, ids):
        self.acked.extend((api_key, message_id) for message_id in ids)

    async def send(self, api_key, **kwargs):
        self.sent.append({"api_key": api_key, **kwargs})
        return {"messageId": f"out-{len(self.sent)}"}

    async def check_connectivity(self, api_key, timeout=10.0):
        if api_key in self.unreachable:
            return {"ok": False, "error": "HTTP 401 invalid key", "elapsed_ms": 3}
        return {"ok": True, "error": None, "elapsed_ms": 3}


def make_service(tmp_path, host=None):
    config = RelayConfig(
        state_dir=tmp_path,
        accounts=[
            AccountConfig(account_id="work", name="alice", api_key="k-work", mode="poll", poll_interval=0.01),
            AccountConfig(account_id="home", name="bob", api_key="k-home", mode="poll", poll_interval=0.01),
            AccountConfig(account_id="off", name="carol", api_key="k-off", mode="poll", enabled=False),
        ],
    )
    broker = DummyBroker()
    return RelayService(config, host=host or LocalConsumerHost(), broker=broker), broker


def test_one_engine_per_enabled_account(tmp_path):
    svc, _ = make_service(tmp_path)
    assert sorted(svc.engines) == ["home", "work"]
    assert svc.get_engine("work").queue.path == tmp_path / "accounts" / "work" / "inbox-queue.json"
    assert svc.get_engine("work").queue.path != svc.get_engine("home").queue.path
    with pytest.raises(KeyError):
        svc.get_engine("off")


@pytest.mark.asyncio
async def test_accounts_are_served_concurrently(tmp_path):
    host = LocalConsumerHost()
    received = []

    async def main_consumer(ctx):
        received.append((ctx.account_id, ctx.message_id))

    host.register("main", main_consumer)
    svc, broker = make_service(tmp_path, host=host)
    broker.batches = {
        "k-work": [[{"id": "w1", "from": "dave", "to_name": "alice"}]],
        "k-home": [[{"id": "h1", "from": "dave", "to_name": "bob"}]],
    }

    await svc.start()
    for _ in range(200):
        if len(broker.acked) == 2:
            break
        await asyncio.sleep(0.01)
    await svc.stop()

    assert sorted(broker.acked) == [("k-home", "h1"), ("k-work", "w1")]
    assert sorted(received) == [("home", "h1"), ("work", "w1")]


@pytest.mark.asyncio
async def test_status_and_queue_contents(tmp_path):
    svc, _ = make_service(tmp_path)
    statuses = await svc.status()
    assert [item["account_id"] for item in statuses] == ["work", "home"]
    assert all(item["running"] is False for item in statuses)

    contents = await svc.queue_contents("work")
    assert contents == {"account_id": "work", "pending": [], "dead_letter": []}


@pytest.mark.asyncio
async def test_run_without_accounts_returns(tmp_path):
    svc = RelayService(RelayConfig(state_dir=tmp_path), broker=DummyBroker())
    await asyncio.wait_for(svc.run(), timeout=1)


def test_wake_unknown_account(tmp_path):
    svc, _ = make_service(tmp_path)
    svc.wake("work")
    assert svc.get_engine("work")._wake_event.is_set()
    with pytest.raises(KeyError):
        svc.wake("ghost")


@pytest.mark.asyncio
async def test_status_reports_identity_and_connectivity(tmp_path):
    svc, broker = make_service(tmp_path)
    broker.unreachable.add("k-home")

    work, home = await svc.status()
    assert work["name"] == "alice"
    assert work["configured"] is True
    assert work["connectivity"] is None
    assert work["connected"] is False
    assert work["issues"] == []

    work, home = await svc.status(check=True)
    assert work["connected"] is True
    assert work["connectivity"]["ok"] is True
    assert "checked_at" in work["connectivity"]
    assert home["connected"] is False
    assert home["issues"] == ["broker unreachable: HTTP 401 invalid key"]


@pytest.mark.asyncio
async def test_status_lists_configuration_and_dead_letter_issues(tmp_path):
    config = RelayConfig(
        state_dir=tmp_path,
        accounts=[AccountConfig(account_id="old", api_key="k-old", mode="legacy", poll_interval=0.01)],
    )
    svc = RelayService(config, broker=DummyBroker())
    queue = svc.get_engine("old").queue
    await queue.enqueue(
        QueuedMessage.model_validate(
            {
                "id": "m1",
                "from": "bob",
                "toName": "helper-bot",
                "consumer": "helper",
                "accountId": "old",
                "apiKey": "k-old",
                "replyApiKey": "k-old",
                "attempts": 9,
            }
        )
    )
    await queue.mark_attempt("m1", "helper unavailable")

    [old] = await svc.status()
    assert old["configured"] is False
    assert old["issues"] == ["not configured: set name and api_key", "1 message(s) in dead letter"]


@pytest.mark.asyncio
async def test_send_normalizes_target_and_records_outbound(tmp_path):
    svc, broker = make_service(tmp_path)

    result = await svc.send("work", "  Tell/Bob ", "hello", subject="Hi", reply_to_id="m0")

    assert result.as_dict() == {"account_id": "work", "to": "bob", "message_id": "out-1"}
    assert broker.sent == [
        {"api_key": "k-work", "to": "bob", "body": "hello", "subject": "Hi", "from_name": "alice", "reply_to_id": "m0"}
    ]
    assert svc.get_engine("work").status.last_outbound_at is not None


@pytest.mark.asyncio
async def test_send_media_url_goes_in_body(tmp_path):
    svc, broker = make_service(tmp_path)

    await svc.send("off", "carol", None, media_url="https://cdn.test/cat.png")
    await svc.send("off", "carol", "look", media_url="https://cdn.test/cat.png")

    assert broker.sent[0]["body"] == "Media attachment\n\nhttps://cdn.test/cat.png"
    assert broker.sent[1]["body"] == "look\n\nhttps://cdn.test/cat.png"
    assert broker.sent[0]["api_key"] == "k-off"


@pytest.mark.asyncio
async def test_send_rejects_bad_input(tmp_path):
    svc, broker = make_service(tmp_path)
    with pytest.raises(ValueError):
        await svc.send("work", "tell/", "hello")
    with pytest.raises(ValueError):
        await svc.send("work", "bob", "   ")
    with pytest.raises(ConfigError):
        await svc.send("ghost", "bob", "hello")
    assert broker.sent == []
