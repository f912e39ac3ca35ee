import asyncio
import json

import pytest
from aiohttp.test_utils import TestClient, TestServer

from entities import FeedSubscription, RunOutcome, RunReport, Subscription
from errors import StoreError
from feishu import FeishuGateway
from server import create_app


class RecordingHandler:
    def __init__(self):
        self.messages = []
        self.done = asyncio.Event()

    async def handle(self, message):
        self.messages.append(message)
        self.done.set()


class FakeRelay:
    def __init__(self):
        self.calls = 0

    async def run_all(self, subscriptions=None):
        self.calls += 1
        return [RunReport("rec1", RunOutcome.NOOP)]


class FakeStore:
    def __init__(self, fail=False):
        self.fail = fail

    async def list_active(self):
        if self.fail:
            raise StoreError("table unavailable")
        return [Subscription(id="rec1", user_id="ou_1", feeds=(FeedSubscription("https://a.example.com/rss", "x"),))]


def _app(handler=None, relay=None, store=None):
    gateway = FeishuGateway(session=None, app_id="cli", app_secret="s", base_url="https://open.feishu.test")
    return create_app(handler or RecordingHandler(), relay or FakeRelay(), store or FakeStore(), gateway)


def _event(text):
    return {
        "schema": "2.0",
        "header": {"event_type": "im.message.receive_v1"},
        "event": {
            "sender": {"sender_id": {"open_id": "ou_1"}},
            "message": {"chat_id": "oc_1", "chat_type": "p2p", "content": json.dumps({"text": text})},
        },
    }


@pytest.mark.asyncio
async def test_url_verification_is_echoed():
    async with TestClient(TestServer(_app())) as client:
        resp = await client.post("/feishu/callback", json={"challenge": "c-1", "type": "url_verification"})
        assert resp.status == 200
        assert (await resp.json())["challenge"] == "c-1"


@pytest.mark.asyncio
async def test_message_event_is_acknowledged_and_dispatched():
    handler = RecordingHandler()
    async with TestClient(TestServer(_app(handler=handler))) as client:
        payload = _event("/help")
        resp = await client.post("/feishu/event", json=payload)
        assert await resp.json() == payload
        await asyncio.wait_for(handler.done.wait(), timeout=1)

    assert handler.messages[0].text == "/help"
    assert handler.messages[0].sender_id == "ou_1"


@pytest.mark.asyncio
async def test_invalid_json_is_rejected():
    async with TestClient(TestServer(_app())) as client:
        resp = await client.post("/feishu/callback", data="{oops", headers={"Content-Type": "application/json"})
        assert resp.status == 400


@pytest.mark.asyncio
async def test_rss_send_runs_batch():
    relay = FakeRelay()
    async with TestClient(TestServer(_app(relay=relay))) as client:
        resp = await client.get("/rss/send")
        assert resp.status == 200
        assert await resp.text() == "ok"
    assert relay.calls == 1


@pytest.mark.asyncio
async def test_record_list():
    async with TestClient(TestServer(_app())) as client:
        resp = await client.get("/record/list")
        assert resp.status == 200
        assert await resp.json() == [{
            "id": "rec1",
            "user_open_id": "ou_1",
            "group_open_id": "",
            "feed_list": [{"link": "https://a.example.com/rss", "last_read_link": "x"}],
        }]


@pytest.mark.asyncio
async def test_record_list_store_failure():
    async with TestClient(TestServer(_app(store=FakeStore(fail=True)))) as client:
        resp = await client.get("/record/list")
        assert resp.status == 500
