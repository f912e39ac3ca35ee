import pytest

from commands import Command, CommandHandler, parse_command
from entities import IncomingMessage, RunOutcome, RunReport, Subscription, TargetKind
from errors import DeliveryError, NotFound


class MemoryStore:
    def __init__(self):
        self.records = {}
        self.writes = 0

    async def find(self, user_id=None, group_id=None):
        for s in self.records.values():
            if (group_id and s.group_id == group_id) or (not group_id and user_id and s.user_id == user_id):
                return s
        raise NotFound("no record")

    async def create(self, subscription):
        new_id = f"rec{len(self.records) + 1}"
        self.records[new_id] = Subscription(id=new_id, user_id=subscription.user_id,
                                            group_id=subscription.group_id, feeds=subscription.feeds)
        self.writes += 1
        return new_id

    async def update_feed_list(self, subscription_id, feeds):
        self.records[subscription_id] = self.records[subscription_id].with_feeds(feeds)
        self.writes += 1


class RecordingGateway:
    def __init__(self):
        self.texts = []
        self.cards = []

    async def send_text(self, target_id, kind, text):
        self.texts.append((target_id, kind, text))

    async def send_digest(self, target_id, kind, title, color, entries):
        self.cards.append((target_id, kind, title, color, list(entries)))


class FakeRelay:
    def __init__(self, error=None):
        self.error = error
        self.runs = []

    async def run(self, subscription):
        self.runs.append(subscription)
        if self.error:
            raise self.error
        return RunReport(subscription.id, RunOutcome.DELIVERED, entry_count=1)


def _message(text, group=False, sender="ou_user", chat="oc_chat"):
    return IncomingMessage(sender_id=sender, chat_id=chat, is_group_chat=group, text=text)


@pytest.fixture
def setup():
    store, gateway, relay = MemoryStore(), RecordingGateway(), FakeRelay()
    return CommandHandler(gateway, store, relay, doc_link="https://docs.example.com/bot"), store, gateway, relay


def test_parse_command_variants():
    assert parse_command("hello there") is None
    assert parse_command("/list").name == "list"
    assert parse_command("@bot /add https://a.example.com/rss").url == "https://a.example.com/rss"
    assert parse_command("/add -g https://a.example.com/rss", is_group_chat=True).group_scope is True
    assert parse_command("/add -g https://a.example.com/rss", is_group_chat=False).group_scope is False
    assert parse_command("/list -g", is_group_chat=True).group_scope is True
    assert parse_command("/listing") is None
    assert parse_command("/send now").name == "send"
    assert parse_command("/add https://blog.example.com/list") == Command(name="add", url="https://blog.example.com/list")
    assert parse_command("see https://a.example.com/help") is None


@pytest.mark.asyncio
async def test_add_then_list_shows_url_once(setup):
    handler, store, gateway, _ = setup
    url = "https://a.example.com/rss"

    await handler.handle(_message(f"/add {url}"))
    await handler.handle(_message("/list"))

    assert gateway.texts[0] == ("oc_chat", TargetKind.GROUP, f"Successfully added subscription: {url}")
    target_id, kind, title, color, entries = gateway.cards[0]
    assert (target_id, kind, title, color) == ("oc_chat", TargetKind.GROUP, "Subscribed Feed List", "purple")
    assert [e.link for e in entries] == [url]
    assert store.records["rec1"].user_id == "ou_user"


@pytest.mark.asyncio
async def test_duplicate_add_is_rejected_without_writing(setup):
    handler, store, gateway, _ = setup
    url = "https://a.example.com/rss"
    await handler.handle(_message(f"/add {url}"))
    writes = store.writes

    await handler.handle(_message(f"/add {url}"))

    assert store.writes == writes
    assert gateway.texts[-1][2] == f"This URL has already been subscribed: {url}"
    assert store.records["rec1"].feed_urls() == (url,)


@pytest.mark.asyncio
async def test_add_without_url(setup):
    handler, store, gateway, _ = setup
    await handler.handle(_message("/add please"))
    assert gateway.texts == [("oc_chat", TargetKind.GROUP, "Please provide a valid URL")]
    assert store.writes == 0


@pytest.mark.asyncio
async def test_group_scope_targets_chat(setup):
    handler, store, gateway, _ = setup
    url = "https://a.example.com/rss"
    await handler.handle(_message(f"/add -g {url}", group=True, chat="oc_team"))

    record = store.records["rec1"]
    assert record.group_id == "oc_team"
    assert record.user_id == ""
    assert gateway.texts[0][0] == "oc_team"


@pytest.mark.asyncio
async def test_remove(setup):
    handler, store, gateway, _ = setup
    a, b = "https://a.example.com/rss", "https://b.example.com/rss"
    await handler.handle(_message(f"/add {a}"))
    await handler.handle(_message(f"/add {b}"))

    await handler.handle(_message(f"/remove {a}"))
    assert gateway.texts[-1][2] == f"Successfully removed subscription: {a}"
    assert store.records["rec1"].feed_urls() == (b,)

    await handler.handle(_message(f"/remove {a}"))
    assert gateway.texts[-1][2] == f"This URL has not been subscribed yet: {a}"


@pytest.mark.asyncio
async def test_list_and_remove_without_subscription(setup):
    handler, _, gateway, _ = setup
    await handler.handle(_message("/list"))
    await handler.handle(_message("/remove https://a.example.com/rss"))
    assert [t[2] for t in gateway.texts] == ["No subscribed feeds found", "No subscribed feeds found"]


@pytest.mark.asyncio
async def test_send_runs_relay_for_caller(setup):
    handler, _, gateway, relay = setup
    await handler.handle(_message("/add https://a.example.com/rss"))
    await handler.handle(_message("/send"))
    assert [s.id for s in relay.runs] == ["rec1"]
    assert len(gateway.texts) == 1


@pytest.mark.asyncio
async def test_send_failure_reply():
    store, gateway = MemoryStore(), RecordingGateway()
    relay = FakeRelay(error=DeliveryError("rec1", "boom"))
    handler = CommandHandler(gateway, store, relay, doc_link="https://docs.example.com/bot")
    await handler.handle(_message("/add https://a.example.com/rss"))

    await handler.handle(_message("/send"))

    assert gateway.texts[-1][2] == "Failed to send RSS message"


@pytest.mark.asyncio
async def test_help_replies_with_doc_link(setup):
    handler, _, gateway, _ = setup
    assert await handler.handle(_message("/help")) == "help"
    assert gateway.texts == [("oc_chat", TargetKind.GROUP, "https://docs.example.com/bot")]


@pytest.mark.asyncio
async def test_plain_chat_is_ignored(setup):
    handler, store, gateway, _ = setup
    assert await handler.handle(_message("good morning")) is None
    assert gateway.texts == [] and store.writes == 0
