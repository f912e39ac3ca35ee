import asyncio

import pytest

from entities import FeedItem, FeedSubscription, FetchedFeed, RunOutcome, Subscription, TargetKind
from errors import DeliveryError, FetchFailed, GatewayError, StoreError
from relay import SubscriptionRelay


def _feed(url, title, links):
    return FetchedFeed(
        url=url,
        title=title,
        link=url,
        items=tuple(FeedItem(title=f"Item {l}", link=l, description="") for l in links),
    )


class FakeFetcher:
    def __init__(self, feeds, delays=None):
        self.feeds = feeds
        self.delays = delays or {}
        self.calls = []

    async def fetch(self, url, session, limit=None):
        self.calls.append((url, limit))
        await asyncio.sleep(self.delays.get(url, 0))
        result = self.feeds[url]
        if isinstance(result, Exception):
            raise result
        items = result.items[:limit] if limit else result.items
        return FetchedFeed(url=result.url, title=result.title, link=result.link, items=items)


class FakeGateway:
    def __init__(self, fail=False):
        self.fail = fail
        self.digests = []

    async def send_digest(self, target_id, kind, title, color, entries):
        if self.fail:
            raise GatewayError("send failed", code=99991663)
        self.digests.append((target_id, kind, title, color, list(entries)))
        return {"code": 0}


class FakeStore:
    def __init__(self, subscriptions=(), fail=False):
        self.subscriptions = list(subscriptions)
        self.fail = fail
        self.marker_writes = []

    async def list_active(self):
        return list(self.subscriptions)

    async def update_read_markers(self, subscription_id, feeds):
        if self.fail:
            raise StoreError("write failed")
        self.marker_writes.append((subscription_id, tuple(feeds)))


def _relay(fetcher, gateway=None, store=None, **kwargs):
    return SubscriptionRelay(fetcher, gateway or FakeGateway(), store or FakeStore(),
                             session=object(), **kwargs)


@pytest.mark.asyncio
async def test_failed_feed_does_not_block_sibling():
    a = "https://a.example.com/rss"
    b = "https://b.example.com/rss"
    fetcher = FakeFetcher({
        a: _feed(a, "Feed A", ["a5", "a4", "a3", "a2", "a1"]),
        b: FetchFailed(b, "HTTP 500"),
    })
    gateway, store = FakeGateway(), FakeStore()
    subscription = Subscription(id="rec1", user_id="ou_1", feeds=(
        FeedSubscription(a, last_read_marker="a3"),
        FeedSubscription(b, last_read_marker="b9"),
    ))

    report = await _relay(fetcher, gateway, store).run(subscription)

    assert report.outcome == RunOutcome.DELIVERED
    assert report.entry_count == 2
    assert list(report.failures) == [b]
    target_id, kind, title, color, entries = gateway.digests[0]
    assert (target_id, kind, color) == ("ou_1", TargetKind.USER, "blue")
    assert [e.link for e in entries] == ["a5", "a4"]
    assert "Explore 2 New Updates" in title

    subscription_id, feeds = store.marker_writes[0]
    assert subscription_id == "rec1"
    assert feeds == (FeedSubscription(a, "a5"), FeedSubscription(b, "b9"))


@pytest.mark.asyncio
async def test_entries_follow_feed_order_even_when_fetches_finish_out_of_order():
    a = "https://a.example.com/rss"
    b = "https://b.example.com/rss"
    fetcher = FakeFetcher(
        {a: _feed(a, "A", ["a1"]), b: _feed(b, "B", ["b1"])},
        delays={a: 0.05},
    )
    gateway = FakeGateway()
    subscription = Subscription(id="rec1", user_id="ou_1", feeds=(FeedSubscription(a), FeedSubscription(b)))

    await _relay(fetcher, gateway).run(subscription)

    entries = gateway.digests[0][4]
    assert [e.link for e in entries] == ["a1", "b1"]
    assert [e.primary_desc_color for e in entries] == ["green", "yellow"]


@pytest.mark.asyncio
async def test_first_run_delivers_whole_window_and_sets_marker():
    url = "https://a.example.com/rss"
    fetcher = FakeFetcher({url: _feed(url, "A", ["i7", "i6", "i5", "i4", "i3", "i2", "i1"])})
    gateway, store = FakeGateway(), FakeStore()
    subscription = Subscription(id="rec1", user_id="ou_1", feeds=(FeedSubscription(url),))

    report = await _relay(fetcher, gateway, store, limit=5).run(subscription)

    assert report.entry_count == 5
    assert fetcher.calls == [(url, 5)]
    assert [e.link for e in gateway.digests[0][4]] == ["i7", "i6", "i5", "i4", "i3"]
    assert store.marker_writes[0][1] == (FeedSubscription(url, "i7"),)


@pytest.mark.asyncio
async def test_nothing_new_skips_gateway_and_store():
    url = "https://a.example.com/rss"
    fetcher = FakeFetcher({url: _feed(url, "A", ["i2", "i1"])})
    gateway, store = FakeGateway(), FakeStore()
    subscription = Subscription(id="rec1", user_id="ou_1", feeds=(FeedSubscription(url, "i2"),))

    report = await _relay(fetcher, gateway, store).run(subscription)

    assert report.outcome == RunOutcome.NOOP
    assert gateway.digests == []
    assert store.marker_writes == []


@pytest.mark.asyncio
async def test_empty_feed_list_is_a_noop():
    gateway, store = FakeGateway(), FakeStore()
    report = await _relay(FakeFetcher({}), gateway, store).run(Subscription(id="rec1", user_id="ou_1"))
    assert report.outcome == RunOutcome.NOOP
    assert gateway.digests == []
    assert store.marker_writes == []


@pytest.mark.asyncio
async def test_group_identity_wins():
    url = "https://a.example.com/rss"
    gateway = FakeGateway()
    subscription = Subscription(id="rec1", user_id="ou_1", group_id="oc_9", feeds=(FeedSubscription(url),))
    await _relay(FakeFetcher({url: _feed(url, "A", ["x"])}), gateway).run(subscription)
    assert gateway.digests[0][:2] == ("oc_9", TargetKind.GROUP)


@pytest.mark.asyncio
async def test_delivery_failure_keeps_markers():
    url = "https://a.example.com/rss"
    store = FakeStore()
    subscription = Subscription(id="rec1", user_id="ou_1", feeds=(FeedSubscription(url, "old"),))

    with pytest.raises(DeliveryError) as excinfo:
        await _relay(FakeFetcher({url: _feed(url, "A", ["new", "old"])}), FakeGateway(fail=True), store).run(subscription)

    assert excinfo.value.delivered is False
    assert excinfo.value.subscription_id == "rec1"
    assert store.marker_writes == []


@pytest.mark.asyncio
async def test_marker_write_failure_reports_delivered():
    url = "https://a.example.com/rss"
    gateway = FakeGateway()
    subscription = Subscription(id="rec1", user_id="ou_1", feeds=(FeedSubscription(url),))

    with pytest.raises(DeliveryError) as excinfo:
        await _relay(FakeFetcher({url: _feed(url, "A", ["x"])}), gateway, FakeStore(fail=True)).run(subscription)

    assert excinfo.value.delivered is True
    assert len(gateway.digests) == 1


@pytest.mark.asyncio
async def test_slow_feed_times_out_without_failing_run():
    a = "https://a.example.com/rss"
    slow = "https://slow.example.com/rss"
    fetcher = FakeFetcher(
        {a: _feed(a, "A", ["a1"]), slow: _feed(slow, "Slow", ["s1"])},
        delays={slow: 5},
    )
    gateway = FakeGateway()
    subscription = Subscription(id="rec1", user_id="ou_1", feeds=(FeedSubscription(a), FeedSubscription(slow)))

    report = await _relay(fetcher, gateway, fetch_timeout=0.05).run(subscription)

    assert report.outcome == RunOutcome.DELIVERED
    assert report.failures == {slow: "Timed out"}
    assert [e.link for e in gateway.digests[0][4]] == ["a1"]


@pytest.mark.asyncio
async def test_run_all_isolates_failing_subscriptions():
    good = "https://good.example.com/rss"
    fetcher = FakeFetcher({good: _feed(good, "Good", ["g1"])})
    subscriptions = [
        Subscription(id="rec1", user_id="ou_1", feeds=(FeedSubscription(good),)),
        Subscription(id="rec2", user_id="ou_2", feeds=(FeedSubscription(good, "g1"),)),
        Subscription(id="rec3", group_id="oc_3", feeds=(FeedSubscription(good),)),
    ]
    store = FakeStore(subscriptions)

    class FlakyGateway(FakeGateway):
        async def send_digest(self, target_id, kind, title, color, entries):
            if target_id == "oc_3":
                raise GatewayError("bot not in chat")
            return await super().send_digest(target_id, kind, title, color, entries)

    gateway = FlakyGateway()
    reports = await _relay(fetcher, gateway, store, concurrency=2).run_all()

    assert [r.subscription_id for r in reports] == ["rec1", "rec2", "rec3"]
    assert [r.outcome for r in reports] == [RunOutcome.DELIVERED, RunOutcome.NOOP, RunOutcome.FAILED]
    assert "bot not in chat" in reports[2].error
    assert [d[0] for d in gateway.digests] == ["ou_1"]


@pytest.mark.asyncio
async def test_run_all_accepts_explicit_list():
    url = "https://a.example.com/rss"
    store = FakeStore([Subscription(id="ignored", user_id="ou_x", feeds=(FeedSubscription(url),))])
    reports = await _relay(FakeFetcher({url: _feed(url, "A", ["x"])}), FakeGateway(), store).run_all(
        [Subscription(id="rec1", user_id="ou_1", feeds=(FeedSubscription(url),))]
    )
    assert [r.subscription_id for r in reports] == ["rec1"]
