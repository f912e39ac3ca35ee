#!/usr/bin/env python3
"""
Subscription relay.

For one subscription, fetch every feed concurrently, keep only the items past
each feed's read position, send the combined digest to the subscription's
target and then advance the read positions. A failing feed only drops its own
items; a failing delivery leaves every read position untouched.

`run_all` applies the same pipeline to every active subscription.
"""

from asyncio import Lock, Semaphore, gather, wait_for, TimeoutError
from time import time
from typing import List, Optional, Sequence

from aiohttp import ClientSession

from config import config, get_logger
from digest import build_digest
from entities import FeedSubscription, FeedUpdate, RunOutcome, RunReport, Subscription
from errors import DeliveryError, FetchFailed, GatewayError, StoreError
from telemetry import init_telemetry, trace_span
from tracker import new_items, next_marker
from utils import format_duration

# Module-specific logger
logger = get_logger("relay")
init_telemetry("rss-relay")


class SubscriptionRelay:
    """Fan feeds out per subscription and deliver one digest per run."""

    def __init__(self, fetcher, gateway, store, session: Optional[ClientSession] = None,
                 limit: Optional[int] = None, fetch_timeout: Optional[int] = None,
                 concurrency: Optional[int] = None) -> None:
        self.fetcher = fetcher
        self.gateway = gateway
        self.store = store
        self.session = session
        self.limit = limit or config.ITEM_LIMIT_PER_FEED
        self.fetch_timeout = fetch_timeout or config.FEED_FETCH_TIMEOUT
        self.concurrency = concurrency or config.SUBSCRIPTION_CONCURRENCY
        self._owns_session = False

    async def start(self) -> None:
        """Create the shared HTTP session when the caller did not pass one."""
        if self.session is None:
            self.session = ClientSession()
            self._owns_session = True

    async def close(self) -> None:
        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None
            self._owns_session = False

    async def _refresh_feed(self, ordinal: int, feed: FeedSubscription,
                            results: List[Optional[FeedUpdate]], lock: Lock) -> None:
        """Fetch one feed and store its update at `ordinal`; never raises."""
        try:
            fetched = await wait_for(
                self.fetcher.fetch(feed.url, self.session, self.limit),
                timeout=self.fetch_timeout,
            )
            fresh = new_items(fetched.items, feed.last_read_marker)
            update = FeedUpdate(
                ordinal=ordinal,
                feed=feed,
                feed_title=fetched.title or feed.url,
                new_items=tuple(fresh),
                head_link=next_marker(fetched.items, fresh, feed.last_read_marker),
            )
            if fresh:
                logger.debug(f"{feed.url}: {len(fresh)} new of {len(fetched.items)} fetched")
        except TimeoutError:
            logger.warning(f"Timed out fetching {feed.url} after {self.fetch_timeout}s")
            update = FeedUpdate(ordinal=ordinal, feed=feed, error="Timed out")
        except FetchFailed as e:
            logger.warning(str(e))
            update = FeedUpdate(ordinal=ordinal, feed=feed, error=str(e.cause))
        except Exception as e:
            logger.error(f"Unexpected error refreshing {feed.url}: {e}")
            update = FeedUpdate(ordinal=ordinal, feed=feed, error=str(e))

        async with lock:
            results[ordinal] = update

    @trace_span(
        "relay.run",
        tracer_name="relay",
        attr_from_args=lambda self, subscription: {
            "subscription.id": subscription.id,
            "subscription.feeds": len(subscription.feeds),
        },
    )
    async def run(self, subscription: Subscription) -> RunReport:
        """Refresh and deliver one subscription.

        Returns a NOOP report when no feed has anything new.

        Raises:
            DeliveryError: when the digest could not be sent, or was sent but
                the new read positions could not be saved.
        """
        await self.start()
        started = time()
        feeds = subscription.feeds
        results: List[Optional[FeedUpdate]] = [None] * len(feeds)
        lock = Lock()

        await gather(*(
            self._refresh_feed(ordinal, feed, results, lock)
            for ordinal, feed in enumerate(feeds)
        ))

        updates = [update for update in results if update is not None]
        failures = {update.feed.url: update.error for update in updates if update.failed}
        digest = build_digest(updates)

        if digest is None:
            logger.info(f"Subscription {subscription.id}: nothing new "
                        f"({len(failures)} of {len(feeds)} feeds failed)")
            return RunReport(subscription.id, RunOutcome.NOOP, failures=failures)

        target_id, kind = subscription.target()
        try:
            await self.gateway.send_digest(target_id, kind, digest.title, digest.color, digest.entries)
        except GatewayError as e:
            logger.error(f"Subscription {subscription.id}: delivery to {kind.name.lower()} {target_id} failed: {e}")
            raise DeliveryError(subscription.id, f"Delivery failed: {e}") from e

        advanced = {update.ordinal: update.head_link for update in updates if update.new_items}
        markers = tuple(
            feed.with_marker(advanced[ordinal]) if ordinal in advanced else feed
            for ordinal, feed in enumerate(feeds)
        )
        try:
            await self.store.update_read_markers(subscription.id, markers)
        except StoreError as e:
            logger.error(f"Subscription {subscription.id}: digest sent but read markers not saved: {e}")
            raise DeliveryError(subscription.id, f"Read markers not saved: {e}", delivered=True) from e

        logger.info(f"Subscription {subscription.id}: delivered {len(digest)} entries "
                    f"in {format_duration(time() - started)}")
        return RunReport(subscription.id, RunOutcome.DELIVERED, entry_count=len(digest), failures=failures)

    async def _run_guarded(self, subscription: Subscription, semaphore: Semaphore) -> RunReport:
        async with semaphore:
            try:
                return await self.run(subscription)
            except DeliveryError as e:
                return RunReport(subscription.id, RunOutcome.FAILED, error=str(e))
            except Exception as e:
                logger.error(f"Subscription {subscription.id}: run failed: {e}")
                return RunReport(subscription.id, RunOutcome.FAILED, error=str(e))

    @trace_span("relay.run_all", tracer_name="relay")
    async def run_all(self, subscriptions: Optional[Sequence[Subscription]] = None) -> List[RunReport]:
        """Run every subscription, defaulting to the store's active ones.

        Reports come back in input order; a failed subscription never stops
        the others.
        """
        await self.start()
        started = time()
        if subscriptions is None:
            subscriptions = await self.store.list_active()
        semaphore = Semaphore(self.concurrency)
        reports = await gather(*(self._run_guarded(s, semaphore) for s in subscriptions))

        delivered = sum(1 for r in reports if r.outcome == RunOutcome.DELIVERED)
        failed = sum(1 for r in reports if r.outcome == RunOutcome.FAILED)
        logger.info(f"Batch run finished: {len(reports)} subscriptions, {delivered} delivered, "
                    f"{failed} failed in {format_duration(time() - started)}")
        return list(reports)
