#!/usr/bin/env python3
"""
RSS/Atom feed fetcher.

This module downloads a single feed URL with aiohttp, parses it with
feedparser and normalizes its entries into FeedItem snapshots, truncated to
the configured per-feed limit. It performs no caching and no retries: any
network, HTTP or parse failure surfaces as FetchFailed.
"""

from asyncio import get_event_loop, wait_for, TimeoutError
from calendar import timegm
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from functools import partial
from typing import Any, List, Optional, Tuple

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from entities import FeedItem, FetchedFeed
from errors import FetchFailed
from telemetry import get_tracer, init_telemetry, trace_span

# Module-specific logger
logger = get_logger("fetcher")
init_telemetry("rss-relay-fetcher")
_tracer = get_tracer("fetcher")

HTTP_OK = 200
MAX_TITLE_LENGTH = 255
MAX_URL_LENGTH = 2048


class FeedFetcher:
    """Fetch and parse feeds into FetchedFeed snapshots."""

    def __init__(self, timeout: Optional[int] = None, user_agent: Optional[str] = None) -> None:
        self.executor = ThreadPoolExecutor()
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.user_agent = user_agent or config.USER_AGENT

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, session, limit=None: {
            "feed.url": url,
            "feed.limit": int(limit or config.ITEM_LIMIT_PER_FEED),
        },
    )
    async def fetch(self, url: str, session: ClientSession, limit: Optional[int] = None) -> FetchedFeed:
        """Fetch one feed and return at most `limit` of its items in source order.

        Raises:
            FetchFailed: on network errors, timeouts, non-200 responses or
                documents feedparser does not recognize as a feed.
        """
        limit = limit or config.ITEM_LIMIT_PER_FEED
        content = await self._download(url, session)
        parsed = await self.run_in_executor(self._parse, content)

        if parsed.get('bozo') and not parsed.get('version') and not parsed.get('entries'):
            cause = parsed.get('bozo_exception') or "not a recognizable feed"
            raise FetchFailed(url, cause)
        if parsed.get('bozo'):
            logger.debug(f"Feed parsing warning for {url}: {parsed.get('bozo_exception')}")

        feed_info = parsed.get('feed', {}) or {}
        items = tuple(self._to_item(entry) for entry in (parsed.get('entries') or [])[:limit])
        title, link, _ = self._normalize_entry_identity(feed_info.get('title'), feed_info.get('link'), None)
        logger.info(f"Fetched {len(items)} items from {url} ({parsed.get('version') or 'unknown format'})")
        return FetchedFeed(
            url=url,
            title=title,
            link=link,
            updated_at=self._feed_updated_at(feed_info),
            items=items,
        )

    async def _download(self, url: str, session: ClientSession) -> bytes:
        """Download the raw feed document."""
        headers = {'User-Agent': self.user_agent}
        try:
            async with session.get(url, headers=headers, timeout=ClientTimeout(total=self.timeout)) as response:
                if response.status != HTTP_OK:
                    raise FetchFailed(url, f"HTTP {response.status}")
                return await response.read()
        except TimeoutError as e:
            logger.warning(f"Timeout fetching {url} (timeout={self.timeout}s)")
            raise FetchFailed(url, "Timed out") from e
        except ClientError as e:
            detail = self._format_client_error(e)
            logger.warning(f"Error fetching {url}: {detail}")
            raise FetchFailed(url, detail) from e

    def _parse(self, content: bytes) -> Any:
        # resolve_relative_uris keeps item links absolute for marker comparison
        return feedparser.parse(content, sanitize_html=True, resolve_relative_uris=True)

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in a thread pool executor."""
        loop = get_event_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    def _to_item(self, entry) -> FeedItem:
        title, link, _ = self._normalize_entry_identity(entry.get('title'), entry.get('link'), None)
        return FeedItem(title=title, link=link, description=self._published_text(entry))

    def _published_text(self, entry) -> str:
        """Return the entry's publication date as the feed wrote it."""
        for field in ('published', 'updated', 'created', 'pubDate', 'date'):
            value = entry.get(field)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return ""

    def _feed_updated_at(self, feed_info) -> Optional[datetime]:
        for field in ('updated_parsed', 'published_parsed'):
            value = feed_info.get(field)
            if value:
                try:
                    return datetime.fromtimestamp(timegm(value), tz=timezone.utc)
                except (OverflowError, ValueError, OSError, TypeError) as e:
                    logger.debug(f"Unable to convert feed date {value!r}: {e}")
        return None

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    def _normalize_entry_identity(self, title: Optional[str], url: Optional[str], guid: Optional[str]) -> Tuple[str, str, str]:
        """Trim and bound titles, links and ids so marker comparisons stay stable."""
        norm_title = (title or "").strip()[:MAX_TITLE_LENGTH]
        norm_url = (url or "").strip()[:MAX_URL_LENGTH]
        norm_guid = (guid or "").strip()[:64]
        return norm_title, norm_url, norm_guid

    async def close(self) -> None:
        """Shut down the parser thread pool."""
        logger.debug("Shutting down thread pool executor...")
        try:
            await wait_for(
                get_event_loop().run_in_executor(None, lambda: self.executor.shutdown(wait=True)),
                timeout=30.0
            )
        except TimeoutError:
            logger.warning("Thread pool executor shutdown timed out after 30 seconds")
            self.executor.shutdown(wait=False)
