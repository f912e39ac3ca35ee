#!/usr/bin/env python3
"""
Typed records shared by the relay core and its adapters.

Store adapters decode their raw rows/records into these types at the boundary,
so the core never handles untyped key-value payloads.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class TargetKind(str, Enum):
    """Kind of chat identity a message is addressed to.

    The value is the Feishu `receive_id_type`.
    """

    USER = "open_id"
    GROUP = "chat_id"


@dataclass(frozen=True)
class FeedSubscription:
    url: str
    last_read_marker: str = ""

    def with_marker(self, marker: str) -> "FeedSubscription":
        return replace(self, last_read_marker=marker)


@dataclass(frozen=True)
class Subscription:
    """A user's or group's followed feeds plus the delivery target identity."""

    id: str
    user_id: str = ""
    group_id: str = ""
    feeds: Tuple[FeedSubscription, ...] = ()

    def target(self) -> Tuple[str, TargetKind]:
        """Return (target_id, kind); the group identity wins when both are set."""
        if self.group_id:
            return self.group_id, TargetKind.GROUP
        return self.user_id, TargetKind.USER

    def has_identity(self) -> bool:
        return bool(self.user_id or self.group_id)

    def feed_urls(self) -> Tuple[str, ...]:
        return tuple(feed.url for feed in self.feeds)

    def with_feeds(self, feeds) -> "Subscription":
        return replace(self, feeds=tuple(feeds))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_open_id": self.user_id,
            "group_open_id": self.group_id,
            "feed_list": [
                {"link": feed.url, "last_read_link": feed.last_read_marker}
                for feed in self.feeds
            ],
        }


@dataclass(frozen=True)
class FeedItem:
    title: str
    link: str
    description: str = ""


@dataclass(frozen=True)
class FetchedFeed:
    url: str
    title: str
    link: str
    updated_at: Optional[datetime] = None
    items: Tuple[FeedItem, ...] = ()


@dataclass(frozen=True)
class IncomingMessage:
    """A decoded inbound chat message."""

    sender_id: str
    chat_id: str
    is_group_chat: bool
    text: str


@dataclass
class FeedUpdate:
    """Result of refreshing one feed of a subscription."""

    ordinal: int
    feed: FeedSubscription
    feed_title: str = ""
    new_items: Tuple[FeedItem, ...] = ()
    head_link: str = ""
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class RunReport:
    """Outcome of one subscription run."""

    subscription_id: str
    outcome: "RunOutcome"
    entry_count: int = 0
    failures: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None


class RunOutcome(str, Enum):
    DELIVERED = "delivered"
    NOOP = "noop"
    FAILED = "failed"
