#!/usr/bin/env python3
"""
Digest building.

Turns the new items of every feed in a subscription into one ordered list of
card entries: all of feed 0's items, then feed 1's, and so on. Each feed gets
a display color picked by its position in the subscription.
"""

from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from entities import FeedUpdate

PALETTE: Tuple[str, ...] = (
    "green",
    "yellow",
    "red",
    "purple",
    "carmine",
    "blue",
    "turquoise",
    "lime",
    "orange",
    "violet",
    "indigo",
    "wathet",
)

DIGEST_COLOR = "blue"
FEED_LIST_COLOR = "purple"
FEED_LIST_TITLE = "Subscribed Feed List"


def color_for_ordinal(ordinal: int) -> str:
    return PALETTE[ordinal % len(PALETTE)]


@dataclass(frozen=True)
class DigestEntry:
    title: str
    link: str
    primary_desc: str = ""
    primary_desc_color: str = ""
    secondary_desc: str = ""

    def to_card_item(self) -> Dict[str, str]:
        """Serialize with the variable names the card template expects."""
        return {
            "title": self.title,
            "link": self.link,
            "primaryDesc": self.primary_desc,
            "primaryDescColor": self.primary_desc_color,
            "secondaryDesc": self.secondary_desc,
        }


@dataclass(frozen=True)
class Digest:
    title: str
    color: str
    entries: Tuple[DigestEntry, ...]

    def __len__(self) -> int:
        return len(self.entries)


def digest_title(count: int, today: Optional[date] = None) -> str:
    """Card title, e.g. "2024-05-01 | Explore 10 New Updates"."""
    today = today or date.today()
    return f"{today.isoformat()} | Explore {count} New Updates"


def build_entries(updates: Iterable[FeedUpdate]) -> List[DigestEntry]:
    """Flatten feed updates into entries, ordered by feed ordinal then fetch order."""
    entries: List[DigestEntry] = []
    for update in sorted(updates, key=lambda u: u.ordinal):
        color = color_for_ordinal(update.ordinal)
        for item in update.new_items:
            entries.append(DigestEntry(
                title=item.title,
                link=item.link,
                primary_desc=update.feed_title,
                primary_desc_color=color,
                secondary_desc=item.description,
            ))
    return entries


def build_digest(updates: Iterable[FeedUpdate], today: Optional[date] = None) -> Optional[Digest]:
    """Build the digest for one subscription run.

    Returns None when no feed produced a new item, meaning nothing should be sent.
    """
    entries = build_entries(updates)
    if not entries:
        return None
    return Digest(title=digest_title(len(entries), today), color=DIGEST_COLOR, entries=tuple(entries))


def feed_list_entries(urls: Iterable[str]) -> List[DigestEntry]:
    """Entries for the /list card: one per subscribed URL."""
    return [DigestEntry(title=url, link=url) for url in urls]
