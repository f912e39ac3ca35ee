#!/usr/bin/env python3
"""
Read-position tracking.

A feed's read position is the link of the newest item delivered in the last
successful digest. Feeds list items newest first, so everything ahead of that
link in the current fetch window is new.
"""

from typing import List, Optional, Sequence

from entities import FeedItem


def new_items(items: Sequence[FeedItem], last_read_marker: Optional[str]) -> List[FeedItem]:
    """Return the items newer than `last_read_marker`, in fetch order.

    With no marker every fetched item is new. When the marker is not in the
    window every item is new as well, which re-notifies older items if the
    feed moved past the whole window since the last run.
    """
    if not last_read_marker:
        return list(items)
    for index, item in enumerate(items):
        if item.link == last_read_marker:
            return list(items[:index])
    return list(items)


def next_marker(items: Sequence[FeedItem], fresh: Sequence[FeedItem], current: str) -> str:
    """Marker to store after delivering `fresh`: the head of the fetch window.

    Feeds that produced nothing new keep their current marker.
    """
    if fresh and items:
        return items[0].link
    return current
