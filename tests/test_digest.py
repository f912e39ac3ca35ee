from datetime import date

from digest import PALETTE, build_digest, build_entries, color_for_ordinal, digest_title, feed_list_entries
from entities import FeedItem, FeedSubscription, FeedUpdate


def _update(ordinal, title, links):
    return FeedUpdate(
        ordinal=ordinal,
        feed=FeedSubscription(url=f"https://feed{ordinal}.example.com/rss"),
        feed_title=title,
        new_items=tuple(FeedItem(title=l, link=l, description=f"date-{l}") for l in links),
    )


def test_palette_rotates():
    assert len(PALETTE) == 12
    assert color_for_ordinal(0) == "green"
    assert color_for_ordinal(5) == "blue"
    assert color_for_ordinal(11) == "wathet"
    assert color_for_ordinal(12) == "green"
    assert color_for_ordinal(25) == color_for_ordinal(1)


def test_entries_are_grouped_by_feed_order_not_arrival():
    updates = [_update(1, "Second", ["b1", "b2"]), _update(0, "First", ["a1"])]
    entries = build_entries(updates)
    assert [e.link for e in entries] == ["a1", "b1", "b2"]
    assert [e.primary_desc for e in entries] == ["First", "Second", "Second"]
    assert [e.primary_desc_color for e in entries] == ["green", "yellow", "yellow"]
    assert entries[0].secondary_desc == "date-a1"


def test_empty_updates_build_nothing():
    assert build_digest([]) is None
    assert build_digest([_update(0, "Quiet", [])]) is None


def test_digest_title_and_color():
    digest = build_digest([_update(0, "First", ["a1", "a2"])], today=date(2024, 5, 1))
    assert digest.title == "2024-05-01 | Explore 2 New Updates"
    assert digest.color == "blue"
    assert len(digest) == 2
    assert digest_title(10, date(2024, 1, 2)) == "2024-01-02 | Explore 10 New Updates"


def test_card_item_keys():
    entry = build_entries([_update(3, "Feed", ["x"])])[0]
    assert entry.to_card_item() == {
        "title": "x",
        "link": "x",
        "primaryDesc": "Feed",
        "primaryDescColor": "purple",
        "secondaryDesc": "date-x",
    }


def test_feed_list_entries():
    entries = feed_list_entries(["https://a.example.com/rss", "https://b.example.com/rss"])
    assert [(e.title, e.link) for e in entries] == [
        ("https://a.example.com/rss", "https://a.example.com/rss"),
        ("https://b.example.com/rss", "https://b.example.com/rss"),
    ]
