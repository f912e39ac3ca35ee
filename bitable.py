#!/usr/bin/env python3
"""
Subscription store backed by a Feishu Bitable table.

Each record is one subscription with the fields:

  user / group       person or group cells, a list of {"id": ...}
  feedList           list of subscribed feed URLs
  lastReadLinkList   JSON object mapping feed URL to its last read link
  enable             checkbox; disabled records are skipped by batch runs

Records are decoded into Subscription objects here, so nothing past this
module sees raw Bitable payloads.
"""

from json import dumps, loads, JSONDecodeError
from typing import Any, Dict, List, Optional, Sequence

from config import config, get_logger
from entities import FeedSubscription, Subscription
from errors import GatewayError, NotFound, StoreError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("bitable")

SEARCH_PAGE_SIZE = 100


def _first_id(cell: Any) -> str:
    if isinstance(cell, list) and cell:
        head = cell[0]
        if isinstance(head, dict) and isinstance(head.get("id"), str):
            return head["id"]
    return ""


def _read_markers(cell: Any) -> Dict[str, str]:
    """Decode lastReadLinkList, stored as text and read back as rich-text segments."""
    if cell is None:
        return {}
    if isinstance(cell, str):
        raw = cell
    elif isinstance(cell, list):
        raw = "".join(
            segment["text"] for segment in cell
            if isinstance(segment, dict) and isinstance(segment.get("text"), str)
        )
    else:
        return {}
    if not raw:
        return {}
    try:
        data = loads(raw)
    except JSONDecodeError as e:
        logger.warning(f"Ignoring unreadable lastReadLinkList: {e}")
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(k): str(v) for k, v in data.items() if v is not None}


def decode_record(record: Dict[str, Any]) -> Subscription:
    """Turn one Bitable record into a Subscription."""
    fields = record.get("fields") or {}
    markers = _read_markers(fields.get("lastReadLinkList"))
    feeds = tuple(
        FeedSubscription(url=url, last_read_marker=markers.get(url, ""))
        for url in (fields.get("feedList") or [])
        if isinstance(url, str)
    )
    return Subscription(
        id=record.get("record_id", ""),
        user_id=_first_id(fields.get("user")),
        group_id=_first_id(fields.get("group")),
        feeds=feeds,
    )


def encode_markers(feeds: Sequence[FeedSubscription]) -> str:
    return dumps({feed.url: feed.last_read_marker for feed in feeds}, ensure_ascii=False)


class BitableStore:
    """Subscription store using the Bitable record search/create/update API."""

    def __init__(self, gateway, app_token: Optional[str] = None, table_id: Optional[str] = None,
                 view_id: Optional[str] = None) -> None:
        self.gateway = gateway
        self.app_token = app_token or config.BITABLE_APP_TOKEN
        self.table_id = table_id or config.BITABLE_TABLE_ID
        self.view_id = view_id if view_id is not None else config.BITABLE_VIEW_ID
        if not (self.app_token and self.table_id):
            raise StoreError("BITABLE_APP_TOKEN and BITABLE_TABLE_ID must be set for the Bitable store")

    @property
    def _records_path(self) -> str:
        return f"/bitable/v1/apps/{self.app_token}/tables/{self.table_id}/records"

    async def _search(self, conditions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Run a filtered record search, following every result page."""
        body: Dict[str, Any] = {"filter": {"conjunction": "and", "conditions": conditions}}
        if self.view_id:
            body["view_id"] = self.view_id
        items: List[Dict[str, Any]] = []
        page_token = ""
        while True:
            params = {"page_size": str(SEARCH_PAGE_SIZE)}
            if page_token:
                params["page_token"] = page_token
            try:
                response = await self.gateway.request("POST", f"{self._records_path}/search", body, params=params)
            except GatewayError as e:
                raise StoreError(f"Bitable search failed: {e}") from e
            data = response.get("data") or {}
            items.extend(data.get("items") or [])
            page_token = data.get("page_token") or ""
            if not data.get("has_more") or not page_token:
                break
        logger.debug(f"Bitable search returned {len(items)} records")
        return items

    @trace_span("bitable.find", tracer_name="bitable")
    async def find(self, user_id: Optional[str] = None, group_id: Optional[str] = None) -> Subscription:
        if group_id:
            field, value = "group", group_id
        elif user_id:
            field, value = "user", user_id
        else:
            raise NotFound("No identity given")
        items = await self._search([{"field_name": field, "operator": "is", "value": [value]}])
        if not items:
            raise NotFound(f"No subscription for {field} {value}")
        if len(items) > 1:
            logger.warning(f"{len(items)} records match {field} {value}; using the first")
        return decode_record(items[0])

    @trace_span("bitable.list_active", tracer_name="bitable")
    async def list_active(self) -> List[Subscription]:
        items = await self._search([
            {"field_name": "feedList", "operator": "isNotEmpty", "value": []},
            {"field_name": "enable", "operator": "is", "value": ["true"]},
        ])
        subscriptions = [decode_record(item) for item in items]
        return [s for s in subscriptions if s.has_identity() and s.feeds]

    async def create(self, subscription: Subscription) -> str:
        fields: Dict[str, Any] = {"feedList": list(subscription.feed_urls()), "enable": True}
        if subscription.user_id:
            fields["user"] = [{"id": subscription.user_id}]
        if subscription.group_id:
            fields["group"] = [{"id": subscription.group_id}]
        try:
            response = await self.gateway.request("POST", self._records_path, {"fields": fields})
        except GatewayError as e:
            raise StoreError(f"Bitable create failed: {e}") from e
        record_id = ((response.get("data") or {}).get("record") or {}).get("record_id", "")
        if not record_id:
            raise StoreError("Bitable create returned no record_id")
        logger.info(f"Created subscription record {record_id}")
        return record_id

    async def _update(self, record_id: str, fields: Dict[str, Any]) -> None:
        try:
            await self.gateway.request("PUT", f"{self._records_path}/{record_id}", {"fields": fields})
        except GatewayError as e:
            raise StoreError(f"Bitable update of {record_id} failed: {e}") from e

    async def update_feed_list(self, subscription_id: str, feeds: Sequence[FeedSubscription]) -> None:
        await self._update(subscription_id, {"feedList": [feed.url for feed in feeds]})

    async def update_read_markers(self, subscription_id: str, feeds: Sequence[FeedSubscription]) -> None:
        await self._update(subscription_id, {"lastReadLinkList": encode_markers(feeds)})
