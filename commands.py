#!/usr/bin/env python3
"""
Chat command handling.

Supported commands, each optionally followed by `-g` in a group chat to act
on the group's subscription instead of the sender's:

  /list [-g]           show subscribed feeds
  /add [-g] <url>      subscribe to a feed
  /remove [-g] <url>   unsubscribe from a feed
  /send [-g]           deliver new items now
  /help                reply with the documentation link

Replies always go back to the chat the command came from.
"""

import re
from dataclasses import dataclass
from typing import Optional

from config import config, get_logger
from digest import FEED_LIST_COLOR, FEED_LIST_TITLE, feed_list_entries
from entities import FeedSubscription, IncomingMessage, RunOutcome, Subscription, TargetKind
from errors import DeliveryError, GatewayError, NotFound, StoreError
from telemetry import trace_span
from utils import extract_url

# Module-specific logger
logger = get_logger("commands")

# Checked in this order, first match wins
COMMAND_NAMES = ("list", "add", "remove", "send", "help")
_COMMAND_PATTERNS = {name: re.compile(rf"(?:^|\s)/{name}(?:\s|$)") for name in COMMAND_NAMES}
_GROUP_FLAG = re.compile(r"(?:^|\s)-g(?:\s|$)")

NO_FEEDS = "No subscribed feeds found"
NO_URL = "Please provide a valid URL"


@dataclass(frozen=True)
class Command:
    name: str
    group_scope: bool = False
    url: Optional[str] = None


def parse_command(text: str, is_group_chat: bool = False) -> Optional[Command]:
    """Parse chat text into a Command, or None when it holds no command."""
    text = text or ""
    for name in COMMAND_NAMES:
        if _COMMAND_PATTERNS[name].search(text):
            group_scope = is_group_chat and bool(_GROUP_FLAG.search(text))
            url = extract_url(text) if name in ("add", "remove") else None
            return Command(name=name, group_scope=group_scope, url=url)
    return None


class CommandHandler:
    """Execute chat commands against the store, the gateway and the relay."""

    def __init__(self, gateway, store, relay, doc_link: Optional[str] = None) -> None:
        self.gateway = gateway
        self.store = store
        self.relay = relay
        self.doc_link = doc_link or config.DOC_LINK

    @trace_span(
        "commands.handle",
        tracer_name="commands",
        attr_from_args=lambda self, message: {"chat.is_group": bool(message.is_group_chat)},
    )
    async def handle(self, message: IncomingMessage) -> Optional[str]:
        """Handle one inbound message; returns the command name that ran, if any."""
        command = parse_command(message.text, message.is_group_chat)
        if command is None:
            logger.debug("Ignoring message without a command")
            return None

        logger.info(f"Handling /{command.name} (group scope: {command.group_scope})")
        handler = getattr(self, f"_cmd_{command.name}")
        try:
            await handler(command, message)
        except GatewayError as e:
            logger.error(f"Could not reply to /{command.name} in {message.chat_id}: {e}")
        return command.name

    async def reply(self, message: IncomingMessage, text: str) -> None:
        await self.gateway.send_text(message.chat_id, TargetKind.GROUP, text)

    def _identity(self, command: Command, message: IncomingMessage) -> dict:
        if command.group_scope:
            return {"group_id": message.chat_id}
        return {"user_id": message.sender_id}

    async def _lookup(self, command: Command, message: IncomingMessage) -> Optional[Subscription]:
        """Find the caller's subscription; None when there is none or the store failed."""
        try:
            return await self.store.find(**self._identity(command, message))
        except NotFound:
            return None
        except StoreError as e:
            logger.error(f"Subscription lookup failed: {e}")
            return None

    async def _cmd_list(self, command: Command, message: IncomingMessage) -> None:
        subscription = await self._lookup(command, message)
        if subscription is None or not subscription.feeds:
            await self.reply(message, NO_FEEDS)
            return
        await self.gateway.send_digest(
            message.chat_id,
            TargetKind.GROUP,
            FEED_LIST_TITLE,
            FEED_LIST_COLOR,
            feed_list_entries(subscription.feed_urls()),
        )

    async def _cmd_add(self, command: Command, message: IncomingMessage) -> None:
        url = command.url
        if not url:
            await self.reply(message, NO_URL)
            return

        identity = self._identity(command, message)
        try:
            subscription = await self.store.find(**identity)
        except NotFound:
            subscription = None
        except StoreError as e:
            logger.error(f"Subscription lookup failed: {e}")
            await self.reply(message, f"Failed to add subscription: {url}")
            return

        try:
            if subscription is None:
                await self.store.create(Subscription(id="", feeds=(FeedSubscription(url),), **identity))
            elif url in subscription.feed_urls():
                await self.reply(message, f"This URL has already been subscribed: {url}")
                return
            else:
                await self.store.update_feed_list(subscription.id, subscription.feeds + (FeedSubscription(url),))
        except StoreError as e:
            logger.error(f"Adding {url} failed: {e}")
            await self.reply(message, f"Failed to add subscription: {url}")
            return

        await self.reply(message, f"Successfully added subscription: {url}")

    async def _cmd_remove(self, command: Command, message: IncomingMessage) -> None:
        url = command.url
        if not url:
            await self.reply(message, NO_URL)
            return

        subscription = await self._lookup(command, message)
        if subscription is None:
            await self.reply(message, NO_FEEDS)
            return
        if url not in subscription.feed_urls():
            await self.reply(message, f"This URL has not been subscribed yet: {url}")
            return

        remaining = tuple(feed for feed in subscription.feeds if feed.url != url)
        try:
            await self.store.update_feed_list(subscription.id, remaining)
        except StoreError as e:
            logger.error(f"Removing {url} failed: {e}")
            await self.reply(message, f"Failed to remove subscription: {url}")
            return
        await self.reply(message, f"Successfully removed subscription: {url}")

    async def _cmd_send(self, command: Command, message: IncomingMessage) -> None:
        subscription = await self._lookup(command, message)
        if subscription is None or not subscription.feeds:
            await self.reply(message, NO_FEEDS)
            return
        try:
            report = await self.relay.run(subscription)
        except DeliveryError as e:
            logger.error(f"/send for subscription {subscription.id} failed: {e}")
            await self.reply(message, "Failed to send RSS message")
            return
        if report.outcome == RunOutcome.NOOP:
            logger.info(f"/send for subscription {subscription.id}: nothing new")

    async def _cmd_help(self, command: Command, message: IncomingMessage) -> None:
        await self.reply(message, self.doc_link)
