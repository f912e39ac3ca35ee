#!/usr/bin/env python3
"""
RSS relay bot entry point.

Modes:
  serve            run the Feishu callback server (optionally with the scheduler)
  send-all         deliver new items for every active subscription once
  send             deliver new items for one user or group subscription
  list             print active subscriptions as JSON
  scheduled        run send-all at the times configured in bot.yaml
  schedule-status  show the configured schedule
"""

import argparse
import asyncio
import json
import sys
from typing import Optional

from aiohttp import ClientSession, web

from bitable import BitableStore
from commands import CommandHandler
from config import config, get_logger
from entities import RunOutcome
from errors import DeliveryError, NotFound, RelayError
from feishu import FeishuGateway
from fetcher import FeedFetcher
from models import SqliteStore
from relay import SubscriptionRelay
from scheduler import create_scheduler
from server import create_app
from telemetry import init_telemetry

# Module-specific logger
logger = get_logger("main")
init_telemetry("rss-relay-bot")


class BotServices:
    """Build and tear down the gateway, store, relay and command handler."""

    def __init__(self, backend: Optional[str] = None) -> None:
        self.backend = backend or config.STORE_BACKEND
        self.session: Optional[ClientSession] = None
        self.gateway: Optional[FeishuGateway] = None
        self.store = None
        self.fetcher: Optional[FeedFetcher] = None
        self.relay: Optional[SubscriptionRelay] = None
        self.handler: Optional[CommandHandler] = None

    async def __aenter__(self) -> "BotServices":
        self.session = ClientSession()
        self.gateway = FeishuGateway(self.session)
        if self.backend == "bitable":
            self.store = BitableStore(self.gateway)
        else:
            self.store = SqliteStore()
            await self.store.start()
        self.fetcher = FeedFetcher()
        self.relay = SubscriptionRelay(self.fetcher, self.gateway, self.store, session=self.session)
        self.handler = CommandHandler(self.gateway, self.store, self.relay)
        logger.info(f"Services ready: {config.get_config_summary()}")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self.fetcher:
            await self.fetcher.close()
        if isinstance(self.store, SqliteStore):
            await self.store.stop()
        if self.session:
            await self.session.close()


async def run_send_all() -> bool:
    async with BotServices() as services:
        reports = await services.relay.run_all()
    for report in reports:
        line = f"{report.subscription_id}: {report.outcome.value}"
        if report.entry_count:
            line += f" ({report.entry_count} entries)"
        if report.error:
            line += f" - {report.error}"
        print(line)
    return all(r.outcome != RunOutcome.FAILED for r in reports)


async def run_send_one(user_id: Optional[str], group_id: Optional[str]) -> bool:
    async with BotServices() as services:
        try:
            subscription = await services.store.find(user_id=user_id, group_id=group_id)
        except NotFound as e:
            logger.error(str(e))
            return False
        try:
            report = await services.relay.run(subscription)
        except DeliveryError as e:
            logger.error(f"Delivery failed for {subscription.id}: {e}")
            return False
    print(f"{report.subscription_id}: {report.outcome.value} ({report.entry_count} entries)")
    for url, error in report.failures.items():
        print(f"  failed: {url}: {error}")
    return True


async def run_list() -> None:
    async with BotServices() as services:
        subscriptions = await services.store.list_active()
    print(json.dumps([s.to_dict() for s in subscriptions], indent=2, ensure_ascii=False))


async def run_scheduled_mode() -> None:
    scheduler = create_scheduler()
    if not scheduler.get_schedule_status()['schedule_active']:
        logger.error(f"No schedule configured in {config.BOT_CONFIG_PATH}")
        logger.info("Example:\n  schedule:\n    - time: \"08:00\"\n    - time: \"18:00\"")
        return
    async with BotServices() as services:
        await scheduler.run(services.relay.run_all)


def _log_scheduler_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Scheduler stopped: {error}")


async def run_server(host: str, port: int, with_scheduler: bool) -> None:
    async with BotServices() as services:
        app = create_app(services.handler, services.relay, services.store, services.gateway)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()
        logger.info(f"Listening on http://{host}:{port}")

        scheduler_task = None
        if with_scheduler:
            scheduler_task = asyncio.create_task(create_scheduler().run(services.relay.run_all))
            scheduler_task.add_done_callback(_log_scheduler_exit)
        try:
            await asyncio.Event().wait()
        finally:
            if scheduler_task:
                scheduler_task.cancel()
            await runner.cleanup()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='RSS to Feishu relay bot')
    parser.add_argument('mode', choices=['serve', 'send-all', 'send', 'list', 'scheduled', 'schedule-status'],
                        help='Operation mode')
    parser.add_argument('--host', default=config.HOST, help='Address to bind in serve mode')
    parser.add_argument('--port', type=int, default=config.PORT, help='Port to bind in serve mode')
    parser.add_argument('--with-scheduler', action='store_true',
                        help='Also run the bot.yaml schedule in serve mode')
    target = parser.add_mutually_exclusive_group()
    target.add_argument('--user', help='User open_id for send mode')
    target.add_argument('--group', help='Group chat_id for send mode')

    args = parser.parse_args()

    try:
        if args.mode == 'serve':
            asyncio.run(run_server(args.host, args.port, args.with_scheduler))

        elif args.mode == 'send-all':
            success = asyncio.run(run_send_all())
            sys.exit(0 if success else 1)

        elif args.mode == 'send':
            if not (args.user or args.group):
                parser.error("send mode needs --user or --group")
            success = asyncio.run(run_send_one(args.user, args.group))
            sys.exit(0 if success else 1)

        elif args.mode == 'list':
            asyncio.run(run_list())

        elif args.mode == 'scheduled':
            asyncio.run(run_scheduled_mode())

        elif args.mode == 'schedule-status':
            create_scheduler().print_schedule_status()

    except KeyboardInterrupt:
        logger.info("Shutting down")
    except RelayError as e:
        logger.error(f"{e.__class__.__name__}: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
