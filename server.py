#!/usr/bin/env python3
"""
HTTP surface of the bot.

Routes:
  POST /feishu/callback, /feishu/event   Feishu event subscription callback
  GET  /rss/send                         run every active subscription
  GET  /record/list                      list active subscriptions as JSON

Inbound chat messages are handled in detached tasks so Feishu gets its
acknowledgement immediately; the tasks are kept in a set until they finish.
"""

from asyncio import Task, create_task
from json import JSONDecodeError
from typing import Set

from aiohttp import web

from config import get_logger
from errors import MessageParseError, StoreError

# Module-specific logger
logger = get_logger("server")

HANDLER_KEY = web.AppKey("handler", object)
RELAY_KEY = web.AppKey("relay", object)
STORE_KEY = web.AppKey("store", object)
GATEWAY_KEY = web.AppKey("gateway", object)
TASKS_KEY = web.AppKey("tasks", set)

routes = web.RouteTableDef()


def _spawn(app: web.Application, coro) -> Task:
    tasks: Set[Task] = app[TASKS_KEY]
    task = create_task(coro)
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return task


async def _handle_message(app: web.Application, message) -> None:
    try:
        await app[HANDLER_KEY].handle(message)
    except Exception as e:
        logger.error(f"Error handling message from chat {message.chat_id}: {e}")


@routes.post("/feishu/callback")
@routes.post("/feishu/event")
async def feishu_callback(request: web.Request) -> web.Response:
    """Acknowledge a Feishu callback by echoing its body."""
    try:
        payload = await request.json()
    except (JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Rejecting callback with invalid JSON: {e}")
        return web.json_response({}, status=400)
    if not isinstance(payload, dict):
        return web.json_response({}, status=400)

    gateway = request.app[GATEWAY_KEY]
    if gateway.challenge_of(payload):
        logger.info("Answering URL verification challenge")
        return web.json_response(payload)

    try:
        message = gateway.parse_incoming_text(payload)
    except MessageParseError as e:
        logger.debug(f"Ignoring callback without a text message: {e}")
    else:
        _spawn(request.app, _handle_message(request.app, message))
    return web.json_response(payload)


@routes.get("/rss/send")
async def send_all(request: web.Request) -> web.Response:
    try:
        await request.app[RELAY_KEY].run_all()
    except StoreError as e:
        logger.error(f"Error getting subscription list: {e}")
        return web.json_response({"error": str(e)}, status=500)
    return web.Response(text="ok")


@routes.get("/record/list")
async def record_list(request: web.Request) -> web.Response:
    try:
        subscriptions = await request.app[STORE_KEY].list_active()
    except StoreError as e:
        logger.error(f"Error getting subscription list: {e}")
        return web.json_response({"error": str(e)}, status=500)
    return web.json_response([s.to_dict() for s in subscriptions])


async def _drain_tasks(app: web.Application) -> None:
    tasks = list(app[TASKS_KEY])
    if tasks:
        logger.info(f"Cancelling {len(tasks)} in-flight message handlers")
    for task in tasks:
        task.cancel()


def create_app(handler, relay, store, gateway) -> web.Application:
    """Build the aiohttp application around already constructed services."""
    app = web.Application()
    app[HANDLER_KEY] = handler
    app[RELAY_KEY] = relay
    app[STORE_KEY] = store
    app[GATEWAY_KEY] = gateway
    app[TASKS_KEY] = set()
    app.add_routes(routes)
    app.on_shutdown.append(_drain_tasks)
    return app
