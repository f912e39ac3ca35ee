#!/usr/bin/env python3
"""
Minimal Feishu (Lark) Open API client.

Only implements the small subset of the API the bot uses: tenant access
tokens, sending text and template-card messages, authorized JSON requests for
the Bitable store, and decoding inbound message events.

The tenant token lives in a GatewaySession owned by the gateway instance
rather than in module state, so tests and multiple apps never share it.
"""

from asyncio import Lock, TimeoutError
from dataclasses import dataclass
from json import dumps, loads, JSONDecodeError
from time import time
from typing import Any, Dict, Iterable, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from digest import DigestEntry
from entities import IncomingMessage, TargetKind
from errors import GatewayError, MessageParseError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("feishu")

TOKEN_PATH = "/auth/v3/tenant_access_token/internal"
MESSAGES_PATH = "/im/v1/messages"
# Refresh tokens a little before Feishu expires them
TOKEN_EXPIRY_MARGIN_SECONDS = 60


@dataclass
class GatewaySession:
    """Cached tenant access token and the epoch second it stops being usable."""

    token: str = ""
    expires_at: float = 0.0

    def is_valid(self, now: Optional[float] = None) -> bool:
        now = time() if now is None else now
        return bool(self.token) and now < self.expires_at

    def update(self, token: str, expire_seconds: int, now: Optional[float] = None) -> None:
        now = time() if now is None else now
        self.token = token
        self.expires_at = now + max(0, int(expire_seconds) - TOKEN_EXPIRY_MARGIN_SECONDS)


class FeishuGateway:
    """Feishu messaging gateway bound to one app and one aiohttp session."""

    def __init__(
        self,
        session: ClientSession,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        template_id: Optional[str] = None,
        template_version: Optional[str] = None,
        auth: Optional[GatewaySession] = None,
    ) -> None:
        self.session = session
        self.app_id = app_id if app_id is not None else config.APP_ID
        self.app_secret = app_secret if app_secret is not None else config.APP_SECRET
        self.base_url = (base_url or config.FEISHU_BASE_URL).rstrip("/")
        self.template_id = template_id if template_id is not None else config.CARD_TEMPLATE_ID
        self.template_version = template_version if template_version is not None else config.CARD_TEMPLATE_VERSION_NAME
        self.auth = auth or GatewaySession()
        self._auth_lock = Lock()

    async def access_token(self) -> str:
        """Return a valid tenant access token, refreshing it when expired."""
        if self.auth.is_valid():
            return self.auth.token
        async with self._auth_lock:
            # Another task may have refreshed while we waited
            if self.auth.is_valid():
                return self.auth.token
            body = await self._post_json(
                TOKEN_PATH,
                {"app_id": self.app_id, "app_secret": self.app_secret},
                headers={},
            )
            token = body.get("tenant_access_token")
            if not token:
                raise GatewayError("Token response did not include tenant_access_token", details=body)
            self.auth.update(token, int(body.get("expire", 0)))
            logger.info(f"Refreshed Feishu tenant access token (expires in {body.get('expire')}s)")
            return token

    async def request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None,
                      params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Perform an authorized JSON request and return the decoded body."""
        token = await self.access_token()
        headers = {"Authorization": f"Bearer {token}"}
        return await self._send(method, path, payload, params=params, headers=headers)

    async def _post_json(self, path: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        return await self._send("POST", path, payload, headers=headers)

    async def _send(self, method: str, path: str, payload: Optional[Dict[str, Any]],
                    params: Optional[Dict[str, str]] = None,
                    headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        request_headers = {"Content-Type": "application/json; charset=utf-8", **(headers or {})}
        try:
            async with self.session.request(
                method,
                url,
                params=params,
                data=dumps(payload) if payload is not None else None,
                headers=request_headers,
                timeout=ClientTimeout(total=config.HTTP_TIMEOUT),
            ) as response:
                text = await response.text()
                status = response.status
        except TimeoutError as e:
            raise GatewayError(f"{method} {path} timed out") from e
        except ClientError as e:
            raise GatewayError(f"{method} {path} failed: {e}") from e

        try:
            body = loads(text) if text else {}
        except JSONDecodeError as e:
            raise GatewayError(f"{method} {path} returned non-JSON body (HTTP {status})", code=status) from e

        code = body.get("code", 0) if isinstance(body, dict) else 0
        if status >= 400 or code != 0:
            message = body.get("msg", "") if isinstance(body, dict) else ""
            logger.error(f"Feishu {method} {path} failed: HTTP {status} code={code} msg={message}")
            raise GatewayError(f"{method} {path} failed: {message or f'HTTP {status}'}",
                               code=code or status, details=body if isinstance(body, dict) else {})
        logger.debug(f"Feishu {method} {path} ok")
        return body if isinstance(body, dict) else {}

    @trace_span(
        "feishu.send_message",
        tracer_name="feishu",
        attr_from_args=lambda self, receive_id, kind, msg_type, content: {
            "feishu.receive_id_type": TargetKind(kind).value,
            "feishu.msg_type": msg_type,
        },
    )
    async def send_message(self, receive_id: str, kind: TargetKind, msg_type: str, content: Dict[str, Any]) -> Dict[str, Any]:
        """Send one message; `content` is serialized to the JSON string Feishu expects."""
        if not receive_id:
            raise GatewayError("Cannot send a message without a receive id")
        payload = {
            "receive_id": receive_id,
            "msg_type": msg_type,
            "content": dumps(content, ensure_ascii=False),
        }
        return await self.request("POST", MESSAGES_PATH, payload, params={"receive_id_type": TargetKind(kind).value})

    async def send_text(self, target_id: str, kind: TargetKind, text: str) -> Dict[str, Any]:
        return await self.send_message(target_id, kind, "text", {"text": text})

    async def send_digest(self, target_id: str, kind: TargetKind, title: str, color: str,
                          entries: Iterable[DigestEntry]) -> Dict[str, Any]:
        """Send a template card with a title, a header color and an item list."""
        content = {
            "type": "template",
            "data": {
                "template_id": self.template_id,
                "template_version_name": self.template_version,
                "template_variable": {
                    "cardTitle": title,
                    "cardColor": color,
                    "itemList": [entry.to_card_item() for entry in entries],
                },
            },
        }
        return await self.send_message(target_id, kind, "interactive", content)

    @staticmethod
    def challenge_of(payload: Dict[str, Any]) -> Optional[str]:
        """Return the URL-verification challenge carried by a callback, if any."""
        if isinstance(payload, dict) and payload.get("challenge"):
            return str(payload["challenge"])
        return None

    @staticmethod
    def parse_incoming_text(payload: Dict[str, Any]) -> IncomingMessage:
        """Decode an `im.message.receive_v1` event into an IncomingMessage.

        Plain text messages carry `{"text": ...}`; rich text (post) messages
        carry a grid of cells whose `text` values are concatenated.

        Raises:
            MessageParseError: when the payload is not a text-bearing message event.
        """
        if not isinstance(payload, dict):
            raise MessageParseError("Event payload must be a JSON object")
        event = payload.get("event") or {}
        message = event.get("message") or {}
        sender = (event.get("sender") or {}).get("sender_id") or {}
        raw_content = message.get("content")
        if not isinstance(raw_content, str) or not raw_content:
            raise MessageParseError("Event has no message content")
        try:
            content = loads(raw_content)
        except JSONDecodeError as e:
            raise MessageParseError(f"Message content is not JSON: {e}") from e
        if not isinstance(content, dict):
            raise MessageParseError("Message content must be a JSON object")

        text = content.get("text") or ""
        if not text:
            for row in content.get("content") or []:
                for cell in row or []:
                    if isinstance(cell, dict) and isinstance(cell.get("text"), str):
                        text += cell["text"]
        if not text:
            raise MessageParseError("Empty message content")

        return IncomingMessage(
            sender_id=sender.get("open_id", ""),
            chat_id=message.get("chat_id", ""),
            is_group_chat=message.get("chat_type") == "group",
            text=text,
        )
