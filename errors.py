#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Any, Dict, Optional


class RelayError(Exception):
    """Base class for every error raised by the relay bot."""


class FetchFailed(RelayError):
    """Raised when a feed cannot be downloaded or parsed.

    Attributes:
        url: The feed URL that failed.
        cause: The underlying exception or a short description.
    """

    def __init__(self, url: str, cause: Any):
        super().__init__(f"Failed to fetch {url}: {cause}")
        self.url = url
        self.cause = cause


class GatewayError(RelayError):
    """Raised when the Feishu Open API rejects or fails a request.

    Attributes:
        code: Feishu business code or HTTP status, when known.
        details: Optional provider payload for diagnostics.
    """

    def __init__(self, message: str, code: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details or {}


class MessageParseError(GatewayError):
    """Raised when an inbound event does not carry a usable text message."""


class StoreError(RelayError):
    """Raised when the subscription store cannot complete an operation."""


class NotFound(RelayError):
    """Raised when no subscription matches a lookup."""


class DeliveryError(RelayError):
    """Raised when a digest could not be delivered or its bookkeeping failed.

    Attributes:
        subscription_id: The subscription whose run failed.
        delivered: True when the message went out but read markers were not saved.
    """

    def __init__(self, subscription_id: str, message: str, delivered: bool = False):
        super().__init__(message)
        self.subscription_id = subscription_id
        self.delivered = delivered


__all__ = [
    "RelayError",
    "FetchFailed",
    "GatewayError",
    "MessageParseError",
    "StoreError",
    "NotFound",
    "DeliveryError",
]
