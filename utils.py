#!/usr/bin/env python3
"""
Utility functions shared by the command handler and the relay.
"""

import re
from typing import Optional

_URL_PATTERN = re.compile(r'https?://[^\s]+')


def extract_url(text: str) -> Optional[str]:
    """Return the first http(s) URL found in a chat message, or None."""
    match = _URL_PATTERN.search(text or "")
    return match.group(0) if match else None


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:  # Always show seconds if nothing else
        parts.append(f"{secs}s")

    return " ".join(parts)
