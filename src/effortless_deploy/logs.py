"""Reading a handler function's CloudWatch log group."""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from typing import Any

from botocore.exceptions import ClientError

from .exceptions import ValidationError, is_not_found

logger = logging.getLogger(__name__)

TAIL_INTERVAL = 2.0
"""Seconds between polls in tail mode."""

SINCE_PATTERN = re.compile(r"^(\d+)(s|m|h|d)$")
UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

# "2024-01-15T10:30:00.000Z\t<request id>\tINFO\t<message>"
LAMBDA_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}T[\d:.]+Z\t[a-f0-9-]+\t(\w+)\t")
PLATFORM_PREFIXES = ("START RequestId:", "END RequestId:", "REPORT RequestId:")


def log_group_name(function_name: str) -> str:
    return f"/aws/lambda/{function_name}"


def parse_since(value: str) -> int:
    """
    Parse a lookback like ``30s``, ``5m``, ``1h`` or ``2d`` into seconds.

    Raises:
        ValidationError: If the value does not match ``<number><s|m|h|d>``
    """
    match = SINCE_PATTERN.match(value.strip())
    if not match:
        raise ValidationError("since", value, "Use a number followed by s, m, h or d (e.g. 5m)")
    return int(match.group(1)) * UNIT_SECONDS[match.group(2)]


def format_timestamp(timestamp_ms: int) -> str:
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.strftime("%H:%M:%S.") + f"{moment.microsecond // 1000:03d}"


def format_message(message: str) -> str | None:
    """
    Strip the runtime's line prefix from a log message.

    Levels other than INFO are kept as a ``[LEVEL]`` tag. Returns None for
    the platform's START, END and REPORT lines.
    """
    text = message.rstrip("\n")
    match = LAMBDA_PREFIX.match(text)
    if match:
        level = match.group(1)
        text = text[match.end() :]
        if level != "INFO":
            text = f"[{level}] {text}"
    if text.startswith(PLATFORM_PREFIXES):
        return None
    return text


async def fetch_events(client: Any, log_group: str, start_time_ms: int) -> list[dict[str, Any]]:
    """All events of ``log_group`` from ``start_time_ms`` on; empty if the group does not exist."""
    events: list[dict[str, Any]] = []
    kwargs: dict[str, Any] = {"logGroupName": log_group, "startTime": start_time_ms}
    while True:
        try:
            response = await client.filter_log_events(**kwargs)
        except ClientError as e:
            if is_not_found(e):
                logger.debug("Log group %s does not exist yet", log_group)
                return events
            raise
        events.extend(response.get("events", []))
        token = response.get("nextToken")
        if not token:
            return events
        kwargs["nextToken"] = token


class LogTail:
    """
    Incremental reader of one log group.

    Each :meth:`poll` returns the formatted lines that arrived since the
    previous poll.

    Example:
        tail = LogTail(logs_client, log_group_name("acme-dev-orders"), since_seconds=300)
        for line in await tail.poll():
            print(line)
    """

    def __init__(self, client: Any, log_group: str, since_seconds: int) -> None:
        self.client = client
        self.log_group = log_group
        self.start_time = int((time.time() - since_seconds) * 1000)

    async def poll(self) -> list[str]:
        lines: list[str] = []
        for event in await fetch_events(self.client, self.log_group, self.start_time):
            timestamp = event.get("timestamp") or 0
            message = format_message(event.get("message", ""))
            if message is not None:
                lines.append(f"{format_timestamp(timestamp)}  {message}")
            if timestamp:
                self.start_time = max(self.start_time, timestamp + 1)
        return lines
