"""Control API of the scanner for starting a block range."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import Any
from urllib.parse import parse_qs

logger = logging.getLogger(__name__)

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_DECIMAL = re.compile(r"[+-]?[0-9]+")


def _message(text: str) -> bytes:
    return json.dumps({"message": text}, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


def _parse_int64(value: str) -> int:
    if not _DECIMAL.fullmatch(value):
        raise ValueError(f"invalid integer: {value!r}")
    number = int(value)
    if not _INT64_MIN <= number <= _INT64_MAX:
        raise ValueError(f"integer out of range: {value!r}")
    return number


def _first(query: Mapping[str, Any], key: str) -> str:
    value = query.get(key, "")
    if isinstance(value, (list, tuple)):
        return value[0] if value else ""
    return value


class ScannerAPI:
    """Lets an operator start the block feed over a given range."""

    def __init__(self, feed: Any) -> None:
        self.feed = feed

    def name(self) -> str:
        return "scanner-api"

    def start_blocks(self, query: str | Mapping[str, Any]) -> tuple[int, bytes]:
        """Start the feed over ?start, ?end and ?rate; return status and JSON body."""
        if self.feed.is_started():
            return 200, _message("already started")

        if isinstance(query, str):
            query = parse_qs(query, keep_blank_values=True)

        try:
            start = _parse_int64(_first(query, "start"))
        except ValueError:
            return 400, _message("?start is required and must be integer")
        try:
            end = _parse_int64(_first(query, "end"))
        except ValueError:
            return 400, _message("?end is required and must be integer")
        try:
            rate = _parse_int64(_first(query, "rate"))
        except ValueError:
            return 400, _message("?end is required and must be integer")

        self.feed.start_range(start, end, rate)
        return 200, _message("ok")