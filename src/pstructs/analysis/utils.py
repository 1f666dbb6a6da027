from __future__ import annotations

import sys
from typing import Callable, Optional


Logger = Callable[[str], None]


def _decode_attr(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    if isinstance(value, str):
        return value
    return str(value)


def _attr_int(attr) -> Optional[int]:
    if attr is None:
        return None
    value = attr.value
    if isinstance(value, int):
        return value
    return None


def _sanitize_identifier(name: str) -> str:
    if not name:
        return name
    cleaned = []
    for ch in name:
        if ch.isalnum() or ch == "_":
            cleaned.append(ch)
        else:
            cleaned.append("_")
    out = "".join(cleaned)
    if out[0].isdigit():
        out = "_" + out
    return out


def make_logger(verbose: Optional[set[str]], channel: str) -> Optional[Logger]:
    if not verbose or (channel not in verbose and "all" not in verbose):
        return None

    def _log(msg: str, *, _channel: str = channel) -> None:
        print(f"[pstructs:{_channel}] {msg}", file=sys.stderr)

    return _log


def parse_channels(value: str) -> set[str]:
    return {item.strip() for item in value.split(",") if item.strip()}
