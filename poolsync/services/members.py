"""Parsing of registry values into pool member sets."""
from __future__ import annotations

from typing import Tuple


def parse_members(raw: str | None) -> Tuple[str, ...]:
    """Split a comma-separated ``host:port`` list into an ordered set.

    Blank input, stray separators and surrounding whitespace (etcd values
    usually carry a trailing newline) are ignored. Duplicates keep their first
    position.
    """
    if not raw:
        return ()
    seen: dict[str, None] = {}
    for item in raw.split(","):
        item = item.strip()
        if item:
            seen.setdefault(item, None)
    return tuple(seen)


def format_members(members: Tuple[str, ...]) -> list[str]:
    """Render members as the brace-delimited tmsh list, one token per arg."""
    return ["{", *members, "}"]
