from __future__ import annotations

from typing import Iterable


def next_port(taken: Iterable[int], port_from: int, port_to: int) -> int | None:
    """First free port in [port_from, port_to), or None when the range is full."""
    used = set(taken)
    for port in range(port_from, port_to):
        if port not in used:
            return port
    return None
