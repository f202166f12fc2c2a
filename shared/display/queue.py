"""
In-process priority display queue.

Stands in for the overlay-side queue when none is injected. Higher
priority items are served first; equal priorities keep arrival order.
Durations are the consumer's concern and are never added here.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from shared.logging.logger import get_logger

log = get_logger("display.queue")

DEFAULT_TYPE_PRIORITIES: Dict[str, int] = {
    "chat": 1,
    "greeting": 2,
    "farewell": 2,
    "command": 3,
}


class QueueFullError(RuntimeError):
    """The display queue is at `max_queue_size`."""


class DisplayQueue:
    def __init__(self, *, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._items: List[Dict[str, Any]] = []
        self._available = asyncio.Event()

    @classmethod
    def from_config(cls, display_cfg: Dict[str, Any]) -> "DisplayQueue":
        return cls(max_queue_size=int(display_cfg.get("maxQueueSize", 100)))

    def add_item(self, item: Dict[str, Any]) -> int:
        """
        Insert `item` behind every item of equal or higher priority and
        return its position.
        """
        if not isinstance(item, dict) or not item.get("type"):
            raise ValueError("Display item requires a type")
        if self.max_queue_size and len(self._items) >= self.max_queue_size:
            raise QueueFullError(f"Queue at capacity ({self.max_queue_size})")

        if item.get("priority") is None:
            item = {**item, "priority": DEFAULT_TYPE_PRIORITIES.get(item["type"], 0)}

        position = len(self._items)
        for index, queued in enumerate(self._items):
            if queued["priority"] < item["priority"]:
                position = index
                break

        self._items.insert(position, item)
        self._available.set()
        log.debug(
            f"[DisplayQueue] Added {item['type']} (priority {item['priority']}) "
            f"at position {position}; length {len(self._items)}"
        )
        return position

    def get_queue_length(self) -> int:
        return len(self._items)

    def peek(self) -> Optional[Dict[str, Any]]:
        return self._items[0] if self._items else None

    def get_next(self) -> Optional[Dict[str, Any]]:
        if not self._items:
            return None
        item = self._items.pop(0)
        if not self._items:
            self._available.clear()
        return item

    async def wait_next(self) -> Dict[str, Any]:
        while not self._items:
            await self._available.wait()
        return self.get_next()

    def clear(self) -> int:
        dropped = len(self._items)
        self._items.clear()
        self._available.clear()
        if dropped:
            log.info(f"[DisplayQueue] Cleared {dropped} item(s)")
        return dropped

    def snapshot(self) -> List[Dict[str, Any]]:
        return [dict(item) for item in self._items]


__all__ = ["DisplayQueue", "QueueFullError", "DEFAULT_TYPE_PRIORITIES"]
