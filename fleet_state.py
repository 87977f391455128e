from __future__ import annotations

from typing import Optional, Set, Tuple

from student_store import normalize_route_key


class FleetTracker:
    """Set of route keys whose bus is currently running.

    Not locked on its own; mutations happen under the vehicle update lock.
    """

    def __init__(self) -> None:
        self._active: Set[str] = set()

    @staticmethod
    def _key(route_key: str) -> str:
        key = normalize_route_key(route_key)
        if key is None:
            raise ValueError("route key required")
        return key

    def mark_started(self, route_key: str) -> bool:
        """Returns True if the bus was not already active."""
        key = self._key(route_key)
        if key in self._active:
            return False
        self._active.add(key)
        return True

    def mark_stopped(self, route_key: str) -> bool:
        """Returns True if the bus was active."""
        key = self._key(route_key)
        if key not in self._active:
            return False
        self._active.discard(key)
        return True

    def is_active(self, route_key: Optional[str]) -> bool:
        return normalize_route_key(route_key) in self._active

    def snapshot(self) -> Tuple[str, ...]:
        return tuple(sorted(self._active))

    def clear(self) -> int:
        removed = len(self._active)
        self._active.clear()
        return removed

    def __len__(self) -> int:
        return len(self._active)


__all__ = ["FleetTracker"]
