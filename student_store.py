"""Student roster storage backing proximity notifications.

Every student waits for one bus route and carries a ``notified`` flag that
guarantees at most one "bus is nearby" push per proximity window. The roster
is always replaced wholesale; ids are reassigned from 1 on every load.
"""

from __future__ import annotations

import asyncio
import json
import math
from dataclasses import dataclass, asdict, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from geofence import BoundingBox


class StudentStoreError(RuntimeError):
    """The backing storage could not be written."""


def normalize_route_key(value: Any) -> Optional[str]:
    """Canonical route key; integral route numbers render as ``"<n>.0"``.

    The roster producer stores bus numbers as ``"12.0"`` while buses report
    ``12`` or ``"12"``; both sides go through this function before matching.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        if math.isfinite(number) and number.is_integer():
            return f"{int(number)}.0"
        return str(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return text
    if math.isfinite(number) and number.is_integer():
        return f"{int(number)}.0"
    return text


@dataclass
class RosterEntry:
    """A student as delivered by the roster source, before an id is assigned."""
    subscription: Any
    route_key: str
    lat: Optional[float]
    lon: Optional[float]


@dataclass
class Student:
    id: int
    subscription: Any  # opaque push subscription, JSON text or mapping
    route_key: str
    lat: Optional[float] = None
    lon: Optional[float] = None
    notified: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class StudentStore:
    """In-memory student table, optionally mirrored to a JSON file.

    All reads and writes take the store lock, so a concurrent select sees the
    roster either entirely before or entirely after a reset.
    """

    def __init__(self, path: Optional[Path] = None):
        self._path = path
        self._lock = asyncio.Lock()
        self._students: Dict[int, Student] = {}
        self._load_sync()

    def _load_sync(self) -> None:
        self._students.clear()
        if self._path is None:
            return
        if not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            print(f"[student_store] ignoring unreadable {self._path}: {exc}")
            return
        entries = raw.get("students", []) if isinstance(raw, dict) else []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            student_id = entry.get("id")
            route_key = normalize_route_key(entry.get("route_key"))
            if not isinstance(student_id, int) or route_key is None:
                continue
            if entry.get("subscription") is None:
                continue
            self._students[student_id] = Student(
                id=student_id,
                subscription=entry["subscription"],
                route_key=route_key,
                lat=entry.get("lat"),
                lon=entry.get("lon"),
                notified=bool(entry.get("notified", False)),
            )

    def _serialise_state(self) -> str:
        data = {
            "students": [s.to_dict() for s in sorted(self._students.values(), key=lambda s: s.id)],
            "updated_at": _now_iso(),
        }
        return json.dumps(data, indent=2, sort_keys=True)

    async def _persist(self) -> None:
        if self._path is None:
            return
        payload = self._serialise_state()
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp_path.write_text(payload)
            tmp_path.replace(self._path)
        except OSError as exc:
            raise StudentStoreError(f"failed to persist {self._path}: {exc}") from exc

    async def replace_all(self, entries: Iterable[RosterEntry]) -> int:
        """Swap in a fresh roster. Returns the number of students stored."""
        fresh: Dict[int, Student] = {}
        for student_id, entry in enumerate(entries, start=1):
            fresh[student_id] = Student(
                id=student_id,
                subscription=entry.subscription,
                route_key=entry.route_key,
                lat=entry.lat,
                lon=entry.lon,
            )
        async with self._lock:
            previous = self._students
            self._students = fresh
            try:
                await self._persist()
            except StudentStoreError:
                self._students = previous
                raise
            return len(fresh)

    async def reset_all(self) -> int:
        """Drop every student. Returns the number removed."""
        async with self._lock:
            previous = self._students
            self._students = {}
            try:
                await self._persist()
            except StudentStoreError:
                self._students = previous
                raise
            return len(previous)

    async def select_candidates(self, route_key: str, box: BoundingBox) -> List[Student]:
        """Un-notified students on ``route_key`` whose position lies in ``box``."""
        key = normalize_route_key(route_key)
        async with self._lock:
            matches = [
                replace(s)
                for s in self._students.values()
                if s.route_key == key
                and not s.notified
                and s.lat is not None
                and s.lon is not None
                and box.contains(s.lat, s.lon)
            ]
        matches.sort(key=lambda s: s.id)
        return matches

    async def list_for_route(self, route_key: str) -> List[Student]:
        key = normalize_route_key(route_key)
        async with self._lock:
            matches = [replace(s) for s in self._students.values() if s.route_key == key]
        matches.sort(key=lambda s: s.id)
        return matches

    async def mark_notified(self, student_id: int) -> bool:
        """Set the notified flag. Returns False for an unknown id."""
        async with self._lock:
            student = self._students.get(student_id)
            if student is None:
                return False
            if student.notified:
                return True
            student.notified = True
            try:
                await self._persist()
            except StudentStoreError:
                student.notified = False
                raise
            return True

    async def rearm_route(self, route_key: str) -> int:
        """Clear the notified flag for every student on a route."""
        key = normalize_route_key(route_key)
        async with self._lock:
            rearmed = [s for s in self._students.values() if s.route_key == key and s.notified]
            if not rearmed:
                return 0
            for student in rearmed:
                student.notified = False
            try:
                await self._persist()
            except StudentStoreError:
                for student in rearmed:
                    student.notified = True
                raise
            return len(rearmed)

    async def get(self, student_id: int) -> Optional[Student]:
        async with self._lock:
            student = self._students.get(student_id)
            return replace(student) if student is not None else None

    async def count(self) -> int:
        async with self._lock:
            return len(self._students)

    async def count_notified(self) -> int:
        async with self._lock:
            return sum(1 for s in self._students.values() if s.notified)


__all__ = [
    "RosterEntry",
    "Student",
    "StudentStore",
    "StudentStoreError",
    "normalize_route_key",
]
