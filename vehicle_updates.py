"""
Vehicle update handling.

Buses report three kinds of events through one inbound channel:

- ``started``  notify every student on the route, register the bus as running
- ``stopped``  deregister the bus
- ``new_loc``  notify students within the proximity radius who have not been
               notified yet, then append the position to the bus's log

Every state change runs under a single process-wide ``asyncio.Lock`` so two
location reports can never interleave their select -> push -> mark sequence.
Location pushes finish before the lock is released; the "started" push runs
as a background task after the lock is released, and the caller does not
wait for it.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set

from coordinate_log import CoordinateLog
from fleet_state import FleetTracker
from geofence import POLAR_LIMIT_DEG, bounding_box
from push_dispatcher import DispatchOutcome, PushDispatcher
from student_store import RosterEntry, Student, StudentStore, StudentStoreError, normalize_route_key


DEFAULT_NEARBY_RADIUS_KM = 1.0


class EventKind(str, Enum):
    STARTED = "started"
    STOPPED = "stopped"
    LOCATION = "new_loc"


class VehicleUpdateError(ValueError):
    """Inbound update is missing or has invalid fields."""


@dataclass(frozen=True)
class VehicleUpdate:
    vehicle_id: str
    kind: EventKind
    lat: Optional[float] = None
    lon: Optional[float] = None
    # bus number exactly as the caller sent it, echoed back in push payloads
    raw_id: Any = field(default=None, compare=False)

    @property
    def route_key(self) -> str:
        return normalize_route_key(self.vehicle_id) or self.vehicle_id


@dataclass
class UpdateResult:
    vehicle_id: str
    kind: EventKind
    route_key: str
    recipients: int = 0
    outcome: Optional[DispatchOutcome] = None
    fleet: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vehicle_id": self.vehicle_id,
            "event": self.kind.value,
            "route_key": self.route_key,
            "recipients": self.recipients,
            "outcome": self.outcome.to_dict() if self.outcome is not None else None,
            "fleet": self.fleet,
        }


def _coerce_coordinate(name: str, value: Any, limit: float) -> float:
    if isinstance(value, bool):
        raise VehicleUpdateError(f"{name} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise VehicleUpdateError(f"{name} must be a number") from None
    if not math.isfinite(number) or abs(number) > limit:
        raise VehicleUpdateError(f"{name} out of range: {value}")
    return number


def parse_vehicle_update(payload: Mapping[str, Any]) -> VehicleUpdate:
    """Validate a raw update. Accepts ``vehicleId``/``bNo`` and ``eventKind``/``event``."""
    vehicle_raw = payload.get("vehicleId")
    if vehicle_raw is None:
        vehicle_raw = payload.get("bNo")
    vehicle_id = str(vehicle_raw).strip() if vehicle_raw is not None else ""
    if not vehicle_id:
        raise VehicleUpdateError("Missing bus number")

    kind_raw = payload.get("eventKind") or payload.get("event")
    if not kind_raw:
        raise VehicleUpdateError("Missing event kind")
    try:
        kind = EventKind(str(kind_raw).strip().lower())
    except ValueError:
        raise VehicleUpdateError(f"Unknown event kind {kind_raw!r}") from None

    lat_raw = payload.get("lat")
    lon_raw = payload.get("lon")
    if kind is not EventKind.LOCATION:
        return VehicleUpdate(vehicle_id=vehicle_id, kind=kind, raw_id=vehicle_raw)
    if lat_raw is None or lon_raw is None:
        raise VehicleUpdateError("Missing bus number or coordinates")
    lat = _coerce_coordinate("lat", lat_raw, POLAR_LIMIT_DEG)
    lon = _coerce_coordinate("lon", lon_raw, 180.0)
    return VehicleUpdate(vehicle_id=vehicle_id, kind=kind, lat=lat, lon=lon, raw_id=vehicle_raw)


def _push_payload(title: str, update: VehicleUpdate) -> Dict[str, Any]:
    bus_no = update.raw_id if update.raw_id is not None else update.vehicle_id
    return {"title": title, "data": {"bNo": bus_no, "ts": int(time.time() * 1000)}}


class VehicleUpdateHandler:
    def __init__(
        self,
        store: StudentStore,
        fleet: FleetTracker,
        dispatcher: PushDispatcher,
        coordinate_log: CoordinateLog,
        radius_km: float = DEFAULT_NEARBY_RADIUS_KM,
        rearm_on_start: bool = False,
    ):
        if not math.isfinite(radius_km) or radius_km < 0:
            raise ValueError(f"nearby radius must be a non-negative number of km, got {radius_km}")
        self.store = store
        self.fleet = fleet
        self.dispatcher = dispatcher
        self.coordinate_log = coordinate_log
        self.radius_km = radius_km
        self.rearm_on_start = rearm_on_start
        # Single lock for the whole store; per-route locks would scale further.
        self.lock = asyncio.Lock()
        self._background: Set[asyncio.Task] = set()

    async def handle(self, update: VehicleUpdate) -> UpdateResult:
        if update.kind is EventKind.STARTED:
            return await self._handle_started(update)
        if update.kind is EventKind.STOPPED:
            return await self._handle_stopped(update)
        return await self._handle_location(update)

    async def _handle_started(self, update: VehicleUpdate) -> UpdateResult:
        route_key = update.route_key
        async with self.lock:
            if self.rearm_on_start:
                rearmed = await self.store.rearm_route(route_key)
                if rearmed:
                    print(f"[vehicle_update] re-armed {rearmed} students on route {route_key}")
            students = await self.store.list_for_route(route_key)
            self.fleet.mark_started(route_key)
            fleet = list(self.fleet.snapshot())
        print(f"[vehicle_update] bus {update.vehicle_id} started with {len(students)} students")
        if students:
            payload = _push_payload(f"Bus {update.vehicle_id} has started !!", update)
            self._spawn(self._notify_background(students, payload, f"busstarted-{update.vehicle_id}"))
        return UpdateResult(
            vehicle_id=update.vehicle_id,
            kind=update.kind,
            route_key=route_key,
            recipients=len(students),
            fleet=fleet,
        )

    async def _handle_stopped(self, update: VehicleUpdate) -> UpdateResult:
        route_key = update.route_key
        async with self.lock:
            was_active = self.fleet.mark_stopped(route_key)
            fleet = list(self.fleet.snapshot())
        if was_active:
            print(f"[vehicle_update] bus {update.vehicle_id} stopped")
        return UpdateResult(
            vehicle_id=update.vehicle_id,
            kind=update.kind,
            route_key=route_key,
            fleet=fleet,
        )

    async def _handle_location(self, update: VehicleUpdate) -> UpdateResult:
        if update.lat is None or update.lon is None:
            raise VehicleUpdateError("Missing bus number or coordinates")
        route_key = update.route_key
        box = bounding_box(update.lat, update.lon, self.radius_km)
        outcome: Optional[DispatchOutcome] = None
        async with self.lock:
            candidates = await self.store.select_candidates(route_key, box)
            if candidates:
                payload = _push_payload(f"Bus {update.vehicle_id} is nearby !!", update)
                outcome = await self.dispatcher.send(candidates, payload, f"nearby-{update.vehicle_id}")
                # Mark every candidate, delivered or not: one attempt per window.
                await self._mark_all(candidates)
            try:
                self.coordinate_log.append(route_key, update.lat, update.lon)
            except (OSError, ValueError) as exc:
                print(f"[vehicle_update] coordinate log append failed for {update.vehicle_id}: {exc}")
        return UpdateResult(
            vehicle_id=update.vehicle_id,
            kind=update.kind,
            route_key=route_key,
            recipients=len(candidates),
            outcome=outcome,
        )

    async def _mark_all(self, students: List[Student]) -> None:
        for student in students:
            try:
                await self.store.mark_notified(student.id)
            except StudentStoreError as exc:
                print(f"[vehicle_update] failed to mark student {student.id}: {exc}")

    async def _notify_background(self, students: List[Student], payload: Dict[str, Any], context: str) -> None:
        try:
            await self.dispatcher.send(students, payload, context)
        except Exception as exc:
            print(f"[vehicle_update] push loop error for {context}: {exc}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for any background pushes still in flight."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def replace_roster(self, entries: List[RosterEntry]) -> int:
        async with self.lock:
            return await self.store.replace_all(entries)

    async def reset_roster(self) -> int:
        async with self.lock:
            return await self.store.reset_all()

    async def reset_fleet(self) -> int:
        async with self.lock:
            return self.fleet.clear()


__all__ = [
    "DEFAULT_NEARBY_RADIUS_KM",
    "EventKind",
    "UpdateResult",
    "VehicleUpdate",
    "VehicleUpdateError",
    "VehicleUpdateHandler",
    "parse_vehicle_update",
]
