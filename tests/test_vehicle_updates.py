import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Set

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from coordinate_log import CoordinateLog  # noqa: E402
from fleet_state import FleetTracker  # noqa: E402
from push_dispatcher import PushDispatcher  # noqa: E402
from student_store import RosterEntry, StudentStore, StudentStoreError  # noqa: E402
from vehicle_updates import (  # noqa: E402
    EventKind,
    VehicleUpdate,
    VehicleUpdateError,
    VehicleUpdateHandler,
    parse_vehicle_update,
)


class RecordingTransport:
    def __init__(self, failing: Set[str] = frozenset(), delay: float = 0.0):
        self.failing = set(failing)
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def send(self, subscription_info: Dict[str, Any], data: str) -> None:
        self.calls.append({"endpoint": subscription_info["endpoint"], "data": json.loads(data)})
        if self.delay:
            await asyncio.sleep(self.delay)
        if subscription_info["endpoint"] in self.failing:
            raise RuntimeError("410 Gone")


def _entry(route: str, lat: float, lon: float, name: str) -> RosterEntry:
    return RosterEntry(
        subscription=json.dumps({"endpoint": f"https://push.example/{name}", "keys": {}}),
        route_key=f"{route}.0",
        lat=lat,
        lon=lon,
    )


def _handler(tmp_path, entries, transport=None, **kwargs):
    transport = transport or RecordingTransport()
    handler = VehicleUpdateHandler(
        store=StudentStore(),
        fleet=FleetTracker(),
        dispatcher=PushDispatcher(transport),
        coordinate_log=CoordinateLog(tmp_path / "buses"),
        **kwargs,
    )
    asyncio.run(handler.replace_roster(entries))
    return handler, transport


def _location(vehicle: str, lat: float, lon: float) -> VehicleUpdate:
    return VehicleUpdate(vehicle_id=vehicle, kind=EventKind.LOCATION, lat=lat, lon=lon)


# ---------------------------
# Validation
# ---------------------------
def test_parse_accepts_legacy_and_new_field_names():
    update = parse_vehicle_update({"bNo": 7, "eventKind": "new_loc", "lat": "12.9", "lon": 77.6})
    assert update == VehicleUpdate(vehicle_id="7", kind=EventKind.LOCATION, lat=12.9, lon=77.6)
    assert update.route_key == "7.0"

    started = parse_vehicle_update({"vehicleId": "3", "event": "STARTED"})
    assert started.kind is EventKind.STARTED
    assert started.lat is None


@pytest.mark.parametrize(
    "payload",
    [
        {"eventKind": "started"},
        {"vehicleId": "  ", "eventKind": "started"},
        {"vehicleId": "7"},
        {"vehicleId": "7", "eventKind": "teleported"},
        {"vehicleId": "7", "eventKind": "new_loc", "lat": 12.9},
        {"vehicleId": "7", "eventKind": "new_loc", "lat": "north", "lon": 77.6},
        {"vehicleId": "7", "eventKind": "new_loc", "lat": 89.95, "lon": 77.6},
        {"vehicleId": "7", "eventKind": "new_loc", "lat": 12.9, "lon": 181},
        {"vehicleId": "7", "eventKind": "new_loc", "lat": True, "lon": 77.6},
    ],
)
def test_parse_rejects_invalid_payloads(payload):
    with pytest.raises(VehicleUpdateError):
        parse_vehicle_update(payload)


# ---------------------------
# Location reports
# ---------------------------
def test_nearby_student_is_notified_once(tmp_path):
    handler, transport = _handler(tmp_path, [_entry("7", 12.90, 77.60, "s")])

    first = asyncio.run(handler.handle(_location("7", 12.901, 77.601)))
    assert first.recipients == 1
    assert first.outcome.to_dict() == {"success_count": 1, "fail_count": 0}
    assert len(transport.calls) == 1
    assert transport.calls[0]["data"]["title"] == "Bus 7 is nearby !!"
    assert transport.calls[0]["data"]["data"]["bNo"] == "7"
    assert asyncio.run(handler.store.get(1)).notified is True

    second = asyncio.run(handler.handle(_location("7", 12.901, 77.601)))
    assert second.recipients == 0
    assert second.outcome is None
    assert len(transport.calls) == 1

    assert handler.coordinate_log.read("7.0") == [(12.901, 77.601), (12.901, 77.601)]


def test_students_outside_radius_or_on_other_routes_are_ignored(tmp_path):
    handler, transport = _handler(
        tmp_path,
        [_entry("7", 12.95, 77.60, "far"), _entry("8", 12.90, 77.60, "other-route")],
    )
    result = asyncio.run(handler.handle(_location("7", 12.90, 77.60)))
    assert result.recipients == 0
    assert transport.calls == []


def test_failed_delivery_still_marks_student(tmp_path):
    handler, transport = _handler(
        tmp_path,
        [_entry("7", 12.90, 77.60, "ok"), _entry("7", 12.90, 77.60, "gone")],
        transport=RecordingTransport(failing={"https://push.example/gone"}),
    )
    result = asyncio.run(handler.handle(_location("7", 12.90, 77.60)))
    assert result.outcome.success_count == 1
    assert result.outcome.fail_count == 1
    assert asyncio.run(handler.store.count_notified()) == 2


def test_mark_failure_for_one_student_does_not_stop_the_batch(tmp_path, monkeypatch):
    handler, _ = _handler(tmp_path, [_entry("7", 12.90, 77.60, "a"), _entry("7", 12.90, 77.60, "b")])
    original = handler.store.mark_notified

    async def flaky_mark(student_id):
        if student_id == 1:
            raise StudentStoreError("disk full")
        return await original(student_id)

    monkeypatch.setattr(handler.store, "mark_notified", flaky_mark)
    asyncio.run(handler.handle(_location("7", 12.90, 77.60)))
    assert asyncio.run(handler.store.get(1)).notified is False
    assert asyncio.run(handler.store.get(2)).notified is True


def test_select_failure_releases_lock_and_marks_nothing(tmp_path, monkeypatch):
    handler, transport = _handler(tmp_path, [_entry("7", 12.90, 77.60, "a")])

    async def broken_select(route_key, box):
        raise StudentStoreError("store offline")

    monkeypatch.setattr(handler.store, "select_candidates", broken_select)
    with pytest.raises(StudentStoreError):
        asyncio.run(handler.handle(_location("7", 12.90, 77.60)))
    assert not handler.lock.locked()
    assert transport.calls == []
    assert asyncio.run(handler.store.count_notified()) == 0
    assert handler.coordinate_log.read("7.0") == []

    monkeypatch.undo()
    result = asyncio.run(handler.handle(_location("7", 12.90, 77.60)))
    assert result.recipients == 1


def test_concurrent_location_reports_never_double_notify(tmp_path):
    entries = [_entry("7", 12.90, 77.60, f"s{i}") for i in range(6)]
    handler, transport = _handler(tmp_path, entries, transport=RecordingTransport(delay=0.01))

    async def main():
        return await asyncio.gather(
            handler.handle(_location("7", 12.900, 77.600)),
            handler.handle(_location("7", 12.9005, 77.6005)),
            handler.handle(_location("7", 12.901, 77.601)),
        )

    results = asyncio.run(main())

    assert sum(r.recipients for r in results) == 6
    endpoints = [c["endpoint"] for c in transport.calls]
    assert len(endpoints) == len(set(endpoints)) == 6
    assert asyncio.run(handler.store.count_notified()) == 6


def test_concurrent_reports_for_different_buses_keep_all_marks(tmp_path):
    entries = [_entry("7", 12.90, 77.60, f"seven-{i}") for i in range(3)]
    entries += [_entry("9", 12.90, 77.60, f"nine-{i}") for i in range(3)]
    handler, transport = _handler(tmp_path, entries, transport=RecordingTransport(delay=0.01))

    async def main():
        return await asyncio.gather(
            handler.handle(_location("7", 12.90, 77.60)),
            handler.handle(_location("9", 12.90, 77.60)),
        )

    results = asyncio.run(main())
    assert [r.recipients for r in results] == [3, 3]
    assert asyncio.run(handler.store.count_notified()) == 6
    assert len(transport.calls) == 6


# ---------------------------
# Started / stopped
# ---------------------------
def test_started_notifies_route_and_registers_bus(tmp_path):
    handler, transport = _handler(
        tmp_path,
        [_entry("3", 12.90, 77.60, "a"), _entry("3", 20.0, 70.0, "b"), _entry("4", 12.90, 77.60, "c")],
    )

    async def main():
        result = await handler.handle(VehicleUpdate(vehicle_id="3", kind=EventKind.STARTED))
        await handler.drain()
        return result

    result = asyncio.run(main())

    assert result.recipients == 2
    assert result.fleet == ["3.0"]
    assert len(transport.calls) == 2
    assert {c["data"]["title"] for c in transport.calls} == {"Bus 3 has started !!"}
    assert handler.fleet.snapshot() == ("3.0",)

    stop = VehicleUpdate(vehicle_id="3", kind=EventKind.STOPPED)
    assert asyncio.run(handler.handle(stop)).fleet == []
    assert asyncio.run(handler.handle(stop)).fleet == []
    assert handler.fleet.snapshot() == ()
    assert len(transport.calls) == 2


def test_started_ignores_notified_flag_and_does_not_rearm_by_default(tmp_path):
    handler, transport = _handler(tmp_path, [_entry("3", 12.90, 77.60, "a")])
    asyncio.run(handler.store.mark_notified(1))

    async def main():
        await handler.handle(VehicleUpdate(vehicle_id="3", kind=EventKind.STARTED))
        await handler.drain()

    asyncio.run(main())
    assert len(transport.calls) == 1
    assert asyncio.run(handler.store.get(1)).notified is True


def test_started_rearms_route_when_enabled(tmp_path):
    handler, _ = _handler(tmp_path, [_entry("3", 12.90, 77.60, "a")], rearm_on_start=True)
    asyncio.run(handler.store.mark_notified(1))

    async def main():
        await handler.handle(VehicleUpdate(vehicle_id="3", kind=EventKind.STARTED))
        await handler.drain()

    asyncio.run(main())
    assert asyncio.run(handler.store.get(1)).notified is False


def test_started_response_does_not_wait_for_push(tmp_path):
    handler, transport = _handler(
        tmp_path, [_entry("3", 12.90, 77.60, "a")], transport=RecordingTransport(delay=0.05)
    )

    async def main():
        await handler.handle(VehicleUpdate(vehicle_id="3", kind=EventKind.STARTED))
        pending = len(handler._background)
        await handler.drain()
        return pending

    assert asyncio.run(main()) == 1
    assert len(transport.calls) == 1


def test_reset_fleet_clears_active_buses(tmp_path):
    handler, _ = _handler(tmp_path, [])
    asyncio.run(handler.handle(VehicleUpdate(vehicle_id="1", kind=EventKind.STARTED)))
    asyncio.run(handler.handle(VehicleUpdate(vehicle_id="2", kind=EventKind.STARTED)))
    assert asyncio.run(handler.reset_fleet()) == 2
    assert handler.fleet.snapshot() == ()


def test_location_log_uses_one_file_per_bus(tmp_path):
    handler, _ = _handler(tmp_path, [])
    asyncio.run(handler.handle(parse_vehicle_update({"bNo": 7, "eventKind": "new_loc", "lat": 1.0, "lon": 2.0})))
    asyncio.run(handler.handle(parse_vehicle_update({"bNo": "7.0", "eventKind": "new_loc", "lat": 3.0, "lon": 4.0})))

    assert handler.coordinate_log.vehicle_ids() == ["7.0"]
    assert handler.coordinate_log.read("7.0") == [(1.0, 2.0), (3.0, 4.0)]


def test_push_payload_echoes_bus_number_as_sent(tmp_path):
    handler, transport = _handler(tmp_path, [_entry("7", 12.90, 77.60, "a"), _entry("3", 1.0, 1.0, "b")])

    asyncio.run(handler.handle(parse_vehicle_update({"bNo": 7, "eventKind": "new_loc", "lat": 12.90, "lon": 77.60})))

    async def start():
        await handler.handle(parse_vehicle_update({"vehicleId": "3", "eventKind": "started"}))
        await handler.drain()

    asyncio.run(start())

    assert transport.calls[0]["data"]["data"]["bNo"] == 7
    assert transport.calls[1]["data"]["data"]["bNo"] == "3"


@pytest.mark.parametrize("radius_km", [-1.0, float("nan"), float("inf")])
def test_handler_rejects_invalid_radius(tmp_path, radius_km):
    with pytest.raises(ValueError):
        VehicleUpdateHandler(
            store=StudentStore(),
            fleet=FleetTracker(),
            dispatcher=PushDispatcher(RecordingTransport()),
            coordinate_log=CoordinateLog(tmp_path / "buses"),
            radius_km=radius_km,
        )
