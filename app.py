"""
Bus Proximity Notifier: FastAPI service

Purpose
=======
Receive start/stop/location events from college buses and send Web Push
notifications to students waiting for them: once when their bus starts, and
once when it comes within the nearby radius of their stop.

Run
---
$ uvicorn app:app --port 3000

Environment
-----------
- PYTHON >= 3.10
- pip install -e .
"""

from __future__ import annotations
from typing import Any, Awaitable, Callable, Dict, Optional
import asyncio, os
from datetime import datetime, timedelta, tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo

import httpx
from fastapi import Body, FastAPI, HTTPException, Request, Query
from fastapi.responses import PlainTextResponse

from coordinate_log import CoordinateLog
from fleet_state import FleetTracker
from push_dispatcher import PushDispatcher, WebPushTransport
from roster_client import RosterClient
from student_store import StudentStore, StudentStoreError
from vehicle_updates import (
    EventKind,
    VehicleUpdateError,
    VehicleUpdateHandler,
    parse_vehicle_update,
)

# ---------------------------
# Config
# ---------------------------
DATA_DIRS = [Path(p) for p in os.getenv("DATA_DIRS", "/data").split(":")]
PRIMARY_DATA_DIR = DATA_DIRS[0]
STUDENTS_PATH = Path(os.getenv("STUDENTS_PATH", str(PRIMARY_DATA_DIR / "students.json")))
BUS_LOG_DIR = Path(os.getenv("BUS_LOG_DIR", str(PRIMARY_DATA_DIR / "buses")))

NEARBY_RADIUS_KM = float(os.getenv("NEARBY_RADIUS_KM", "1.0"))
PUSH_TIMEOUT_S = float(os.getenv("PUSH_TIMEOUT_S", "5"))
REARM_ON_START = os.getenv("REARM_ON_START", "").strip().lower() in {"1", "true", "yes"}

# Daily fleet reset, local "HH:MM"; empty disables it
FLEET_RESET_AT = os.getenv("FLEET_RESET_AT", "").strip()
SERVICE_TZ_NAME = os.getenv("SERVICE_TZ", "Asia/Kolkata")

# Push notifications (Web Push)
VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY", "")
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY", "")
VAPID_SUBJECT = os.getenv("VAPID_SUBJECT", f"mailto:{os.getenv('EMAIL', 'transport@example.edu')}")

# ---------------------------
# State
# ---------------------------
push_transport = WebPushTransport(VAPID_PRIVATE_KEY, VAPID_SUBJECT)
update_handler = VehicleUpdateHandler(
    store=StudentStore(STUDENTS_PATH),
    fleet=FleetTracker(),
    dispatcher=PushDispatcher(push_transport, timeout_s=PUSH_TIMEOUT_S),
    coordinate_log=CoordinateLog(BUS_LOG_DIR),
    radius_km=NEARBY_RADIUS_KM,
    rearm_on_start=REARM_ON_START,
)


def parse_reset_time(value: str) -> Optional[tuple[int, int]]:
    if not value:
        return None
    hour_text, sep, minute_text = value.partition(":")
    if not sep:
        raise ValueError(f"expected HH:MM, got {value!r}")
    hour, minute = int(hour_text), int(minute_text)
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"invalid time of day {value!r}")
    return hour, minute


def seconds_until(hour: int, minute: int, now: datetime) -> float:
    """Seconds from ``now`` to the next local ``hour:minute``."""
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


async def populate_students(client: RosterClient) -> int:
    entries = await client.fetch_roster()
    inserted = await update_handler.replace_roster(entries)
    print(f"[roster] inserted {inserted} students")
    return inserted


async def fleet_reset_scheduler(
    handler: VehicleUpdateHandler,
    hour: int,
    minute: int,
    tz: tzinfo,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> None:
    """Clear the active fleet every day at local ``hour:minute``."""
    while True:
        await sleep(seconds_until(hour, minute, datetime.now(tz)))
        try:
            removed = await handler.reset_fleet()
            print(f"[fleet_reset] cleared {removed} active buses")
        except Exception as exc:
            print(f"[fleet_reset] error: {exc}")
        # step past the minute so the same slot is not hit twice
        await sleep(60)


# ---------------------------
# App
# ---------------------------
app = FastAPI(title="Bus Proximity Notifier")


@app.on_event("startup")
async def init_roster_client() -> None:
    try:
        app.state.roster_client = RosterClient.from_env()
    except RuntimeError as exc:
        print(f"[roster] client not configured: {exc}")
        app.state.roster_client = None


@app.on_event("shutdown")
async def shutdown_roster_client() -> None:
    client = getattr(app.state, "roster_client", None)
    if client is not None:
        await client.aclose()


@app.on_event("shutdown")
async def shutdown_fleet_reset() -> None:
    task: Optional[asyncio.Task] = getattr(app.state, "fleet_reset_task", None)
    app.state.fleet_reset_task = None
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@app.on_event("startup")
async def startup() -> None:
    try:
        update_handler.coordinate_log.recreate()
        print(f"[startup] coordinate log folder ready at {update_handler.coordinate_log.base_dir}")
    except OSError as exc:
        print(f"[startup] could not recreate coordinate logs: {exc}")

    client: Optional[RosterClient] = getattr(app.state, "roster_client", None)
    # Without a roster source the persisted roster is kept as-is.
    if client is not None:
        try:
            await update_handler.reset_roster()
            await populate_students(client)
        except (httpx.HTTPError, ValueError, StudentStoreError) as exc:
            print(f"[roster] initial load failed: {exc}")

    try:
        reset_at = parse_reset_time(FLEET_RESET_AT)
    except ValueError as exc:
        print(f"[fleet_reset] disabled: {exc}")
        reset_at = None
    if reset_at is None:
        return

    hour, minute = reset_at
    app.state.fleet_reset_task = asyncio.create_task(
        fleet_reset_scheduler(update_handler, hour, minute, ZoneInfo(SERVICE_TZ_NAME))
    )
    print(f"[fleet_reset] scheduled daily at {hour:02d}:{minute:02d} {SERVICE_TZ_NAME}")


# ---------------------------
# REST: Vehicle updates
# ---------------------------
async def _process_update(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid update payload")
    try:
        update = parse_vehicle_update(payload)
    except VehicleUpdateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        result = await update_handler.handle(update)
    except StudentStoreError as exc:
        print(f"[vehicle_update] store unavailable for {update.vehicle_id}: {exc}")
        raise HTTPException(status_code=503, detail="Student store unavailable") from exc
    return result.to_dict()


@app.post("/api/vehicles/update")
async def vehicle_update(request: Request):
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    return await _process_update(data)


@app.post("/nearbyfeature")
async def nearby_feature(payload: Dict[str, Any] = Body(...)):
    result = await _process_update({**payload, "eventKind": EventKind.LOCATION.value})
    return {"message": "Nearby push triggered", **result}


@app.get("/busstarted")
async def bus_started(bNo: Optional[str] = Query(None)):
    result = await _process_update({"bNo": bNo, "eventKind": EventKind.STARTED.value})
    return {"message": "Push triggered", **result}


@app.get("/busstopped")
async def bus_stopped(bNo: Optional[str] = Query(None)):
    result = await _process_update({"bNo": bNo, "eventKind": EventKind.STOPPED.value})
    return {"message": "Bus stopped", **result}


# ---------------------------
# REST: Maintenance & status
# ---------------------------
@app.get("/actions", response_class=PlainTextResponse)
async def actions(task: Optional[str] = Query(None)):
    if task == "resetdb":
        client: Optional[RosterClient] = getattr(app.state, "roster_client", None)
        if client is None:
            raise HTTPException(status_code=503, detail="Roster source not configured")
        try:
            # replace_all swaps the roster in one step; a failed fetch keeps the old one
            await populate_students(client)
        except (httpx.HTTPError, ValueError) as exc:
            raise HTTPException(status_code=502, detail=f"Roster load failed: {exc}") from exc
        except StudentStoreError as exc:
            raise HTTPException(status_code=503, detail="Student store unavailable") from exc
        return "Database reset and populated"
    if task == "resetlogs":
        update_handler.coordinate_log.recreate()
        return "Logs folder recreated"
    if task == "resetfleet":
        removed = await update_handler.reset_fleet()
        return f"Fleet cleared ({removed} buses)"
    return "No valid action specified"


@app.get("/api/fleet")
async def fleet_snapshot():
    active = update_handler.fleet.snapshot()
    return {"active": list(active), "count": len(active)}


@app.get("/api/status")
async def status():
    return {
        "students": await update_handler.store.count(),
        "notified": await update_handler.store.count_notified(),
        "active_buses": len(update_handler.fleet),
        "push_configured": bool(VAPID_PUBLIC_KEY and VAPID_PRIVATE_KEY),
        "nearby_radius_km": update_handler.radius_km,
    }


@app.get("/hey", response_class=PlainTextResponse)
async def hey():
    return "hey"
