"""Async client for the student roster kept in Supabase."""
from __future__ import annotations

import math
import os
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from student_store import RosterEntry, normalize_route_key


def parse_coordinates(value: Any) -> Tuple[float, float]:
    """Parse a ``"lat,lon"`` string into two floats."""
    if not isinstance(value, str):
        raise ValueError(f"coordinates must be a string, got {type(value).__name__}")
    parts = [p.strip() for p in value.split(",")]
    if len(parts) != 2:
        raise ValueError(f"expected 'lat,lon', got {value!r}")
    lat, lon = float(parts[0]), float(parts[1])
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise ValueError(f"non-finite coordinates {value!r}")
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        raise ValueError(f"coordinates out of range {value!r}")
    return lat, lon


def parse_roster(records: Iterable[Dict[str, Any]]) -> Tuple[List[RosterEntry], int]:
    """Turn raw roster rows into entries, skipping malformed ones.

    Returns ``(entries, skipped)``.
    """
    entries: List[RosterEntry] = []
    skipped = 0
    for record in records:
        if not isinstance(record, dict):
            skipped += 1
            continue
        subscription = record.get("subscription")
        route_key = normalize_route_key(record.get("clgNo"))
        if not subscription or route_key is None:
            skipped += 1
            continue
        try:
            lat, lon = parse_coordinates(record.get("coordinates"))
        except ValueError:
            skipped += 1
            continue
        entries.append(RosterEntry(subscription=subscription, route_key=route_key, lat=lat, lon=lon))
    return entries, skipped


class RosterClient:
    """Reads the ``Students`` table through Supabase's REST interface."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str = "Students",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._table = table
        self._client = client

    @classmethod
    def from_env(cls) -> "RosterClient":
        """Build a ``RosterClient`` from ``SUPABASE_URL`` and ``SUPABASE_ANON_KEY``."""
        base_url = (os.getenv("SUPABASE_URL") or "").strip()
        api_key = (os.getenv("SUPABASE_ANON_KEY") or "").strip()
        table = (os.getenv("ROSTER_TABLE") or "Students").strip()

        missing: List[str] = []
        if not base_url:
            missing.append("SUPABASE_URL")
        if not api_key:
            missing.append("SUPABASE_ANON_KEY")
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")
        return cls(base_url=base_url, api_key=api_key, table=table)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch_records(self) -> List[Dict[str, Any]]:
        client = await self._ensure_client()
        resp = await client.get(
            f"{self._base_url}/rest/v1/{self._table}",
            params={
                "select": "subscription,clgNo,coordinates,id",
                "subscription": "not.is.null",
                "clgNo": "not.is.null",
            },
            headers={
                "apikey": self._api_key,
                "Authorization": f"Bearer {self._api_key}",
                "Accept": "application/json",
            },
        )
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, list):
            raise ValueError("unexpected roster payload")
        return data

    async def fetch_roster(self) -> List[RosterEntry]:
        records = await self.fetch_records()
        entries, skipped = parse_roster(records)
        if skipped:
            print(f"[roster] skipped {skipped} malformed records")
        return entries


__all__ = ["RosterClient", "parse_coordinates", "parse_roster"]
