from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import List, Tuple


_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9_.-]")
LOG_SUFFIX = "_logs.txt"


class CoordinateLog:
    """Append-only ``lat,lon`` trail per vehicle, one text file each."""

    def __init__(self, base_dir: Path):
        self.base_dir = base_dir

    def _file_for_vehicle(self, vehicle_id: str) -> Path:
        safe = _UNSAFE_CHARS_RE.sub("_", str(vehicle_id).strip()).lstrip(".")
        if not safe:
            raise ValueError(f"invalid vehicle id {vehicle_id!r}")
        return self.base_dir / f"{safe}{LOG_SUFFIX}"

    def append(self, vehicle_id: str, lat: float, lon: float) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        path = self._file_for_vehicle(vehicle_id)
        with path.open("a") as f:
            f.write(f"{lat},{lon}\n")

    def read(self, vehicle_id: str) -> List[Tuple[float, float]]:
        path = self._file_for_vehicle(vehicle_id)
        if not path.exists():
            return []
        points: List[Tuple[float, float]] = []
        with path.open("r") as f:
            for line in f:
                parts = line.strip().split(",")
                if len(parts) != 2:
                    continue
                try:
                    points.append((float(parts[0]), float(parts[1])))
                except ValueError:
                    continue
        return points

    def vehicle_ids(self) -> List[str]:
        if not self.base_dir.exists():
            return []
        return sorted(p.name[: -len(LOG_SUFFIX)] for p in self.base_dir.glob(f"*{LOG_SUFFIX}"))

    def recreate(self) -> int:
        """Delete every log and start with an empty folder. Returns files removed."""
        removed = len(self.vehicle_ids())
        if self.base_dir.exists():
            shutil.rmtree(self.base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        return removed


__all__ = ["CoordinateLog"]
