"""Bounding-box geofence used to pre-filter students near a bus."""

from __future__ import annotations

from dataclasses import dataclass
import math


EARTH_RADIUS_KM = 6371.0

# cos(lat) collapses towards the poles and the longitude span diverges
POLAR_LIMIT_DEG = 89.0


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    def contains(self, lat: float, lon: float) -> bool:
        """Inclusive on all four edges."""
        return self.min_lat <= lat <= self.max_lat and self.min_lon <= lon <= self.max_lon

    def to_dict(self) -> dict:
        return {
            "min_lat": self.min_lat,
            "max_lat": self.max_lat,
            "min_lon": self.min_lon,
            "max_lon": self.max_lon,
        }


def bounding_box(lat: float, lon: float, radius_km: float) -> BoundingBox:
    """Equirectangular box of ``radius_km`` around ``(lat, lon)``.

    Good enough for short radii away from the poles; not a geodesic circle.
    """
    if radius_km < 0:
        raise ValueError(f"radius must be non-negative, got {radius_km}")
    if abs(lat) > POLAR_LIMIT_DEG:
        raise ValueError(f"latitude {lat} is too close to a pole for a bounding box")
    delta_lat = (radius_km / EARTH_RADIUS_KM) * (180.0 / math.pi)
    delta_lon = delta_lat / math.cos(math.radians(lat))
    return BoundingBox(
        min_lat=lat - delta_lat,
        max_lat=lat + delta_lat,
        min_lon=lon - delta_lon,
        max_lon=lon + delta_lon,
    )


__all__ = ["BoundingBox", "EARTH_RADIUS_KM", "POLAR_LIMIT_DEG", "bounding_box"]
