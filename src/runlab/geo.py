"""
geo.py  –  Geo / Time Math Kernel
=================================
Pure functions, no state:

  • haversine great-circle distance (scalar + vectorised numpy variant)
  • bounding box, bounding-box overlap ratio, arithmetic centroid
  • pace / duration formatting
  • km ↔ mile conversion – the ONLY place units change; everything else
    works in kilometres and minutes.
"""

from __future__ import annotations

import math
from typing import NamedTuple, Optional, Sequence

import numpy as np

from runlab.config.settings import KM_PER_MILE

EARTH_RADIUS_KM = 6371.0


class LatLon(NamedTuple):
    lat: float
    lon: float


class Bounds(NamedTuple):
    """Axis-aligned lat/lon box."""
    min_lat: float
    min_lon: float
    max_lat: float
    max_lon: float

    @classmethod
    def from_corners(cls, corners) -> "Bounds":
        """Accepts ``[[min_lat, min_lon], [max_lat, max_lon]]``."""
        (min_lat, min_lon), (max_lat, max_lon) = corners
        return cls(float(min_lat), float(min_lon), float(max_lat), float(max_lon))

    def to_corners(self) -> list[list[float]]:
        return [[self.min_lat, self.min_lon], [self.max_lat, self.max_lon]]

    @property
    def area(self) -> float:
        return (self.max_lat - self.min_lat) * (self.max_lon - self.min_lon)


# ─────────────────────────────────────────────────────────────────────────────
# HAVERSINE
# ─────────────────────────────────────────────────────────────────────────────

def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2))
         * math.sin(d_lon / 2) ** 2)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def segment_distances_km(lats: Sequence[float], lons: Sequence[float]) -> np.ndarray:
    """
    Vectorised haversine between consecutive points.

    Returns an array of len(lats) with 0.0 for the first point, so that
    ``np.cumsum`` of the result is the cumulative distance-from-start.
    """
    lat = np.radians(np.asarray(lats, dtype=float))
    lon = np.radians(np.asarray(lons, dtype=float))
    if lat.size == 0:
        return np.zeros(0)
    d_lat = np.diff(lat)
    d_lon = np.diff(lon)
    a = np.sin(d_lat / 2) ** 2 + np.cos(lat[:-1]) * np.cos(lat[1:]) * np.sin(d_lon / 2) ** 2
    seg = EARTH_RADIUS_KM * 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))
    return np.concatenate(([0.0], seg))


# ─────────────────────────────────────────────────────────────────────────────
# BOUNDS & CENTROID
# ─────────────────────────────────────────────────────────────────────────────

def compute_bounds(lats: Sequence[float], lons: Sequence[float]) -> Optional[Bounds]:
    if len(lats) == 0:
        return None
    return Bounds(min(lats), min(lons), max(lats), max(lons))


def compute_center(lats: Sequence[float], lons: Sequence[float]) -> Optional[LatLon]:
    """Arithmetic mean of lat/lon – fine at city scale, wrong across the antimeridian."""
    if len(lats) == 0:
        return None
    return LatLon(sum(lats) / len(lats), sum(lons) / len(lons))


def bounds_overlap_ratio(b1: Optional[Bounds], b2: Optional[Bounds]) -> float:
    """
    Intersection area ÷ area of the smaller box, in [0, 1].

    Degenerate boxes (zero area, e.g. a dead-straight N–S track) have no
    meaningful ratio: identical boxes count as full overlap, anything else 0.
    """
    if b1 is None or b2 is None:
        return 0.0
    overlap_lat = max(0.0, min(b1.max_lat, b2.max_lat) - max(b1.min_lat, b2.min_lat))
    overlap_lon = max(0.0, min(b1.max_lon, b2.max_lon) - max(b1.min_lon, b2.min_lon))
    smaller = min(b1.area, b2.area)
    if smaller <= 0:
        return 1.0 if b1 == b2 else 0.0
    return min(1.0, (overlap_lat * overlap_lon) / smaller)


def elevation_gain_m(elevations: Sequence[float]) -> float:
    """Sum of positive elevation deltas (no smoothing)."""
    if len(elevations) < 2:
        return 0.0
    deltas = np.diff(np.asarray(elevations, dtype=float))
    return float(deltas[deltas > 0].sum())


def location_name(point: Optional[LatLon]) -> str:
    """Coordinate-rounding placeholder for reverse geocoding."""
    if point is None:
        return "Unknown area"
    lat = round(point.lat, 2)
    lon = round(point.lon, 2)
    lat_dir = "N" if lat >= 0 else "S"
    lon_dir = "E" if lon >= 0 else "W"
    return f"Area {abs(lat):.2f}°{lat_dir}, {abs(lon):.2f}°{lon_dir}"


# ─────────────────────────────────────────────────────────────────────────────
# FORMATTING
# ─────────────────────────────────────────────────────────────────────────────

def _min_sec(minutes: float) -> tuple[int, int]:
    mins = int(math.floor(minutes))
    secs = int(round((minutes - mins) * 60))
    if secs == 60:
        mins, secs = mins + 1, 0
    return mins, secs


def format_pace(min_per_unit: Optional[float]) -> str:
    """5.5 → '5:30'. Missing/zero/infinite pace → '--:--'."""
    if not min_per_unit or math.isinf(min_per_unit) or math.isnan(min_per_unit):
        return "--:--"
    mins, secs = _min_sec(min_per_unit)
    return f"{mins}:{secs:02d}"


def format_duration(minutes: Optional[float]) -> str:
    """Minutes → 'M:SS' or 'H:MM:SS'."""
    if not minutes:
        return "--:--"
    total_s = int(round(minutes * 60))
    hrs, rem = divmod(total_s, 3600)
    mins, secs = divmod(rem, 60)
    if hrs > 0:
        return f"{hrs}:{mins:02d}:{secs:02d}"
    return f"{mins}:{secs:02d}"


def pace_min_per_km(duration_min: Optional[float], distance_km: Optional[float]) -> Optional[float]:
    if not duration_min or not distance_km or distance_km <= 0 or duration_min <= 0:
        return None
    return duration_min / distance_km


def speed_to_pace(speed_ms: Optional[float]) -> Optional[float]:
    """m/s → min/km."""
    if not speed_ms or speed_ms <= 0:
        return None
    return (1000.0 / speed_ms) / 60.0


# ─────────────────────────────────────────────────────────────────────────────
# UNIT CONVERSION (presentation boundary)
# ─────────────────────────────────────────────────────────────────────────────

def km_to_display(distance_km: Optional[float], use_metric: bool = True) -> Optional[float]:
    if distance_km is None:
        return None
    return distance_km if use_metric else distance_km / KM_PER_MILE


def pace_to_display(pace_min_km: Optional[float], use_metric: bool = True) -> Optional[float]:
    """min/km → min/mi when imperial."""
    if pace_min_km is None:
        return None
    return pace_min_km if use_metric else pace_min_km * KM_PER_MILE


def distance_unit(use_metric: bool = True) -> str:
    return "km" if use_metric else "mi"
