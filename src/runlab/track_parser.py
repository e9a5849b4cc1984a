"""
track_parser.py  –  GPS Track-Log Parser
========================================
Full-document parsers for GPS tracks:

  • GPX (1.0 / 1.1, any namespace prefix) via lxml
  • FIT activity files via fitparse (record messages with a position)

Both feed `build_route()`, which derives cumulative haversine distance,
total duration, average pace, bounding box and centroid. A track with no
usable points is a valid, empty route – not an error.
"""

from __future__ import annotations

import logging
import math
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, NamedTuple, Optional

import numpy as np
from fitparse import FitFile, FitParseError
from lxml import etree

from runlab.geo import compute_bounds, compute_center, pace_min_per_km, segment_distances_km
from runlab.models import TrackPoint, TrackRoute, parse_timestamp

log = logging.getLogger("runlab.track_parser")

SEMICIRCLE_TO_DEG = 180.0 / 2 ** 31

# Heart-rate children seen in the wild: Garmin TrackPointExtension <gpxtpx:hr>,
# bare <hr>, and <heartrate> from some exporters (namespaces already stripped).
_HR_TAGS    = ("hr", "heartrate")
_SPEED_TAGS = ("speed",)


class RawPoint(NamedTuple):
    lat: float
    lon: float
    ele: float
    time: datetime
    speed: float
    hr: Optional[float]


def _child_float(elem, tags: Iterable[str]) -> Optional[float]:
    for tag in tags:
        child = elem.find(f".//{tag}")
        if child is not None and child.text and child.text.strip():
            try:
                return float(child.text)
            except ValueError:
                continue
    return None


def _valid_position(lat: float, lon: float) -> bool:
    return math.isfinite(lat) and math.isfinite(lon) and abs(lat) <= 90 and abs(lon) <= 180


# ─────────────────────────────────────────────────────────────────────────────
# ROUTE ASSEMBLY
# ─────────────────────────────────────────────────────────────────────────────

def build_route(filename: str, name: str, raw_points: list[RawPoint]) -> TrackRoute:
    """Raw points → TrackRoute with every derived field filled in."""
    if not raw_points:
        return TrackRoute(filename=filename, name=name)

    raw_points = sorted(raw_points, key=lambda p: p.time)
    lats = [p.lat for p in raw_points]
    lons = [p.lon for p in raw_points]
    cumulative = np.cumsum(segment_distances_km(lats, lons))

    points = [
        TrackPoint(lat=p.lat, lon=p.lon, ele=p.ele, time=p.time, speed=p.speed,
                   hr=p.hr, cumulative_km=float(cum))
        for p, cum in zip(raw_points, cumulative)
    ]
    total_km = float(cumulative[-1])
    duration_min = (points[-1].time - points[0].time).total_seconds() / 60.0

    return TrackRoute(
        filename=filename,
        name=name,
        points=points,
        total_distance_km=total_km,
        duration_min=duration_min,
        avg_pace=pace_min_per_km(duration_min, total_km),
        start_time=points[0].time,
        end_time=points[-1].time,
        bounds=compute_bounds(lats, lons),
        center=compute_center(lats, lons),
    )


# ─────────────────────────────────────────────────────────────────────────────
# GPX
# ─────────────────────────────────────────────────────────────────────────────

def parse_gpx(text: str | bytes, filename: str, name: Optional[str] = None) -> TrackRoute:
    """
    Parse one GPX document.

    Raises ValueError when the document is not XML. Track points without a
    parseable <time> cannot be placed on the playback clock and are dropped.
    """
    data = text.encode("utf-8") if isinstance(text, str) else text
    if not data.strip():
        raise ValueError(f"{filename}: empty track document")
    try:
        root = etree.fromstring(data)
    except etree.XMLSyntaxError as exc:
        raise ValueError(f"{filename}: invalid XML: {exc}") from exc

    for elem in root.iter():
        if isinstance(elem.tag, str) and "}" in elem.tag:
            elem.tag = elem.tag.split("}", 1)[1]

    if name is None:
        name_elem = root.find("./trk/name")
        if name_elem is None:
            name_elem = root.find(".//name")
        name = name_elem.text.strip() if name_elem is not None and name_elem.text else filename

    raw: list[RawPoint] = []
    dropped = 0
    for trkpt in root.iter("trkpt"):
        try:
            lat = float(trkpt.get("lat"))
            lon = float(trkpt.get("lon"))
            time_elem = trkpt.find("time")
            ts = parse_timestamp(time_elem.text.strip()) if time_elem is not None and time_elem.text else None
        except (TypeError, ValueError):
            dropped += 1
            continue
        if ts is None or not _valid_position(lat, lon):
            dropped += 1
            continue
        ele = _child_float(trkpt, ("ele",))
        raw.append(RawPoint(
            lat=lat,
            lon=lon,
            ele=ele if ele is not None else 0.0,
            time=ts,
            speed=_child_float(trkpt, _SPEED_TAGS) or 0.0,
            hr=_child_float(trkpt, _HR_TAGS),
        ))

    if dropped:
        log.warning("%s: %d track points without a valid lat/lon/time dropped", filename, dropped)
    route = build_route(filename, name, raw)
    log.debug("%s: %d points, %.2f km", filename, len(route.points), route.total_distance_km or 0.0)
    return route


# ─────────────────────────────────────────────────────────────────────────────
# FIT
# ─────────────────────────────────────────────────────────────────────────────

def _first(values: dict, *keys):
    for key in keys:
        if values.get(key) is not None:
            return values[key]
    return None


def parse_fit_track(path: str | os.PathLike, name: Optional[str] = None) -> TrackRoute:
    """Parse the positioned `record` messages of a FIT activity file."""
    path = Path(path)
    try:
        fitfile = FitFile(str(path))
        records = [m.get_values() for m in fitfile.get_messages("record")]
    except FitParseError as exc:
        raise ValueError(f"{path.name}: invalid FIT file: {exc}") from exc

    raw: list[RawPoint] = []
    dropped = 0
    for rec in records:
        lat = rec.get("position_lat")
        lon = rec.get("position_long")
        ts = rec.get("timestamp")
        if lat is None or lon is None or ts is None:
            continue
        lat *= SEMICIRCLE_TO_DEG
        lon *= SEMICIRCLE_TO_DEG
        if not _valid_position(lat, lon):
            dropped += 1
            continue
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)      # FIT timestamps are UTC
        alt = _first(rec, "enhanced_altitude", "altitude")
        speed = _first(rec, "enhanced_speed", "speed")
        hr = rec.get("heart_rate")
        raw.append(RawPoint(
            lat=lat,
            lon=lon,
            ele=float(alt) if alt is not None else 0.0,
            time=ts,
            speed=float(speed) if speed is not None else 0.0,
            hr=float(hr) if hr is not None else None,
        ))

    if dropped:
        log.warning("%s: %d records with out-of-range positions dropped", path.name, dropped)
    return build_route(path.name, name or path.stem, raw)


# ─────────────────────────────────────────────────────────────────────────────
# FILE HELPERS
# ─────────────────────────────────────────────────────────────────────────────

TRACK_SUFFIXES = (".gpx", ".fit")


def parse_track_file(path: str | os.PathLike) -> TrackRoute:
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".gpx":
        return parse_gpx(path.read_bytes(), path.name)
    if suffix == ".fit":
        return parse_fit_track(path)
    raise ValueError(f"Unsupported track format: {path.name}")


def load_routes(paths: Iterable[str | os.PathLike]) -> list[TrackRoute]:
    """
    Parse every track file in `paths` (directories are searched one level).

    A file that fails to parse is logged and skipped; I/O errors propagate.
    """
    files: list[Path] = []
    for p in map(Path, paths):
        if p.is_dir():
            files.extend(sorted(f for f in p.iterdir() if f.suffix.lower() in TRACK_SUFFIXES))
        else:
            files.append(p)

    routes = []
    for f in files:
        try:
            routes.append(parse_track_file(f))
        except ValueError as exc:
            log.warning("Skipping track %s: %s", f.name, exc)
    log.info("Parsed %d/%d track files", len(routes), len(files))
    return routes
