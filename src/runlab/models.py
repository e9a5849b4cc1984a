"""
Data models for runlab.

- Sample:        one (timestamp, value) reading – HR, cadence or stride length
- WorkoutRecord: one completed run (metric units only: km, minutes)
- TrackPoint:    one GPS fix with cumulative distance-from-start
- TrackRoute:    one GPS-logged path plus linked-workout HR fields

Timestamps are timezone-aware datetimes. Records are treated as values:
reconciliation returns modified copies (dataclasses.replace) rather than
mutating shared objects.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Optional

from runlab.geo import Bounds, LatLon, pace_min_per_km


class Sample(NamedTuple):
    time: datetime
    value: float


def parse_timestamp(value) -> Optional[datetime]:
    """ISO string / datetime → aware datetime (naive values are taken as UTC)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def samples_to_json(samples: list[Sample]) -> list[dict]:
    return [{"time": s.time.isoformat(), "value": s.value} for s in samples]


def samples_from_json(rows) -> list[Sample]:
    return [Sample(parse_timestamp(r["time"]), float(r["value"])) for r in rows or []]


def sample_values(samples: list[Sample]) -> list[float]:
    return [s.value for s in samples]


# ─────────────────────────────────────────────────────────────────────────────
# WORKOUT
# ─────────────────────────────────────────────────────────────────────────────

_SERIES_FIELDS = ("heart_rate_data", "cadence_data", "stride_length_data")


@dataclass
class WorkoutRecord:
    """Normalized running workout."""
    id: str
    source: str
    start: datetime
    duration_min: float
    distance_km: float
    calories: float = 0.0
    hr_avg: Optional[float] = None
    hr_min: Optional[float] = None
    hr_max: Optional[float] = None
    cadence_avg: Optional[float] = None         # steps/min
    stride_length_avg: Optional[float] = None   # metres
    speed_avg: Optional[float] = None
    elevation_gain_m: Optional[float] = None
    name: str = ""
    source_name: str = ""
    external_id: Optional[str] = None
    heart_rate_data: list[Sample] = field(default_factory=list)
    cadence_data: list[Sample] = field(default_factory=list)
    stride_length_data: list[Sample] = field(default_factory=list)
    merged_from: Optional[str] = None           # id of a merged secondary record

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_min)

    @property
    def pace(self) -> Optional[float]:
        """min/km – derived, never stored."""
        return pace_min_per_km(self.duration_min, self.distance_km)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["start"] = _iso(self.start)
        for name in _SERIES_FIELDS:
            d[name] = samples_to_json(getattr(self, name))
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "WorkoutRecord":
        data = dict(d)
        data["start"] = parse_timestamp(data["start"])
        for name in _SERIES_FIELDS:
            data[name] = samples_from_json(data.get(name))
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in data.items() if k in known})


# ─────────────────────────────────────────────────────────────────────────────
# ROUTE
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TrackPoint:
    lat: float
    lon: float
    ele: float
    time: datetime
    speed: float = 0.0                  # m/s, instantaneous
    hr: Optional[float] = None
    cumulative_km: float = 0.0


@dataclass
class TrackRoute:
    filename: str
    name: str
    points: list[TrackPoint] = field(default_factory=list)
    total_distance_km: Optional[float] = None
    duration_min: Optional[float] = None
    avg_pace: Optional[float] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    bounds: Optional[Bounds] = None
    center: Optional[LatLon] = None
    # populated by linking
    hr_avg: Optional[float] = None
    hr_min: Optional[float] = None
    hr_max: Optional[float] = None
    heart_rate_data: list[Sample] = field(default_factory=list)
    linked_workout_id: Optional[str] = None

    @property
    def duration_ms(self) -> float:
        if len(self.points) < 2:
            return 0.0
        return (self.points[-1].time - self.points[0].time).total_seconds() * 1000.0

    def to_dict(self) -> dict:
        return {
            "filename":          self.filename,
            "name":              self.name,
            "points": [
                {"lat": p.lat, "lon": p.lon, "ele": p.ele, "time": p.time.isoformat(),
                 "speed": p.speed, "hr": p.hr, "cumulative_km": p.cumulative_km}
                for p in self.points
            ],
            "total_distance_km": self.total_distance_km,
            "duration_min":      self.duration_min,
            "avg_pace":          self.avg_pace,
            "start_time":        _iso(self.start_time),
            "end_time":          _iso(self.end_time),
            "bounds":            self.bounds.to_corners() if self.bounds else None,
            "center":            list(self.center) if self.center else None,
            "hr_avg":            self.hr_avg,
            "hr_min":            self.hr_min,
            "hr_max":            self.hr_max,
            "heart_rate_data":   samples_to_json(self.heart_rate_data),
            "linked_workout_id": self.linked_workout_id,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "TrackRoute":
        points = [
            TrackPoint(
                lat=p["lat"], lon=p["lon"], ele=p.get("ele", 0.0),
                time=parse_timestamp(p["time"]), speed=p.get("speed", 0.0),
                hr=p.get("hr"), cumulative_km=p.get("cumulative_km", 0.0),
            )
            for p in d.get("points", [])
        ]
        return cls(
            filename=d["filename"],
            name=d.get("name", d["filename"]),
            points=points,
            total_distance_km=d.get("total_distance_km"),
            duration_min=d.get("duration_min"),
            avg_pace=d.get("avg_pace"),
            start_time=parse_timestamp(d.get("start_time")),
            end_time=parse_timestamp(d.get("end_time")),
            bounds=Bounds.from_corners(d["bounds"]) if d.get("bounds") else None,
            center=LatLon(*d["center"]) if d.get("center") else None,
            hr_avg=d.get("hr_avg"),
            hr_min=d.get("hr_min"),
            hr_max=d.get("hr_max"),
            heart_rate_data=samples_from_json(d.get("heart_rate_data")),
            linked_workout_id=d.get("linked_workout_id"),
        )
