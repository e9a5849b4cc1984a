"""Pytest configuration and fixtures for runlab tests."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from runlab.geo import Bounds, LatLon
from runlab.models import Sample, TrackRoute, WorkoutRecord
from runlab.track_parser import RawPoint, build_route

UTC = timezone.utc
T0 = datetime(2024, 1, 15, 12, 30, tzinfo=UTC)


# -------------------------------------------------------------------------
# Health export documents
# -------------------------------------------------------------------------

def export_doc(*elements: str) -> str:
    body = "\n".join(f" {e}" for e in elements)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<!DOCTYPE HealthData [\n<!ELEMENT HealthData (ExportDate,Me,(Record|Workout)*)>\n]>\n"
        '<HealthData locale="en_US">\n'
        ' <ExportDate value="2024-02-01 09:00:00 -0500"/>\n'
        f"{body}\n"
        "</HealthData>\n"
    )


def hr_record(start: str, value, source: str = "Apple Watch") -> str:
    return (
        f'<Record type="HKQuantityTypeIdentifierHeartRate" sourceName="{source}" '
        f'unit="count/min" creationDate="{start}" startDate="{start}" endDate="{start}" '
        f'value="{value}">\n  <MetadataEntry key="HKMetadataKeyHeartRateMotionContext" value="2"/>\n </Record>'
    )


def step_record(start: str, end: str, value) -> str:
    return (
        f'<Record type="HKQuantityTypeIdentifierStepCount" sourceName="Apple Watch" unit="count" '
        f'startDate="{start}" endDate="{end}" value="{value}"/>'
    )


def stride_record(start: str, value) -> str:
    return (
        f'<Record type="HKQuantityTypeIdentifierRunningStrideLength" sourceName="Apple Watch" '
        f'unit="m" startDate="{start}" endDate="{start}" value="{value}"/>'
    )


def workout_element(
    start: str = "2024-01-15 07:30:00 -0500",
    duration: str = "30",
    duration_unit: str = "min",
    distance: Optional[str] = "5",
    distance_unit: str = "km",
    activity: str = "HKWorkoutActivityTypeRunning",
    calories: str = "320",
    hr: Optional[tuple] = ("152", "120", "175"),
    steps: Optional[str] = "4950",
    source: str = "Apple Watch",
) -> str:
    stats = []
    if distance is not None:
        stats.append(f'<WorkoutStatistics type="HKQuantityTypeIdentifierDistanceWalkingRunning" '
                     f'startDate="{start}" endDate="{start}" sum="{distance}" unit="{distance_unit}"/>')
    stats.append(f'<WorkoutStatistics type="HKQuantityTypeIdentifierActiveEnergyBurned" '
                 f'sum="{calories}" unit="kcal"/>')
    if hr is not None:
        stats.append(f'<WorkoutStatistics type="HKQuantityTypeIdentifierHeartRate" '
                     f'average="{hr[0]}" minimum="{hr[1]}" maximum="{hr[2]}" unit="count/min"/>')
    if steps is not None:
        stats.append(f'<WorkoutStatistics type="HKQuantityTypeIdentifierStepCount" sum="{steps}" unit="count"/>')
    inner = "\n  ".join(stats)
    return (
        f'<Workout workoutActivityType="{activity}" duration="{duration}" durationUnit="{duration_unit}" '
        f'sourceName="{source}" sourceVersion="10.2" creationDate="{start}" startDate="{start}" '
        f'endDate="{start}">\n  <MetadataEntry key="HKIndoorWorkout" value="0"/>\n  {inner}\n'
        f'  <WorkoutEvent type="HKWorkoutEventTypeSegment" date="{start}" duration="10" durationUnit="min"/>\n'
        f" </Workout>"
    )


@pytest.fixture
def sample_export() -> str:
    """One running workout (07:30–08:00 -0500) with HR/cadence/stride samples and noise around it."""
    return export_doc(
        hr_record("2024-01-15 07:10:00 -0500", 70),
        hr_record("2024-01-15 07:35:00 -0500", 150),
        hr_record("2024-01-15 07:45:00 -0500", 160),
        step_record("2024-01-15 07:31:00 -0500", "2024-01-15 07:32:00 -0500", 170),
        step_record("2024-01-15 07:33:00 -0500", "2024-01-15 07:34:00 -0500", 150),
        step_record("2024-01-15 07:40:00 -0500", "2024-01-15 07:41:00 -0500", 40),
        stride_record("2024-01-15 07:36:00 -0500", "1.10"),
        stride_record("2024-01-15 07:37:00 -0500", "1.20"),
        workout_element(),
        workout_element(start="2024-01-16 18:00:00 -0500", activity="HKWorkoutActivityTypeWalking"),
        workout_element(start="2024-01-17 06:00:00 -0500", duration="1800", duration_unit="s",
                        distance="3.10686", distance_unit="mi", hr=None, steps=None),
        hr_record("2024-01-17 06:10:00 -0500", 140),
    )


# -------------------------------------------------------------------------
# Workout / route factories
# -------------------------------------------------------------------------

def make_workout(
    source: str = "apple",
    start: datetime = T0,
    distance_km: float = 5.0,
    duration_min: float = 30.0,
    id: Optional[str] = None,
    **kwargs,
) -> WorkoutRecord:
    return WorkoutRecord(
        id=id or f"{source}_{start.isoformat()}_{distance_km:.2f}",
        source=source,
        start=start,
        duration_min=duration_min,
        distance_km=distance_km,
        **kwargs,
    )


def hr_series(start: datetime, values, step_s: int = 60) -> list[Sample]:
    return [Sample(start + timedelta(seconds=i * step_s), float(v)) for i, v in enumerate(values)]


def make_track(
    filename: str = "run.gpx",
    start: datetime = T0,
    lat0: float = 32.70,
    lon0: float = -97.10,
    n: int = 11,
    step_s: int = 10,
    dlat: float = 0.0005,
    speed: float = 3.0,
    hr: Optional[float] = None,
) -> TrackRoute:
    """Straight northbound track, `n` points `step_s` seconds apart."""
    raw = [
        RawPoint(lat=lat0 + i * dlat, lon=lon0 + i * dlat / 2, ele=100.0 + i,
                 time=start + timedelta(seconds=i * step_s), speed=speed, hr=hr)
        for i in range(n)
    ]
    return build_route(filename, filename.rsplit(".", 1)[0], raw)


def boxed_route(filename: str, bounds, distance_km: float, center, start: datetime = T0) -> TrackRoute:
    return TrackRoute(
        filename=filename,
        name=filename,
        total_distance_km=distance_km,
        start_time=start,
        bounds=Bounds.from_corners(bounds),
        center=LatLon(*center),
    )


GPX_NS = (
    'xmlns="http://www.topografix.com/GPX/1/1" '
    'xmlns:gpxtpx="http://www.garmin.com/xmlschemas/TrackPointExtension/v1"'
)


@pytest.fixture
def sample_gpx() -> str:
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<gpx version="1.1" creator="Test" {GPX_NS}>
  <trk>
    <name>Morning Run</name>
    <trkseg>
      <trkpt lat="32.7000" lon="-97.1000"><ele>180.0</ele><time>2024-01-15T12:30:00Z</time>
        <extensions><gpxtpx:TrackPointExtension><gpxtpx:hr>140</gpxtpx:hr></gpxtpx:TrackPointExtension></extensions>
      </trkpt>
      <trkpt lat="32.7010" lon="-97.1000"><ele>182.5</ele><time>2024-01-15T12:30:30Z</time>
        <extensions><speed>3.7</speed><gpxtpx:TrackPointExtension><gpxtpx:hr>150</gpxtpx:hr></gpxtpx:TrackPointExtension></extensions>
      </trkpt>
      <trkpt lat="32.7020" lon="-97.1010"><time>2024-01-15T12:31:00Z</time>
        <extensions><heartrate>155</heartrate></extensions>
      </trkpt>
      <trkpt lat="32.7030" lon="-97.1010"><ele>181.0</ele></trkpt>
    </trkseg>
  </trk>
</gpx>
"""
