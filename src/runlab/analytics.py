"""
analytics.py  –  Aggregation & Derived Metrics
==============================================
Read-only views over reconciled workouts:

  A. Weekly (Sunday-start) / monthly rollups with zero-filled buckets
  B. HR zones – %HRmax, or Karvonen (heart-rate reserve) when a valid
     resting HR is configured
  C. VO2max estimate (Daniels oxygen-cost regression, %HRmax fraction)
  D. Best pace from a linked route's instantaneous speed
  E. Dashboard summary, weekday distribution, calendar views

Out-of-range derived metrics come back as None ("no estimate"), never as
an exception. Bucketing uses each workout's local date: the UTC offset it
was recorded with, or an explicit `tz`.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, timedelta, tzinfo
from statistics import mean
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

import numpy as np
import pandas as pd

from runlab.config.settings import (
    BEST_PACE_FLOOR_MIN_KM,
    MAX_HR,
    MAX_PLAUSIBLE_PACE,
    RESTING_HR,
    VO2MAX_MAX,
    VO2MAX_MIN,
    WEEKLY_LOOKBACK_WEEKS,
    ZONE_LABELS,
    ZONE_PCTS,
)
from runlab.geo import elevation_gain_m, speed_to_pace
from runlab.models import TrackRoute, WorkoutRecord

log = logging.getLogger("runlab.analytics")

FRAME_COLS = ["id", "source", "date", "distance_km", "duration_min", "pace", "hr_avg", "calories"]
WEEKDAYS = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


# ─────────────────────────────────────────────────────────────────────────────
# LOCAL DATES & FRAMES
# ─────────────────────────────────────────────────────────────────────────────

def _tz(tz) -> Optional[tzinfo]:
    if tz is None or isinstance(tz, tzinfo):
        return tz
    return ZoneInfo(tz)


def local_date(w: WorkoutRecord, tz=None) -> date:
    zone = _tz(tz)
    return (w.start.astimezone(zone) if zone is not None else w.start).date()


def week_start(d: date) -> date:
    """Sunday on or before `d`."""
    return d - timedelta(days=(d.weekday() + 1) % 7)


def workouts_frame(workouts: Iterable[WorkoutRecord], tz=None) -> pd.DataFrame:
    rows = [
        {
            "id":           w.id,
            "source":       w.source,
            "date":         local_date(w, tz),
            "distance_km":  w.distance_km,
            "duration_min": w.duration_min,
            "pace":         w.pace,
            "hr_avg":       w.hr_avg,
            "calories":     w.calories,
        }
        for w in workouts
    ]
    df = pd.DataFrame(rows, columns=FRAME_COLS)
    return df.assign(
        date=pd.to_datetime(df["date"]),
        distance_km=pd.to_numeric(df["distance_km"], errors="coerce").fillna(0.0),
        duration_min=pd.to_numeric(df["duration_min"], errors="coerce").fillna(0.0),
        pace=pd.to_numeric(df["pace"], errors="coerce"),
    )


# ─────────────────────────────────────────────────────────────────────────────
# A. ROLLUPS
# ─────────────────────────────────────────────────────────────────────────────

def _rollup(df: pd.DataFrame, key: str, index) -> pd.DataFrame:
    agg = df.groupby(key).agg(
        distance_km=("distance_km", "sum"),
        duration_min=("duration_min", "sum"),
        runs=("id", "count"),
    )
    out = agg.reindex(index, fill_value=0)
    out.index.name = key
    return out.astype({"distance_km": float, "duration_min": float, "runs": int})


def weekly_rollup(
    workouts: Iterable[WorkoutRecord],
    weeks: int = WEEKLY_LOOKBACK_WEEKS,
    today: Optional[date] = None,
    tz=None,
) -> pd.DataFrame:
    """
    Distance / duration / run count per Sunday-start week, oldest first.

    Exactly `weeks` rows ending with the current week; empty weeks are 0.
    """
    today = today or date.today()
    current = pd.Timestamp(week_start(today))
    first = current - pd.Timedelta(weeks=weeks - 1)
    index = pd.date_range(first, current, freq="7D", name="week_start")

    df = workouts_frame(workouts, tz)
    df = df.assign(week_start=df["date"] - pd.to_timedelta((df["date"].dt.dayofweek + 1) % 7, unit="D"))
    df = df[(df["week_start"] >= first) & (df["week_start"] <= current)]
    return _rollup(df, "week_start", index)


def monthly_rollup(
    workouts: Iterable[WorkoutRecord],
    months: int = 12,
    today: Optional[date] = None,
    tz=None,
) -> pd.DataFrame:
    """Same as weekly_rollup, bucketed by calendar month ('YYYY-MM' index)."""
    today = today or date.today()
    current = pd.Period(today, freq="M")
    index = pd.period_range(current - (months - 1), current, freq="M")

    df = workouts_frame(workouts, tz)
    df = df.assign(month=df["date"].dt.to_period("M"))
    df = df[(df["month"] >= index[0]) & (df["month"] <= index[-1])]
    out = _rollup(df, "month", index)
    out.index = out.index.astype(str)
    out.index.name = "month"
    return out


# ─────────────────────────────────────────────────────────────────────────────
# B. HR ZONES
# ─────────────────────────────────────────────────────────────────────────────

def _karvonen(max_hr: float, resting_hr: Optional[float]) -> bool:
    return resting_hr is not None and 0 < resting_hr < max_hr


def hr_zone(hr: Optional[float], max_hr: float = MAX_HR,
            resting_hr: Optional[float] = RESTING_HR) -> Optional[int]:
    """Zone 1–5, or None for a missing / non-positive HR."""
    if not hr or hr <= 0 or not max_hr or max_hr <= 0:
        return None
    if _karvonen(max_hr, resting_hr):
        fraction = (hr - resting_hr) / (max_hr - resting_hr)
    else:
        fraction = hr / max_hr
    for zone, upper in enumerate(ZONE_PCTS, start=1):
        if fraction < upper:
            return zone
    return len(ZONE_PCTS) + 1


def zone_boundaries(max_hr: float = MAX_HR,
                    resting_hr: Optional[float] = RESTING_HR) -> list[tuple[int, str, int, int]]:
    """(zone, label, low_bpm, high_bpm) per zone."""
    edges = [0.5] + list(ZONE_PCTS) + [1.0]
    karvonen = _karvonen(max_hr, resting_hr)

    def to_bpm(fraction: float) -> int:
        if karvonen:
            return round(resting_hr + fraction * (max_hr - resting_hr))
        return round(fraction * max_hr)

    return [
        (i + 1, ZONE_LABELS[i], to_bpm(edges[i]), to_bpm(edges[i + 1]))
        for i in range(len(ZONE_LABELS))
    ]


def workout_zone_minutes(w: WorkoutRecord, max_hr: float = MAX_HR,
                         resting_hr: Optional[float] = RESTING_HR) -> dict[int, float]:
    """
    Minutes per zone. Detailed HR samples split the duration by sample
    share; otherwise the whole run goes into the average-HR zone.
    """
    minutes = {z: 0.0 for z in range(1, len(ZONE_LABELS) + 1)}
    if w.heart_rate_data:
        zones = [hr_zone(s.value, max_hr, resting_hr) for s in w.heart_rate_data]
        zones = [z for z in zones if z is not None]
        if zones:
            share = w.duration_min / len(zones)
            for z in zones:
                minutes[z] += share
            return minutes
    z = hr_zone(w.hr_avg, max_hr, resting_hr)
    if z is not None:
        minutes[z] += w.duration_min
    return minutes


def zone_distribution(workouts: Iterable[WorkoutRecord], max_hr: float = MAX_HR,
                      resting_hr: Optional[float] = RESTING_HR) -> dict[int, float]:
    total = {z: 0.0 for z in range(1, len(ZONE_LABELS) + 1)}
    for w in workouts:
        for z, m in workout_zone_minutes(w, max_hr, resting_hr).items():
            total[z] += m
    return total


# ─────────────────────────────────────────────────────────────────────────────
# C. VO2MAX
# ─────────────────────────────────────────────────────────────────────────────

def estimate_vo2max(w: WorkoutRecord, max_hr: float = MAX_HR) -> Optional[float]:
    """
    VO2max (ml/kg/min) from pace and %HRmax.

    oxygen cost  = -4.60 + 0.182258·v + 0.000104·v²      (v in m/min)
    fraction     = (%HRmax − 37.182) / 63.094
    None when inputs are missing, fraction ∉ (0, 1], or the result falls
    outside the plausible VO2MAX_MIN–VO2MAX_MAX range.
    """
    if not w.duration_min or not w.distance_km or not w.hr_avg or not max_hr:
        return None
    velocity = w.distance_km * 1000.0 / w.duration_min
    oxygen_cost = -4.60 + 0.182258 * velocity + 0.000104 * velocity ** 2
    fraction = (w.hr_avg / max_hr * 100.0 - 37.182) / 63.094
    if fraction <= 0 or fraction > 1:
        return None
    vo2max = oxygen_cost / fraction
    if vo2max < VO2MAX_MIN or vo2max > VO2MAX_MAX:
        return None
    return vo2max


# ─────────────────────────────────────────────────────────────────────────────
# D. ROUTE-DERIVED METRICS
# ─────────────────────────────────────────────────────────────────────────────

def best_pace_from_route(route: Optional[TrackRoute]) -> Optional[float]:
    """Fastest instantaneous pace (min/km) above the GPS-spike floor."""
    if route is None or not route.points:
        return None
    speeds = np.array([p.speed for p in route.points if p.speed and p.speed > 0], dtype=float)
    if speeds.size == 0:
        return None
    paces = 1000.0 / speeds / 60.0
    paces = paces[paces > BEST_PACE_FLOOR_MIN_KM]
    return float(paces.min()) if paces.size else None


def route_elevation_gain(route: Optional[TrackRoute]) -> Optional[float]:
    if route is None or not route.points:
        return None
    return elevation_gain_m([p.ele for p in route.points])


def route_pace_series(route: TrackRoute) -> pd.Series:
    """Instantaneous pace (min/km) indexed by timestamp; stopped points dropped."""
    data = {p.time: speed_to_pace(p.speed) for p in route.points}
    s = pd.Series(data, dtype=float).dropna()
    return s[s <= MAX_PLAUSIBLE_PACE]


# ─────────────────────────────────────────────────────────────────────────────
# E. DASHBOARD & CALENDAR
# ─────────────────────────────────────────────────────────────────────────────

def pct_change(current: float, previous: float) -> Optional[float]:
    if not previous:
        return None
    return (current - previous) / previous * 100.0


def _month_start(d: date, back: int = 0) -> date:
    """First day of the month `back` months before `d` (negative = ahead)."""
    y, m = divmod(d.year * 12 + d.month - 1 - back, 12)
    return date(y, m + 1, 1)


def dashboard_summary(workouts: Iterable[WorkoutRecord], today: Optional[date] = None,
                      tz=None) -> dict:
    workouts = list(workouts)
    today = today or date.today()
    this_week = week_start(today)
    last_week = this_week - timedelta(days=7)
    this_month = _month_start(today)
    last_month = _month_start(today, 1)

    def _km(lo: date, hi: date) -> float:
        return sum(w.distance_km for w in workouts if lo <= local_date(w, tz) < hi)

    week_km = _km(this_week, this_week + timedelta(days=7))
    prev_week_km = _km(last_week, this_week)
    month_km = _km(this_month, _month_start(today, -1))
    prev_month_km = _km(last_month, this_month)

    paces = [w.pace for w in workouts if w.pace and 0 < w.pace < MAX_PLAUSIBLE_PACE]
    return {
        "this_week_km":      week_km,
        "last_week_km":      prev_week_km,
        "week_change_pct":   pct_change(week_km, prev_week_km),
        "this_month_km":     month_km,
        "last_month_km":     prev_month_km,
        "month_change_pct":  pct_change(month_km, prev_month_km),
        "total_runs":        len(workouts),
        "total_distance_km": sum(w.distance_km for w in workouts),
        "avg_pace":          mean(paces) if paces else None,
    }


def weekday_distribution(workouts: Iterable[WorkoutRecord], tz=None) -> pd.Series:
    """Run count per weekday, Sunday first."""
    counts = pd.Series(0, index=WEEKDAYS, dtype=int)
    for w in workouts:
        d = local_date(w, tz)
        counts[WEEKDAYS[(d.weekday() + 1) % 7]] += 1
    return counts


def workouts_by_date(workouts: Iterable[WorkoutRecord], tz=None) -> dict[date, list[WorkoutRecord]]:
    out: dict[date, list[WorkoutRecord]] = defaultdict(list)
    for w in sorted(workouts, key=lambda w: w.start):
        out[local_date(w, tz)].append(w)
    return dict(out)


def week_summary(workouts: Iterable[WorkoutRecord], day: date, tz=None) -> dict:
    """Totals for the Sunday-start week containing `day`."""
    lo = week_start(day)
    hi = lo + timedelta(days=7)
    in_week = [w for w in workouts if lo <= local_date(w, tz) < hi]
    return {
        "week_start":   lo,
        "runs":         len(in_week),
        "distance_km":  sum(w.distance_km for w in in_week),
        "duration_min": sum(w.duration_min for w in in_week),
        "active_days":  len({local_date(w, tz) for w in in_week}),
    }
