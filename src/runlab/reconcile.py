"""
reconcile.py  –  Cross-Source Reconciliation
============================================
Everything that decides "is this the same physical run?":

  1. DEDUP    – primary-source workouts (default: health export) always
                survive; a secondary-source workout (default: Strava) is
                dropped when it passes the time gate (< 10 min) AND the
                distance gate (< max(0.5 km, 10 % of the larger distance))
                and the averaged closeness score is >= 0.5. First
                qualifying primary wins. Matched secondaries are merged
                into their primary (fill-missing, longer HR series wins).
  2. ENRICH   – read-time gap filling from the other source and from a
                GPS route starting within 5 min.
  3. LINK     – route ↔ workout by start time (< 5 min). Pure: returns a
                new route; persisting it is the caller's job.
  4. SIMILAR  – route similarity from centroid distance, bounding-box
                overlap and distance ratio; greedy geographic clustering.

No function here raises for "no match" – absence is None / [].
"""

from __future__ import annotations

import logging
from bisect import bisect_left
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from statistics import mean
from typing import Iterable, Optional

from runlab.config.settings import (
    CLUSTER_THRESHOLD_KM,
    DEDUP_DIST_PCT,
    DEDUP_MIN_DIST_KM,
    DEDUP_MIN_SIMILARITY,
    DEDUP_TIME_WINDOW_MIN,
    ENRICH_WINDOW_MIN,
    LINK_WINDOW_MIN,
    SIMILAR_ROUTES_THRESHOLD,
    SIMILARITY_MAX_CENTER_KM,
    SIMILARITY_W_CENTER,
    SIMILARITY_W_DISTANCE,
    SIMILARITY_W_OVERLAP,
    SOURCE_APPLE,
    SOURCE_STRAVA,
)
from runlab.geo import LatLon, bounds_overlap_ratio, elevation_gain_m, haversine_km, location_name
from runlab.models import Sample, TrackRoute, WorkoutRecord

log = logging.getLogger("runlab.reconcile")


def minutes_apart(a: datetime, b: datetime) -> float:
    return abs((a - b).total_seconds()) / 60.0


def _hr_stats(samples: list[Sample]) -> tuple[float, float, float]:
    values = [s.value for s in samples]
    return float(round(mean(values))), min(values), max(values)


# ─────────────────────────────────────────────────────────────────────────────
# 1. DEDUP
# ─────────────────────────────────────────────────────────────────────────────

def distance_threshold_km(d1: float, d2: float) -> float:
    return max(DEDUP_MIN_DIST_KM, DEDUP_DIST_PCT * max(d1, d2))


def workout_similarity(a: WorkoutRecord, b: WorkoutRecord) -> Optional[float]:
    """
    Combined closeness score in (0, 1], or None when either gate fails.

    Each component scales linearly from 1 (identical) to 0 (at its gate).
    """
    dt = minutes_apart(a.start, b.start)
    if dt >= DEDUP_TIME_WINDOW_MIN:
        return None
    dd = abs(a.distance_km - b.distance_km)
    threshold = distance_threshold_km(a.distance_km, b.distance_km)
    if dd >= threshold:
        return None
    time_score = 1.0 - dt / DEDUP_TIME_WINDOW_MIN
    dist_score = 1.0 - dd / threshold
    return (time_score + dist_score) / 2.0


def is_duplicate(a: WorkoutRecord, b: WorkoutRecord) -> bool:
    score = workout_similarity(a, b)
    return score is not None and score >= DEDUP_MIN_SIMILARITY


def merge_workouts(primary: WorkoutRecord, secondary: WorkoutRecord) -> WorkoutRecord:
    """
    Copy of `primary` with gaps filled from `secondary`.

    HR summary values from a secondary that carries a detailed HR series win
    over the primary's; a longer secondary series replaces the primary's and
    the HR stats are recomputed from it.
    """
    changes: dict = {"merged_from": secondary.id}
    secondary_has_series = bool(secondary.heart_rate_data)

    for attr in ("hr_avg", "hr_min", "hr_max"):
        theirs = getattr(secondary, attr)
        if theirs is not None and (getattr(primary, attr) is None or secondary_has_series):
            changes[attr] = theirs

    if secondary_has_series and len(secondary.heart_rate_data) > len(primary.heart_rate_data):
        changes["heart_rate_data"] = list(secondary.heart_rate_data)
        changes["hr_avg"], changes["hr_min"], changes["hr_max"] = _hr_stats(secondary.heart_rate_data)

    if not primary.calories and secondary.calories:
        changes["calories"] = secondary.calories
    for attr in ("elevation_gain_m", "cadence_avg", "stride_length_avg"):
        if not getattr(primary, attr) and getattr(secondary, attr):
            changes[attr] = getattr(secondary, attr)
    for attr in ("cadence_data", "stride_length_data"):
        if not getattr(primary, attr) and getattr(secondary, attr):
            changes[attr] = list(getattr(secondary, attr))

    merged = replace(primary, **changes)
    return fill_from_series(merged)


def deduplicate_workouts(
    workouts: Iterable[WorkoutRecord],
    primary: str = SOURCE_APPLE,
    secondary: str = SOURCE_STRAVA,
    merge: bool = True,
) -> list[WorkoutRecord]:
    """
    Drop secondary-source duplicates of primary-source workouts.

    Output order: primaries (merged when `merge`), surviving secondaries,
    then workouts of any other source. Running the function on its own
    output returns the same list.
    """
    workouts = list(workouts)
    primaries = [w for w in workouts if w.source == primary]
    secondaries = [w for w in workouts if w.source == secondary]
    others = [w for w in workouts if w.source not in (primary, secondary)]

    merged_into: dict[int, WorkoutRecord] = {}
    kept_secondaries: list[WorkoutRecord] = []
    for sec in secondaries:
        for i, prim in enumerate(primaries):
            if is_duplicate(prim, sec):
                log.debug("Duplicate: %s matches %s (score %.2f)",
                          sec.id, prim.id, workout_similarity(prim, sec))
                if merge:
                    merged_into[i] = merge_workouts(merged_into.get(i, prim), sec)
                break
        else:
            kept_secondaries.append(sec)

    result = [merged_into.get(i, p) for i, p in enumerate(primaries)]
    dropped = len(secondaries) - len(kept_secondaries)
    if dropped:
        log.info("Dedup: dropped %d %s workouts duplicating %s records", dropped, secondary, primary)
    return result + kept_secondaries + others


# ─────────────────────────────────────────────────────────────────────────────
# 2. ENRICH
# ─────────────────────────────────────────────────────────────────────────────

def fill_from_series(w: WorkoutRecord) -> WorkoutRecord:
    """Derive missing HR / cadence / stride averages from attached series."""
    changes: dict = {}
    if w.heart_rate_data and (w.hr_avg is None or w.hr_min is None or w.hr_max is None):
        avg, lo, hi = _hr_stats(w.heart_rate_data)
        if w.hr_avg is None:
            changes["hr_avg"] = avg
        if w.hr_min is None:
            changes["hr_min"] = lo
        if w.hr_max is None:
            changes["hr_max"] = hi
    if w.cadence_data and not w.cadence_avg:
        changes["cadence_avg"] = float(round(mean(s.value for s in w.cadence_data)))
    if w.stride_length_data and not w.stride_length_avg:
        changes["stride_length_avg"] = mean(s.value for s in w.stride_length_data)
    return replace(w, **changes) if changes else w


def _closest_workout(when: datetime, candidates: Iterable[WorkoutRecord],
                     window_min: float) -> Optional[WorkoutRecord]:
    best, best_dt = None, None
    for w in candidates:
        dt = minutes_apart(when, w.start)
        if dt < window_min and (best_dt is None or dt < best_dt):
            best, best_dt = w, dt
    return best


def find_route_for_workout(workout: WorkoutRecord, routes: Iterable[TrackRoute]) -> Optional[TrackRoute]:
    best, best_dt = None, None
    for r in routes:
        if r.start_time is None:
            continue
        dt = minutes_apart(workout.start, r.start_time)
        if dt < LINK_WINDOW_MIN and (best_dt is None or dt < best_dt):
            best, best_dt = r, dt
    return best


def enrich_workout(
    workout: WorkoutRecord,
    workouts: Iterable[WorkoutRecord] = (),
    routes: Iterable[TrackRoute] = (),
) -> WorkoutRecord:
    """Read-time merged view of one workout; nothing is persisted."""
    changes: dict = {}
    other = _closest_workout(
        workout.start, (w for w in workouts if w.source != workout.source), ENRICH_WINDOW_MIN
    )
    if other is not None:
        for attr in ("hr_avg", "hr_min", "hr_max", "cadence_avg", "stride_length_avg",
                     "elevation_gain_m"):
            if getattr(workout, attr) is None and getattr(other, attr) is not None:
                changes[attr] = getattr(other, attr)
        if not workout.calories and other.calories:
            changes["calories"] = other.calories
        for attr in ("heart_rate_data", "cadence_data", "stride_length_data"):
            if not getattr(workout, attr) and getattr(other, attr):
                changes[attr] = list(getattr(other, attr))

    route = find_route_for_workout(workout, routes)
    if route is not None and route.points:
        if workout.elevation_gain_m is None and "elevation_gain_m" not in changes:
            changes["elevation_gain_m"] = elevation_gain_m([p.ele for p in route.points])
        if not workout.heart_rate_data and "heart_rate_data" not in changes:
            route_hr = route.heart_rate_data or [
                Sample(p.time, p.hr) for p in route.points if p.hr
            ]
            if route_hr:
                changes["heart_rate_data"] = list(route_hr)

    return fill_from_series(replace(workout, **changes) if changes else workout)


# ─────────────────────────────────────────────────────────────────────────────
# 3. LINK
# ─────────────────────────────────────────────────────────────────────────────

def link_route_to_workout(
    route: TrackRoute, workouts: Iterable[WorkoutRecord]
) -> tuple[TrackRoute, Optional[WorkoutRecord]]:
    """
    Closest workout starting within LINK_WINDOW_MIN of the route start.

    Returns (new_route, workout). Without a match the route comes back
    unchanged and the workout is None. Re-running with refreshed workouts
    simply refreshes the copied HR fields.
    """
    if route.start_time is None:
        return route, None
    match = _closest_workout(route.start_time, workouts, LINK_WINDOW_MIN)
    if match is None:
        return route, None
    linked = replace(
        route,
        hr_avg=match.hr_avg,
        hr_min=match.hr_min,
        hr_max=match.hr_max,
        heart_rate_data=list(match.heart_rate_data) if match.heart_rate_data else route.heart_rate_data,
        linked_workout_id=match.id,
    )
    return linked, match


def link_routes(routes: Iterable[TrackRoute], workouts: Iterable[WorkoutRecord]) -> list[TrackRoute]:
    workouts = list(workouts)
    out, linked = [], 0
    for r in routes:
        new_route, match = link_route_to_workout(r, workouts)
        if match is not None:
            linked += 1
        out.append(new_route)
    log.info("Linked %d/%d routes to workouts", linked, len(out))
    return out


def heart_rate_at(route: TrackRoute, elapsed_ms: float) -> Optional[float]:
    """Nearest HR sample to start + elapsed, falling back to the route average."""
    if route.heart_rate_data and route.start_time is not None:
        target = route.start_time + timedelta(milliseconds=elapsed_ms)
        times = [s.time for s in route.heart_rate_data]
        i = bisect_left(times, target)
        candidates = [j for j in (i - 1, i) if 0 <= j < len(times)]
        best = min(candidates, key=lambda j: abs((times[j] - target).total_seconds()))
        return route.heart_rate_data[best].value
    return route.hr_avg


# ─────────────────────────────────────────────────────────────────────────────
# 4. SIMILARITY & CLUSTERING
# ─────────────────────────────────────────────────────────────────────────────

def route_similarity(a: TrackRoute, b: TrackRoute) -> float:
    """Score in [0, 1]; 0 when centroids are more than 2 km apart."""
    if a.center is None or b.center is None:
        return 0.0
    center_km = haversine_km(a.center.lat, a.center.lon, b.center.lat, b.center.lon)
    if center_km > SIMILARITY_MAX_CENTER_KM:
        return 0.0

    overlap = bounds_overlap_ratio(a.bounds, b.bounds)
    da, db = a.total_distance_km or 0.0, b.total_distance_km or 0.0
    distance_ratio = min(da, db) / max(da, db) if max(da, db) > 0 else 1.0
    center_score = max(0.0, 1.0 - center_km / SIMILARITY_MAX_CENTER_KM)

    score = (SIMILARITY_W_OVERLAP * overlap
             + SIMILARITY_W_DISTANCE * distance_ratio
             + SIMILARITY_W_CENTER * center_score)
    return min(1.0, max(0.0, score))


def find_similar_routes(
    target: TrackRoute,
    routes: Iterable[TrackRoute],
    threshold: float = SIMILAR_ROUTES_THRESHOLD,
) -> list[tuple[TrackRoute, float]]:
    scored = [
        (r, route_similarity(target, r))
        for r in routes if r.filename != target.filename
    ]
    scored = [(r, s) for r, s in scored if s >= threshold]
    scored.sort(key=lambda rs: rs[1], reverse=True)
    return scored


@dataclass
class RouteCluster:
    name: str
    center: Optional[LatLon]
    routes: list[TrackRoute] = field(default_factory=list)

    @property
    def total_distance_km(self) -> float:
        return sum(r.total_distance_km or 0.0 for r in self.routes)


def cluster_routes(routes: Iterable[TrackRoute],
                   threshold_km: float = CLUSTER_THRESHOLD_KM) -> list[RouteCluster]:
    """
    Greedy single-pass clustering around seed centroids.

    Every route lands in exactly one cluster; routes without a centroid are
    grouped into one "Unknown area" cluster. Members are newest-first,
    clusters largest-first.
    """
    routes = list(routes)
    located = [r for r in routes if r.center is not None]
    unlocated = [r for r in routes if r.center is None]

    clusters: list[RouteCluster] = []
    assigned: set[int] = set()
    for i, seed in enumerate(located):
        if i in assigned:
            continue
        assigned.add(i)
        cluster = RouteCluster(name=location_name(seed.center), center=seed.center, routes=[seed])
        for j in range(i + 1, len(located)):
            if j in assigned:
                continue
            other = located[j]
            if haversine_km(seed.center.lat, seed.center.lon,
                            other.center.lat, other.center.lon) <= threshold_km:
                cluster.routes.append(other)
                assigned.add(j)
        clusters.append(cluster)

    if unlocated:
        clusters.append(RouteCluster(name=location_name(None), center=None, routes=unlocated))

    for c in clusters:
        c.routes.sort(key=_start_key, reverse=True)
    clusters.sort(key=lambda c: len(c.routes), reverse=True)
    return clusters


# ─────────────────────────────────────────────────────────────────────────────
# ROUTE LIST HELPERS
# ─────────────────────────────────────────────────────────────────────────────

HR_FILTERS = ("all", "detailed", "avg_only", "none")


def hr_availability(route: TrackRoute) -> str:
    if route.heart_rate_data:
        return "detailed"
    if route.hr_avg and route.hr_avg > 0:
        return "avg_only"
    return "none"


def filter_routes_by_hr(routes: Iterable[TrackRoute], mode: str = "all") -> list[TrackRoute]:
    if mode not in HR_FILTERS:
        raise ValueError(f"Unknown HR filter {mode!r}; expected one of {HR_FILTERS}")
    routes = list(routes)
    if mode == "all":
        return routes
    return [r for r in routes if hr_availability(r) == mode]


def _start_key(r: TrackRoute) -> float:
    return r.start_time.timestamp() if r.start_time else 0.0


_SORT_KEYS = {
    "date":     _start_key,
    "distance": lambda r: r.total_distance_km or 0.0,
    "duration": lambda r: r.duration_min or 0.0,
    "pace":     lambda r: r.avg_pace or float("inf"),
}


def sort_routes(routes: Iterable[TrackRoute], by: str = "date", ascending: bool = False) -> list[TrackRoute]:
    if by not in _SORT_KEYS:
        raise ValueError(f"Unknown sort key {by!r}; expected one of {tuple(_SORT_KEYS)}")
    return sorted(routes, key=_SORT_KEYS[by], reverse=not ascending)


def compare_routes(a: TrackRoute, b: TrackRoute) -> dict:
    """Side-by-side stats; deltas are a − b (None when either side is missing)."""
    def _delta(x, y):
        return x - y if x is not None and y is not None else None

    def _summary(r: TrackRoute) -> dict:
        return {"name": r.name, "distance_km": r.total_distance_km,
                "duration_min": r.duration_min, "pace": r.avg_pace}

    return {
        "route1": _summary(a),
        "route2": _summary(b),
        "distance_diff_km": _delta(a.total_distance_km, b.total_distance_km),
        "duration_diff_min": _delta(a.duration_min, b.duration_min),
        "pace_diff": _delta(a.avg_pace, b.avg_pace),
        "similarity": route_similarity(a, b),
    }
