"""
app.py  –  Application root
===========================
`RunLab` owns every service explicitly – stores, Strava source, playback
engine – and exposes the user-level flows:

  import_export → sync_strava → import_routes → link → timeline / report

Imports and syncs are full-replace per source: all records of that source
are dropped and the new batch written in one store write, only after the
parse/fetch has fully succeeded.
"""

from __future__ import annotations

import logging
import os
from datetime import date
from typing import Iterable, Optional

from runlab import analytics
from runlab.config.settings import (
    MAX_HR,
    RESTING_HR,
    ROUTES_STORE,
    SOURCE_APPLE,
    SOURCE_STRAVA,
    WEEKLY_LOOKBACK_WEEKS,
    WORKOUTS_STORE,
)
from runlab.export_parser import ProgressCallback, parse_export
from runlab.geo import distance_unit, format_pace, km_to_display, pace_to_display
from runlab.models import TrackRoute, WorkoutRecord
from runlab.playback import PlaybackEngine, PlaybackProgress
from runlab.reconcile import (
    cluster_routes,
    deduplicate_workouts,
    enrich_workout,
    find_route_for_workout,
    link_routes,
)
from runlab.store import JsonStore
from runlab.strava_source import StravaSource
from runlab.track_parser import load_routes

log = logging.getLogger("runlab.app")


class RunLab:
    def __init__(
        self,
        workouts_store: Optional[JsonStore] = None,
        routes_store: Optional[JsonStore] = None,
        strava: Optional[StravaSource] = None,
        playback: Optional[PlaybackEngine] = None,
        max_hr: float = MAX_HR,
        resting_hr: Optional[float] = RESTING_HR,
    ) -> None:
        self.workouts_store = workouts_store if workouts_store is not None else JsonStore(WORKOUTS_STORE, "id")
        self.routes_store = routes_store if routes_store is not None else JsonStore(ROUTES_STORE, "filename")
        self._strava = strava
        self.playback = playback if playback is not None else PlaybackEngine()
        self.max_hr = max_hr
        self.resting_hr = resting_hr

    @property
    def strava(self) -> StravaSource:
        # Built on first use so commands that never sync need no credentials.
        if self._strava is None:
            self._strava = StravaSource()
        return self._strava

    # ── data access ──────────────────────────────────────────────────────────

    def workouts(self, source: Optional[str] = None) -> list[WorkoutRecord]:
        rows = (self.workouts_store.get_all() if source is None
                else self.workouts_store.get_all_by_field("source", source))
        return [WorkoutRecord.from_dict(r) for r in rows]

    def routes(self) -> list[TrackRoute]:
        return [TrackRoute.from_dict(r) for r in self.routes_store.get_all()]

    def route(self, filename: str) -> TrackRoute:
        row = self.routes_store.get(filename)
        if row is None:
            raise KeyError(f"Unknown route {filename!r}")
        return TrackRoute.from_dict(row)

    # ── flows ────────────────────────────────────────────────────────────────

    def import_export(self, path: str | os.PathLike,
                      on_progress: Optional[ProgressCallback] = None) -> int:
        workouts = parse_export(path, on_progress=on_progress)
        n = self.workouts_store.replace_where("source", SOURCE_APPLE, (w.to_dict() for w in workouts))
        log.info("Imported %d health-export workouts", n)
        return n

    def sync_strava(self, with_hr_streams: bool = True) -> int:
        runs = self.strava.fetch_runs(with_hr_streams=with_hr_streams)
        n = self.workouts_store.replace_where("source", SOURCE_STRAVA, (w.to_dict() for w in runs))
        log.info("Synced %d Strava runs", n)
        return n

    def import_routes(self, paths: Iterable[str | os.PathLike]) -> int:
        routes = load_routes(paths)
        return self.routes_store.bulk_put(r.to_dict() for r in routes)

    def link_routes(self) -> int:
        """Link every stored route against the deduplicated timeline and persist."""
        linked = link_routes(self.routes(), deduplicate_workouts(self.workouts()))
        self.routes_store.bulk_put(r.to_dict() for r in linked)
        return sum(1 for r in linked if r.linked_workout_id)

    def timeline(self) -> list[WorkoutRecord]:
        """Deduplicated, enriched workouts, newest first. Nothing is persisted."""
        everything = self.workouts()
        routes = self.routes()
        merged = deduplicate_workouts(everything)
        enriched = [enrich_workout(w, everything, routes) for w in merged]
        enriched.sort(key=lambda w: w.start, reverse=True)
        return enriched

    def race(self, filename_a: str, filename_b: Optional[str] = None,
             speed: Optional[float] = None) -> PlaybackProgress:
        opponent = self.route(filename_b) if filename_b else None
        return self.playback.start(self.route(filename_a), opponent, speed=speed)

    # ── reporting ────────────────────────────────────────────────────────────

    def report(self, today: Optional[date] = None, weeks: int = WEEKLY_LOOKBACK_WEEKS) -> dict:
        timeline = self.timeline()
        routes = self.routes()
        vo2 = [v for v in (analytics.estimate_vo2max(w, self.max_hr) for w in timeline) if v]
        best_paces = [
            p for p in (analytics.best_pace_from_route(find_route_for_workout(w, routes))
                        for w in timeline)
            if p
        ]
        return {
            "dashboard": analytics.dashboard_summary(timeline, today),
            "weekly":    analytics.weekly_rollup(timeline, weeks=weeks, today=today),
            "zones":     analytics.zone_distribution(timeline, self.max_hr, self.resting_hr),
            "vo2max":    max(vo2) if vo2 else None,
            "best_pace": min(best_paces) if best_paces else None,
            "clusters":  cluster_routes(routes),
        }


def format_report(report: dict, use_metric: bool = True) -> list[str]:
    """Plain-text report lines (unit conversion happens here only)."""
    unit = distance_unit(use_metric)
    d = report["dashboard"]

    def km(v):
        return f"{km_to_display(v, use_metric):.1f} {unit}"

    def pace(v):
        return f"{format_pace(pace_to_display(v, use_metric))} /{unit}"

    lines = [
        f"Runs: {d['total_runs']}  ·  total {km(d['total_distance_km'])}",
        f"This week: {km(d['this_week_km'])}  (last week {km(d['last_week_km'])})",
        f"This month: {km(d['this_month_km'])}  (last month {km(d['last_month_km'])})",
        f"Average pace: {pace(d['avg_pace'])}",
    ]
    if report.get("best_pace"):
        lines.append(f"Best pace: {pace(report['best_pace'])}")
    if report.get("vo2max"):
        lines.append(f"VO2max estimate: {report['vo2max']:.1f} ml/kg/min")
    lines.append("Weekly volume:")
    for week, row in report["weekly"].iterrows():
        lines.append(f"  {week:%Y-%m-%d}  {km(row['distance_km']):>10}  {int(row['runs'])} runs")
    lines.append("HR zones (min):")
    for zone, minutes in report["zones"].items():
        lines.append(f"  Z{zone}: {minutes:.0f}")
    if report["clusters"]:
        lines.append("Route areas:")
        for c in report["clusters"]:
            lines.append(f"  {c.name}: {len(c.routes)} routes")
    return lines
