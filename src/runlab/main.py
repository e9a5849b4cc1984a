"""
main.py – runlab · Central Entry Point
======================================
Orchestrates the pipeline:

  1. IMPORT  – stream-parse a health export (export.xml or export.zip)
  2. SYNC    – pull runs (+ HR streams) from the Strava API
  3. ROUTES  – parse GPX / FIT track logs into the route store
  4. LINK    – attach workout HR data to routes by start time
  5. REPORT  – dashboard, weekly volume, HR zones, route areas

Usage
-----
    runlab import --export data/export.zip
    runlab routes --tracks data/routes
    runlab sync link report
    runlab race --race a.gpx b.gpx --speed 60
"""

from __future__ import annotations

import argparse
import logging
import time

from runlab.app import RunLab, format_report
from runlab.config.settings import DATA_DIR, LOGS_DIR, PLAYBACK_SPEED_DEFAULT, ROUTES_DIR, STORE_DIR
from runlab.export_parser import ParseProgress
from runlab.geo import format_duration

log = logging.getLogger("runlab")


def setup_logging(verbose: bool = False) -> None:
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(message)s",
        datefmt="%H:%M:%S",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(LOGS_DIR / "runlab.log", encoding="utf-8"),
        ],
    )


def ensure_directories() -> None:
    for d in (DATA_DIR, STORE_DIR, ROUTES_DIR, LOGS_DIR):
        d.mkdir(parents=True, exist_ok=True)


def _banner(title: str) -> None:
    log.info("=" * 60)
    log.info(title)
    log.info("=" * 60)


# ═══════════════════════════════════════════════════════════════════════════════
# PIPELINE STEPS
# ═══════════════════════════════════════════════════════════════════════════════

def step_import(lab: RunLab, args: argparse.Namespace) -> None:
    _banner("IMPORT – health export")
    if not args.export:
        raise SystemExit("import: --export PATH is required")
    last = [-10.0]

    def on_progress(p: ParseProgress) -> None:
        if p.percent is not None and p.percent - last[0] >= 10:
            last[0] = p.percent
            log.info("  %5.1f %%  %d workouts", p.percent, p.workouts_found)

    lab.import_export(args.export, on_progress=on_progress)


def step_sync(lab: RunLab, args: argparse.Namespace) -> None:
    _banner("SYNC – Strava API")
    lab.sync_strava(with_hr_streams=not args.no_streams)


def step_routes(lab: RunLab, args: argparse.Namespace) -> None:
    _banner("ROUTES – GPX / FIT track logs")
    lab.import_routes(args.tracks or [ROUTES_DIR])


def step_link(lab: RunLab, args: argparse.Namespace) -> None:
    _banner("LINK – routes ↔ workouts")
    n = lab.link_routes()
    log.info("%d routes carry workout HR data", n)


def step_report(lab: RunLab, args: argparse.Namespace) -> None:
    _banner("REPORT")
    for line in format_report(lab.report(), use_metric=not args.imperial):
        log.info(line)


def step_race(lab: RunLab, args: argparse.Namespace) -> None:
    _banner("RACE – route playback")
    if not args.race:
        raise SystemExit("race: --race ROUTE [ROUTE] is required")
    engine = lab.playback
    progress = lab.race(args.race[0], args.race[1] if len(args.race) > 1 else None, speed=args.speed)
    next_mark = 0.0
    while engine.state == "playing":
        progress = engine.tick()
        if progress.progress_pct >= next_mark:
            next_mark += 10
            parts = [f"{t.distance_km:.2f} km{' ✓' if t.finished else ''}" for t in progress.tracks]
            log.info("  %5.1f %%  %s  |  %s", progress.progress_pct,
                     format_duration(progress.elapsed_ms / 60000), "  vs  ".join(parts))
    for t in progress.tracks:
        if t.finish_time_ms is not None:
            log.info("  Track %d finished in %s", t.track + 1, format_duration(t.finish_time_ms / 60000))


# ═══════════════════════════════════════════════════════════════════════════════
# MAIN
# ═══════════════════════════════════════════════════════════════════════════════

STEPS = {
    "import": step_import,
    "sync":   step_sync,
    "routes": step_routes,
    "link":   step_link,
    "report": step_report,
    "race":   step_race,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="runlab",
        description="runlab – running-data reconciliation pipeline",
        epilog="Steps run in the order given. Without steps: link → report.",
    )
    parser.add_argument("steps", nargs="*", metavar="STEP",
                        help=f"Pipeline step(s) to run: {', '.join(STEPS)}")
    parser.add_argument("--export", metavar="PATH", help="export.xml or export.zip for 'import'")
    parser.add_argument("--tracks", metavar="PATH", nargs="+",
                        help="GPX/FIT files or directories for 'routes' (default: data/routes)")
    parser.add_argument("--race", metavar="ROUTE", nargs="+", help="one or two route filenames for 'race'")
    parser.add_argument("--speed", type=float, default=PLAYBACK_SPEED_DEFAULT, help="playback multiplier")
    parser.add_argument("--no-streams", action="store_true", help="skip per-activity HR streams on sync")
    parser.add_argument("--imperial", action="store_true", help="report in miles")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_intermixed_args(argv)
    args.steps = args.steps or ["link", "report"]
    unknown = [s for s in args.steps if s not in STEPS]
    if unknown:
        parser.error(f"unknown step(s): {', '.join(unknown)}")
    setup_logging(args.verbose)
    ensure_directories()

    log.info("runlab  ·  Pipeline Start")
    log.info("Steps: %s", ", ".join(args.steps))

    lab = RunLab()
    t0 = time.time()
    for name in args.steps:
        STEPS[name](lab, args)
    elapsed = time.time() - t0

    log.info("=" * 60)
    log.info("Pipeline finished in %.1f s", elapsed)
    log.info("=" * 60)


if __name__ == "__main__":
    main()
