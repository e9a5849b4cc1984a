"""
playback.py  –  Route Playback / Race Simulation
================================================
Deterministic time-stepped replay of one route, or a race between two.

A fixed-rate tick (PLAYBACK_TICK_MS of real time) advances the simulated
clock by ``tick_ms × speed``. Each track keeps a forward-only pointer to
the last point whose offset-from-start is <= the clock; seeking rescans
from the start. The engine never renders – every tick emits a
PlaybackProgress to the ``on_progress`` callback.

Ticks come either from the caller (``engine.tick()``, used by tests and
batch tooling) or from an AsyncioTickDriver attached to a running loop.

State machine:  idle → playing ⇄ paused → idle
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from runlab.config.settings import PLAYBACK_SPEED_DEFAULT, PLAYBACK_TICK_MS
from runlab.models import TrackPoint, TrackRoute
from runlab.reconcile import heart_rate_at

log = logging.getLogger("runlab.playback")

IDLE    = "idle"
PLAYING = "playing"
PAUSED  = "paused"


# ─────────────────────────────────────────────────────────────────────────────
# EVENTS
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TrackProgress:
    track: int                      # 0 or 1
    point_index: int
    total_points: int
    point: Optional[TrackPoint]
    distance_km: float
    finished: bool
    finish_time_ms: Optional[float]
    hr: Optional[float]


@dataclass(frozen=True)
class PlaybackProgress:
    elapsed_ms: float
    progress_pct: float
    speed: float
    state: str
    tracks: tuple[TrackProgress, ...] = field(default_factory=tuple)

    @property
    def leader(self) -> Optional[int]:
        """Track index furthest along (dual mode); None on a tie or single track."""
        if len(self.tracks) != 2:
            return None
        a, b = self.tracks
        if a.distance_km == b.distance_km:
            return None
        return 0 if a.distance_km > b.distance_km else 1


# ─────────────────────────────────────────────────────────────────────────────
# CURSOR
# ─────────────────────────────────────────────────────────────────────────────

class TrackCursor:
    """Forward-only position pointer over one route's points."""

    def __init__(self, route: TrackRoute) -> None:
        self.route = route
        pts = route.points
        t0 = pts[0].time if pts else None
        self.offsets_ms = [(p.time - t0).total_seconds() * 1000.0 for p in pts]
        self.index = 0
        self.finished = False

    @property
    def duration_ms(self) -> float:
        return self.offsets_ms[-1] if self.offsets_ms else 0.0

    @property
    def point(self) -> Optional[TrackPoint]:
        return self.route.points[self.index] if self.route.points else None

    @property
    def at_end(self) -> bool:
        return self.index >= len(self.offsets_ms) - 1

    def advance(self, elapsed_ms: float) -> None:
        offsets = self.offsets_ms
        while self.index + 1 < len(offsets) and offsets[self.index + 1] <= elapsed_ms:
            self.index += 1
        if not self.finished and self.at_end:
            self.finished = True

    def seek(self, elapsed_ms: float) -> None:
        self.index = 0
        self.finished = False
        offsets = self.offsets_ms
        while self.index + 1 < len(offsets) and offsets[self.index + 1] <= elapsed_ms:
            self.index += 1

    def snapshot(self, track: int, elapsed_ms: float) -> TrackProgress:
        p = self.point
        hr = p.hr if p is not None and p.hr else heart_rate_at(self.route, min(elapsed_ms, self.duration_ms))
        return TrackProgress(
            track=track,
            point_index=self.index,
            total_points=len(self.offsets_ms),
            point=p,
            distance_km=p.cumulative_km if p is not None else 0.0,
            finished=self.finished,
            finish_time_ms=self.duration_ms if self.finished else None,
            hr=hr,
        )


# ─────────────────────────────────────────────────────────────────────────────
# TICK DRIVER
# ─────────────────────────────────────────────────────────────────────────────

class AsyncioTickDriver:
    """Repeating ``loop.call_later`` timer; ``cancel()`` takes effect immediately."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None
        self._callback: Optional[Callable[[], None]] = None
        self._interval_s = 0.0

    @property
    def active(self) -> bool:
        return self._handle is not None

    def start(self, callback: Callable[[], None], interval_ms: float) -> None:
        self.cancel()
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._callback = callback
        self._interval_s = interval_ms / 1000.0
        self._handle = self._loop.call_later(self._interval_s, self._fire)

    def _fire(self) -> None:
        self._handle = self._loop.call_later(self._interval_s, self._fire)
        self._callback()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


# ─────────────────────────────────────────────────────────────────────────────
# ENGINE
# ─────────────────────────────────────────────────────────────────────────────

ProgressCallback = Callable[[PlaybackProgress], None]


class PlaybackEngine:
    """
    One playback session at a time (single route or two-route race).

    Starting a new session cancels the previous tick driver first. Pausing
    and stopping keep the simulated clock, so ``resume()`` continues from
    the same point.
    """

    def __init__(
        self,
        tick_ms: float = PLAYBACK_TICK_MS,
        on_progress: Optional[ProgressCallback] = None,
        on_complete: Optional[ProgressCallback] = None,
        driver: Optional[AsyncioTickDriver] = None,
    ) -> None:
        self.tick_ms = tick_ms
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.driver = driver

        self.state = IDLE
        self.elapsed_ms = 0.0
        self.speed: float = PLAYBACK_SPEED_DEFAULT
        self.cursors: list[TrackCursor] = []
        self.completed = False

    # ── session ──────────────────────────────────────────────────────────────

    @property
    def dual(self) -> bool:
        return len(self.cursors) == 2

    @property
    def duration_ms(self) -> float:
        """Longest track duration – a race ends when the slower runner does."""
        return max((c.duration_ms for c in self.cursors), default=0.0)

    def start(
        self,
        route: TrackRoute,
        opponent: Optional[TrackRoute] = None,
        speed: Optional[float] = None,
        start_percent: float = 0.0,
    ) -> PlaybackProgress:
        self._cancel_driver()
        self.cursors = [TrackCursor(route)]
        if opponent is not None:
            self.cursors.append(TrackCursor(opponent))
        if speed is not None:
            self._check_speed(speed)
            self.speed = speed
        self.completed = False
        self.elapsed_ms = 0.0
        if start_percent:
            self.seek_percent(start_percent)
        self.state = PLAYING
        self._start_driver()
        log.debug("Playback started: %s%s at ×%s", route.name,
                  f" vs {opponent.name}" if opponent is not None else "", self.speed)
        return self.progress()

    def tick(self) -> Optional[PlaybackProgress]:
        """Advance the clock by one tick. No-op unless playing."""
        if self.state != PLAYING:
            return None
        self.elapsed_ms += self.tick_ms * self.speed
        for c in self.cursors:
            c.advance(self.elapsed_ms)
        progress = self.progress()
        if self.on_progress is not None:
            self.on_progress(progress)
        if all(c.finished for c in self.cursors):
            self._complete()
            progress = self.progress()
        return progress

    def _complete(self) -> None:
        self._cancel_driver()
        self.state = IDLE
        self.completed = True
        final = self.progress()
        log.debug("Playback complete at %.0f ms", self.elapsed_ms)
        if self.on_complete is not None:
            self.on_complete(final)

    # ── controls ─────────────────────────────────────────────────────────────

    @staticmethod
    def _check_speed(speed: float) -> None:
        if speed <= 0:
            raise ValueError(f"Playback speed must be positive, got {speed}")

    def set_speed(self, speed: float) -> None:
        """Takes effect on the next tick."""
        self._check_speed(speed)
        self.speed = speed

    def pause(self) -> None:
        if self.state == PLAYING:
            self._cancel_driver()
            self.state = PAUSED

    def resume(self) -> None:
        if self.state == PLAYING or not self.cursors or self.completed:
            return
        self.state = PLAYING
        self._start_driver()

    def stop(self) -> None:
        """Release the tick driver; the clock stays where it is."""
        self._cancel_driver()
        self.state = IDLE

    def seek_percent(self, percent: float) -> PlaybackProgress:
        percent = min(100.0, max(0.0, percent))
        self.elapsed_ms = percent / 100.0 * self.duration_ms
        for c in self.cursors:
            c.seek(self.elapsed_ms)
        self.completed = False
        progress = self.progress()
        if self.on_progress is not None:
            self.on_progress(progress)
        return progress

    # ── events ───────────────────────────────────────────────────────────────

    def progress(self) -> PlaybackProgress:
        duration = self.duration_ms
        pct = min(100.0, self.elapsed_ms / duration * 100.0) if duration > 0 else (
            100.0 if self.cursors and all(c.finished for c in self.cursors) else 0.0
        )
        return PlaybackProgress(
            elapsed_ms=self.elapsed_ms,
            progress_pct=pct,
            speed=self.speed,
            state=self.state,
            tracks=tuple(c.snapshot(i, self.elapsed_ms) for i, c in enumerate(self.cursors)),
        )

    # ── driver ───────────────────────────────────────────────────────────────

    def _start_driver(self) -> None:
        if self.driver is not None:
            self.driver.start(self.tick, self.tick_ms)

    def _cancel_driver(self) -> None:
        if self.driver is not None:
            self.driver.cancel()
