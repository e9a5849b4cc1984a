"""
strava_source.py  –  Third-Party Activity Source (Strava API)
=============================================================
Pulls run activities through stravalib and normalises them to
WorkoutRecord (source "strava").

  • OAuth2 refresh flow – credentials from .env, required only when a sync
    actually runs (EnvironmentError with the missing variable's name)
  • Complete history – `Client.get_activities(limit=None)` pages on its own
  • Rate limiting (~100 requests / 15 min), one slot per page or stream call
  • Optional HR stream per activity (heartrate + time → absolute samples)

The stravalib Client is injected, so tests pass a fake with the same
``get_activities`` / ``get_activity_streams`` / ``refresh_access_token``
surface.
"""

from __future__ import annotations

import logging
import os
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from stravalib.client import Client

from runlab.config.settings import (
    SOURCE_STRAVA,
    STRAVA_PAGE_SIZE,
    STRAVA_RATE_LIMIT_MARGIN_S,
    STRAVA_RATE_LIMIT_MAX,
    STRAVA_RATE_LIMIT_WINDOW,
)
from runlab.models import Sample, WorkoutRecord, parse_timestamp

log = logging.getLogger("runlab.strava_source")

RUN_TYPE = "Run"
HR_STREAM_TYPES = ["heartrate", "time"]


# ─────────────────────────────────────────────────────────────────────────────
# CREDENTIALS
# ─────────────────────────────────────────────────────────────────────────────

def _require_env_int(key: str) -> int:
    raw = os.environ.get(key, "").strip()
    if not raw:
        raise EnvironmentError(f"Missing required environment variable '{key}'. Check your .env file.")
    try:
        return int(raw)
    except ValueError:
        raise EnvironmentError(f"Variable '{key}' must be an integer, got {raw!r}")


def _require_env_str(key: str) -> str:
    raw = os.environ.get(key, "").strip()
    if not raw:
        raise EnvironmentError(f"Missing required environment variable '{key}'. Check your .env file.")
    return raw


@dataclass(frozen=True)
class StravaCredentials:
    client_id: int
    client_secret: str
    refresh_token: str

    @classmethod
    def from_env(cls) -> "StravaCredentials":
        return cls(
            client_id=_require_env_int("STRAVA_CLIENT_ID"),
            client_secret=_require_env_str("STRAVA_CLIENT_SECRET"),
            refresh_token=_require_env_str("STRAVA_REFRESH_TOKEN"),
        )


# ─────────────────────────────────────────────────────────────────────────────
# RATE LIMITER
# ─────────────────────────────────────────────────────────────────────────────

class RateLimiter:
    """
    Paces API calls to at most ``max_requests`` per ``window_seconds``.

    ``acquire()`` is called once before every request. When the window is
    full it sleeps until the oldest call has aged out, plus ``margin_s``.
    """

    def __init__(self, max_requests: int = STRAVA_RATE_LIMIT_MAX,
                 window_seconds: float = STRAVA_RATE_LIMIT_WINDOW,
                 margin_s: float = STRAVA_RATE_LIMIT_MARGIN_S):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.margin_s = margin_s
        self.calls: deque[float] = deque()

    def _expire(self, now: float) -> None:
        while self.calls and self.calls[0] <= now - self.window_seconds:
            self.calls.popleft()

    def acquire(self) -> None:
        now = time.time()
        self._expire(now)
        if len(self.calls) >= self.max_requests:
            wait_secs = self.calls[0] + self.window_seconds - now + self.margin_s
            log.warning("Strava rate limit: %d calls in the last %.0f s, pausing %.0f s",
                        len(self.calls), self.window_seconds, wait_secs)
            time.sleep(wait_secs)
            now = time.time()
            self._expire(now)
        self.calls.append(now)


# ─────────────────────────────────────────────────────────────────────────────
# TRANSFORMS
# ─────────────────────────────────────────────────────────────────────────────

def _field(obj, key: str):
    """Attribute of a stravalib model, or key of a raw API dict."""
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def _num(value) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, timedelta):
        return value.total_seconds()
    value = getattr(value, "magnitude", value)      # pint quantities in older stravalib
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _activity_type(activity) -> Optional[str]:
    kind = _field(activity, "type")
    # stravalib wraps the type string in a root model (pydantic v2 / v1)
    for attr in ("root", "__root__", "value"):
        kind = getattr(kind, attr, kind)
    return str(kind) if kind is not None else None


def _start(activity) -> datetime:
    raw = _field(activity, "start_date")
    if isinstance(raw, datetime):
        return raw if raw.tzinfo is not None else raw.replace(tzinfo=timezone.utc)
    start = parse_timestamp(str(raw)) if raw is not None else None
    if start is None:
        raise ValueError(f"activity {_field(activity, 'id')} has no start date")
    return start


def transform_activity(activity) -> Optional[WorkoutRecord]:
    """stravalib SummaryActivity (or its raw JSON dict) → WorkoutRecord; None for non-runs."""
    if _activity_type(activity) != RUN_TYPE:
        return None
    activity_id = _field(activity, "id")
    cadence = _num(_field(activity, "average_cadence"))
    return WorkoutRecord(
        id=f"{SOURCE_STRAVA}_{activity_id}",
        source=SOURCE_STRAVA,
        start=_start(activity),
        duration_min=(_num(_field(activity, "moving_time")) or 0.0) / 60.0,
        distance_km=(_num(_field(activity, "distance")) or 0.0) / 1000.0,
        calories=_num(_field(activity, "calories")) or 0.0,
        hr_avg=_num(_field(activity, "average_heartrate")),
        hr_max=_num(_field(activity, "max_heartrate")),
        cadence_avg=cadence * 2 if cadence is not None else None,   # per-foot → steps/min
        speed_avg=_num(_field(activity, "average_speed")),
        elevation_gain_m=_num(_field(activity, "total_elevation_gain")),
        name=str(_field(activity, "name") or ""),
        source_name="Strava",
        external_id=str(activity_id),
    )


def _stream_data(streams, kind: str) -> list:
    """Accepts keyed-by-type mappings (stravalib) and plain stream lists."""
    if isinstance(streams, dict):
        entry = streams.get(kind)
    else:
        entry = next((e for e in streams or [] if _field(e, "type") == kind), None)
    if entry is None:
        return []
    return list(_field(entry, "data") or [])


def hr_samples_from_streams(streams, start) -> list[Sample]:
    hr = _stream_data(streams, "heartrate")
    secs = _stream_data(streams, "time")
    return [
        Sample(start + timedelta(seconds=t), float(v))
        for t, v in zip(secs, hr)
        if t is not None and v is not None
    ]


# ─────────────────────────────────────────────────────────────────────────────
# SOURCE
# ─────────────────────────────────────────────────────────────────────────────

class StravaSource:
    def __init__(
        self,
        client: Optional[Client] = None,
        credentials: Optional[StravaCredentials] = None,
        rate_limiter: Optional[RateLimiter] = None,
        page_size: int = STRAVA_PAGE_SIZE,
    ) -> None:
        self.client = client if client is not None else Client()
        self._credentials = credentials
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter()
        self.page_size = page_size
        self._authenticated = False

    def authenticate(self) -> None:
        """Refresh the access token, or use STRAVA_ACCESS_TOKEN when no refresh token is set."""
        if self._authenticated:
            return
        access = os.environ.get("STRAVA_ACCESS_TOKEN", "").strip()
        if self._credentials is None and access and not os.environ.get("STRAVA_REFRESH_TOKEN"):
            self.client.access_token = access
            self._authenticated = True
            return
        creds = self._credentials or StravaCredentials.from_env()
        log.info("Refreshing Strava access token (client %d)...", creds.client_id)
        response = self.client.refresh_access_token(
            client_id=creds.client_id,
            client_secret=creds.client_secret,
            refresh_token=creds.refresh_token,
        )
        self.client.access_token = response["access_token"]
        self._authenticated = True

    def fetch_activities(self) -> list:
        """Complete activity history (limit=None); stravalib requests the pages lazily."""
        self.authenticate()
        activities = []
        it = iter(self.client.get_activities(limit=None))
        while True:
            if len(activities) % self.page_size == 0:
                self.rate_limiter.acquire()     # the next item opens a new page
            activity = next(it, None)
            if activity is None:
                break
            activities.append(activity)
        log.info("Fetched %d Strava activities", len(activities))
        return activities

    def fetch_hr_stream(self, external_id: str, start) -> Optional[list[Sample]]:
        """HR samples for one activity; None when the stream cannot be fetched."""
        self.authenticate()
        self.rate_limiter.acquire()
        try:
            streams = self.client.get_activity_streams(int(external_id), types=HR_STREAM_TYPES)
        except Exception as exc:
            log.warning("HR stream for activity %s unavailable: %s", external_id, exc)
            return None
        return hr_samples_from_streams(streams, start) or None

    def fetch_runs(self, with_hr_streams: bool = False) -> list[WorkoutRecord]:
        runs = [w for w in map(transform_activity, self.fetch_activities()) if w is not None]
        if with_hr_streams:
            for w in runs:
                samples = self.fetch_hr_stream(w.external_id, w.start)
                if samples:
                    values = [s.value for s in samples]
                    w.heart_rate_data = samples
                    w.hr_min = min(values)
                    if w.hr_max is None:
                        w.hr_max = max(values)
        log.info("Strava: %d runs", len(runs))
        return runs
