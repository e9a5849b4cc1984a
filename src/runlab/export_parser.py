"""
export_parser.py  –  Streaming Health-Export Parser
====================================================
Extracts running workouts plus heart-rate / cadence / stride-length samples
from a (potentially multi-hundred-MB) health export without ever holding
the whole document in memory.

Two independent passes run over every incoming chunk:

  1. WORKOUTS – `<Workout …>` elements (self-closing or `…</Workout>`).
     An element whose end has not arrived yet is retained, from its start
     marker, for the next chunk.
  2. RECORDS  – `<Record …>` opening tags for HR, step count (→ cadence)
     and stride length. The buffer is trimmed behind the last matched tag,
     but never below MAX_RECORD_CHARS so a tag arriving mid-split survives.

After the last chunk every sample list is sorted and joined onto the
workouts it falls into: [start, start + duration], both ends inclusive.

Usage
-----
    workouts = parse_export("export.zip", on_progress=print)
"""

from __future__ import annotations

import asyncio
import codecs
import html
import logging
import math
import os
import re
import zipfile
from bisect import bisect_left, bisect_right
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from statistics import mean
from typing import Callable, Iterable, Iterator, Optional

from runlab.config.settings import (
    CADENCE_MAX_SPM,
    CADENCE_MIN_SPM,
    EXPORT_CHUNK_SIZE,
    KM_PER_MILE,
    MAX_RECORD_CHARS,
    MAX_WORKOUT_CHARS,
    RUNNING_ACTIVITY_TYPE,
    SOURCE_APPLE,
)
from runlab.models import Sample, WorkoutRecord, parse_timestamp

log = logging.getLogger("runlab.export_parser")

# ─────────────────────────────────────────────────────────────────────────────
# TAG SCANNING
# ─────────────────────────────────────────────────────────────────────────────

_WORKOUT_OPEN  = re.compile(r"<Workout[\s/>]")
_WORKOUT_CLOSE = "</Workout>"
# Longest prefix of a start marker that can sit unfinished at a chunk end.
_WORKOUT_MARKER_TAIL = len("<Workout")

# Body of a tag up to its closing '>', quote-aware ('>' is legal inside values).
_TAG_REST   = re.compile(r"""(?:[^>"']|"[^"]*"|'[^']*')*>""")
_RECORD_TAG = re.compile(r"""<Record\b((?:[^>"']|"[^"]*"|'[^']*')*)>""")
_STAT_TAG   = re.compile(r"""<WorkoutStatistics\b((?:[^>"']|"[^"]*"|'[^']*')*)>""")
_ATTR       = re.compile(r"""([\w:.-]+)\s*=\s*(?:"([^"]*)"|'([^']*)')""")

HR_TYPE     = "HKQuantityTypeIdentifierHeartRate"
STEP_TYPE   = "HKQuantityTypeIdentifierStepCount"
STRIDE_TYPE = "HKQuantityTypeIdentifierRunningStrideLength"

_STAT_DISTANCE = "HKQuantityTypeIdentifierDistanceWalkingRunning"
_STAT_ENERGY   = "HKQuantityTypeIdentifierActiveEnergyBurned"
_STAT_SPEED    = "HKQuantityTypeIdentifierRunningSpeed"

_DATE_FORMATS = ("%Y-%m-%d %H:%M:%S %z", "%Y-%m-%d %H:%M:%S.%f %z")

_DURATION_TO_MIN = {"min": 1.0, "s": 1 / 60, "sec": 1 / 60, "hr": 60.0, "h": 60.0}
_DISTANCE_TO_KM  = {"km": 1.0, "mi": KM_PER_MILE, "m": 0.001}
_LENGTH_TO_M     = {"m": 1.0, "cm": 0.01, "km": 1000.0}


def parse_attrs(tag_body: str) -> dict[str, str]:
    """Attribute string → dict with XML entities decoded."""
    return {
        m.group(1): html.unescape(m.group(2) if m.group(2) is not None else m.group(3))
        for m in _ATTR.finditer(tag_body)
    }


def parse_export_date(raw: str) -> datetime:
    """'2024-01-15 07:30:00 -0500' → aware datetime. Raises ValueError."""
    raw = raw.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt)
        except ValueError:
            continue
    dt = parse_timestamp(raw)
    if dt is None:
        raise ValueError("empty date")
    return dt


def _float(attrs: dict, key: str) -> Optional[float]:
    raw = attrs.get(key)
    if raw is None or raw.strip() == "":
        return None
    return float(raw)


# ─────────────────────────────────────────────────────────────────────────────
# PROGRESS
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ParseProgress:
    percent: Optional[float]          # None when the total size is unknown
    bytes_read: int
    total_bytes: Optional[int]
    workouts_found: int


# ─────────────────────────────────────────────────────────────────────────────
# PARSER
# ─────────────────────────────────────────────────────────────────────────────

class ExportParser:
    """
    Incremental parser – call ``feed()`` per chunk and ``close()`` once.

    The parser is single-use: ``close()`` returns the finished workouts and
    further feeding raises RuntimeError.
    """

    def __init__(
        self,
        activity_type: str = RUNNING_ACTIVITY_TYPE,
        max_record_chars: int = MAX_RECORD_CHARS,
        max_workout_chars: int = MAX_WORKOUT_CHARS,
    ) -> None:
        self.activity_type = activity_type
        self.max_record_chars = max_record_chars
        self.max_workout_chars = max_workout_chars

        self._workout_buf = ""
        self._record_buf = ""
        self._workouts: list[WorkoutRecord] = []
        self._hr: list[Sample] = []
        self._cadence: list[Sample] = []
        self._stride: list[Sample] = []
        self._closed = False

        self.skipped_workouts = 0
        self.skipped_records = 0
        self.bytes_read = 0

    @property
    def workouts_found(self) -> int:
        return len(self._workouts)

    @property
    def buffered_chars(self) -> int:
        return len(self._workout_buf) + len(self._record_buf)

    # ── feeding ──────────────────────────────────────────────────────────────

    def feed(self, chunk: str) -> None:
        if self._closed:
            raise RuntimeError("ExportParser already closed")
        if not chunk:
            return
        self.bytes_read += len(chunk.encode("utf-8"))
        self._workout_buf += chunk
        self._record_buf += chunk
        self._scan_workouts()
        self._scan_records()

    def progress(self, total_bytes: Optional[int] = None) -> ParseProgress:
        percent = None
        if total_bytes:
            percent = min(100.0, self.bytes_read / total_bytes * 100.0)
        log.debug("chunk done: %d bytes read, %d workouts, %d chars buffered",
                  self.bytes_read, self.workouts_found, self.buffered_chars)
        return ParseProgress(percent, self.bytes_read, total_bytes, self.workouts_found)

    def iter_parse(
        self, chunks: Iterable[str], total_bytes: Optional[int] = None
    ) -> Iterator[ParseProgress]:
        """Feed every chunk, yielding a progress payload after each one."""
        for chunk in chunks:
            self.feed(chunk)
            yield self.progress(total_bytes)

    # ── workout pass ─────────────────────────────────────────────────────────

    def _scan_workouts(self) -> None:
        buf = self._workout_buf
        pos = 0
        while True:
            m = _WORKOUT_OPEN.search(buf, pos)
            if m is None:
                keep = max(pos, len(buf) - _WORKOUT_MARKER_TAIL)
                self._workout_buf = buf[keep:]
                return

            start = m.start()
            tag = _TAG_REST.match(buf, start + 1)
            end = -1
            if tag is not None:
                tag_text = buf[start:tag.end()]
                if tag_text.endswith("/>"):
                    end = tag.end()
                else:
                    close = buf.find(_WORKOUT_CLOSE, tag.end())
                    if close != -1:
                        end = close + len(_WORKOUT_CLOSE)

            if end == -1:
                if len(buf) - start > self.max_workout_chars:
                    log.warning("Workout element exceeds %d chars without closing – skipped.",
                                self.max_workout_chars)
                    self.skipped_workouts += 1
                    pos = start + 1
                    continue
                self._workout_buf = buf[start:]
                return

            self._handle_workout(buf[start + len("<Workout"):tag.end() - 1], buf[tag.end():end])
            pos = end

    def _handle_workout(self, tag_body: str, inner: str) -> None:
        attrs = parse_attrs(tag_body)
        if attrs.get("workoutActivityType") != self.activity_type:
            return
        try:
            workout = self._build_workout(attrs, inner)
        except (KeyError, ValueError) as exc:
            self.skipped_workouts += 1
            log.warning("Malformed workout (start=%s) skipped: %s",
                        attrs.get("startDate", "?"), exc)
            return
        self._workouts.append(workout)

    def _build_workout(self, attrs: dict[str, str], inner: str) -> WorkoutRecord:
        start = parse_export_date(attrs["startDate"])

        duration = float(attrs["duration"])
        duration_unit = attrs.get("durationUnit", "min")
        if duration_unit not in _DURATION_TO_MIN:
            raise ValueError(f"unknown duration unit {duration_unit!r}")
        duration_min = duration * _DURATION_TO_MIN[duration_unit]
        if not math.isfinite(duration_min) or duration_min < 0:
            raise ValueError(f"invalid duration {attrs['duration']!r}")
        try:
            start + timedelta(minutes=duration_min)
        except OverflowError as exc:
            raise ValueError(f"duration {attrs['duration']!r} out of range") from exc

        stats = {}
        for m in _STAT_TAG.finditer(inner):
            stat = parse_attrs(m.group(1))
            if "type" in stat:
                stats[stat["type"]] = stat

        distance_km = 0.0
        if _STAT_DISTANCE in stats:
            distance_km = self._distance_km(stats[_STAT_DISTANCE], "sum", "unit")
        elif attrs.get("totalDistance"):
            distance_km = self._distance_km(attrs, "totalDistance", "totalDistanceUnit")

        calories = 0.0
        if _STAT_ENERGY in stats:
            calories = _float(stats[_STAT_ENERGY], "sum") or 0.0
        elif attrs.get("totalEnergyBurned"):
            calories = _float(attrs, "totalEnergyBurned") or 0.0
            if attrs.get("totalEnergyBurnedUnit") == "kJ":
                calories /= 4.184

        hr = stats.get(HR_TYPE, {})
        stride = stats.get(STRIDE_TYPE, {})
        stride_avg = _float(stride, "average")
        if stride_avg is not None:
            stride_avg *= _LENGTH_TO_M.get(stride.get("unit", "m"), 1.0)

        cadence_avg = None
        steps = _float(stats.get(STEP_TYPE, {}), "sum")
        if steps is not None and duration_min > 0:
            cadence_avg = float(round(steps / duration_min))

        return WorkoutRecord(
            id=workout_id(start, distance_km),
            source=SOURCE_APPLE,
            start=start,
            duration_min=duration_min,
            distance_km=distance_km,
            calories=calories,
            hr_avg=_float(hr, "average"),
            hr_min=_float(hr, "minimum"),
            hr_max=_float(hr, "maximum"),
            cadence_avg=cadence_avg,
            stride_length_avg=stride_avg,
            speed_avg=_float(stats.get(_STAT_SPEED, {}), "average"),
            name="Running",
            source_name=attrs.get("sourceName", ""),
        )

    @staticmethod
    def _distance_km(attrs: dict, value_key: str, unit_key: str) -> float:
        value = _float(attrs, value_key) or 0.0
        if not math.isfinite(value):
            raise ValueError(f"invalid distance {attrs[value_key]!r}")
        unit = attrs.get(unit_key, "km")
        if unit not in _DISTANCE_TO_KM:
            raise ValueError(f"unknown distance unit {unit!r}")
        return value * _DISTANCE_TO_KM[unit]

    # ── record pass ──────────────────────────────────────────────────────────

    def _scan_records(self) -> None:
        buf = self._record_buf
        last_end = 0
        for m in _RECORD_TAG.finditer(buf):
            last_end = m.end()
            self._handle_record(m.group(1))
        keep_from = max(last_end, len(buf) - self.max_record_chars)
        self._record_buf = buf[keep_from:]

    def _handle_record(self, tag_body: str) -> None:
        # Cheap pre-filter: most records in an export are other quantity types.
        if HR_TYPE not in tag_body and STEP_TYPE not in tag_body and STRIDE_TYPE not in tag_body:
            return
        attrs = parse_attrs(tag_body)
        kind = attrs.get("type")
        try:
            start = parse_export_date(attrs.get("startDate", ""))
            value = float(attrs.get("value", ""))
            if kind == HR_TYPE:
                self._hr.append(Sample(start, value))
            elif kind == STEP_TYPE:
                end = parse_export_date(attrs["endDate"])
                minutes = (end - start).total_seconds() / 60.0
                if minutes > 0:
                    cadence = value / minutes
                    if CADENCE_MIN_SPM <= cadence <= CADENCE_MAX_SPM:
                        self._cadence.append(Sample(start, float(round(cadence))))
            elif kind == STRIDE_TYPE:
                value *= _LENGTH_TO_M.get(attrs.get("unit", "m"), 1.0)
                self._stride.append(Sample(start, value))
        except (KeyError, ValueError) as exc:
            self.skipped_records += 1
            log.warning("Malformed %s record skipped: %s", kind, exc)

    # ── finalize ─────────────────────────────────────────────────────────────

    def close(self) -> list[WorkoutRecord]:
        """Interval-join samples onto workouts and return them."""
        if self._closed:
            raise RuntimeError("ExportParser already closed")
        self._closed = True
        self._workout_buf = ""
        self._record_buf = ""

        families = []
        for samples in (self._hr, self._cadence, self._stride):
            samples = _sorted_unique(samples)
            families.append((samples, [s.time for s in samples]))
        (hr, hr_t), (cad, cad_t), (stride, stride_t) = families

        for w in self._workouts:
            w.heart_rate_data = _window(hr, hr_t, w.start, w.end)
            w.cadence_data = _window(cad, cad_t, w.start, w.end)
            w.stride_length_data = _window(stride, stride_t, w.start, w.end)
            apply_series_averages(w)

        log.info("Export parsed: %d workouts (%d skipped), %d HR / %d cadence / %d stride samples",
                 len(self._workouts), self.skipped_workouts, len(hr), len(cad), len(stride))
        self._hr, self._cadence, self._stride = [], [], []
        return self._workouts


def _sorted_unique(samples: list[Sample]) -> list[Sample]:
    """Chronological order; the same reading from two devices is kept once."""
    out: list[Sample] = []
    for s in sorted(samples, key=lambda s: (s.time, s.value)):
        if not out or (out[-1].time, out[-1].value) != (s.time, s.value):
            out.append(s)
    return out


def _window(samples: list[Sample], times: list[datetime],
            start: datetime, end: datetime) -> list[Sample]:
    return samples[bisect_left(times, start):bisect_right(times, end)]


def apply_series_averages(w: WorkoutRecord) -> None:
    """Series-derived cadence/stride averages override summary ones; HR only fills gaps."""
    if w.cadence_data:
        w.cadence_avg = float(round(mean(s.value for s in w.cadence_data)))
    if w.stride_length_data:
        w.stride_length_avg = mean(s.value for s in w.stride_length_data)
    if w.heart_rate_data:
        values = [s.value for s in w.heart_rate_data]
        if w.hr_avg is None:
            w.hr_avg = mean(values)
        if w.hr_min is None:
            w.hr_min = min(values)
        if w.hr_max is None:
            w.hr_max = max(values)


def workout_id(start: datetime, distance_km: float) -> str:
    """Deterministic id – re-import of the same export overwrites, never duplicates."""
    return f"{SOURCE_APPLE}_{start.astimezone(timezone.utc).isoformat()}_{distance_km:.2f}"


# ─────────────────────────────────────────────────────────────────────────────
# CHUNK SOURCES
# ─────────────────────────────────────────────────────────────────────────────

def _decode_blocks(blocks: Iterable[bytes]) -> Iterator[str]:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    for block in blocks:
        text = decoder.decode(block)
        if text:
            yield text
    tail = decoder.decode(b"", final=True)
    if tail:
        yield tail


def _read_blocks(fh, chunk_size: int) -> Iterator[bytes]:
    while True:
        block = fh.read(chunk_size)
        if not block:
            return
        yield block


def _zip_member(zf: zipfile.ZipFile) -> zipfile.ZipInfo:
    for info in zf.infolist():
        if info.filename.rsplit("/", 1)[-1] == "export.xml":
            return info
    raise FileNotFoundError(f"No export.xml inside {zf.filename}")


def source_size(path: str | os.PathLike) -> int:
    """Uncompressed size in bytes (zip → size of its export.xml member)."""
    path = Path(path)
    if zipfile.is_zipfile(path):
        with zipfile.ZipFile(path) as zf:
            return _zip_member(zf).file_size
    return path.stat().st_size


def iter_file_chunks(path: str | os.PathLike, chunk_size: int = EXPORT_CHUNK_SIZE) -> Iterator[str]:
    """
    Decoded text chunks of an export file or zipped export.

    UTF-8 sequences split across block boundaries are reassembled by the
    incremental decoder. I/O errors propagate to the caller.
    """
    path = Path(path)
    if zipfile.is_zipfile(path):
        with zipfile.ZipFile(path) as zf, zf.open(_zip_member(zf)) as fh:
            yield from _decode_blocks(_read_blocks(fh, chunk_size))
    else:
        with open(path, "rb") as fh:
            yield from _decode_blocks(_read_blocks(fh, chunk_size))


def iter_text_chunks(text: str, chunk_size: int = EXPORT_CHUNK_SIZE) -> Iterator[str]:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    for i in range(0, len(text), chunk_size):
        yield text[i:i + chunk_size]


# ─────────────────────────────────────────────────────────────────────────────
# ENTRY POINTS
# ─────────────────────────────────────────────────────────────────────────────

ProgressCallback = Callable[[ParseProgress], None]


def parse_chunks(
    chunks: Iterable[str],
    total_bytes: Optional[int] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> list[WorkoutRecord]:
    parser = ExportParser()
    for progress in parser.iter_parse(chunks, total_bytes):
        if on_progress is not None:
            on_progress(progress)
    return parser.close()


def parse_export(
    path: str | os.PathLike,
    on_progress: Optional[ProgressCallback] = None,
    chunk_size: int = EXPORT_CHUNK_SIZE,
) -> list[WorkoutRecord]:
    """Parse an export.xml (or the zip that contains it) from disk."""
    log.info("Parsing health export %s", path)
    return parse_chunks(iter_file_chunks(path, chunk_size), source_size(path), on_progress)


async def parse_chunks_async(
    chunks: Iterable[str],
    total_bytes: Optional[int] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> list[WorkoutRecord]:
    """
    Same as parse_chunks, but every chunk is pulled in a worker thread so
    file and zip reads never block the event loop.
    """
    parser = ExportParser()
    it = iter(chunks)
    try:
        while True:
            chunk = await asyncio.to_thread(next, it, None)
            if chunk is None:
                break
            parser.feed(chunk)
            if on_progress is not None:
                on_progress(parser.progress(total_bytes))
    finally:
        close = getattr(it, "close", None)
        if close is not None:
            close()
    return parser.close()


async def parse_export_async(
    path: str | os.PathLike,
    on_progress: Optional[ProgressCallback] = None,
    chunk_size: int = EXPORT_CHUNK_SIZE,
) -> list[WorkoutRecord]:
    log.info("Parsing health export %s", path)
    return await parse_chunks_async(iter_file_chunks(path, chunk_size),
                                    source_size(path), on_progress)
