"""Aggregation of agent metrics into per-bucket summaries."""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable

from .models import AgentMetric, AgentMetrics, MetricSummary

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_ONE_MICROSECOND = timedelta(microseconds=1)
_RFC3339 = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})"
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: str) -> datetime:
    match = _RFC3339.fullmatch(value)
    if match is None:
        raise ValueError(f"not an RFC 3339 time: {value!r}")
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    micro = int((fraction or "0")[:6].ljust(6, "0"))
    if zone == "Z":
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))
    parsed = datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tzinfo=tz
    )
    return parsed.astimezone(timezone.utc)


def _format_time(t: datetime) -> str:
    t = t.astimezone(timezone.utc)
    base = (
        f"{t.year:04d}-{t.month:02d}-{t.day:02d}"
        f"T{t.hour:02d}:{t.minute:02d}:{t.second:02d}"
    )
    if t.microsecond:
        base += "." + f"{t.microsecond:06d}".rstrip("0")
    return base + "Z"


def _as_utc(t: datetime) -> datetime:
    return t.replace(tzinfo=timezone.utc) if t.tzinfo is None else t


def average(data: Iterable[int]) -> float:
    """Mean of the data points, rounded half up to two decimals."""
    values = list(data)
    if not values:
        raise ValueError("average of no data points")
    mean = Decimal(sum(values)) / Decimal(len(values))
    return float(mean.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def maximum(data: Iterable[int]) -> float:
    """Largest data point, or zero when there are none."""
    return float(max(data, default=0))


def p95(data: Iterable[int]) -> float:
    """95th percentile taken as the floor(n * 0.95)-th smallest point."""
    values = sorted(data)
    if not values:
        return 0.0
    if len(values) == 1:
        return float(values[0])
    k95 = len(values) * 95 // 100
    return float(values[k95 - 1])


@dataclass
class _Bucket:
    time: datetime
    agent_metrics: AgentMetrics
    counters: dict[str, list[int]] = field(default_factory=dict)

    def summary(self, name: str) -> MetricSummary:
        for summary in self.agent_metrics.metrics:
            if summary.name == name:
                return summary
        summary = MetricSummary(name=name)
        self.agent_metrics.metrics.append(summary)
        return summary

    def prepare(self) -> None:
        for name, points in self.counters.items():
            if not points:
                continue
            summary = self.summary(name)
            summary.count = len(points)
            summary.average = average(points)
            summary.max = maximum(points)
            summary.p95 = p95(points)
            summary.sum = float(sum(points))


class AgentMetricsAggregator:
    """Collects agent metrics into time buckets and summarises them on flush."""

    def __init__(
        self,
        bucket_interval: timedelta,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._interval_us = bucket_interval // _ONE_MICROSECOND
        if self._interval_us <= 0:
            raise ValueError("bucket interval must be at least one microsecond")
        self._interval = bucket_interval
        self._clock = clock
        self._buckets: list[_Bucket] = []
        self._last_flush = clock()  # avoid flushing immediately
        self._lock = threading.Lock()

    def find_closest_bucket_time(self, t: datetime) -> datetime:
        """Truncate the time to the start of its bucket (15:15:15 -> 15:15:00 per minute)."""
        us = (_as_utc(t) - _EPOCH) // _ONE_MICROSECOND
        rem = abs(us) % self._interval_us
        if us < 0:
            rem = -rem
        return _EPOCH + timedelta(microseconds=us - rem)

    def _find_bucket(self, agent_id: str, t: datetime) -> _Bucket:
        bucket_time = self.find_closest_bucket_time(t)
        for bucket in self._buckets:
            if bucket.agent_metrics.agent_id == agent_id and bucket.time == bucket_time:
                return bucket
        bucket = _Bucket(
            time=bucket_time,
            agent_metrics=AgentMetrics(agent_id=agent_id, timestamp=_format_time(bucket_time)),
        )
        self._buckets.append(bucket)
        return bucket

    def add_agent_metrics(self, metrics: Iterable[AgentMetric]) -> None:
        with self._lock:
            for metric in metrics:
                try:
                    t = _parse_time(metric.timestamp)
                except ValueError:
                    t = _ZERO_TIME
                bucket = self._find_bucket(metric.agent_id, t)
                bucket.counters.setdefault(metric.name, []).append(int(metric.value) & 0xFFFFFFFF)

    def _flush(self, now: datetime) -> list[AgentMetrics]:
        self._last_flush = now
        buckets, self._buckets = self._buckets, []
        buckets.sort(key=lambda bucket: bucket.time)
        for bucket in buckets:
            bucket.prepare()
        return [bucket.agent_metrics for bucket in buckets]

    def force_flush(self) -> list[AgentMetrics]:
        """Flush all collected metrics regardless of time."""
        with self._lock:
            return self._flush(self._clock())

    def try_flush(self) -> list[AgentMetrics] | None:
        """Flush if a bucket interval has passed since the last flush, else None."""
        with self._lock:
            now = self._clock()
            if now - self._last_flush < self._interval:
                return None
            return self._flush(now)