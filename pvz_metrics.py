"""Metric sink for the PVZ load generator.

Series are created lazily by name and accumulate samples for the lifetime of a
run. A single sink instance is passed to every worker; all writes go through
one lock so the sink can be shared between threads as well as tasks.
"""

from __future__ import annotations

import math
import statistics
import threading
import time
from collections import Counter as TallyCounter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

# Built-in series recorded by the transport and the scheduler
HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_FAILED = "http_req_failed"
HTTP_REQS = "http_reqs"
CHECKS = "checks"
ITERATIONS = "iterations"
VUS = "vus"

# Workload series
PVZ_LIST_LATENCY = "pvz_list_latency"
CREATE_PVZ_LATENCY = "create_pvz_latency"
INITIATE_RECEPTION_LATENCY = "initiate_reception_latency"
ADD_PRODUCT_LATENCY = "add_product_latency"
CLOSE_RECEPTION_LATENCY = "close_reception_latency"
ERRORS = "errors"


def percentile(values: List[float], pct: float) -> float:
    """Linear-interpolated percentile of *values* (0 when empty)."""

    if not values:
        return 0.0
    ordered = sorted(values)
    k = (len(ordered) - 1) * (pct / 100.0)
    lower = math.floor(k)
    upper = math.ceil(k)
    if lower == upper:
        return ordered[int(k)]
    return ordered[lower] * (upper - k) + ordered[upper] * (k - lower)


@dataclass
class Trend:
    """Duration samples in milliseconds."""

    name: str
    values: List[float] = field(default_factory=list)
    kind = "trend"
    aggregations = ("avg", "min", "max", "med", "count", "p")

    def add(self, value: float) -> None:
        self.values.append(float(value))

    @property
    def count(self) -> int:
        return len(self.values)

    def aggregate(self, name: str, arg: Optional[float] = None) -> float:
        if name not in self.aggregations:
            raise ValueError(f"Unsupported aggregation '{name}' for trend '{self.name}'")
        if name == "p":
            if arg is None:
                raise ValueError("percentile aggregation requires an argument")
            return percentile(self.values, arg)
        if name == "count":
            return float(self.count)
        if not self.values:
            return 0.0
        if name == "avg":
            return statistics.fmean(self.values)
        if name == "min":
            return min(self.values)
        if name == "max":
            return max(self.values)
        return statistics.median(self.values)

    def summary(self) -> Dict[str, float]:
        return {
            "avg": round(self.aggregate("avg"), 2),
            "min": round(self.aggregate("min"), 2),
            "med": round(self.aggregate("med"), 2),
            "max": round(self.aggregate("max"), 2),
            "p(90)": round(self.aggregate("p", 90), 2),
            "p(95)": round(self.aggregate("p", 95), 2),
            "count": self.count,
        }


@dataclass
class Rate:
    """Boolean outcomes; ``rate`` is the share of true samples."""

    name: str
    passes: int = 0
    fails: int = 0
    kind = "rate"

    def add(self, value: bool) -> None:
        if value:
            self.passes += 1
        else:
            self.fails += 1

    @property
    def count(self) -> int:
        return self.passes + self.fails

    @property
    def rate(self) -> float:
        return self.passes / self.count if self.count else 0.0

    def aggregate(self, name: str, arg: Optional[float] = None) -> float:
        if name == "rate":
            return self.rate
        if name == "count":
            return float(self.count)
        if name == "passes":
            return float(self.passes)
        if name == "fails":
            return float(self.fails)
        raise ValueError(f"Unsupported aggregation '{name}' for rate '{self.name}'")

    def summary(self) -> Dict[str, float]:
        return {"rate": round(self.rate, 4), "passes": self.passes, "fails": self.fails}


@dataclass
class Counter:
    """Monotonic count; ``rate`` is per second of elapsed run time."""

    name: str
    total: float = 0.0
    started: float = field(default_factory=time.monotonic)
    kind = "counter"

    def add(self, value: float = 1.0) -> None:
        if value < 0:
            raise ValueError("counters can only increase")
        self.total += value

    @property
    def count(self) -> int:
        return int(self.total)

    def aggregate(self, name: str, arg: Optional[float] = None) -> float:
        if name == "count":
            return self.total
        if name == "rate":
            elapsed = time.monotonic() - self.started
            return self.total / elapsed if elapsed > 0 else 0.0
        raise ValueError(f"Unsupported aggregation '{name}' for counter '{self.name}'")

    def summary(self) -> Dict[str, float]:
        return {"count": self.count, "rate": round(self.aggregate("rate"), 2)}


_KINDS = {"trend": Trend, "rate": Rate, "counter": Counter}


class MetricSink:
    """Named metric series shared by every worker of one run."""

    def __init__(self) -> None:
        self._series: Dict[str, Any] = {}
        self._checks: Dict[str, TallyCounter[bool]] = {}
        self._lock = threading.Lock()
        for name in (HTTP_REQ_DURATION, VUS):
            self._get_or_create(name, "trend")
        for name in (HTTP_REQ_FAILED, CHECKS):
            self._get_or_create(name, "rate")
        for name in (HTTP_REQS, ITERATIONS):
            self._get_or_create(name, "counter")

    def _get_or_create(self, name: str, kind: str) -> Any:
        series = self._series.get(name)
        if series is None:
            series = _KINDS[kind](name)
            self._series[name] = series
        elif series.kind != kind:
            raise ValueError(f"Metric '{name}' is already registered as a {series.kind}")
        return series

    def add_trend(self, name: str, value: float) -> None:
        with self._lock:
            self._get_or_create(name, "trend").add(value)

    def add_rate(self, name: str, value: bool) -> None:
        with self._lock:
            self._get_or_create(name, "rate").add(bool(value))

    def add_counter(self, name: str, value: float = 1.0) -> None:
        with self._lock:
            self._get_or_create(name, "counter").add(value)

    def check(self, name: str, passed: bool) -> bool:
        """Record a named check into ``checks`` and return its outcome."""

        passed = bool(passed)
        with self._lock:
            self._get_or_create(CHECKS, "rate").add(passed)
            self._checks.setdefault(name, TallyCounter())[passed] += 1
        return passed

    def get(self, name: str) -> Optional[Any]:
        return self._series.get(name)

    def names(self) -> List[str]:
        return sorted(self._series)

    def check_results(self) -> Dict[str, Tuple[int, int]]:
        """Return ``{check name: (passes, fails)}``."""

        with self._lock:
            return {name: (tally[True], tally[False]) for name, tally in self._checks.items()}

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            return {name: series.summary() for name, series in sorted(self._series.items())}
