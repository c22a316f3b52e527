"""
In-process counters for the sync engine.

Tracks the movement queue (enqueued, duplicate deliveries, completed,
failed, retried, lock contention), pull runs with their skip reasons,
outbound connector calls, and timing samples per stage. Everything resets
when the process restarts; the health API exposes the current summary.
"""

import statistics
from collections import Counter, defaultdict, deque
from datetime import datetime
from threading import Lock
from typing import Any, Deque, Dict, Optional


MAX_TIMING_SAMPLES = 1000

MOVEMENT_EVENTS = ("enqueued", "completed", "failed")
CONNECTOR_EVENTS = ("requests", "retries", "errors")


def _p95(samples) -> float:
    if not samples:
        return 0.0
    ordered = sorted(samples)
    return ordered[min(int(len(ordered) * 0.95), len(ordered) - 1)]


class _Timings:
    """Bounded sample windows, one overall and one per stage."""

    def __init__(self, max_samples: int = MAX_TIMING_SAMPLES):
        self.overall: Deque[float] = deque(maxlen=max_samples)
        self.stages: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=max_samples))

    def add(self, stage: str, duration_ms: float) -> None:
        self.overall.append(duration_ms)
        self.stages[stage].append(duration_ms)

    def window(self, stage: Optional[str] = None):
        if stage is None:
            return self.overall
        return self.stages.get(stage, ())

    def stats(self, stage: Optional[str] = None) -> Dict[str, float]:
        samples = self.window(stage)
        return {
            "average_ms": statistics.mean(samples) if samples else 0.0,
            "p95_ms": _p95(samples),
        }


class MetricsCollector:
    """
    Process-wide singleton; every recorder is safe to call from worker threads.

        get_metrics().record_movement_enqueued("debit")
        get_metrics().record_pull_completed(updated=3, skipped=10, failed=0)
    """

    _instance: Optional["MetricsCollector"] = None
    _instance_lock = Lock()

    def __init__(self):
        self.started_at = datetime.utcnow()
        self._lock = Lock()
        self.movements: Counter = Counter()
        self.movements_by_direction: Dict[str, Counter] = defaultdict(Counter)
        self.pulls: Counter = Counter()
        self.skip_reasons: Counter = Counter()
        self.connectors: Counter = Counter()
        self.connectors_by_name: Dict[str, Counter] = defaultdict(Counter)
        self.timings = _Timings()

    @classmethod
    def instance(cls) -> "MetricsCollector":
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Forget the singleton; the next instance() starts from zero."""
        with cls._instance_lock:
            cls._instance = None

    # -------------------------------------------------------------------------
    # Movement queue
    # -------------------------------------------------------------------------

    def _movement(self, event: str, direction: Optional[str] = None) -> None:
        self.movements[event] += 1
        if direction is not None:
            self.movements_by_direction[direction][event] += 1

    def record_movement_enqueued(self, direction: str) -> None:
        with self._lock:
            self._movement("enqueued", direction)

    def record_movement_duplicate(self) -> None:
        with self._lock:
            self._movement("duplicates")

    def record_movement_completed(self, direction: str, duration_ms: Optional[float] = None) -> None:
        with self._lock:
            self._movement("completed", direction)
            if duration_ms:
                self.timings.add("push.movement", duration_ms)

    def record_movement_failed(self, direction: str) -> None:
        with self._lock:
            self._movement("failed", direction)

    def record_movement_retry(self) -> None:
        with self._lock:
            self._movement("retried")

    def record_lock_contention(self) -> None:
        with self._lock:
            self._movement("lock_contention")

    # -------------------------------------------------------------------------
    # Pull runs
    # -------------------------------------------------------------------------

    def record_pull_completed(
        self,
        updated: int,
        skipped: int,
        failed: int,
        skip_reasons: Optional[Dict[str, int]] = None,
        duration_ms: Optional[float] = None,
    ) -> None:
        with self._lock:
            self.pulls.update(runs=1, updated=updated, skipped=skipped, failed=failed)
            self.skip_reasons.update(skip_reasons or {})
            if duration_ms:
                self.timings.add("pull.run", duration_ms)

    def record_pull_error(self) -> None:
        """A run that raised before finishing; still counts as a run."""
        with self._lock:
            self.pulls.update(runs=1, errors=1)

    # -------------------------------------------------------------------------
    # Connector HTTP calls
    # -------------------------------------------------------------------------

    def _connector(self, name: str, event: str) -> None:
        self.connectors[event] += 1
        self.connectors_by_name[name][event] += 1

    def record_http_request(self, connector: str, duration_ms: Optional[float] = None) -> None:
        with self._lock:
            self._connector(connector, "requests")
            if duration_ms:
                self.timings.add(f"http.{connector}", duration_ms)

    def record_http_retry(self, connector: str, rate_limited: bool = False) -> None:
        with self._lock:
            self._connector(connector, "retries")
            if rate_limited:
                self.connectors["rate_limited"] += 1

    def record_http_error(self, connector: str) -> None:
        with self._lock:
            self._connector(connector, "errors")

    # -------------------------------------------------------------------------
    # Timings
    # -------------------------------------------------------------------------

    def record_processing_time(self, stage: str, duration_ms: float) -> None:
        with self._lock:
            self.timings.add(stage, duration_ms)

    def get_timing_stats(self, stage: Optional[str] = None) -> Dict[str, float]:
        with self._lock:
            stats = self.timings.stats(stage)
            stats["sample_count"] = len(self.timings.window(stage))
            return stats

    # -------------------------------------------------------------------------
    # Summary
    # -------------------------------------------------------------------------

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            movements = {
                key: self.movements[key]
                for key in ("enqueued", "duplicates", "completed", "failed", "retried", "lock_contention")
            }
            movements["by_direction"] = {
                direction: {event: counts[event] for event in MOVEMENT_EVENTS}
                for direction, counts in self.movements_by_direction.items()
            }
            pulls = {key: self.pulls[key] for key in ("runs", "errors", "updated", "skipped", "failed")}
            pulls["skip_reasons"] = dict(self.skip_reasons)
            connectors = {key: self.connectors[key] for key in ("requests", "retries", "rate_limited", "errors")}
            connectors["by_connector"] = {
                name: {event: counts[event] for event in CONNECTOR_EVENTS}
                for name, counts in self.connectors_by_name.items()
            }
            return {
                "started_at": self.started_at.isoformat(),
                "movements": movements,
                "pulls": pulls,
                "connectors": connectors,
                "timings": {
                    "overall": self.timings.stats(),
                    "by_stage": {stage: self.timings.stats(stage) for stage in self.timings.stages},
                },
            }


def get_metrics() -> MetricsCollector:
    return MetricsCollector.instance()


def record_processing_time(stage: str, duration_ms: float) -> None:
    get_metrics().record_processing_time(stage, duration_ms)
