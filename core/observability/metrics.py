"""
Metrics Collection for the ERP sync core

Collects in-memory metrics for:
- Job outcomes per module (completed, retried, failed, skipped)
- Remote call latency (average, p95) per module
- Queue depth by status, refreshed by the processor
- Run counters (runs, batches, stop reasons)

One SyncMetrics instance is owned by each SyncContext; nothing here is a
process-wide singleton.
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional, Any


# =============================================================================
# Metric Data Classes
# =============================================================================

def _outcome_counts() -> Dict[str, int]:
    return {"completed": 0, "retried": 0, "failed": 0, "skipped": 0}


@dataclass
class JobMetrics:
    """Job outcome counters."""
    completed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0

    by_module: Dict[str, Dict[str, int]] = field(default_factory=lambda: defaultdict(_outcome_counts))


@dataclass
class TimingMetrics:
    """Latency samples."""
    samples: List[float] = field(default_factory=list)
    max_samples: int = 1000

    by_stage: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    def add_sample(self, duration_ms: float, stage: str = None):
        """Add a timing sample."""
        self.samples.append(duration_ms)
        if len(self.samples) > self.max_samples:
            self.samples = self.samples[-self.max_samples:]

        if stage:
            self.by_stage[stage].append(duration_ms)
            if len(self.by_stage[stage]) > self.max_samples:
                self.by_stage[stage] = self.by_stage[stage][-self.max_samples:]

    def get_average(self, stage: str = None) -> float:
        samples = self.by_stage.get(stage, []) if stage else self.samples
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, stage: str = None) -> float:
        """Get 95th percentile time."""
        samples = self.by_stage.get(stage, []) if stage else self.samples
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


@dataclass
class RunMetrics:
    runs: int = 0
    batches: int = 0
    stop_reasons: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    last_run_at: Optional[datetime] = None


# =============================================================================
# Sync Metrics
# =============================================================================

class SyncMetrics:
    """
    Thread-safe metrics collector for queue processing.

    Usage:
        metrics = SyncMetrics()
        metrics.record_job_outcome("crm", "completed")
        metrics.record_remote_call("crm", duration_ms=120)
        metrics.get_summary()
    """

    OUTCOMES = ("completed", "retried", "failed", "skipped")

    def __init__(self):
        self.jobs = JobMetrics()
        self.timings = TimingMetrics()
        self.runs = RunMetrics()
        self.queue_depth: Dict[str, int] = {}
        self.transport_events: Dict[str, int] = defaultdict(int)
        self._lock = Lock()

    # =========================================================================
    # Jobs
    # =========================================================================

    def record_job_outcome(self, module: str, outcome: str):
        """Record one processed job.

        Args:
            module: Handler module name
            outcome: One of completed, retried, failed, skipped
        """
        if outcome not in self.OUTCOMES:
            raise ValueError(f"Unknown job outcome: {outcome}")
        with self._lock:
            setattr(self.jobs, outcome, getattr(self.jobs, outcome) + 1)
            self.jobs.by_module[module][outcome] += 1

    def record_transport_event(self, event: str):
        """Count a connection-level event ('retry' or 'reauth')."""
        with self._lock:
            self.transport_events[event] += 1

    def record_remote_call(self, module: str, duration_ms: float):
        with self._lock:
            self.timings.add_sample(duration_ms, f"remote.{module}")

    def get_timing_stats(self, stage: str = None) -> Dict[str, float]:
        """Get timing statistics for a stage."""
        with self._lock:
            return {
                "average_ms": self.timings.get_average(stage),
                "p95_ms": self.timings.get_p95(stage),
                "sample_count": len(self.timings.by_stage.get(stage, []) if stage else self.timings.samples),
            }

    # =========================================================================
    # Runs / queue
    # =========================================================================

    def record_run(self, batches: int, stopped_reason: str):
        with self._lock:
            self.runs.runs += 1
            self.runs.batches += batches
            self.runs.stop_reasons[stopped_reason] += 1
            self.runs.last_run_at = datetime.now(timezone.utc)

    def update_queue_depth(self, stats: Dict[str, int]):
        """Replace the queue depth snapshot (counts by status)."""
        with self._lock:
            self.queue_depth = dict(stats)

    # =========================================================================
    # Summary
    # =========================================================================

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            return {
                "jobs": {
                    "completed": self.jobs.completed,
                    "retried": self.jobs.retried,
                    "failed": self.jobs.failed,
                    "skipped": self.jobs.skipped,
                    "by_module": {k: dict(v) for k, v in self.jobs.by_module.items()},
                },
                "timings": {
                    "overall": {
                        "average_ms": self.timings.get_average(),
                        "p95_ms": self.timings.get_p95(),
                    },
                    "by_stage": {
                        stage: {
                            "average_ms": self.timings.get_average(stage),
                            "p95_ms": self.timings.get_p95(stage),
                        }
                        for stage in self.timings.by_stage.keys()
                    },
                },
                "runs": {
                    "runs": self.runs.runs,
                    "batches": self.runs.batches,
                    "stop_reasons": dict(self.runs.stop_reasons),
                    "last_run_at": self.runs.last_run_at.isoformat() if self.runs.last_run_at else None,
                },
                "queue_depth": dict(self.queue_depth),
                "transport": dict(self.transport_events),
            }
