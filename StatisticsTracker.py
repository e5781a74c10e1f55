import logging
import time
from collections import Counter, defaultdict
from typing import Any, Dict

from config import LOG_INTERVAL

JOB_OUTCOMES = ("ok", "retried", "dead_lettered")


class StatisticsTracker:
    """
    Counts how queue jobs ended, per topic:
    - ok: handled on the first attempt
    - retried: handled after at least one failed attempt
    - dead_lettered: published to the problem topic
    A summary is logged every `log_interval` jobs and when the worker stops.
    """

    def __init__(self, logger: logging.Logger, log_interval: int = LOG_INTERVAL):
        self.logger = logger
        self.log_interval = log_interval
        self.total_jobs = 0
        self.outcomes: Dict[str, Counter] = defaultdict(Counter)
        self.durations: Dict[str, float] = defaultdict(float)
        self.started_at = time.time()

    def record_job(self, topic: str, outcome: str, duration: float) -> None:
        if outcome not in JOB_OUTCOMES:
            raise ValueError(f"Unknown job outcome {outcome}")
        self.outcomes[topic][outcome] += 1
        self.durations[topic] += duration
        self.total_jobs += 1
        if self.log_interval > 0 and self.total_jobs % self.log_interval == 0:
            self.log_summary()

    def snapshot(self) -> Dict[str, Any]:
        topics: Dict[str, Any] = {}
        for topic, counts in sorted(self.outcomes.items()):
            handled = sum(counts.values())
            topics[topic] = {
                **{outcome: counts[outcome] for outcome in JOB_OUTCOMES},
                "average_duration_sec": round(self.durations[topic] / handled, 6) if handled else 0.0,
            }
        return {
            "total_jobs": self.total_jobs,
            "uptime_sec": round(time.time() - self.started_at, 1),
            "topics": topics,
        }

    def log_summary(self) -> None:
        summary = self.snapshot()
        self.logger.info(f"=== Handled {summary['total_jobs']} jobs in {summary['uptime_sec']:.0f}s ===")
        for topic, stats in summary["topics"].items():
            self.logger.info(
                f"- {topic:<20} | ok: {stats['ok']:>6} | retried: {stats['retried']:>4} "
                f"| dead-lettered: {stats['dead_lettered']:>4} | avg: {stats['average_duration_sec']:.4f}s"
            )
