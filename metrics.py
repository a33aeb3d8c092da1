"""
Run metrics for dupelink

Counters and gauges are kept in memory for the duration of one command and
reported as structured log lines when the command finishes.
"""

import time
import json
import logging
from collections import defaultdict
from typing import Dict, Optional, Any

logger = logging.getLogger('dupelink.metrics')


class MetricsCollector:
    """Collects counters and gauges for one dupelink run

    Counters used by the commands:
    - files_scanned_total: Entries examined during a scan
    - files_inserted_total / files_updated_total / files_skipped_total
    - files_hashed_total: Content fingerprints computed
    - hash_failures_total: Files skipped because hashing failed
    - duplicate_groups_total: Groups emitted by the grouping engine
    - files_linked_total: Members replaced by hardlinks
    - link_skips_total: Members left untouched by the link engine
    - bytes_reclaimed_total: Sizes of members replaced by hardlinks
    Gauges:
    - last_scan_duration_seconds
    """

    def __init__(self):
        self._counters: Dict[str, int] = defaultdict(int)
        self._gauges: Dict[str, float] = {}
        self._session_start = time.time()

    def inc(self, name: str, amount: int = 1):
        """Increment a counter metric"""
        self._counters[name] += amount

    def set_gauge(self, name: str, value: float):
        """Set a gauge metric to a specific value"""
        self._gauges[name] = value

    def observe_duration(self, name: str, start_time: float):
        """Record the seconds elapsed since start_time as a gauge"""
        self.set_gauge(name, time.time() - start_time)

    def get_counter(self, name: str) -> int:
        return self._counters.get(name, 0)

    def get_gauge(self, name: str) -> Optional[float]:
        return self._gauges.get(name)

    def get_all_metrics(self) -> Dict[str, Any]:
        """Snapshot of all metrics plus session uptime"""
        return {
            'counters': dict(self._counters),
            'gauges': dict(self._gauges),
            'session_seconds': round(time.time() - self._session_start, 3),
        }

    def log_metrics_summary(self, level: int = logging.DEBUG):
        """Log all metrics as one JSON document"""
        logger.log(level, "Metrics summary: %s", json.dumps(self.get_all_metrics(), sort_keys=True))

    def log_structured(self, event: str, **kwargs):
        """Log a structured event line

        Args:
            event: Event name
            **kwargs: Additional key-value pairs to include
        """
        data = {
            'event': event,
            'timestamp': time.time(),
            **kwargs
        }
        logger.info("METRIC: %s", json.dumps(data, sort_keys=True))

    def reset(self):
        """Reset all metrics (for testing or a new command)"""
        self._counters.clear()
        self._gauges.clear()
        self._session_start = time.time()


# Global metrics instance
_metrics: Optional[MetricsCollector] = None


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector instance"""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def inc(name: str, amount: int = 1):
    """Increment a counter metric"""
    get_metrics().inc(name, amount)


def set_gauge(name: str, value: float):
    """Set a gauge metric"""
    get_metrics().set_gauge(name, value)


def observe_duration(name: str, start_time: float):
    """Record a duration observation"""
    get_metrics().observe_duration(name, start_time)


def log_structured(event: str, **kwargs):
    """Log a structured event"""
    get_metrics().log_structured(event, **kwargs)
