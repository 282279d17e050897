"""
Run event publication and debounced run metrics.

Events are fire-and-forget Redis PUBLISH messages on `run-{id}` / `org-{id}`
channels. Metric increments go through MetricDebouncer so a burst of status
changes on one run turns into a single metadata write.
"""

import logging
import threading
import time
from collections import defaultdict
from typing import Dict, Optional

import orjson as json
from django.conf import settings
from django.db import transaction

from dialer.metrics import RunMetrics
from dialer.models import Run
from run_engine.redis import conn, org_channel, run_channel

logger = logging.getLogger(__name__)


# ============================================================================
# EVENT PUBLICATION
# ============================================================================

def publish_event(channel, event, data) -> bool:
    try:
        conn.publish(channel, json.dumps({'event': event, 'data': data}))
        return True
    except Exception as e:
        logger.error(f"Error publishing {event} to {channel}: {e}")
        return False


def publish_run_event(run_id, event, data) -> bool:
    return publish_event(run_channel(run_id), event, data)


def publish_org_event(org_id, event, data) -> bool:
    return publish_event(org_channel(org_id), event, data)


# ============================================================================
# METRIC PERSISTENCE
# ============================================================================

def record_run_metrics(run_id, deltas: Dict[str, int]) -> Optional[RunMetrics]:
    """Apply counter deltas to a run's metadata in one locked write and broadcast the result."""
    if not deltas:
        return None

    with transaction.atomic():
        run = Run.objects.select_for_update().filter(id=run_id).first()
        if run is None:
            logger.warning(f"Run {run_id} not found while recording metrics {deltas}")
            return None

        metrics = run.metrics
        for path, amount in deltas.items():
            metrics.increment(path, amount)
        run.set_metrics(metrics)
        run.save(update_fields=['metadata', 'updated_at'])

    publish_run_event(run_id, 'metrics-updated', {
        'run_id': run_id,
        'metrics': metrics.to_dict(),
    })
    return metrics


class MetricDebouncer:
    """
    Coalesces metric increments per (run_id, path).

    Every increment pushes the key's deadline to now + window; flush_due()
    persists keys whose deadline has passed, summed into one write per run.
    The owner drives flushing (the scheduler loop calls flush_due() on every
    iteration and flush_all() on exit).
    """

    def __init__(self, window=None, clock=time.monotonic, persist=record_run_metrics):
        self.window = settings.METRIC_DEBOUNCE_SECONDS if window is None else window
        self._clock = clock
        self._persist = persist
        self._pending = {}
        self._lock = threading.Lock()

    def increment(self, run_id, path, amount=1):
        key = (run_id, path)
        with self._lock:
            total = self._pending.get(key, (0, None))[0] + amount
            self._pending[key] = (total, self._clock() + self.window)

    def pending(self):
        with self._lock:
            return {key: amount for key, (amount, _) in self._pending.items()}

    def flush_due(self) -> int:
        now = self._clock()
        with self._lock:
            due = [key for key, (_, deadline) in self._pending.items() if deadline <= now]
            entries = {key: self._pending.pop(key)[0] for key in due}
        return self._persist_entries(entries)

    def flush_all(self, run_id=None) -> int:
        with self._lock:
            keys = [key for key in self._pending if run_id is None or key[0] == run_id]
            entries = {key: self._pending.pop(key)[0] for key in keys}
        return self._persist_entries(entries)

    def _persist_entries(self, entries) -> int:
        by_run = defaultdict(dict)
        for (run_id, path), amount in entries.items():
            by_run[run_id][path] = amount

        for run_id, deltas in by_run.items():
            try:
                self._persist(run_id, deltas)
            except Exception as e:
                logger.exception(f"Error persisting metrics for run {run_id}: {e}")
        return len(by_run)
