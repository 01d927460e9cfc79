"""
run_tracking.py

Bookkeeping for scheduled processing runs. Each job records its last run and
last successful run so the next run fetches exactly the gap since then.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from standup.config import config

logger = logging.getLogger(__name__)

DEFAULT_JOB = "transcript_processor"
LONG_WINDOW_MINUTES = 300


@dataclass
class TimeWindow:
    start: datetime
    end: datetime
    window_type: str  # 'dynamic' or 'fallback'
    duration_minutes: int

    def as_iso(self):
        return self.start.isoformat(), self.end.isoformat()


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("[RunTracking] Unparseable timestamp %r", value)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def calculate_dynamic_time_window(store, job_name: str = DEFAULT_JOB, now: Optional[datetime] = None,
                                  fallback_minutes: Optional[int] = None) -> TimeWindow:
    """
    Window from the job's last successful run to now. Without a usable
    previous success, falls back to the last fallback_minutes.
    """
    now = now or datetime.now(timezone.utc)
    fallback_minutes = fallback_minutes or config['fallback_window_minutes']

    record = store.get_cron_run(job_name)
    last_success = _parse_iso(record.get("last_successful_run")) if record else None

    if last_success is not None and last_success < now:
        duration = int((now - last_success).total_seconds() // 60)
        if duration > LONG_WINDOW_MINUTES:
            logger.warning("[RunTracking] %s last succeeded %d minutes ago; processing a long window", job_name, duration)
        return TimeWindow(start=last_success, end=now, window_type="dynamic", duration_minutes=duration)

    logger.info("[RunTracking] No previous successful run for %s; using %d minute fallback", job_name, fallback_minutes)
    return TimeWindow(
        start=now - timedelta(minutes=fallback_minutes),
        end=now,
        window_type="fallback",
        duration_minutes=fallback_minutes,
    )


def record_run(store, job_name: str, status: str, run_at: Optional[datetime] = None,
               metadata: Optional[Dict[str, Any]] = None) -> None:
    run_at = run_at or datetime.now(timezone.utc)
    store.record_cron_run(job_name, run_at.isoformat(), status, metadata or {})
    logger.info("[RunTracking] Recorded %s run for %s", status, job_name)
