"""Durable run-once-per-day guards for the daily scheduled tasks.

The last successful run of each task lives in scheduler_checkpoints, so a
restart inside a trigger window does not run the task a second time.
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..clock import utcnow
from ..config import MIN_HOURS_BETWEEN_RUNS, TRIGGER_WINDOW_MINUTES
from ..models import SchedulerCheckpoint
from .results import BatchSummary


def get_checkpoint(db: Session, task: str) -> Optional[SchedulerCheckpoint]:
    return db.query(SchedulerCheckpoint).filter(SchedulerCheckpoint.task_name == task).first()


def in_trigger_window(now: datetime, target_hour: int, window_minutes: int = TRIGGER_WINDOW_MINUTES) -> bool:
    return now.hour == target_hour and 0 <= now.minute < window_minutes


def should_run(db: Session, task: str, now: datetime, target_hour: int, *,
               window_minutes: int = TRIGGER_WINDOW_MINUTES,
               min_hours: int = MIN_HOURS_BETWEEN_RUNS) -> bool:
    if not in_trigger_window(now, target_hour, window_minutes):
        return False
    checkpoint = get_checkpoint(db, task)
    if checkpoint is None or checkpoint.last_run_at is None:
        return True
    return now - checkpoint.last_run_at >= timedelta(hours=min_hours)


def mark_run(db: Session, task: str, now: datetime = None, summary: BatchSummary = None) -> SchedulerCheckpoint:
    now = now or utcnow()
    checkpoint = get_checkpoint(db, task)
    if checkpoint is None:
        checkpoint = SchedulerCheckpoint(task_name=task)
        db.add(checkpoint)
    checkpoint.last_run_at = now
    checkpoint.last_summary_json = summary.to_dict() if summary else {}
    db.commit()
    return checkpoint


def record_summary(db: Session, summary: BatchSummary, now: datetime = None) -> SchedulerCheckpoint:
    """Store the latest summary of an interval task for the operator console."""
    return mark_run(db, summary.task, now, summary)
