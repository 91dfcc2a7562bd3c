# goforno/services/runner.py
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from sqlalchemy.orm import Session

from ..clock import utcnow
from ..config import (
    DAILY_GENERATION_HOUR_UTC, MOTIVATION_HOUR_UTC,
    SCHEDULER_TICK_SECONDS, TIME_WARNING_INTERVAL_SECONDS, REMINDER_INTERVAL_SECONDS, DECAY_INTERVAL_SECONDS,
    LEADERBOARD_INTERVAL_SECONDS,
)
from ..db import SessionLocal, init_db
from .challenge_scheduler import generate_daily_challenges, send_milestone_motivation
from .confidence_decay import decay_confidence_meters
from .leaderboard import check_leaderboard_fall_behind
from .results import BatchSummary
from .run_guard import mark_run, record_summary, should_run
from .time_warnings import check_quest_time_warnings, send_quest_reminders

logger = logging.getLogger(__name__)

Job = Callable[[Session, object], Awaitable[Optional[BatchSummary]]]


@dataclass
class PeriodicTask:
    name: str
    interval_seconds: int
    job: Job


def daily_task(name: str, target_hour: int, sweep) -> Job:
    """Wrap a sweep so it runs once per UTC day inside the target hour's trigger window."""
    async def job(db: Session, now):
        if not should_run(db, name, now, target_hour):
            return None
        logger.info("Running %s", name)
        summary = await sweep(db, now)
        mark_run(db, name, now, summary)
        return summary
    return job


def interval_task(sweep) -> Job:
    async def job(db: Session, now):
        summary = await sweep(db, now)
        record_summary(db, summary, now)
        return summary
    return job


def build_tasks(generator=None, gateway=None) -> List[PeriodicTask]:
    return [
        PeriodicTask(
            "daily_generation", SCHEDULER_TICK_SECONDS,
            daily_task("daily_generation", DAILY_GENERATION_HOUR_UTC,
                       lambda db, now: generate_daily_challenges(db, generator=generator, gateway=gateway, now=now)),
        ),
        PeriodicTask(
            "motivation", SCHEDULER_TICK_SECONDS,
            daily_task("motivation", MOTIVATION_HOUR_UTC,
                       lambda db, now: send_milestone_motivation(db, gateway=gateway, now=now)),
        ),
        PeriodicTask(
            "time_warnings", TIME_WARNING_INTERVAL_SECONDS,
            interval_task(lambda db, now: check_quest_time_warnings(db, gateway=gateway, now=now)),
        ),
        PeriodicTask(
            "quest_reminders", REMINDER_INTERVAL_SECONDS,
            interval_task(lambda db, now: send_quest_reminders(db, gateway=gateway, now=now)),
        ),
        PeriodicTask(
            "confidence_decay", DECAY_INTERVAL_SECONDS,
            interval_task(lambda db, now: decay_confidence_meters(db, gateway=gateway, now=now)),
        ),
        PeriodicTask(
            "leaderboard", LEADERBOARD_INTERVAL_SECONDS,
            interval_task(lambda db, now: check_leaderboard_fall_behind(db, gateway=gateway, now=now)),
        ),
    ]


async def run_task_once(task: PeriodicTask, session_factory=SessionLocal, now=None) -> Optional[BatchSummary]:
    db = session_factory()
    try:
        summary = await task.job(db, now or utcnow())
        if summary is not None and summary.failed:
            logger.warning("%s finished with %d failure(s)", task.name, summary.failed)
        return summary
    except Exception:
        db.rollback()
        logger.exception("Scheduled task %s failed", task.name)
        return None
    finally:
        db.close()


def _next_tick(previous: float, interval: float, now: float) -> float:
    """Next slot on the fixed grid started by the first run. Slots a long run overshot are skipped."""
    tick = previous + interval
    while tick <= now:
        tick += interval
    return tick


async def _run_periodically(task: PeriodicTask, stop: asyncio.Event, session_factory) -> None:
    loop = asyncio.get_running_loop()
    tick = loop.time()
    while not stop.is_set():
        await run_task_once(task, session_factory)
        tick = _next_tick(tick, task.interval_seconds, loop.time())
        try:
            await asyncio.wait_for(stop.wait(), timeout=tick - loop.time())
        except asyncio.TimeoutError:
            pass


async def run_forever(tasks: List[PeriodicTask] = None, stop: asyncio.Event = None,
                      session_factory=SessionLocal) -> None:
    """Run every task on its own cadence in this process until `stop` is set."""
    tasks = tasks or build_tasks()
    stop = stop or asyncio.Event()
    logger.info("Scheduler started with tasks: %s", ", ".join(t.name for t in tasks))
    await asyncio.gather(*(_run_periodically(t, stop, session_factory) for t in tasks))
    logger.info("Scheduler stopped")


def main() -> None:
    init_db()
    asyncio.run(run_forever())
