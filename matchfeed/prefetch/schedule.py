"""
Cron-expression scheduling.

``next_fire_time`` is a pure function over a crontab expression; ``Ticker``
runs a job once at startup and then on every cron fire time, using an
APScheduler BackgroundScheduler.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from matchfeed.utils.helpers import utcnow

logger = logging.getLogger("prefetch.schedule")


def parse_cron(expression: str) -> CronTrigger:
    """
    Build a UTC trigger from a 5-field crontab expression.

    Raises:
        ValueError: If the expression is malformed
    """
    if not expression or len(expression.split()) != 5:
        raise ValueError(f"Expected a 5-field cron expression, got {expression!r}")
    return CronTrigger.from_crontab(expression, timezone=timezone.utc)


def next_fire_time(expression: str, now: datetime) -> datetime:
    """
    First time strictly after ``now`` at which the expression fires.

    Args:
        expression: 5-field crontab expression, evaluated in UTC
        now: Reference time (naive values are taken as UTC)

    Returns:
        Aware UTC datetime
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    trigger = parse_cron(expression)
    # Passing now as the previous fire time excludes now itself
    return trigger.get_next_fire_time(now, now).astimezone(timezone.utc)


class Ticker:
    """
    Runs a job immediately and then on a cron schedule.

    Ticks never overlap within one process (max_instances=1) and missed
    ticks are collapsed into one (coalesce=True).
    """

    def __init__(
        self,
        job: Callable[[], Any],
        expression: str,
        clock: Callable[[], datetime] = utcnow,
        name: str = "prefetch",
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        """
        Args:
            job: Callable run on every tick
            expression: 5-field crontab expression (UTC)
            clock: Source of the current time, used for the startup tick
            name: Job id inside the scheduler
            scheduler: Scheduler to register with (one is created if omitted)
        """
        self.job = job
        self.expression = expression
        self.trigger = parse_cron(expression)
        self.name = name
        self._clock = clock
        self.scheduler = scheduler or BackgroundScheduler(
            timezone=timezone.utc,
            executors={"default": ThreadPoolExecutor(max_workers=2)},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
        )

    def _run(self) -> None:
        try:
            self.job()
        except Exception as e:
            logger.error(f"Scheduled job {self.name} failed: {e}", exc_info=True)

    def schedule(self, run_immediately: bool = True) -> None:
        """Register the job without starting the scheduler."""
        options: Dict[str, Any] = {}
        if run_immediately:
            options["next_run_time"] = self._clock()
        self.scheduler.add_job(
            self._run,
            trigger=self.trigger,
            id=self.name,
            name=f"{self.name} ({self.expression})",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            **options,
        )
        logger.info(f"Scheduled {self.name} with cron '{self.expression}'")

    def start(self, run_immediately: bool = True) -> None:
        """Register the job and start the scheduler thread."""
        self.schedule(run_immediately=run_immediately)
        if not self.scheduler.running:
            self.scheduler.start()

    def stop(self) -> None:
        """Prevent future ticks. A tick already running is left to finish."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info(f"Stopped {self.name} scheduler")

    @property
    def running(self) -> bool:
        return bool(self.scheduler.running)

    def next_run_time(self) -> Optional[datetime]:
        """When the job will next fire (None unless the scheduler is running)."""
        if not self.scheduler.running:
            return None
        job = self.scheduler.get_job(self.name)
        return getattr(job, "next_run_time", None) if job is not None else None
