"""Per-query scheduling on APScheduler.

One wall-clock aligned job per active query, a discovery job that picks up
queries created elsewhere, and a periodic status log. All executions go
through QueryScheduler.execute, which allows a single run per query at a
time and skips (never queues) overlapping requests.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.events import EVENT_JOB_MAX_INSTANCES, JobSubmissionEvent
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from multiscraper import metrics
from multiscraper.config import settings
from multiscraper.db.models import SearchQuery, User
from multiscraper.db.session import AsyncSessionLocal
from multiscraper.errors import PersistenceError
from multiscraper.worker.tasks import QueryRunResult, QueryTaskRunner, task_runner

logger = logging.getLogger(__name__)

DISCOVERY_JOB_ID = "query_discovery"
STATUS_JOB_ID = "scheduler_status"
QUERY_JOB_PREFIX = "query_"


def build_trigger(interval_minutes: int) -> BaseTrigger:
    """
    Build a wall-clock aligned trigger for an interval in minutes.

    Under an hour runs on minute marks (*/N), whole hours under a day run
    on the hour (*/H), anything else uses an interval anchored on the next
    whole minute.
    """
    interval = max(settings.min_interval_minutes, int(interval_minutes))
    if interval < 60:
        return CronTrigger(minute=f"*/{interval}")
    if interval % 60 == 0 and interval // 60 < 24:
        return CronTrigger(minute=0, hour=f"*/{interval // 60}")
    start = (datetime.now() + timedelta(minutes=1)).replace(second=0, microsecond=0)
    return IntervalTrigger(minutes=interval, start_date=start)


def _job_id(query_id: int) -> str:
    return f"{QUERY_JOB_PREFIX}{query_id}"


class QueryScheduler:
    """
    Owns the timer of every active query.

    Only the command methods below touch the job table and the in-flight
    set; callers get copies.
    """

    def __init__(
        self,
        runner: Optional[QueryTaskRunner] = None,
        session_factory=None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.runner = runner or task_runner
        self.session_factory = session_factory or AsyncSessionLocal
        self._scheduler = scheduler or AsyncIOScheduler()
        self._jobs: dict[int, str] = {}
        self._in_flight: set[int] = set()
        # Queries between schedule_query() and arming their timer
        self._pending: set[int] = set()
        self._last_runs: dict[int, datetime] = {}
        # A timer firing while its previous run is still going never reaches execute()
        self._scheduler.add_listener(self._on_max_instances, EVENT_JOB_MAX_INSTANCES)

    def _on_max_instances(self, event: JobSubmissionEvent):
        if not event.job_id.startswith(QUERY_JOB_PREFIX):
            return
        query_id = event.job_id[len(QUERY_JOB_PREFIX):]
        logger.warning("Query %s is still running, skipping scheduled run", query_id)
        metrics.record_query_run_skipped("scheduled")

    @property
    def running(self) -> bool:
        return self._scheduler.running

    async def start(self, schedule_queries: bool = True) -> int:
        """
        Start the scheduler, arm background jobs and schedule all active queries.

        Args:
            schedule_queries: Also schedule (and first-run) every active query

        Returns:
            Number of queries scheduled
        """
        if not self._scheduler.running:
            self._scheduler.start()

        self._scheduler.add_job(
            self.check_for_new_queries,
            IntervalTrigger(seconds=settings.query_discovery_interval_seconds),
            id=DISCOVERY_JOB_ID,
            name="Discover new search queries",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.log_status,
            IntervalTrigger(seconds=settings.scheduler_status_interval_seconds),
            id=STATUS_JOB_ID,
            name="Log scheduler status",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

        count = await self.schedule_all_active_queries() if schedule_queries else 0
        logger.info(
            "Scheduler started: %d queries, discovery every %ds, status every %ds",
            count,
            settings.query_discovery_interval_seconds,
            settings.scheduler_status_interval_seconds,
        )
        return count

    async def _active_query_ids(self, user_id: Optional[int] = None) -> list[int]:
        stmt = (
            select(SearchQuery.id)
            .join(User, SearchQuery.user_id == User.id)
            .where(SearchQuery.is_active.is_(True), User.is_active.is_(True))
            .order_by(SearchQuery.id)
        )
        if user_id is not None:
            stmt = stmt.where(SearchQuery.user_id == user_id)
        try:
            async with self.session_factory() as db:
                result = await db.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not list active queries: {e}") from e

    async def schedule_all_active_queries(self) -> int:
        """Schedule every active query of an active user."""
        query_ids = await self._active_query_ids()
        logger.info(f"Scheduling {len(query_ids)} active queries")

        scheduled = 0
        for query_id in query_ids:
            if await self.schedule_query(query_id):
                scheduled += 1
        return scheduled

    async def schedule_query(
        self, query_id: int, run_immediately: bool = True, trigger: str = "immediate"
    ) -> bool:
        """
        Run a query once and arm its recurring timer.

        Scheduling an already scheduled query replaces its timer, which is how
        interval edits take effect.

        Args:
            query_id: Query to schedule
            run_immediately: Execute once (awaited) before arming the timer
            trigger: Label for the immediate run

        Returns:
            True if the timer is armed
        """
        try:
            async with self.session_factory() as db:
                query = await db.get(SearchQuery, query_id)
                interval = query.interval_minutes if query else None
                is_active = bool(query and query.is_active)
        except SQLAlchemyError as e:
            logger.error(f"Could not load query {query_id} for scheduling: {e}")
            return False

        if not is_active:
            logger.info(f"Query {query_id} is missing or inactive, not scheduling")
            self.cancel_query(query_id)
            return False

        self._pending.add(query_id)
        try:
            if run_immediately:
                await self.execute(query_id, trigger)

            if query_id not in self._pending:
                logger.info(f"Query {query_id} was cancelled during its first run, not arming timer")
                return False

            job = self._scheduler.add_job(
                self._run_scheduled,
                build_trigger(interval),
                args=[query_id],
                id=_job_id(query_id),
                name=f"Search query {query_id} every {interval} min",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=settings.misfire_grace_seconds,
                replace_existing=True,
            )
        finally:
            self._pending.discard(query_id)

        self._jobs[query_id] = job.id
        metrics.update_scheduled_queries(len(self._jobs))
        logger.info(f"Query {query_id} scheduled every {interval} minutes")
        return True

    async def execute(self, query_id: int, trigger: str) -> Optional[QueryRunResult]:
        """
        Run a query unless a run of it is already in flight.

        Returns:
            The run result, or None when skipped
        """
        if query_id in self._in_flight:
            logger.warning(
                "Query %d is still running, skipping %s run", query_id, trigger
            )
            metrics.record_query_run_skipped(trigger)
            return None

        self._in_flight.add(query_id)
        try:
            result = await self.runner.run_query(query_id, trigger)
        finally:
            self._in_flight.discard(query_id)
            self._last_runs[query_id] = datetime.now()
        return result

    async def _run_scheduled(self, query_id: int):
        await self.execute(query_id, "scheduled")

    def cancel_query(self, query_id: int) -> bool:
        """
        Stop a query's timer. A run already in flight finishes normally.

        Returns:
            True if a timer was armed
        """
        self._pending.discard(query_id)
        job_id = self._jobs.pop(query_id, None)
        if job_id is None:
            return False
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            pass
        metrics.update_scheduled_queries(len(self._jobs))
        logger.info(f"Query {query_id} cancelled")
        return True

    def cancel_all(self) -> int:
        """Stop every query timer and the background jobs."""
        count = 0
        for query_id in list(self._jobs):
            if self.cancel_query(query_id):
                count += 1
        self._pending.clear()
        for job_id in (DISCOVERY_JOB_ID, STATUS_JOB_ID):
            try:
                self._scheduler.remove_job(job_id)
            except JobLookupError:
                pass
        logger.info(f"Cancelled {count} query timers")
        return count

    def shutdown(self):
        """Cancel all timers and stop the scheduler."""
        self.cancel_all()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    async def force_run_for_user(self, user_id: int) -> list[QueryRunResult]:
        """
        Immediately run all active queries of a user, bypassing their timers.

        Queries already running are skipped and left out of the result.
        """
        query_ids = await self._active_query_ids(user_id=user_id)
        logger.info(f"Force-running {len(query_ids)} queries for user {user_id}")

        results = []
        for query_id in query_ids:
            result = await self.execute(query_id, "forced")
            if result is not None:
                results.append(result)
        return results

    async def check_for_new_queries(self) -> list[int]:
        """
        Schedule active queries that have no timer yet.

        Returns:
            Query ids that were newly scheduled
        """
        try:
            active_ids = await self._active_query_ids()
        except PersistenceError as e:
            logger.error(f"New-query check failed: {e}")
            return []

        known = set(self._jobs) | self._pending
        new_ids = [query_id for query_id in active_ids if query_id not in known]
        if not new_ids:
            return []

        logger.info(f"Found {len(new_ids)} new queries to schedule: {new_ids}")
        scheduled = []
        for query_id in new_ids:
            if await self.schedule_query(query_id, trigger="discovery"):
                scheduled.append(query_id)
        return scheduled

    def scheduled_query_ids(self) -> set[int]:
        return set(self._jobs)

    def in_flight_query_ids(self) -> set[int]:
        return set(self._in_flight)

    def job_status(self) -> list[dict]:
        """Next and last run of every scheduled query."""
        status = []
        for query_id, job_id in sorted(self._jobs.items()):
            job = self._scheduler.get_job(job_id)
            next_run = getattr(job, "next_run_time", None) if job else None
            last_run = self._last_runs.get(query_id)
            status.append(
                {
                    "query_id": query_id,
                    "job_id": job_id,
                    "next_run_time": next_run.isoformat() if next_run else None,
                    "last_run_time": last_run.isoformat() if last_run else None,
                    "running": query_id in self._in_flight,
                }
            )
        return status

    async def log_status(self):
        """Log the state of all query timers."""
        status = self.job_status()
        logger.info(
            "Scheduler status: %d queries scheduled, %d running",
            len(status),
            len(self._in_flight),
        )
        for entry in status:
            logger.info(
                "Query %s: next run %s, last run %s%s",
                entry["query_id"],
                entry["next_run_time"] or "-",
                entry["last_run_time"] or "never",
                " (running)" if entry["running"] else "",
            )


# Global scheduler instance
query_scheduler = QueryScheduler()
