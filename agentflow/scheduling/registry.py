"""Registry of recurring cron jobs plus the one-shot due-task scan."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Coroutine, Dict, List, Optional, Set

from agentflow.core.clock import Clock, SystemClock
from agentflow.core.errors import AgentflowError, SchedulingError
from agentflow.orchestration.executor import ExecutionStateMachine
from agentflow.storage.base import Store

from . import cron

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class JobStatus:
    is_scheduled: bool
    is_active: bool


@dataclass(slots=True, frozen=True)
class ScheduledTaskInfo:
    task_id: str
    expression: str
    next_fire: Optional[datetime]
    is_active: bool


@dataclass(slots=True)
class ScheduledJob:
    """Runtime timer realising one task's cron schedule."""

    task_id: str
    expression: str
    timer: Optional[asyncio.Task[None]] = None
    next_fire: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.timer is not None and not self.timer.done()


class ScheduleRegistry:
    """Own the task id -> timer mapping and trigger runs on the state machine.

    Jobs are added only by the synchronous :meth:`schedule` call, so a
    replacement can never leave two timers armed for the same task. A timer
    that runs out of trigger instants removes its own job.
    """

    def __init__(
        self,
        *,
        store: Store,
        executor: ExecutionStateMachine,
        clock: Optional[Clock] = None,
        scan_interval_seconds: float = 60.0,
        lookahead_years: int = cron.DEFAULT_LOOKAHEAD_YEARS,
    ) -> None:
        self._store = store
        self._executor = executor
        self._clock = clock or SystemClock()
        self._scan_interval = scan_interval_seconds
        self._lookahead_years = lookahead_years
        self._jobs: Dict[str, ScheduledJob] = {}
        self._firings: Set[asyncio.Task[None]] = set()
        self._scan_task: Optional[asyncio.Task[None]] = None

    @property
    def is_running(self) -> bool:
        return self._scan_task is not None and not self._scan_task.done()

    def schedule(self, task_id: str, expression: str) -> bool:
        """Arm (or replace) the cron timer for *task_id*; False for an invalid expression."""
        if not cron.validate(expression):
            logger.warning("Rejected schedule %r for task %s: invalid cron expression", expression, task_id)
            return False
        try:
            cron.next_run(expression, self._clock.now(), lookahead_years=self._lookahead_years)
        except SchedulingError as exc:
            logger.warning("Rejected schedule %r for task %s: %s", expression, task_id, exc)
            return False

        previous = self._jobs.pop(task_id, None)
        if previous is not None and previous.timer is not None:
            previous.timer.cancel()

        job = ScheduledJob(task_id=task_id, expression=expression)
        job.timer = asyncio.create_task(self._run_timer(job), name=f"cron-{task_id}")
        self._jobs[task_id] = job
        logger.info(
            "Scheduled task %s with %r%s", task_id, expression, " (replaced)" if previous else ""
        )
        return True

    def unschedule(self, task_id: str) -> bool:
        job = self._jobs.pop(task_id, None)
        if job is None:
            return False
        if job.timer is not None:
            job.timer.cancel()
        logger.info("Unscheduled task %s", task_id)
        return True

    def status(self, task_id: str) -> JobStatus:
        job = self._jobs.get(task_id)
        return JobStatus(is_scheduled=job is not None, is_active=job is not None and job.is_active)

    def scheduled_tasks(self) -> List[ScheduledTaskInfo]:
        infos = [
            ScheduledTaskInfo(
                task_id=job.task_id,
                expression=job.expression,
                next_fire=job.next_fire,
                is_active=job.is_active,
            )
            for job in self._jobs.values()
        ]
        return sorted(infos, key=lambda info: (info.next_fire is None, info.next_fire or datetime.max))

    async def load_active(self) -> int:
        """Schedule every PENDING recurring task from the store; returns how many were armed."""
        scheduled = 0
        for task in await self._store.list_recurring_tasks():
            if self.schedule(task.id, task.schedule or ""):
                scheduled += 1
            else:
                logger.error("Skipping task %s: stored schedule %r is invalid", task.id, task.schedule)
        logger.info("Loaded %d recurring tasks", scheduled)
        return scheduled

    async def start(self) -> None:
        """Load recurring tasks and start the one-shot scan.

        Failure here is fatal to the caller; it is the only unrecoverable
        condition of the scheduler.
        """
        if self.is_running:
            return
        self._scan_task = asyncio.create_task(self._scan_loop(), name="one-shot-scan")
        try:
            await self.load_active()
        except Exception as exc:
            self._scan_task.cancel()
            self._scan_task = None
            raise SchedulingError(f"Failed to start schedule registry: {exc}") from exc
        logger.info("Schedule registry started")

    async def stop(self) -> None:
        """Cancel every timer and the scan loop; in-flight runs keep going."""
        timers = [job.timer for job in self._jobs.values() if job.timer is not None]
        if self._scan_task is not None:
            timers.append(self._scan_task)
        self._jobs.clear()
        self._scan_task = None
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        logger.info("Schedule registry stopped")

    async def drain(self) -> None:
        """Wait for submitted firings and the executions they started."""
        while self._firings:
            await asyncio.gather(*list(self._firings), return_exceptions=True)
        await self._executor.drain()

    async def scan_due(self) -> int:
        """Trigger each due one-shot task once; returns how many runs started."""
        now = self._clock.now()
        try:
            due = await self._store.list_due_tasks(now)
        except AgentflowError as exc:
            logger.error("One-shot scan could not list due tasks: %s", exc)
            return 0

        started = 0
        for task in due:
            job = self._jobs.get(task.id)
            if job is not None and job.is_active:
                continue
            if await self._trigger(task.id):
                started += 1
        return started

    async def _run_timer(self, job: ScheduledJob) -> None:
        cursor = self._clock.now()
        while True:
            try:
                fire_at = cron.next_run(job.expression, cursor, lookahead_years=self._lookahead_years)
            except AgentflowError as exc:
                logger.error("Timer for task %s stopped: %s", job.task_id, exc)
                if self._jobs.get(job.task_id) is job:
                    del self._jobs[job.task_id]
                return
            job.next_fire = fire_at
            await self._clock.sleep((fire_at - self._clock.now()).total_seconds())
            # Never fire the same instant twice if the sleep wakes early.
            cursor = max(self._clock.now(), fire_at)
            self._submit(self._trigger(job.task_id), name=f"fire-{job.task_id}")

    async def _scan_loop(self) -> None:
        while True:
            await self._clock.sleep(self._scan_interval)
            started = await self.scan_due()
            if started:
                logger.info("One-shot scan started %d runs", started)

    async def _trigger(self, task_id: str) -> bool:
        try:
            handle = await self._executor.run_task(task_id)
        except AgentflowError as exc:
            logger.warning("Run of task %s not started: %s", task_id, exc)
            return False
        except Exception:
            logger.exception("Run of task %s raised unexpectedly", task_id)
            return False
        return handle is not None

    def _submit(self, coro: Coroutine[Any, Any, Any], *, name: str) -> None:
        firing = asyncio.create_task(coro, name=name)
        self._firings.add(firing)
        firing.add_done_callback(self._firings.discard)
