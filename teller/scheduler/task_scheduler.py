"""
Task scheduler for the teller's periodic loops.

Each registered task runs in its own asyncio task on its own interval, so a
long provisioning cycle never delays payment polling.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, Any, Callable, Optional

import structlog

from .clock import Clock, system_clock

logger = structlog.get_logger(__name__)


class ScheduledTask:
    """Represents a scheduled task."""

    def __init__(
        self,
        name: str,
        func: Callable,
        interval_seconds: float,
        clock: Clock,
        enabled: bool = True,
        run_immediately: bool = True
    ):
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.enabled = enabled
        self.run_immediately = run_immediately
        self.last_run: Optional[datetime] = None
        self.next_run: Optional[datetime] = None
        self.run_count = 0
        self.error_count = 0
        self.last_error: Optional[str] = None

    def schedule_next_run(self):
        self.next_run = self.clock.now() + timedelta(seconds=self.interval_seconds)

    async def run(self):
        """Execute the task once. Errors are recorded, never raised."""
        try:
            logger.debug("Running scheduled task", task=self.name)

            start_time = self.clock.now()
            await self.func()
            duration = (self.clock.now() - start_time).total_seconds()

            self.last_run = start_time
            self.run_count += 1

            logger.debug(
                "Task completed",
                task=self.name,
                duration=duration,
                run_count=self.run_count
            )

        except Exception as e:
            self.error_count += 1
            self.last_error = str(e)

            logger.error(
                "Task failed",
                task=self.name,
                error=str(e),
                error_count=self.error_count
            )
        finally:
            self.schedule_next_run()


class TaskScheduler:
    """Runs registered tasks until asked to stop."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or system_clock
        self.tasks: Dict[str, ScheduledTask] = {}
        self.running = False
        self._stop_event = asyncio.Event()
        self._runners: Dict[str, asyncio.Task] = {}

    def register_task(
        self,
        name: str,
        func: Callable,
        interval_seconds: float,
        enabled: bool = True,
        run_immediately: bool = True
    ):
        """Register a new scheduled task."""
        self.tasks[name] = ScheduledTask(
            name=name,
            func=func,
            interval_seconds=interval_seconds,
            clock=self.clock,
            enabled=enabled,
            run_immediately=run_immediately
        )
        logger.info("Registered task", task=name, interval_seconds=interval_seconds)

    def enable_task(self, name: str):
        if name in self.tasks:
            self.tasks[name].enabled = True
            logger.info("Enabled task", task=name)

    def disable_task(self, name: str):
        if name in self.tasks:
            self.tasks[name].enabled = False
            logger.info("Disabled task", task=name)

    async def start(self):
        """Run every enabled task until stop() is called."""
        logger.info("Starting task scheduler", tasks=list(self.tasks))
        self.running = True
        self._stop_event.clear()

        for name, task in self.tasks.items():
            if task.enabled:
                self._runners[name] = asyncio.create_task(self._run_loop(task), name=f"teller-{name}")

        if self._runners:
            await asyncio.gather(*self._runners.values(), return_exceptions=True)

        self.running = False
        logger.info("Task scheduler stopped")

    def request_stop(self):
        """Stop scheduling new runs; in-flight runs finish."""
        self._stop_event.set()

    async def stop(self):
        """Stop scheduling and wait for in-flight runs to finish."""
        logger.info("Stopping task scheduler")
        self.request_stop()
        if self._runners:
            await asyncio.gather(*self._runners.values(), return_exceptions=True)
        self._runners.clear()
        self.running = False

    async def _run_loop(self, task: ScheduledTask):
        if not task.run_immediately:
            task.schedule_next_run()
            if await self._wait(task.interval_seconds):
                return

        while not self._stop_event.is_set():
            await task.run()
            if await self._wait(task.interval_seconds):
                return

    async def _wait(self, seconds: float) -> bool:
        """Sleep on the clock; returns True if stop was requested meanwhile."""
        if self._stop_event.is_set():
            return True

        sleeper = asyncio.ensure_future(self.clock.sleep(seconds))
        stopper = asyncio.ensure_future(self._stop_event.wait())
        done, pending = await asyncio.wait(
            {sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED
        )
        for pending_task in pending:
            pending_task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        return self._stop_event.is_set()

    async def health_check(self) -> Dict[str, Any]:
        """Get health status of task scheduler."""
        total_tasks = len(self.tasks)
        enabled_tasks = sum(1 for task in self.tasks.values() if task.enabled)
        tasks_with_errors = sum(1 for task in self.tasks.values() if task.error_count > 0)

        task_statuses = {}
        for name, task in self.tasks.items():
            task_statuses[name] = {
                "enabled": task.enabled,
                "last_run": task.last_run.isoformat() if task.last_run else None,
                "next_run": task.next_run.isoformat() if task.next_run else None,
                "run_count": task.run_count,
                "error_count": task.error_count,
                "last_error": task.last_error
            }

        return {
            "healthy": self.running and tasks_with_errors < max(total_tasks, 1) * 0.5,
            "running": self.running,
            "total_tasks": total_tasks,
            "enabled_tasks": enabled_tasks,
            "tasks_with_errors": tasks_with_errors,
            "tasks": task_statuses
        }
