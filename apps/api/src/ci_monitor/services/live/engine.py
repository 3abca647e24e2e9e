"""Polls the watched run and pushes snapshots to every subscriber.

At most one run is watched at a time. Its poll loop is a single task shared by
all connections; the task handle lives in the WatchState so stopping or
superseding a watch cancels exactly that loop.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import structlog

from ci_monitor.services.github.client import RunProvider
from ci_monitor.services.github.types import CommitResult, ProviderResult, RunRecord
from ci_monitor.services.live.events import ErrorEvent, LatestRun, RunCompleted, RunUpdate
from ci_monitor.services.live.registry import ConnectionRegistry

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class WatchState:
    run_id: int | None = None
    task: asyncio.Task[None] | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.task is not None and self.run_id is None:
            raise ValueError("a watch task requires a run id")

    @property
    def active(self) -> bool:
        return self.task is not None and not self.task.done()


IDLE = WatchState()


class RunMonitor:
    def __init__(
        self,
        provider: RunProvider,
        registry: ConnectionRegistry,
        *,
        poll_interval_seconds: float = 5.0,
        runs_page_size: int = 10,
        discover_delay_seconds: float = 2.0,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self._poll_interval_seconds = poll_interval_seconds
        self._runs_page_size = runs_page_size
        self._discover_delay_seconds = discover_delay_seconds
        self._watch = IDLE
        self._background: set[asyncio.Task[None]] = set()

    @property
    def watch(self) -> WatchState:
        return self._watch

    @property
    def watching_run_id(self) -> int | None:
        return self._watch.run_id

    def start_watch(self, run_id: int) -> None:
        """Watch `run_id`, superseding any current watch. The first poll is immediate."""
        previous = self._watch.run_id
        self._cancel_watch()
        task = asyncio.create_task(self._watch_loop(run_id), name=f"watch-run-{run_id}")
        self._watch = WatchState(run_id=run_id, task=task)
        logger.info(
            "watch_started",
            run_id=run_id,
            superseded=previous,
            interval_seconds=self._poll_interval_seconds,
        )

    def stop_watch(self) -> None:
        run_id = self._watch.run_id
        self._cancel_watch()
        if run_id is not None:
            logger.info("watch_stopped", run_id=run_id)

    async def poll(self, run_id: int) -> bool:
        """Fetch and broadcast one snapshot of `run_id`; True once it has completed."""
        try:
            runs = await self._provider.list_runs(self._runs_page_size)
            if not runs.success:
                await self._registry.broadcast(ErrorEvent(f"Error fetching workflow status: {runs.error}"))
                return False

            run = next((item for item in runs.value or () if item.id == run_id), None)
            if run is None:
                # the runs listing is eventually consistent; try again next tick
                logger.debug("watched_run_not_listed", run_id=run_id)
                return False

            jobs = await self._provider.list_jobs(run_id)
            if not jobs.success:
                await self._registry.broadcast(ErrorEvent(f"Error fetching workflow jobs: {jobs.error}"))
                return False

            snapshot = tuple(jobs.value or ())
            await self._registry.broadcast(RunUpdate(run=run, jobs=snapshot))
            if run.is_completed:
                await self._registry.broadcast(RunCompleted(run=run, jobs=snapshot))
                return True
            return False
        except Exception:
            logger.exception("poll_failed", run_id=run_id)
            await self._registry.broadcast(ErrorEvent("Error fetching workflow status"))
            return False

    async def discover_latest(self) -> RunRecord | None:
        result = await self._provider.list_runs(1)
        if not result.success:
            await self._registry.broadcast(
                ErrorEvent(f"Failed to fetch latest workflow run: {result.error}")
            )
            return None
        if not result.value:
            logger.info("no_runs_found")
            return None

        latest = result.value[0]
        await self._registry.broadcast(LatestRun(run=latest))
        if latest.is_active:
            self.start_watch(latest.id)
        else:
            logger.info("latest_run_not_active", run_id=latest.id, status=latest.status)
        return latest

    async def trigger(self, message: str) -> ProviderResult[CommitResult]:
        """Commit the status file, then discover the new run after a short delay."""
        result = await self._provider.trigger_run(message)
        if result.success:
            logger.info("pipeline_triggered", sha=result.value.sha if result.value else None)
            self._spawn(self._discover_after_delay())
        else:
            logger.warning("pipeline_trigger_failed", error=result.error)
        return result

    async def aclose(self) -> None:
        self.stop_watch()
        for task in list(self._background):
            task.cancel()
        self._background.clear()

    def _cancel_watch(self) -> None:
        task = self._watch.task
        self._watch = IDLE
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _watch_loop(self, run_id: int) -> None:
        # ownership is rechecked every round; a cancel can be absorbed by an in-flight send
        while self._owns_watch(run_id):
            if await self.poll(run_id):
                break
            await asyncio.sleep(self._poll_interval_seconds)

        if self._owns_watch(run_id):
            self._watch = IDLE
        logger.info("watch_completed", run_id=run_id)

    def _owns_watch(self, run_id: int) -> bool:
        return self._watch.run_id == run_id and self._watch.task is asyncio.current_task()

    async def _discover_after_delay(self) -> None:
        await asyncio.sleep(self._discover_delay_seconds)
        try:
            await self.discover_latest()
        except Exception:
            logger.exception("discover_latest_failed")

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
