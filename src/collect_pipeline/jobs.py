"""
Cancellable asyncio jobs.

A Job wraps a coroutine function that receives the RunnerStatus of whoever
runs it. Cancellation is cooperative: RunnerStatus.cancel() only flips a
flag, and every network-bound step checks it before starting. Work already
in flight is allowed to finish.

JobsRunner launches jobs as asyncio tasks bounded by a semaphore and reports
results and errors through callbacks. run_parallel is the same idea for the
small independent units inside one pull (one attachment, one submission).
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, Iterable, List, Optional, TypeVar

from core.logging.utilities import LoggedClass, get_logger, log_exception

logger = get_logger(__name__)

T = TypeVar("T")
U = TypeVar("U")


class RunnerStatus:
    """Cancellation token shared by all the work launched together."""

    def __init__(self):
        self._cancelled = asyncio.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def is_still_running(self) -> bool:
        return not self._cancelled.is_set()


class Job(Generic[T]):
    """
    A unit of work that knows about its runner's status.

    Usage:
        job = Job.supply(download_form).then_accept(save_result)
        runner = JobsRunner().launch([job])
        await runner.wait_for_completion()
    """

    def __init__(self, fn: Callable[[RunnerStatus], Awaitable[T]]):
        self._fn = fn

    async def __call__(self, status: RunnerStatus) -> T:
        return await self._fn(status)

    @classmethod
    def supply(cls, fn: Callable[[RunnerStatus], Awaitable[T]]) -> "Job[T]":
        """Job producing a value."""
        return cls(fn)

    @classmethod
    def run(cls, fn: Callable[[RunnerStatus], Awaitable[Any]]) -> "Job[None]":
        """Job run for its side effects."""

        async def runner(status: RunnerStatus) -> None:
            await fn(status)

        return cls(runner)

    def then_supply(self, fn: Callable[[RunnerStatus, T], Awaitable[U]]) -> "Job[U]":
        """Chain a step that maps this job's result."""

        async def chained(status: RunnerStatus) -> U:
            result = await self(status)
            return await fn(status, result)

        return Job(chained)

    def then_accept(self, fn: Callable[[RunnerStatus, T], Awaitable[Any]]) -> "Job[None]":
        """Chain a step that consumes this job's result."""

        async def chained(status: RunnerStatus) -> None:
            result = await self(status)
            await fn(status, result)

        return Job(chained)

    def then_run(self, other: "Job[U]") -> "Job[U]":
        """Run another job after this one, discarding this one's result."""

        async def chained(status: RunnerStatus) -> U:
            await self(status)
            return await other(status)

        return Job(chained)

    @staticmethod
    def all_of(*jobs: "Job[Any]") -> "Job[List[Any]]":
        """Run jobs concurrently and collect their results in order."""

        async def combined(status: RunnerStatus) -> List[Any]:
            return list(await asyncio.gather(*(job(status) for job in jobs)))

        return Job(combined)


class JobsRunner(LoggedClass):
    """
    Runs jobs as asyncio tasks with bounded concurrency.

    cancel() stops jobs that haven't started yet and tells running ones to
    stop issuing new work; it never kills a task.

    Usage:
        runner = JobsRunner(max_concurrent=4).launch(
            jobs,
            on_success=lambda result: ...,
            on_error=lambda exc: ...,
        )
        ...
        runner.cancel()
        await runner.wait_for_completion()
    """

    log_component = "jobs"

    def __init__(self, max_concurrent: Optional[int] = None):
        self.max_concurrent = max_concurrent
        self.status = RunnerStatus()
        self._tasks: List[asyncio.Task] = []
        self._on_complete: Optional[Callable[[], None]] = None
        self._semaphore = asyncio.Semaphore(max_concurrent) if max_concurrent else None
        super().__init__()

    def launch(
        self,
        jobs: Iterable[Job[Any]],
        on_success: Optional[Callable[[Any], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> "JobsRunner":
        """
        Schedule jobs on the running event loop and return immediately.

        Must be called from a coroutine.
        """
        loop = asyncio.get_running_loop()
        for job in jobs:
            self._tasks.append(loop.create_task(self._run_job(job, on_success, on_error)))
        self._log(logging.DEBUG, "Jobs launched", total=len(self._tasks))
        return self

    async def _run_job(
        self,
        job: Job[Any],
        on_success: Optional[Callable[[Any], None]],
        on_error: Optional[Callable[[BaseException], None]],
    ) -> None:
        if self._semaphore is not None:
            async with self._semaphore:
                await self._run_guarded(job, on_success, on_error)
        else:
            await self._run_guarded(job, on_success, on_error)

    async def _run_guarded(
        self,
        job: Job[Any],
        on_success: Optional[Callable[[Any], None]],
        on_error: Optional[Callable[[BaseException], None]],
    ) -> None:
        if self.status.is_cancelled:
            return
        try:
            result = await job(self.status)
        except Exception as e:
            self._log_exception(e, "Error running job")
            if on_error is not None:
                on_error(e)
            return
        if on_success is not None:
            on_success(result)

    def cancel(self) -> None:
        if self.status.is_still_running:
            self._log(logging.INFO, "Cancelling jobs", total=len(self._tasks))
        self.status.cancel()

    def on_complete(self, callback: Callable[[], None]) -> "JobsRunner":
        """Register a callback run once wait_for_completion() has drained all jobs."""
        self._on_complete = callback
        return self

    async def wait_for_completion(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks)
        if self._on_complete is not None:
            self._on_complete()

    @staticmethod
    async def launch_sync(jobs: Iterable[Job[T]]) -> List[T]:
        """Run jobs concurrently with a status that is never cancelled."""
        status = RunnerStatus()
        return list(await asyncio.gather(*(job(status) for job in jobs)))


async def run_parallel(
    status: RunnerStatus,
    units: Iterable[Callable[[], Awaitable[T]]],
    limit: Optional[int] = None,
) -> List[Optional[T]]:
    """
    Run independent units concurrently, at most limit at a time.

    Cancellation is checked right before each unit starts; units that never
    start yield None. Every started unit runs to completion even if a
    sibling raises; the first exception is re-raised afterwards.
    """
    semaphore = asyncio.Semaphore(limit) if limit else None

    async def guarded(unit: Callable[[], Awaitable[T]]) -> Optional[T]:
        if semaphore is None:
            return None if status.is_cancelled else await unit()
        async with semaphore:
            if status.is_cancelled:
                return None
            return await unit()

    results = await asyncio.gather(*(guarded(unit) for unit in units), return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            log_exception(logger, result, "Parallel unit failed")
            raise result
    return list(results)
