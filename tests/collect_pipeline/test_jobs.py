"""
Tests for cancellable jobs.

Test coverage:
- Job composition (supply, then_*, all_of)
- JobsRunner callbacks, bounded concurrency and cancellation
- run_parallel limits, cancellation and error propagation
"""

import asyncio

import pytest

from collect_pipeline.jobs import Job, JobsRunner, RunnerStatus, run_parallel


def value(result):
    async def fn(status):
        return result

    return fn


class TestJob:
    @pytest.mark.asyncio
    async def test_then_supply_maps_result(self):
        async def double(status, result):
            return result * 2

        job = Job.supply(value(21)).then_supply(double)

        assert await job(RunnerStatus()) == 42

    @pytest.mark.asyncio
    async def test_then_accept_consumes_result(self):
        seen = []

        async def keep(status, result):
            seen.append(result)

        assert await Job.supply(value("a")).then_accept(keep)(RunnerStatus()) is None
        assert seen == ["a"]

    @pytest.mark.asyncio
    async def test_then_run_discards_first_result(self):
        assert await Job.supply(value(1)).then_run(Job.supply(value(2)))(RunnerStatus()) == 2

    @pytest.mark.asyncio
    async def test_all_of_keeps_order(self):
        async def slow(status):
            await asyncio.sleep(0.01)
            return "slow"

        job = Job.all_of(Job.supply(slow), Job.supply(value("fast")), Job.run(value(3)))

        assert await job(RunnerStatus()) == ["slow", "fast", None]

    @pytest.mark.asyncio
    async def test_run_ignores_result(self):
        assert await Job.run(value(5))(RunnerStatus()) is None

    @pytest.mark.asyncio
    async def test_launch_sync(self):
        assert await JobsRunner.launch_sync([Job.supply(value(1)), Job.supply(value(2))]) == [1, 2]


class TestJobsRunner:
    @pytest.mark.asyncio
    async def test_callbacks(self):
        results, errors, completed = [], [], []

        async def fail(status):
            raise ValueError("bad")

        runner = JobsRunner().launch(
            [Job.supply(value(1)), Job.supply(fail)],
            on_success=results.append,
            on_error=errors.append,
        )
        runner.on_complete(lambda: completed.append(True))
        await runner.wait_for_completion()

        assert results == [1]
        assert [str(error) for error in errors] == ["bad"]
        assert completed == [True]

    @pytest.mark.asyncio
    async def test_bounded_concurrency(self):
        running = 0
        peak = 0

        async def track(status):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        runner = JobsRunner(max_concurrent=2).launch([Job.run(track) for _ in range(6)])
        await runner.wait_for_completion()

        assert peak == 2

    @pytest.mark.asyncio
    async def test_cancel_skips_pending_jobs(self):
        started = []
        gate = asyncio.Event()

        async def first(status):
            started.append("first")
            await gate.wait()
            return status.is_cancelled

        async def second(status):
            started.append("second")

        results = []
        runner = JobsRunner(max_concurrent=1).launch(
            [Job.supply(first), Job.run(second)], on_success=results.append
        )
        await asyncio.sleep(0)
        runner.cancel()
        gate.set()
        await runner.wait_for_completion()

        assert started == ["first"]
        assert results == [True]


class TestRunParallel:
    @pytest.mark.asyncio
    async def test_results_in_order(self):
        def unit(i):
            async def run():
                await asyncio.sleep(0.001 * (5 - i))
                return i

            return run

        units = [unit(i) for i in range(5)]

        assert await run_parallel(RunnerStatus(), units, 2) == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_cancelled_units_yield_none(self):
        status = RunnerStatus()
        status.cancel()
        called = []

        async def unit():
            called.append(True)
            return True

        assert await run_parallel(status, [unit, unit], 2) == [None, None]
        assert called == []

    @pytest.mark.asyncio
    async def test_siblings_finish_before_error_propagates(self):
        finished = []

        async def fail():
            raise RuntimeError("unit failed")

        async def slow():
            await asyncio.sleep(0.01)
            finished.append(True)
            return True

        with pytest.raises(RuntimeError, match="unit failed"):
            await run_parallel(RunnerStatus(), [fail, slow], 2)
        assert finished == [True]
