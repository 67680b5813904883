import asyncio

from signal_oracle.bot.scheduler import CycleScheduler


class CountingCycle:
    """Cycle stub that records concurrency and can be told to fail."""

    def __init__(self, delay=0.01, fail_on=(), hang_on=()):
        self.delay = delay
        self.fail_on = set(fail_on)
        self.hang_on = set(hang_on)
        self.runs = 0
        self.active = 0
        self.max_active = 0

    async def __call__(self):
        self.runs += 1
        run = self.runs
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(10 if run in self.hang_on else self.delay)
            if run in self.fail_on:
                raise RuntimeError(f"cycle {run} blew up")
            return run
        finally:
            self.active -= 1


class TestCycleScheduler:
    def test_cycles_never_overlap_and_run_in_order(self):
        cycle = CountingCycle()

        async def go():
            scheduler = CycleScheduler(cycle)
            results = await asyncio.gather(*(scheduler.trigger() for _ in range(3)))
            return scheduler, results

        scheduler, results = asyncio.run(go())

        assert results == [1, 2, 3]
        assert cycle.max_active == 1
        assert not scheduler.in_flight
        assert scheduler.completed == 3

    def test_failure_resolves_none_and_does_not_stick(self):
        cycle = CountingCycle(fail_on={1})

        async def go():
            scheduler = CycleScheduler(cycle)
            first = await scheduler.trigger()
            assert not scheduler.in_flight
            second = await scheduler.trigger()
            return scheduler, first, second

        scheduler, first, second = asyncio.run(go())

        assert first is None
        assert second == 2
        assert scheduler.failed == 1
        assert scheduler.completed == 1

    def test_timeout_counts_as_failure(self):
        cycle = CountingCycle(hang_on={1})

        async def go():
            scheduler = CycleScheduler(cycle, cycle_timeout=0.05)
            results = await asyncio.gather(scheduler.trigger(), scheduler.trigger())
            return scheduler, results

        scheduler, results = asyncio.run(go())

        assert results == [None, 2]
        assert scheduler.failed == 1
        assert cycle.active == 0

    def test_queue_cap_drops_excess_triggers(self):
        cycle = CountingCycle()

        async def go():
            scheduler = CycleScheduler(cycle, queue_cap=2)
            futures = [scheduler.trigger() for _ in range(4)]
            return await asyncio.gather(*futures)

        assert asyncio.run(go()) == [1, 2, None, None]
        assert cycle.runs == 2

    def test_run_forever_respects_duration(self):
        cycle = CountingCycle(delay=0)

        async def go():
            scheduler = CycleScheduler(cycle)
            await scheduler.run_forever(interval_seconds=0.02, duration_seconds=0.1)
            await scheduler.stop()
            return scheduler

        scheduler = asyncio.run(go())

        assert 2 <= cycle.runs <= 7
        assert not scheduler.in_flight
