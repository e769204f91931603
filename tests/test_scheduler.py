import asyncio
import threading

from conftest import FakeMonitor
from core.settings import ConnectivitySettings, SyncSettings
from services.scheduler import SyncScheduler, SyncTask


class RecordingEngine:
    def __init__(self, fail_on=None):
        self.calls = []
        self.fail_on = fail_on
        self.release = threading.Event()
        self.release.set()

    def _record(self, name):
        self.release.wait(timeout=2)
        self.calls.append(name)
        if name == self.fail_on:
            raise RuntimeError(f"{name} exploded")

    def full_sync(self):
        self._record("full")

    def incremental_sync(self):
        self._record("incremental")

    def drain_queue(self):
        self._record("drain")


SLOW = SyncSettings(incremental_interval_sec=3600, full_interval_sec=3600)
NO_TICK = ConnectivitySettings(tick_sec=3600)


def _run(scenario):
    return asyncio.run(asyncio.wait_for(scenario(), timeout=5))


def test_start_runs_initial_full_sync():
    engine = RecordingEngine()
    scheduler = SyncScheduler(engine, FakeMonitor(), SLOW, NO_TICK)

    async def scenario():
        scheduler.start()
        await scheduler.join()
        scheduler.stop()

    _run(scenario)
    assert engine.calls == ["full"]


def test_duplicate_requests_are_coalesced_while_waiting():
    engine = RecordingEngine()
    engine.release.clear()
    scheduler = SyncScheduler(engine, FakeMonitor(), SLOW, NO_TICK)

    async def scenario():
        scheduler.start()
        await asyncio.sleep(0.05)  # worker is now blocked inside the initial full sync
        assert scheduler.request(SyncTask.INCREMENTAL) is True
        assert scheduler.request(SyncTask.INCREMENTAL) is False
        assert scheduler.request(SyncTask.DRAIN) is True
        engine.release.set()
        await scheduler.join()
        assert scheduler.request(SyncTask.INCREMENTAL) is True
        await scheduler.join()
        scheduler.stop()

    _run(scenario)
    assert engine.calls == ["full", "incremental", "drain", "incremental"]


def test_online_transition_queues_drain_then_incremental():
    engine = RecordingEngine()
    monitor = FakeMonitor()
    scheduler = SyncScheduler(engine, monitor, SLOW, NO_TICK)

    async def scenario():
        scheduler.start()
        await scheduler.join()
        for callback in monitor.listeners:
            callback()
        await asyncio.sleep(0)
        await scheduler.join()
        scheduler.stop()

    _run(scenario)
    assert engine.calls == ["full", "drain", "incremental"]


def test_periodic_incremental_only_while_online():
    engine = RecordingEngine()
    monitor = FakeMonitor(online=False)
    fast = SyncSettings(incremental_interval_sec=0.01, full_interval_sec=3600)
    scheduler = SyncScheduler(engine, monitor, fast, NO_TICK)

    async def scenario():
        scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.join()
        assert engine.calls == ["full"]
        monitor.is_online = True
        await asyncio.sleep(0.05)
        await scheduler.join()
        scheduler.stop()

    _run(scenario)
    assert engine.calls[0] == "full"
    assert "incremental" in engine.calls[1:]


def test_worker_survives_a_failing_pass(caplog):
    engine = RecordingEngine(fail_on="full")
    scheduler = SyncScheduler(engine, FakeMonitor(), SLOW, NO_TICK)

    async def scenario():
        scheduler.start()
        await scheduler.join()
        scheduler.request(SyncTask.DRAIN)
        await scheduler.join()
        scheduler.stop()

    _run(scenario)
    assert engine.calls == ["full", "drain"]
    assert "full sync crashed" in caplog.text


def test_connectivity_loop_steps_monitor():
    engine = RecordingEngine()
    monitor = FakeMonitor()
    steps = []
    monitor.step = lambda now=None: steps.append(now)
    scheduler = SyncScheduler(engine, monitor, SLOW, ConnectivitySettings(tick_sec=0.01))

    async def scenario():
        scheduler.start()
        await asyncio.sleep(0.1)
        scheduler.stop()

    _run(scenario)
    assert len(steps) >= 2


def test_run_returns_after_stop():
    engine = RecordingEngine()
    scheduler = SyncScheduler(engine, FakeMonitor(), SLOW, NO_TICK)

    async def scenario():
        runner = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        scheduler.stop()
        await runner

    _run(scenario)
    assert scheduler.running is False
