import pytest

from core.settings import ConnectivitySettings
from services.connectivity import ConnectivityMonitor, tcp_probe


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class ScriptedProbe:
    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


SETTINGS = ConnectivitySettings(debounce_sec=3.0, poll_online_sec=30.0, poll_offline_sec=10.0)


@pytest.fixture()
def clock():
    return FakeClock()


def _monitor(clock, probe, online=True):
    monitor = ConnectivityMonitor(SETTINGS, probe=probe, clock=clock, initial_online=online)
    transitions = []
    monitor.on_online(lambda: transitions.append("online"))
    monitor.on_offline(lambda: transitions.append("offline"))
    return monitor, transitions


def test_offline_sample_commits_after_quiet_period(clock):
    monitor, transitions = _monitor(clock, ScriptedProbe(False))

    assert monitor.step() is None
    clock.now = 2.9
    assert monitor.step() is None
    assert monitor.is_online is True

    clock.now = 3.0
    assert monitor.step() is False
    assert monitor.is_online is False
    assert transitions == ["offline"]


def test_alternating_reports_yield_at_most_one_transition(clock):
    monitor, transitions = _monitor(clock, ScriptedProbe(True))
    monitor.step()

    for offset, report in ((0.5, monitor.report_offline), (1.0, monitor.report_online), (1.5, monitor.report_offline)):
        clock.now = offset
        report()
        monitor.step()

    clock.now = 1.5 + SETTINGS.debounce_sec
    monitor.step()

    assert transitions == ["offline"]
    assert monitor.is_online is False


def test_sample_matching_state_cancels_candidate(clock):
    monitor, transitions = _monitor(clock, ScriptedProbe(True))
    monitor.step()

    clock.now = 1.0
    monitor.report_offline()
    clock.now = 2.0
    monitor.report_online()
    clock.now = 10.0
    monitor.step()

    assert transitions == []
    assert monitor.is_online is True


def test_repeated_candidate_does_not_restart_quiet_period(clock):
    monitor, transitions = _monitor(clock, ScriptedProbe(True))
    monitor.step()

    clock.now = 1.0
    monitor.report_offline()
    clock.now = 3.5
    monitor.report_offline()
    clock.now = 4.0
    monitor.step()

    assert transitions == ["offline"]


def test_probe_cadence_is_faster_while_offline(clock):
    probe = ScriptedProbe(False, False, False, True)
    monitor, transitions = _monitor(clock, probe)

    monitor.step()
    clock.now = 3.0
    monitor.step()
    assert transitions == ["offline"]
    assert monitor.poll_interval == SETTINGS.poll_offline_sec

    clock.now = 12.9
    monitor.step()
    assert probe.calls == 1

    clock.now = 13.0
    monitor.step()
    assert probe.calls == 2


def test_recovery_notifies_online_and_change_listeners(clock):
    monitor, transitions = _monitor(clock, ScriptedProbe(True), online=False)
    changes = []
    monitor.on_change(changes.append)

    monitor.step()
    clock.now = 3.0
    monitor.step()

    assert transitions == ["online"]
    assert changes == [True]


def test_listener_errors_are_logged_not_raised(clock, caplog):
    monitor, transitions = _monitor(clock, ScriptedProbe(False))

    def broken():
        raise RuntimeError("listener blew up")

    monitor.on_offline(broken)
    monitor.step()
    clock.now = 3.0
    monitor.step()

    assert transitions == ["offline"]
    assert "listener" in caplog.text


def test_check_now_samples_immediately(clock):
    probe = ScriptedProbe(False)
    monitor, _ = _monitor(clock, probe)

    assert monitor.check_now() is False
    assert probe.calls == 1
    assert monitor.is_online is True


def test_probe_errors_count_as_offline(clock):
    def probe():
        raise OSError("no route")

    monitor, transitions = _monitor(clock, probe)
    monitor.step()
    clock.now = 3.0
    monitor.step()

    assert transitions == ["offline"]


def test_tcp_probe_reports_unreachable_host():
    # port 9 on an unroutable TEST-NET address never answers
    assert tcp_probe("192.0.2.1", 9, 0.05) is False
