from __future__ import annotations

import logging
import socket
import threading
import time
from typing import Callable, List, Optional

from core.settings import CONNECTIVITY, ConnectivitySettings


logger = logging.getLogger("calmirror.connectivity")

Listener = Callable[[], None]
ChangeListener = Callable[[bool], None]


def tcp_probe(host: str, port: int, timeout: float) -> bool:
    """Return True when a TCP connection to ``host:port`` opens within ``timeout``."""

    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class ConnectivityMonitor:
    """Debounced online/offline state fed by a probe and by sync outcomes.

    Nothing runs on its own: callers drive it with :meth:`step`, which samples
    the probe when the poll interval elapsed and commits a candidate state once
    it has been stable for the quiet period.
    """

    def __init__(
        self,
        settings: ConnectivitySettings = CONNECTIVITY,
        *,
        probe: Optional[Callable[[], bool]] = None,
        clock: Callable[[], float] = time.monotonic,
        initial_online: bool = True,
    ):
        self.settings = settings
        self._probe = probe or (
            lambda: tcp_probe(settings.probe_host, settings.probe_port, settings.probe_timeout_sec)
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._online = initial_online
        self._candidate: Optional[bool] = None
        self._candidate_since = 0.0
        self._last_probe: Optional[float] = None
        self._on_online: List[Listener] = []
        self._on_offline: List[Listener] = []
        self._on_change: List[ChangeListener] = []

    @property
    def is_online(self) -> bool:
        with self._lock:
            return self._online

    @property
    def poll_interval(self) -> float:
        if self.is_online:
            return self.settings.poll_online_sec
        return self.settings.poll_offline_sec

    # ----- subscriptions -----
    def on_online(self, callback: Listener) -> None:
        self._on_online.append(callback)

    def on_offline(self, callback: Listener) -> None:
        self._on_offline.append(callback)

    def on_change(self, callback: ChangeListener) -> None:
        self._on_change.append(callback)

    # ----- inputs -----
    def report_online(self) -> None:
        self._observe(True, self._clock())

    def report_offline(self) -> None:
        self._observe(False, self._clock())

    def check_now(self) -> bool:
        """Sample the probe immediately and feed the result into the debounce."""

        now = self._clock()
        result = self._sample()
        with self._lock:
            self._last_probe = now
        self._observe(result, now)
        return result

    def step(self, now: Optional[float] = None) -> Optional[bool]:
        """Advance the monitor; returns the new state when a transition was committed."""

        now = self._clock() if now is None else now
        with self._lock:
            due = self._last_probe is None or now - self._last_probe >= self._current_poll_interval()
            if due:
                self._last_probe = now
        if due:
            self._observe(self._sample(), now)
        return self._commit_if_stable(now)

    # ----- internals -----
    def _current_poll_interval(self) -> float:
        return self.settings.poll_online_sec if self._online else self.settings.poll_offline_sec

    def _sample(self) -> bool:
        try:
            return bool(self._probe())
        except OSError as exc:
            logger.debug("Connectivity probe failed: %s", exc)
            return False

    def _observe(self, online: bool, now: float) -> None:
        with self._lock:
            if online == self._online:
                if self._candidate is not None:
                    logger.debug("Connectivity candidate %s cancelled", self._candidate)
                self._candidate = None
                return
            if self._candidate != online:
                self._candidate = online
                self._candidate_since = now

    def _commit_if_stable(self, now: float) -> Optional[bool]:
        with self._lock:
            if self._candidate is None:
                return None
            if now - self._candidate_since < self.settings.debounce_sec:
                return None
            self._online = self._candidate
            self._candidate = None
            # restart the cadence for the new state
            self._last_probe = now
            state = self._online
        logger.info("Connectivity changed: %s", "online" if state else "offline")
        self._emit(state)
        return state

    def _emit(self, online: bool) -> None:
        listeners: List[Callable] = list(self._on_online if online else self._on_offline)
        for callback in listeners:
            self._call(callback)
        for callback in list(self._on_change):
            self._call(callback, online)

    def _call(self, callback: Callable, *args) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("Connectivity listener %r failed", callback)


__all__ = ["ConnectivityMonitor", "tcp_probe"]
