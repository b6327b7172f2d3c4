"""Network reachability tracking.

The monitor never jumps from ``OFFLINE`` straight to ``ONLINE``: every
reconnection goes through ``CONNECTING`` while a control-plane round trip
(``check``) confirms the remote actually answers.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from core.settings import CONNECTIVITY, ConnectivitySettings
from datetime_utils import format_elapsed, utc_now
from models.sync_state import ConnectionState


logger = logging.getLogger("veloce.sync.connectivity")

ConnectionListener = Callable[[ConnectionState], None]

_ALLOWED = {
    ConnectionState.OFFLINE: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {ConnectionState.ONLINE, ConnectionState.OFFLINE},
    ConnectionState.ONLINE: {ConnectionState.OFFLINE},
}


class InvalidTransition(RuntimeError):
    pass


class ConnectivityMonitor:
    def __init__(
        self,
        check: Callable[[], Awaitable[bool]],
        *,
        settings: Optional[ConnectivitySettings] = None,
        initial: ConnectionState = ConnectionState.OFFLINE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._check = check
        self.settings = settings or CONNECTIVITY
        self._clock = clock
        self._state = initial
        self._offline_since: Optional[datetime] = None if initial == ConnectionState.ONLINE else clock()
        self._listeners: List[ConnectionListener] = []
        self._probe_task: Optional[asyncio.Task] = None
        self._runner: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wake = asyncio.Event()

    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state == ConnectionState.ONLINE

    @property
    def offline_since(self) -> Optional[datetime]:
        return self._offline_since

    @property
    def offline_duration_text(self) -> str:
        if self._offline_since is None or self.is_online:
            return ""
        return f"Offline for {format_elapsed(self._clock() - self._offline_since)}"

    def subscribe(self, listener: ConnectionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    def _transition(self, new_state: ConnectionState) -> bool:
        previous = self._state
        if new_state == previous:
            return False
        if new_state not in _ALLOWED[previous]:
            raise InvalidTransition(f"{previous.value} -> {new_state.value}")
        self._state = new_state
        if new_state == ConnectionState.ONLINE:
            self._offline_since = None
        elif self._offline_since is None:
            self._offline_since = self._clock()
        logger.info("Connection %s -> %s", previous.value, new_state.value)
        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception:
                logger.exception("Connection listener %r failed", listener)
        return True

    def mark_offline(self, reason: str = "") -> None:
        if self._state != ConnectionState.OFFLINE:
            if reason:
                logger.warning("Going offline: %s", reason)
            self._transition(ConnectionState.OFFLINE)

    def report_network_failure(self, error: object = None) -> None:
        """A request failed at the network level while we believed we were online."""

        if self._state == ConnectionState.ONLINE:
            self.mark_offline(str(error or "network failure"))

    def link_changed(self, is_up: bool) -> None:
        """Reachability primitive callback; may be invoked from any thread."""

        if self._loop is not None and self._loop.is_running():
            self._loop.call_soon_threadsafe(self._on_link_changed, is_up)
        else:
            self._on_link_changed(is_up)

    def _on_link_changed(self, is_up: bool) -> None:
        if not is_up:
            self.mark_offline("link down")
        elif self._state == ConnectionState.OFFLINE:
            self._wake.set()

    # ------------------------------------------------------------------
    async def probe(self) -> bool:
        """Try to (re)connect. Concurrent callers share one probe."""

        if self.is_online:
            return True
        if self._probe_task is None or self._probe_task.done():
            self._probe_task = asyncio.ensure_future(self._run_probe())
        return await asyncio.shield(self._probe_task)

    async def _run_probe(self) -> bool:
        self._transition(ConnectionState.CONNECTING)
        try:
            ok = bool(await asyncio.wait_for(self._check(), timeout=self.settings.probe_timeout_sec))
        except asyncio.TimeoutError:
            logger.info("Connectivity probe timed out")
            ok = False
        except Exception as exc:
            logger.info("Connectivity probe failed: %s", exc)
            ok = False

        if self._state != ConnectionState.CONNECTING:
            # Link dropped while the probe was running.
            return False
        self._transition(ConnectionState.ONLINE if ok else ConnectionState.OFFLINE)
        return ok

    async def run(self) -> None:
        """Probe whenever offline: on start, every poll interval, or on link-up."""

        while True:
            if self._state == ConnectionState.OFFLINE:
                await self.probe()
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.settings.poll_interval_sec)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self.run())

    async def stop(self) -> None:
        for task in (self._runner, self._probe_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._runner = None
        self._probe_task = None


__all__ = ["ConnectivityMonitor", "ConnectionListener", "InvalidTransition"]
