"""
sync/synchronizer.py - Keeps the freshest known HostState in memory.

Hybrid push/pull:
  1. attach() probes the adapter; while unavailable it retries every
     probe_interval and stops retrying once attached.
  2. On attach: pull now, pull again after early_refresh_delay (host may
     finish initialising mid-probe), send request_status after
     status_request_delay to coax a fresh push.
  3. Fast poll (fast_poll_interval) for the first fast_poll_window seconds,
     slow poll (slow_poll_interval) for the rest of the session.
  4. Every refresh-worthy host notification triggers an immediate pull.
  5. detach() cancels all timers and unsubscribes; nothing fires afterwards.

Each successful pull replaces the cached snapshot whole (last write wins).
State listeners are only told about snapshots that actually differ.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from aegis_dock.config.settings import SyncSettings
from aegis_dock.core.host import REFRESH_EVENT_KINDS, HostAdapter, HostEvent, gen_request_id
from aegis_dock.core.state import HostState
from aegis_dock.core.timers import Scheduler, TimerHandle, TimerScope

log = logging.getLogger(__name__)

StateListener = Callable[[HostState], None]
EventListener = Callable[[HostEvent], None]


class StateSynchronizer:
    def __init__(self, host: HostAdapter, scheduler: Scheduler, settings: Optional[SyncSettings] = None):
        self._host = host
        self._scheduler = scheduler
        self.settings = settings or SyncSettings()

        self._state: Optional[HostState] = None
        self._scope: Optional[TimerScope] = None
        self._probe: Optional[TimerHandle] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._state_listeners: list[StateListener] = []
        self._event_listeners: list[EventListener] = []

        self._alive = False
        self.connected = False
        self._in_flight = False
        self._again = False
        self.pull_count = 0

    # ── Public state ──────────────────────────────────────────────────

    @property
    def state(self) -> Optional[HostState]:
        return self._state

    @property
    def attached(self) -> bool:
        return self._alive

    def on_state(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def on_event(self, listener: EventListener) -> None:
        self._event_listeners.append(listener)

    # ── Lifecycle ─────────────────────────────────────────────────────

    def attach(self) -> None:
        if self._alive:
            return
        self._alive = True
        self._scope = self._scheduler.scope()
        if not self._try_connect():
            log.info(f"Host not available yet, probing every {self.settings.probe_interval}s")
            self._probe = self._scope.call_every(self.settings.probe_interval, self._try_connect)

    def detach(self) -> None:
        if not self._alive:
            return
        self._alive = False
        self.connected = False
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._scope:
            self._scope.close()
        self._probe = None
        log.info("State synchronizer detached")

    def _try_connect(self) -> bool:
        if self.connected:
            return True
        if not self._alive or not self._host.is_available():
            return False
        self.connected = True
        if self._probe:
            self._probe.cancel()
            self._probe = None

        s = self.settings
        scope = self._scope
        self._unsubscribe = self._host.subscribe(self._on_host_event)
        scope.call_soon(lambda: self.refresh("attach"))
        scope.call_later(s.early_refresh_delay, lambda: self.refresh("early"))
        scope.call_later(s.status_request_delay, self._request_status)
        fast = scope.call_every(s.fast_poll_interval, lambda: self.refresh("fast_poll"))
        scope.call_later(s.fast_poll_window, fast.cancel)
        scope.call_every(s.slow_poll_interval, lambda: self.refresh("poll"))
        log.info("State synchronizer attached to host")
        return True

    # ── Push notifications ────────────────────────────────────────────

    def _on_host_event(self, event: HostEvent) -> None:
        if not self._alive:
            return
        if event.kind in REFRESH_EVENT_KINDS:
            self._scope.call_soon(lambda: self.refresh(event.kind.value))
        for listener in list(self._event_listeners):
            try:
                listener(event)
            except Exception as e:
                log.error(f"Event listener error ({event.kind.value}): {e!r}")

    async def _request_status(self) -> None:
        try:
            await self._host.push({"type": "request_status", "requestId": gen_request_id()})
        except Exception as e:
            log.debug(f"request_status failed: {e}")

    # ── Pull ──────────────────────────────────────────────────────────

    async def refresh(self, reason: str = "manual") -> Optional[HostState]:
        """Pull once; overlapping calls coalesce into one follow-up pull."""
        if not self._alive:
            return self._state
        if self._in_flight:
            self._again = True
            return self._state
        self._in_flight = True
        try:
            while True:
                self._again = False
                await self._pull(reason)
                if not self._again or not self._alive:
                    break
                reason = "coalesced"
        finally:
            self._in_flight = False
        return self._state

    async def _pull(self, reason: str) -> None:
        try:
            state = await self._host.pull()
        except Exception as e:
            log.warning(f"State pull raised ({reason}): {e!r}")
            return
        if state is None or not self._alive:
            return
        self.pull_count += 1
        changed = state != self._state
        self._state = state
        if not changed:
            return
        log.debug(f"Host state updated ({reason})")
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as e:
                log.error(f"State listener error: {e!r}")
