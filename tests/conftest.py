"""
Shared fixtures: a manual clock scheduler and a scriptable host.
"""

import copy
import heapq
import inspect
import itertools
from typing import Optional

import pytest

from aegis_dock.core.host import CommandAck, HostAdapter
from aegis_dock.core.state import HostState
from aegis_dock.core.timers import Scheduler, TimerHandle


class ManualScheduler(Scheduler):
    """Virtual time. Nothing runs until advance() is awaited."""

    def __init__(self):
        self._now = 0.0
        self._queue: list = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def _push(self, when: float, handle: TimerHandle) -> None:
        heapq.heappush(self._queue, (when, next(self._seq), handle))

    def call_later(self, delay, callback) -> TimerHandle:
        handle = TimerHandle(callback)
        self._push(self._now + max(0.0, delay), handle)
        return handle

    def call_every(self, interval, callback) -> TimerHandle:
        handle = TimerHandle(callback, interval)
        self._push(self._now + interval, handle)
        return handle

    async def advance(self, seconds: float = 0.0) -> None:
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target + 1e-9:
            when, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, when)
            if handle.interval is not None:
                self._push(when + handle.interval, handle)
            result = handle.callback()
            if inspect.isawaitable(result):
                await result
        self._now = max(self._now, target)

    def pending(self) -> int:
        return sum(1 for _, _, h in self._queue if not h.cancelled)


SCENES = [
    {"id": "s_live", "name": "Live - Main", "index": 0},
    {"id": "s_hold", "name": "Low Bitrate Fallback", "index": 1},
    {"id": "s_brb", "name": "BRB - Reconnecting", "index": 2},
]


def make_raw_state(
    kbps: float = 5000,
    active: str = "s_live",
    pending: Optional[str] = None,
    relay_active: bool = True,
    auto: Optional[bool] = True,
    manual: Optional[bool] = None,
    scenes: Optional[list] = None,
) -> dict:
    settings = []
    if auto is not None:
        settings.append({"key": "auto_scene_switch", "label": "Auto Scene Switch", "value": auto})
    if manual is not None:
        settings.append({"key": "manual_override", "label": "Manual Override", "value": manual})
    return {
        "header": {"mode": "irl", "modes": ["studio", "irl"]},
        "scenes": {
            "items": copy.deepcopy(SCENES if scenes is None else scenes),
            "activeSceneId": active,
            "pendingSceneId": pending,
        },
        "connections": {"items": [{"name": "SIM 1", "bitrate": kbps, "status": "connected"}]},
        "bitrate": {"bondedKbps": kbps, "relayBondedKbps": kbps},
        "outputs": {"groups": [{"name": "Horizontal", "items": [
            {"id": "twitch", "name": "Twitch", "kbps": 6000, "active": True},
        ]}]},
        "relay": {"active": relay_active, "status": "active" if relay_active else "inactive"},
        "settings": {"items": settings},
        "pipe": {"status": "ok"},
    }


class ScriptedHost(HostAdapter):
    """Host whose snapshot is whatever the test last assigned to `raw`."""

    def __init__(self, raw: Optional[dict] = None, available: bool = True):
        super().__init__()
        self.raw = raw if raw is not None else make_raw_state()
        self.available = available
        self.pulls = 0
        self.pushed: list[dict] = []
        self.ack: Optional[CommandAck] = None
        self.unreachable = False

    def is_available(self) -> bool:
        return self.available

    async def pull(self) -> Optional[HostState]:
        self.pulls += 1
        if not self.available:
            return None
        return self.parse_state(self.raw)

    async def push(self, command: dict) -> Optional[CommandAck]:
        if self.unreachable:
            return None
        self.stamp(command)
        self.pushed.append(dict(command))
        return self.ack or CommandAck(ok=True, request_id=command["requestId"])

    def pushed_types(self) -> list[str]:
        return [c["type"] for c in self.pushed]


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def host():
    return ScriptedHost()
