"""
sync/gate.py - Per-action-key cooldown governor.

Stops double-clicks and overlapping retries from turning into duplicate host
commands. It is a rate limiter, not a lock: correctness relies on the single
event loop running each check-and-set to completion.
"""

from __future__ import annotations

import time
from typing import Callable


class ActionGate:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._until: dict[str, float] = {}

    def try_enter(self, key: str, cooldown: float) -> bool:
        """Pass and re-arm the key for `cooldown` seconds, or refuse without touching it."""
        now = self._clock()
        if now < self._until.get(key, 0.0):
            return False
        self._until[key] = now + cooldown
        return True

    def remaining(self, key: str) -> float:
        return max(0.0, self._until.get(key, 0.0) - self._clock())

    def reset(self) -> None:
        self._until.clear()

    def __len__(self) -> int:
        return len(self._until)


def scene_switch_key(scene_id: str) -> str:
    return f"switch_scene:{scene_id}"


def setting_key(key: str) -> str:
    return f"set_setting:{key}"


def auto_switch_key(scene_id: str) -> str:
    return f"auto_profile_switch:{scene_id}"


MANUAL_LOCKOUT_KEY = "manual_scene_lockout"
AUTO_TOGGLE_KEY = "set_setting:auto_scene_switch"
SET_MODE_KEY = "set_mode"
