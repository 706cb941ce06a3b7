"""
sync/correlator.py - Fire, track, forget.

Every outbound command gets a requestId (generated when missing), is recorded
as `optimistic` and dispatched at once. A later ACTION_RESULT with the same
requestId updates the entry in place; terminal entries (completed, failed,
rejected) are dropped `grace` seconds afterwards whether or not anyone read
them. Results for unknown requestIds are ignored. Re-sending a tracked
requestId replaces its entry and cancels the old entry's pending drop.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from aegis_dock.core.host import ActionResult, CommandAck, HostAdapter, gen_request_id
from aegis_dock.core.timers import Scheduler, TimerHandle, TimerScope

log = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "failed", "rejected")


@dataclass
class InFlightAction:
    type: str
    request_id: str
    status: str = "optimistic"
    ts: float = 0.0
    ok: Optional[bool] = None
    error: Optional[str] = None
    detail: Any = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "requestId": self.request_id,
            "status": self.status,
            "ts": self.ts,
            "ok": self.ok,
            "error": self.error,
        }


class ActionCorrelator:
    def __init__(self, host: HostAdapter, scheduler: Scheduler, grace: float = 3.0):
        self._host = host
        self._scheduler = scheduler
        self._scope: TimerScope = scheduler.scope()
        self.grace = grace
        self._actions: dict[str, InFlightAction] = {}
        self._expiring: dict[str, TimerHandle] = {}

    # ── Outbound ──────────────────────────────────────────────────────

    async def send(self, command: dict) -> Optional[CommandAck]:
        if not command.get("requestId"):
            command["requestId"] = gen_request_id()
        request_id = command["requestId"]
        previous = self._expiring.pop(request_id, None)
        if previous is not None:
            previous.cancel()
        entry = InFlightAction(type=str(command.get("type", "")), request_id=request_id, ts=self._scheduler.now())
        self._actions[request_id] = entry

        ack = await self._host.push(command)
        if ack is None:
            log.warning(f"Host unreachable, '{entry.type}' not delivered ({request_id})")
            self._resolve(entry, "failed", ok=False, error="host_unavailable")
        elif not ack.ok:
            log.warning(f"Host refused '{entry.type}' ({request_id}): {ack.error}")
            self._resolve(entry, "rejected", ok=False, error=ack.error)
        return ack

    # ── Inbound ───────────────────────────────────────────────────────

    def on_result(self, result: ActionResult) -> bool:
        entry = self._actions.get(result.request_id)
        if entry is None:
            return False
        self._resolve(entry, result.status, ok=result.ok, error=result.error, detail=result.detail)
        return True

    def _resolve(self, entry: InFlightAction, status: str, ok=None, error=None, detail=None) -> None:
        entry.status = status
        entry.ok = ok
        entry.error = error
        entry.detail = detail
        if entry.terminal and entry.request_id not in self._expiring:
            request_id = entry.request_id
            self._expiring[request_id] = self._scope.call_later(self.grace, lambda: self._expire(request_id))

    def _expire(self, request_id: str) -> None:
        self._expiring.pop(request_id, None)
        self._actions.pop(request_id, None)

    # ── Queries ───────────────────────────────────────────────────────

    def get(self, request_id: str) -> Optional[InFlightAction]:
        return self._actions.get(request_id)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._actions

    def __len__(self) -> int:
        return len(self._actions)

    def in_flight(self) -> list[InFlightAction]:
        return [a for a in self._actions.values() if not a.terminal]

    def close(self) -> None:
        """Forget every tracked action; pending expiries are cancelled."""
        self._scope.close()
        self._scope = self._scheduler.scope()
        self._actions.clear()
        self._expiring.clear()
