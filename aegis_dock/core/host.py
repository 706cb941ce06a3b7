"""
core/host.py - The Host Adapter contract.

A host adapter is the only thing that talks to the process owning the real
telemetry, scene inventory and relay/failover state:

    await host.pull()            -> HostState | None   (no side effects)
    await host.push(command)     -> CommandAck | None  (None = unreachable)
    host.subscribe(listener)     -> unsubscribe()

push() answers with the immediate acceptance only. Final outcomes arrive
later as ACTION_RESULT events carrying the same requestId.
"""

from __future__ import annotations

import itertools
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import ValidationError

from .state import HostState

log = logging.getLogger(__name__)

COMMAND_TYPES = (
    "switch_scene",
    "set_mode",
    "set_setting",
    "relay_start",
    "relay_stop",
    "request_status",
    "load_scene_prefs",
    "save_scene_prefs",
)

_request_counter = itertools.count(1)


def gen_request_id(prefix: str = "dock") -> str:
    """`dock_<unix ms>_<monotonic counter>`"""
    return f"{prefix}_{int(time.time() * 1000)}_{next(_request_counter)}"


class HostUnavailableError(Exception):
    pass


class HostEventKind(str, Enum):
    READY = "ready"
    FALLBACK = "fallback"
    IPC_ENVELOPE = "ipc_envelope"
    SCENE_SNAPSHOT = "scene_snapshot"
    CURRENT_SCENE = "current_scene"
    PIPE_STATUS = "pipe_status"
    SCENE_SWITCH_COMPLETED = "scene_switch_completed"
    ACTION_RESULT = "action_result"
    ACTION_UNSUPPORTED = "action_unsupported"
    ERROR = "error"


# Notifications that mean "host state probably changed, pull now".
REFRESH_EVENT_KINDS = frozenset({
    HostEventKind.READY,
    HostEventKind.FALLBACK,
    HostEventKind.IPC_ENVELOPE,
    HostEventKind.SCENE_SNAPSHOT,
    HostEventKind.CURRENT_SCENE,
    HostEventKind.PIPE_STATUS,
    HostEventKind.SCENE_SWITCH_COMPLETED,
    HostEventKind.ACTION_RESULT,
})


@dataclass(frozen=True)
class HostEvent:
    """One push notification from the host, tagged with the reason it fired."""
    kind: HostEventKind
    ok: bool = True
    payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class CommandAck:
    ok: bool
    request_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Any, request_id: Optional[str] = None) -> "CommandAck":
        if not isinstance(raw, dict):
            return cls(ok=bool(raw), request_id=request_id)
        return cls(
            ok=bool(raw.get("ok", False)),
            request_id=raw.get("requestId") or request_id,
            error=raw.get("error"),
        )


@dataclass(frozen=True)
class ActionResult:
    """Asynchronous outcome of a command, as carried by ACTION_RESULT events."""
    request_id: str
    status: str
    ok: Optional[bool] = None
    error: Optional[str] = None
    action_type: Optional[str] = None
    detail: Any = None

    TERMINAL = ("completed", "failed", "rejected")

    @property
    def terminal(self) -> bool:
        return self.status in self.TERMINAL

    @classmethod
    def from_payload(cls, payload: dict) -> Optional["ActionResult"]:
        request_id = payload.get("requestId")
        if not request_id:
            return None
        return cls(
            request_id=str(request_id),
            status=str(payload.get("status", "")),
            ok=payload.get("ok"),
            error=payload.get("error"),
            action_type=payload.get("actionType"),
            detail=payload.get("detail"),
        )

    def to_payload(self) -> dict:
        return {
            "requestId": self.request_id,
            "status": self.status,
            "ok": self.ok,
            "error": self.error,
            "actionType": self.action_type,
            "detail": self.detail,
        }


Listener = Callable[[HostEvent], None]


class HostAdapter(ABC):
    """Base class for real and simulated hosts."""

    simulated: bool = False

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    # ── Contract ──────────────────────────────────────────────────────

    @abstractmethod
    def is_available(self) -> bool:
        """True when pull/push can reach the host right now."""

    @abstractmethod
    async def pull(self) -> Optional[HostState]:
        ...

    @abstractmethod
    async def push(self, command: dict) -> Optional[CommandAck]:
        ...

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def get_capabilities(self) -> dict[str, bool]:
        """Inferred from which generic entry points exist; hosts may override."""
        can_dispatch = self.is_available()
        return {
            "switchScene": can_dispatch,
            "setMode": can_dispatch,
            "setSetting": can_dispatch,
            "getState": can_dispatch,
        }

    # ── Helpers for subclasses ────────────────────────────────────────

    def emit(self, event: HostEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                log.error(f"Host listener error ({event.kind.value}): {e!r}")

    @staticmethod
    def parse_state(raw: Any) -> Optional[HostState]:
        if not isinstance(raw, dict):
            log.warning(f"Host state is not an object: {type(raw).__name__}")
            return None
        try:
            return HostState.from_raw(raw)
        except ValidationError as e:
            log.warning(f"Malformed host state ignored: {e.error_count()} error(s)")
            return None

    @staticmethod
    def stamp(command: dict) -> dict:
        if not command.get("requestId"):
            command["requestId"] = gen_request_id()
        return command

    @staticmethod
    def encode_command(command: dict) -> str:
        try:
            return json.dumps(command, default=str)
        except (TypeError, ValueError):
            return ""
