"""
core/inbound.py - Normalizes raw host notifications into HostEvents.

Hosts deliver notifications in several shapes (objects, JSON text, bare
strings). Each receive_* method turns one into a boolean acceptance outcome
and re-emits it as a single HostEvent carrying that flag and the payload.
JSON text that fails to parse is rejected (returns False) and surfaces an
ERROR event with the raw text for diagnostics; nothing else is emitted.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

from .host import HostEvent, HostEventKind

log = logging.getLogger(__name__)

Accept = Callable[[HostEventKind, dict], bool]


class InboundNormalizer:
    def __init__(self, emit: Callable[[HostEvent], None], accept: Optional[Accept] = None):
        self._emit = emit
        self._accept = accept

    def _deliver(self, kind: HostEventKind, payload: dict) -> bool:
        ok = True
        if self._accept is not None:
            try:
                ok = bool(self._accept(kind, payload))
            except Exception as e:
                log.warning(f"Host rejected {kind.value} notification: {e!r}")
                ok = False
        self._emit(HostEvent(kind=kind, ok=ok, payload=payload))
        return ok

    def _parse_json(self, json_text: Any, error_msg: str) -> Optional[dict]:
        text = str(json_text)
        try:
            value = json.loads(text)
        except (TypeError, ValueError):
            value = None
        if not isinstance(value, dict):
            log.warning(f"{error_msg}: {text[:200]!r}")
            self._emit(HostEvent(
                kind=HostEventKind.ERROR,
                ok=False,
                payload={"message": error_msg, "jsonText": text},
            ))
            return None
        return value

    # ── Lifecycle ─────────────────────────────────────────────────────

    def ready(self) -> bool:
        return self._deliver(HostEventKind.READY, {"ok": True})

    def fallback(self, reason: str = "") -> bool:
        return self._deliver(HostEventKind.FALLBACK, {"reason": reason or None})

    # ── IPC envelopes ─────────────────────────────────────────────────

    def receive_ipc_envelope(self, envelope: Any) -> bool:
        if not isinstance(envelope, dict):
            return False
        return self._deliver(HostEventKind.IPC_ENVELOPE, {"envelope": envelope})

    def receive_ipc_envelope_json(self, json_text: Any) -> bool:
        envelope = self._parse_json(json_text, "Invalid IPC envelope JSON")
        if envelope is None:
            return False
        return self._deliver(HostEventKind.IPC_ENVELOPE, {"envelope": envelope})

    # ── Scenes ────────────────────────────────────────────────────────

    def receive_scene_snapshot(self, snapshot: Any) -> bool:
        if not isinstance(snapshot, dict):
            return False
        return self._deliver(HostEventKind.SCENE_SNAPSHOT, {"payload": snapshot})

    def receive_scene_snapshot_json(self, json_text: Any) -> bool:
        snapshot = self._parse_json(json_text, "Invalid scene snapshot JSON")
        if snapshot is None:
            return False
        return self._deliver(HostEventKind.SCENE_SNAPSHOT, {"payload": snapshot})

    def receive_current_scene(self, scene_name: Any) -> bool:
        name = str(scene_name) if scene_name else None
        return self._deliver(HostEventKind.CURRENT_SCENE, {"sceneName": name})

    def receive_scene_switch_completed(self, result: Any) -> bool:
        if not isinstance(result, dict):
            return False
        return self._deliver(HostEventKind.SCENE_SWITCH_COMPLETED, {"result": result})

    def receive_scene_switch_completed_json(self, json_text: Any) -> bool:
        result = self._parse_json(json_text, "Invalid scene switch result JSON")
        if result is None:
            return False
        return self._deliver(HostEventKind.SCENE_SWITCH_COMPLETED, {"result": result})

    # ── Transport health ──────────────────────────────────────────────

    def receive_pipe_status(self, status: Any, reason: Any = None) -> bool:
        return self._deliver(HostEventKind.PIPE_STATUS, {
            "status": str(status) if status else None,
            "reason": str(reason) if reason else None,
        })

    # ── Command results ───────────────────────────────────────────────

    def receive_action_result(self, result: Any) -> bool:
        if not isinstance(result, dict):
            return False
        return self._deliver(HostEventKind.ACTION_RESULT, dict(result))

    def receive_action_result_json(self, json_text: Any) -> bool:
        result = self._parse_json(json_text, "Invalid dock action result JSON")
        if result is None:
            return False
        return self._deliver(HostEventKind.ACTION_RESULT, result)

    def action_unsupported(self, command: dict) -> None:
        self._emit(HostEvent(kind=HostEventKind.ACTION_UNSUPPORTED, ok=False, payload={"action": command}))
