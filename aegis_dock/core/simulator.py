"""
core/simulator.py - Self-contained host that produces the real snapshot shape.

Used when no real host is configured (or for demos and tests). Mirrors the
native host's behaviour closely enough that everything above the adapter is
identical against either:

  - switch_scene      -> pending for 0.4 s, then active + switch/result events
  - relay_start       -> relay goes active after 1.2 s
  - set_setting/mode  -> applied immediately, completed result event
  - load/save prefs   -> kept in memory, so preferences round-trip
  - link bitrates wander every 3 s (seedable)
"""

from __future__ import annotations

import json
import logging
import random
import time
from typing import Optional

from .host import CommandAck, HostAdapter
from .inbound import InboundNormalizer
from .state import HostState
from .timers import Scheduler, TimerScope

log = logging.getLogger(__name__)

ENGINE_STATES = ["STUDIO", "IRL_CONNECTING", "IRL_ACTIVE", "IRL_GRACE", "DEGRADED", "FATAL"]

SIM_SCENES = [
    {"id": "scene_1", "name": "Live - Main", "intent": "live", "index": 0},
    {"id": "scene_2", "name": "Low Bitrate Fallback", "intent": "hold", "index": 1},
    {"id": "scene_3", "name": "BRB - Reconnecting", "intent": "brb", "index": 2},
    {"id": "scene_4", "name": "Starting Soon", "intent": None, "index": 3},
    {"id": "scene_5", "name": "Ending", "intent": None, "index": 4},
]

SIM_SETTING_DEFS = [
    ("auto_scene_switch", "Auto Scene Switch"),
    ("low_quality_fallback", "Low Bitrate Failover"),
    ("manual_override", "Manual Override"),
    ("chat_bot", "Chat Bot Integration"),
    ("alerts", "Alert on Disconnect"),
]

SWITCH_DELAY = 0.4
RELAY_START_DELAY = 1.2
WANDER_INTERVAL = 3.0


class SimulatedHost(HostAdapter):
    simulated = True

    def __init__(self, scheduler: Scheduler, seed: Optional[int] = None):
        super().__init__()
        self._scheduler = scheduler
        self._scope: Optional[TimerScope] = None
        self._rng = random.Random(seed)
        self.inbound = InboundNormalizer(self.emit)

        self.mode = "irl"
        self.relay_active = True
        self.active_scene_id = "scene_1"
        self.pending_scene_id: Optional[str] = None
        self.elapsed = 3847
        self.sim1 = 4200.0
        self.sim2 = 2800.0
        self.setting_values: dict[str, Optional[bool]] = {
            "auto_scene_switch": True,
            "low_quality_fallback": True,
            "manual_override": False,
            "chat_bot": None,
            "alerts": True,
        }
        self.scenes = [dict(s) for s in SIM_SCENES]
        self.saved_prefs_json: Optional[str] = None
        self.commands: list[dict] = []
        self._started_ms = int(time.time() * 1000)

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start(self) -> None:
        if self._scope is None or self._scope.closed:
            self._scope = self._scheduler.scope()
            self._scope.call_every(WANDER_INTERVAL, self._wander)

    def stop(self) -> None:
        if self._scope:
            self._scope.close()

    @property
    def scope(self) -> TimerScope:
        if self._scope is None or self._scope.closed:
            self._scope = self._scheduler.scope()
        return self._scope

    def is_available(self) -> bool:
        return True

    def _wander(self) -> None:
        self.sim1 = max(500.0, min(6000.0, self.sim1 + (self._rng.random() - 0.48) * 800))
        self.sim2 = max(200.0, min(4000.0, self.sim2 + (self._rng.random() - 0.5) * 600))
        self.elapsed += 3

    def set_bitrate(self, bonded_kbps: float) -> None:
        """Split a bonded figure across the two simulated links."""
        self.sim1 = bonded_kbps * 0.6
        self.sim2 = bonded_kbps - self.sim1

    # ── Snapshot ──────────────────────────────────────────────────────

    def snapshot(self) -> dict:
        bonded = self.sim1 + self.sim2
        auto = self.setting_values.get("auto_scene_switch")
        manual = self.setting_values.get("manual_override")
        return {
            "header": {
                "title": "AEGIS",
                "subtitle": "OBS + Core IPC Dock",
                "mode": self.mode,
                "modes": ["studio", "irl"],
                "version": "v0.0.3",
            },
            "live": {"isLive": True, "elapsedSec": self.elapsed},
            "scenes": {
                "items": [dict(s) for s in self.scenes],
                "activeSceneId": self.active_scene_id,
                "pendingSceneId": self.pending_scene_id,
                "autoSwitchArmed": bool(auto) and not bool(manual),
            },
            "connections": {"items": [
                {"name": "SIM 1 - T-Mobile", "type": "5G", "signal": 4, "bitrate": self.sim1, "status": "connected"},
                {"name": "SIM 2 - Verizon", "type": "LTE", "signal": 3, "bitrate": self.sim2, "status": "connected"},
                {"name": "WiFi", "type": "802.11ac", "signal": 0, "bitrate": 0, "status": "disconnected"},
            ]},
            "bitrate": {
                "bondedKbps": bonded,
                "relayBondedKbps": bonded,
                "maxPerLinkKbps": 6000,
                "maxBondedKbps": 12000,
                "lowThresholdMbps": 1.5,
                "brbThresholdMbps": 0.5,
            },
            "outputs": {
                "groups": [
                    {
                        "name": "Horizontal", "encoder": "x264", "resolution": "1920x1080",
                        "totalBitrateKbps": int(bonded * 0.75), "avgLagMs": 2.1,
                        "items": [
                            {"id": "twitch", "name": "Twitch", "platform": "Twitch",
                             "kbps": max(800, int(bonded * 0.35)), "fps": 60, "dropPct": 0.01, "active": True},
                            {"id": "kick", "name": "Kick", "platform": "Kick",
                             "kbps": max(600, int(bonded * 0.22)), "fps": 60, "dropPct": 0.02,
                             "active": self.relay_active},
                        ],
                    },
                    {
                        "name": "Vertical", "encoder": "x264", "resolution": "1080x1920",
                        "totalBitrateKbps": int(bonded * 0.25), "avgLagMs": 3.0,
                        "items": [
                            {"id": "tiktok", "name": "TikTok", "platform": "TikTok",
                             "kbps": max(300, int(bonded * 0.13)), "fps": 30, "dropPct": 0.03, "active": True},
                        ],
                    },
                ],
                "hidden": [{"id": "recording", "name": "Recording", "active": False}],
            },
            "relay": {
                "licensed": True,
                "active": self.relay_active,
                "enabled": self.relay_active,
                "status": "active" if self.relay_active else "inactive",
                "region": "us-east-1",
                "latencyMs": 42 if self.relay_active else None,
                "uptimeSec": self.elapsed if self.relay_active else 0,
            },
            "failover": {
                "health": "healthy",
                "state": "IRL_ACTIVE" if self.relay_active else "STUDIO",
                "states": ENGINE_STATES,
                "responseBudgetMs": 800,
            },
            "settings": {"items": [
                {"key": key, "label": label, "value": self.setting_values.get(key)}
                for key, label in SIM_SETTING_DEFS
            ]},
            "events": [
                {"id": "e1", "time": "00:58:12", "tsUnixMs": self._started_ms - 420000, "type": "info",
                 "msg": "Relay telemetry connected", "source": "ipc"},
            ],
            "pipe": {"status": "ok", "label": "IPC: OK"},
        }

    async def pull(self) -> Optional[HostState]:
        return self.parse_state(self.snapshot())

    # ── Commands ──────────────────────────────────────────────────────

    async def push(self, command: dict) -> Optional[CommandAck]:
        self.stamp(command)
        self.commands.append(dict(command))
        request_id = command["requestId"]
        action_type = command.get("type")

        match action_type:
            case "switch_scene":
                target = command.get("sceneId") or next(
                    (s["id"] for s in self.scenes if s["name"] == command.get("sceneName")), None
                )
                if not target or not any(s["id"] == target for s in self.scenes):
                    return CommandAck(ok=False, request_id=request_id, error="scene_not_found")
                self.pending_scene_id = target
                self.scope.call_later(SWITCH_DELAY, lambda: self._complete_switch(target, request_id))
                return CommandAck(ok=True, request_id=request_id)
            case "set_mode":
                self.mode = str(command.get("mode") or self.mode)
            case "set_setting":
                key = command.get("key")
                if key:
                    self.setting_values[str(key)] = command.get("value")
            case "relay_start":
                self.scope.call_later(RELAY_START_DELAY, lambda: self._complete_relay_start(request_id))
                return CommandAck(ok=True, request_id=request_id)
            case "relay_stop":
                self.relay_active = False
            case "request_status":
                pass
            case "load_scene_prefs":
                detail = self.saved_prefs_json or "{}"
                self.scope.call_soon(lambda: self._result(request_id, action_type, detail=detail))
                return CommandAck(ok=True, request_id=request_id)
            case "save_scene_prefs":
                self.saved_prefs_json = str(command.get("prefsJson") or "{}")
            case _:
                self.inbound.action_unsupported(command)
                return CommandAck(ok=False, request_id=request_id, error="unsupported_action_type")

        self.scope.call_soon(lambda: self._result(request_id, action_type))
        return CommandAck(ok=True, request_id=request_id)

    def _result(self, request_id: str, action_type: Optional[str], detail: Optional[str] = None) -> None:
        self.inbound.receive_action_result({
            "requestId": request_id,
            "actionType": action_type,
            "status": "completed",
            "ok": True,
            "error": None,
            "detail": detail,
        })

    def _complete_switch(self, scene_id: str, request_id: str) -> None:
        self.active_scene_id = scene_id
        self.pending_scene_id = None
        name = next((s["name"] for s in self.scenes if s["id"] == scene_id), "")
        self.inbound.receive_current_scene(name)
        self.inbound.receive_scene_switch_completed({"requestId": request_id, "sceneId": scene_id, "ok": True})
        self._result(request_id, "switch_scene")

    def _complete_relay_start(self, request_id: str) -> None:
        self.relay_active = True
        self._result(request_id, "relay_start")

    # ── Inventory churn (renames, reloads) ────────────────────────────

    def replace_scenes(self, scenes: list[dict]) -> None:
        self.scenes = [dict(s) for s in scenes]
        if not any(s["id"] == self.active_scene_id for s in self.scenes):
            self.active_scene_id = self.scenes[0]["id"] if self.scenes else None
        self.inbound.receive_scene_snapshot_json(json.dumps({"items": self.scenes}))
