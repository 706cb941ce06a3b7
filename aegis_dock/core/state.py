"""
core/state.py - HostState snapshot model.

The host reports its state as one nested camelCase document. HostState parses
it into frozen pydantic models; each refresh replaces the whole snapshot and
nothing in the client mutates one in place.

Setting precedence (see resolve_arming):
  auto-switch enabled:  scenes.autoSwitchEnabled  > settings[auto_scene_switch]
  manual override:      scenes.manualOverrideEnabled > settings[manual_override]
  armed:                scenes.autoSwitchArmed
                        > (manual override true -> False, else auto-switch value)
                        > False when auto-switch is unknown
  toggle authority:     "manual_override" when manual override is known,
                        else "auto_scene_switch"
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

SCENE_INTENTS = ("LIVE", "BRB", "HOLD", "OFFLINE")

AUTO_SCENE_SWITCH_KEY = "auto_scene_switch"
MANUAL_OVERRIDE_KEY = "manual_override"


def normalize_intent(intent: Any) -> Optional[str]:
    if not intent or not isinstance(intent, str):
        return None
    upper = intent.upper()
    return upper if upper in SCENE_INTENTS else None


def infer_intent_from_name(name: Optional[str]) -> str:
    if not name:
        return "OFFLINE"
    lower = name.lower()
    if "live" in lower or "main" in lower:
        return "LIVE"
    if "brb" in lower or "reconnect" in lower:
        return "BRB"
    if "low" in lower or "fallback" in lower:
        return "HOLD"
    return "OFFLINE"


class _Section(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class Header(_Section):
    title: str = ""
    subtitle: str = ""
    mode: str = "studio"
    modes: tuple[str, ...] = ()
    version: str = ""


class LiveStatus(_Section):
    is_live: bool = False
    elapsed_sec: float = 0


class Scene(_Section):
    id: str = ""
    name: str = ""
    intent: Optional[str] = None
    index: int = 0

    @field_validator("id", "name", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("intent", mode="before")
    @classmethod
    def _intent(cls, v: Any) -> Optional[str]:
        return normalize_intent(v)


class SceneInventory(_Section):
    items: tuple[Scene, ...] = ()
    active_scene_id: Optional[str] = None
    pending_scene_id: Optional[str] = None
    auto_switch_armed: Optional[bool] = None
    auto_switch_enabled: Optional[bool] = None
    manual_override_enabled: Optional[bool] = None

    def get(self, scene_id: Optional[str]) -> Optional[Scene]:
        if not scene_id:
            return None
        for scene in self.items:
            if scene.id == scene_id:
                return scene
        return None

    @property
    def ids(self) -> set[str]:
        return {s.id for s in self.items}


class ConnectionLink(_Section):
    name: str = ""
    type: str = ""
    signal: int = 0
    bitrate: float = 0
    status: str = ""


class Connections(_Section):
    items: tuple[ConnectionLink, ...] = ()


class BitrateFigures(_Section):
    bonded_kbps: float = 0
    relay_bonded_kbps: float = 0
    max_per_link_kbps: float = 6000
    max_bonded_kbps: float = 12000
    low_threshold_mbps: Optional[float] = None
    brb_threshold_mbps: Optional[float] = None


class OutputItem(_Section):
    id: str = ""
    name: str = ""
    platform: str = ""
    kbps: float = 0
    fps: float = 0
    drop_pct: float = 0
    active: bool = False

    @property
    def key(self) -> str:
        return self.id or self.name or self.platform


class OutputGroup(_Section):
    name: str = ""
    encoder: str = ""
    resolution: str = ""
    total_bitrate_kbps: float = 0
    avg_lag_ms: float = 0
    items: tuple[OutputItem, ...] = ()


class Outputs(_Section):
    groups: tuple[OutputGroup, ...] = ()
    hidden: tuple[OutputItem, ...] = ()

    def all_items(self) -> list[OutputItem]:
        return [item for group in self.groups for item in group.items]


class RelayStatus(_Section):
    licensed: bool = True
    active: Optional[bool] = None
    enabled: Optional[bool] = None      # legacy alias of `active`
    status: str = ""
    region: str = ""
    latency_ms: Optional[float] = None
    uptime_sec: Optional[float] = None
    grace_remaining_seconds: Optional[float] = None

    @property
    def is_active(self) -> bool:
        if self.active is not None:
            return self.active
        return bool(self.enabled)


class FailoverStatus(_Section):
    health: str = "offline"
    state: Optional[str] = None
    states: tuple[str, ...] = ()
    response_budget_ms: Optional[float] = None


class Setting(_Section):
    key: str = ""
    label: str = ""
    value: Optional[bool] = None

    @field_validator("value", mode="before")
    @classmethod
    def _tri_state(cls, v: Any) -> Optional[bool]:
        return v if isinstance(v, bool) else None


class SettingsSection(_Section):
    items: tuple[Setting, ...] = ()


class EventLogEntry(_Section):
    id: str = ""
    time: str = ""
    ts_unix_ms: Optional[int] = None
    type: str = "info"
    msg: str = ""
    source: str = ""


class PipeStatus(_Section):
    status: str = "down"
    label: str = ""


class HostState(_Section):
    header: Header = Header()
    live: LiveStatus = LiveStatus()
    scenes: SceneInventory = SceneInventory()
    connections: Connections = Connections()
    bitrate: BitrateFigures = BitrateFigures()
    outputs: Outputs = Outputs()
    relay: RelayStatus = RelayStatus()
    failover: FailoverStatus = FailoverStatus()
    settings: SettingsSection = SettingsSection()
    events: tuple[EventLogEntry, ...] = ()
    pipe: PipeStatus = PipeStatus()

    @classmethod
    def from_raw(cls, raw: dict) -> "HostState":
        return cls.model_validate(raw or {})

    def setting(self, key: str) -> Optional[bool]:
        """Tri-state lookup of a toggleable setting: True, False, or None (unknown)."""
        for item in self.settings.items:
            if item.key == key:
                return item.value
        return None

    @property
    def auto_switch_bitrate_kbps(self) -> float:
        if self.relay.is_active:
            return self.bitrate.relay_bonded_kbps or self.bitrate.bonded_kbps
        return self.bitrate.bonded_kbps


# ── Setting resolution ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Arming:
    auto_switch_enabled: Optional[bool]
    manual_override_enabled: Optional[bool]
    armed: bool
    authority: str      # setting key that controls arming on this host

    def disarm_command(self) -> dict:
        """Setting change that disengages automatic switching."""
        if self.authority == MANUAL_OVERRIDE_KEY:
            return {"type": "set_setting", "key": MANUAL_OVERRIDE_KEY, "value": True}
        return {"type": "set_setting", "key": AUTO_SCENE_SWITCH_KEY, "value": False}

    def toggle_command(self, target_armed: bool) -> dict:
        if self.authority == MANUAL_OVERRIDE_KEY:
            return {"type": "set_setting", "key": MANUAL_OVERRIDE_KEY, "value": not target_armed}
        return {"type": "set_setting", "key": AUTO_SCENE_SWITCH_KEY, "value": target_armed}


def resolve_flag(explicit: Optional[bool], state: HostState, setting_key: str) -> Optional[bool]:
    if isinstance(explicit, bool):
        return explicit
    return state.setting(setting_key)


def resolve_arming(state: Optional[HostState]) -> Arming:
    if state is None:
        return Arming(None, None, False, AUTO_SCENE_SWITCH_KEY)
    scenes = state.scenes
    auto = resolve_flag(scenes.auto_switch_enabled, state, AUTO_SCENE_SWITCH_KEY)
    manual = resolve_flag(scenes.manual_override_enabled, state, MANUAL_OVERRIDE_KEY)
    if isinstance(scenes.auto_switch_armed, bool):
        armed = scenes.auto_switch_armed
    elif auto is not None:
        armed = False if manual is True else auto
    else:
        armed = False
    authority = MANUAL_OVERRIDE_KEY if manual is not None else AUTO_SCENE_SWITCH_KEY
    return Arming(auto, manual, armed, authority)
