"""
dock/controller.py — Wires the dock together and owns its manual controls.

    host ──► StateSynchronizer ──► on_state ──► link reconcile
       ▲                               │        toggle/relay spinners
       │                               └──────► auto-switch evaluation
       └── ActionCorrelator ◄── manual controls, auto-switch, prefs bridge

Everything the controller creates (timers, gate entries, rolling maxima) lives
from attach() to detach().
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from aegis_dock.config.settings import Settings
from aegis_dock.core.host import ActionResult, HostAdapter, HostEvent, HostEventKind, gen_request_id
from aegis_dock.core.state import HostState, resolve_arming
from aegis_dock.core.timers import Scheduler, TimerHandle, TimerScope
from aegis_dock.prefs.bridge import PreferenceBridge
from aegis_dock.scenes.autoswitch import AutoSceneSwitcher
from aegis_dock.scenes.links import SceneIntentLinkStore, resolve_scene_intent
from aegis_dock.scenes.rules import AutoSceneRule, AutoSceneRuleSet
from aegis_dock.sync.correlator import ActionCorrelator
from aegis_dock.sync.gate import (
    AUTO_TOGGLE_KEY,
    MANUAL_LOCKOUT_KEY,
    SET_MODE_KEY,
    ActionGate,
    scene_switch_key,
    setting_key,
)
from aegis_dock.sync.synchronizer import StateSynchronizer

from .telemetry import RollingMaxTracker, derived_mode, map_relay_status, output_health

log = logging.getLogger(__name__)

RELAY_TIMEOUT_ERROR = "Activation timed out"


class DockController:
    """
    Usage:
        dock = DockController(host, LoopScheduler(), settings)
        dock.attach()
        await dock.switch_scene("scene_2")
        dock.detach()
    """

    def __init__(
        self,
        host: HostAdapter,
        scheduler: Scheduler,
        settings: Optional[Settings] = None,
        rules: Optional[AutoSceneRuleSet] = None,
        links: Optional[SceneIntentLinkStore] = None,
    ):
        self.host = host
        self.settings = settings or Settings()
        self._scheduler = scheduler
        s = self.settings

        self.gate = ActionGate(clock=scheduler.now)
        self.correlator = ActionCorrelator(host, scheduler, grace=s.sync.action_grace)
        self.sync = StateSynchronizer(host, scheduler, s.sync)
        self.rules = rules or AutoSceneRuleSet()
        self.links = links or SceneIntentLinkStore()
        self.switcher = AutoSceneSwitcher(self.gate, cooldown=s.dock.auto_profile_switch_cooldown)
        self.prefs = PreferenceBridge(self.correlator.send, self.rules, self.links, scheduler, s.prefs)
        self.output_max = RollingMaxTracker()

        self.toggle_lock: Optional[dict] = None
        self._toggle_timer: Optional[TimerHandle] = None
        self.relay_activating = False
        self.relay_error: Optional[str] = None
        self._relay_timer: Optional[TimerHandle] = None

        self._scope: Optional[TimerScope] = None
        self._eval_pending = False
        self._update_listeners: list[Callable[[], None]] = []

        self.sync.on_state(self._on_state)
        self.sync.on_event(self._on_event)
        self.rules.on_change(self.request_evaluation)
        self.links.on_change(self.request_evaluation)

    # ── Lifecycle ─────────────────────────────────────────────────────

    @property
    def attached(self) -> bool:
        return self._scope is not None and not self._scope.closed

    @property
    def state(self) -> Optional[HostState]:
        return self.sync.state

    def attach(self) -> None:
        if self.attached:
            return
        self._scope = self._scheduler.scope()
        self.sync.attach()
        log.info(f"Dock attached ({'simulated' if self.host.simulated else 'real'} host)")

    def detach(self) -> None:
        if not self.attached:
            return
        self.sync.detach()
        self.prefs.detach()
        self.correlator.close()
        self._scope.close()
        self.gate.reset()
        self.output_max.reset()
        self.toggle_lock = None
        self.relay_activating = False
        self._eval_pending = False
        log.info("Dock detached")

    def on_update(self, listener: Callable[[], None]) -> None:
        self._update_listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._update_listeners):
            try:
                listener()
            except Exception as e:
                log.error(f"Update listener error: {e!r}")

    # ── Inbound ───────────────────────────────────────────────────────

    def _on_state(self, state: HostState) -> None:
        if not self.attached:
            return
        if not self.prefs.attached:
            self.prefs.attach()

        self.output_max.update(state.outputs.all_items())
        self.links.reconcile(state.scenes.items, self.rules)

        if self.toggle_lock and resolve_arming(state).armed == self.toggle_lock["targetArmed"]:
            self._clear_toggle_lock()
        if self.relay_activating and state.relay.is_active:
            self.relay_activating = False
            self.relay_error = None
            if self._relay_timer:
                self._relay_timer.cancel()
                self._relay_timer = None

        self.request_evaluation()
        self._notify()

    def _on_event(self, event: HostEvent) -> None:
        if event.kind is HostEventKind.ACTION_RESULT:
            result = ActionResult.from_payload(event.payload)
            if result is not None:
                self.correlator.on_result(result)
        elif event.kind is HostEventKind.ACTION_UNSUPPORTED:
            log.warning(f"Host does not support '{event.payload.get('action', {}).get('type')}'")
        self.prefs.on_event(event)

    # ── Auto switching ────────────────────────────────────────────────

    def request_evaluation(self) -> None:
        """Coalesce evaluation requests from every input into one run."""
        if not self.attached or self._eval_pending:
            return
        self._eval_pending = True
        self._scope.call_soon(self.evaluate)

    async def evaluate(self) -> Optional[dict]:
        self._eval_pending = False
        state = self.sync.state
        if state is not None:
            # rules or links may have been replaced since the last snapshot
            self.links.reconcile(state.scenes.items, self.rules)
        command = self.switcher.evaluate(state, self.rules, self.links)
        if command is not None:
            await self.send(command)
        return command

    # ── Manual controls ───────────────────────────────────────────────

    async def send(self, command: dict) -> str:
        """Dispatch through the correlator, then re-read host state right away."""
        await self.correlator.send(command)
        if self.attached:
            self._scope.call_soon(lambda: self.sync.refresh("dispatch"))
        return command["requestId"]

    async def switch_scene(self, scene_id: str) -> Optional[str]:
        """
        Switch to a scene on the user's behalf. If automatic switching is
        armed it is disengaged first, so the next evaluation does not undo it.
        """
        state = self.sync.state
        scene = state.scenes.get(scene_id) if state else None
        if scene is None:
            raise ValueError(f"Scene '{scene_id}' not found")
        if not self.gate.try_enter(scene_switch_key(scene.id), self.settings.dock.switch_scene_cooldown):
            return None

        arming = resolve_arming(state)
        if arming.armed and self.gate.try_enter(MANUAL_LOCKOUT_KEY, self.settings.dock.set_setting_cooldown):
            disarm = arming.disarm_command()
            disarm["reason"] = "manual_scene_switch"
            log.info(f"Manual switch while armed: disengaging via {disarm['key']}")
            await self.send(disarm)

        return await self.send({"type": "switch_scene", "sceneId": scene.id, "sceneName": scene.name})

    async def toggle_auto_switch(self) -> Optional[str]:
        if not self.attached or self.toggle_lock:
            return None
        if not self.gate.try_enter(AUTO_TOGGLE_KEY, self.settings.dock.auto_switch_toggle_cooldown):
            return None
        arming = resolve_arming(self.sync.state)
        target_armed = not arming.armed
        command = arming.toggle_command(target_armed)
        command["requestId"] = gen_request_id()
        self.toggle_lock = {"requestId": command["requestId"], "targetArmed": target_armed}
        self._toggle_timer = self._scope.call_later(
            self.settings.dock.auto_switch_lock_timeout, self._clear_toggle_lock
        )
        return await self.send(command)

    def _clear_toggle_lock(self) -> None:
        self.toggle_lock = None
        if self._toggle_timer:
            self._toggle_timer.cancel()
            self._toggle_timer = None

    async def set_setting(self, key: str, value: Any) -> Optional[str]:
        if not self.gate.try_enter(setting_key(key), self.settings.dock.set_setting_cooldown):
            return None
        return await self.send({"type": "set_setting", "key": key, "value": value})

    async def set_mode(self, mode: str) -> Optional[str]:
        if not self.gate.try_enter(SET_MODE_KEY, self.settings.dock.set_mode_cooldown):
            return None
        return await self.send({"type": "set_mode", "mode": mode})

    async def toggle_relay(self) -> Optional[str]:
        if not self.attached or self.relay_activating:
            return None
        state = self.sync.state
        if state is not None and state.relay.is_active:
            return await self.send({"type": "relay_stop"})

        self.relay_activating = True
        self.relay_error = None
        self._relay_timer = self._scope.call_later(
            self.settings.dock.relay_activation_timeout, self._relay_timed_out
        )
        return await self.send({"type": "relay_start"})

    def _relay_timed_out(self) -> None:
        self._relay_timer = None
        if not self.relay_activating:
            return
        self.relay_activating = False
        self.relay_error = RELAY_TIMEOUT_ERROR
        log.warning(f"Relay activation not confirmed within {self.settings.dock.relay_activation_timeout}s")
        self._notify()

    # ── Rules and links ───────────────────────────────────────────────

    def link_rule(self, rule_id: str, scene_id: Optional[str]) -> None:
        if self.rules.get(rule_id) is None:
            raise ValueError(f"Rule '{rule_id}' not found")
        scenes = self.sync.state.scenes.items if self.sync.state else ()
        if scene_id and not any(s.id == scene_id for s in scenes):
            raise ValueError(f"Scene '{scene_id}' not found")
        self.links.set_link(rule_id, scene_id, scenes)

    def add_rule(self, label: Optional[str] = None) -> AutoSceneRule:
        return self.rules.add(label)

    def update_rule(self, rule_id: str, patch: dict) -> AutoSceneRule:
        return self.rules.update(rule_id, patch)

    def remove_rule(self, rule_id: str) -> bool:
        removed = self.rules.remove(rule_id)
        if removed:
            self.links.remove_rule(rule_id)
        return removed

    # ── Status summary ────────────────────────────────────────────────

    def status(self) -> dict:
        state = self.sync.state
        arming = resolve_arming(state)
        links = self.links.links
        rules = self.rules.rules

        scenes = []
        outputs = []
        if state is not None:
            for scene in state.scenes.items:
                scenes.append({
                    "id": scene.id,
                    "name": scene.name,
                    "intent": resolve_scene_intent(scene, links, rules),
                    "active": scene.id == state.scenes.active_scene_id,
                    "pending": scene.id == state.scenes.pending_scene_id,
                })
            for item in state.outputs.all_items():
                peak = self.output_max.get(item.key)
                outputs.append({
                    "key": item.key,
                    "name": item.name,
                    "kbps": item.kbps,
                    "maxKbps": round(peak, 1),
                    "health": output_health(item.kbps, peak),
                    "active": item.active,
                })

        kbps = state.auto_switch_bitrate_kbps if state else 0.0
        return {
            "attached": self.attached,
            "connected": self.sync.connected,
            "simulated": self.host.simulated,
            "hydrated": self.prefs.hydrated,
            "mode": state.header.mode if state else None,
            "derivedMode": derived_mode(state),
            "relay": {
                "active": state.relay.is_active if state else False,
                "status": map_relay_status(state.relay.status if state else None),
                "activating": self.relay_activating,
                "error": self.relay_error,
            },
            "arming": {
                "armed": arming.armed,
                "autoSwitchEnabled": arming.auto_switch_enabled,
                "manualOverrideEnabled": arming.manual_override_enabled,
                "authority": arming.authority,
                "toggleLocked": self.toggle_lock is not None,
            },
            "bitrate": {"kbps": kbps, "mbps": round(kbps / 1000, 3)},
            "activeSceneId": state.scenes.active_scene_id if state else None,
            "pendingSceneId": state.scenes.pending_scene_id if state else None,
            "scenes": scenes,
            "outputs": outputs,
            "rules": [r.to_dict() for r in rules],
            "links": links,
            "lastAutoRule": self.switcher.last_rule_id,
            "inFlight": [a.to_dict() for a in self.correlator.in_flight()],
        }
