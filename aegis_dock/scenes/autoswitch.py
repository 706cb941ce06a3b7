"""
scenes/autoswitch.py — Bitrate-driven automatic scene switching.

One evaluation picks at most one rule and yields at most one switch_scene
command. It runs whenever an input changes (new snapshot, rule edit, link
edit), so it must be idempotent: switching to the scene that is already
active is never requested, and every target scene is rate limited through
the action gate to keep a bitrate hovering on a threshold from flapping.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from aegis_dock.core.state import HostState, resolve_arming
from aegis_dock.sync.gate import ActionGate, auto_switch_key

from .links import SceneIntentLinkStore
from .rules import AutoSceneRule

log = logging.getLogger(__name__)


def select_rule(rules: Iterable[AutoSceneRule], mbps: float) -> Optional[AutoSceneRule]:
    """
    Lowest threshold the current bitrate is still at or under; otherwise the
    default rule; otherwise the first rule.
    """
    rules = list(rules)
    for rule in sorted((r for r in rules if r.participates), key=lambda r: r.threshold_mbps):
        if mbps <= rule.threshold_mbps:
            return rule
    return next((r for r in rules if r.is_default), rules[0] if rules else None)


class AutoSceneSwitcher:
    def __init__(self, gate: ActionGate, cooldown: float = 2.5):
        self._gate = gate
        self.cooldown = cooldown
        self.last_rule_id: Optional[str] = None
        self.last_command: Optional[dict] = None

    def evaluate(
        self,
        state: Optional[HostState],
        rules: Iterable[AutoSceneRule],
        links: SceneIntentLinkStore,
    ) -> Optional[dict]:
        """Return the switch_scene command to send, or None."""
        if state is None or not state.relay.is_active:
            return None
        if not resolve_arming(state).armed:
            return None
        scenes = state.scenes
        if not scenes.items or scenes.pending_scene_id:
            return None

        mbps = state.auto_switch_bitrate_kbps / 1000
        rule = select_rule(rules, mbps)
        if rule is None:
            return None
        self.last_rule_id = rule.id

        target_id = links.scene_for(rule.id)
        if not target_id or target_id == scenes.active_scene_id:
            return None
        target = scenes.get(target_id)
        if target is None:
            return None
        if not self._gate.try_enter(auto_switch_key(target.id), self.cooldown):
            log.debug(f"Auto switch to '{target.name}' held by cooldown")
            return None

        log.info(f"Auto switch: {mbps:.2f} Mbps -> rule '{rule.id}' -> scene '{target.name}'")
        self.last_command = {
            "type": "switch_scene",
            "sceneId": target.id,
            "sceneName": target.name,
            "reason": f"auto_profile_{rule.id}",
        }
        return dict(self.last_command)
