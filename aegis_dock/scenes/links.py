"""
scenes/links.py — Rule → scene links that survive scene inventory churn.

Links are stored by scene id, with a shadow map of the last scene *name* seen
for each rule. Every fresh inventory runs reconcile():

  1. prune    — links to ids missing from the inventory are cleared
  2. recover  — unlinked rules with a remembered name relink to the scene
                whose normalized name matches exactly
  3. guess    — still-unlinked rules try the hint table (exact, then substring)
  4. shadow   — every resolved link records its scene's current name

Rules that already point at a valid id are never touched.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Iterable, Optional, Sequence

from aegis_dock.core.state import Scene, infer_intent_from_name

from .rules import AutoSceneRule

log = logging.getLogger(__name__)

SCENE_PROFILE_NAME_HINTS: dict[str, list[str]] = {
    "live_main": ["main", "live - main", "live main", "live"],
    "low_bitrate_fallback": ["low bitrate default scene", "low bitrate fallback", "low bitrate", "fallback", "low", "test"],
    "brb_reconnecting": ["brb", "brb - reconnecting", "brb reconnecting", "reconnecting"],
    "starting_soon": ["game audio", "starting soon", "starting"],
    "ending": ["game audio", "ending", "end"],
}

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_scene_name(name: Optional[str]) -> str:
    return _NON_ALNUM.sub(" ", str(name or "").lower()).strip()


def find_scene_id_by_name(scene_name: Optional[str], scenes: Sequence[Scene]) -> str:
    target = normalize_scene_name(scene_name)
    if not target:
        return ""
    for scene in scenes:
        if normalize_scene_name(scene.name) == target:
            return scene.id
    return ""


def find_best_scene_id_for_rule(rule: AutoSceneRule, scenes: Sequence[Scene]) -> str:
    hints = SCENE_PROFILE_NAME_HINTS.get(rule.id) or [rule.label]
    normalized_hints = [h for h in (normalize_scene_name(h) for h in hints) if h]
    if not normalized_hints:
        return ""
    for scene in scenes:
        if normalize_scene_name(scene.name) in normalized_hints:
            return scene.id
    for scene in scenes:
        name = normalize_scene_name(scene.name)
        if any(h in name for h in normalized_hints):
            return scene.id
    return ""


class SceneIntentLinkStore:
    def __init__(self, links: Optional[dict] = None, names: Optional[dict] = None):
        self._links: dict[str, str] = _clean_map(links)
        self._names: dict[str, str] = _clean_map(names)
        self._listeners: list[Callable[[], None]] = []

    def on_change(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def _changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                log.error(f"Link listener error: {e!r}")

    # ── Queries ───────────────────────────────────────────────────────

    @property
    def links(self) -> dict[str, str]:
        return dict(self._links)

    @property
    def names(self) -> dict[str, str]:
        return dict(self._names)

    def scene_for(self, rule_id: str) -> Optional[str]:
        return self._links.get(rule_id) or None

    def rules_for_scene(self, scene_id: str) -> list[str]:
        return [rule_id for rule_id, linked in self._links.items() if linked == scene_id]

    # ── Edits ─────────────────────────────────────────────────────────

    def set_link(self, rule_id: str, scene_id: Optional[str], scenes: Sequence[Scene] = ()) -> None:
        """Link a rule to a scene (empty scene_id unlinks it)."""
        if not scene_id:
            self._links.pop(rule_id, None)
            self._names.pop(rule_id, None)
        else:
            scene = next((s for s in scenes if s.id == scene_id), None)
            self._links[rule_id] = scene_id
            self._names[rule_id] = scene.name if scene else ""
        self._changed()

    def remove_rule(self, rule_id: str) -> None:
        had = rule_id in self._links or rule_id in self._names
        self._links.pop(rule_id, None)
        self._names.pop(rule_id, None)
        if had:
            self._changed()

    def replace(self, links: Optional[dict], names: Optional[dict]) -> None:
        self._links = _clean_map(links)
        self._names = _clean_map(names)
        self._changed()

    # ── Reconciliation ────────────────────────────────────────────────

    def reconcile(self, scenes: Sequence[Scene], rules: Iterable[AutoSceneRule]) -> bool:
        """Heal links against a fresh inventory. Returns True if anything changed."""
        ids = {s.id for s in scenes}
        links = {rule_id: scene_id for rule_id, scene_id in self._links.items() if scene_id in ids}
        names = dict(self._names)

        if scenes:
            for rule in rules:
                if links.get(rule.id):
                    continue
                scene_id = find_scene_id_by_name(names.get(rule.id), scenes)
                how = "name"
                if not scene_id:
                    scene_id = find_best_scene_id_for_rule(rule, scenes)
                    how = "hint"
                if scene_id:
                    log.info(f"Linked rule '{rule.id}' to scene '{scene_id}' by {how}")
                    links[rule.id] = scene_id

            by_id = {s.id: s for s in scenes}
            for rule_id, scene_id in links.items():
                names[rule_id] = by_id[scene_id].name

        if links == self._links and names == self._names:
            return False
        dropped = set(self._links) - set(links)
        if dropped:
            log.info(f"Cleared stale scene links: {sorted(dropped)}")
        self._links = links
        self._names = names
        self._changed()
        return True


def _clean_map(raw: Optional[dict]) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {str(k): str(v) for k, v in raw.items() if v}


def resolve_scene_intent(scene: Scene, links: dict[str, str], rules: Iterable[AutoSceneRule]) -> str:
    """Linked rule's intent, else the scene's own intent, else a guess from its name."""
    for rule in rules:
        if links.get(rule.id) == scene.id:
            return rule.intent
    return scene.intent or infer_intent_from_name(scene.name)
