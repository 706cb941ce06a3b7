"""
scenes/rules.py — Auto scene-switch rules.

A rule maps a bitrate band to a scene intent. Threshold rules participate in
the "bitrate <= threshold" comparison; every rule remains selectable as the
fallback (isDefault, else the first rule). The set never shrinks below one
rule.

Rules round-trip through the host's preference store in camelCase:
    {id, label, intent, thresholdEnabled, thresholdMbps, isDefault, bgColor}
"""

from __future__ import annotations

import copy
import logging
import math
import random
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from aegis_dock.core.state import normalize_intent

log = logging.getLogger(__name__)

MAX_LABEL_LENGTH = 40

INTENT_BG_COLORS = {
    "LIVE": "#2ea043",
    "HOLD": "#d29922",
    "BRB": "#8b5cf6",
    "OFFLINE": "#8b8f98",
}
CUSTOM_RULE_BG = "#3a2a1a"

_HEX_RE = re.compile(r"^(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


def normalize_hex_color(value: Any) -> Optional[str]:
    """'#ABC' / 'aabbcc' / '#AaBbCc' -> '#aabbcc'; anything else -> None."""
    raw = str(value or "").strip()
    cleaned = raw[1:] if raw.startswith("#") else raw
    if not _HEX_RE.match(cleaned):
        return None
    if len(cleaned) == 3:
        cleaned = "".join(c * 2 for c in cleaned)
    return f"#{cleaned.lower()}"


def default_bg_color(rule_id: str, intent: str) -> str:
    match rule_id:
        case "live_main":
            return INTENT_BG_COLORS["LIVE"]
        case "low_bitrate_fallback":
            return INTENT_BG_COLORS["HOLD"]
        case "brb_reconnecting":
            return INTENT_BG_COLORS["BRB"]
    return INTENT_BG_COLORS.get(str(intent).upper(), INTENT_BG_COLORS["OFFLINE"])


def parse_threshold(value: Any) -> Optional[float]:
    """Finite number >= 0, or None."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number < 0:
        return None
    return number


@dataclass
class AutoSceneRule:
    id: str
    label: str
    intent: str = "HOLD"
    threshold_enabled: bool = False
    threshold_mbps: Optional[float] = None
    is_default: bool = False
    bg_color: str = INTENT_BG_COLORS["HOLD"]

    @property
    def participates(self) -> bool:
        """True when this rule takes part in threshold comparison."""
        return self.threshold_enabled and self.threshold_mbps is not None and math.isfinite(self.threshold_mbps)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "intent": self.intent,
            "thresholdEnabled": self.threshold_enabled,
            "thresholdMbps": self.threshold_mbps,
            "isDefault": self.is_default,
            "bgColor": self.bg_color,
        }

    @classmethod
    def from_dict(cls, data: dict, index: int = 0) -> "AutoSceneRule":
        """Lenient parse used for stored/untrusted rule lists."""
        rule_id = str(data.get("id") or f"rule_{index}")
        label = str(data.get("label") or f"Rule {index + 1}")[:MAX_LABEL_LENGTH]
        intent = normalize_intent(data.get("intent")) or "HOLD"
        threshold = parse_threshold(data.get("thresholdMbps"))
        enabled = data.get("thresholdEnabled")
        if not isinstance(enabled, bool):
            enabled = threshold is not None
        return cls(
            id=rule_id,
            label=label,
            intent=intent,
            threshold_enabled=enabled,
            threshold_mbps=threshold,
            is_default=bool(data.get("isDefault")),
            bg_color=normalize_hex_color(data.get("bgColor")) or default_bg_color(rule_id, intent),
        )


# ── Built-in defaults ─────────────────────────────────────────────────────────

DEFAULT_AUTO_SCENE_RULES: list[AutoSceneRule] = [
    AutoSceneRule(
        id="live_main",
        label="Live - Main",
        intent="LIVE",
        is_default=True,
        bg_color="#2ea043",
    ),
    AutoSceneRule(
        id="low_bitrate_fallback",
        label="Low Bitrate Fallback",
        intent="HOLD",
        threshold_enabled=True,
        threshold_mbps=1.0,
        bg_color="#d29922",
    ),
    AutoSceneRule(
        id="brb_reconnecting",
        label="BRB - Reconnecting",
        intent="BRB",
        threshold_enabled=True,
        threshold_mbps=0.2,
        bg_color="#8b5cf6",
    ),
    AutoSceneRule(id="starting_soon", label="Starting Soon", intent="OFFLINE", bg_color="#8b8f98"),
    AutoSceneRule(id="ending", label="Ending", intent="OFFLINE", bg_color="#8b8f98"),
]


def default_rules() -> list[AutoSceneRule]:
    return copy.deepcopy(DEFAULT_AUTO_SCENE_RULES)


def normalize_rules(raw: Any) -> list[AutoSceneRule]:
    """Parse a stored rule list; empty or unusable input yields the built-in rules."""
    if not isinstance(raw, list) or not raw:
        return default_rules()
    rules = [AutoSceneRule.from_dict(item, idx) for idx, item in enumerate(raw) if isinstance(item, dict)]
    if not rules:
        return default_rules()
    seen_default = False
    for rule in rules:
        if rule.is_default and seen_default:
            rule.is_default = False
        seen_default = seen_default or rule.is_default
    return rules


def new_rule_id() -> str:
    return f"rule_{int(time.time() * 1000)}_{random.randrange(1000)}"


# ── Rule set ──────────────────────────────────────────────────────────────────

_PATCH_FIELDS = {
    "label": "label",
    "intent": "intent",
    "thresholdEnabled": "threshold_enabled",
    "thresholdMbps": "threshold_mbps",
    "isDefault": "is_default",
    "bgColor": "bg_color",
}


class AutoSceneRuleSet:
    """
    Ordered, editable rule collection with change notification.

    Usage:
        rules = AutoSceneRuleSet()
        rules.on_change(controller.evaluate)
        rule = rules.add()
        rules.update(rule.id, {"thresholdMbps": 0.8})
    """

    def __init__(self, rules: Optional[list[AutoSceneRule]] = None):
        self._rules: list[AutoSceneRule] = rules if rules else default_rules()
        self._listeners: list[Callable[[], None]] = []

    def on_change(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def _changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                log.error(f"Rule listener error: {e!r}")

    # ── Queries ───────────────────────────────────────────────────────

    @property
    def rules(self) -> list[AutoSceneRule]:
        return list(self._rules)

    def __iter__(self):
        return iter(list(self._rules))

    def __len__(self) -> int:
        return len(self._rules)

    def get(self, rule_id: str) -> Optional[AutoSceneRule]:
        return next((r for r in self._rules if r.id == rule_id), None)

    def fallback_rule(self) -> Optional[AutoSceneRule]:
        return next((r for r in self._rules if r.is_default), self._rules[0] if self._rules else None)

    def to_list(self) -> list[dict]:
        return [r.to_dict() for r in self._rules]

    # ── Edits ─────────────────────────────────────────────────────────

    def add(self, label: Optional[str] = None) -> AutoSceneRule:
        rule = AutoSceneRule(
            id=new_rule_id(),
            label=(label or f"Custom {len(self._rules) + 1}")[:MAX_LABEL_LENGTH],
            intent="HOLD",
            threshold_enabled=True,
            threshold_mbps=0.5,
            bg_color=CUSTOM_RULE_BG,
        )
        self._rules.append(rule)
        log.info(f"Added auto scene rule '{rule.label}' ({rule.id})")
        self._changed()
        return rule

    def update(self, rule_id: str, patch: dict) -> AutoSceneRule:
        rule = self.get(rule_id)
        if rule is None:
            raise ValueError(f"Rule '{rule_id}' not found. Available: {[r.id for r in self._rules]}")

        changes: dict[str, Any] = {}
        for key, value in patch.items():
            attr = _PATCH_FIELDS.get(key)
            if attr is None:
                raise ValueError(f"Unknown rule field '{key}'")
            match attr:
                case "label":
                    changes[attr] = str(value or "")[:MAX_LABEL_LENGTH]
                case "intent":
                    intent = normalize_intent(value)
                    if intent is None:
                        raise ValueError(f"Unknown intent '{value}'")
                    changes[attr] = intent
                case "threshold_mbps":
                    threshold = parse_threshold(value)
                    if value is not None and value != "" and threshold is None:
                        raise ValueError(f"Threshold must be a finite number >= 0, got {value!r}")
                    changes[attr] = threshold
                case "bg_color":
                    color = normalize_hex_color(value)
                    if color is None:
                        raise ValueError(f"Invalid colour '{value}'")
                    changes[attr] = color
                case _:
                    changes[attr] = bool(value)

        for attr, value in changes.items():
            setattr(rule, attr, value)
        if changes.get("is_default"):
            for other in self._rules:
                if other is not rule:
                    other.is_default = False
        self._changed()
        return rule

    def remove(self, rule_id: str) -> bool:
        """Drop a rule. Refused (False) when it is the last one."""
        rule = self.get(rule_id)
        if rule is None:
            raise ValueError(f"Rule '{rule_id}' not found. Available: {[r.id for r in self._rules]}")
        if len(self._rules) <= 1:
            log.warning(f"Refusing to remove the last auto scene rule ({rule_id})")
            return False
        self._rules.remove(rule)
        self._changed()
        return True

    def replace(self, rules: list[AutoSceneRule]) -> None:
        self._rules = list(rules) if rules else default_rules()
        self._changed()
