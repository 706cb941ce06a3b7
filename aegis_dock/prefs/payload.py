"""
prefs/payload.py — The persisted preference document.

    {
      "sceneIntentLinks":       {ruleId: sceneId},
      "sceneIntentLinksByName": {ruleId: sceneName},
      "autoSceneRules":         [AutoSceneRule, ...]
    }

Carried as JSON text through the host's load/save_scene_prefs commands.
Sections that are missing or of the wrong type are left as None so the
caller keeps its current values for them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional

from aegis_dock.scenes.rules import AutoSceneRule, normalize_rules


class PrefsPayloadError(ValueError):
    """Stored preference text could not be parsed."""

    def __init__(self, message: str, raw: Any = None):
        super().__init__(message)
        self.raw = raw


@dataclass
class PrefsPayload:
    links: Optional[dict[str, str]] = None
    names: Optional[dict[str, str]] = None
    rules: Optional[list[AutoSceneRule]] = None

    def to_dict(self) -> dict:
        return {
            "sceneIntentLinks": dict(self.links or {}),
            "sceneIntentLinksByName": dict(self.names or {}),
            "autoSceneRules": [r.to_dict() for r in self.rules or []],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: Any) -> "PrefsPayload":
        if text is None or text == "":
            text = "{}"
        try:
            raw = json.loads(text)
        except (TypeError, ValueError) as e:
            raise PrefsPayloadError(f"Invalid preference JSON: {e}", raw=text) from e
        if not isinstance(raw, dict):
            raise PrefsPayloadError("Preference payload is not an object", raw=text)
        return cls(
            links=_link_map(raw.get("sceneIntentLinks")),
            names=_link_map(raw.get("sceneIntentLinksByName")),
            rules=normalize_rules(raw["autoSceneRules"]) if isinstance(raw.get("autoSceneRules"), list) else None,
        )


def _link_map(raw: Any) -> Optional[dict[str, str]]:
    if not isinstance(raw, dict):
        return None
    return {str(k): str(v or "") for k, v in raw.items()}
