"""scenes — Auto scene rules, links and switching decisions."""
from .autoswitch import AutoSceneSwitcher, select_rule
from .links import SceneIntentLinkStore, normalize_scene_name, resolve_scene_intent
from .rules import DEFAULT_AUTO_SCENE_RULES, AutoSceneRule, AutoSceneRuleSet, normalize_rules

__all__ = [
    "AutoSceneRule",
    "AutoSceneRuleSet",
    "AutoSceneSwitcher",
    "DEFAULT_AUTO_SCENE_RULES",
    "SceneIntentLinkStore",
    "normalize_rules",
    "normalize_scene_name",
    "resolve_scene_intent",
    "select_rule",
]
