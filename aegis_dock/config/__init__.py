"""config — Settings, env loading, YAML config."""
from .settings import APISettings, DockSettings, HostSettings, PrefsSettings, Settings, SyncSettings, get_settings, reload_settings

__all__ = [
    "APISettings",
    "DockSettings",
    "HostSettings",
    "PrefsSettings",
    "Settings",
    "SyncSettings",
    "get_settings",
    "reload_settings",
]
