"""
config/settings.py — Central configuration via env vars + YAML override.

Priority: ENV > config.yaml > defaults

All durations are seconds.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SectionSettings(BaseSettings):
    """
    One config.yaml section. Settings.load() passes the YAML values in as
    keyword arguments; environment variables still win over them.
    """

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings):
        return env_settings, dotenv_settings, init_settings, file_secret_settings


class HostSettings(SectionSettings):
    kind: Literal["obs", "simulator"] = Field("obs", description="Host adapter: real OBS vendor or simulator")
    host: str = Field("localhost", description="obs-websocket host")
    port: int = Field(4455, description="obs-websocket port")
    password: str = Field("", description="obs-websocket password")
    vendor_name: str = Field("aegis-dock", description="obs-websocket vendor registered by the dock plugin")
    reconnect_interval: float = Field(5.0, description="Seconds between reconnect attempts")
    max_reconnect_attempts: int = Field(0, description="Max reconnect attempts (0=infinite)")

    model_config = SettingsConfigDict(env_prefix="HOST_")


class SyncSettings(SectionSettings):
    probe_interval: float = Field(0.25, description="Retry interval while the host is unavailable")
    early_refresh_delay: float = Field(0.15, description="Second pull after attach")
    status_request_delay: float = Field(0.4, description="Delay before request_status after attach")
    fast_poll_interval: float = Field(0.25, description="Start-up poll cadence")
    fast_poll_window: float = Field(6.0, description="How long the start-up cadence runs")
    slow_poll_interval: float = Field(2.0, description="Steady poll cadence")
    action_grace: float = Field(3.0, description="Terminal actions stay queryable this long")

    model_config = SettingsConfigDict(env_prefix="SYNC_")


class DockSettings(SectionSettings):
    switch_scene_cooldown: float = Field(0.5, description="Per-scene manual switch cooldown")
    set_mode_cooldown: float = Field(0.5, description="Mode change cooldown")
    set_setting_cooldown: float = Field(0.35, description="Per-setting change cooldown")
    auto_switch_toggle_cooldown: float = Field(0.5, description="Auto-switch toggle cooldown")
    auto_profile_switch_cooldown: float = Field(2.5, description="Per-rule automatic switch cooldown")
    auto_switch_lock_timeout: float = Field(1.5, description="Toggle stays locked until confirmed or this elapses")
    relay_activation_timeout: float = Field(15.0, description="Relay start must confirm within this window")

    model_config = SettingsConfigDict(env_prefix="DOCK_")


class PrefsSettings(SectionSettings):
    enabled: bool = Field(True, description="Load and save rule/link preferences through the host")
    hydration_timeout: float = Field(1.5, description="Give up waiting for stored preferences after this")
    save_debounce: float = Field(0.3, description="Quiet period before a save is sent")

    model_config = SettingsConfigDict(env_prefix="PREFS_")


class APISettings(SectionSettings):
    host: str = Field("127.0.0.1", description="API server bind host")
    port: int = Field(8765, description="API server port")
    api_key: Optional[str] = Field(None, description="Bearer token for API auth (optional)")
    cors_origins: list[str] = Field(["*"], description="CORS allowed origins")
    log_level: str = Field("info", description="Log level")

    model_config = SettingsConfigDict(env_prefix="API_")


class Settings(BaseSettings):
    host: HostSettings = Field(default_factory=HostSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    dock: DockSettings = Field(default_factory=DockSettings)
    prefs: PrefsSettings = Field(default_factory=PrefsSettings)
    api: APISettings = Field(default_factory=APISettings)
    config_file: Path = Field(Path("config.yaml"), description="Path to YAML config file")

    model_config = SettingsConfigDict(env_prefix="AEGIS_")

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Load settings, merging YAML file if present."""
        path = config_path or Path(os.environ.get("AEGIS_CONFIG_FILE", "config.yaml"))
        yaml_data: dict = {}

        if path.exists():
            with open(path) as f:
                yaml_data = yaml.safe_load(f) or {}

        return cls(
            host=HostSettings(**yaml_data.get("host", {})),
            sync=SyncSettings(**yaml_data.get("sync", {})),
            dock=DockSettings(**yaml_data.get("dock", {})),
            prefs=PrefsSettings(**yaml_data.get("prefs", {})),
            api=APISettings(**yaml_data.get("api", {})),
            config_file=path,
        )

    def to_yaml(self, path: Path) -> None:
        """Save current settings to YAML."""
        data = {
            "host": self.host.model_dump(),
            "sync": self.sync.model_dump(),
            "dock": self.dock.model_dump(),
            "prefs": self.prefs.model_dump(),
            "api": self.api.model_dump(),
        }
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


# Singleton accessor: call get_settings() anywhere in the app
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def reload_settings(config_path: Optional[Path] = None) -> Settings:
    global _settings
    _settings = Settings.load(config_path)
    return _settings
