"""
dock/telemetry.py — Derived telemetry: per-output health and display mappings.
"""

from __future__ import annotations

from typing import Iterable, Optional

from aegis_dock.core.state import HostState, OutputItem

DECAY = 0.998

# (minimum fraction of the rolling max, grade)
HEALTH_GRADES = [
    (0.9, "healthy"),
    (0.7, "good"),
    (0.5, "warning"),
    (0.3, "degraded"),
]


class RollingMaxTracker:
    """
    Per-output peak bitrate that slowly decays, so a sustained drop eventually
    stops looking like a drop. Owned by the controller; reset() on detach.
    """

    def __init__(self, decay: float = DECAY):
        self.decay = decay
        self._max: dict[str, float] = {}

    def update(self, items: Iterable[OutputItem]) -> float:
        """Fold one sample of every output in; returns the section-wide max."""
        section_max = 0.0
        for item in items:
            key = item.key
            if not key:
                continue
            if item.kbps > 0:
                prev = self._max.get(key, 0.0)
                self._max[key] = max(prev * self.decay if prev > 0 else 0.0, item.kbps)
            section_max = max(section_max, self._max.get(key, 0.0))
        return section_max

    def get(self, key: str) -> float:
        return self._max.get(key, 0.0)

    def reset(self) -> None:
        self._max.clear()

    def __len__(self) -> int:
        return len(self._max)


def output_health(current_kbps: float, max_observed_kbps: float) -> str:
    if not max_observed_kbps or max_observed_kbps <= 0 or not current_kbps:
        return "critical"
    pct = current_kbps / max_observed_kbps
    for floor, grade in HEALTH_GRADES:
        if pct >= floor:
            return grade
    return "critical"


def map_relay_status(status: Optional[str]) -> str:
    raw = (status or "").lower()
    if raw == "provisioning":
        return "connecting"
    return raw or "inactive"


def derived_mode(state: Optional[HostState]) -> str:
    if state is None:
        return "studio"
    return "irl" if state.relay.is_active and state.connections.items else "studio"
