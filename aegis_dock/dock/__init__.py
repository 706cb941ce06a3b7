"""dock — Controller and derived telemetry."""
from .controller import DockController
from .telemetry import RollingMaxTracker, derived_mode, map_relay_status, output_health

__all__ = ["DockController", "RollingMaxTracker", "derived_mode", "map_relay_status", "output_health"]
