"""
core/connection_manager.py — Global host adapter singleton for dependency injection.
"""

from __future__ import annotations

from typing import Optional

from .host import HostAdapter
from .obs_host import ObsVendorHost
from .simulator import SimulatedHost
from .timers import Scheduler

_host: Optional[HostAdapter] = None


def init_host(
    kind: str,
    scheduler: Scheduler,
    host: str = "localhost",
    port: int = 4455,
    password: str = "",
    vendor_name: str = "aegis-dock",
    reconnect_interval: float = 5.0,
    max_reconnect_attempts: int = 0,
    seed: Optional[int] = None,
) -> HostAdapter:
    global _host
    if kind == "simulator":
        _host = SimulatedHost(scheduler, seed=seed)
    else:
        _host = ObsVendorHost(
            host=host,
            port=port,
            password=password,
            vendor_name=vendor_name,
            reconnect_interval=reconnect_interval,
            max_reconnect_attempts=max_reconnect_attempts,
        )
    return _host


def get_host() -> HostAdapter:
    if _host is None:
        raise RuntimeError("Host adapter not initialized. Call init_host() first.")
    return _host
