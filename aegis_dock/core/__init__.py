"""core — Host adapters, state model and timers."""
from .host import ActionResult, CommandAck, HostAdapter, HostEvent, HostEventKind, HostUnavailableError, gen_request_id
from .state import HostState, resolve_arming
from .timers import LoopScheduler, Scheduler, TimerScope
from .obs_host import ObsVendorHost
from .simulator import SimulatedHost
from .connection_manager import get_host, init_host

__all__ = [
    "ActionResult",
    "CommandAck",
    "HostAdapter",
    "HostEvent",
    "HostEventKind",
    "HostState",
    "HostUnavailableError",
    "LoopScheduler",
    "ObsVendorHost",
    "Scheduler",
    "SimulatedHost",
    "TimerScope",
    "gen_request_id",
    "get_host",
    "init_host",
    "resolve_arming",
]
