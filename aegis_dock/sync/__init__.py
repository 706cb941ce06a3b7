"""sync — Keeping host state fresh and commands correlated."""
from .correlator import ActionCorrelator, InFlightAction
from .gate import ActionGate
from .synchronizer import StateSynchronizer

__all__ = ["ActionCorrelator", "ActionGate", "InFlightAction", "StateSynchronizer"]
