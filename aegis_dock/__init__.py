"""
aegis-dock — Client-side control surface for the Aegis relay/failover dock.

Modules:
  core/   — Host adapters (obs-websocket vendor, simulator), state model, timers
  sync/   — State synchronizer, action correlator, action gate
  scenes/ — Auto scene rules, rule→scene links, auto-switch decisions
  prefs/  — Rule/link persistence through the host
  dock/   — Controller wiring it all together, output telemetry
  api/    — FastAPI REST + WebSocket control API
  config/ — Settings, env loading, YAML config
"""

__version__ = "0.3.0"
__author__ = "aegis"
