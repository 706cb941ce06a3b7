"""
core/obs_host.py - Real host adapter over obs-websocket 5.x vendor requests.

The native dock plugin registers an obs-websocket vendor (default
"aegis-dock"). This adapter reaches it with:

  - CallVendorRequest get_state         -> pull()
  - CallVendorRequest dock_action       -> push()
  - CallVendorRequest get_capabilities  -> get_capabilities()
  - VendorEvent from the vendor         -> inbound notifications
  - CurrentProgramSceneChanged          -> current-scene notification
  - BroadcastCustomEvent                -> best-effort secondary forwarding of
                                           every command as JSON text

obs-websocket-py is synchronous and delivers events on its own thread; calls
run in the default executor and events are marshalled back onto the loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from obswebsocket import events as obs_events
from obswebsocket import obsws
from obswebsocket import requests as obs_requests

from .host import COMMAND_TYPES, CommandAck, HostAdapter, HostUnavailableError
from .inbound import InboundNormalizer
from .state import HostState

log = logging.getLogger(__name__)

FORWARD_EVENT_KEY = "aegisDockActionJson"


class ObsVendorHost(HostAdapter):
    def __init__(
        self,
        host: str = "localhost",
        port: int = 4455,
        password: str = "",
        vendor_name: str = "aegis-dock",
        reconnect_interval: float = 5.0,
        max_reconnect_attempts: int = 0,
    ):
        super().__init__()
        self.host = host
        self.port = port
        self.password = password
        self.vendor_name = vendor_name
        self.reconnect_interval = reconnect_interval
        self.max_reconnect_attempts = max_reconnect_attempts

        self._ws: Optional[Any] = None
        self._connected = False
        self._reconnecting = False
        self._reconnect_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.inbound = InboundNormalizer(self.emit)

    # ── Connection ────────────────────────────────────────────────────

    async def connect(self) -> bool:
        self._loop = asyncio.get_running_loop()
        try:
            self._ws = obsws(self.host, self.port, self.password)
            self._ws.register(self._on_exit, obs_events.ExitStarted)
            self._ws.register(self._on_vendor_event, obs_events.VendorEvent)
            self._ws.register(self._on_scene_changed, obs_events.CurrentProgramSceneChanged)
            await self._loop.run_in_executor(None, self._ws.connect)
            self._connected = True
            log.info(f"Connected to host at {self.host}:{self.port} (vendor '{self.vendor_name}')")
            self.inbound.ready()
            return True
        except Exception as e:
            log.warning(f"Host connection failed: {e}")
            self._connected = False
            return False

    async def disconnect(self) -> None:
        if self._reconnect_task:
            self._reconnect_task.cancel()
        if self._ws and self._connected:
            try:
                self._ws.disconnect()
            except Exception as e:
                log.debug(f"Host disconnect error: {e}")
        self._connected = False

    def is_available(self) -> bool:
        return self._connected

    async def start_reconnect_loop(self) -> None:
        if self._reconnecting:
            return
        self._reconnecting = True
        attempts = 0
        try:
            while True:
                if self.max_reconnect_attempts and attempts >= self.max_reconnect_attempts:
                    log.error("Max host reconnect attempts reached.")
                    break
                log.info(f"Host reconnect attempt {attempts + 1}...")
                if await self.connect():
                    break
                attempts += 1
                await asyncio.sleep(self.reconnect_interval)
        finally:
            self._reconnecting = False

    # ── OBS event handlers (obs-websocket thread) ─────────────────────

    def _threadsafe(self, fn, *args) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(fn, *args)

    def _on_exit(self, _event: Any = None) -> None:
        self._threadsafe(self._handle_exit)

    def _handle_exit(self) -> None:
        if not self._connected:
            return
        self._connected = False
        log.warning("Host exiting. Scheduling reconnect...")
        self.inbound.receive_pipe_status("down", "host_exited")
        self._reconnect_task = asyncio.ensure_future(self.start_reconnect_loop())

    def _on_scene_changed(self, event: Any) -> None:
        scene_name = event.datain.get("sceneName", "")
        self._threadsafe(self.inbound.receive_current_scene, scene_name)

    def _on_vendor_event(self, event: Any) -> None:
        data = event.datain or {}
        if data.get("vendorName") != self.vendor_name:
            return
        self._threadsafe(self.dispatch_vendor_event, data.get("eventType", ""), data.get("eventData") or {})

    def dispatch_vendor_event(self, event_type: str, data: dict) -> bool:
        """Route one vendor event to the matching inbound notification."""
        inbound = self.inbound
        match event_type:
            case "ready":
                return inbound.ready()
            case "fallback":
                return inbound.fallback(data.get("reason", ""))
            case "ipc_envelope":
                return inbound.receive_ipc_envelope(data.get("envelope"))
            case "ipc_envelope_json":
                return inbound.receive_ipc_envelope_json(data.get("json"))
            case "scene_snapshot":
                return inbound.receive_scene_snapshot(data.get("payload"))
            case "scene_snapshot_json":
                return inbound.receive_scene_snapshot_json(data.get("json"))
            case "current_scene":
                return inbound.receive_current_scene(data.get("sceneName"))
            case "pipe_status":
                return inbound.receive_pipe_status(data.get("status"), data.get("reason"))
            case "scene_switch_completed":
                return inbound.receive_scene_switch_completed(data.get("result"))
            case "scene_switch_completed_json":
                return inbound.receive_scene_switch_completed_json(data.get("json"))
            case "action_result":
                return inbound.receive_action_result(data.get("result", data))
            case "action_result_json":
                return inbound.receive_action_result_json(data.get("json"))
            case _:
                log.debug(f"Unhandled vendor event: {event_type}")
                return False

    # ── Core request helper ───────────────────────────────────────────

    def _call(self, request: Any) -> Any:
        if not self._connected or not self._ws:
            raise HostUnavailableError("Not connected to host")
        return self._ws.call(request)

    async def call_async(self, request: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._call, request)

    async def call_vendor(self, request_type: str, data: Optional[dict] = None) -> Optional[dict]:
        result = await self.call_async(obs_requests.CallVendorRequest(
            vendorName=self.vendor_name,
            requestType=request_type,
            requestData=data or {},
        ))
        if not getattr(result, "status", True):
            log.warning(f"Vendor request '{request_type}' failed")
            return None
        return (result.datain or {}).get("responseData")

    # ── Adapter contract ──────────────────────────────────────────────

    async def pull(self) -> Optional[HostState]:
        if not self._connected:
            return None
        try:
            raw = await self.call_vendor("get_state")
        except Exception as e:
            log.warning(f"State pull failed: {e}")
            return None
        if raw is None:
            return None
        return self.parse_state(raw)

    async def push(self, command: dict) -> Optional[CommandAck]:
        if not self._connected:
            return None
        self.stamp(command)
        if command.get("type") not in COMMAND_TYPES:
            self.inbound.action_unsupported(command)
            return CommandAck(ok=False, request_id=command["requestId"], error="unsupported_action_type")
        try:
            raw = await self.call_vendor("dock_action", {"action": command})
        except Exception as e:
            log.warning(f"Command '{command.get('type')}' not delivered: {e}")
            return None
        await self._forward_json(command)
        if raw is None:
            self.inbound.action_unsupported(command)
            return CommandAck(ok=False, request_id=command["requestId"], error="unsupported_action_type")
        return CommandAck.from_raw(raw, command["requestId"])

    async def _forward_json(self, command: dict) -> bool:
        text = self.encode_command(command)
        if not text:
            return False
        try:
            await self.call_async(obs_requests.BroadcastCustomEvent(eventData={FORWARD_EVENT_KEY: text}))
            return True
        except Exception as e:
            log.debug(f"Secondary command forwarding failed: {e}")
            return False

    async def get_capabilities(self) -> dict[str, bool]:
        if self._connected:
            try:
                caps = await self.call_vendor("get_capabilities")
                if isinstance(caps, dict):
                    return {str(k): bool(v) for k, v in caps.items()}
            except Exception as e:
                log.debug(f"Capability query failed: {e}")
        return await super().get_capabilities()
