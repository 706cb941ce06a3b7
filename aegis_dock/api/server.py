"""
api/server.py — FastAPI REST API + WebSocket control bridge.

Exposes the dock controller to remote panels:
  - status summary, raw host state, capabilities, tracked actions
  - manual controls (scene switch, auto-switch toggle, relay, settings, mode)
  - auto scene rule editing and rule → scene links
  - /ws pushes the status summary on every change and accepts {cmd, params}
  - /healthz for uptime monitoring (503 when the host is not connected)
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from aegis_dock import __version__
from aegis_dock.config import get_settings

log = logging.getLogger(__name__)

_dock = None


def set_managers(dock) -> None:
    global _dock
    _dock = dock


# ──────────────────────────────────────────────────────────────────────────────
# WebSocket connection pool
# ──────────────────────────────────────────────────────────────────────────────

class WSConnectionPool:
    def __init__(self):
        self._connections: list[WebSocket] = []

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._connections.append(ws)
        log.info(f"WS client connected. Total: {len(self._connections)}")

    def disconnect(self, ws: WebSocket) -> None:
        if ws in self._connections:
            self._connections.remove(ws)
        log.info(f"WS client disconnected. Total: {len(self._connections)}")

    async def broadcast(self, message: dict) -> None:
        if not self._connections:
            return
        data = json.dumps(message, default=str)
        dead = []
        for ws in self._connections:
            try:
                await ws.send_text(data)
            except Exception:
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws)

    def count(self) -> int:
        return len(self._connections)


ws_pool = WSConnectionPool()


def _error(e: Exception) -> HTTPException:
    message = str(e)
    if "not found" in message:
        return HTTPException(status_code=404, detail=message)
    return HTTPException(status_code=422, detail=message)


class SettingBody(BaseModel):
    value: Optional[bool] = None


class ModeBody(BaseModel):
    mode: str


class RuleCreateBody(BaseModel):
    label: Optional[str] = None


class LinkBody(BaseModel):
    scene_id: Optional[str] = None


def _accepted(request_id: Optional[str]) -> dict:
    if request_id is None:
        return {"accepted": False, "reason": "cooldown"}
    return {"accepted": True, "requestId": request_id}


# ──────────────────────────────────────────────────────────────────────────────
# App factory
# ──────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    log.info(f"aegis-dock API starting on {settings.api.host}:{settings.api.port}")

    # Push the status summary to every WS client whenever the dock changes
    if _dock is not None:
        loop = asyncio.get_running_loop()

        def on_update():
            if ws_pool.count():
                loop.create_task(ws_pool.broadcast({"event": "status", "data": _dock.status()}))

        _dock.on_update(on_update)
        log.info("Dock status push registered")

    yield
    log.info("aegis-dock API shutting down.")


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="aegis-dock",
        description="Aegis dock control surface — scene switching, relay and rule control",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── REST auth dependency ──────────────────────────────────────────

    async def verify_api_key(authorization: Optional[str] = Header(None)):
        if settings.api.api_key:
            if not authorization or not authorization.startswith("Bearer "):
                raise HTTPException(status_code=401, detail="Missing Bearer token")
            token = authorization.removeprefix("Bearer ").strip()
            if token != settings.api.api_key:
                raise HTTPException(status_code=403, detail="Invalid API key")

    auth = Depends(verify_api_key)

    def dock():
        if _dock is None or not _dock.attached:
            raise HTTPException(status_code=503, detail="Dock not attached")
        return _dock

    # ─────────────────────────────────────────────────────────────────
    # Health
    # ─────────────────────────────────────────────────────────────────

    @app.get("/health", tags=["System"])
    async def health():
        d = dock()
        return {
            "status": "ok",
            "host_connected": d.sync.connected,
            "simulated": d.host.simulated,
            "hydrated": d.prefs.hydrated,
            "ws_clients": ws_pool.count(),
            "version": __version__,
        }

    @app.get("/healthz", tags=["System"])
    async def healthz():
        """Machine-readable health check. Returns 503 when the host is not connected."""
        if _dock is None or not _dock.sync.connected:
            raise HTTPException(
                status_code=503,
                detail={"status": "degraded", "reason": "Host not connected"},
            )
        return {"status": "ok"}

    # ─────────────────────────────────────────────────────────────────
    # State
    # ─────────────────────────────────────────────────────────────────

    @app.get("/status", tags=["State"], dependencies=[auth])
    async def status():
        return dock().status()

    @app.get("/state", tags=["State"], dependencies=[auth])
    async def state():
        snapshot = dock().state
        if snapshot is None:
            raise HTTPException(status_code=503, detail="No host state yet")
        return snapshot.model_dump(by_alias=True)

    @app.get("/capabilities", tags=["State"], dependencies=[auth])
    async def capabilities():
        return await dock().host.get_capabilities()

    @app.get("/actions/{request_id}", tags=["State"], dependencies=[auth])
    async def action(request_id: str):
        entry = dock().correlator.get(request_id)
        if entry is None:
            raise HTTPException(status_code=404, detail=f"Action '{request_id}' not tracked")
        return entry.to_dict()

    # ─────────────────────────────────────────────────────────────────
    # Controls
    # ─────────────────────────────────────────────────────────────────

    @app.post("/scenes/{scene_id}/switch", tags=["Controls"], dependencies=[auth])
    async def switch_scene(scene_id: str):
        try:
            return _accepted(await dock().switch_scene(scene_id))
        except ValueError as e:
            raise _error(e)

    @app.post("/autoswitch/toggle", tags=["Controls"], dependencies=[auth])
    async def toggle_auto_switch():
        return _accepted(await dock().toggle_auto_switch())

    @app.post("/relay/toggle", tags=["Controls"], dependencies=[auth])
    async def toggle_relay():
        d = dock()
        result = _accepted(await d.toggle_relay())
        result["activating"] = d.relay_activating
        return result

    @app.post("/settings/{key}", tags=["Controls"], dependencies=[auth])
    async def set_setting(key: str, body: SettingBody):
        return _accepted(await dock().set_setting(key, body.value))

    @app.post("/mode", tags=["Controls"], dependencies=[auth])
    async def set_mode(body: ModeBody):
        return _accepted(await dock().set_mode(body.mode))

    # ─────────────────────────────────────────────────────────────────
    # Rules & links
    # ─────────────────────────────────────────────────────────────────

    @app.get("/rules", tags=["Rules"], dependencies=[auth])
    async def list_rules():
        d = dock()
        return {"rules": d.rules.to_list(), "links": d.links.links, "linksByName": d.links.names}

    @app.post("/rules", tags=["Rules"], dependencies=[auth])
    async def add_rule(body: Optional[RuleCreateBody] = None):
        return dock().add_rule(body.label if body else None).to_dict()

    @app.patch("/rules/{rule_id}", tags=["Rules"], dependencies=[auth])
    async def update_rule(rule_id: str, patch: dict[str, Any]):
        try:
            return dock().update_rule(rule_id, patch).to_dict()
        except ValueError as e:
            raise _error(e)

    @app.delete("/rules/{rule_id}", tags=["Rules"], dependencies=[auth])
    async def remove_rule(rule_id: str):
        try:
            removed = dock().remove_rule(rule_id)
        except ValueError as e:
            raise _error(e)
        if not removed:
            raise HTTPException(status_code=409, detail="At least one rule must remain")
        return {"removed": rule_id}

    @app.put("/links/{rule_id}", tags=["Rules"], dependencies=[auth])
    async def link_rule(rule_id: str, body: LinkBody):
        d = dock()
        try:
            d.link_rule(rule_id, body.scene_id)
        except ValueError as e:
            raise _error(e)
        return {"ruleId": rule_id, "sceneId": d.links.scene_for(rule_id)}

    # ─────────────────────────────────────────────────────────────────
    # WebSocket
    # ─────────────────────────────────────────────────────────────────

    @app.websocket("/ws")
    async def websocket_endpoint(
        websocket: WebSocket,
        token: Optional[str] = Query(None),
    ):
        settings = get_settings()

        # Auth check: if API key is set, require it as ?token= query param
        if settings.api.api_key:
            if not token or token != settings.api.api_key:
                await websocket.close(code=4001, reason="Unauthorized")
                return

        await ws_pool.connect(websocket)
        # Send the current summary on connect
        try:
            await websocket.send_text(json.dumps({
                "event": "connected",
                "data": _dock.status() if _dock else {"attached": False},
            }, default=str))
        except Exception as e:
            log.debug(f"WS greeting failed: {e}")

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    msg = json.loads(raw)
                    response = await _handle_ws_command(msg)
                    await websocket.send_text(json.dumps(response, default=str))
                except json.JSONDecodeError:
                    await websocket.send_text(json.dumps({"error": "Invalid JSON"}))
                except Exception as e:
                    await websocket.send_text(json.dumps({"error": str(e)}))
        except WebSocketDisconnect:
            ws_pool.disconnect(websocket)

    async def _handle_ws_command(msg: dict) -> dict:
        cmd = msg.get("cmd", "")
        params = msg.get("params", {})

        if _dock is None or not _dock.attached:
            raise ValueError("Dock not attached")
        d = _dock

        match cmd:
            case "status":
                return d.status()
            case "switch_scene":
                return _accepted(await d.switch_scene(params["scene_id"]))
            case "toggle_auto_switch":
                return _accepted(await d.toggle_auto_switch())
            case "toggle_relay":
                return _accepted(await d.toggle_relay())
            case "set_setting":
                return _accepted(await d.set_setting(params["key"], params.get("value")))
            case "set_mode":
                return _accepted(await d.set_mode(params["mode"]))
            case "link_rule":
                d.link_rule(params["rule_id"], params.get("scene_id"))
                return {"ruleId": params["rule_id"], "sceneId": d.links.scene_for(params["rule_id"])}
            case "add_rule":
                return d.add_rule(params.get("label")).to_dict()
            case "update_rule":
                return d.update_rule(params["rule_id"], params.get("patch", {})).to_dict()
            case "remove_rule":
                return {"removed": d.remove_rule(params["rule_id"])}
            case "action":
                entry = d.correlator.get(params["request_id"])
                return entry.to_dict() if entry else {"error": "Action not tracked"}
            case _:
                return {"error": f"Unknown command: {cmd}"}

    return app
