"""
prefs/bridge.py — Load and save rules/links through the host.

Lifecycle:
    attach()  -> hydrating; send load_scene_prefs (dockprefs_load_<ms>)
    result    -> matching completed result replaces rules/links, hydrated
    timeout   -> after hydration_timeout the in-memory values stand, hydrated
    change    -> once hydrated, every rule/link change (re)arms a debounced
                 save_scene_prefs (dockprefs_save_<ms>)
    detach()  -> every pending timer cancelled

No save is ever sent while hydrating. Edits made during hydration are
saved once it ends, unless the stored preferences replaced them.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Optional

from aegis_dock.config.settings import PrefsSettings
from aegis_dock.core.host import ActionResult, HostEvent, HostEventKind
from aegis_dock.core.timers import Scheduler, TimerHandle, TimerScope
from aegis_dock.scenes.links import SceneIntentLinkStore
from aegis_dock.scenes.rules import AutoSceneRuleSet

from .payload import PrefsPayload, PrefsPayloadError

log = logging.getLogger(__name__)

Send = Callable[[dict], Awaitable[Any]]


class PreferenceBridge:
    def __init__(
        self,
        send: Send,
        rules: AutoSceneRuleSet,
        links: SceneIntentLinkStore,
        scheduler: Scheduler,
        settings: Optional[PrefsSettings] = None,
    ):
        self._send = send
        self._rules = rules
        self._links = links
        self._scheduler = scheduler
        self.settings = settings or PrefsSettings()

        self._scope: Optional[TimerScope] = None
        self._save_timer: Optional[TimerHandle] = None
        self._load_request_id: Optional[str] = None
        self._alive = False
        self._dirty = False
        self.hydrated = False
        self.save_count = 0

        rules.on_change(self._on_change)
        links.on_change(self._on_change)

    # ── Lifecycle ─────────────────────────────────────────────────────

    @property
    def attached(self) -> bool:
        return self._alive

    def attach(self) -> None:
        if self._alive:
            return
        self._alive = True
        self._scope = self._scheduler.scope()
        if not self.settings.enabled:
            self.hydrated = True
            return
        self.hydrated = False
        self._dirty = False
        self._load_request_id = f"dockprefs_load_{int(time.time() * 1000)}"
        request_id = self._load_request_id
        self._scope.call_soon(lambda: self._send({"type": "load_scene_prefs", "requestId": request_id}))
        self._scope.call_later(self.settings.hydration_timeout, self._hydration_timed_out)
        log.debug(f"Hydrating preferences ({request_id})")

    def detach(self) -> None:
        self._alive = False
        if self._scope:
            self._scope.close()
        self._save_timer = None

    # ── Hydration ─────────────────────────────────────────────────────

    def on_event(self, event: HostEvent) -> None:
        if event.kind is not HostEventKind.ACTION_RESULT:
            return
        result = ActionResult.from_payload(event.payload)
        if result is not None:
            self.handle_result(result)

    def handle_result(self, result: ActionResult) -> bool:
        """Consume the load result. Returns True if it was ours."""
        if not self._alive or self.hydrated:
            return False
        if result.action_type != "load_scene_prefs" or result.request_id != self._load_request_id:
            return False
        if result.status != "completed" or not result.ok:
            log.warning(f"Preference load {result.status or 'failed'}: {result.error}")
            self._finish_hydration()
            return True
        try:
            payload = PrefsPayload.from_json(result.detail)
        except PrefsPayloadError as e:
            log.warning(f"{e}; keeping current rules and links. Raw: {str(e.raw)[:200]!r}")
            self._finish_hydration()
            return True

        if self.apply(payload):
            self._dirty = False
            log.info("Preferences loaded from host")
        else:
            log.info("No stored preferences on host")
        self._finish_hydration()
        return True

    def apply(self, payload: PrefsPayload) -> bool:
        """Replace rules and/or links with the stored ones. False if nothing was stored."""
        applied = False
        if payload.links is not None or payload.names is not None:
            self._links.replace(
                payload.links if payload.links is not None else self._links.links,
                payload.names if payload.names is not None else self._links.names,
            )
            applied = True
        if payload.rules is not None:
            self._rules.replace(payload.rules)
            applied = True
        return applied

    def _hydration_timed_out(self) -> None:
        if not self.hydrated:
            log.info("Preference load timed out; using in-memory rules and links")
            self._finish_hydration()

    def _finish_hydration(self) -> None:
        self.hydrated = True
        if self._dirty:
            self._dirty = False
            self.schedule_save()

    # ── Saving ────────────────────────────────────────────────────────

    def _on_change(self) -> None:
        if not self._alive or not self.settings.enabled:
            return
        if not self.hydrated:
            self._dirty = True
            return
        self.schedule_save()

    def schedule_save(self) -> None:
        if self._save_timer:
            self._save_timer.cancel()
        self._save_timer = self._scope.call_later(self.settings.save_debounce, self._save)

    def payload(self) -> PrefsPayload:
        return PrefsPayload(links=self._links.links, names=self._links.names, rules=self._rules.rules)

    async def _save(self) -> None:
        self._save_timer = None
        if not self._alive or not self.hydrated:
            return
        self.save_count += 1
        await self._send({
            "type": "save_scene_prefs",
            "requestId": f"dockprefs_save_{int(time.time() * 1000)}",
            "prefsJson": self.payload().to_json(),
        })
