"""
tests/ — Core coverage: host contract, state model, timers, sync, correlation.
Run with: pytest tests/ -v
"""

import pytest

from tests.conftest import ManualScheduler, ScriptedHost, make_raw_state


# ─── State model & setting precedence ─────────────────────────────────────────

from aegis_dock.core.host import HostAdapter
from aegis_dock.core.state import HostState, infer_intent_from_name, resolve_arming


def test_host_state_parse():
    raw = make_raw_state(kbps=4200)
    raw["scenes"]["items"][0]["intent"] = "live"
    raw["unknownSection"] = {"x": 1}
    state = HostState.from_raw(raw)
    assert state.scenes.items[0].intent == "LIVE"
    assert state.scenes.items[1].intent is None
    assert state.scenes.active_scene_id == "s_live"
    assert state.bitrate.relay_bonded_kbps == 4200
    assert state.auto_switch_bitrate_kbps == 4200
    assert state.setting("auto_scene_switch") is True
    assert state.setting("missing") is None


def test_setting_value_is_tri_state():
    state = HostState.from_raw({"settings": {"items": [
        {"key": "a", "value": True},
        {"key": "b", "value": False},
        {"key": "c", "value": "yes"},
        {"key": "d"},
    ]}})
    assert [state.setting(k) for k in "abcd"] == [True, False, None, None]


def test_relay_enabled_is_legacy_alias():
    assert HostState.from_raw({"relay": {"enabled": True}}).relay.is_active is True
    assert HostState.from_raw({"relay": {"active": False, "enabled": True}}).relay.is_active is False
    assert HostState.from_raw({}).relay.is_active is False


def test_bitrate_source_follows_relay():
    raw = make_raw_state(relay_active=False)
    raw["bitrate"] = {"bondedKbps": 900, "relayBondedKbps": 3000}
    assert HostState.from_raw(raw).auto_switch_bitrate_kbps == 900
    raw["relay"]["active"] = True
    assert HostState.from_raw(raw).auto_switch_bitrate_kbps == 3000


def test_malformed_state_is_rejected():
    assert HostAdapter.parse_state({"scenes": {"items": 5}}) is None
    assert HostAdapter.parse_state("not a dict") is None


def test_infer_intent_from_name():
    assert infer_intent_from_name("Live - Main") == "LIVE"
    assert infer_intent_from_name("BRB screen") == "BRB"
    assert infer_intent_from_name("Low Bitrate") == "HOLD"
    assert infer_intent_from_name("Starting Soon") == "OFFLINE"
    assert infer_intent_from_name(None) == "OFFLINE"


def test_arming_auto_switch_only():
    arming = resolve_arming(HostState.from_raw(make_raw_state(auto=True)))
    assert arming.armed is True
    assert arming.authority == "auto_scene_switch"
    assert arming.disarm_command() == {"type": "set_setting", "key": "auto_scene_switch", "value": False}


def test_arming_manual_override_wins():
    arming = resolve_arming(HostState.from_raw(make_raw_state(auto=True, manual=True)))
    assert arming.armed is False
    assert arming.authority == "manual_override"
    assert arming.toggle_command(True) == {"type": "set_setting", "key": "manual_override", "value": False}

    arming = resolve_arming(HostState.from_raw(make_raw_state(auto=True, manual=False)))
    assert arming.armed is True
    assert arming.disarm_command() == {"type": "set_setting", "key": "manual_override", "value": True}


def test_arming_explicit_flags_take_precedence():
    raw = make_raw_state(auto=False, manual=None)
    raw["scenes"]["autoSwitchEnabled"] = True
    assert resolve_arming(HostState.from_raw(raw)).auto_switch_enabled is True

    raw["scenes"]["autoSwitchArmed"] = False
    assert resolve_arming(HostState.from_raw(raw)).armed is False


def test_arming_unknown():
    assert resolve_arming(None).armed is False
    arming = resolve_arming(HostState.from_raw(make_raw_state(auto=None, manual=False)))
    assert arming.auto_switch_enabled is None
    assert arming.armed is False


# ─── Request ids ──────────────────────────────────────────────────────────────

from aegis_dock.core.host import gen_request_id


def test_request_ids_are_unique():
    a, b = gen_request_id(), gen_request_id()
    assert a != b
    assert a.startswith("dock_")
    assert len(a.split("_")) == 3


# ─── Timers ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_timer_scope_close_cancels_everything(scheduler):
    fired = []
    scope = scheduler.scope()
    scope.call_later(1.0, lambda: fired.append("later"))
    scope.call_every(0.5, lambda: fired.append("every"))
    await scheduler.advance(0.5)
    assert fired == ["every"]

    scope.close()
    await scheduler.advance(5.0)
    assert fired == ["every"]
    assert scheduler.pending() == 0


@pytest.mark.asyncio
async def test_timer_scope_runs_coroutines(scheduler):
    fired = []

    async def work():
        fired.append(scheduler.now())

    scheduler.scope().call_later(0.3, work)
    await scheduler.advance(1.0)
    assert fired == [0.3]


import asyncio

from aegis_dock.core.timers import LoopScheduler


@pytest.mark.asyncio
async def test_loop_scheduler_repeats_and_stops_on_close():
    scheduler = LoopScheduler()
    scope = scheduler.scope()
    ticks, ran = [], []

    async def work():
        await asyncio.sleep(0)
        ran.append(scheduler.now())

    scope.call_every(0.01, lambda: ticks.append(1))
    scope.call_later(0.01, work)
    await asyncio.sleep(0.1)
    assert len(ticks) >= 3
    assert len(ran) == 1
    assert scope.pending() == 1

    scope.close()
    seen = len(ticks)
    await asyncio.sleep(0.05)
    assert len(ticks) == seen
    assert scope.pending() == 0


@pytest.mark.asyncio
async def test_loop_scheduler_close_cancels_running_coroutine():
    scope = LoopScheduler().scope()
    events = []

    async def long_job():
        try:
            await asyncio.sleep(0.2)
            events.append("finished")
        except asyncio.CancelledError:
            events.append("cancelled")
            raise

    scope.call_soon(long_job)
    await asyncio.sleep(0.02)
    assert scope.pending() == 1
    scope.close()
    await asyncio.sleep(0.3)
    assert events == ["cancelled"]


@pytest.mark.asyncio
async def test_loop_scheduler_survives_callback_errors():
    scope = LoopScheduler().scope()
    ticks = []

    def flaky():
        ticks.append(1)
        if len(ticks) == 1:
            raise RuntimeError("boom")

    scope.call_every(0.01, flaky)
    await asyncio.sleep(0.06)
    scope.close()
    assert len(ticks) >= 2


# ─── UI Action Gate ───────────────────────────────────────────────────────────

from aegis_dock.sync.gate import ActionGate


def test_gate_cooldown():
    now = [10.0]
    gate = ActionGate(clock=lambda: now[0])
    assert gate.try_enter("k", 0.5) is True
    now[0] = 10.2
    assert gate.try_enter("k", 0.5) is False
    now[0] = 10.499
    assert gate.try_enter("k", 0.5) is False
    now[0] = 10.5
    assert gate.try_enter("k", 0.5) is True


def test_gate_refusal_does_not_extend_deadline():
    now = [0.0]
    gate = ActionGate(clock=lambda: now[0])
    gate.try_enter("k", 1.0)
    now[0] = 0.9
    gate.try_enter("k", 1.0)
    now[0] = 1.0
    assert gate.try_enter("k", 1.0) is True


def test_gate_keys_are_independent():
    gate = ActionGate(clock=lambda: 0.0)
    assert gate.try_enter("switch_scene:a", 0.5)
    assert gate.try_enter("switch_scene:b", 0.5)
    assert not gate.try_enter("switch_scene:a", 0.5)
    gate.reset()
    assert len(gate) == 0


# ─── Action Correlator ────────────────────────────────────────────────────────

from aegis_dock.core.host import ActionResult, CommandAck
from aegis_dock.sync.correlator import ActionCorrelator


@pytest.mark.asyncio
async def test_correlator_lifecycle(scheduler, host):
    corr = ActionCorrelator(host, scheduler, grace=3.0)
    command = {"type": "switch_scene", "sceneId": "s_brb"}
    await corr.send(command)
    request_id = command["requestId"]
    assert host.pushed[0]["requestId"] == request_id
    assert corr.get(request_id).status == "optimistic"

    assert corr.on_result(ActionResult(request_id=request_id, status="completed", ok=True))
    assert corr.get(request_id).status == "completed"
    assert corr.get(request_id).ok is True

    await scheduler.advance(2.999)
    assert request_id in corr
    await scheduler.advance(0.002)
    assert request_id not in corr


@pytest.mark.asyncio
async def test_correlator_keeps_given_request_id(scheduler, host):
    corr = ActionCorrelator(host, scheduler)
    await corr.send({"type": "request_status", "requestId": "mine"})
    assert "mine" in corr


@pytest.mark.asyncio
async def test_correlator_ignores_unknown_results(scheduler, host):
    corr = ActionCorrelator(host, scheduler)
    assert corr.on_result(ActionResult(request_id="nobody", status="completed")) is False
    assert len(corr) == 0


@pytest.mark.asyncio
async def test_correlator_non_terminal_update_stays(scheduler, host):
    corr = ActionCorrelator(host, scheduler)
    await corr.send({"type": "relay_start", "requestId": "r1"})
    corr.on_result(ActionResult(request_id="r1", status="accepted"))
    await scheduler.advance(10)
    assert corr.get("r1").status == "accepted"
    assert [a.request_id for a in corr.in_flight()] == ["r1"]


@pytest.mark.asyncio
async def test_correlator_single_deletion(scheduler, host):
    corr = ActionCorrelator(host, scheduler)
    await corr.send({"type": "set_mode", "mode": "irl", "requestId": "r1"})
    corr.on_result(ActionResult(request_id="r1", status="completed", ok=True))
    await scheduler.advance(1.0)
    corr.on_result(ActionResult(request_id="r1", status="failed", ok=False, error="late"))
    await scheduler.advance(2.001)
    assert "r1" not in corr
    assert scheduler.pending() == 0


@pytest.mark.asyncio
async def test_correlator_reused_request_id_gets_its_own_expiry(scheduler, host):
    corr = ActionCorrelator(host, scheduler)
    await corr.send({"type": "set_mode", "mode": "irl", "requestId": "r1"})
    corr.on_result(ActionResult(request_id="r1", status="completed", ok=True))
    await scheduler.advance(2.0)

    await corr.send({"type": "set_mode", "mode": "studio", "requestId": "r1"})
    assert corr.get("r1").status == "optimistic"
    await scheduler.advance(1.5)
    assert corr.get("r1").status == "optimistic"

    corr.on_result(ActionResult(request_id="r1", status="completed", ok=True))
    await scheduler.advance(3.001)
    assert "r1" not in corr
    assert scheduler.pending() == 0


@pytest.mark.asyncio
async def test_correlator_unreachable_host(scheduler, host):
    host.unreachable = True
    corr = ActionCorrelator(host, scheduler)
    ack = await corr.send({"type": "relay_stop", "requestId": "r1"})
    assert ack is None
    assert corr.get("r1").status == "failed"
    assert corr.get("r1").error == "host_unavailable"
    await scheduler.advance(3.001)
    assert "r1" not in corr


@pytest.mark.asyncio
async def test_correlator_immediate_rejection(scheduler, host):
    host.ack = CommandAck(ok=False, error="unsupported_action_type")
    corr = ActionCorrelator(host, scheduler)
    await corr.send({"type": "bogus", "requestId": "r1"})
    assert corr.get("r1").status == "rejected"
    assert corr.get("r1").error == "unsupported_action_type"


# ─── State Synchronizer ───────────────────────────────────────────────────────

from aegis_dock.config import SyncSettings
from aegis_dock.core.host import HostEvent, HostEventKind
from aegis_dock.sync.synchronizer import StateSynchronizer


@pytest.mark.asyncio
async def test_sync_attach_sequence(scheduler, host):
    sync = StateSynchronizer(host, scheduler, SyncSettings())
    sync.attach()
    await scheduler.advance(0)
    assert host.pulls == 1
    assert sync.state is not None

    await scheduler.advance(0.15)
    assert host.pulls == 2          # early refresh

    await scheduler.advance(0.25)   # t=0.4: one fast tick, then request_status
    assert host.pulls == 3
    assert host.pushed_types() == ["request_status"]


@pytest.mark.asyncio
async def test_sync_settles_into_slow_cadence(scheduler, host):
    sync = StateSynchronizer(host, scheduler, SyncSettings())
    sync.attach()
    await scheduler.advance(10.0)
    before = host.pulls
    await scheduler.advance(4.0)
    assert host.pulls - before == 2


@pytest.mark.asyncio
async def test_sync_probes_until_available(scheduler):
    host = ScriptedHost(available=False)
    sync = StateSynchronizer(host, scheduler, SyncSettings())
    sync.attach()
    await scheduler.advance(0.6)
    assert not sync.connected
    assert host.pulls == 0

    host.available = True
    await scheduler.advance(0.25)
    assert sync.connected
    assert host.pulls == 1


@pytest.mark.asyncio
async def test_sync_unchanged_pulls_are_invisible(scheduler, host):
    seen = []
    sync = StateSynchronizer(host, scheduler, SyncSettings())
    sync.on_state(seen.append)
    sync.attach()
    await scheduler.advance(3.0)
    assert host.pulls > 5
    assert len(seen) == 1

    host.raw = make_raw_state(kbps=800)
    await scheduler.advance(0.25)
    assert len(seen) == 2
    assert seen[-1].bitrate.bonded_kbps == 800


@pytest.mark.asyncio
async def test_sync_keeps_last_state_when_host_drops(scheduler, host):
    sync = StateSynchronizer(host, scheduler, SyncSettings())
    sync.attach()
    await scheduler.advance(0)
    state = sync.state
    host.available = False
    await scheduler.advance(4.0)
    assert sync.state is state


@pytest.mark.asyncio
async def test_sync_pulls_on_notification(scheduler, host):
    events = []
    sync = StateSynchronizer(host, scheduler, SyncSettings())
    sync.on_event(events.append)
    sync.attach()
    await scheduler.advance(6.5)
    before = host.pulls

    host.emit(HostEvent(kind=HostEventKind.CURRENT_SCENE, payload={"sceneName": "BRB"}))
    await scheduler.advance(0)
    assert host.pulls == before + 1

    host.emit(HostEvent(kind=HostEventKind.ERROR, ok=False, payload={"message": "x"}))
    await scheduler.advance(0)
    assert host.pulls == before + 1
    assert [e.kind for e in events] == [HostEventKind.CURRENT_SCENE, HostEventKind.ERROR]


@pytest.mark.asyncio
async def test_sync_detach_leaves_nothing_behind(scheduler, host):
    sync = StateSynchronizer(host, scheduler, SyncSettings())
    sync.attach()
    await scheduler.advance(1.0)
    sync.detach()
    assert scheduler.pending() == 0

    before = host.pulls
    host.emit(HostEvent(kind=HostEventKind.READY))
    await scheduler.advance(10.0)
    assert host.pulls == before


# ─── Inbound notifications ────────────────────────────────────────────────────

from aegis_dock.core.inbound import InboundNormalizer


def test_inbound_malformed_json_is_rejected():
    events = []
    inbound = InboundNormalizer(events.append)
    assert inbound.receive_scene_snapshot_json("{not json") is False
    assert len(events) == 1
    assert events[0].kind is HostEventKind.ERROR
    assert events[0].payload["jsonText"] == "{not json"

    assert inbound.receive_action_result_json("[1, 2]") is False
    assert events[-1].kind is HostEventKind.ERROR


def test_inbound_accepts_both_variants():
    events = []
    inbound = InboundNormalizer(events.append)
    assert inbound.receive_scene_switch_completed({"requestId": "r1", "ok": True})
    assert inbound.receive_scene_switch_completed_json('{"requestId": "r2", "ok": true}')
    assert [e.payload["result"]["requestId"] for e in events] == ["r1", "r2"]
    assert all(e.ok for e in events)


def test_inbound_pipe_status_and_acceptance_hook():
    events = []
    inbound = InboundNormalizer(events.append, accept=lambda kind, payload: payload["status"] == "ok")
    assert inbound.receive_pipe_status("ok") is True
    assert inbound.receive_pipe_status("down", "host_exited") is False
    assert events[-1].payload == {"status": "down", "reason": "host_exited"}
    assert events[-1].ok is False


# ─── Simulated host ───────────────────────────────────────────────────────────

from aegis_dock.core.simulator import SimulatedHost


@pytest.mark.asyncio
async def test_simulator_pull_is_idempotent(scheduler):
    sim = SimulatedHost(scheduler, seed=7)
    assert await sim.pull() == await sim.pull()


@pytest.mark.asyncio
async def test_simulator_switch_flow(scheduler):
    sim = SimulatedHost(scheduler, seed=1)
    events = []
    sim.subscribe(events.append)

    ack = await sim.push({"type": "switch_scene", "sceneId": "scene_3"})
    assert ack.ok
    state = await sim.pull()
    assert state.scenes.pending_scene_id == "scene_3"

    await scheduler.advance(0.4)
    state = await sim.pull()
    assert state.scenes.active_scene_id == "scene_3"
    assert state.scenes.pending_scene_id is None

    result = next(e for e in events if e.kind is HostEventKind.ACTION_RESULT).payload
    assert result["requestId"] == ack.request_id
    assert result["status"] == "completed"


@pytest.mark.asyncio
async def test_simulator_unknown_scene_and_command(scheduler):
    sim = SimulatedHost(scheduler)
    events = []
    sim.subscribe(events.append)

    ack = await sim.push({"type": "switch_scene", "sceneId": "nope"})
    assert ack.ok is False and ack.error == "scene_not_found"

    ack = await sim.push({"type": "reboot"})
    assert ack.ok is False and ack.error == "unsupported_action_type"
    assert events[-1].kind is HostEventKind.ACTION_UNSUPPORTED


@pytest.mark.asyncio
async def test_simulator_keeps_prefs(scheduler):
    sim = SimulatedHost(scheduler)
    events = []
    sim.subscribe(events.append)
    await sim.push({"type": "save_scene_prefs", "prefsJson": '{"sceneIntentLinks": {}}'})
    ack = await sim.push({"type": "load_scene_prefs", "requestId": "load1"})
    await scheduler.advance(0)
    result = [e.payload for e in events if e.payload.get("requestId") == "load1"][0]
    assert ack.ok
    assert result["detail"] == '{"sceneIntentLinks": {}}'


@pytest.mark.asyncio
async def test_simulator_relay_start_is_delayed(scheduler):
    sim = SimulatedHost(scheduler)
    await sim.push({"type": "relay_stop"})
    assert (await sim.pull()).relay.is_active is False
    await sim.push({"type": "relay_start"})
    await scheduler.advance(1.0)
    assert (await sim.pull()).relay.is_active is False
    await scheduler.advance(0.2)
    assert (await sim.pull()).relay.is_active is True


# ─── Real host adapter (offline behaviour) ────────────────────────────────────

from unittest.mock import AsyncMock, patch

from aegis_dock.core.obs_host import ObsVendorHost


@pytest.mark.asyncio
async def test_obs_host_degrades_when_disconnected():
    obs = ObsVendorHost()
    assert obs.is_available() is False
    assert await obs.pull() is None
    assert await obs.push({"type": "request_status"}) is None
    caps = await obs.get_capabilities()
    assert caps["switchScene"] is False


def test_obs_host_vendor_event_routing():
    obs = ObsVendorHost()
    events = []
    obs.subscribe(events.append)
    assert obs.dispatch_vendor_event("current_scene", {"sceneName": "BRB"}) is True
    assert events[-1].kind is HostEventKind.CURRENT_SCENE
    assert obs.dispatch_vendor_event("scene_snapshot_json", {"json": "{oops"}) is False
    assert events[-1].kind is HostEventKind.ERROR
    assert obs.dispatch_vendor_event("action_result", {"result": {"requestId": "r1", "status": "completed"}})
    assert events[-1].payload["requestId"] == "r1"
    assert obs.dispatch_vendor_event("something_else", {}) is False


@pytest.mark.asyncio
async def test_obs_host_vendor_requests():
    obs = ObsVendorHost()
    obs._connected = True
    call_vendor = AsyncMock(side_effect=[make_raw_state(kbps=1200), {"ok": True}, None])
    with patch.object(obs, "call_vendor", call_vendor), patch.object(obs, "_forward_json", AsyncMock(return_value=True)):
        state = await obs.pull()
        assert state.bitrate.bonded_kbps == 1200
        call_vendor.assert_awaited_with("get_state")

        ack = await obs.push({"type": "switch_scene", "sceneId": "s_hold"})
        assert ack.ok is True and ack.request_id
        action = call_vendor.await_args.args[1]["action"]
        assert action["sceneId"] == "s_hold"

        events = []
        obs.subscribe(events.append)
        ack = await obs.push({"type": "set_mode", "mode": "studio"})
        assert ack.ok is False and ack.error == "unsupported_action_type"
        assert events[-1].kind is HostEventKind.ACTION_UNSUPPORTED

        ack = await obs.push({"type": "warp_drive"})
        assert ack.ok is False and ack.error == "unsupported_action_type"
        assert call_vendor.await_count == 3


# ─── Config ───────────────────────────────────────────────────────────────────

from aegis_dock.config import Settings


def test_settings_defaults():
    s = Settings()
    assert s.host.port == 4455
    assert s.host.vendor_name == "aegis-dock"
    assert s.sync.fast_poll_window == 6.0
    assert s.sync.action_grace == 3.0
    assert s.dock.auto_profile_switch_cooldown == 2.5
    assert s.dock.relay_activation_timeout == 15.0
    assert s.prefs.hydration_timeout == 1.5
    assert s.api.port == 8765


def test_settings_yaml_load(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text(
        "host:\n  kind: simulator\n  port: 4460\n  password: secret\n"
        "prefs:\n  save_debounce: 0.5\n"
        "api:\n  port: 9090\n"
    )
    s = Settings.load(config)
    assert s.host.kind == "simulator"
    assert s.host.password == "secret"
    assert s.prefs.save_debounce == 0.5
    assert s.api.port == 9090


def test_settings_yaml_roundtrip(tmp_path):
    path = tmp_path / "out.yaml"
    s = Settings.load(tmp_path / "missing.yaml")
    s.to_yaml(path)
    loaded = Settings.load(path)
    assert loaded.dock.set_setting_cooldown == s.dock.set_setting_cooldown
    assert loaded.api.cors_origins == s.api.cors_origins


def test_env_overrides_yaml(tmp_path, monkeypatch):
    config = tmp_path / "config.yaml"
    Settings().to_yaml(config)
    monkeypatch.setenv("HOST_KIND", "simulator")
    monkeypatch.setenv("API_PORT", "9000")
    s = Settings.load(config)
    assert s.host.kind == "simulator"
    assert s.api.port == 9000
    assert s.host.port == 4455
