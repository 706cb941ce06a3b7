"""
main.py — aegis-dock application entrypoint.

Bootstraps:
  1. Config loading
  2. Host adapter (obs-websocket vendor or simulator)
  3. Dock controller (sync, correlator, auto-switch, prefs)
  4. FastAPI server (uvicorn)

CLI:
  python run.py start              attach the dock and serve the control API
  python run.py start --simulate   same, against the built-in simulator
  python run.py init-config        create a default config.yaml
  python run.py check              test host connectivity
  python run.py list-rules         print the built-in auto scene rules
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from aegis_dock import __version__
from aegis_dock.api import create_app, set_managers
from aegis_dock.config import reload_settings
from aegis_dock.core import LoopScheduler, ObsVendorHost, SimulatedHost, init_host
from aegis_dock.dock import DockController

console = Console()
app = typer.Typer(name="aegis-dock", help="Aegis dock control surface — auto scene switching and relay control")


def setup_logging(level: str = "info") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


async def build_and_run(config_path: Optional[Path] = None) -> None:
    settings = reload_settings(config_path)
    setup_logging(settings.api.log_level)
    log = logging.getLogger("aegis_dock")

    console.rule(f"[bold blue]aegis-dock v{__version__}[/bold blue]")

    scheduler = LoopScheduler()

    # 1. Host adapter
    host = init_host(
        settings.host.kind,
        scheduler,
        host=settings.host.host,
        port=settings.host.port,
        password=settings.host.password,
        vendor_name=settings.host.vendor_name,
        reconnect_interval=settings.host.reconnect_interval,
        max_reconnect_attempts=settings.host.max_reconnect_attempts,
    )

    # 2. Initial connection (non-fatal; the synchronizer keeps probing)
    connected = True
    if isinstance(host, SimulatedHost):
        host.start()
    elif isinstance(host, ObsVendorHost):
        connected = await host.connect()
        if not connected:
            console.print(f"[yellow]⚠ Host not reachable at {settings.host.host}:{settings.host.port} — will retry in background[/yellow]")
            asyncio.create_task(host.start_reconnect_loop())

    # 3. Dock controller
    dock = DockController(host, scheduler, settings)
    dock.attach()

    # 4. Wire into API
    set_managers(dock)
    fast_app = create_app()

    # 5. Startup summary
    if host.simulated:
        console.print("\n[green]✓ Host[/green]      simulator")
    else:
        console.print(f"\n[green]✓ Host[/green]      {settings.host.host}:{settings.host.port} vendor '{settings.host.vendor_name}' ({'connected' if connected else 'pending reconnect'})")
    console.print(f"[green]✓ Prefs[/green]     {'stored on host' if settings.prefs.enabled else 'in memory only'}")
    console.print(f"[green]✓ API[/green]       http://{settings.api.host}:{settings.api.port}")
    console.print(f"[green]✓ WS[/green]        ws://{settings.api.host}:{settings.api.port}/ws")
    if settings.api.api_key:
        console.print("[green]✓ Auth[/green]      API key set — Bearer token required")
        console.print(f"[dim]            WS auth: ws://host:{settings.api.port}/ws?token=YOUR_KEY[/dim]")
    else:
        console.print("[yellow]⚠ Auth[/yellow]      No API key set — open access (fine for localhost, not internet)")
    console.print(f"[green]✓ Docs[/green]      http://{settings.api.host}:{settings.api.port}/docs\n")

    # 6. uvicorn
    config = uvicorn.Config(
        fast_app,
        host=settings.api.host,
        port=settings.api.port,
        log_level=settings.api.log_level,
        loop="asyncio",
    )
    server = uvicorn.Server(config)

    loop = asyncio.get_running_loop()

    def shutdown():
        log.info("Shutdown signal received.")
        server.should_exit = True
        dock.detach()
        if isinstance(host, SimulatedHost):
            host.stop()
        elif isinstance(host, ObsVendorHost):
            loop.create_task(host.disconnect())

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown)
        except NotImplementedError:
            pass  # Windows

    await server.serve()


# ──────────────────────────────────────────────────────────────────────────────
# CLI commands
# ──────────────────────────────────────────────────────────────────────────────

@app.command()
def start(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
    simulate: bool = typer.Option(False, "--simulate", help="Use the built-in simulated host"),
    host: Optional[str] = typer.Option(None, "--host", help="API bind host"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="API port"),
):
    """Attach the dock and start the control API."""
    if simulate:
        os.environ["HOST_KIND"] = "simulator"
    if host:
        os.environ["API_HOST"] = host
    if port:
        os.environ["API_PORT"] = str(port)
    asyncio.run(build_and_run(config))


@app.command("init-config")
def init_config(
    output: Path = typer.Option(Path("config.yaml"), "--output", "-o"),
):
    """Generate a default config.yaml."""
    from aegis_dock.config import Settings
    s = Settings.load()
    s.to_yaml(output)
    console.print(f"[green]✓[/green] Config written to [bold]{output}[/bold]")


@app.command("list-rules")
def list_rules_cmd():
    """Print the built-in auto scene rules."""
    from aegis_dock.scenes import DEFAULT_AUTO_SCENE_RULES
    table = Table(title="Built-in Auto Scene Rules", show_header=True)
    table.add_column("Id", style="cyan")
    table.add_column("Label", style="green")
    table.add_column("Intent")
    table.add_column("Switch at", style="yellow")
    table.add_column("Default")
    for r in DEFAULT_AUTO_SCENE_RULES:
        threshold = f"≤ {r.threshold_mbps} Mbps" if r.participates else "-"
        table.add_row(r.id, r.label, r.intent, threshold, "✓" if r.is_default else "")
    console.print(table)


@app.command("check")
def check_host(
    host: str = typer.Option("localhost", "--host"),
    port: int = typer.Option(4455, "--port"),
    password: str = typer.Option("", "--password"),
    vendor: str = typer.Option("aegis-dock", "--vendor"),
):
    """Test host connectivity and print what the dock would see."""
    async def _check():
        client = ObsVendorHost(host=host, port=port, password=password, vendor_name=vendor)
        ok = await client.connect()
        if not ok:
            console.print(f"[red]✗ Could not connect to host at {host}:{port}[/red]")
            sys.exit(1)
        console.print(f"[green]✓ Connected to host[/green] (vendor '{vendor}')")
        state = await client.pull()
        if state is None:
            console.print("[yellow]⚠ Vendor did not return a state snapshot[/yellow]")
        else:
            scenes = state.scenes.items
            console.print(f"  Mode:     {state.header.mode}")
            console.print(f"  Scenes ({len(scenes)}): {', '.join(s.name for s in scenes)}")
            console.print(f"  Active:   {state.scenes.active_scene_id}")
            console.print(f"  Relay:    {'active' if state.relay.is_active else 'inactive'}")
            for item in state.settings.items:
                value = "unknown" if item.value is None else ("on" if item.value else "off")
                console.print(f"  Setting:  {item.key} = {value}")
        caps = await client.get_capabilities()
        console.print(f"  Capabilities: {', '.join(k for k, v in caps.items() if v) or 'none'}")
        await client.disconnect()
    asyncio.run(_check())


if __name__ == "__main__":
    app()
