"""glassctl - command line tool for glasslink."""

from __future__ import annotations

import asyncio
import json
import sys

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from glasslink import __version__
from glasslink.common.events import Event
from glasslink.common.logging import setup_logging
from glasslink.config import Config, load_config
from glasslink.errors import GatewayError, TransportError
from glasslink.gateway.client import GatewayClient, GatewayStatus, mock_gateway_transport
from glasslink.live.collaborators import (
    NullAudioSink,
    SilenceAudioSource,
    SolidColorFrameSource,
    pump_audio,
    pump_frames,
)
from glasslink.live.session import GeminiSession, SessionSnapshot

app = typer.Typer(
    name="glassctl",
    help="glasslink control CLI",
    no_args_is_help=True,
)
console = Console()

STATE_STYLE = {
    "ready": "green",
    "connecting": "yellow",
    "settingUp": "yellow",
    "disconnected": "dim",
    "error": "red",
}


def get_config(mock: bool = False) -> Config:
    """Get configuration."""
    config = load_config()
    if mock:
        config.mock_mode = True
    setup_logging(
        level=config.device.log_level,
        json_output=config.device.mode == "production",
    )
    return config


def make_gateway(config: Config) -> GatewayClient:
    """Gateway client for the configured mode."""
    if config.mock_mode:
        return GatewayClient(config.gateway, transport=mock_gateway_transport())
    return GatewayClient(config.gateway)


@app.command()
def version():
    """Show version information."""
    console.print(f"[bold]glasslink[/] v{__version__}")


@app.command()
def config(json_output: bool = typer.Option(False, "--json", help="Print as JSON")):
    """Show configuration."""
    cfg = get_config()

    if json_output:
        data = cfg.model_dump()
        for section, key in (("gemini", "api_key"), ("gateway", "token")):
            if data[section][key]:
                data[section][key] = "***"
        print(json.dumps(data, indent=2, default=str))
        return

    console.print("[bold]Configuration[/]")
    console.print(f"  Device: {cfg.device.name}")
    console.print(f"  Mode: {cfg.device.mode}")
    console.print(f"  Mock Mode: {cfg.mock_mode}")
    console.print("\n[bold]Voice service[/]")
    console.print(f"  Model: {cfg.gemini.model}")
    console.print(f"  API key: {'set' if cfg.gemini.api_key else '[red]missing[/]'}")
    console.print("\n[bold]Media[/]")
    console.print(f"  Audio: {cfg.media.input_sample_rate} Hz, {cfg.media.chunk_size_ms} ms chunks")
    console.print(f"  Video: 1 frame / {cfg.media.video_min_interval_seconds}s, JPEG q{cfg.media.jpeg_quality}")
    console.print(f"  Turn end: {cfg.speaking.turn_end_policy}")
    console.print("\n[bold]Gateway[/]")
    console.print(f"  Endpoint: {cfg.gateway.completions_url}")
    console.print(f"  Token: {'set' if cfg.gateway.token else 'none'}")
    console.print(f"  Timeout: {cfg.gateway.timeout_seconds}s")


# Gateway commands
gateway_cmd = typer.Typer(help="Agent gateway")
app.add_typer(gateway_cmd, name="gateway")


@gateway_cmd.command("check")
def gateway_check(mock: bool = typer.Option(False, "--mock", help="Use the canned gateway")):
    """Check that the gateway is reachable."""

    async def _check() -> GatewayStatus:
        gateway = make_gateway(get_config(mock))
        try:
            return await gateway.check_connection()
        finally:
            await gateway.aclose()

    status = asyncio.run(_check())
    style = {"connected": "green", "unauthorized": "yellow"}.get(status.value, "red")
    console.print(f"Gateway: [{style}]{status.value}[/]")
    if status is not GatewayStatus.CONNECTED:
        sys.exit(1)


@gateway_cmd.command("ask")
def gateway_ask(
    task: str,
    mock: bool = typer.Option(False, "--mock", help="Use the canned gateway"),
):
    """Run a single task on the gateway."""

    async def _ask() -> str:
        gateway = make_gateway(get_config(mock))
        try:
            return await gateway.execute(task)
        finally:
            await gateway.aclose()

    try:
        reply = asyncio.run(_ask())
    except GatewayError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)

    console.print(Panel(reply, title="Gateway reply"))


@app.command()
def session(
    duration: float = typer.Option(30.0, help="Seconds to keep the session open"),
    mock: bool = typer.Option(False, "--mock", help="Loopback transport and canned gateway"),
    video: bool = typer.Option(True, help="Stream mock camera frames"),
):
    """Run a live session fed by mock capture sources."""
    cfg = get_config(mock)

    async def _run() -> None:
        gateway = make_gateway(cfg)
        live = GeminiSession(cfg, gateway, audio_sink=NullAudioSink())

        async def on_transcript(event: Event) -> None:
            who = "model" if event.data["role"] == "model" else "you"
            console.print(f"[cyan]{who}:[/] {event.data['text']}")

        async def on_tool(event: Event) -> None:
            console.print(f"[magenta]{event.topic}[/] {event.data.get('id')}: "
                          f"{event.data.get('task') or event.data.get('output', '')}")

        live.events.subscribe("session.transcript", on_transcript)
        live.events.subscribe("tool.*", on_tool)

        async def watch_state() -> None:
            last = None
            async for snapshot in live.updates.subscribe():
                if snapshot.state != last:
                    last = snapshot.state
                    _print_state(snapshot)

        watcher = asyncio.create_task(watch_state())
        try:
            await live.connect()
            await live.wait_until_ready(timeout=cfg.gemini.connect_timeout_seconds)

            pumps = [asyncio.create_task(pump_audio(live, SilenceAudioSource(cfg.media.input_sample_rate)))]
            if video:
                pumps.append(asyncio.create_task(pump_frames(live, SolidColorFrameSource())))

            await asyncio.sleep(duration)
            for pump in pumps:
                pump.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
        finally:
            await live.disconnect()
            live.updates.close()
            await watcher
            await gateway.aclose()

        _print_status(live.get_status())

    try:
        asyncio.run(_run())
    except (TransportError, asyncio.TimeoutError) as e:
        console.print(f"[red]Session failed:[/] {e}")
        sys.exit(1)


def _print_state(snapshot: SessionSnapshot) -> None:
    style = STATE_STYLE.get(snapshot.state.value, "white")
    line = f"[{style}]{snapshot.state.value}[/]"
    if snapshot.error:
        line += f" [dim]({snapshot.error})[/]"
    console.print(line)


def _print_status(status: dict) -> None:
    table = Table(title="Session")
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    table.add_row("State", status["state"])
    table.add_row("Audio envelopes", str(status["media"]["audio_envelopes"]))
    table.add_row("Frames sent", str(status["media"]["frames_sent"]))
    table.add_row("Frames dropped", str(status["media"]["frames_dropped"]))
    table.add_row("Model audio chunks", str(status["playback"]["chunks_received"]))
    table.add_row("Gateway requests", str(status["gateway"]["total_requests"]))
    console.print(table)


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
