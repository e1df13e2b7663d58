"""gesture-scroll CLI - the main entry point for all operations.

Usage:
    gesture-scroll serve       - Start the WebSocket server
    gesture-scroll preload     - Download the model assets and report throughput
    gesture-scroll run         - Run gesture control headless, printing the signal
    gesture-scroll map         - Show the deadzone mapping for raw values
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

try:
    import typer
except ImportError:
    raise ImportError("typer is required for CLI. Install with: pip install typer")

from gesture_scroll.config import AppConfig, load_config
from gesture_scroll.errors import ConfigError, PreloadError

app = typer.Typer(
    name="gesture-scroll",
    help="🤚 Hand-gesture scroll control with a parallel model preloader.",
    add_completion=False,
)


def _setup(config_path: Optional[str], log_level: str) -> AppConfig:
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return load_config(config_path)
    except ConfigError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)


@app.command()
def serve(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Port"),
    log_level: str = typer.Option("info", help="Log level"),
):
    """Start the WebSocket scroll streaming server."""
    import uvicorn
    from gesture_scroll.server import app as fastapi_app, state

    cfg = _setup(config, log_level)
    state.configure(cfg)
    host = host or cfg.server.host
    port = port or cfg.server.port

    typer.echo(f"🚀 Starting gesture-scroll server on {host}:{port}")
    typer.echo(f"   Connect to ws://{host}:{port}/ws for the scroll stream")
    uvicorn.run(fastapi_app, host=host, port=port, log_level=log_level)


@app.command()
def preload(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    log_level: str = typer.Option("warning", help="Log level"),
):
    """Download every configured asset in parallel and report progress.

    Nothing is written to disk; this checks reachability and throughput.
    """
    from gesture_scroll.preloader import AssetPreloader, requests_for

    cfg = _setup(config, log_level)
    requests = requests_for(cfg.assets.base_url, cfg.assets.files)
    typer.echo(f"📦 Preloading {len(requests)} asset(s) from {cfg.assets.base_url}")

    def on_progress(percent: float, speed: float, loaded_mb: float, total_mb: float):
        typer.echo(
            f"\r   {percent:5.1f}% | {loaded_mb:.2f}MB / {total_mb:.2f}MB | {speed:.2f} MB/s",
            nl=False,
        )

    preloader = AssetPreloader(progress_interval=cfg.assets.progress_interval)
    try:
        handles = asyncio.run(preloader.preload(requests, on_progress))
    except PreloadError as e:
        typer.echo(f"\n❌ {e}", err=True)
        raise typer.Exit(1)

    typer.echo("\n\n✅ Preload complete:")
    for name, handle in handles.items():
        typer.echo(f"   {name:40s} {handle.size / 1e6:8.2f} MB  {handle.content_type}")
    progress = preloader.last_progress
    if progress:
        typer.echo(f"   Elapsed: {progress.elapsed_seconds:.2f}s  Speed: {progress.speed_mbps:.2f} MB/s")


@app.command()
def run(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    duration: float = typer.Option(0, help="Run time in seconds (0 = until Ctrl+C)"),
    every: int = typer.Option(15, help="Print the signal every N render ticks"),
    log_level: str = typer.Option("warning", help="Log level"),
):
    """Run gesture control without a server, printing the smoothed signal."""
    from gesture_scroll.controller import GestureController, RenderLoop

    cfg = _setup(config, log_level)

    async def session() -> int:
        controller = GestureController(cfg)
        controller.on_status(lambda s: typer.echo(f"   [{s.percent:3.0f}%] {s.message.splitlines()[0]}"))
        if not await controller.start():
            return 1

        ticks = 0

        def renderer(current: float, elapsed: float):
            nonlocal ticks
            ticks += 1
            if ticks % every == 0:
                bar = "█" * int(current * 40)
                typer.echo(f"\r   {elapsed:7.1f}s  {current:.3f} |{bar:40s}|", nl=False)

        render = RenderLoop(controller.signal, controller.smoother, renderer, fps=cfg.signal.fps)
        max_ticks = int(duration * cfg.signal.fps) if duration > 0 else None
        try:
            await render.run(max_ticks=max_ticks)
        finally:
            await controller.stop()
        return 0

    try:
        code = asyncio.run(session())
    except KeyboardInterrupt:
        code = 0
    typer.echo("")
    if code:
        raise typer.Exit(code)


@app.command("map")
def map_values(
    values: List[float] = typer.Argument(..., help="Raw normalized y values"),
    low: float = typer.Option(0.2, help="Deadzone low bound"),
    high: float = typer.Option(0.8, help="Deadzone high bound"),
):
    """Print the deadzone-mapped signal for raw landmark y values."""
    from gesture_scroll.scroll_signal import DeadzoneMapper

    try:
        mapper = DeadzoneMapper(low, high)
    except ValueError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    for raw in values:
        typer.echo(f"   {raw:.3f} → {mapper.map(raw):.3f}")


def main():
    app()


if __name__ == "__main__":
    main()
