"""WebSocket streaming server for the smoothed scroll signal.

Runs a gesture control session on the server's webcam and pushes the
smoothed scroll value to every connected WebSocket client once per render
tick. Clients that cannot use the camera can still drive the signal through
the scroll endpoint.

Features:
- Boot status (download progress, camera state) over REST and WebSocket
- Scroll signal stream at the render frame rate
- Manual wheel-style override endpoint
- Prometheus metrics endpoint

Usage:
    python -m gesture_scroll.server
    # or
    uvicorn gesture_scroll.server:app --host 0.0.0.0 --port 8765
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Optional

try:
    from fastapi import FastAPI, WebSocket, WebSocketDisconnect
    from fastapi.responses import PlainTextResponse
    from pydantic import BaseModel
    _HAS_FASTAPI = True
except ImportError:
    _HAS_FASTAPI = False

if not _HAS_FASTAPI:
    raise ImportError("FastAPI required. Install with: pip install fastapi uvicorn")

from gesture_scroll import __version__
from gesture_scroll.config import AppConfig
from gesture_scroll.controller import GestureController, RenderLoop, StatusUpdate
from gesture_scroll.metrics import MetricsCollector
from gesture_scroll.scroll_signal import ScrollSignal, TouchInput, WheelInput

logger = logging.getLogger("gesture_scroll.server")

app = FastAPI(title="gesture-scroll", version=__version__)


# --- State ---

class ServerState:
    def __init__(self):
        self.clients: set[WebSocket] = set()
        self.config = AppConfig()
        self.signal = ScrollSignal()
        self.metrics = MetricsCollector()
        self.controller: Optional[GestureController] = None
        self.render_loop: Optional[RenderLoop] = None
        self.wheel = WheelInput(self.signal)
        self.touch = TouchInput(self.signal)
        self.autostart = True
        self.running = False
        self.gesture_active = False
        self.last_status: Optional[StatusUpdate] = None
        self.tasks: list[asyncio.Task] = []

    def configure(self, config: AppConfig):
        self.config = config
        self.wheel = WheelInput(self.signal, config.signal.wheel_speed)
        self.touch = TouchInput(self.signal, config.signal.touch_speed)

    def new_controller(self) -> GestureController:
        self.controller = GestureController(self.config, signal=self.signal, metrics=self.metrics)
        return self.controller


state = ServerState()


class ScrollRequest(BaseModel):
    delta_y: float = 0.0
    target: Optional[float] = None


class TouchRequest(BaseModel):
    phase: str  # "start", "move" or "end"
    y: float = 0.0


# --- API endpoints ---

@app.get("/api/status")
async def api_status():
    controller = state.controller
    return {
        "running": state.running,
        "gesture_active": state.gesture_active,
        "clients": len(state.clients),
        "capture_state": controller.capture.state.value if controller and controller.capture else "idle",
        "status": state.last_status.to_dict() if state.last_status else None,
        "signal": state.signal.to_dict(),
        "assets_preloaded": bool(controller and controller.locator and controller.locator.preloaded),
    }


@app.get("/api/signal")
async def api_signal():
    return state.signal.to_dict()


@app.post("/api/scroll")
async def api_scroll(req: ScrollRequest):
    """Manual override: a wheel delta, or an absolute target in [0, 1]."""
    if req.target is not None:
        state.signal.set_target(req.target)
    else:
        state.wheel.scroll(req.delta_y)
    return state.signal.to_dict()


@app.post("/api/touch")
async def api_touch(req: TouchRequest):
    if req.phase == "start":
        state.touch.start(req.y)
    elif req.phase == "move":
        state.touch.move(req.y)
    elif req.phase == "end":
        state.touch.end()
    else:
        return PlainTextResponse(f"Unknown touch phase: {req.phase}", status_code=400)
    return state.signal.to_dict()


# --- Prometheus metrics ---

@app.get("/metrics")
async def metrics():
    state.metrics.set_connections(len(state.clients))
    return PlainTextResponse(
        state.metrics.render(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


# --- WebSocket ---

@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    state.clients.add(ws)
    logger.info(f"Client connected ({len(state.clients)} total)")

    try:
        await ws.send_json({
            "type": "connected",
            "signal": state.signal.to_dict(),
            "status": state.last_status.to_dict() if state.last_status else None,
        })

        while True:
            try:
                msg = await asyncio.wait_for(ws.receive_text(), timeout=30)
                data = json.loads(msg)
                if data.get("type") == "ping":
                    await ws.send_json({"type": "pong", "server_time": time.time()})
                elif data.get("type") == "wheel":
                    state.wheel.scroll(float(data.get("delta_y", 0.0)))
            except asyncio.TimeoutError:
                await ws.send_json({"type": "ping"})
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.debug(f"WebSocket error: {e}")
    finally:
        state.clients.discard(ws)
        logger.info(f"Client disconnected ({len(state.clients)} total)")


async def broadcast(message: dict):
    """Send message to all clients."""
    if not state.clients:
        return
    dead = set()
    payload = json.dumps(message)
    for ws in list(state.clients):
        try:
            await ws.send_text(payload)
        except Exception:
            dead.add(ws)
    state.clients -= dead


def _on_status(status: StatusUpdate):
    state.last_status = status
    task = asyncio.get_running_loop().create_task(broadcast({"type": "status", **status.to_dict()}))
    state.tasks.append(task)
    task.add_done_callback(state.tasks.remove)


# --- Loops ---

async def gesture_session():
    """Boot the gesture path; the render loop keeps running even if it fails."""
    controller = state.controller or state.new_controller()
    controller.on_status(_on_status)
    state.gesture_active = await controller.start()
    if not state.gesture_active:
        logger.warning("Gesture control unavailable; manual input only")


async def render_loop():
    """Advance the smoother every tick and push the value to clients."""

    async def renderer(current: float, elapsed: float):
        await broadcast({
            "type": "scroll",
            "current": round(current, 5),
            "target": round(state.signal.target, 5),
            "elapsed": round(elapsed, 3),
        })

    loop = RenderLoop(state.signal, state.controller.smoother, renderer, fps=state.config.signal.fps)
    state.render_loop = loop
    state.running = True
    try:
        await loop.run()
    finally:
        state.running = False
        logger.info("Render loop stopped")


@app.on_event("startup")
async def startup():
    if not state.autostart:
        return
    state.new_controller()
    state.tasks.append(asyncio.create_task(render_loop()))
    state.tasks.append(asyncio.create_task(gesture_session()))


@app.on_event("shutdown")
async def shutdown():
    if state.render_loop:
        state.render_loop.stop()
    if state.controller:
        await state.controller.stop()


# --- CLI entry point ---

def main():
    import argparse
    import uvicorn

    from gesture_scroll.config import load_config

    parser = argparse.ArgumentParser(description="gesture-scroll WebSocket server")
    parser.add_argument("--config", default=None, help="Path to YAML config")
    parser.add_argument("--host", default=None, help="Bind address")
    parser.add_argument("--port", type=int, default=None, help="Port")
    parser.add_argument("--log-level", default="info")
    args = parser.parse_args()

    config = load_config(args.config)
    state.configure(config)
    uvicorn.run(
        app,
        host=args.host or config.server.host,
        port=args.port or config.server.port,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
