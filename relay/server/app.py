from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from ..agents.base import TaskClient
from ..agents.claude import ClaudeClient
from .delivery import WebSocketSink
from .runner import ChannelRunner, SubmitResult
from .sessions import SessionRegistry
from .settings import DEFAULTS, SettingsStore, validate_settings

log = logging.getLogger("relay")

# --- WebSocket message validation ---

_MAX_WS_MESSAGE_SIZE = 1 * 1024 * 1024  # 1 MB

_VALID_MSG_TYPES = frozenset({"message", "cancel", "new_session"})

_REQUIRED_FIELDS: dict[str, list[str]] = {
    "message": ["text"],
}

# Rate limiting: max messages per window
_RATE_LIMIT_WINDOW = 10.0  # seconds
_RATE_LIMIT_MAX = 100  # messages per window


def _validate_ws_message(msg: dict) -> str | None:
    """Validate a WebSocket message shape. Returns error string or None."""
    if not isinstance(msg, dict):
        return "Message must be a JSON object"
    msg_type = msg.get("type")
    if not isinstance(msg_type, str):
        return "Missing or invalid 'type' field"
    if msg_type not in _VALID_MSG_TYPES:
        return f"Unknown message type: {msg_type}"
    required = _REQUIRED_FIELDS.get(msg_type, [])
    for field in required:
        if field not in msg or msg[field] is None:
            return f"Missing required field '{field}' for {msg_type}"
    return None


def _validate_message_body(body: dict) -> str | None:
    text = body.get("text")
    if not isinstance(text, str) or not text.strip():
        return "'text' must be a non-empty string"
    label = body.get("label")
    if label is not None and not isinstance(label, str):
        return "'label' must be a string"
    for flag in ("new_session", "continue"):
        if flag in body and not isinstance(body[flag], bool):
            return f"'{flag}' must be a boolean"
    if body.get("new_session") and body.get("continue"):
        return "'new_session' and 'continue' are mutually exclusive"
    return None


def _submit_payload(result: SubmitResult) -> dict:
    if result.queued:
        return {
            "status": "queued",
            "position": result.position,
            "message": (
                f"Your message has been queued (position {result.position}). "
                "It will be processed when the current task finishes."
            ),
        }
    return {"status": "dispatched"}


def create_app(
    work_dir: Path | None = None,
    client: TaskClient | None = None,
    registry: SessionRegistry | None = None,
    settings_store: SettingsStore | None = None,
    cli_overrides: dict | None = None,
) -> FastAPI:
    work_dir = (work_dir or Path.cwd()).resolve()
    registry = registry or SessionRegistry(work_dir)
    settings = settings_store or SettingsStore()
    overrides = {k: v for k, v in (cli_overrides or {}).items() if k in DEFAULTS}
    effective = settings.get_effective(overrides)
    sink = WebSocketSink(send_timeout=float(effective["delivery.send_timeout"]))
    runner = ChannelRunner(
        registry,
        client or ClaudeClient(),
        sink,
        settings=settings,
        overrides=overrides,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Restore resumption tokens, abort running tasks on shutdown."""
        restored = await registry.load()
        log.info("loaded %d persisted session(s) from %s", restored, registry.store.path)
        yield
        await runner.shutdown()

    app = FastAPI(title="Channel Relay", lifespan=lifespan)
    app.state.runner = runner
    app.state.sink = sink

    @app.get("/health")
    async def health_check():
        sessions = registry.sessions()
        return {
            "status": "healthy",
            "channels": len(sessions),
            "running": sum(1 for s in sessions if runner.is_busy(s.channel_key)),
            "queued": sum(len(s.queue) for s in sessions),
            "send_failures": sink.send_failures,
        }

    @app.get("/api/channels")
    def list_channels():
        return [s.to_dict() for s in registry.sessions()]

    @app.get("/api/channels/{channel_key}")
    def get_channel(channel_key: str):
        session = registry.get(channel_key)
        if session is None:
            return JSONResponse(status_code=404, content={"detail": "Not found"})
        return session.to_dict()

    @app.post("/api/channels/{channel_key}/messages")
    async def post_message(channel_key: str, body: dict):
        error = _validate_message_body(body)
        if error:
            return JSONResponse(status_code=400, content={"detail": error})
        result = runner.submit(
            channel_key,
            body.get("label"),
            body["text"].strip(),
            new_session=body.get("new_session", False),
            continue_conversation=body.get("continue", False),
        )
        return _submit_payload(result)

    @app.post("/api/channels/{channel_key}/cancel")
    async def cancel_channel(channel_key: str):
        result = await runner.cancel(channel_key)
        return {"cancelled": result.cancelled, "discarded": result.discarded}

    @app.post("/api/channels/{channel_key}/reset")
    async def reset_channel(channel_key: str):
        result = await runner.reset(channel_key)
        return {"cancelled": result.cancelled, "discarded": result.discarded}

    # --- Settings REST API ---

    @app.get("/api/settings")
    def get_settings():
        return settings.get_all()

    @app.put("/api/settings")
    def update_settings(body: dict):
        error = validate_settings(body)
        if error:
            return JSONResponse(status_code=400, content={"detail": error})
        settings.set_many(body)
        return settings.get_all()

    @app.get("/api/settings/{key:path}")
    def get_setting(key: str):
        if key not in DEFAULTS:
            return JSONResponse(status_code=404, content={"detail": f"Unknown settings key: {key}"})
        return {"key": key, "value": settings.get(key)}

    @app.put("/api/settings/{key:path}")
    def update_setting(key: str, body: dict):
        if "value" not in body:
            return JSONResponse(status_code=400, content={"detail": "Missing 'value' in request body"})
        error = validate_settings({key: body["value"]})
        if error:
            return JSONResponse(status_code=400, content={"detail": error})
        settings.set(key, body["value"])
        return {"key": key, "value": body["value"]}

    @app.delete("/api/settings/{key:path}")
    def delete_setting(key: str):
        settings.delete(key)
        return {"ok": True}

    @app.websocket("/ws/{channel_key}")
    async def websocket_endpoint(ws: WebSocket, channel_key: str) -> None:
        await ws.accept()
        label = ws.query_params.get("label")
        log.info("[%s] ws connected", channel_key)
        sink.subscribe(channel_key, ws)
        session = registry.get(channel_key)
        await ws.send_json({
            "type": "connected",
            "channel": channel_key,
            "busy": runner.is_busy(channel_key),
            "session_id": session.session_id if session else None,
        })

        _rate_timestamps: list[float] = []

        try:
            while True:
                raw = await ws.receive_text()
                if len(raw) > _MAX_WS_MESSAGE_SIZE:
                    await ws.send_json({"type": "error", "message": f"Message too large (max {_MAX_WS_MESSAGE_SIZE} bytes)"})
                    continue

                try:
                    msg = json.loads(raw)
                except (json.JSONDecodeError, ValueError):
                    await ws.send_json({"type": "error", "message": "Invalid JSON"})
                    continue

                validation_error = _validate_ws_message(msg)
                if validation_error:
                    await ws.send_json({"type": "error", "message": validation_error})
                    continue

                now = time.monotonic()
                _rate_timestamps = [t for t in _rate_timestamps if now - t < _RATE_LIMIT_WINDOW]
                _rate_timestamps.append(now)
                if len(_rate_timestamps) > _RATE_LIMIT_MAX:
                    await ws.send_json({"type": "error", "message": "Rate limit exceeded, slow down"})
                    continue

                msg_type = msg["type"]
                if msg_type == "message":
                    body_error = _validate_message_body(msg)
                    if body_error:
                        await ws.send_json({"type": "error", "message": body_error})
                        continue
                    result = runner.submit(
                        channel_key,
                        msg.get("label") or label,
                        msg["text"].strip(),
                        new_session=msg.get("new_session", False),
                        continue_conversation=msg.get("continue", False),
                    )
                    await ws.send_json({"type": "submitted", **_submit_payload(result)})
                elif msg_type == "cancel":
                    result = await runner.cancel(channel_key)
                    await ws.send_json({"type": "cancel_result", "cancelled": result.cancelled, "discarded": result.discarded})
                elif msg_type == "new_session":
                    result = await runner.reset(channel_key)
                    await ws.send_json({"type": "new_session", "cancelled": result.cancelled, "discarded": result.discarded})

        except WebSocketDisconnect:
            log.info("[%s] ws disconnected", channel_key)
        finally:
            sink.unsubscribe(channel_key, ws)

    return app
