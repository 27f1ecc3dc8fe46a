"""
Control API - HTTP/SSE interface to the simulated peripheral.

Exposes the presentation-layer actions (advertising, notifications,
streaming, identifiers, message log, statistics) as REST endpoints and
streams peripheral events to browsers via Server-Sent Events. With the
loopback transport, /api/sim endpoints play the part of a central.
"""

import asyncio
import base64
import binascii
import json
import time
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from . import __version__
from .commands import COMMANDS
from .config_loader import MIN_SEND_INTERVAL, ApiConfig
from .logging_setup import get_logger
from .monitor import SessionMonitor
from .peripheral import PeripheralSession
from .transport.base import TransportBase, TransportError, UnknownCharacteristicError
from .transport.loopback import LoopbackTransport

logger = get_logger(__name__)

SSE_KEEPALIVE = 30.0


# --- Request/Response Models ---

class PayloadRequest(BaseModel):
    """Exactly one of text, data_hex or data_base64"""
    text: str | None = None
    data_hex: str | None = None
    data_base64: str | None = None


class StreamRequest(BaseModel):
    interval: float | None = Field(default=None, gt=0)


class SimRequest(PayloadRequest):
    """Simulated central action; characteristic is a role name or a UUID"""
    characteristic: str | None = None
    mtu: int | None = Field(default=None, gt=0)


class ResultResponse(BaseModel):
    """Generic result response"""
    success: bool
    message: str
    result: str | None = None


class StatusResponse(BaseModel):
    power_state: str
    state: str
    advertising: bool
    streaming: bool
    stream_interval: float | None = None
    heartbeat: bool
    connected: int
    subscribed: int
    stored_payload_size: int
    service_uuid: str
    transport: str
    version: str


def decode_request_payload(request: PayloadRequest) -> bytes:
    """
    Turn a payload request into bytes.

    Raises:
        HTTPException(400): nothing given, or malformed hex/base64
    """
    try:
        if request.text is not None:
            data = request.text.encode("utf-8")
        elif request.data_hex is not None:
            data = bytes.fromhex(request.data_hex)
        elif request.data_base64 is not None:
            data = base64.b64decode(request.data_base64, validate=True)
        else:
            raise HTTPException(status_code=400, detail="Provide text, data_hex or data_base64")
    except (ValueError, binascii.Error) as e:
        raise HTTPException(status_code=400, detail=f"Malformed payload: {e}") from e

    if not data:
        raise HTTPException(status_code=400, detail="Payload is empty")
    return data


def create_app(
    peripheral: PeripheralSession,
    monitor: SessionMonitor,
    api_config: ApiConfig | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    api_config = api_config or ApiConfig()
    transport: TransportBase = peripheral.transport
    last_send = {"at": 0.0}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown lifecycle"""
        logger.info("Starting blesim API")
        if not api_config.api_key:
            logger.warning("No API key configured, control API is unauthenticated")
        await transport.start()

        yield

        logger.info("Shutting down blesim API")
        await peripheral.shutdown()
        await transport.stop()
        monitor.close()

    app = FastAPI(
        title="blesim",
        description="Control API for the simulated BLE peripheral",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=api_config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Authentication ---

    async def verify_api_key(x_api_key: Annotated[str | None, Header()] = None):
        """Verify API key header"""
        if not api_config.api_key or api_config.api_key == "disabled":
            return True

        if x_api_key != api_config.api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")
        return True

    def require_advertising() -> None:
        if not peripheral.is_advertising:
            raise HTTPException(status_code=409, detail="Not advertising")

    def require_loopback() -> LoopbackTransport:
        if not isinstance(transport, LoopbackTransport):
            raise HTTPException(status_code=404, detail="Simulation requires the loopback transport")
        return transport

    # --- Status ---

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "advertising": peripheral.is_advertising,
            "timestamp": int(time.time() * 1000),
        }

    @app.get("/api/status", response_model=StatusResponse)
    async def get_status(_: bool = Depends(verify_api_key)):
        """Current peripheral status"""
        return StatusResponse(
            **peripheral.status(),
            transport=transport.mode.value,
            version=__version__,
        )

    @app.get("/api/peers")
    async def get_peers(_: bool = Depends(verify_api_key)):
        peers = peripheral.sessions.peers()
        return {"peers": [p.to_dict() for p in peers], "count": len(peers)}

    @app.get("/api/commands")
    async def get_commands(_: bool = Depends(verify_api_key)):
        """Text commands understood on the write characteristics"""
        return {
            "commands": [
                {"name": cmd.value, "format": info["format"], "description": info["description"]}
                for cmd, info in COMMANDS.items()
            ]
        }

    # --- Advertising ---

    @app.post("/api/advertising/start", response_model=ResultResponse)
    async def start_advertising(_: bool = Depends(verify_api_key)):
        if await peripheral.start_advertising():
            return ResultResponse(success=True, message="Advertising")
        raise HTTPException(
            status_code=409,
            detail=f"Cannot advertise (radio {transport.power_state.value})",
        )

    @app.post("/api/advertising/stop", response_model=ResultResponse)
    async def stop_advertising(_: bool = Depends(verify_api_key)):
        stopped = await peripheral.stop_advertising()
        return ResultResponse(
            success=True,
            message="Advertising stopped" if stopped else "Not advertising",
        )

    # --- Notifications ---

    @app.post("/api/notify", response_model=ResultResponse)
    async def notify(request: PayloadRequest, _: bool = Depends(verify_api_key)):
        """Push a payload to every subscribed peer"""
        data = decode_request_payload(request)

        now = time.monotonic()
        if now - last_send["at"] < MIN_SEND_INTERVAL:
            raise HTTPException(status_code=429, detail="Sending too fast")
        last_send["at"] = now

        require_advertising()
        if not peripheral.sessions.has_subscribers():
            raise HTTPException(status_code=409, detail="No subscribed peers")

        result = await peripheral.send_notification(data)
        return ResultResponse(
            success=result.ok,
            message=f"Sent {len(data)} bytes" if result.ok else "Send failed",
            result=result.value,
        )

    @app.post("/api/notify/test", response_model=ResultResponse)
    async def notify_test(_: bool = Depends(verify_api_key)):
        require_advertising()
        result = await peripheral.send_test_message()
        return ResultResponse(
            success=result.ok,
            message="Test message sent" if result.ok else "Send failed",
            result=result.value,
        )

    # --- Streaming ---

    @app.post("/api/stream/start", response_model=ResultResponse)
    async def start_stream(request: StreamRequest | None = None, _: bool = Depends(verify_api_key)):
        require_advertising()
        interval = request.interval if request else None
        started = await peripheral.start_streaming(interval)
        return ResultResponse(
            success=True,
            message="Stream started" if started else "Stream already running",
        )

    @app.post("/api/stream/stop", response_model=ResultResponse)
    async def stop_stream(_: bool = Depends(verify_api_key)):
        stopped = await peripheral.stop_streaming()
        return ResultResponse(
            success=True,
            message="Stream stopped" if stopped else "Stream not running",
        )

    # --- Message log & statistics ---

    @app.get("/api/messages")
    async def get_messages(
        limit: int | None = Query(default=None, ge=1),
        _: bool = Depends(verify_api_key),
    ):
        messages = monitor.recent_messages(limit)
        return {"messages": messages, "count": len(messages)}

    @app.delete("/api/messages", response_model=ResultResponse)
    async def clear_messages(_: bool = Depends(verify_api_key)):
        monitor.clear_messages()
        return ResultResponse(success=True, message="Message log cleared")

    @app.get("/api/stats")
    async def get_stats(_: bool = Depends(verify_api_key)):
        return monitor.stats.to_dict()

    @app.delete("/api/stats", response_model=ResultResponse)
    async def reset_stats(_: bool = Depends(verify_api_key)):
        monitor.reset_stats()
        return ResultResponse(success=True, message="Statistics reset")

    # --- Identifiers ---

    @app.get("/api/identifiers")
    async def get_identifiers(_: bool = Depends(verify_api_key)):
        return {
            "mode": peripheral.registry.mode.value,
            "identifiers": peripheral.identifiers.as_dict(),
        }

    @app.get("/api/identifiers/export")
    async def export_identifiers(_: bool = Depends(verify_api_key)):
        return json.loads(peripheral.registry.export_as_json())

    @app.post("/api/identifiers/reset")
    async def reset_identifiers(_: bool = Depends(verify_api_key)):
        ids = await peripheral.reset_identifiers()
        return {
            "mode": peripheral.registry.mode.value,
            "identifiers": ids.as_dict(),
            "advertising": peripheral.is_advertising,
        }

    # --- SSE events ---

    @app.get("/api/events")
    async def stream_events(request: Request, _: bool = Depends(verify_api_key)):
        """
        Server-Sent Events stream of peripheral events.

        Each `peripheral` event carries the event's kind, direction, type,
        payload_hex, size, detail, peer_id, characteristic and timestamp.
        """
        client = monitor.add_client()

        async def event_generator():
            try:
                yield {
                    "event": "status",
                    "data": json.dumps({**peripheral.status(), "timestamp": int(time.time() * 1000)}),
                }

                while client.connected:
                    if await request.is_disconnected():
                        break
                    try:
                        data = await asyncio.wait_for(client.queue.get(), timeout=SSE_KEEPALIVE)
                    except asyncio.TimeoutError:
                        yield {
                            "event": "ping",
                            "data": json.dumps({"timestamp": int(time.time() * 1000)}),
                        }
                        continue
                    yield {"event": "peripheral", "data": json.dumps(data)}
            finally:
                monitor.remove_client(client)

        return EventSourceResponse(event_generator())

    # --- Simulated centrals (loopback only) ---

    def resolve_characteristic(name: str | None, default: str) -> str:
        ids = peripheral.identifiers.as_dict()
        name = name or default
        return ids.get(name, name).upper()

    async def run_sim(action):
        try:
            return await action
        except UnknownCharacteristicError as e:
            raise HTTPException(status_code=400, detail=f"Unknown characteristic {e}") from e
        except TransportError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e

    @app.post("/api/sim/{peer_id}/connect", response_model=ResultResponse)
    async def sim_connect(peer_id: str, _: bool = Depends(verify_api_key)):
        sim = require_loopback()
        await run_sim(sim.connect(peer_id))
        return ResultResponse(success=True, message=f"{peer_id} connected")

    @app.post("/api/sim/{peer_id}/disconnect", response_model=ResultResponse)
    async def sim_disconnect(peer_id: str, _: bool = Depends(verify_api_key)):
        sim = require_loopback()
        await run_sim(sim.disconnect(peer_id))
        return ResultResponse(success=True, message=f"{peer_id} disconnected")

    @app.post("/api/sim/{peer_id}/subscribe", response_model=ResultResponse)
    async def sim_subscribe(peer_id: str, request: SimRequest | None = None, _: bool = Depends(verify_api_key)):
        sim = require_loopback()
        request = request or SimRequest()
        characteristic = resolve_characteristic(request.characteristic, "notify")
        await run_sim(sim.subscribe(peer_id, characteristic, request.mtu))
        return ResultResponse(success=True, message=f"{peer_id} subscribed to {characteristic}")

    @app.post("/api/sim/{peer_id}/unsubscribe", response_model=ResultResponse)
    async def sim_unsubscribe(peer_id: str, request: SimRequest | None = None, _: bool = Depends(verify_api_key)):
        sim = require_loopback()
        request = request or SimRequest()
        characteristic = resolve_characteristic(request.characteristic, "notify")
        await run_sim(sim.unsubscribe(peer_id, characteristic))
        return ResultResponse(success=True, message=f"{peer_id} unsubscribed from {characteristic}")

    @app.post("/api/sim/{peer_id}/read")
    async def sim_read(peer_id: str, request: SimRequest | None = None, _: bool = Depends(verify_api_key)):
        sim = require_loopback()
        request = request or SimRequest()
        characteristic = resolve_characteristic(request.characteristic, "read")
        value = await run_sim(sim.read(peer_id, characteristic))
        try:
            text = value.decode("utf-8")
        except UnicodeDecodeError:
            text = None
        return {"characteristic": characteristic, "text": text, "data_hex": value.hex()}

    @app.post("/api/sim/{peer_id}/write")
    async def sim_write(peer_id: str, request: SimRequest, _: bool = Depends(verify_api_key)):
        sim = require_loopback()
        data = decode_request_payload(request)
        characteristic = resolve_characteristic(request.characteristic, "write")
        before = len(sim.received(peer_id))
        await run_sim(sim.write(peer_id, characteristic, data))
        notified = sim.received(peer_id)[before:]
        return {
            "characteristic": characteristic,
            "written": len(data),
            "notifications": [v.decode("utf-8", errors="replace") for v in notified],
        }

    return app
