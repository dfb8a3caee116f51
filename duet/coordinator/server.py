"""
FastAPI signaling surface for the Duet coordinator.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .. import CoordinatorConfig
from ..protocol import MessageType, ProtocolError, message_type
from ..schemas import CoordinatorStatsModel, IceServerModel, parse_ice_servers, parse_pairing_request
from ..utils.profiles import fallback_ice_servers
from .coordinator import Coordinator

LOG = logging.getLogger(__name__)


class SignalingSession:
    """Track one WebSocket connection and run its send/receive loops."""

    def __init__(
        self,
        coordinator: Coordinator,
        websocket: WebSocket,
        *,
        queue_size: int = 256,
        ping_interval: float = 30.0,
        pong_timeout: float = 60.0,
    ) -> None:
        self.coordinator = coordinator
        self.websocket = websocket
        self.session_id = uuid.uuid4().hex
        self.peer_id: Optional[str] = None
        self.send_queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=max(1, int(queue_size)))
        self.ping_interval = max(0.0, float(ping_interval))
        self.pong_timeout = max(self.ping_interval, float(pong_timeout))
        self.last_pong = time.monotonic()
        # Application pings go only to clients that have used ping/pong themselves.
        self.keepalive_enabled = False
        self._stop_event = asyncio.Event()
        self._closing = False
        self.logger = LOG.getChild(f"ws.{self.session_id[:8]}")

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Failed to accept WebSocket connection")
            return

        try:
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._recv_loop())
                task_group.create_task(self._send_loop())
                task_group.create_task(self._keepalive_loop())
        except asyncio.CancelledError:
            raise
        except WebSocketDisconnect:
            self.logger.debug("WebSocket client disconnected (%s)", self.peer_id)
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Signaling session crashed")
        finally:
            await self.coordinator.disconnect(self.peer_id, self)
            self.logger.info("Signaling client disconnected peer=%s", self.peer_id)
            await self.close(code=1000)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._stop_event.set()
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    async def send(self, payload: Dict[str, Any]) -> None:
        if self.is_stopped:
            return
        try:
            self.send_queue.put_nowait(dict(payload))
        except asyncio.QueueFull:
            # The peer stopped reading; its keepalive will close it.
            self.logger.warning("Send queue full; dropping %s", payload.get("type"))

    async def _handle_pairing_request(self, message: Dict[str, Any]) -> None:
        request = parse_pairing_request(message)
        peer_id = request.user_id or self.peer_id or self.session_id
        if self.peer_id is not None and self.peer_id != peer_id:
            # The client switched identifiers on the same channel.
            await self.coordinator.disconnect(self.peer_id, self)
        self.peer_id = peer_id
        self.logger = LOG.getChild(f"ws.{peer_id[:8]}")
        await self.coordinator.request_pairing(peer_id, self)

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    message = await self.websocket.receive_json()
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    self._stop_event.set()
                    break
                except ValueError:
                    self.logger.warning("Dropping non-JSON frame")
                    continue
                except Exception:  # pragma: no cover - safety net
                    self.logger.exception("Failed to receive message")
                    self._stop_event.set()
                    break

                kind = message_type(message)
                if kind is None:
                    self.logger.warning(
                        "Dropping frame with unsupported type %r",
                        message.get("type") if isinstance(message, dict) else message,
                    )
                    continue
                if kind in (MessageType.PING, MessageType.PONG):
                    self._mark_alive()
                if kind is MessageType.PONG:
                    continue
                if kind is MessageType.PING:
                    await self.send({"type": MessageType.PONG.value, "ts": time.time()})
                    continue

                try:
                    if kind is MessageType.PAIRING_REQUEST:
                        await self._handle_pairing_request(message)
                    else:
                        await self.coordinator.handle_message(self.peer_id, self, message)
                except asyncio.CancelledError:
                    raise
                except ProtocolError as exc:
                    self.logger.warning("Dropping malformed %s: %s", kind.value, exc)
                except Exception:  # pragma: no cover - guard rails
                    self.logger.exception("Unhandled error while processing message")
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    payload = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self.websocket.send_json(payload)
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    self._stop_event.set()
                    break
                except RuntimeError as exc:
                    message = str(exc)
                    if "close message has been sent" in message:
                        self.logger.debug("Send after close ignored: %s", message)
                    else:
                        self.logger.exception("Failed to send message", exc_info=exc)
                    self._stop_event.set()
                    break
                except Exception:  # pragma: no cover - defensive
                    self.logger.exception("Failed to send message")
                    self._stop_event.set()
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()

    def _mark_alive(self) -> None:
        if not self.keepalive_enabled:
            self.logger.debug("Client answers pings; enabling keepalive")
            self.keepalive_enabled = True
        self.last_pong = time.monotonic()

    async def _keepalive_loop(self) -> None:
        if self.ping_interval <= 0:
            return
        try:
            while not self.is_stopped:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.ping_interval)
                if self.is_stopped:
                    break
                if not self.keepalive_enabled:
                    continue
                await self.send({"type": MessageType.PING.value, "ts": time.time()})
                if (time.monotonic() - self.last_pong) > self.pong_timeout:
                    self.logger.warning("Ping timeout; closing signaling session")
                    await self.close(code=1011, reason="ping timeout")
                    break
        finally:
            self._stop_event.set()


def _resolve_ice_servers(config: CoordinatorConfig) -> List[IceServerModel]:
    try:
        servers = parse_ice_servers(config.ice_servers)
    except ProtocolError:
        LOG.warning("Profile '%s' has an invalid ice_servers list; using fallback", config.profile)
        servers = []
    return servers or parse_ice_servers(fallback_ice_servers())


def create_app(
    *,
    config: Optional[CoordinatorConfig] = None,
    coordinator: Optional[Coordinator] = None,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    coordinator_config = config or CoordinatorConfig()
    pairing = coordinator or Coordinator(policy=coordinator_config.pairing_policy)
    ice_servers = _resolve_ice_servers(coordinator_config)

    app = FastAPI(title="Duet Coordinator", lifespan=lifespan)
    app.state.coordinator = pairing
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        session = SignalingSession(
            pairing,
            websocket,
            queue_size=coordinator_config.queue_size,
            ping_interval=coordinator_config.ping_interval,
            pong_timeout=coordinator_config.pong_timeout,
        )
        await session.run()

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok", "profile": coordinator_config.profile}

    @app.get("/stats", response_model=CoordinatorStatsModel)
    async def stats() -> CoordinatorStatsModel:
        return CoordinatorStatsModel(**(await pairing.stats()))

    @app.get("/ice-servers")
    async def list_ice_servers() -> list:
        return [server.model_dump(exclude_none=True) for server in ice_servers]

    return app
