"""Async daemon serving the KMS plugin protocol."""
from __future__ import annotations

import asyncio
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, TypeVar

import structlog

from ..config import AzureConfig, PluginSettings
from ..envelope import EnvelopeCodec
from ..errors import KMSError
from ..ipc.transport import BaseConnection, ConnectionClosed, UnixSocketTransport
from ..models import KeyReference
from ..resolver import KeyResolver
from ..version import PROTOCOL_VERSION, RUNTIME_NAME, __version__
from .protocol import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    KMS_ERROR,
    PARSE_ERROR,
    SERVER_UNAVAILABLE,
    DecryptRequest,
    DecryptResponse,
    EncryptRequest,
    EncryptResponse,
    JSONRPCError,
    JSONRPCResponse,
    MethodContext,
    MethodRegistry,
    ProtocolError,
    RPCError,
    VersionResponse,
    make_error_response,
    make_response,
    parse_request,
)

_MAX_REQUEST_BYTES = 256 * 1024

T = TypeVar("T")

logger = structlog.get_logger(__name__)


class ServerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LISTENING = "listening"
    SERVING = "serving"
    DRAINING = "draining"
    STOPPED = "stopped"


class KMSServer:
    """JSON-RPC daemon answering Version, Encrypt and Decrypt.

    Requests run as independent tasks so a slow first resolution does not
    block other callers. :meth:`stop` switches to draining: the listener is
    closed, requests already running finish and reply, then the remaining
    connections are closed.
    """

    def __init__(
        self,
        key_ref: KeyReference,
        resolver: KeyResolver,
        *,
        socket_path: Path,
        drain_timeout: float | None = None,
        max_request_bytes: int = _MAX_REQUEST_BYTES,
    ) -> None:
        self._state = ServerState.UNINITIALIZED
        self._key_ref = key_ref
        self._version_lock = threading.Lock()
        self._resolver = resolver
        self._codec = EnvelopeCodec(resolver, on_version=self._remember_version)
        self._transport = UnixSocketTransport(Path(socket_path))
        self._drain_timeout = drain_timeout
        self._max_request_bytes = max_request_bytes
        self._shutdown = asyncio.Event()
        self._inflight: set[asyncio.Task[Any]] = set()
        self._connections: set[int] = set()
        self._request_count = 0
        self._registry = MethodRegistry()
        self._register_methods()
        self._set_state(ServerState.LISTENING)

    @classmethod
    def from_config(
        cls, config: AzureConfig, settings: PluginSettings, *, config_path: Path
    ) -> "KMSServer":
        from ..cloud import build_resolver

        key_ref = config.key_reference()
        resolver = build_resolver(config, settings, config_path)
        return cls(
            key_ref,
            resolver,
            socket_path=settings.ipc.socket_path,
            drain_timeout=settings.server.drain_timeout,
        )

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def key_ref(self) -> KeyReference:
        return self._key_ref

    @property
    def endpoint(self) -> Path:
        return self._transport.path

    @property
    def status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "endpoint": str(self.endpoint),
            "inflight": len(self._inflight),
            "connections": len(self._connections),
            "requests": self._request_count,
            "key_version": self._key_ref.key_version or None,
        }

    async def serve_forever(self) -> None:
        if self._state is not ServerState.LISTENING:
            raise RuntimeError(f"cannot serve from state {self._state.value}")
        await self._transport.start(self._handle_connection)
        self._set_state(ServerState.SERVING)
        await self._shutdown.wait()
        await self._drain()

    async def stop(self) -> None:
        self.request_stop()

    def request_stop(self) -> None:
        """Begin draining; safe to call from a signal handler."""
        self._shutdown.set()

    async def _drain(self) -> None:
        self._set_state(ServerState.DRAINING)
        self._transport.stop_accepting()
        pending = set(self._inflight)
        if pending:
            logger.info("server.drain.wait", inflight=len(pending))
            _done, pending = await asyncio.wait(pending, timeout=self._drain_timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("server.drain.timeout", cancelled=len(pending))
        await self._transport.close()
        self._set_state(ServerState.STOPPED)

    def _set_state(self, state: ServerState) -> None:
        self._state = state
        logger.info("server.state", state=state.value, endpoint=str(self._transport.path))

    def _remember_version(self, version: str) -> None:
        with self._version_lock:
            if self._key_ref.key_version:
                return
            self._key_ref = self._key_ref.with_version(version)
        logger.info("server.key_version.resolved", key=self._key_ref.key_name, version=version)

    async def _handle_connection(self, connection: BaseConnection) -> None:
        conn_id = id(connection)
        self._connections.add(conn_id)
        logger.info("server.connection.opened", connection=conn_id)
        tasks: set[asyncio.Task[Any]] = set()
        try:
            while True:
                try:
                    payload = await connection.receive()
                except ConnectionClosed:
                    break
                if not payload:
                    continue
                if self._state is not ServerState.SERVING:
                    await self._reply(connection, _unavailable_response(payload))
                    continue
                if len(payload.encode("utf-8")) > self._max_request_bytes:
                    error = JSONRPCResponse(
                        error=JSONRPCError(
                            code=INVALID_REQUEST, message="Request too large", data=len(payload)
                        ),
                        id=None,
                    )
                    await self._reply(connection, error.model_dump_json())
                    continue
                task = asyncio.create_task(self._serve_request(connection, payload))
                for bucket in (tasks, self._inflight):
                    bucket.add(task)
                    task.add_done_callback(bucket.discard)
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            self._connections.discard(conn_id)
            logger.info("server.connection.closed", connection=conn_id)

    async def _serve_request(self, connection: BaseConnection, payload: str) -> None:
        response = await self._dispatch_request(connection, payload)
        if response is not None:
            await self._reply(connection, response)

    async def _reply(self, connection: BaseConnection, response: str) -> None:
        try:
            await connection.send(response)
        except ConnectionClosed:
            logger.warning("server.response.dropped")

    async def _dispatch_request(self, connection: BaseConnection, payload: str) -> str | None:
        try:
            request = parse_request(payload)
        except ProtocolError as exc:
            error = JSONRPCError(code=PARSE_ERROR, message="Parse error", data=str(exc))
            return JSONRPCResponse(id=None, error=error).model_dump_json()

        context = MethodContext(server=self, connection=connection)
        try:
            result = await self._registry.dispatch(context, request)
        except RPCError as exc:
            logger.warning(
                "server.request.failed",
                method=request.method,
                code=exc.error.code,
                error=exc.error.message,
            )
            response = make_error_response(request, exc.error)
            return response.model_dump_json()

        self._request_count += 1
        if request.id is None:
            return None
        return make_response(request, result).model_dump_json()

    # -- Method handlers -------------------------------------------------

    def _register_methods(self) -> None:
        registry = self._registry

        @registry.method("kms.version")
        async def _version(_ctx: MethodContext, _params: Dict[str, Any]) -> Dict[str, Any]:
            response = VersionResponse(
                version=PROTOCOL_VERSION,
                runtime_name=RUNTIME_NAME,
                runtime_version=__version__,
            )
            return response.model_dump()

        @registry.method("kms.encrypt")
        async def _encrypt(_ctx: MethodContext, params: Dict[str, Any]) -> Dict[str, Any]:
            request = EncryptRequest.model_validate(params)
            logger.info("kms.encrypt", size=len(request.plain))
            token = await self._run("encrypt", self._codec.encrypt, request.plain)
            return EncryptResponse(cipher=token.encode("ascii")).payload()

        @registry.method("kms.decrypt")
        async def _decrypt(_ctx: MethodContext, params: Dict[str, Any]) -> Dict[str, Any]:
            request = DecryptRequest.model_validate(params)
            logger.info("kms.decrypt", size=len(request.cipher))
            try:
                token = request.cipher.decode("ascii")
            except UnicodeDecodeError as exc:
                raise RPCError(INVALID_PARAMS, "cipher is not a key store token") from exc
            plain = await self._run("decrypt", self._codec.decrypt, token)
            return DecryptResponse(plain=plain).payload()

    async def _run(self, operation: str, func: Callable[[Any, KeyReference], T], payload: Any) -> T:
        try:
            return await asyncio.to_thread(func, payload, self._key_ref)
        except KMSError as exc:
            logger.error(
                f"kms.{operation}.failed", error=str(exc), error_type=type(exc).__name__
            )
            raise RPCError(
                KMS_ERROR,
                f"{operation} failed",
                data={"operation": operation, "error": type(exc).__name__, "cause": str(exc)},
            ) from exc
        except Exception as exc:
            logger.exception(f"kms.{operation}.error")
            raise RPCError(
                INTERNAL_ERROR,
                f"{operation} failed",
                data={"operation": operation, "error": type(exc).__name__, "cause": str(exc)},
            ) from exc


def _unavailable_response(payload: str) -> str:
    try:
        request_id = parse_request(payload).id
    except ProtocolError:
        request_id = None
    error = JSONRPCError(code=SERVER_UNAVAILABLE, message="Server is shutting down")
    return JSONRPCResponse(id=request_id, error=error).model_dump_json()


__all__ = ["KMSServer", "ServerState"]
