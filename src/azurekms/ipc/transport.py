"""IPC transport abstractions."""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from asyncio import StreamReader, StreamWriter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Set

import structlog

from ..errors import TransportError

MessageHandler = Callable[["BaseConnection"], Awaitable[None]]

logger = structlog.get_logger(__name__)


class ConnectionClosed(RuntimeError):
    """Raised when a connection is closed unexpectedly."""


class BaseConnection(ABC):
    @abstractmethod
    async def receive(self) -> str:  # pragma: no cover - interface
        ...

    @abstractmethod
    async def send(self, payload: str) -> None:  # pragma: no cover - interface
        ...

    @abstractmethod
    async def close(self) -> None:  # pragma: no cover - interface
        ...


@dataclass(eq=False)
class SocketConnection(BaseConnection):
    reader: StreamReader
    writer: StreamWriter
    _write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def receive(self) -> str:
        try:
            data = await self.reader.readline()
        except (ConnectionResetError, ValueError) as exc:
            raise ConnectionClosed(str(exc)) from exc
        if not data:
            raise ConnectionClosed("socket closed")
        return data.decode("utf-8").rstrip("\r\n")

    async def send(self, payload: str) -> None:
        message = payload.encode("utf-8") + b"\n"
        async with self._write_lock:
            if self.writer.is_closing():
                raise ConnectionClosed("socket closed")
            self.writer.write(message)
            try:
                await self.writer.drain()
            except ConnectionResetError as exc:
                raise ConnectionClosed(str(exc)) from exc

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except ConnectionResetError:  # pragma: no cover - race condition
            pass


class UnixSocketTransport:
    """Newline-delimited frames over a Unix domain socket."""

    def __init__(self, path: Path, *, limit: int = 2**20) -> None:
        self.path = path
        self._limit = limit
        self._server: asyncio.base_events.Server | None = None
        self._clients: Set[BaseConnection] = set()

    @property
    def accepting(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self, handler: MessageHandler) -> None:
        self.clean_socket_file()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._server = await asyncio.start_unix_server(
                self._client_callback(handler), path=str(self.path), limit=self._limit
            )
        except OSError as exc:
            raise TransportError(f"Failed to start listener on {self.path}: {exc}") from exc

    def clean_socket_file(self) -> None:
        """Remove a socket file left behind by a previous process."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise TransportError(f"Failed to delete the socket file {self.path}: {exc}") from exc
        logger.info("ipc.socket.removed_stale", path=str(self.path))

    def stop_accepting(self) -> None:
        if self._server is not None:
            self._server.close()

    async def close(self) -> None:
        self.stop_accepting()
        for client in list(self._clients):
            await client.close()
        self._clients.clear()
        if self._server is not None:
            await self._server.wait_closed()
            self._server = None
        try:
            if self.path.exists():
                self.path.unlink()
        except OSError:
            logger.warning("ipc.socket.cleanup_failed", path=str(self.path))

    def _client_callback(
        self, handler: MessageHandler
    ) -> Callable[[StreamReader, StreamWriter], Awaitable[None]]:
        async def _client_connected(reader: StreamReader, writer: StreamWriter) -> None:
            connection = SocketConnection(reader=reader, writer=writer)
            self._clients.add(connection)
            try:
                await handler(connection)
            finally:
                self._clients.discard(connection)
                await connection.close()

        return _client_connected


__all__ = [
    "BaseConnection",
    "ConnectionClosed",
    "MessageHandler",
    "SocketConnection",
    "UnixSocketTransport",
]
