"""JSON-RPC protocol helpers for the KMS plugin daemon."""
from __future__ import annotations

import base64
import binascii
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

IDType = int | str | None

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
KMS_ERROR = -32010
SERVER_UNAVAILABLE = -32011


class JSONRPCError(BaseModel):
    """JSON-RPC error payload."""

    code: int
    message: str
    data: Any | None = None

    model_config = ConfigDict(extra="forbid")


class JSONRPCRequest(BaseModel):
    """Incoming JSON-RPC request."""

    jsonrpc: str = Field(default="2.0")
    id: IDType = None
    method: str
    params: Mapping[str, Any] | list[Any] | None = None

    model_config = ConfigDict(extra="forbid")


class JSONRPCResponse(BaseModel):
    """Standard JSON-RPC response payload."""

    jsonrpc: str = Field(default="2.0")
    id: IDType = None
    result: Any | None = None
    error: JSONRPCError | None = None

    model_config = ConfigDict(extra="forbid")


def _decode_base64(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if not isinstance(value, str):
        raise ValueError("expected a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64: {exc}") from exc


def _encode_base64(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


class VersionResponse(BaseModel):
    version: str
    runtime_name: str
    runtime_version: str


class EncryptRequest(BaseModel):
    plain: bytes

    model_config = ConfigDict(extra="forbid")

    @field_validator("plain", mode="before")
    @classmethod
    def _decode_plain(cls, value: Any) -> bytes:
        return _decode_base64(value)


class EncryptResponse(BaseModel):
    cipher: bytes

    def payload(self) -> Dict[str, str]:
        return {"cipher": _encode_base64(self.cipher)}


class DecryptRequest(BaseModel):
    cipher: bytes

    model_config = ConfigDict(extra="forbid")

    @field_validator("cipher", mode="before")
    @classmethod
    def _decode_cipher(cls, value: Any) -> bytes:
        return _decode_base64(value)


class DecryptResponse(BaseModel):
    plain: bytes

    def payload(self) -> Dict[str, str]:
        return {"plain": _encode_base64(self.plain)}


class ProtocolError(Exception):
    """Raised when a message cannot be parsed."""


class RPCError(Exception):
    """Raised by method handlers to signal JSON-RPC errors."""

    def __init__(self, code: int, message: str, *, data: Any | None = None) -> None:
        super().__init__(message)
        self.error = JSONRPCError(code=code, message=message, data=data)


class MethodNotFound(RPCError):
    def __init__(self, method: str) -> None:
        super().__init__(METHOD_NOT_FOUND, "Method not found", data=method)


class InvalidParams(RPCError):
    def __init__(self, message: str, data: Any | None = None) -> None:
        super().__init__(INVALID_PARAMS, message, data=data)


@dataclass(slots=True)
class MethodContext:
    """Context passed to registered method handlers."""

    server: Any
    connection: Any


class MethodHandler(Protocol):
    def __call__(self, context: MethodContext, params: Dict[str, Any]) -> Any:  # pragma: no cover - protocol
        ...


class MethodRegistry:
    """Registry for mapping JSON-RPC methods to callables."""

    def __init__(self) -> None:
        self._handlers: Dict[str, MethodHandler] = {}

    def register(self, name: str, handler: MethodHandler) -> None:
        if name in self._handlers:
            raise ValueError(f"Handler already registered for {name}")
        self._handlers[name] = handler

    def method(self, name: str) -> Callable[[MethodHandler], MethodHandler]:
        def decorator(func: MethodHandler) -> MethodHandler:
            self.register(name, func)
            return func

        return decorator

    @property
    def methods(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, context: MethodContext, request: JSONRPCRequest) -> Any:
        handler = self._handlers.get(request.method)
        if not handler:
            raise MethodNotFound(request.method)
        params = _coerce_params(request)
        try:
            result = handler(context, params)
            if inspect.isawaitable(result):
                result = await result
            return result
        except RPCError:
            raise
        except ValidationError as exc:
            errors = exc.errors(include_url=False, include_context=False, include_input=False)
            raise InvalidParams("Invalid parameters", data=errors) from exc
        except Exception as exc:
            raise RPCError(INTERNAL_ERROR, "Internal error", data=str(exc)) from exc


def parse_request(payload: str) -> JSONRPCRequest:
    """Parse a JSON string into a :class:`JSONRPCRequest`."""

    try:
        return JSONRPCRequest.model_validate_json(payload)
    except ValidationError as exc:
        raise ProtocolError(str(exc)) from exc


def make_response(request: JSONRPCRequest, result: Any) -> JSONRPCResponse:
    """Create a JSON-RPC success response."""

    return JSONRPCResponse(id=request.id, result=result)


def make_error_response(request: JSONRPCRequest | None, error: JSONRPCError) -> JSONRPCResponse:
    """Create a JSON-RPC error response."""

    return JSONRPCResponse(id=request.id if request else None, error=error)


def _coerce_params(request: JSONRPCRequest) -> Dict[str, Any]:
    params = request.params
    if params is None:
        return {}
    if isinstance(params, Mapping):
        return dict(params)
    if isinstance(params, list):
        if len(params) == 1 and isinstance(params[0], Mapping):
            return dict(params[0])
        raise InvalidParams("Positional parameters are not supported", data=params)
    raise InvalidParams("Parameters must be an object or null", data=params)


__all__ = [
    "IDType",
    "PARSE_ERROR",
    "INVALID_REQUEST",
    "METHOD_NOT_FOUND",
    "INVALID_PARAMS",
    "INTERNAL_ERROR",
    "KMS_ERROR",
    "SERVER_UNAVAILABLE",
    "JSONRPCError",
    "JSONRPCRequest",
    "JSONRPCResponse",
    "VersionResponse",
    "EncryptRequest",
    "EncryptResponse",
    "DecryptRequest",
    "DecryptResponse",
    "MethodContext",
    "MethodRegistry",
    "ProtocolError",
    "RPCError",
    "MethodNotFound",
    "InvalidParams",
    "parse_request",
    "make_response",
    "make_error_response",
]
