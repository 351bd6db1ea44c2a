import asyncio
import base64
import json

import pytest

from azurekms.daemon.protocol import (
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    DecryptRequest,
    DecryptResponse,
    EncryptRequest,
    JSONRPCError,
    JSONRPCRequest,
    MethodContext,
    MethodRegistry,
    ProtocolError,
    RPCError,
    make_error_response,
    make_response,
    parse_request,
)


def _dispatch(registry: MethodRegistry, request: JSONRPCRequest):
    return asyncio.run(registry.dispatch(MethodContext(server=None, connection=None), request))


def test_parse_request_roundtrip() -> None:
    payload = json.dumps({"jsonrpc": "2.0", "id": 1, "method": "kms.version", "params": {}})
    request = parse_request(payload)
    assert request.method == "kms.version"
    assert request.id == 1
    response = make_response(request, {"version": "v1beta1"})
    assert response.model_dump() == {
        "jsonrpc": "2.0",
        "id": 1,
        "result": {"version": "v1beta1"},
        "error": None,
    }


def test_parse_request_invalid_json() -> None:
    with pytest.raises(ProtocolError):
        parse_request("not json")


def test_parse_request_rejects_unknown_fields() -> None:
    with pytest.raises(ProtocolError):
        parse_request(json.dumps({"method": "kms.version", "extra": True}))


def test_method_registry_dispatch_async() -> None:
    registry = MethodRegistry()

    @registry.method("kms.echo")
    async def handler(_context: MethodContext, params: dict[str, object]) -> dict[str, object]:
        await asyncio.sleep(0)
        return {"echo": params["value"]}

    result = _dispatch(registry, JSONRPCRequest(method="kms.echo", params={"value": 42}, id=7))
    assert result == {"echo": 42}
    assert registry.methods == ["kms.echo"]


def test_single_object_in_positional_params_is_accepted() -> None:
    registry = MethodRegistry()
    registry.register("kms.echo", lambda _ctx, params: params)

    result = _dispatch(registry, JSONRPCRequest(method="kms.echo", params=[{"a": 1}], id=1))
    assert result == {"a": 1}

    with pytest.raises(RPCError) as excinfo:
        _dispatch(registry, JSONRPCRequest(method="kms.echo", params=[1, 2], id=2))
    assert excinfo.value.error.code == INVALID_PARAMS


def test_method_registry_unknown_method() -> None:
    registry = MethodRegistry()
    with pytest.raises(RPCError) as excinfo:
        _dispatch(registry, JSONRPCRequest(method="missing", id=10))
    assert excinfo.value.error.code == METHOD_NOT_FOUND


def test_validation_errors_become_invalid_params() -> None:
    registry = MethodRegistry()
    registry.register("kms.encrypt", lambda _ctx, params: EncryptRequest.model_validate(params))

    with pytest.raises(RPCError) as excinfo:
        _dispatch(registry, JSONRPCRequest(method="kms.encrypt", params={"plain": "@@@"}, id=3))

    error = excinfo.value.error
    assert error.code == INVALID_PARAMS
    json.dumps(error.data)


def test_make_error_response() -> None:
    request = JSONRPCRequest(method="kms.decrypt", id=99)
    error = JSONRPCError(code=-32010, message="decrypt failed")
    response = make_error_response(request, error)
    assert response.error == error
    assert response.id == 99
    assert response.result is None


def test_method_registry_duplicate_registration() -> None:
    registry = MethodRegistry()

    def handler(_context: MethodContext, _params: dict[str, object]) -> dict[str, object]:
        return {"ok": True}

    registry.register("kms.version", handler)
    with pytest.raises(ValueError):
        registry.register("kms.version", handler)


def test_payload_models_use_standard_base64() -> None:
    request = DecryptRequest.model_validate({"cipher": base64.b64encode(b"\xff\x00").decode()})
    assert request.cipher == b"\xff\x00"
    assert DecryptResponse(plain=b"\xfb\xff").payload() == {"plain": "+/8="}
    assert EncryptRequest.model_validate({"plain": ""}).plain == b""
