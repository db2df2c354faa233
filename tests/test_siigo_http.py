import asyncio
from unittest.mock import MagicMock

import pytest
import requests

import db
import siigo_http
from errors import UpstreamHttpError
from runtime_context import current_request_id
from siigo_http import (
    RequestsTransport,
    UpstreamRequest,
    execute_with_recovery,
    retry_after_seconds,
)
from tests.conftest import AUTH_URL, BASE_URL, make_response, token_response

DOC_URL = f"{BASE_URL}/purchases/abc-123"


def _doc_calls(transport):
    return transport.calls_to("GET", DOC_URL)


@pytest.mark.asyncio
async def test_success_returns_status_and_data(token_manager, transport, sleeper):
    transport.add("POST", AUTH_URL, token_response("tok-1"))
    transport.add("GET", DOC_URL, make_response(200, {"id": "abc-123", "number": 8}))

    result = await execute_with_recovery(token_manager, transport, UpstreamRequest("GET", DOC_URL), sleep=sleeper)

    assert result.status == 200
    assert result.data == {"id": "abc-123", "number": 8}
    headers = _doc_calls(transport)[0]["headers"]
    assert headers["Authorization"] == "Bearer tok-1"
    assert headers["Partner-Id"] == "FacturacionApp"
    assert headers["Accept"] == "application/json"
    assert headers["Content-Type"] == "application/json"
    assert headers["Cache-Control"] == "no-cache"


@pytest.mark.asyncio
async def test_401_refreshes_token_and_retries_once(token_manager, transport, sleeper):
    transport.add("POST", AUTH_URL, token_response("tok-old"), token_response("tok-new"))
    transport.add("GET", DOC_URL, make_response(401, {}), make_response(200, {"id": "abc-123"}))

    result = await execute_with_recovery(token_manager, transport, UpstreamRequest("GET", DOC_URL), sleep=sleeper)

    assert result.data == {"id": "abc-123"}
    calls = _doc_calls(transport)
    assert len(calls) == 2
    assert calls[1]["headers"]["Authorization"] == "Bearer tok-new"
    assert len(transport.calls_to("POST", AUTH_URL)) == 2
    assert sleeper.calls == []


@pytest.mark.asyncio
async def test_second_401_is_surfaced_without_third_attempt(token_manager, transport, sleeper):
    transport.add("POST", AUTH_URL, token_response("tok-old"), token_response("tok-new"))
    transport.add("GET", DOC_URL, make_response(401, {"message": "Unauthorized"}))

    with pytest.raises(UpstreamHttpError) as excinfo:
        await execute_with_recovery(token_manager, transport, UpstreamRequest("GET", DOC_URL), sleep=sleeper)

    assert excinfo.value.status == 401
    assert excinfo.value.message == "Unauthorized"
    assert len(_doc_calls(transport)) == 2


@pytest.mark.asyncio
async def test_429_waits_and_retries_with_same_token(token_manager, transport, sleeper):
    transport.add("POST", AUTH_URL, token_response("tok-1"))
    transport.add(
        "GET", DOC_URL,
        make_response(429, {}, headers={"Retry-After": "3"}),
        make_response(200, {"id": "abc-123"}),
    )

    result = await execute_with_recovery(token_manager, transport, UpstreamRequest("GET", DOC_URL), sleep=sleeper)

    assert result.data == {"id": "abc-123"}
    assert sleeper.calls == [3.0]
    calls = _doc_calls(transport)
    assert [c["headers"]["Authorization"] for c in calls] == ["Bearer tok-1", "Bearer tok-1"]
    assert len(transport.calls_to("POST", AUTH_URL)) == 1


@pytest.mark.asyncio
async def test_second_429_is_surfaced(token_manager, transport, sleeper):
    transport.add("POST", AUTH_URL, token_response())
    transport.add("GET", DOC_URL, make_response(429, {}))

    with pytest.raises(UpstreamHttpError) as excinfo:
        await execute_with_recovery(token_manager, transport, UpstreamRequest("GET", DOC_URL), sleep=sleeper)

    assert excinfo.value.status == 429
    assert len(_doc_calls(transport)) == 2
    assert sleeper.calls == [1.0]


@pytest.mark.asyncio
async def test_other_errors_are_not_retried(token_manager, transport, sleeper):
    transport.add("POST", AUTH_URL, token_response())
    transport.add("GET", DOC_URL, make_response(
        400, {"Errors": [{"Code": "invalid_type", "Message": "El documento no existe"}]}
    ))

    with pytest.raises(UpstreamHttpError) as excinfo:
        await execute_with_recovery(token_manager, transport, UpstreamRequest("GET", DOC_URL), sleep=sleeper)

    assert excinfo.value.message == "El documento no existe"
    assert excinfo.value.details["Errors"][0]["Code"] == "invalid_type"
    assert len(_doc_calls(transport)) == 1


@pytest.mark.asyncio
async def test_unparsable_error_body_is_kept_raw(token_manager, transport, sleeper):
    transport.add("POST", AUTH_URL, token_response())
    transport.add("GET", DOC_URL, make_response(502, text="<html>Bad gateway</html>"))

    with pytest.raises(UpstreamHttpError) as excinfo:
        await execute_with_recovery(token_manager, transport, UpstreamRequest("GET", DOC_URL), sleep=sleeper)

    assert excinfo.value.details == {"raw_response": "<html>Bad gateway</html>"}
    assert excinfo.value.message == "Error en la API de Siigo (502)"


@pytest.mark.asyncio
async def test_204_returns_null_data(token_manager, transport, sleeper):
    transport.add("POST", AUTH_URL, token_response())
    transport.add("DELETE", DOC_URL, make_response(204))

    result = await execute_with_recovery(token_manager, transport, UpstreamRequest("DELETE", DOC_URL), sleep=sleeper)

    assert result.status == 204
    assert result.data is None


@pytest.mark.asyncio
async def test_unparsable_success_body_becomes_empty_object(token_manager, transport, sleeper):
    transport.add("POST", AUTH_URL, token_response())
    transport.add("GET", DOC_URL, make_response(200, text="not json"))

    result = await execute_with_recovery(token_manager, transport, UpstreamRequest("GET", DOC_URL), sleep=sleeper)

    assert result.data == {}


@pytest.mark.asyncio
async def test_rate_limited_auth_pauses_then_requests_new_token(token_manager, transport, sleeper):
    transport.add(
        "POST", AUTH_URL,
        make_response(429, {}),
        make_response(429, {}),
        token_response("tok-late"),
    )
    transport.add("GET", DOC_URL, make_response(200, {"id": "abc-123"}))

    result = await execute_with_recovery(token_manager, transport, UpstreamRequest("GET", DOC_URL), sleep=sleeper)

    assert result.data == {"id": "abc-123"}
    assert sleeper.calls == [1.0, 1.2]
    assert _doc_calls(transport)[0]["headers"]["Authorization"] == "Bearer tok-late"


@pytest.mark.asyncio
async def test_callers_of_rate_limited_auth_share_the_next_acquisition(token_manager, transport, sleeper):
    transport.add(
        "POST", AUTH_URL,
        make_response(429, {}),
        make_response(429, {}),
        token_response("tok-late"),
    )
    transport.add("GET", DOC_URL, make_response(200, {"id": "abc-123"}))

    results = await asyncio.gather(*(
        execute_with_recovery(token_manager, transport, UpstreamRequest("GET", DOC_URL), sleep=sleeper)
        for _ in range(4)
    ))

    assert [r.data for r in results] == [{"id": "abc-123"}] * 4
    assert len(transport.calls_to("POST", AUTH_URL)) == 3
    assert sleeper.calls == [1.0] + [1.2] * 4


@pytest.mark.asyncio
async def test_calls_are_recorded_in_audit_log(token_manager, transport, sleeper, monkeypatch):
    logged = []
    monkeypatch.setattr(db, "is_ready", lambda: True)
    monkeypatch.setattr(db, "log_upstream_call", lambda **kwargs: logged.append(kwargs))
    transport.add("POST", AUTH_URL, token_response("tok-old"), token_response("tok-new"))
    transport.add("GET", DOC_URL, make_response(401, {}), make_response(200, {"id": "abc-123"}))
    current_request_id.set("req-42")

    await execute_with_recovery(token_manager, transport, UpstreamRequest("GET", DOC_URL), sleep=sleeper)

    assert [(row["status"], row["retried"]) for row in logged] == [(401, False), (200, True)]
    assert logged[0]["path"] == "/v1/purchases/abc-123"
    assert logged[0]["request_id"] == "req-42"


@pytest.mark.asyncio
async def test_audit_failure_does_not_break_the_call(token_manager, transport, sleeper, monkeypatch):
    def broken(**kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(db, "is_ready", lambda: True)
    monkeypatch.setattr(db, "log_upstream_call", broken)
    transport.add("POST", AUTH_URL, token_response())
    transport.add("GET", DOC_URL, make_response(200, {"id": "abc-123"}))

    result = await execute_with_recovery(token_manager, transport, UpstreamRequest("GET", DOC_URL), sleep=sleeper)

    assert result.data == {"id": "abc-123"}


@pytest.mark.parametrize("headers,expected", [
    ({"Retry-After": "5"}, 5.0),
    ({"retry-after": "0.5"}, 0.5),
    ({}, 1.0),
    ({"Retry-After": "0"}, 1.0),
    ({"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"}, 1.0),
])
def test_retry_after_seconds(headers, expected):
    assert retry_after_seconds(make_response(429, headers=headers)) == expected


@pytest.mark.asyncio
async def test_requests_transport_maps_timeout_to_504():
    session = MagicMock()
    session.request.side_effect = requests.exceptions.Timeout()
    transport = RequestsTransport(timeout=5, session=session)

    with pytest.raises(UpstreamHttpError) as excinfo:
        await transport.send("GET", DOC_URL, headers={})

    assert excinfo.value.status == 504


@pytest.mark.asyncio
async def test_requests_transport_maps_connection_error_to_502():
    session = MagicMock()
    session.request.side_effect = requests.exceptions.ConnectionError()
    transport = RequestsTransport(session=session)

    with pytest.raises(UpstreamHttpError) as excinfo:
        await transport.send("GET", DOC_URL, headers={})

    assert excinfo.value.status == 502


@pytest.mark.asyncio
async def test_requests_transport_wraps_response():
    session = MagicMock()
    session.request.return_value = MagicMock(status_code=201, headers={"Retry-After": "2"}, text='{"id": "x"}')
    transport = RequestsTransport(timeout=7, session=session)

    response = await transport.send("POST", DOC_URL, headers={"A": "b"}, json_body={"k": 1})

    assert response.status == 201
    assert response.json() == {"id": "x"}
    assert response.header("retry-after") == "2"
    session.request.assert_called_once_with(
        "POST", DOC_URL, headers={"A": "b"}, params=None, json={"k": 1}, timeout=7,
    )


def test_auth_rate_limit_pause_constant():
    assert siigo_http.AUTH_RATE_LIMIT_PAUSE == 1.2
