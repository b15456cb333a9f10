import httpx
import pytest
from tenacity import wait_none

from client import ApiError, LedgerClient


def make_client(handler, max_retries=3) -> LedgerClient:
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return LedgerClient("http://ledger.test/api", http=http, max_retries=max_retries, wait=wait_none())


def test_retries_server_errors_then_succeeds() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) < 3:
            return httpx.Response(503, json={"error": "unavailable", "detail": "busy"})
        return httpx.Response(200, json={"status": "ok"})

    client = make_client(handler)

    assert client.health() == {"status": "ok"}
    assert calls == ["/api/health"] * 3


def test_client_errors_are_not_retried() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, json={"error": "invalid_transfer", "detail": "same account"})

    client = make_client(handler)

    with pytest.raises(ApiError) as excinfo:
        client.create_transaction({"type": "transfer"})

    assert len(calls) == 1
    assert excinfo.value.status == 400
    assert excinfo.value.code == "invalid_transfer"
    assert excinfo.value.message == "same account"


def test_transport_errors_are_retried_until_exhausted() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("refused", request=request)

    client = make_client(handler, max_retries=2)

    with pytest.raises(httpx.ConnectError):
        client.list_accounts()

    assert len(calls) == 3


def test_settings_round_trip_payloads() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = request.content
        return httpx.Response(200, json={"key": "privacy_mode", "value": "true"})

    client = make_client(handler)

    assert client.set_setting("privacy_mode", "true") == "true"
    assert seen["method"] == "PUT"
    assert seen["path"] == "/api/settings/privacy_mode"
    assert b'"value"' in seen["body"]
