"""
Unit tests for WebhookDispatcher.

Uses httpx.MockTransport so no real network is touched; retry waits are
recorded instead of slept.
"""

import json

import httpx
import pytest

from warelay.config.schema import WebhookConfig
from warelay.webhook.dispatcher import WebhookDispatcher


FLAKY = "https://flaky.example/hook"
DOWN = "https://down.example/hook"
OK = "https://ok.example/hook"


def make_dispatcher(urls, handler, sleep):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookDispatcher(WebhookConfig(urls=urls), client=client, sleep=sleep)


@pytest.mark.asyncio
async def test_endpoints_retry_independently(no_sleep):
    attempts = {FLAKY: 0, DOWN: 0}

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        attempts[url] += 1
        if url == FLAKY and attempts[url] == 3:
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(500)

    dispatcher = make_dispatcher([FLAKY, DOWN], handler, no_sleep)
    outcomes = await dispatcher.dispatch({"message_id": "M1"})

    assert outcomes[FLAKY].ok is True
    assert outcomes[FLAKY].attempts == 3
    assert outcomes[DOWN].ok is False
    assert outcomes[DOWN].attempts == 3
    assert attempts == {FLAKY: 3, DOWN: 3}
    # both endpoints wait 2s then 5s; neither waits after its last attempt
    assert sorted(no_sleep.delays) == [2.0, 2.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_request_shape(no_sleep):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    dispatcher = make_dispatcher([OK], handler, no_sleep)
    payload = {"message_id": "M2", "text": "hello"}
    outcomes = await dispatcher.dispatch(payload)

    assert outcomes[OK].ok is True
    assert outcomes[OK].status_code == 204
    request = seen[0]
    assert request.method == "POST"
    assert request.headers["User-Agent"] == "WhatsApp-Bot/2.0-Enhanced"
    assert json.loads(request.content) == payload
    assert no_sleep.delays == []


@pytest.mark.asyncio
async def test_transport_errors_are_retried_and_never_raised(no_sleep):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    dispatcher = make_dispatcher([DOWN], handler, no_sleep)
    outcomes = await dispatcher.dispatch({"message_id": "M3"})

    assert outcomes[DOWN].ok is False
    assert outcomes[DOWN].attempts == 3
    assert "ConnectError" in outcomes[DOWN].error


@pytest.mark.asyncio
async def test_no_endpoints_returns_empty(no_sleep):
    def handler(request):
        raise AssertionError("no request expected")

    dispatcher = make_dispatcher([], handler, no_sleep)

    assert await dispatcher.dispatch({"message_id": "M4"}) == {}
