import json

import httpx
import pytest

from relaybridge.config.settings import Settings
from relaybridge.core.app import create_app
from relaybridge.standalone import check_required_settings
from relaybridge.core.errors import ConfigurationError


def _settings(**overrides) -> Settings:
    values = {
        "shared_secret": "sec_test",
        "completion_base_url": "https://llm-proxy.example.com",
        "completion_api_key": "pxy_test",
        "app_server_url": "https://app.example.com",
    }
    values.update(overrides)
    return Settings(**values)


def _wire_outbound(app, completion_handler, delivery_handler) -> list[httpx.AsyncClient]:
    pipeline = app.state.pipeline
    completion_http = httpx.AsyncClient(transport=httpx.MockTransport(completion_handler))
    delivery_http = httpx.AsyncClient(transport=httpx.MockTransport(delivery_handler))
    pipeline.completion_client._get_client = lambda: completion_http
    pipeline.delivery_client._get_client = lambda: delivery_http
    return [completion_http, delivery_http]


async def _post_message(app, body: dict, secret: str = "sec_test") -> httpx.Response:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://relay.test") as client:
        return await client.post(
            "/api/message",
            json=body,
            headers={"Authorization": f"Bearer {secret}"},
        )


@pytest.mark.asyncio
async def test_health_and_not_found_routes():
    app = create_app(_settings())
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://relay.test") as client:
        health = await client.get("/health")
        missing = await client.get("/nope")

    assert health.status_code == 200
    assert health.json() == {"status": "ok"}
    assert missing.status_code == 404
    assert missing.json() == {"error": "Not found"}


@pytest.mark.asyncio
async def test_end_to_end_relay_delivers_streamed_reply():
    app = create_app(_settings(default_model="relay-model"))
    delivered: list[dict] = []

    def completion_handler(request: httpx.Request) -> httpx.Response:
        sent = json.loads(request.content)
        assert sent["messages"][-1] == {"role": "user", "content": "Hello AI"}
        return httpx.Response(
            200,
            content=(
                b'data: {"type":"message_start","message":{"usage":{"input_tokens":3}}}\n\n'
                b'data: {"type":"content_block_delta","delta":{"text":"Hi"}}\n\n'
                b'data: {"type":"content_block_delta","delta":{"text":" back"}}\n\n'
                b'data: {"type":"message_delta","usage":{"output_tokens":2}}\n\n'
                b"data: [DONE]\n\n"
            ),
        )

    def delivery_handler(request: httpx.Request) -> httpx.Response:
        delivered.append({"auth": request.headers.get("authorization"), "body": json.loads(request.content)})
        return httpx.Response(200, json={"status": "saved"})

    clients = _wire_outbound(app, completion_handler, delivery_handler)
    try:
        response = await _post_message(app, {"messageId": "m-1", "text": "Hello AI"})
        assert response.status_code == 200
        assert response.json() == {"status": "processing"}
        assert await app.state.dispatcher.drain(2.0) == 0
    finally:
        for client in clients:
            await client.aclose()

    assert delivered == [
        {
            "auth": "Bearer sec_test",
            "body": {
                "messageId": "m-1",
                "content": "Hi back",
                "metadata": {"model": "relay-model", "tokens": 5},
            },
        }
    ]


@pytest.mark.asyncio
async def test_end_to_end_402_delivers_billing_prompt():
    app = create_app(_settings())
    delivered: list[dict] = []

    def completion_handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(402, json={"error": {"message": "nope"}})

    def delivery_handler(request: httpx.Request) -> httpx.Response:
        delivered.append(json.loads(request.content))
        return httpx.Response(200, json={"status": "saved"})

    clients = _wire_outbound(app, completion_handler, delivery_handler)
    try:
        response = await _post_message(app, {"messageId": "m-2", "text": "hi"})
        assert response.status_code == 200
        await app.state.dispatcher.drain(2.0)
    finally:
        for client in clients:
            await client.aclose()

    assert delivered[0]["content"] == "You've run out of credits! Tap below to purchase more."
    assert delivered[0]["metadata"] == {"errorType": "billing", "action": "purchase_credits"}


@pytest.mark.asyncio
async def test_end_to_end_500_delivers_generic_apology():
    app = create_app(_settings())
    delivered: list[dict] = []

    def completion_handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"message": "internal failure"}})

    def delivery_handler(request: httpx.Request) -> httpx.Response:
        delivered.append(json.loads(request.content))
        return httpx.Response(200, json={"status": "saved"})

    clients = _wire_outbound(app, completion_handler, delivery_handler)
    try:
        await _post_message(app, {"messageId": "m-3", "text": "hi"})
        await app.state.dispatcher.drain(2.0)
    finally:
        for client in clients:
            await client.aclose()

    assert delivered == [
        {
            "messageId": "m-3",
            "content": "Sorry, something went wrong. Please try again.",
            "metadata": {"errorType": "error"},
        }
    ]


@pytest.mark.asyncio
async def test_end_to_end_empty_completion_skips_delivery():
    app = create_app(_settings())
    delivered: list[dict] = []

    def completion_handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"data: [DONE]\n\n")

    def delivery_handler(request: httpx.Request) -> httpx.Response:
        delivered.append(json.loads(request.content))
        return httpx.Response(200, json={"status": "saved"})

    clients = _wire_outbound(app, completion_handler, delivery_handler)
    try:
        await _post_message(app, {"messageId": "m-4", "text": "hi"})
        await app.state.dispatcher.drain(2.0)
    finally:
        for client in clients:
            await client.aclose()

    assert delivered == []


@pytest.mark.asyncio
async def test_delivery_failure_does_not_affect_ack():
    app = create_app(_settings())

    def completion_handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b'data: {"choices":[{"delta":{"content":"ok"}}]}\n\ndata: [DONE]\n\n')

    def delivery_handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="db down")

    clients = _wire_outbound(app, completion_handler, delivery_handler)
    try:
        response = await _post_message(app, {"messageId": "m-5", "text": "hi"})
        assert await app.state.dispatcher.drain(2.0) == 0
    finally:
        for client in clients:
            await client.aclose()

    assert response.status_code == 200
    assert response.json() == {"status": "processing"}


@pytest.mark.asyncio
async def test_unauthorized_request_never_reaches_generation():
    app = create_app(_settings())
    calls: list[str] = []

    def completion_handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, content=b"data: [DONE]\n\n")

    clients = _wire_outbound(app, completion_handler, lambda _r: httpx.Response(200, json={"status": "saved"}))
    try:
        response = await _post_message(app, {"messageId": "m-6", "text": "hi"}, secret="wrong")
        await app.state.dispatcher.drain(1.0)
    finally:
        for client in clients:
            await client.aclose()

    assert response.status_code == 401
    assert calls == []


def test_settings_accept_legacy_environment_names(monkeypatch):
    monkeypatch.setenv("VM_INTERNAL_SECRET", "legacy-secret")
    monkeypatch.setenv("LLM_PROXY_URL", "http://proxy.internal:3001")
    monkeypatch.setenv("LLM_PROXY_API_KEY", "legacy-key")
    monkeypatch.setenv("APP_SERVER_URL", "http://app.internal:3000")
    monkeypatch.setenv("PORT", "9090")

    loaded = Settings()

    assert loaded.shared_secret == "legacy-secret"
    assert loaded.completion_base_url == "http://proxy.internal:3001"
    assert loaded.completion_api_key == "legacy-key"
    assert loaded.app_server_url == "http://app.internal:3000"
    assert loaded.port == 9090
    assert loaded.max_request_body_bytes == 1024 * 1024


def test_check_required_settings_names_missing_variables():
    with pytest.raises(ConfigurationError, match="RELAY_SHARED_SECRET"):
        check_required_settings(_settings(shared_secret=""))
    check_required_settings(_settings())
