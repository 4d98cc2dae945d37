"""FastAPI app factory; serve with `uvicorn relaybridge.core.app:create_app --factory`."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from relaybridge.adapters.completion.client import StreamingCompletionClient
from relaybridge.adapters.delivery.client import ResponseDeliveryClient
from relaybridge.adapters.webhook.gateway import WebhookIngestGateway, WebhookIngestMiddleware
from relaybridge.config.settings import Settings, settings as default_settings
from relaybridge.core.dispatcher import BackgroundDispatcher
from relaybridge.core.relay import RelayPipeline
from relaybridge.util.logger import logger


def create_app(config: Settings | None = None) -> FastAPI:
    cfg = config or default_settings

    completion_client = StreamingCompletionClient(
        base_url=cfg.completion_base_url,
        api_key=cfg.completion_api_key,
        path=cfg.completion_path,
        timeout_seconds=cfg.completion_timeout_seconds,
    )
    delivery_client = ResponseDeliveryClient(
        base_url=cfg.app_server_url,
        shared_secret=cfg.shared_secret,
        path=cfg.delivery_path,
        timeout_seconds=cfg.delivery_timeout_seconds,
    )
    pipeline = RelayPipeline(
        completion_client=completion_client,
        delivery_client=delivery_client,
        model=cfg.default_model,
        max_tokens=cfg.default_max_tokens,
    )
    dispatcher = BackgroundDispatcher(
        handler=pipeline.process,
        max_inflight=cfg.max_inflight_tasks,
        serialize_per_user=cfg.serialize_per_user,
    )
    gateway = WebhookIngestGateway(
        dispatcher=dispatcher,
        shared_secret=cfg.shared_secret,
        path=cfg.webhook_path,
        max_body_bytes=cfg.max_request_body_bytes,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if not cfg.shared_secret:
            logger.warning("shared secret is empty; webhook requests will be rejected with 500")
        logger.info(
            "relay ready webhook=%s completion=%s delivery=%s",
            cfg.webhook_path,
            completion_client.url,
            delivery_client.url,
        )
        try:
            yield
        finally:
            await dispatcher.drain(cfg.shutdown_drain_seconds)
            await completion_client.aclose()
            await delivery_client.aclose()

    app = FastAPI(title=cfg.app_name, lifespan=lifespan)
    app.state.gateway = gateway
    app.state.dispatcher = dispatcher
    app.state.pipeline = pipeline

    @app.get("/health")
    def health() -> dict:
        logger.debug("health check")
        return {"status": "ok"}

    @app.exception_handler(404)
    async def not_found(_request: Request, _exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": "Not found"})

    app.add_middleware(WebhookIngestMiddleware, gateway=gateway)
    return app
