"""
入站 webhook：校验密钥、读取并解析请求体、立即 ack，然后把处理交给后台任务。
gateway 只认 POST <webhook_path>，其余请求原样交回外层 FastAPI 应用。
"""

from __future__ import annotations

import hmac
import json
from dataclasses import dataclass
from typing import Any

from fastapi.responses import JSONResponse
from starlette.requests import ClientDisconnect, Request
from starlette.types import ASGIApp, Receive, Scope, Send

from relaybridge.core.dispatcher import BackgroundDispatcher
from relaybridge.core.models import ConversationTurn, InboundTrigger
from relaybridge.observability.logging import log_event
from relaybridge.observability.metrics import emit_counter
from relaybridge.util.logger import logger


_VALID_ROLES = frozenset({"user", "assistant"})


@dataclass(slots=True)
class BodyReadResult:
    ok: bool
    value: Any = None
    error: str = ""


async def read_json_body(request: Request, max_bytes: int) -> BodyReadResult:
    chunks: list[bytes] = []
    total = 0
    try:
        async for chunk in request.stream():
            total += len(chunk)
            if max_bytes > 0 and total > max_bytes:
                logger.warning("webhook body over limit read_bytes=%d max=%d", total, max_bytes)
                return BodyReadResult(ok=False, error="payload too large")
            chunks.append(chunk)
    except ClientDisconnect:
        return BodyReadResult(ok=False, error="client disconnected")

    raw = b"".join(chunks).decode("utf-8", errors="replace")
    if not raw.strip():
        return BodyReadResult(ok=False, error="empty payload")
    try:
        return BodyReadResult(ok=True, value=json.loads(raw))
    except (ValueError, RecursionError) as exc:
        return BodyReadResult(ok=False, error=str(exc) or type(exc).__name__)


def _parse_history(raw: Any, message_id: str) -> list[ConversationTurn]:
    if not isinstance(raw, list):
        return []
    turns: list[ConversationTurn] = []
    for item in raw:
        if (
            isinstance(item, dict)
            and item.get("role") in _VALID_ROLES
            and isinstance(item.get("content"), str)
        ):
            turns.append(ConversationTurn(role=item["role"], content=item["content"]))
        else:
            logger.debug("webhook dropped malformed history entry message_id=%s", message_id)
    return turns


def parse_trigger(body: Any) -> tuple[InboundTrigger | None, str]:
    """Validate a decoded webhook body; returns (trigger, "") or (None, error)."""

    if not isinstance(body, dict):
        return None, "Missing or invalid messageId"
    message_id = body.get("messageId")
    if not isinstance(message_id, str) or not message_id:
        return None, "Missing or invalid messageId"
    text = body.get("text")
    if not isinstance(text, str) or not text:
        return None, "Missing or invalid text"

    uid = body.get("uid")
    trigger = InboundTrigger(
        correlation_id=message_id,
        text=text,
        user_id=uid if isinstance(uid, str) and uid else None,
        prior_turns=_parse_history(body.get("conversationHistory"), message_id),
    )
    return trigger, ""


class WebhookIngestGateway:
    def __init__(
        self,
        *,
        dispatcher: BackgroundDispatcher,
        shared_secret: str,
        path: str = "/api/message",
        max_body_bytes: int = 1024 * 1024,
    ) -> None:
        self.dispatcher = dispatcher
        self.shared_secret = shared_secret
        self.path = path
        self.max_body_bytes = max_body_bytes

    def matches(self, scope: Scope) -> bool:
        return (
            scope.get("type") == "http"
            and str(scope.get("method") or "").upper() == "POST"
            and str(scope.get("path") or "") == self.path
        )

    def _authorized(self, request: Request) -> bool:
        presented = request.headers.get("authorization", "")
        expected = f"Bearer {self.shared_secret}"
        return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> bool:
        """Handle the webhook if the route matches; False lets the caller try other routes."""

        if not self.matches(scope):
            return False

        request = Request(scope, receive)
        response, trigger = await self._handle(request)
        await response(scope, receive, send)
        if trigger is not None:
            # ack 已写出，再派发后台任务；不等待其完成
            self.dispatcher.spawn(trigger)
            log_event("trigger_acked", message_id=trigger.correlation_id, inflight=self.dispatcher.inflight)
        return True

    async def _handle(self, request: Request) -> tuple[JSONResponse, InboundTrigger | None]:
        if not self.shared_secret:
            logger.error("webhook shared secret not configured")
            return self._reject(500, "Server misconfigured", "misconfigured"), None

        if not self._authorized(request):
            logger.warning("webhook auth failed client=%s", request.client.host if request.client else "")
            return self._reject(401, "Unauthorized", "unauthorized"), None

        body = await read_json_body(request, self.max_body_bytes)
        if not body.ok:
            logger.warning("webhook body rejected error=%s", body.error)
            return self._reject(400, body.error, "bad_body"), None

        trigger, error = parse_trigger(body.value)
        if trigger is None:
            logger.warning("webhook validation failed error=%s", error)
            return self._reject(400, error, "invalid_fields"), None

        emit_counter("relay_trigger_accepted")
        logger.info(
            "webhook accepted message_id=%s uid=%s text_chars=%d history=%d",
            trigger.correlation_id,
            trigger.user_id or "unknown",
            len(trigger.text),
            len(trigger.prior_turns),
        )
        return JSONResponse(status_code=200, content={"status": "processing"}), trigger

    @staticmethod
    def _reject(status_code: int, error: str, reason: str) -> JSONResponse:
        emit_counter("relay_trigger_rejected", labels={"reason": reason})
        return JSONResponse(status_code=status_code, content={"error": error})


class WebhookIngestMiddleware:
    """Gives the webhook gateway first refusal before FastAPI routing."""

    def __init__(self, app: ASGIApp, gateway: WebhookIngestGateway) -> None:
        self.app = app
        self.gateway = gateway

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if await self.gateway(scope, receive, send):
            return
        await self.app(scope, receive, send)
