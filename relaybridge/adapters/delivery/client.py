"""Outbound leg: post finished replies back to the app server."""

from __future__ import annotations

from threading import Lock

import httpx

from relaybridge.core.errors import DeliveryError
from relaybridge.core.models import DeliveryAck, DeliveryMetadata, DeliveryPayload
from relaybridge.util.logger import logger


BILLING_ERROR_MESSAGE = "You've run out of credits! Tap below to purchase more."
GENERIC_ERROR_MESSAGE = "Sorry, something went wrong. Please try again."
ACK_STATUS_SAVED = "saved"


class ResponseDeliveryClient:
    def __init__(
        self,
        *,
        base_url: str,
        shared_secret: str,
        path: str = "/api/response",
        timeout_seconds: float = 30.0,
    ) -> None:
        self.url = f"{base_url.strip().rstrip('/')}/{path.strip().lstrip('/')}"
        self.shared_secret = shared_secret
        self.timeout_seconds = max(1.0, float(timeout_seconds))

        self._client: httpx.AsyncClient | None = None
        self._client_lock = Lock()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(http2=False, timeout=httpx.Timeout(self.timeout_seconds))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def deliver(
        self,
        correlation_id: str,
        content: str,
        metadata: DeliveryMetadata | None = None,
    ) -> None:
        """Send one reply; raises DeliveryError unless the app server acks ``saved``."""

        payload = DeliveryPayload(messageId=correlation_id, content=content, metadata=metadata)
        client = self._get_client()
        try:
            response = await client.post(
                self.url,
                json=payload.to_wire(),
                headers={"Authorization": f"Bearer {self.shared_secret}"},
            )
        except httpx.HTTPError as exc:
            detail = (str(exc) or "").strip() or type(exc).__name__
            logger.warning("delivery http_error message_id=%s error=%s", correlation_id, detail)
            raise DeliveryError(f"Failed to send response to app server: {detail}", detail=detail) from exc

        if not response.is_success:
            detail = response.text or "unknown error"
            raise DeliveryError(
                f"Failed to send response to app server: {response.status_code} - {detail}",
                status_code=response.status_code,
                detail=detail,
            )

        try:
            raw = response.json()
        except (ValueError, RecursionError):
            raw = None
        status = DeliveryAck.model_validate(raw).status if isinstance(raw, dict) else None
        if status != ACK_STATUS_SAVED:
            raise DeliveryError(
                f"Unexpected response status: {status}",
                status_code=response.status_code,
                detail=response.text,
            )
        logger.debug("delivery acked message_id=%s chars=%d", correlation_id, len(content))

    async def deliver_billing_error(self, correlation_id: str) -> None:
        await self.deliver(
            correlation_id,
            BILLING_ERROR_MESSAGE,
            DeliveryMetadata(errorType="billing", action="purchase_credits"),
        )

    async def deliver_error(self, correlation_id: str, user_message: str = GENERIC_ERROR_MESSAGE) -> None:
        await self.deliver(correlation_id, user_message, DeliveryMetadata(errorType="error"))
