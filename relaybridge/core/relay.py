"""Background relay pipeline: completion -> classification -> delivery."""

from __future__ import annotations

import asyncio
import logging

from relaybridge.adapters.completion.client import StreamingCompletionClient
from relaybridge.adapters.delivery.client import ResponseDeliveryClient
from relaybridge.core.classifier import CLASSIFICATION_BILLING, classify_failure
from relaybridge.core.models import (
    CompletionFailure,
    CompletionOutcome,
    DeliveryMetadata,
    InboundTrigger,
    build_completion_request,
)
from relaybridge.observability.logging import log_event
from relaybridge.observability.metrics import emit_counter
from relaybridge.util.logger import logger


class RelayPipeline:
    """Runs one trigger to a terminal state. Only delivery errors escape."""

    def __init__(
        self,
        *,
        completion_client: StreamingCompletionClient,
        delivery_client: ResponseDeliveryClient,
        model: str,
        max_tokens: int,
    ) -> None:
        self.completion_client = completion_client
        self.delivery_client = delivery_client
        self.model = model
        self.max_tokens = max_tokens

    async def process(self, trigger: InboundTrigger) -> None:
        message_id = trigger.correlation_id
        log_event(
            "generation_started",
            message_id=message_id,
            uid=trigger.user_id or "unknown",
            text_chars=len(trigger.text),
            prior_turns=len(trigger.prior_turns),
        )

        outcome = await self._generate(trigger)

        if isinstance(outcome, CompletionFailure):
            emit_counter("relay_generation_failure", labels={"classification": outcome.classification})
            log_event(
                "generation_failed",
                level=logging.WARNING,
                message_id=message_id,
                classification=outcome.classification,
                status=outcome.http_status,
                error=outcome.message,
            )
            if outcome.classification == CLASSIFICATION_BILLING:
                await self.delivery_client.deliver_billing_error(message_id)
            else:
                await self.delivery_client.deliver_error(message_id)
            log_event("delivery_sent", message_id=message_id, kind=f"error:{outcome.classification}")
            return

        if not outcome.text:
            emit_counter("relay_silent_turn")
            log_event("silent_turn", message_id=message_id)
            return

        metadata = DeliveryMetadata(model=self.model, tokens=outcome.total_tokens)
        await self.delivery_client.deliver(message_id, outcome.text, metadata)
        emit_counter("relay_delivery_success")
        log_event(
            "delivery_sent",
            message_id=message_id,
            kind="reply",
            chars=len(outcome.text),
            tokens=outcome.total_tokens,
        )

    async def _generate(self, trigger: InboundTrigger) -> CompletionOutcome:
        try:
            request = build_completion_request(trigger, model=self.model, max_tokens=self.max_tokens)
            return await self.completion_client.complete(request)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            message = (str(exc) or "").strip() or type(exc).__name__
            logger.exception("generation crashed message_id=%s", trigger.correlation_id)
            return CompletionFailure(message=message, classification=classify_failure(message))
