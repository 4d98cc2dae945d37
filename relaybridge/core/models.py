"""Relay transport models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from relaybridge.core.classifier import Classification


Role = Literal["user", "assistant"]


class ConversationTurn(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class InboundTrigger(BaseModel):
    """One validated ``POST /api/message`` body."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    correlation_id: str = Field(alias="messageId", min_length=1)
    text: str = Field(min_length=1)
    user_id: str | None = Field(default=None, alias="uid")
    prior_turns: tuple[ConversationTurn, ...] = Field(default=(), alias="conversationHistory")

    @property
    def serialization_key(self) -> str:
        return self.user_id or self.correlation_id


class CompletionRequest(BaseModel):
    model: str
    max_tokens: int
    messages: list[ConversationTurn] = Field(default_factory=list)

    def to_wire(self) -> dict:
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [turn.model_dump() for turn in self.messages],
            "stream": True,
        }


def build_completion_request(trigger: InboundTrigger, *, model: str, max_tokens: int) -> CompletionRequest:
    messages = list(trigger.prior_turns)
    messages.append(ConversationTurn(role="user", content=trigger.text))
    return CompletionRequest(model=model, max_tokens=max_tokens, messages=messages)


@dataclass(slots=True, frozen=True)
class CompletionSuccess:
    text: str
    input_tokens: int | None = None
    output_tokens: int | None = None

    @property
    def total_tokens(self) -> int | None:
        if self.input_tokens is None and self.output_tokens is None:
            return None
        return (self.input_tokens or 0) + (self.output_tokens or 0)


@dataclass(slots=True, frozen=True)
class CompletionFailure:
    message: str
    classification: Classification
    http_status: int | None = None


CompletionOutcome = CompletionSuccess | CompletionFailure


class DeliveryMetadata(BaseModel):
    errorType: str | None = None
    action: str | None = None
    model: str | None = None
    tokens: int | None = None


class DeliveryPayload(BaseModel):
    messageId: str
    content: str
    metadata: DeliveryMetadata | None = None

    def to_wire(self) -> dict:
        return self.model_dump(exclude_none=True)


class DeliveryAck(BaseModel):
    status: Any = None
