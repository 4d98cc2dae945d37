"""Billing vs. generic classification of generation failures."""

from __future__ import annotations

from typing import Literal

Classification = Literal["billing", "generic"]

CLASSIFICATION_BILLING: Classification = "billing"
CLASSIFICATION_GENERIC: Classification = "generic"

# 小写子串匹配；新增计费类错误只需追加条目
BILLING_ERROR_MARKERS: tuple[str, ...] = (
    "402",
    "insufficient credits",
    "insufficient_credits",
    "billing",
    "payment required",
)

PAYMENT_REQUIRED_STATUS = 402


def is_billing_error(message: str | None) -> bool:
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in BILLING_ERROR_MARKERS)


def classify_failure(message: str | None, status_code: int | None = None) -> Classification:
    if status_code == PAYMENT_REQUIRED_STATUS or is_billing_error(message):
        return CLASSIFICATION_BILLING
    return CLASSIFICATION_GENERIC
