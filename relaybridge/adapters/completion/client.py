"""
生成后端流式调用：发起一次 stream 请求并把分块帧重组为完整文本。
所有失败都收敛为 CompletionFailure，调用方无需 try/except。
"""

from __future__ import annotations

import asyncio
import json
from threading import Lock
from typing import Any

import httpx

from relaybridge.adapters.completion.frames import FRAME_INTERPRETERS, FrameInterpreter, StreamAccumulator
from relaybridge.core.classifier import classify_failure
from relaybridge.core.models import CompletionFailure, CompletionOutcome, CompletionRequest, CompletionSuccess
from relaybridge.util.logger import logger


def _decode_json_or_text(body: bytes) -> dict[str, Any] | str:
    text = body.decode("utf-8", errors="replace")
    if not text:
        return ""
    try:
        parsed = json.loads(text)
    except (ValueError, RecursionError):
        return text
    if isinstance(parsed, dict):
        return parsed
    return text


def _upstream_error_message(status_code: int, body: bytes) -> str:
    fallback = f"generation request failed: {status_code}"
    payload = _decode_json_or_text(body)
    if not isinstance(payload, dict):
        return fallback
    error = payload.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str) and error["message"].strip():
        return error["message"].strip()[:600]
    if isinstance(error, str) and error.strip():
        return error.strip()[:600]
    return fallback


def _transport_error_message(exc: BaseException) -> str:
    detail = (str(exc) or "").strip()
    return detail or type(exc).__name__


class StreamingCompletionClient:
    """Streams one completion from the generation backend."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        path: str = "/v1/responses",
        timeout_seconds: float = 120.0,
        interpreters: tuple[FrameInterpreter, ...] = FRAME_INTERPRETERS,
    ) -> None:
        self.url = f"{base_url.strip().rstrip('/')}/{path.strip().lstrip('/')}"
        self.api_key = api_key
        self.timeout_seconds = max(1.0, float(timeout_seconds))
        self.interpreters = interpreters

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

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    async def complete(self, request: CompletionRequest) -> CompletionOutcome:
        body = json.dumps(request.to_wire(), ensure_ascii=False).encode("utf-8")
        logger.debug(
            "completion start url=%s model=%s messages=%d payload_bytes=%d",
            self.url,
            request.model,
            len(request.messages),
            len(body),
        )
        try:
            client = self._get_client()
            async with client.stream("POST", self.url, content=body, headers=self._headers()) as response:
                if not 200 <= response.status_code < 300:
                    message = _upstream_error_message(response.status_code, await response.aread())
                    classification = classify_failure(message, response.status_code)
                    logger.warning(
                        "completion upstream error status=%s classification=%s message=%s",
                        response.status_code,
                        classification,
                        message,
                    )
                    return CompletionFailure(
                        message=message,
                        classification=classification,
                        http_status=response.status_code,
                    )
                logger.debug("completion streaming status=%s", response.status_code)
                return await self._read_stream(response)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            message = _transport_error_message(exc)
            classification = classify_failure(message)
            logger.warning(
                "completion transport error url=%s classification=%s error=%s",
                self.url,
                classification,
                message,
            )
            return CompletionFailure(message=message, classification=classification)

    async def _read_stream(self, response: httpx.Response) -> CompletionSuccess:
        accumulator = StreamAccumulator(self.interpreters)
        # aiter_lines 负责跨 chunk 拼行，并在流结束时交出残留的半行
        async for line in response.aiter_lines():
            accumulator.consume_line(line)
            if accumulator.done:
                break

        result = CompletionSuccess(
            text=accumulator.text,
            input_tokens=accumulator.input_tokens,
            output_tokens=accumulator.output_tokens,
        )
        logger.debug(
            "completion done chars=%d frames=%d done_marker=%s input_tokens=%s output_tokens=%s",
            len(result.text),
            accumulator.frames_seen,
            accumulator.done,
            result.input_tokens,
            result.output_tokens,
        )
        return result
