"""
OpenAI-compatible LLM HTTP client.

Implements the Model Gateway over ``httpx``: a pooled HTTP/2 client,
``POST /chat/completions`` for completions and server-sent events for
streaming. Provider failures are mapped onto the gateway error taxonomy;
nothing is retried here.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx

from cara.chat.logging_utils import should_log_feature
from cara.chat.models import (
    CompletionResult,
    ConversationContext,
    StreamChunk,
    ToolCallRequest,
    ToolDefinition,
)
from cara.config import PROVIDER_KEY_MAP, Configuration
from cara.errors import (
    AuthenticationFailure,
    GatewayError,
    MalformedResponse,
    NetworkFailure,
    RateLimited,
)

logger = logging.getLogger(__name__)

HTTP_OK = 200
RETRY_INFO_TYPE = "type.googleapis.com/google.rpc.RetryInfo"

# Provider settings that are not request parameters
EXCLUDED_PAYLOAD_KEYS = {"base_url", "model", "stop_tokens", "end_of_text", "stop_token_ids", "end_token_id"}


def strip_provider_prefix(model: str) -> str:
    """``openrouter:mistralai/mistral-7b`` -> ``mistralai/mistral-7b``."""
    prefix, sep, rest = model.partition(":")
    if sep and prefix in PROVIDER_KEY_MAP and rest:
        return rest
    return model


def find_retry_delay(body: Any) -> str | None:
    """Find a ``google.rpc.RetryInfo`` delay hint in a provider error body."""
    if isinstance(body, list):
        body = body[0] if body else {}
    if not isinstance(body, dict):
        return None

    candidates = [body.get("details")]
    error = body.get("error")
    if isinstance(error, dict):
        candidates.append(error.get("details"))

    for details in candidates:
        for detail in details or []:
            if isinstance(detail, dict) and detail.get("@type") == RETRY_INFO_TYPE:
                delay = detail.get("retryDelay")
                if isinstance(delay, str) and delay:
                    return delay
    return None


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return fallback


def map_status_error(status_code: int, body_text: str, headers: httpx.Headers | None = None) -> GatewayError:
    """Translate a non-200 provider response into a gateway error."""
    try:
        body: Any = json.loads(body_text) if body_text else None
    except json.JSONDecodeError:
        body = None

    message = f"Provider returned HTTP {status_code}: {_error_message(body, body_text[:200])}"

    if status_code in (401, 403):
        return AuthenticationFailure(message)
    if status_code == 429:
        retry_after = (headers or {}).get("retry-after") or find_retry_delay(body)
        if retry_after and retry_after.isdigit():
            retry_after = f"{retry_after}s"
        return RateLimited(message, retry_after=retry_after)
    if status_code >= 500:
        return NetworkFailure(message)
    return MalformedResponse(message)


class HTTPStreamHandle:
    """
    Stream handle over an open streaming HTTP response.

    Lines are read from the socket only when the consumer asks for the next
    chunk, so a slow consumer applies backpressure all the way to the provider.
    """

    def __init__(self, response: httpx.Response, model: str):
        self._response = response
        self._model = model
        self._iterator: AsyncIterator[StreamChunk] | None = None
        self.closed = False

    def __aiter__(self) -> AsyncIterator[StreamChunk]:
        if self._iterator is None:
            self._iterator = self._iterate()
        return self._iterator

    async def _iterate(self) -> AsyncIterator[StreamChunk]:
        if self.closed:
            return
        try:
            async for line in self._response.aiter_lines():
                if not line.strip() or not line.startswith("data:"):
                    continue

                data = line[5:].strip()
                if data == "[DONE]":
                    break

                try:
                    payload: dict[str, Any] = json.loads(data)
                except json.JSONDecodeError as e:
                    raise MalformedResponse(f"Invalid JSON in stream chunk: {e}") from e

                if "error" in payload:
                    error = payload["error"]
                    code = error.get("code") if isinstance(error, dict) else None
                    if isinstance(code, int) and code >= 400:
                        raise map_status_error(code, json.dumps(payload))
                    raise MalformedResponse(f"Provider error mid-stream: {_error_message(payload, data[:200])}")

                for chunk in _chunks_from_payload(payload):
                    yield chunk
        except httpx.HTTPError as e:
            raise NetworkFailure(f"Stream interrupted: {e}") from e
        finally:
            await self._response.aclose()

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._iterator is not None:
            await self._iterator.aclose()  # type: ignore[attr-defined]
        await self._response.aclose()
        logger.debug("← LLM: stream closed (%s)", self._model)


def _chunks_from_payload(payload: dict[str, Any]) -> list[StreamChunk]:
    chunks: list[StreamChunk] = []
    for choice in payload.get("choices") or []:
        delta = choice.get("delta") or {}
        reasoning = delta.get("reasoning") or delta.get("reasoning_content")
        if reasoning:
            chunks.append(StreamChunk(type="reasoning", text=reasoning))
        content = delta.get("content")
        if content is not None:
            chunks.append(StreamChunk(type="content", text=content))
        if choice.get("finish_reason"):
            chunks.append(StreamChunk(type="finish", text=choice["finish_reason"]))
    return chunks


class LLMClient:
    """
    Model Gateway backed by an OpenAI-compatible HTTP API.

    Pass ``http_client`` to supply a preconfigured ``httpx.AsyncClient``
    (for example one built on ``httpx.MockTransport``); otherwise a pooled
    HTTP/2 client is created from the configuration.
    """

    def __init__(self, configuration: Configuration, http_client: httpx.AsyncClient | None = None) -> None:
        self.configuration = configuration
        self.config: dict[str, Any] = configuration.get_llm_config()
        self._owns_client = http_client is None

        if http_client is None:
            pool_config = configuration.get_connection_pool_config()
            http_client = httpx.AsyncClient(
                base_url=self.config["base_url"],
                headers={
                    "Authorization": f"Bearer {configuration.llm_api_key}",
                    "Content-Type": "application/json",
                },
                timeout=pool_config["request_timeout_seconds"],
                http2=True,
                limits=httpx.Limits(
                    max_connections=pool_config["max_connections"],
                    max_keepalive_connections=pool_config["max_keepalive_connections"],
                    keepalive_expiry=pool_config["keepalive_expiry_seconds"],
                ),
                trust_env=False,
            )
            logger.info("LLM client initialized with provider: %s", configuration.active_provider)

        self.client = http_client

    @property
    def default_model(self) -> str:
        return self.config["model"]

    def _build_payload(
        self,
        model: str | None,
        context: ConversationContext,
        tools: list[ToolDefinition],
        stream: bool = False,
    ) -> dict[str, Any]:
        """
        Build API payload by passing through all provider config parameters.
        New request parameters need no code change, only a config entry.
        """
        payload: dict[str, Any] = {
            "model": strip_provider_prefix(model or self.default_model),
            "messages": context.to_api(),
        }
        if stream:
            payload["stream"] = True

        for key, value in self.config.items():
            if key not in EXCLUDED_PAYLOAD_KEYS and value is not None:
                payload[key] = value

        if tools:
            payload["tools"] = [tool.model_dump(exclude_none=True) for tool in tools]

        return payload

    def _log_http_request(self, method: str, url: str, status_code: int, duration_ms: float) -> None:
        if should_log_feature("connection_pool", "http_requests"):
            logger.info("🔌 HTTP %s %s | Status: %d | Duration: %.2fms", method, url, status_code, duration_ms)

    async def request_completion(
        self,
        model: str | None,
        context: ConversationContext,
        tools: list[ToolDefinition],
    ) -> CompletionResult:
        payload = self._build_payload(model, context, tools)
        logger.info("→ LLM: requesting completion (%s, %d messages)", payload["model"], len(context))

        start_time = time.monotonic()
        try:
            response = await self.client.post("/chat/completions", json=payload)
        except httpx.HTTPError as e:
            logger.error("HTTP error: %s: %s", type(e).__name__, e)
            raise NetworkFailure(f"HTTP error: {e}") from e
        self._log_http_request("POST", "/chat/completions", response.status_code, (time.monotonic() - start_time) * 1000)

        if response.status_code != HTTP_OK:
            raise map_status_error(response.status_code, response.text, response.headers)

        try:
            result = response.json()
            choice = result["choices"][0]
            message = choice["message"]
        except (json.JSONDecodeError, KeyError, IndexError, TypeError) as e:
            raise MalformedResponse(f"Unexpected response format: {e!s}") from e

        tool_calls = [ToolCallRequest.from_api(call) for call in message.get("tool_calls") or []]
        logger.info("← LLM: completion received (%d tool calls)", len(tool_calls))

        return CompletionResult(
            text=message.get("content") or "",
            tool_calls=tool_calls,
            model=result.get("model") or payload["model"],
            finish_reason=choice.get("finish_reason"),
        )

    async def request_stream(
        self,
        model: str | None,
        context: ConversationContext,
        tools: list[ToolDefinition],
    ) -> HTTPStreamHandle:
        payload = self._build_payload(model, context, tools, stream=True)
        logger.info("→ LLM: opening stream (%s, %d messages)", payload["model"], len(context))

        request = self.client.build_request(
            "POST",
            "/chat/completions",
            json=payload,
            headers={"Accept": "text/event-stream", "Accept-Encoding": "identity"},
        )
        start_time = time.monotonic()
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error("HTTP error during streaming: %s: %s", type(e).__name__, e)
            raise NetworkFailure(f"HTTP error: {e}") from e
        self._log_http_request("POST", "/chat/completions", response.status_code, (time.monotonic() - start_time) * 1000)

        if response.status_code != HTTP_OK:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            finally:
                await response.aclose()
            raise map_status_error(response.status_code, body, response.headers)

        return HTTPStreamHandle(response, payload["model"])

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> LLMClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()
