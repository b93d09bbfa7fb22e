"""LLM gateway — HTTP connection to the Gemini generative language API.

The pipeline injects an object matching the LLM protocol:

    async def generate_text(prompt, system_instruction=None, *, stage=...) -> str
    async def generate_json(prompt, schema, *, stage=...) -> Any
    async def embed(text) -> list[float]

`stage` identifies which pipeline step is calling ("narrator", "summarizer",
"codex_expand", ...). It is used for logging only.

GeminiLLM is the production implementation. Every call:
  1. picks the active key from a rotating pool (MissingApiKeyError if empty),
  2. sends the configured sampling parameters and safety thresholds,
  3. classifies failures:
       non-retryable  ContentBlockedError, ApiKeyError, InvalidRequestError
       retryable      RateLimitError (rotates key), ServerError, transport errors
  4. retries only the retryable class with exponential backoff, and raises
     LLMOverloadedError once the ceiling is reached.

An empty or blocked response is always an error, never "".

Tests use StubLLM (defined in conftest.py) instead.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Literal, Protocol, TypeVar

import httpx

from rpg_codex.json_repair import extract_json
from rpg_codex.settings import AppSettings, resolve_api_keys

logger = logging.getLogger(__name__)

API_BASE = "https://generativelanguage.googleapis.com/v1beta"
MAX_RETRIES = 3
RETRY_DELAY = 1.0  # seconds, doubled after every retry

BLOCK_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII"}

T = TypeVar("T")
KeyStatus = Literal["valid", "invalid", "rate_limited"]


# ---------------------------------------------------------------------------
# Protocols: every gateway implementation must match these signatures
# ---------------------------------------------------------------------------

class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


class LLM(Embedder, Protocol):
    async def generate_text(
        self, prompt: str, system_instruction: str | None = None, *, stage: str = "text"
    ) -> str: ...

    async def generate_json(self, prompt: str, schema: dict[str, Any], *, stage: str = "json") -> Any: ...


# ---------------------------------------------------------------------------
# Key pool
# ---------------------------------------------------------------------------

class KeyPool:
    """Round-robin cursor over the configured API keys.

    The key list itself is re-read from settings on every call, so keys added
    in Settings take effect immediately; only the cursor lives here.
    """

    def __init__(self) -> None:
        self._index = 0

    def select(self, keys: list[str]) -> str:
        if not keys:
            raise MissingApiKeyError("No API key configured. Add an API key in Settings.")
        if self._index >= len(keys):
            self._index = 0
        return keys[self._index]

    def rotate(self) -> None:
        self._index += 1


# ---------------------------------------------------------------------------
# GeminiLLM
# ---------------------------------------------------------------------------

class GeminiLLM:
    """Async client for the Gemini generateContent / embedContent endpoints.

    Args:
        settings:     AppSettings, or a zero-argument callable returning the
                      current settings (so edits apply without rebuilding).
        base_url:     API root. Defaults to the public v1beta endpoint.
        timeout:      HTTP timeout in seconds.
        retries:      Retry ceiling for retryable failures.
        retry_delay:  Initial backoff in seconds; doubles per retry.
    """

    def __init__(
        self,
        settings: AppSettings | Callable[[], AppSettings],
        base_url: str = API_BASE,
        timeout: float = 120.0,
        retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
    ) -> None:
        if isinstance(settings, AppSettings):
            fixed = settings
            self._settings: Callable[[], AppSettings] = lambda: fixed
        else:
            self._settings = settings
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._retries = retries
        self._retry_delay = retry_delay
        self._pool = KeyPool()

    # -- request building ---------------------------------------------------

    def _generation_config(self, settings: AppSettings, schema: dict[str, Any] | None) -> dict[str, Any]:
        ai = settings.ai
        config: dict[str, Any] = {
            "temperature": ai.temperature,
            "topP": ai.top_p,
            "topK": ai.top_k,
            "maxOutputTokens": ai.max_output_tokens,
        }
        if ai.thinking_budget > 0:
            config["thinkingConfig"] = {"thinkingBudget": ai.thinking_budget}
        if schema is not None:
            config["responseMimeType"] = "application/json"
            config["responseSchema"] = schema
        return config

    def _safety_settings(self, settings: AppSettings) -> list[dict[str, str]]:
        if settings.safety.enabled:
            return [s.model_dump() for s in settings.safety.settings]
        return [{"category": s.category, "threshold": "BLOCK_NONE"} for s in settings.safety.settings]

    def _build_body(
        self,
        settings: AppSettings,
        prompt: str,
        system_instruction: str | None = None,
        schema: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "safetySettings": self._safety_settings(settings),
            "generationConfig": self._generation_config(settings, schema),
        }
        if system_instruction:
            body["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        return body

    # -- transport ----------------------------------------------------------

    async def _post(self, url: str, body: dict[str, Any], api_key: str) -> dict[str, Any]:
        headers = {"Content-Type": "application/json", "x-goog-api-key": api_key}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise _classify_status(e.response) from e
        except httpx.ConnectError as e:
            raise TransportError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.TimeoutException as e:
            raise TransportError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.TransportError as e:
            raise TransportError(f"Network error talking to LLM backend: {e}") from e
        try:
            data = resp.json()
        except ValueError as e:
            raise ServerError("Invalid JSON from LLM backend") from e
        if not isinstance(data, dict):
            raise ServerError("Unexpected response shape from LLM backend")
        return data

    async def _with_retry(self, stage: str, call: Callable[[], Awaitable[T]]) -> T:
        delay = self._retry_delay
        for attempt in range(self._retries + 1):
            try:
                return await call()
            except RetryableLLMError as e:
                if attempt >= self._retries:
                    raise LLMOverloadedError(
                        "The model service is overloaded. Please wait a moment and try again."
                    ) from e
                if isinstance(e, RateLimitError):
                    self._pool.rotate()
                logger.warning(
                    "llm call stage=%s failed (%s); retrying in %.1fs, %d attempt(s) left",
                    stage, e, delay, self._retries - attempt,
                )
                await asyncio.sleep(delay)
                delay *= 2
        raise AssertionError("unreachable")

    async def _generate(
        self,
        stage: str,
        prompt: str,
        system_instruction: str | None,
        schema: dict[str, Any] | None,
    ) -> str:
        settings = self._settings()
        api_key = self._pool.select(resolve_api_keys(settings))
        url = f"{self._base_url}/models/{settings.ai.model_name}:generateContent"
        body = self._build_body(settings, prompt, system_instruction, schema)
        logger.debug("llm call stage=%s model=%s prompt_len=%d", stage, settings.ai.model_name, len(prompt))
        data = await self._post(url, body, api_key)
        text = _parse_text(data, safety_enabled=settings.safety.enabled)
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text

    # -- public API ---------------------------------------------------------

    async def generate_text(
        self, prompt: str, system_instruction: str | None = None, *, stage: str = "text"
    ) -> str:
        return await self._with_retry(
            stage, lambda: self._generate(stage, prompt, system_instruction, None)
        )

    async def generate_json(self, prompt: str, schema: dict[str, Any], *, stage: str = "json") -> Any:
        """Schema-constrained generation. Raises StructuredOutputError if unparseable."""
        text = await self._with_retry(stage, lambda: self._generate(stage, prompt, None, schema))
        return extract_json(text)

    async def embed(self, text: str) -> list[float]:
        """Embed text with the configured embedding model. Single attempt."""
        settings = self._settings()
        api_key = self._pool.select(resolve_api_keys(settings))
        model = settings.ai.embedding_model_name
        url = f"{self._base_url}/models/{model}:embedContent"
        body = {"model": f"models/{model}", "content": {"parts": [{"text": text}]}}
        data = await self._post(url, body, api_key)
        values = (data.get("embedding") or {}).get("values")
        if not values:
            raise LLMError("Embedding response contained no values")
        return [float(v) for v in values]

    async def check_key(self, api_key: str) -> KeyStatus:
        """Probe one key with a minimal request."""
        if not api_key.strip():
            return "invalid"
        settings = self._settings()
        url = f"{self._base_url}/models/{settings.ai.model_name}:generateContent"
        body = {"contents": [{"role": "user", "parts": [{"text": "test"}]}]}
        try:
            await self._post(url, body, api_key.strip())
        except RateLimitError:
            return "rate_limited"
        except LLMError as e:
            logger.info("API key check failed: %s", e)
            return "invalid"
        return "valid"


async def check_api_keys(llm: GeminiLLM, keys: list[str]) -> list[dict[str, Any]]:
    """Check keys one by one, in order. Returns [{"index", "status"}]."""
    results = []
    for i, key in enumerate(keys):
        results.append({"index": i, "status": await llm.check_key(key)})
    return results


# ---------------------------------------------------------------------------
# Response parsing and error classification
# ---------------------------------------------------------------------------

def _parse_text(data: dict[str, Any], safety_enabled: bool = False) -> str:
    feedback = data.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        raise ContentBlockedError(
            f"The request was blocked by the content filter ({feedback['blockReason']}).",
            safety_enabled=safety_enabled,
        )

    candidates = data.get("candidates") or []
    if not candidates:
        raise EmptyResponseError("The model returned no candidates.")
    candidate = candidates[0]
    finish_reason = candidate.get("finishReason")

    if finish_reason in BLOCK_FINISH_REASONS:
        blocked = [r.get("category", "?") for r in candidate.get("safetyRatings") or [] if r.get("blocked")]
        detail = f" Categories: {', '.join(blocked)}." if blocked else ""
        raise ContentBlockedError(
            f"The response was blocked by the content filter ({finish_reason}).{detail}",
            safety_enabled=safety_enabled,
        )

    parts = (candidate.get("content") or {}).get("parts") or []
    text = "".join(p.get("text", "") for p in parts if not p.get("thought"))
    if not text.strip():
        if finish_reason == "RECITATION":
            raise LLMError("The model declined to answer (recitation). Try rephrasing the action.")
        raise EmptyResponseError(f"The model returned an empty response (finish_reason={finish_reason}).")
    return text.strip()


def _classify_status(response: httpx.Response) -> LLMError:
    status = response.status_code
    message = ""
    try:
        message = (response.json().get("error") or {}).get("message", "")
    except (ValueError, AttributeError):
        pass
    detail = f"LLM backend returned HTTP {status}" + (f": {message}" if message else "")

    if status == 429:
        return RateLimitError(detail)
    if status >= 500:
        return ServerError(detail)
    if status in (401, 403) or "API key" in message or "API_KEY" in message:
        return ApiKeyError(detail)
    if status == 400:
        return InvalidRequestError(detail)
    return LLMError(detail)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""


class MissingApiKeyError(LLMError):
    """No usable credential. Never retried; the user must add a key."""


class ApiKeyError(LLMError):
    """The backend rejected the credential (401/403/invalid key)."""


class InvalidRequestError(LLMError):
    """The backend rejected the request itself (400)."""


class ContentBlockedError(LLMError):
    """The content filter blocked the prompt or the response. Never retried."""

    def __init__(self, message: str, safety_enabled: bool = False) -> None:
        if safety_enabled:
            message += " Disable the safety filter in Settings or rephrase the action."
        super().__init__(message)
        self.safety_enabled = safety_enabled


class RetryableLLMError(LLMError):
    """Transient failure; retried with backoff."""


class RateLimitError(RetryableLLMError):
    pass


class ServerError(RetryableLLMError):
    pass


class TransportError(RetryableLLMError):
    pass


class EmptyResponseError(RetryableLLMError):
    pass


class LLMOverloadedError(LLMError):
    """Retryable failures exhausted the retry ceiling."""
