"""Tests for rpg_codex.llm — GeminiLLM request building, errors and retries."""

import json

import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock, patch

from rpg_codex.json_repair import StructuredOutputError
from rpg_codex.llm import (
    API_BASE,
    ApiKeyError,
    ContentBlockedError,
    GeminiLLM,
    LLMError,
    LLMOverloadedError,
    MissingApiKeyError,
    check_api_keys,
)
from rpg_codex.settings import AiSettings, AppSettings, SafetySettings


def _mock_response(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


def _html_response() -> MagicMock:
    resp = MagicMock()
    resp.status_code = 200
    resp.json.side_effect = json.JSONDecodeError("Expecting value", "<html>proxy</html>", 0)
    resp.raise_for_status = MagicMock()
    return resp


def _text_body(text: str, finish: str = "STOP") -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}, "finishReason": finish}]}


def _error_body(code: int, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(api_keys=["key-a", "key-b"])


@pytest.fixture
def llm(settings: AppSettings) -> GeminiLLM:
    return GeminiLLM(settings, retry_delay=0)


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("rpg_codex.llm.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------

class TestRequest:
    async def test_happy_path(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_text_body("  The fog lifts.  ")))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm.generate_text("Look around")
        assert result == "The fog lifts."

    async def test_posts_to_model_url(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_text_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.generate_text("prompt")
        url = mock_post.call_args[0][0]
        assert url == f"{API_BASE}/models/gemini-2.5-flash:generateContent"

    async def test_api_key_header(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_text_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.generate_text("prompt")
        assert mock_post.call_args.kwargs["headers"]["x-goog-api-key"] == "key-a"

    async def test_sampling_parameters(self) -> None:
        settings = AppSettings(
            api_keys=["k"],
            ai=AiSettings(temperature=0.7, top_p=0.9, top_k=20, max_output_tokens=1024, thinking_budget=512),
        )
        mock_post = AsyncMock(return_value=_mock_response(_text_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await GeminiLLM(settings).generate_text("prompt", "You are the GM.")
        body = mock_post.call_args.kwargs["json"]
        assert body["generationConfig"] == {
            "temperature": 0.7,
            "topP": 0.9,
            "topK": 20,
            "maxOutputTokens": 1024,
            "thinkingConfig": {"thinkingBudget": 512},
        }
        assert body["systemInstruction"] == {"parts": [{"text": "You are the GM."}]}
        assert body["contents"][0]["parts"][0]["text"] == "prompt"

    async def test_no_thinking_config_when_budget_zero(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_text_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.generate_text("prompt")
        body = mock_post.call_args.kwargs["json"]
        assert "thinkingConfig" not in body["generationConfig"]
        assert "systemInstruction" not in body

    async def test_safety_off_sends_block_none(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_text_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.generate_text("prompt")
        safety = mock_post.call_args.kwargs["json"]["safetySettings"]
        assert len(safety) == 4
        assert {s["threshold"] for s in safety} == {"BLOCK_NONE"}

    async def test_safety_on_sends_configured_thresholds(self) -> None:
        safety = SafetySettings(enabled=True)
        for s in safety.settings:
            s.threshold = "BLOCK_MEDIUM_AND_ABOVE"
        settings = AppSettings(api_keys=["k"], safety=safety)
        mock_post = AsyncMock(return_value=_mock_response(_text_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await GeminiLLM(settings).generate_text("prompt")
        sent = mock_post.call_args.kwargs["json"]["safetySettings"]
        assert {s["threshold"] for s in sent} == {"BLOCK_MEDIUM_AND_ABOVE"}

    async def test_settings_callable_read_per_call(self) -> None:
        current = {"settings": AppSettings(api_keys=["old"])}
        llm = GeminiLLM(lambda: current["settings"])
        mock_post = AsyncMock(return_value=_mock_response(_text_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.generate_text("one")
            current["settings"] = AppSettings(api_keys=["new"])
            await llm.generate_text("two")
        assert mock_post.call_args.kwargs["headers"]["x-goog-api-key"] == "new"

    async def test_thought_parts_skipped(self, llm: GeminiLLM) -> None:
        body = {"candidates": [{"content": {"parts": [
            {"text": "planning...", "thought": True},
            {"text": "The door opens."},
        ]}, "finishReason": "STOP"}]}
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(body))):
            assert await llm.generate_text("prompt") == "The door opens."


# ---------------------------------------------------------------------------
# Errors and retries
# ---------------------------------------------------------------------------

class TestErrors:
    async def test_missing_key(self) -> None:
        mock_post = AsyncMock()
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(MissingApiKeyError, match="API key"):
                await GeminiLLM(AppSettings()).generate_text("prompt")
        mock_post.assert_not_called()

    async def test_env_keys_used(self, monkeypatch) -> None:
        monkeypatch.setenv("GEMINI_API_KEYS", "env-1, env-2")
        mock_post = AsyncMock(return_value=_mock_response(_text_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await GeminiLLM(AppSettings()).generate_text("prompt")
        assert mock_post.call_args.kwargs["headers"]["x-goog-api-key"] == "env-1"

    async def test_blocked_prompt_not_retried(self, llm: GeminiLLM, no_sleep) -> None:
        body = {"promptFeedback": {"blockReason": "SAFETY"}}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ContentBlockedError, match="SAFETY"):
                await llm.generate_text("prompt")
        assert mock_post.call_count == 1
        no_sleep.assert_not_called()

    async def test_blocked_candidate_not_retried(self, llm: GeminiLLM) -> None:
        body = {"candidates": [{
            "finishReason": "SAFETY",
            "safetyRatings": [{"category": "HARM_CATEGORY_HARASSMENT", "blocked": True}],
        }]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ContentBlockedError, match="HARM_CATEGORY_HARASSMENT"):
                await llm.generate_text("prompt")
        assert mock_post.call_count == 1

    async def test_blocked_with_safety_on_suggests_disabling(self) -> None:
        settings = AppSettings(api_keys=["k"], safety=SafetySettings(enabled=True))
        body = {"promptFeedback": {"blockReason": "OTHER"}}
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(body))):
            with pytest.raises(ContentBlockedError, match="Disable the safety filter"):
                await GeminiLLM(settings).generate_text("prompt")

    async def test_rate_limit_retried_then_overloaded(self, llm: GeminiLLM, no_sleep) -> None:
        resp = _mock_response(_error_body(429, "Resource exhausted"), status=429)
        mock_post = AsyncMock(return_value=resp)
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMOverloadedError):
                await llm.generate_text("prompt")
        assert mock_post.call_count == 4  # 1 attempt + 3 retries
        assert no_sleep.call_count == 3

    async def test_backoff_doubles(self, settings: AppSettings, no_sleep) -> None:
        llm = GeminiLLM(settings, retry_delay=1.0)
        resp = _mock_response(_error_body(503, "Overloaded"), status=503)
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(LLMOverloadedError):
                await llm.generate_text("prompt")
        delays = [c.args[0] for c in no_sleep.call_args_list]
        assert delays == [1.0, 2.0, 4.0]

    async def test_rate_limit_rotates_key(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(side_effect=[
            _mock_response(_error_body(429, "Quota"), status=429),
            _mock_response(_text_body("ok")),
        ])
        with patch("httpx.AsyncClient.post", mock_post):
            assert await llm.generate_text("prompt") == "ok"
        keys = [c.kwargs["headers"]["x-goog-api-key"] for c in mock_post.call_args_list]
        assert keys == ["key-a", "key-b"]

    async def test_server_error_recovers(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(side_effect=[
            _mock_response(_error_body(500, "Internal"), status=500),
            _mock_response(_text_body("recovered")),
        ])
        with patch("httpx.AsyncClient.post", mock_post):
            assert await llm.generate_text("prompt") == "recovered"
        assert mock_post.call_count == 2

    async def test_invalid_key_not_retried(self, llm: GeminiLLM) -> None:
        resp = _mock_response(_error_body(400, "API key not valid. Please pass a valid API key."), status=400)
        mock_post = AsyncMock(return_value=resp)
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ApiKeyError, match="HTTP 400"):
                await llm.generate_text("prompt")
        assert mock_post.call_count == 1

    async def test_connect_error_retried(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMOverloadedError):
                await llm.generate_text("prompt")
        assert mock_post.call_count == 4

    async def test_non_json_body_retried(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(side_effect=[_html_response(), _mock_response(_text_body("recovered"))])
        with patch("httpx.AsyncClient.post", mock_post):
            assert await llm.generate_text("prompt") == "recovered"
        assert mock_post.call_count == 2

    async def test_empty_response_is_error(self, settings: AppSettings) -> None:
        llm = GeminiLLM(settings, retries=0)
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(_text_body("   ")))):
            with pytest.raises(LLMError):
                await llm.generate_text("prompt")

    async def test_recitation_not_retried(self, llm: GeminiLLM) -> None:
        body = {"candidates": [{"content": {"parts": []}, "finishReason": "RECITATION"}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="recitation"):
                await llm.generate_text("prompt")
        assert mock_post.call_count == 1


# ---------------------------------------------------------------------------
# JSON and embeddings
# ---------------------------------------------------------------------------

class TestJsonAndEmbed:
    async def test_generate_json_sends_schema(self, llm: GeminiLLM) -> None:
        schema = {"type": "OBJECT", "properties": {"tags": {"type": "ARRAY"}}}
        body = _text_body('```json\n{"tags": ["a"],}\n```')
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            data = await llm.generate_json("prompt", schema)
        assert data == {"tags": ["a"]}
        config = mock_post.call_args.kwargs["json"]["generationConfig"]
        assert config["responseMimeType"] == "application/json"
        assert config["responseSchema"] == schema

    async def test_generate_json_unparseable(self, llm: GeminiLLM) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(_text_body("no json here")))):
            with pytest.raises(StructuredOutputError):
                await llm.generate_json("prompt", {})

    async def test_embed(self, llm: GeminiLLM) -> None:
        body = {"embedding": {"values": [0.1, 0.2, 0.3]}}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            vector = await llm.embed("Old Bram: the ferryman")
        assert vector == [0.1, 0.2, 0.3]
        url = mock_post.call_args[0][0]
        assert url == f"{API_BASE}/models/text-embedding-004:embedContent"
        sent = mock_post.call_args.kwargs["json"]
        assert sent["model"] == "models/text-embedding-004"
        assert sent["content"]["parts"][0]["text"] == "Old Bram: the ferryman"

    async def test_embed_without_values(self, llm: GeminiLLM) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response({}))):
            with pytest.raises(LLMError, match="no values"):
                await llm.embed("x")

    async def test_embed_non_json_body(self, llm: GeminiLLM) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_html_response())):
            with pytest.raises(LLMError, match="Invalid JSON"):
                await llm.embed("x")


class TestCheckKeys:
    async def test_statuses(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock(side_effect=[
            _mock_response(_text_body("ok")),
            _mock_response(_error_body(429, "Quota"), status=429),
            _mock_response(_error_body(400, "API key not valid"), status=400),
        ])
        with patch("httpx.AsyncClient.post", mock_post):
            results = await check_api_keys(llm, ["good", "busy", "bad"])
        assert results == [
            {"index": 0, "status": "valid"},
            {"index": 1, "status": "rate_limited"},
            {"index": 2, "status": "invalid"},
        ]
        keys = [c.kwargs["headers"]["x-goog-api-key"] for c in mock_post.call_args_list]
        assert keys == ["good", "busy", "bad"]

    async def test_blank_key_invalid_without_request(self, llm: GeminiLLM) -> None:
        mock_post = AsyncMock()
        with patch("httpx.AsyncClient.post", mock_post):
            assert await llm.check_key("  ") == "invalid"
        mock_post.assert_not_called()
