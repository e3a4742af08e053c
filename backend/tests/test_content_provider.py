from __future__ import annotations

import json
from types import SimpleNamespace

import httpx
import pytest
from openai import APITimeoutError, RateLimitError

from trailgen.config import Settings
from trailgen.content_provider import (
    GenerationRequest,
    HttpContentProvider,
    OpenAIContentProvider,
    TemplateContentProvider,
    build_content_provider,
)
from trailgen.errors import (
    ContentProviderError,
    MalformedContentError,
    ProviderTimeoutError,
    QuotaExhaustedError,
)


def _settings(**values: str) -> Settings:
    return Settings(**{"TRAILGEN_GENERATION_SERVICE_URL": "http://generator.test/", **values})


def _request() -> GenerationRequest:
    return GenerationRequest(
        trail_id="trail-1",
        lesson_id="lesson-1",
        language_code="es",
        level_code="B1",
        competency_code="writing",
        lesson_type="exercise",
        title="Write connected text",
        descriptor_code="B1-WRI-01",
        descriptor_text="Write connected text on familiar topics of personal interest.",
    )


def _http_provider(handler) -> HttpContentProvider:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpContentProvider(_settings(), client=client)


def test_template_provider_is_deterministic() -> None:
    provider = TemplateContentProvider()
    first = provider.generate(_request())
    assert first.payload == provider.generate(_request()).payload
    assert first.payload["descriptor"] == "B1-WRI-01"
    assert [step["kind"] for step in first.payload["steps"]] == ["warmup", "exercise", "review"]


def test_http_provider_posts_request_and_reads_usage() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"content": {"title": "Postcard"}, "tokens_used": 120, "model": "svc"})

    generated = _http_provider(handler).generate(_request())

    assert seen["url"] == "http://generator.test/generate/lesson"
    assert seen["body"]["lesson_id"] == "lesson-1"
    assert generated.payload == {"title": "Postcard"}
    assert generated.tokens_used == 120


@pytest.mark.parametrize(
    ("response", "error"),
    [
        (httpx.Response(429), QuotaExhaustedError),
        (httpx.Response(502), ContentProviderError),
        (httpx.Response(200, json={"tokens_used": 3}), MalformedContentError),
        (httpx.Response(200, text="not json"), MalformedContentError),
    ],
)
def test_http_provider_maps_failures(response, error) -> None:
    with pytest.raises(error):
        _http_provider(lambda request: response).generate(_request())


def test_http_provider_timeout_is_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(ProviderTimeoutError) as excinfo:
        _http_provider(handler).generate(_request())
    assert excinfo.value.retryable is True
    assert excinfo.value.kind == "timeout"


class _FakeCompletions:
    def __init__(self, *, content=None, error=None) -> None:
        self.content = content
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(
            choices=[SimpleNamespace(message=message)],
            usage=SimpleNamespace(total_tokens=42),
            model="gpt-test",
        )


def _openai_provider(completions: _FakeCompletions) -> OpenAIContentProvider:
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAIContentProvider(_settings(), client=client)  # type: ignore[arg-type]


def test_openai_provider_uses_json_mode() -> None:
    completions = _FakeCompletions(content='{"title": "Postcard", "steps": []}')

    generated = _openai_provider(completions).generate(_request())

    assert generated.payload == {"title": "Postcard", "steps": []}
    assert generated.tokens_used == 42
    assert completions.calls[0]["response_format"] == {"type": "json_object"}


def test_openai_provider_rejects_non_json() -> None:
    with pytest.raises(MalformedContentError):
        _openai_provider(_FakeCompletions(content="Sure! Here is a lesson")).generate(_request())


def test_openai_provider_maps_timeouts_and_rate_limits() -> None:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")

    with pytest.raises(ProviderTimeoutError):
        _openai_provider(_FakeCompletions(error=APITimeoutError(request=request))).generate(_request())

    limited = RateLimitError("slow down", response=httpx.Response(429, request=request), body=None)
    with pytest.raises(QuotaExhaustedError):
        _openai_provider(_FakeCompletions(error=limited)).generate(_request())


def test_build_content_provider_follows_generation_mode() -> None:
    assert isinstance(build_content_provider(_settings()), TemplateContentProvider)
    assert isinstance(build_content_provider(_settings(TRAILGEN_GENERATION_MODE="http")), HttpContentProvider)
