"""Lesson content generation providers.

The worker treats the provider as an opaque call: it sends a
:class:`GenerationRequest` and receives a JSON object plus token usage. Provider
failures are translated into the generation error taxonomy so the worker can
record them on the job.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx
from openai import APITimeoutError, OpenAI, OpenAIError, RateLimitError
from pydantic import BaseModel, Field, ValidationError

from .config import Settings
from .errors import (
    ContentProviderError,
    MalformedContentError,
    ProviderTimeoutError,
    QuotaExhaustedError,
)

logger = logging.getLogger(__name__)


class GenerationRequest(BaseModel):
    trail_id: str
    lesson_id: str
    language_code: str
    level_code: str
    competency_code: Optional[str] = None
    lesson_type: str
    title: str
    descriptor_code: Optional[str] = None
    descriptor_text: Optional[str] = None
    preferences: Dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class GeneratedContent:
    payload: Dict[str, Any]
    tokens_used: int = 0
    model: Optional[str] = None


class ContentProvider(Protocol):
    def generate(self, request: GenerationRequest) -> GeneratedContent:  # pragma: no cover - protocol
        ...


class TemplateContentProvider:
    """Deterministic provider that builds lesson payloads from the descriptor."""

    name = "template"

    def generate(self, request: GenerationRequest) -> GeneratedContent:
        objective = request.descriptor_text or f"Practice {request.competency_code or 'core'} skills"
        payload: Dict[str, Any] = {
            "type": request.lesson_type,
            "title": request.title,
            "language": request.language_code,
            "level": request.level_code,
            "objective": objective,
            "steps": self._steps(request, objective),
        }
        if request.descriptor_code:
            payload["descriptor"] = request.descriptor_code
        return GeneratedContent(payload=payload, tokens_used=0, model=self.name)

    @staticmethod
    def _steps(request: GenerationRequest, objective: str) -> List[Dict[str, str]]:
        return [
            {"kind": "warmup", "prompt": f"Recall what you already know: {objective}"},
            {"kind": request.lesson_type, "prompt": f"{request.title} ({request.level_code})"},
            {"kind": "review", "prompt": "Summarize the key expressions from this lesson."},
        ]


class _ServiceResponsePayload(BaseModel):
    content: Dict[str, Any]
    tokens_used: int = 0
    model: Optional[str] = None


class HttpContentProvider:
    """Calls an external content generation service over HTTP."""

    name = "http"

    def __init__(self, settings: Settings, *, client: Optional[httpx.Client] = None) -> None:
        self._endpoint = f"{settings.generation_service_url.rstrip('/')}/generate/lesson"
        self._timeout = settings.generation_timeout_seconds
        self._client = client

    def generate(self, request: GenerationRequest) -> GeneratedContent:
        local_client = self._client or httpx.Client(timeout=self._timeout)
        close_client = self._client is None
        try:
            response = local_client.post(self._endpoint, json=request.model_dump(mode="json"))
            if response.status_code == 429:
                raise QuotaExhaustedError(request.trail_id, "generate_lesson", "Generation service quota exhausted")
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(request.trail_id, "generate_lesson", f"Generation service timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ContentProviderError(request.trail_id, "generate_lesson", f"Generation service call failed: {exc}") from exc
        finally:
            if close_client:
                local_client.close()

        try:
            parsed = _ServiceResponsePayload.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise MalformedContentError(
                f"Generation service returned invalid payload: {exc}",
                diagnostics={"lesson_id": request.lesson_id, "body": response.text[:500]},
            ) from exc
        return GeneratedContent(payload=parsed.content, tokens_used=parsed.tokens_used, model=parsed.model)


_SYSTEM_PROMPT = (
    "You write language-learning lessons. Reply with a single JSON object containing "
    "'type', 'title', 'objective' and 'steps' (a list of objects with 'kind' and 'prompt')."
)


class OpenAIContentProvider:
    """Generates lesson payloads with an OpenAI chat model in JSON mode."""

    name = "openai"

    def __init__(self, settings: Settings, *, client: Optional[OpenAI] = None) -> None:
        self._model = settings.generation_model
        self._client = client or OpenAI(api_key=settings.openai_api_key, timeout=settings.generation_timeout_seconds)

    def generate(self, request: GenerationRequest) -> GeneratedContent:
        try:
            completion = self._client.chat.completions.create(
                model=self._model,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": request.model_dump_json()},
                ],
            )
        except APITimeoutError as exc:
            raise ProviderTimeoutError(request.trail_id, "generate_lesson", f"OpenAI request timed out: {exc}") from exc
        except RateLimitError as exc:
            raise QuotaExhaustedError(request.trail_id, "generate_lesson", f"OpenAI quota exhausted: {exc}") from exc
        except OpenAIError as exc:
            raise ContentProviderError(request.trail_id, "generate_lesson", f"OpenAI request failed: {exc}") from exc

        raw = completion.choices[0].message.content if completion.choices else None
        try:
            payload = json.loads(raw or "")
        except ValueError as exc:
            raise MalformedContentError(
                "OpenAI returned non-JSON lesson content",
                diagnostics={"lesson_id": request.lesson_id, "raw": (raw or "")[:500]},
            ) from exc
        tokens = completion.usage.total_tokens if completion.usage else 0
        logger.debug("Generated lesson %s with %s tokens", request.lesson_id, tokens)
        return GeneratedContent(payload=payload, tokens_used=tokens, model=completion.model)


def build_content_provider(settings: Settings) -> ContentProvider:
    if settings.generation_mode == "openai":
        return OpenAIContentProvider(settings)
    if settings.generation_mode == "http":
        return HttpContentProvider(settings)
    return TemplateContentProvider()


__all__ = [
    "ContentProvider",
    "GeneratedContent",
    "GenerationRequest",
    "HttpContentProvider",
    "OpenAIContentProvider",
    "TemplateContentProvider",
    "build_content_provider",
]
