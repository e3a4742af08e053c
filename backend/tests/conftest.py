from __future__ import annotations

from typing import Iterator, List, Optional

import pytest
from sqlalchemy.engine import Engine

from scripts.seed_curriculum import DEFAULT_SEED, load_document, seed_curriculum
from trailgen.broker import TrailGenerationMessage, TrailNotificationMessage
from trailgen.config import get_settings
from trailgen.content_provider import GeneratedContent, GenerationRequest, TemplateContentProvider
from trailgen.db.base import Base
from trailgen.db.session import dispose_engine, get_engine, session_scope
from trailgen.errors import TrailGenerationError
from trailgen.telemetry import TelemetryEvent, clear_listeners, register_listener


@pytest.fixture
def database(tmp_path, monkeypatch) -> Iterator[Engine]:
    monkeypatch.setenv("TRAILGEN_DATABASE_URL", f"sqlite:///{tmp_path / 'trailgen.sqlite'}")
    get_settings.cache_clear()
    dispose_engine()
    engine = get_engine()
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        dispose_engine()
        get_settings.cache_clear()


@pytest.fixture
def seeded(database) -> Engine:
    with session_scope() as session:
        seed_curriculum(session, load_document(DEFAULT_SEED))
    return database


@pytest.fixture
def events() -> Iterator[List[TelemetryEvent]]:
    recorded: List[TelemetryEvent] = []
    clear_listeners()
    register_listener(recorded.append)
    try:
        yield recorded
    finally:
        clear_listeners()


class RecordingPublisher:
    """In-memory stand-in for the broker; ``fail_generation`` simulates a down broker."""

    def __init__(self, *, fail_generation: bool = False) -> None:
        self.fail_generation = fail_generation
        self.generation: List[TrailGenerationMessage] = []
        self.notifications: List[TrailNotificationMessage] = []

    async def publish_generation(self, message: TrailGenerationMessage) -> bool:
        if self.fail_generation:
            return False
        self.generation.append(message)
        return True

    async def publish_notification(self, message: TrailNotificationMessage) -> bool:
        self.notifications.append(message)
        return True

    def notification_types(self) -> List[str]:
        return [notification.type for notification in self.notifications]


class ScriptedProvider:
    """Template provider that raises on the listed call numbers (1-based)."""

    def __init__(self, *, fail_on: Optional[set] = None, error: Optional[Exception] = None) -> None:
        self._inner = TemplateContentProvider()
        self.fail_on = fail_on or set()
        self.error = error
        self.requests: List[GenerationRequest] = []

    def generate(self, request: GenerationRequest) -> GeneratedContent:
        self.requests.append(request)
        if len(self.requests) in self.fail_on:
            raise self.error or TrailGenerationError(request.trail_id, "generate_lesson", "provider unavailable")
        content = self._inner.generate(request)
        return GeneratedContent(payload=content.payload, tokens_used=11, model="scripted")


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()
