import asyncio
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Generator

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("STORE_DRIVER", "memory")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{tempfile.gettempdir()}/liveclass-tests.db")

from services.identity import Identity
from services.store import MemoryDocumentStore
from services.store.paths import course_path, presentation_path, slide_path
from services.store import relay as relay_module
from shared.enums import UserRole
from shared.utils import config as service_config

COURSE_ID = "course-101"
PRESENTATION_ID = "deck-1"

INSTRUCTOR = Identity(user_id="prof", display_name="Professor", role=UserRole.INSTRUCTOR)
STUDENT = Identity(user_id="alice", display_name="Alice", role=UserRole.STUDENT)
OTHER_STUDENT = Identity(user_id="bob", display_name="Bob", role=UserRole.STUDENT)
OUTSIDER = Identity(user_id="mallory", display_name="Mallory", role=UserRole.STUDENT)


async def seed_course(
    store: MemoryDocumentStore,
    presentations: int = 1,
    slides: int = 5,
    audience_mode: str = "enrolledUsers",
    live: bool = False,
) -> None:
    """Create a course with enrolled students, presentations and slides."""
    await store.set(
        course_path(COURSE_ID),
        {
            "title": "Distributed Systems",
            "instructorId": INSTRUCTOR.user_id,
            "enrolledStudents": [STUDENT.user_id, OTHER_STUDENT.user_id],
            "livePresentation": None,
        },
    )
    for number in range(1, presentations + 1):
        presentation_id = f"deck-{number}"
        await store.set(
            presentation_path(COURSE_ID, presentation_id),
            {
                "title": f"Lecture {number}",
                "ownerId": INSTRUCTOR.user_id,
                "courseId": COURSE_ID,
                "currentSlideIndex": 0,
                "isLive": live and number == 1,
                "audienceMode": audience_mode,
            },
        )
        for order in range(slides):
            await store.set(
                slide_path(COURSE_ID, presentation_id, f"slide-{order}"),
                {"type": "content", "order": order, "title": f"Slide {order}", "text": f"Body {order}"},
            )
    if live:
        await store.set(course_path(COURSE_ID), {"livePresentation": PRESENTATION_ID}, merge=True)


@pytest.fixture
def store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


class RecordingController:
    """SyncController that records every event it receives."""

    def __init__(self) -> None:
        self.presentations: list[Any] = []
        self.annotations: list[Any] = []
        self.statuses: list[tuple[str, str | None]] = []

    def presentation_changed(self, presentation) -> None:
        self.presentations.append(presentation)

    def annotations_changed(self, view) -> None:
        self.annotations.append(view)

    def status_changed(self, status, detail=None) -> None:
        self.statuses.append((str(getattr(status, "value", status)), detail))

    @property
    def last_view(self):
        return self.annotations[-1] if self.annotations else None

    @property
    def last_status(self) -> str | None:
        return self.statuses[-1][0] if self.statuses else None


@pytest.fixture
def controller() -> RecordingController:
    return RecordingController()


class DummyPubSub:
    def __init__(self, redis: "DummyRedis") -> None:
        self._redis = redis
        self.channels: list[str] = []
        self.messages: list[dict[str, Any]] = []
        self.closed = False

    def subscribe(self, channel: str) -> None:
        self.channels.append(channel)
        self._redis.subscribers.append(self)

    def get_message(self, ignore_subscribe_messages: bool = True, timeout: float = 0.0):
        if self.messages:
            return self.messages.pop(0)
        return None

    def unsubscribe(self) -> None:
        self.channels.clear()

    def close(self) -> None:
        self.closed = True


class DummyRedis:
    """In-memory stand-in for a Redis pub/sub connection."""

    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []
        self.subscribers: list[DummyPubSub] = []

    def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        delivered = 0
        for subscriber in self.subscribers:
            if channel in subscriber.channels:
                subscriber.messages.append({"type": "message", "channel": channel, "data": message})
                delivered += 1
        return delivered

    def pubsub(self, **kwargs) -> DummyPubSub:
        return DummyPubSub(self)

    def close(self) -> None:
        return None


@pytest.fixture
def fake_redis(monkeypatch: pytest.MonkeyPatch) -> DummyRedis:
    """Patch redis client so every relay shares one in-memory broker."""
    broker = DummyRedis()

    def fake_from_url(url: str, *args, **kwargs):  # type: ignore[unused-argument]
        return broker

    monkeypatch.setattr(relay_module.redis.Redis, "from_url", staticmethod(fake_from_url))
    return broker


@pytest.fixture(autouse=True)
def test_environment() -> Generator[None, None, None]:
    """Keep config changes local to each test."""
    original = dict(service_config.config)
    original_tuning = dict(service_config.tuning_config)
    service_config.set("store_driver", "memory")
    service_config.set("sync_retry_delay", 0.01)
    try:
        yield
    finally:
        service_config.config = original
        service_config.set_tuning_config(original_tuning)


def run(coro):
    """Run a coroutine from a synchronous test."""
    # Sync tests and fixtures only; asyncio.run fails inside a running loop.
    return asyncio.run(coro)
