from datetime import UTC, datetime, timedelta

import pytest

from conftest import COURSE_ID, INSTRUCTOR, OTHER_STUDENT, OUTSIDER, PRESENTATION_ID, STUDENT, seed_course
from services.presence import PresenceService
from services.store.paths import presence_path
from shared.errors import DocumentNotFoundError, PermissionDeniedError
from shared.utils import config


@pytest.fixture
def presence(store) -> PresenceService:
    return PresenceService(store)


@pytest.mark.asyncio
async def test_join_and_heartbeat(store, presence) -> None:
    await seed_course(store, live=True)
    joined = await presence.join(STUDENT, COURSE_ID, PRESENTATION_ID)
    assert joined.is_online and joined.current_slide_index == 0
    assert joined.display_name == "Alice"
    await presence.join(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, slide_index=2)

    moved = await presence.heartbeat(STUDENT, COURSE_ID, PRESENTATION_ID, slide_index=3)
    assert moved.current_slide_index == 3

    online = await presence.list_online(OTHER_STUDENT, COURSE_ID, PRESENTATION_ID)
    assert {entry.user_id: entry.current_slide_index for entry in online} == {"alice": 3, "prof": 2}
    # Most recent heartbeat first
    assert online[0].user_id == "alice"


@pytest.mark.asyncio
async def test_heartbeat_requires_join(store, presence) -> None:
    await seed_course(store, live=True)
    with pytest.raises(DocumentNotFoundError):
        await presence.heartbeat(STUDENT, COURSE_ID, PRESENTATION_ID)


@pytest.mark.asyncio
async def test_outsider_cannot_join_or_watch(store, presence) -> None:
    await seed_course(store, live=True)
    with pytest.raises(PermissionDeniedError):
        await presence.join(OUTSIDER, COURSE_ID, PRESENTATION_ID)
    with pytest.raises(PermissionDeniedError):
        await presence.list_online(OUTSIDER, COURSE_ID, PRESENTATION_ID)


@pytest.mark.asyncio
async def test_leave_and_silent_viewers_are_offline(store, presence) -> None:
    await seed_course(store, live=True)
    await presence.join(STUDENT, COURSE_ID, PRESENTATION_ID)
    await presence.join(OTHER_STUDENT, COURSE_ID, PRESENTATION_ID)
    await store.set(
        presence_path(COURSE_ID, PRESENTATION_ID, "carol"),
        {
            "userId": "carol",
            "displayName": "Carol",
            "isOnline": True,
            "currentSlideIndex": 0,
            "lastSeen": datetime.now(UTC) - timedelta(minutes=5),
        },
    )

    await presence.leave(STUDENT, COURSE_ID, PRESENTATION_ID)
    # Leaving twice, or without joining, is harmless
    await presence.leave(STUDENT, COURSE_ID, PRESENTATION_ID)
    await presence.leave(INSTRUCTOR, COURSE_ID, PRESENTATION_ID)

    online = await presence.list_online(INSTRUCTOR, COURSE_ID, PRESENTATION_ID)
    assert [entry.user_id for entry in online] == ["bob"]


@pytest.mark.asyncio
async def test_typing_flag_expires(store, presence) -> None:
    await seed_course(store, live=True)
    await presence.join(STUDENT, COURSE_ID, PRESENTATION_ID)
    typing = await presence.set_typing(STUDENT, COURSE_ID, PRESENTATION_ID, True)
    assert typing.is_typing and typing.typing_at is not None

    online = await presence.list_online(INSTRUCTOR, COURSE_ID, PRESENTATION_ID)
    assert online[0].is_typing

    await store.update(
        presence_path(COURSE_ID, PRESENTATION_ID, STUDENT.user_id),
        {"typingAt": datetime.now(UTC) - timedelta(seconds=30)},
    )
    # A heartbeat keeps the viewer online but does not renew typing
    await presence.heartbeat(STUDENT, COURSE_ID, PRESENTATION_ID)
    online = await presence.list_online(INSTRUCTOR, COURSE_ID, PRESENTATION_ID)
    assert [entry.user_id for entry in online] == ["alice"]
    assert not online[0].is_typing

    stopped = await presence.set_typing(STUDENT, COURSE_ID, PRESENTATION_ID, False)
    assert not stopped.is_typing and stopped.typing_at is None


@pytest.mark.asyncio
async def test_timeout_comes_from_tuning(store, presence) -> None:
    await seed_course(store, live=True)
    await presence.join(STUDENT, COURSE_ID, PRESENTATION_ID)
    await store.update(
        presence_path(COURSE_ID, PRESENTATION_ID, STUDENT.user_id),
        {"lastSeen": datetime.now(UTC) - timedelta(seconds=90)},
    )
    assert await presence.list_online(INSTRUCTOR, COURSE_ID, PRESENTATION_ID) == []

    config.set_tuning_config({"presence": {"timeout_seconds": 600}})
    assert [entry.user_id for entry in await presence.list_online(INSTRUCTOR, COURSE_ID, PRESENTATION_ID)] == [
        "alice"
    ]


@pytest.mark.asyncio
async def test_listen_presence(store, presence) -> None:
    await seed_course(store, live=True)
    seen: list[list[str]] = []
    registration = await presence.listen_presence(
        INSTRUCTOR,
        COURSE_ID,
        PRESENTATION_ID,
        lambda entries: seen.append(sorted(entry.user_id for entry in entries)),
    )
    await presence.join(STUDENT, COURSE_ID, PRESENTATION_ID)
    await presence.join(OTHER_STUDENT, COURSE_ID, PRESENTATION_ID)
    await presence.leave(STUDENT, COURSE_ID, PRESENTATION_ID)
    registration.unsubscribe()

    assert seen[0] == []
    assert seen[-1] == ["bob"]
    assert ["alice", "bob"] in seen
