import asyncio

import pytest

from conftest import COURSE_ID, INSTRUCTOR, OUTSIDER, PRESENTATION_ID, STUDENT, seed_course
from services.live_session import LiveSessionService
from services.store import Query
from services.store.paths import course_path, presentation_path, presentations_collection
from shared.enums import AudienceMode, NavigationDirection, SessionState
from shared.errors import NotPresenterError, PermissionDeniedError
from shared.models import CreatePresentationRequest


@pytest.fixture
def sessions(store) -> LiveSessionService:
    return LiveSessionService(store)


async def live_ids(store) -> list[str]:
    live = await store.query(Query(presentations_collection(COURSE_ID)).where("isLive", "==", True))
    return [snapshot.id for snapshot in live]


@pytest.mark.asyncio
async def test_create_presentation_starts_in_editing(store, sessions) -> None:
    await seed_course(store, presentations=0)
    created = await sessions.create_presentation(
        INSTRUCTOR, COURSE_ID, CreatePresentationRequest(title="  Week 3  ", audience_mode=AudienceMode.ANONYMOUS)
    )
    assert created.title == "Week 3"
    assert created.owner_id == INSTRUCTOR.user_id
    assert created.audience_mode == AudienceMode.ANONYMOUS
    assert sessions.session_state(created) == SessionState.EDITING

    listed = await sessions.list_presentations(INSTRUCTOR, COURSE_ID)
    assert [presentation.id for presentation in listed] == [created.id]


@pytest.mark.asyncio
async def test_students_cannot_create_presentations(store, sessions) -> None:
    await seed_course(store, presentations=0)
    with pytest.raises(PermissionDeniedError):
        await sessions.create_presentation(STUDENT, COURSE_ID, CreatePresentationRequest(title="Mine"))


@pytest.mark.asyncio
async def test_go_live_keeps_a_single_live_presentation(store, sessions) -> None:
    await seed_course(store, presentations=3)

    await sessions.go_live(INSTRUCTOR, COURSE_ID, "deck-1")
    await sessions.go_live(INSTRUCTOR, COURSE_ID, "deck-2")
    promoted = await sessions.go_live(INSTRUCTOR, COURSE_ID, "deck-3")

    assert promoted.is_live
    assert await live_ids(store) == ["deck-3"]
    assert await sessions.get_live_presentation_id(COURSE_ID) == "deck-3"

    demoted = await sessions.get_presentation(STUDENT, COURSE_ID, "deck-2")
    assert sessions.session_state(demoted) == SessionState.ENDED


@pytest.mark.asyncio
async def test_go_live_repairs_multiple_live_presentations(store, sessions) -> None:
    await seed_course(store, presentations=3)
    for presentation_id in ("deck-1", "deck-2"):
        await store.update(presentation_path(COURSE_ID, presentation_id), {"isLive": True})

    await sessions.go_live(INSTRUCTOR, COURSE_ID, "deck-3")
    assert await live_ids(store) == ["deck-3"]


@pytest.mark.asyncio
async def test_concurrent_go_live_leaves_one_live_presentation(store, sessions) -> None:
    await seed_course(store, presentations=3, live=True)

    await asyncio.gather(
        sessions.go_live(INSTRUCTOR, COURSE_ID, "deck-2"),
        sessions.go_live(INSTRUCTOR, COURSE_ID, "deck-3"),
    )

    live = await live_ids(store)
    assert len(live) == 1
    assert live == [await sessions.get_live_presentation_id(COURSE_ID)]


@pytest.mark.asyncio
async def test_going_live_again_reopens_an_ended_presentation(store, sessions) -> None:
    await seed_course(store)
    await sessions.go_live(INSTRUCTOR, COURSE_ID, PRESENTATION_ID)
    ended = await sessions.end_live(INSTRUCTOR, COURSE_ID, PRESENTATION_ID)
    assert sessions.session_state(ended) == SessionState.ENDED

    reopened = await sessions.go_live(INSTRUCTOR, COURSE_ID, PRESENTATION_ID)
    assert sessions.session_state(reopened) == SessionState.LIVE
    assert reopened.ended_at is None


@pytest.mark.asyncio
async def test_only_the_presenter_controls_the_session(store, sessions) -> None:
    await seed_course(store)
    with pytest.raises(NotPresenterError):
        await sessions.go_live(STUDENT, COURSE_ID, PRESENTATION_ID)
    with pytest.raises(NotPresenterError):
        await sessions.navigate(STUDENT, COURSE_ID, PRESENTATION_ID, NavigationDirection.NEXT)


@pytest.mark.asyncio
async def test_navigation_is_clamped_to_the_deck(store, sessions) -> None:
    await seed_course(store, slides=5, live=True)

    for _ in range(10):
        presentation = await sessions.navigate(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, NavigationDirection.NEXT)
    assert presentation.current_slide_index == 4

    presentation = await sessions.go_to_slide(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, -3)
    assert presentation.current_slide_index == 0

    presentation = await sessions.navigate(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, NavigationDirection.PREVIOUS)
    assert presentation.current_slide_index == 0

    presentation = await sessions.go_to_slide(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, 2)
    assert presentation.current_slide_index == 2


@pytest.mark.asyncio
async def test_end_live_clears_only_its_own_pointer(store, sessions) -> None:
    await seed_course(store, presentations=2)
    await sessions.go_live(INSTRUCTOR, COURSE_ID, "deck-1")
    await sessions.go_live(INSTRUCTOR, COURSE_ID, "deck-2")

    # deck-1 is no longer the live one; ending it must not clear deck-2's pointer
    await sessions.end_live(INSTRUCTOR, COURSE_ID, "deck-1")
    assert (await store.get(course_path(COURSE_ID))).get("livePresentation") == "deck-2"

    await sessions.end_live(INSTRUCTOR, COURSE_ID, "deck-2")
    assert (await store.get(course_path(COURSE_ID))).get("livePresentation") is None
    assert await live_ids(store) == []


@pytest.mark.asyncio
async def test_audience_mode_opens_the_presentation(store, sessions) -> None:
    await seed_course(store)
    with pytest.raises(PermissionDeniedError):
        await sessions.get_presentation(OUTSIDER, COURSE_ID, PRESENTATION_ID)

    await sessions.set_audience_mode(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, AudienceMode.ANONYMOUS)
    presentation = await sessions.get_presentation(OUTSIDER, COURSE_ID, PRESENTATION_ID)
    assert presentation.audience_mode == AudienceMode.ANONYMOUS
