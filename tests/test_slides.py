import asyncio

import pytest

from conftest import COURSE_ID, INSTRUCTOR, PRESENTATION_ID, STUDENT, seed_course
from services.annotations import AnnotationService
from services.live_session import LiveSessionService
from services.polls import PollService
from services.slides import SlideService
from services.store.paths import comment_path, poll_path, slide_path, vote_path
from shared.errors import DocumentNotFoundError, InvalidInputError, PermissionDeniedError
from shared.models import parse_slide


@pytest.fixture
def slides(store) -> SlideService:
    return SlideService(store)


async def orders(slides: SlideService) -> list[tuple[str, int]]:
    return [(slide.id, slide.order) for slide in await slides.list_slides(COURSE_ID, PRESENTATION_ID)]


@pytest.mark.asyncio
async def test_add_slide_keeps_orders_dense(store, slides) -> None:
    await seed_course(store, slides=3)

    inserted = await slides.add_slide(
        INSTRUCTOR, COURSE_ID, PRESENTATION_ID, {"type": "mcq", "question": "2+2?", "options": ["3", "4"]}, position=1
    )
    appended = await slides.add_slide(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, {"type": "open", "prompt": "Why?"})

    assert await orders(slides) == [
        ("slide-0", 0),
        (inserted.id, 1),
        ("slide-1", 2),
        ("slide-2", 3),
        (appended.id, 4),
    ]
    assert inserted.type == "mcq"
    assert await slides.count_slides(COURSE_ID, PRESENTATION_ID) == 5


@pytest.mark.asyncio
async def test_invalid_slides_are_rejected(store, slides) -> None:
    await seed_course(store, slides=1)
    with pytest.raises(InvalidInputError):
        await slides.add_slide(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, {"type": "hologram"})
    with pytest.raises(InvalidInputError):
        await slides.add_slide(
            INSTRUCTOR, COURSE_ID, PRESENTATION_ID, {"type": "mcq", "options": ["a"], "correctOption": 3}
        )
    with pytest.raises(PermissionDeniedError):
        await slides.add_slide(STUDENT, COURSE_ID, PRESENTATION_ID, {"type": "content", "text": "hi"})


@pytest.mark.asyncio
async def test_delete_slide_closes_gap_and_clamps_current_index(store, slides) -> None:
    await seed_course(store, slides=3, live=True)
    sessions = LiveSessionService(store, slides=slides)
    await sessions.go_to_slide(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, 2)

    await slides.delete_slide(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, "slide-2")
    await slides.delete_slide(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, "slide-0")

    assert await orders(slides) == [("slide-1", 0)]
    presentation = await sessions.get_presentation(INSTRUCTOR, COURSE_ID, PRESENTATION_ID)
    assert presentation.current_slide_index == 0

    with pytest.raises(DocumentNotFoundError):
        await slides.delete_slide(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, "slide-9")


@pytest.mark.asyncio
async def test_reorder_moves_one_slide(store, slides) -> None:
    await seed_course(store, slides=4)
    reordered = await slides.reorder_slides(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, 0, 3)
    assert [(slide.id, slide.order) for slide in reordered] == [
        ("slide-1", 0),
        ("slide-2", 1),
        ("slide-3", 2),
        ("slide-0", 3),
    ]

    with pytest.raises(InvalidInputError):
        await slides.reorder_slides(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, 0, 4)


@pytest.mark.asyncio
async def test_update_slide_keeps_position(store, slides) -> None:
    await seed_course(store, slides=3)
    updated = await slides.update_slide(
        INSTRUCTOR, COURSE_ID, PRESENTATION_ID, "slide-1", {"type": "image", "url": "https://cdn/x.png"}
    )
    assert updated.order == 1
    assert updated.type == "image"
    assert (await slides.get_slide(COURSE_ID, PRESENTATION_ID, "slide-1")).url == "https://cdn/x.png"


@pytest.mark.asyncio
async def test_legacy_slide_shapes_are_normalised(store, slides) -> None:
    await seed_course(store, slides=0)
    await store.set(
        slide_path(COURSE_ID, PRESENTATION_ID, "old"),
        {"type": "multiple-choice", "order": 0, "content": {"question": "Pick", "options": ["a", "b"]}},
    )
    await store.set(
        slide_path(COURSE_ID, PRESENTATION_ID, "older"),
        {"type": "text", "order": 1, "content": "Plain text body"},
    )

    old, older = await slides.list_slides(COURSE_ID, PRESENTATION_ID)
    assert old.type == "mcq" and old.options == ["a", "b"]
    assert older.type == "content" and older.text == "Plain text body"


def test_parse_slide_resolves_variants() -> None:
    slide = parse_slide({"type": "pptx", "content": "https://cdn/slide1.png"}, "s1")
    assert slide.type == "imported"
    assert slide.image_url == "https://cdn/slide1.png"
    assert slide.id == "s1"


@pytest.mark.asyncio
async def test_listen_slides_delivers_ordered_deck(store, slides) -> None:
    await seed_course(store, slides=2)
    decks = []
    registration = slides.listen_slides(COURSE_ID, PRESENTATION_ID, decks.append)

    await slides.reorder_slides(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, 1, 0)
    assert [slide.id for slide in decks[0]] == ["slide-0", "slide-1"]
    assert [slide.id for slide in decks[-1]] == ["slide-1", "slide-0"]
    registration.unsubscribe()


@pytest.mark.asyncio
async def test_annotations_follow_their_slide_when_reordered(store, slides) -> None:
    await seed_course(store, slides=5, live=True)
    sessions = LiveSessionService(store, slides=slides)
    annotations = AnnotationService(store)
    await sessions.go_to_slide(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, 1)
    comment = await annotations.post_comment(STUDENT, COURSE_ID, PRESENTATION_ID, "About slide-1")
    await annotations.create_group(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, comment.id)
    poll = await PollService(store).create_poll(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, "Clear?", ["yes", "no"])

    reordered = await slides.reorder_slides(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, 1, 3)
    assert [slide.id for slide in reordered] == ["slide-0", "slide-2", "slide-3", "slide-1", "slide-4"]

    moved = await annotations.list_annotations(STUDENT, COURSE_ID, PRESENTATION_ID, 3)
    assert [item.text for item in moved.comments] == ["About slide-1"]
    assert moved.groups[0].comment_ids == [comment.id]
    assert (await annotations.list_annotations(STUDENT, COURSE_ID, PRESENTATION_ID, 1)).comments == []
    assert (await store.get(poll_path(COURSE_ID, PRESENTATION_ID, poll.id))).get("slideIndex") == 3

    # The presenter keeps showing the slide they were on
    presentation = await sessions.get_presentation(INSTRUCTOR, COURSE_ID, PRESENTATION_ID)
    assert presentation.current_slide_index == 3


@pytest.mark.asyncio
async def test_inserting_a_slide_shifts_later_annotations(store, slides) -> None:
    await seed_course(store, slides=3, live=True)
    annotations = AnnotationService(store)
    comment = await annotations.post_comment(STUDENT, COURSE_ID, PRESENTATION_ID, "On the first slide")

    await slides.add_slide(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, {"type": "content", "text": "Agenda"}, position=0)

    shifted = await annotations.list_annotations(STUDENT, COURSE_ID, PRESENTATION_ID, 1)
    assert [item.id for item in shifted.comments] == [comment.id]
    assert (await annotations.list_annotations(STUDENT, COURSE_ID, PRESENTATION_ID, 0)).comments == []


@pytest.mark.asyncio
async def test_deleting_a_slide_removes_its_annotations(store, slides) -> None:
    await seed_course(store, slides=3, live=True)
    sessions = LiveSessionService(store, slides=slides)
    annotations = AnnotationService(store)
    polls = PollService(store)

    doomed = await annotations.post_comment(STUDENT, COURSE_ID, PRESENTATION_ID, "On slide-0")
    poll = await polls.create_poll(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, "Pace?", ["ok", "fast"])
    await polls.cast_vote(STUDENT, COURSE_ID, PRESENTATION_ID, poll.id, "ok")
    await sessions.go_to_slide(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, 2)
    kept = await annotations.post_comment(STUDENT, COURSE_ID, PRESENTATION_ID, "On slide-2")

    await slides.delete_slide(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, "slide-0")

    assert not (await store.get(comment_path(COURSE_ID, PRESENTATION_ID, doomed.id))).exists
    assert not (await store.get(poll_path(COURSE_ID, PRESENTATION_ID, poll.id))).exists
    assert not (await store.get(vote_path(COURSE_ID, PRESENTATION_ID, poll.id, STUDENT.user_id))).exists
    view = await annotations.list_annotations(STUDENT, COURSE_ID, PRESENTATION_ID, 1)
    assert [item.id for item in view.comments] == [kept.id]
    assert (await sessions.get_presentation(INSTRUCTOR, COURSE_ID, PRESENTATION_ID)).current_slide_index == 1


@pytest.mark.asyncio
async def test_delete_clamps_against_concurrent_navigation(store, slides) -> None:
    await seed_course(store, slides=5, live=True)
    sessions = LiveSessionService(store, slides=slides)

    await asyncio.gather(
        sessions.go_to_slide(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, 4),
        slides.delete_slide(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, "slide-4"),
    )

    presentation = await sessions.get_presentation(INSTRUCTOR, COURSE_ID, PRESENTATION_ID)
    assert presentation.current_slide_index == 3
