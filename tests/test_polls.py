import pytest

from conftest import COURSE_ID, INSTRUCTOR, OTHER_STUDENT, OUTSIDER, PRESENTATION_ID, STUDENT, seed_course
from services.identity import Identity
from services.polls import PollService
from shared.errors import InvalidInputError, PermissionDeniedError
from shared.utils import config


@pytest.fixture
def polls(store) -> PollService:
    return PollService(store)


@pytest.mark.asyncio
async def test_poll_lifecycle(store, polls) -> None:
    await seed_course(store, live=True)
    poll = await polls.create_poll(
        INSTRUCTOR, COURSE_ID, PRESENTATION_ID, "Best consensus protocol?", ["Raft", "Paxos", "Raft"]
    )
    assert poll.options == ["Raft", "Paxos"]
    assert poll.slide_index == 0 and poll.is_active

    await polls.cast_vote(STUDENT, COURSE_ID, PRESENTATION_ID, poll.id, "Raft")
    await polls.cast_vote(OTHER_STUDENT, COURSE_ID, PRESENTATION_ID, poll.id, "Paxos")
    # Voting again replaces the earlier vote
    await polls.cast_vote(OTHER_STUDENT, COURSE_ID, PRESENTATION_ID, poll.id, "Raft")

    results = await polls.tally(STUDENT, COURSE_ID, PRESENTATION_ID, poll.id)
    assert results.counts == {"Raft": 2, "Paxos": 0}
    assert results.total == 2

    closed = await polls.close_poll(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, poll.id)
    assert not closed.is_active
    with pytest.raises(InvalidInputError):
        await polls.cast_vote(STUDENT, COURSE_ID, PRESENTATION_ID, poll.id, "Paxos")
    assert await polls.list_polls(STUDENT, COURSE_ID, PRESENTATION_ID, active_only=True) == []


@pytest.mark.asyncio
async def test_poll_validation(store, polls) -> None:
    await seed_course(store, live=True)
    with pytest.raises(InvalidInputError):
        await polls.create_poll(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, "Only one?", ["Yes", " Yes "])
    with pytest.raises(PermissionDeniedError):
        await polls.create_poll(STUDENT, COURSE_ID, PRESENTATION_ID, "Mine?", ["a", "b"])

    poll = await polls.create_poll(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, "Pick", ["a", "b"])
    with pytest.raises(InvalidInputError):
        await polls.cast_vote(STUDENT, COURSE_ID, PRESENTATION_ID, poll.id, "c")
    with pytest.raises(PermissionDeniedError):
        await polls.cast_vote(OUTSIDER, COURSE_ID, PRESENTATION_ID, poll.id, "a")


@pytest.mark.asyncio
async def test_max_options_comes_from_tuning(store, polls) -> None:
    await seed_course(store, live=True)
    config.set_tuning_config({"polls": {"max_options": 3}})
    with pytest.raises(InvalidInputError):
        await polls.create_poll(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, "Too many", ["a", "b", "c", "d"])


@pytest.mark.asyncio
async def test_anonymous_viewer_votes_once_per_pseudo_id(store, polls) -> None:
    await seed_course(store, audience_mode="anonymous", live=True)
    poll = await polls.create_poll(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, "Clear?", ["yes", "no"])
    viewer = Identity.anonymous_viewer("anon_123")

    await polls.cast_vote(viewer, COURSE_ID, PRESENTATION_ID, poll.id, "yes")
    await polls.cast_vote(viewer, COURSE_ID, PRESENTATION_ID, poll.id, "yes")
    assert (await polls.tally(viewer, COURSE_ID, PRESENTATION_ID, poll.id)).total == 1

    # A reset pseudo-id is a new viewer
    await polls.cast_vote(Identity.anonymous_viewer("anon_456"), COURSE_ID, PRESENTATION_ID, poll.id, "no")
    assert (await polls.tally(viewer, COURSE_ID, PRESENTATION_ID, poll.id)).counts == {"yes": 1, "no": 1}


@pytest.mark.asyncio
async def test_listen_results_tracks_votes(store, polls) -> None:
    await seed_course(store, live=True)
    poll = await polls.create_poll(INSTRUCTOR, COURSE_ID, PRESENTATION_ID, "Ready?", ["yes", "no"])
    seen = []
    registration = await polls.listen_results(STUDENT, COURSE_ID, PRESENTATION_ID, poll.id, seen.append)

    await polls.cast_vote(STUDENT, COURSE_ID, PRESENTATION_ID, poll.id, "no")
    assert [results.total for results in seen] == [0, 1]
    assert seen[-1].counts == {"yes": 0, "no": 1}
    registration.unsubscribe()
