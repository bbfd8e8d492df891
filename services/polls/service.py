"""Live polls: one vote document per (poll, user), tallied by counting."""

from __future__ import annotations

from typing import Callable

from services.access import AccessPolicy
from services.identity import Identity
from services.store import SERVER_TIMESTAMP, DocumentSnapshot, DocumentStore, ListenerRegistration, Query, Transaction
from services.store.paths import poll_path, polls_collection, vote_path, votes_collection
from shared.errors import DocumentNotFoundError, InvalidInputError
from shared.models import Poll, PollResults, Vote
from shared.utils import config, setup_logging, validate_text

logger = setup_logging("polls")


def _count(poll: Poll, votes: list[DocumentSnapshot]) -> PollResults:
    counts = {option: 0 for option in poll.options}
    for vote in votes:
        option = vote.get("option")
        if option in counts:
            counts[option] += 1
    return PollResults(poll_id=poll.id, counts=counts, total=sum(counts.values()), is_active=poll.is_active)


class PollService:
    def __init__(self, store: DocumentStore, access: AccessPolicy | None = None) -> None:
        self.store = store
        self.access = access or AccessPolicy(store)

    async def create_poll(
        self,
        identity: Identity,
        course_id: str,
        presentation_id: str,
        question: str,
        options: list[str],
        slide_index: int | None = None,
    ) -> Poll:
        question = validate_text(question, "Question", max_length=500)
        cleaned = list(dict.fromkeys(option.strip() for option in options if option and option.strip()))
        if len(cleaned) < 2:
            raise InvalidInputError("A poll needs at least two distinct options")
        max_options = int(config.get_tuning_value("polls.max_options", 10))
        if len(cleaned) > max_options:
            raise InvalidInputError(f"A poll can have at most {max_options} options")
        _, presentation = await self.access.require_moderator(identity, course_id, presentation_id)

        poll = Poll(
            question=question,
            options=cleaned,
            slide_index=presentation.current_slide_index if slide_index is None else slide_index,
        )
        document = poll.to_document()
        document["createdAt"] = SERVER_TIMESTAMP
        snapshot = await self.store.add(polls_collection(course_id, presentation_id), document)
        logger.info("Poll %s created on slide %d", snapshot.id, poll.slide_index)
        return Poll.from_document(snapshot.id, snapshot.data)

    async def get_poll(self, identity: Identity, course_id: str, presentation_id: str, poll_id: str) -> Poll:
        await self.access.require_viewer(identity, course_id, presentation_id)
        return await self._load_poll(course_id, presentation_id, poll_id)

    async def list_polls(
        self, identity: Identity, course_id: str, presentation_id: str, active_only: bool = False
    ) -> list[Poll]:
        await self.access.require_viewer(identity, course_id, presentation_id)
        query = Query(polls_collection(course_id, presentation_id))
        if active_only:
            query = query.where("isActive", "==", True)
        snapshots = await self.store.query(query.order_by("createdAt"))
        return [Poll.from_document(snapshot.id, snapshot.data) for snapshot in snapshots]

    async def cast_vote(
        self, identity: Identity, course_id: str, presentation_id: str, poll_id: str, option: str
    ) -> Vote:
        """Record the caller's choice. Voting again replaces the earlier vote."""
        option = validate_text(option, "Poll answer", max_length=500)
        await self.access.require_viewer(identity, course_id, presentation_id)
        ppath = poll_path(course_id, presentation_id, poll_id)
        vpath = vote_path(course_id, presentation_id, poll_id, identity.user_id)

        async def write(transaction: Transaction) -> None:
            snapshot = await transaction.get(ppath)
            if not snapshot.exists:
                raise DocumentNotFoundError(ppath, f"Poll {poll_id} not found")
            poll = Poll.from_document(poll_id, snapshot.data)
            if not poll.is_active:
                raise InvalidInputError("Poll is closed")
            if option not in poll.options:
                raise InvalidInputError(f"Unknown option: {option}")
            vote = Vote(poll_id=poll_id, user_id=identity.user_id, option=option, display_name=identity.display_name)
            document = vote.to_document()
            document["timestamp"] = SERVER_TIMESTAMP
            transaction.set(vpath, document)

        await self.store.run_transaction(write)
        snapshot = await self.store.get(vpath)
        return Vote.from_document(snapshot.id, snapshot.data)

    async def tally(self, identity: Identity, course_id: str, presentation_id: str, poll_id: str) -> PollResults:
        await self.access.require_viewer(identity, course_id, presentation_id)
        poll = await self._load_poll(course_id, presentation_id, poll_id)
        votes = await self.store.query(Query(votes_collection(course_id, presentation_id, poll_id)))
        return _count(poll, votes)

    async def close_poll(self, identity: Identity, course_id: str, presentation_id: str, poll_id: str) -> Poll:
        await self.access.require_moderator(identity, course_id, presentation_id)
        path = poll_path(course_id, presentation_id, poll_id)
        await self.store.update(path, {"isActive": False, "closedAt": SERVER_TIMESTAMP})
        logger.info("Poll %s closed", poll_id)
        return await self._load_poll(course_id, presentation_id, poll_id)

    async def listen_results(
        self,
        identity: Identity,
        course_id: str,
        presentation_id: str,
        poll_id: str,
        on_results: Callable[[PollResults], None],
        on_error: Callable[[Exception], None] | None = None,
    ) -> ListenerRegistration:
        """Deliver fresh results now and after every vote."""
        await self.access.require_viewer(identity, course_id, presentation_id)
        poll = await self._load_poll(course_id, presentation_id, poll_id)

        def deliver(snapshot) -> None:
            on_results(_count(poll, snapshot.documents))

        return self.store.listen_query(Query(votes_collection(course_id, presentation_id, poll_id)), deliver, on_error)

    async def _load_poll(self, course_id: str, presentation_id: str, poll_id: str) -> Poll:
        snapshot = await self.store.get(poll_path(course_id, presentation_id, poll_id))
        if not snapshot.exists:
            raise DocumentNotFoundError(snapshot.path, f"Poll {poll_id} not found")
        return Poll.from_document(snapshot.id, snapshot.data)
