"""Viewer answers to interactive slides: option picks on mcq slides, free text on open ones."""

from __future__ import annotations

from typing import Callable

from services.access import AccessPolicy
from services.identity import Identity
from services.slides import SlideService
from services.store import SERVER_TIMESTAMP, DocumentSnapshot, DocumentStore, ListenerRegistration, Query
from services.store.paths import responses_collection
from shared.errors import InvalidInputError, PermissionDeniedError
from shared.models import McqSlide, OpenSlide, ResponseSummary, Slide, SlideResponse
from shared.utils import config, setup_logging, validate_text

logger = setup_logging("responses")


def _responses(snapshots: list[DocumentSnapshot]) -> list[SlideResponse]:
    return [SlideResponse.from_document(snapshot.id, snapshot.data) for snapshot in snapshots]


class ResponseService:
    """Collects responses per slide position.

    Viewers answer while the presentation is live; moderators may answer at
    any time. Each submission is kept, so a viewer's latest answer is the
    last one by timestamp. Viewers only see their own responses; moderators
    see everyone's and get per-option counts.
    """

    def __init__(
        self, store: DocumentStore, access: AccessPolicy | None = None, slides: SlideService | None = None
    ) -> None:
        self.store = store
        self.access = access or AccessPolicy(store)
        self.slides = slides or SlideService(store, self.access)

    async def submit_response(
        self,
        identity: Identity,
        course_id: str,
        presentation_id: str,
        answer: int | None = None,
        text: str | None = None,
        slide_index: int | None = None,
    ) -> SlideResponse:
        course, presentation = await self.access.require_viewer(identity, course_id, presentation_id)
        if not presentation.is_live and not self.access.can_moderate(identity, course, presentation):
            raise PermissionDeniedError(f"Presentation {presentation_id} is not live")
        index = presentation.current_slide_index if slide_index is None else slide_index
        slide = await self._slide_at(course_id, presentation_id, index)

        response = SlideResponse(
            slide_index=index,
            slide_id=slide.id,
            user_id=identity.user_id,
            display_name=identity.display_name or identity.user_id,
        )
        if isinstance(slide, McqSlide):
            if answer is None or not 0 <= answer < len(slide.options):
                raise InvalidInputError(f"Answer must be an option index within 0..{len(slide.options) - 1}")
            response.answer = answer
            response.is_correct = slide.correct_option is not None and answer == slide.correct_option
        elif isinstance(slide, OpenSlide):
            max_length = int(config.get_tuning_value("responses.max_text_length", 2000))
            response.text = validate_text(text, "Response", max_length=max_length)
        else:
            raise InvalidInputError(f"{slide.type} slides do not take responses")

        document = response.to_document()
        document["timestamp"] = SERVER_TIMESTAMP
        snapshot = await self.store.add(responses_collection(course_id, presentation_id), document)
        logger.info("Response %s on slide %d from %s", snapshot.id, index, identity.user_id)
        return SlideResponse.from_document(snapshot.id, snapshot.data)

    async def list_responses(
        self, identity: Identity, course_id: str, presentation_id: str, slide_index: int
    ) -> list[SlideResponse]:
        course, presentation = await self.access.require_viewer(identity, course_id, presentation_id)
        responses = _responses(await self.store.query(self._query(course_id, presentation_id, slide_index)))
        if self.access.can_moderate(identity, course, presentation):
            return responses
        return [response for response in responses if response.user_id == identity.user_id]

    async def summarize(
        self, identity: Identity, course_id: str, presentation_id: str, slide_index: int
    ) -> ResponseSummary:
        """Count each viewer's latest answer."""
        await self.access.require_moderator(identity, course_id, presentation_id)
        slide = await self._slide_at(course_id, presentation_id, slide_index)
        latest: dict[str, SlideResponse] = {}
        for response in _responses(await self.store.query(self._query(course_id, presentation_id, slide_index))):
            latest[response.user_id] = response

        counts: dict[str, int] = {}
        if isinstance(slide, McqSlide):
            counts = {option: 0 for option in slide.options}
            for response in latest.values():
                if response.answer is not None and response.answer < len(slide.options):
                    counts[slide.options[response.answer]] += 1
        return ResponseSummary(
            slide_index=slide_index,
            total=len(latest),
            counts=counts,
            correct=sum(1 for response in latest.values() if response.is_correct),
        )

    async def listen_responses(
        self,
        identity: Identity,
        course_id: str,
        presentation_id: str,
        slide_index: int,
        on_change: Callable[[list[SlideResponse]], None],
        on_error: Callable[[Exception], None] | None = None,
    ) -> ListenerRegistration:
        await self.access.require_moderator(identity, course_id, presentation_id)

        def deliver(snapshot) -> None:
            on_change(_responses(snapshot.documents))

        return self.store.listen_query(self._query(course_id, presentation_id, slide_index), deliver, on_error)

    @staticmethod
    def _query(course_id: str, presentation_id: str, slide_index: int) -> Query:
        return (
            Query(responses_collection(course_id, presentation_id))
            .where("slideIndex", "==", slide_index)
            .order_by("timestamp")
        )

    async def _slide_at(self, course_id: str, presentation_id: str, index: int) -> Slide:
        slides = await self.slides.list_slides(course_id, presentation_id)
        if not 0 <= index < len(slides):
            raise InvalidInputError(f"No slide at position {index}")
        return slides[index]
