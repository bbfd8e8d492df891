"""Live-session state machine: editing -> live -> ended."""

from __future__ import annotations

import asyncio

from services.access import AccessPolicy
from services.identity import Identity
from services.slides import SlideService
from services.store import SERVER_TIMESTAMP, DocumentStore, Query, Transaction
from services.store.paths import course_path, presentation_path, presentations_collection
from shared.enums import AudienceMode, NavigationDirection, SessionState
from shared.errors import DocumentNotFoundError, StoreError
from shared.models import CreatePresentationRequest, PresentationState
from shared.utils import clamp, setup_logging, validate_text

logger = setup_logging("live-session")


class LiveSessionService:
    """Presenter operations on a presentation's live state.

    Only the recognised presenter (an instructor owning the presentation or
    its course) may change ``isLive`` or ``currentSlideIndex``. Failures are
    logged and raised to the presenter; nothing is retried automatically.
    """

    def __init__(
        self,
        store: DocumentStore,
        access: AccessPolicy | None = None,
        slides: SlideService | None = None,
    ) -> None:
        self.store = store
        self.access = access or AccessPolicy(store)
        self.slides = slides or SlideService(store, self.access)

    @staticmethod
    def session_state(presentation: PresentationState) -> SessionState:
        if presentation.is_live:
            return SessionState.LIVE
        if presentation.ended_at is not None:
            return SessionState.ENDED
        return SessionState.EDITING

    async def create_presentation(
        self, identity: Identity, course_id: str, request: CreatePresentationRequest
    ) -> PresentationState:
        await self.access.require_course_instructor(identity, course_id)
        presentation = PresentationState(
            title=validate_text(request.title, "title", max_length=255),
            owner_id=identity.user_id,
            course_id=course_id,
            audience_mode=request.audience_mode,
        )
        document = presentation.to_document()
        document.update({"createdAt": SERVER_TIMESTAMP, "updatedAt": SERVER_TIMESTAMP})
        snapshot = await self.store.add(presentations_collection(course_id), document)
        logger.info("Created presentation %s in course %s", snapshot.id, course_id)
        return PresentationState.from_document(snapshot.id, snapshot.data)

    async def get_presentation(self, identity: Identity, course_id: str, presentation_id: str) -> PresentationState:
        _, presentation = await self.access.require_viewer(identity, course_id, presentation_id)
        return presentation

    async def list_presentations(self, identity: Identity, course_id: str) -> list[PresentationState]:
        await self.access.require_course_instructor(identity, course_id)
        snapshots = await self.store.query(Query(presentations_collection(course_id)).order_by("createdAt"))
        return [PresentationState.from_document(snapshot.id, snapshot.data) for snapshot in snapshots]

    async def get_live_presentation_id(self, course_id: str) -> str | None:
        course = await self.access.load_course(course_id)
        return course.live_presentation

    async def go_live(self, identity: Identity, course_id: str, presentation_id: str) -> PresentationState:
        """Make this the course's only live presentation.

        Other live presentations are demoted first, each as its own write; if
        any demotion fails, this presentation is not promoted. Promotion and
        the course pointer commit together, then any deck promoted by a
        concurrent call that lost the pointer is demoted.
        """
        await self.access.require_presenter(identity, course_id, presentation_id)

        try:
            await self._demote_live(course_id, keep=presentation_id)

            async def promote(transaction: Transaction) -> None:
                await transaction.get(course_path(course_id))
                path = presentation_path(course_id, presentation_id)
                snapshot = await transaction.get(path)
                if not snapshot.exists:
                    raise DocumentNotFoundError(path, f"Presentation {presentation_id} not found")
                transaction.update(path, {"isLive": True, "endedAt": None, "updatedAt": SERVER_TIMESTAMP})
                transaction.set(course_path(course_id), {"livePresentation": presentation_id}, merge=True)

            await self.store.run_transaction(promote)
            await self._demote_live(course_id)
        except StoreError as exc:
            logger.error(f"goLive failed for {presentation_id}: {exc}")
            raise

        logger.info("Presentation %s is live in course %s", presentation_id, course_id)
        return await self.access.load_presentation(course_id, presentation_id)

    async def navigate(
        self,
        identity: Identity,
        course_id: str,
        presentation_id: str,
        direction: NavigationDirection,
    ) -> PresentationState:
        step = 1 if NavigationDirection(direction) == NavigationDirection.NEXT else -1
        return await self._move(identity, course_id, presentation_id, lambda current: current + step)

    async def go_to_slide(
        self, identity: Identity, course_id: str, presentation_id: str, index: int
    ) -> PresentationState:
        return await self._move(identity, course_id, presentation_id, lambda _current: index)

    async def end_live(self, identity: Identity, course_id: str, presentation_id: str) -> PresentationState:
        await self.access.require_presenter(identity, course_id, presentation_id)
        try:
            await self.store.update(
                presentation_path(course_id, presentation_id),
                {"isLive": False, "endedAt": SERVER_TIMESTAMP, "updatedAt": SERVER_TIMESTAMP},
            )

            async def clear_pointer(transaction: Transaction) -> None:
                course = await transaction.get(course_path(course_id))
                if course.get("livePresentation") == presentation_id:
                    transaction.update(course_path(course_id), {"livePresentation": None})

            await self.store.run_transaction(clear_pointer)
        except StoreError as exc:
            logger.error(f"endLive failed for {presentation_id}: {exc}")
            raise

        logger.info("Presentation %s ended", presentation_id)
        return await self.access.load_presentation(course_id, presentation_id)

    async def set_audience_mode(
        self, identity: Identity, course_id: str, presentation_id: str, mode: AudienceMode
    ) -> PresentationState:
        await self.access.require_presenter(identity, course_id, presentation_id)
        await self.store.update(
            presentation_path(course_id, presentation_id),
            {"audienceMode": AudienceMode(mode).value, "updatedAt": SERVER_TIMESTAMP},
        )
        return await self.access.load_presentation(course_id, presentation_id)

    async def _demote_live(self, course_id: str, keep: str | None = None) -> None:
        """Demote every live presentation except ``keep`` (default: the course pointer)."""
        live = await self.store.query(Query(presentations_collection(course_id)).where("isLive", "==", True))
        results = await asyncio.gather(
            *(self._demote(course_id, snapshot.id, keep) for snapshot in live if snapshot.id != keep),
            return_exceptions=True,
        )
        failures = [result for result in results if isinstance(result, Exception)]
        if failures:
            logger.error(f"{len(failures)} demotion(s) failed in course {course_id}")
            raise failures[0]

    async def _demote(self, course_id: str, presentation_id: str, keep: str | None) -> None:
        path = presentation_path(course_id, presentation_id)

        # Reading the course makes a concurrent pointer change retry this demotion
        async def demote(transaction: Transaction) -> None:
            course = await transaction.get(course_path(course_id))
            snapshot = await transaction.get(path)
            if not snapshot.exists:
                logger.warning("Live presentation %s disappeared before demotion", presentation_id)
                return
            winner = keep if keep is not None else course.get("livePresentation")
            if snapshot.get("isLive") and presentation_id != winner:
                transaction.update(path, {"isLive": False, "endedAt": SERVER_TIMESTAMP, "updatedAt": SERVER_TIMESTAMP})

        await self.store.run_transaction(demote)

    async def _move(self, identity: Identity, course_id: str, presentation_id: str, target) -> PresentationState:
        await self.access.require_presenter(identity, course_id, presentation_id)
        path = presentation_path(course_id, presentation_id)

        try:
            slide_count = await self.slides.count_slides(course_id, presentation_id)

            async def write_index(transaction: Transaction) -> int:
                snapshot = await transaction.get(path)
                if not snapshot.exists:
                    raise DocumentNotFoundError(path, f"Presentation {presentation_id} not found")
                current = PresentationState.from_document(snapshot.id, snapshot.data).current_slide_index
                index = clamp(target(current), 0, slide_count - 1)
                if index != snapshot.get("currentSlideIndex"):
                    transaction.update(path, {"currentSlideIndex": index, "updatedAt": SERVER_TIMESTAMP})
                return index

            index = await self.store.run_transaction(write_index)
        except StoreError as exc:
            logger.error(f"Navigation failed for {presentation_id}: {exc}")
            raise

        logger.debug("Presentation %s now on slide %d", presentation_id, index)
        return await self.access.load_presentation(course_id, presentation_id)
