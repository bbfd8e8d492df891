"""Access rules for viewing, moderating and presenting."""

from __future__ import annotations

from services.identity import Identity
from services.store import DocumentStore
from services.store.paths import course_path, presentation_path
from shared.enums import AudienceMode
from shared.errors import DocumentNotFoundError, NotPresenterError, PermissionDeniedError
from shared.models import Course, PresentationState


class AccessPolicy:
    """Reads course and presentation documents and decides who may do what.

    Enrolment itself is managed elsewhere; the course document only tells us
    who the instructor is and who is enrolled.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def load_course(self, course_id: str) -> Course:
        snapshot = await self.store.get(course_path(course_id))
        if not snapshot.exists:
            raise DocumentNotFoundError(snapshot.path, f"Course {course_id} not found")
        return Course.from_document(snapshot.id, snapshot.data)

    async def load_presentation(self, course_id: str, presentation_id: str) -> PresentationState:
        snapshot = await self.store.get(presentation_path(course_id, presentation_id))
        if not snapshot.exists:
            raise DocumentNotFoundError(snapshot.path, f"Presentation {presentation_id} not found")
        return PresentationState.from_document(snapshot.id, snapshot.data)

    @staticmethod
    def can_moderate(identity: Identity, course: Course, presentation: PresentationState | None = None) -> bool:
        if not identity.is_instructor:
            return False
        owners = {course.instructor_id}
        if presentation is not None:
            owners.add(presentation.owner_id)
        return identity.user_id in owners

    @classmethod
    def can_view(cls, identity: Identity, course: Course, presentation: PresentationState) -> bool:
        if cls.can_moderate(identity, course, presentation):
            return True
        if presentation.audience_mode == AudienceMode.ANONYMOUS:
            return True
        if identity.anonymous:
            return False
        return identity.user_id in course.enrolled_students

    async def require_viewer(
        self, identity: Identity, course_id: str, presentation_id: str
    ) -> tuple[Course, PresentationState]:
        course = await self.load_course(course_id)
        presentation = await self.load_presentation(course_id, presentation_id)
        if not self.can_view(identity, course, presentation):
            raise PermissionDeniedError(f"{identity.user_id} may not view presentation {presentation_id}")
        return course, presentation

    async def require_moderator(
        self, identity: Identity, course_id: str, presentation_id: str
    ) -> tuple[Course, PresentationState]:
        course = await self.load_course(course_id)
        presentation = await self.load_presentation(course_id, presentation_id)
        if not self.can_moderate(identity, course, presentation):
            raise PermissionDeniedError(f"{identity.user_id} may not moderate presentation {presentation_id}")
        return course, presentation

    async def require_presenter(
        self, identity: Identity, course_id: str, presentation_id: str
    ) -> tuple[Course, PresentationState]:
        course = await self.load_course(course_id)
        presentation = await self.load_presentation(course_id, presentation_id)
        if not self.can_moderate(identity, course, presentation):
            raise NotPresenterError(f"{identity.user_id} is not the presenter of {presentation_id}")
        return course, presentation

    async def require_course_instructor(self, identity: Identity, course_id: str) -> Course:
        course = await self.load_course(course_id)
        if not self.can_moderate(identity, course):
            raise PermissionDeniedError(f"{identity.user_id} is not an instructor of course {course_id}")
        return course
