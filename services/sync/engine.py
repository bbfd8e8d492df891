"""Subscription lifecycle for one client's view of a live presentation.

A SyncEngine owns the store listeners for a single client: the presentation
record, the current slide's comments and groups and, for viewers that join a
course, the course's live-presentation pointer. Everything the client needs to
know is pushed to an injected SyncController.

Slide changes re-scope the annotation listeners: the old listeners are
unsubscribed before new ones are opened, and every delivery carries the
generation and slide index it was opened for, so a late delivery from a
cancelled listener never reaches the current state.
"""

from __future__ import annotations

import asyncio
from functools import partial
from typing import Callable, Protocol

from pydantic import ValidationError

from services.access import AccessPolicy
from services.identity import Identity
from services.store import DocumentSnapshot, DocumentStore, ListenerRegistration, Query, QuerySnapshot
from services.store.paths import comments_collection, course_path, groups_collection, presentation_path
from services.sync.reducer import AnnotationDelta, AnnotationState, reconcile, reduce_all
from shared.enums import AnnotationKind, SyncStatus
from shared.errors import DocumentNotFoundError, PermissionDeniedError, TransientStoreError
from shared.models import AnnotationView, PresentationState
from shared.utils import config, setup_logging

logger = setup_logging("sync")


class SyncController(Protocol):
    """Receives everything a SyncEngine learns. Implemented by each client surface."""

    def presentation_changed(self, presentation: PresentationState | None) -> None: ...

    def annotations_changed(self, view: AnnotationView | None) -> None: ...

    def status_changed(self, status: SyncStatus, detail: str | None = None) -> None: ...


class SyncEngine:
    def __init__(
        self,
        store: DocumentStore,
        controller: SyncController,
        identity: Identity | None = None,
        access: AccessPolicy | None = None,
        retry_attempts: int | None = None,
        retry_delay: float | None = None,
    ) -> None:
        self.store = store
        self.controller = controller
        self.identity = identity
        self.access = access or AccessPolicy(store)
        self.retry_attempts = int(retry_attempts if retry_attempts is not None else config.get("sync_retry_attempts", 5))
        self.retry_delay = float(retry_delay if retry_delay is not None else config.get("sync_retry_delay", 0.5))

        self._course_registration: ListenerRegistration | None = None
        self._presentation_registration: ListenerRegistration | None = None
        self._annotation_registrations: list[ListenerRegistration] = []

        self._presentation_generation = 0
        self._generation = 0
        self._course_id: str | None = None
        self._presentation_id: str | None = None
        self._joined_course: str | None = None
        self._following = False

        self._presentation: PresentationState | None = None
        self._state: AnnotationState | None = None
        self._status = SyncStatus.IDLE
        self._status_detail: str | None = None
        self._tasks: set[asyncio.Task] = set()
        self._closed = False
        self._admission = 0

    # Public state
    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def presentation(self) -> PresentationState | None:
        return self._presentation

    @property
    def presentation_id(self) -> str | None:
        return self._presentation_id

    @property
    def slide_index(self) -> int | None:
        return self._state.slide_index if self._state is not None else None

    @property
    def annotations(self) -> AnnotationView | None:
        """Reconciled annotations, or None while they are unknown."""
        if self._state is None or not self._state.ready:
            return None
        return reconcile(self._state)

    # Subscriptions
    async def observe_presentation(self, course_id: str, presentation_id: str) -> bool:
        """Stream the presentation record.

        Returns False if access was refused or could not be checked yet; a
        transient failure of the check is retried with backoff.
        """
        self._ensure_open()
        return await self._admit(course_id, presentation_id, partial(self._start_presentation, course_id, presentation_id))

    async def observe_annotations(self, course_id: str, presentation_id: str, slide_index: int) -> bool:
        """Stream one slide's comments and groups. Returns False if access was refused."""
        self._ensure_open()
        return await self._admit(
            course_id, presentation_id, partial(self._start_annotations, course_id, presentation_id, slide_index)
        )

    async def follow(self, course_id: str, presentation_id: str) -> bool:
        """Stream a presentation and keep annotations pointed at its current slide."""
        self._stop_annotations()
        self._state = None
        self._following = True
        return await self.observe_presentation(course_id, presentation_id)

    async def join_course(self, course_id: str) -> None:
        """Wait for the course's live presentation and follow it, including later switches."""
        self._ensure_open()
        self._stop_course()
        self._joined_course = course_id
        self._set_status(SyncStatus.IDLE, "Waiting for a live presentation")
        self._open(
            "course",
            partial(self._open_course, course_id),
            lambda: self._joined_course == course_id,
        )

    def leave(self) -> None:
        """Drop every subscription but keep the engine usable."""
        self._stop_course()
        self._stop_presentation()
        self._stop_annotations()
        self._cancel_tasks()
        self._admission += 1
        self._joined_course = None
        self._following = False
        self._course_id = None
        self._presentation_id = None
        self._presentation = None
        self._state = None
        self._set_status(SyncStatus.IDLE)

    def close(self) -> None:
        if self._closed:
            return
        self.leave()
        self._closed = True
        logger.debug("Sync engine closed")

    async def wait_idle(self) -> None:
        """Wait for pending follow-ups and retries to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Openers
    def _start_presentation(self, course_id: str, presentation_id: str) -> None:
        self._stop_presentation()
        self._course_id = course_id
        self._presentation_id = presentation_id
        self._presentation_generation += 1
        generation = self._presentation_generation
        self._open(
            "presentation",
            partial(self._open_presentation, course_id, presentation_id, generation),
            lambda: generation == self._presentation_generation,
        )

    def _start_annotations(self, course_id: str, presentation_id: str, slide_index: int) -> None:
        self._course_id = course_id
        self._presentation_id = presentation_id
        self._rescope(slide_index)

    def _open_course(self, course_id: str) -> None:
        self._course_registration = self.store.listen_document(
            course_path(course_id),
            partial(self._on_course, course_id),
            partial(self._on_stream_error, "course", lambda: self._joined_course == course_id),
        )

    def _open_presentation(self, course_id: str, presentation_id: str, generation: int) -> None:
        self._presentation_registration = self.store.listen_document(
            presentation_path(course_id, presentation_id),
            partial(self._on_presentation, generation),
            partial(self._on_stream_error, "presentation", lambda: generation == self._presentation_generation),
        )

    def _open_annotations(self, course_id: str, presentation_id: str, slide_index: int, generation: int) -> None:
        is_current = partial(self._is_generation, generation)
        registrations: list[ListenerRegistration] = []
        try:
            for kind, collection in (
                (AnnotationKind.COMMENT, comments_collection(course_id, presentation_id)),
                (AnnotationKind.GROUP, groups_collection(course_id, presentation_id)),
            ):
                registrations.append(
                    self.store.listen_query(
                        Query(collection).where("slideIndex", "==", slide_index),
                        partial(self._on_annotations, kind, slide_index, generation),
                        partial(self._on_stream_error, "annotations", is_current),
                    )
                )
        except Exception:
            for registration in registrations:
                registration.unsubscribe()
            raise
        self._annotation_registrations = registrations

    def _open(self, name: str, opener: Callable[[], None], is_current: Callable[[], bool], attempt: int = 0) -> None:
        try:
            opener()
        except PermissionDeniedError as exc:
            logger.warning(f"No access while subscribing to {name}: {exc}")
            self._set_status(SyncStatus.NO_ACCESS, str(exc))
        except DocumentNotFoundError as exc:
            self._set_status(SyncStatus.ENDED, str(exc))
        except TransientStoreError as exc:
            self._schedule_retry(name, opener, is_current, attempt, exc)

    def _backoff(self, name: str, attempt: int, exc: Exception) -> float | None:
        """Delay before the next attempt, or None once retries are exhausted."""
        if attempt >= self.retry_attempts:
            logger.error(f"Giving up on {name} subscription after {attempt} retries: {exc}")
            self._set_status(SyncStatus.STALE, f"Live updates unavailable: {exc}")
            return None
        delay = self.retry_delay * (2**attempt)
        logger.warning(f"{name} subscription failed ({exc}); retrying in {delay:.2f}s")
        self._set_status(SyncStatus.STALE, f"Reconnecting: {exc}")
        return delay

    def _schedule_retry(
        self,
        name: str,
        opener: Callable[[], None],
        is_current: Callable[[], bool],
        attempt: int,
        exc: Exception,
    ) -> None:
        delay = self._backoff(name, attempt, exc)
        if delay is None:
            return

        async def retry() -> None:
            await asyncio.sleep(delay)
            if self._closed or not is_current():
                return
            self._open(name, opener, is_current, attempt + 1)
            if self._status == SyncStatus.STALE and self._subscribed(name):
                self._refresh_status()

        self._spawn(retry())

    async def _admit(self, course_id: str, presentation_id: str, start: Callable[[], None]) -> bool:
        self._admission += 1
        return await self._try_admit(course_id, presentation_id, start, self._admission, 0)

    async def _try_admit(
        self, course_id: str, presentation_id: str, start: Callable[[], None], admission: int, attempt: int
    ) -> bool:
        try:
            allowed = await self._check_access(course_id, presentation_id)
        except TransientStoreError as exc:
            delay = self._backoff("access", attempt, exc)
            if delay is not None:

                async def retry() -> None:
                    await asyncio.sleep(delay)
                    if not self._closed and admission == self._admission:
                        await self._try_admit(course_id, presentation_id, start, admission, attempt + 1)

                self._spawn(retry())
            return False
        if allowed:
            start()
        return allowed

    def _subscribed(self, name: str) -> bool:
        if name == "course":
            return self._course_registration is not None and self._course_registration.active
        if name == "presentation":
            return self._presentation_registration is not None and self._presentation_registration.active
        return bool(self._annotation_registrations) and all(r.active for r in self._annotation_registrations)

    # Callbacks
    def _on_course(self, course_id: str, snapshot: DocumentSnapshot) -> None:
        if self._joined_course != course_id:
            return
        if not snapshot.exists:
            self._set_status(SyncStatus.NO_ACCESS, f"Course {course_id} not found")
            return
        pointer = snapshot.get("livePresentation")
        if not pointer:
            if not self._following:
                self._set_status(SyncStatus.IDLE, "Waiting for a live presentation")
            return
        if pointer == self._presentation_id and self._following:
            return
        logger.info("Course %s is now presenting %s", course_id, pointer)
        self._spawn(self.follow(course_id, pointer))

    def _on_presentation(self, generation: int, snapshot: DocumentSnapshot) -> None:
        if generation != self._presentation_generation:
            return
        if not snapshot.exists:
            self._presentation = None
            self.controller.presentation_changed(None)
            self._end("Presentation no longer exists")
            return
        try:
            presentation = PresentationState.from_document(snapshot.id, snapshot.data)
        except ValidationError as exc:
            logger.warning(f"Ignoring malformed presentation {snapshot.path}: {exc}")
            return

        self._presentation = presentation
        self.controller.presentation_changed(presentation)

        if self._following:
            if not presentation.is_live:
                if presentation.ended_at is not None:
                    self._end("Presentation ended")
                else:
                    self._stop_annotations()
                    self._state = None
                    self._set_status(SyncStatus.IDLE, "Presentation is not live")
                return
            if self._state is None or self._state.slide_index != presentation.current_slide_index:
                self._rescope(presentation.current_slide_index)
                return
        self._refresh_status()

    def _on_annotations(self, kind: AnnotationKind, slide_index: int, generation: int, snapshot: QuerySnapshot) -> None:
        state = self._state
        if state is None or generation != self._generation:
            logger.debug("Dropping %s delivery from cancelled subscription (slide %s)", kind, slide_index)
            return
        deltas = [AnnotationDelta.from_change(change, kind, slide_index, generation) for change in snapshot.changes]
        self._state = reduce_all(state, deltas).mark_loaded(kind)
        if self._state.ready:
            self._emit_annotations()
        self._refresh_status()

    def _on_stream_error(self, name: str, is_current: Callable[[], bool], exc: Exception) -> None:
        if self._closed or not is_current():
            return
        if isinstance(exc, PermissionDeniedError):
            self._set_status(SyncStatus.NO_ACCESS, str(exc))
            return
        logger.warning(f"{name} stream failed: {exc}")
        if name == "course" and self._joined_course:
            self._stop_course()
            self._schedule_retry(name, partial(self._open_course, self._joined_course), is_current, 0, exc)
        elif name == "presentation" and self._course_id and self._presentation_id:
            self._stop_presentation()
            self._presentation_generation += 1
            generation = self._presentation_generation
            self._schedule_retry(
                name,
                partial(self._open_presentation, self._course_id, self._presentation_id, generation),
                lambda: generation == self._presentation_generation,
                0,
                exc,
            )
        elif name == "annotations" and self._state is not None:
            self._rescope(self._state.slide_index, cause=exc)

    # Helpers
    def _rescope(self, slide_index: int, cause: Exception | None = None) -> None:
        # Unsubscribe before subscribing so no two scopes deliver at once
        self._stop_annotations()
        self._generation += 1
        generation = self._generation
        self._state = AnnotationState(slide_index=slide_index, generation=generation)
        self.controller.annotations_changed(None)
        self._set_status(SyncStatus.LOADING)

        course_id, presentation_id = self._course_id, self._presentation_id
        opener = partial(self._open_annotations, course_id, presentation_id, slide_index, generation)
        is_current = partial(self._is_generation, generation)
        if cause is not None:
            self._schedule_retry("annotations", opener, is_current, 0, cause)
        else:
            self._open("annotations", opener, is_current)

    def _emit_annotations(self) -> None:
        self.controller.annotations_changed(self.annotations)

    def _end(self, detail: str) -> None:
        self._stop_annotations()
        self._state = None
        self.controller.annotations_changed(None)
        self._set_status(SyncStatus.ENDED, detail)

    def _is_generation(self, generation: int) -> bool:
        return generation == self._generation

    def _refresh_status(self) -> None:
        if self._status == SyncStatus.NO_ACCESS:
            return
        if self._status == SyncStatus.ENDED and self._state is None:
            return
        if self._state is not None and not self._state.ready:
            self._set_status(SyncStatus.LOADING)
        elif self._presentation is not None or self._state is not None:
            self._set_status(SyncStatus.LIVE)

    def _set_status(self, status: SyncStatus, detail: str | None = None) -> None:
        if status == self._status and detail == self._status_detail:
            return
        self._status = status
        self._status_detail = detail
        self.controller.status_changed(status, detail)

    async def _check_access(self, course_id: str, presentation_id: str) -> bool:
        if self.identity is None:
            return True
        try:
            await self.access.require_viewer(self.identity, course_id, presentation_id)
        except PermissionDeniedError as exc:
            self._set_status(SyncStatus.NO_ACCESS, str(exc))
            return False
        except DocumentNotFoundError as exc:
            self._set_status(SyncStatus.ENDED, str(exc))
            return False
        if self._status == SyncStatus.NO_ACCESS:
            self._set_status(SyncStatus.LOADING)
        return True

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Sync follow-up failed: {task.exception()}")

    def _cancel_tasks(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def _stop_course(self) -> None:
        if self._course_registration is not None:
            self._course_registration.unsubscribe()
            self._course_registration = None

    def _stop_presentation(self) -> None:
        if self._presentation_registration is not None:
            self._presentation_registration.unsubscribe()
            self._presentation_registration = None

    def _stop_annotations(self) -> None:
        for registration in self._annotation_registrations:
            registration.unsubscribe()
        self._annotation_registrations = []

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Sync engine is closed")
