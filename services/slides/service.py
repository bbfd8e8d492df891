"""Slide deck editing with dense ordering."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Callable

from pydantic import ValidationError

from services.access import AccessPolicy
from services.identity import Identity
from services.store import SERVER_TIMESTAMP, DocumentSnapshot, DocumentStore, ListenerRegistration, Query, Transaction
from services.store.paths import (
    comments_collection,
    groups_collection,
    polls_collection,
    presentation_path,
    responses_collection,
    slide_path,
    slides_collection,
    votes_collection,
)
from shared.errors import DocumentNotFoundError, InvalidInputError
from shared.models import Slide, parse_slide
from shared.utils import clamp, setup_logging

logger = setup_logging("slides")


def _ordered(snapshots: list[DocumentSnapshot]) -> list[DocumentSnapshot]:
    return sorted(snapshots, key=lambda snap: (snap.get("order") is None, snap.get("order") or 0, snap.id))


class SlideService:
    """Create, edit and reorder the slides of a presentation.

    Every positional change rewrites the ``order`` of all siblings in one
    batch, so a deck of N slides always carries orders 0..N-1.
    """

    def __init__(self, store: DocumentStore, access: AccessPolicy | None = None) -> None:
        self.store = store
        self.access = access or AccessPolicy(store)
        self._deck_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def _snapshots(self, course_id: str, presentation_id: str) -> list[DocumentSnapshot]:
        return _ordered(await self.store.query(Query(slides_collection(course_id, presentation_id))))

    @staticmethod
    def _parse(snapshot: DocumentSnapshot) -> Slide:
        return parse_slide(snapshot.data or {}, snapshot.id)

    @staticmethod
    def _validate(payload: dict[str, Any]) -> Slide:
        try:
            return parse_slide(payload)
        except ValidationError as exc:
            raise InvalidInputError(f"Invalid slide: {exc.errors()[0]['msg']}") from exc

    async def list_slides(self, course_id: str, presentation_id: str) -> list[Slide]:
        return [self._parse(snapshot) for snapshot in await self._snapshots(course_id, presentation_id)]

    async def count_slides(self, course_id: str, presentation_id: str) -> int:
        return len(await self.store.query(Query(slides_collection(course_id, presentation_id))))

    async def get_slide(self, course_id: str, presentation_id: str, slide_id: str) -> Slide:
        snapshot = await self.store.get(slide_path(course_id, presentation_id, slide_id))
        if not snapshot.exists:
            raise DocumentNotFoundError(snapshot.path, f"Slide {slide_id} not found")
        return self._parse(snapshot)

    async def add_slide(
        self,
        identity: Identity,
        course_id: str,
        presentation_id: str,
        payload: dict[str, Any],
        position: int | None = None,
    ) -> Slide:
        """Insert a slide at position (default: end) and renumber the deck."""
        slide = self._validate(payload)
        await self.access.require_moderator(identity, course_id, presentation_id)

        async with self._deck_locks[presentation_id]:
            existing = await self._snapshots(course_id, presentation_id)
            index = len(existing) if position is None else clamp(position, 0, len(existing))
            new_path = f"{slides_collection(course_id, presentation_id)}/{self.store.new_id()}"
            document = slide.to_document()
            document.update({"order": index, "createdAt": SERVER_TIMESTAMP, "updatedAt": SERVER_TIMESTAMP})

            await self._commit_layout(
                course_id,
                presentation_id,
                existing,
                existing[:index] + [None] + existing[index:],
                stage=lambda transaction: transaction.set(new_path, document),
            )

        logger.info("Added %s slide at %d to presentation %s", slide.type, index, presentation_id)
        return self._parse(await self.store.get(new_path))

    async def update_slide(
        self,
        identity: Identity,
        course_id: str,
        presentation_id: str,
        slide_id: str,
        payload: dict[str, Any],
    ) -> Slide:
        """Replace a slide's content, keeping its position."""
        await self.access.require_moderator(identity, course_id, presentation_id)
        path = slide_path(course_id, presentation_id, slide_id)
        current = await self.store.get(path)
        if not current.exists:
            raise DocumentNotFoundError(path, f"Slide {slide_id} not found")

        slide = self._validate(payload)
        document = slide.to_document()
        document.update(
            {
                "order": current.get("order", 0),
                "createdAt": current.get("createdAt") or SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            }
        )
        await self.store.set(path, document)
        return self._parse(await self.store.get(path))

    async def delete_slide(self, identity: Identity, course_id: str, presentation_id: str, slide_id: str) -> None:
        """Delete a slide with its comments, groups and polls, then close the gap."""
        await self.access.require_moderator(identity, course_id, presentation_id)
        path = slide_path(course_id, presentation_id, slide_id)

        async with self._deck_locks[presentation_id]:
            existing = await self._snapshots(course_id, presentation_id)
            remaining = [snapshot for snapshot in existing if snapshot.id != slide_id]
            if len(remaining) == len(existing):
                raise DocumentNotFoundError(path, f"Slide {slide_id} not found")

            await self._commit_layout(
                course_id, presentation_id, existing, remaining, stage=lambda transaction: transaction.delete(path)
            )
        logger.info("Deleted slide %s from presentation %s", slide_id, presentation_id)

    async def reorder_slides(
        self,
        identity: Identity,
        course_id: str,
        presentation_id: str,
        from_index: int,
        to_index: int,
    ) -> list[Slide]:
        """Move the slide at from_index to to_index; annotations move with it."""
        await self.access.require_moderator(identity, course_id, presentation_id)

        async with self._deck_locks[presentation_id]:
            existing = await self._snapshots(course_id, presentation_id)
            if not 0 <= from_index < len(existing) or not 0 <= to_index < len(existing):
                raise InvalidInputError(f"Slide positions must be within 0..{len(existing) - 1}")
            layout = list(existing)
            layout.insert(to_index, layout.pop(from_index))
            if from_index != to_index:
                await self._commit_layout(course_id, presentation_id, existing, layout)
        return await self.list_slides(course_id, presentation_id)

    def listen_slides(
        self,
        course_id: str,
        presentation_id: str,
        on_change: Callable[[list[Slide]], None],
        on_error: Callable[[Exception], None] | None = None,
    ) -> ListenerRegistration:
        """Deliver the ordered deck now and after every change."""
        query = Query(slides_collection(course_id, presentation_id)).order_by("order")

        def deliver(snapshot) -> None:
            on_change([self._parse(document) for document in snapshot.documents])

        return self.store.listen_query(query, deliver, on_error)

    async def _commit_layout(
        self,
        course_id: str,
        presentation_id: str,
        existing: list[DocumentSnapshot],
        layout: list[DocumentSnapshot | None],
        stage: Callable[[Transaction], Any] | None = None,
    ) -> None:
        """Write a new slide order and move slide-indexed documents with their slide.

        ``existing`` is the current dense order; ``layout`` the new one, where
        None marks a slot ``stage`` fills. Comments, groups, polls and
        responses follow their slide; those of a removed slide are deleted.
        The presenter stays on the slide they were showing, or on the same
        position if it is gone.
        """
        old_positions = {snapshot.id: index for index, snapshot in enumerate(existing)}
        moves: dict[int, int | None] = dict.fromkeys(range(len(existing)))
        for index, snapshot in enumerate(layout):
            if snapshot is not None:
                moves[old_positions[snapshot.id]] = index
        last_index = max(len(layout) - 1, 0)
        path = presentation_path(course_id, presentation_id)

        async def write(transaction: Transaction) -> None:
            presentation = await transaction.get(path)
            if not presentation.exists:
                raise DocumentNotFoundError(path, f"Presentation {presentation_id} not found")
            indexed = await self._slide_indexed(course_id, presentation_id)

            if stage is not None:
                stage(transaction)
            self._renumber(transaction, layout)
            for snapshot, old in indexed:
                if old not in moves:
                    continue
                if moves[old] is None:
                    transaction.delete(snapshot.path)
                elif moves[old] != old and "slideIndex" in snapshot.data:
                    transaction.update(snapshot.path, {"slideIndex": moves[old]})

            current = presentation.get("currentSlideIndex") or 0
            target = moves.get(current)
            if target is None:
                target = clamp(current, 0, last_index)
            if target != current:
                transaction.update(path, {"currentSlideIndex": target, "updatedAt": SERVER_TIMESTAMP})

        await self.store.run_transaction(write)

    async def _slide_indexed(self, course_id: str, presentation_id: str) -> list[tuple[DocumentSnapshot, Any]]:
        """Documents scoped to a slide position, paired with that position."""
        polls = await self.store.query(Query(polls_collection(course_id, presentation_id)))
        indexed = [
            (snapshot, snapshot.get("slideIndex"))
            for snapshot in [
                *await self.store.query(Query(comments_collection(course_id, presentation_id))),
                *await self.store.query(Query(groups_collection(course_id, presentation_id))),
                *await self.store.query(Query(responses_collection(course_id, presentation_id))),
                *polls,
            ]
        ]
        # Votes carry no slideIndex of their own
        for poll in polls:
            votes = await self.store.query(Query(votes_collection(course_id, presentation_id, poll.id)))
            indexed.extend((vote, poll.get("slideIndex")) for vote in votes)
        return indexed

    def _renumber(self, writer, ordered: list[DocumentSnapshot | None]) -> None:
        # None marks a slot already written by the caller
        for index, snapshot in enumerate(ordered):
            if snapshot is not None and snapshot.get("order") != index:
                writer.update(snapshot.path, {"order": index})
