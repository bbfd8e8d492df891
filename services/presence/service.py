"""Who is watching a presentation, on which slide, and who is typing."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Callable

from services.access import AccessPolicy
from services.identity import Identity
from services.store import SERVER_TIMESTAMP, DocumentSnapshot, DocumentStore, ListenerRegistration, Query
from services.store.paths import presence_collection, presence_path
from shared.errors import DocumentNotFoundError
from shared.models import Presence
from shared.utils import config, setup_logging

logger = setup_logging("presence")


def _seconds(name: str, default: float) -> timedelta:
    return timedelta(seconds=float(config.get_tuning_value(f"presence.{name}", default)))


class PresenceService:
    """One presence document per viewer and presentation.

    Viewers join, send heartbeats while watching and leave when done. A
    viewer whose last heartbeat is older than ``presence.timeout_seconds``
    is reported offline even if it never left, and a typing flag older than
    ``presence.typing_timeout_seconds`` is dropped.
    """

    def __init__(self, store: DocumentStore, access: AccessPolicy | None = None) -> None:
        self.store = store
        self.access = access or AccessPolicy(store)

    async def join(
        self, identity: Identity, course_id: str, presentation_id: str, slide_index: int | None = None
    ) -> Presence:
        _, presentation = await self.access.require_viewer(identity, course_id, presentation_id)
        path = presence_path(course_id, presentation_id, identity.user_id)
        presence = Presence(
            user_id=identity.user_id,
            display_name=identity.display_name or identity.user_id,
            role=identity.role,
            current_slide_index=presentation.current_slide_index if slide_index is None else slide_index,
        )
        document = presence.to_document()
        document["lastSeen"] = SERVER_TIMESTAMP
        await self.store.set(path, document)
        logger.debug("%s joined presentation %s", identity.user_id, presentation_id)
        return await self._load(path)

    async def heartbeat(
        self, identity: Identity, course_id: str, presentation_id: str, slide_index: int | None = None
    ) -> Presence:
        """Refresh lastSeen, and the viewer's slide when given. Raises if the viewer never joined."""
        path = presence_path(course_id, presentation_id, identity.user_id)
        fields = {"isOnline": True, "lastSeen": SERVER_TIMESTAMP}
        if slide_index is not None:
            fields["currentSlideIndex"] = slide_index
        await self.store.update(path, fields)
        return await self._load(path)

    async def set_typing(self, identity: Identity, course_id: str, presentation_id: str, is_typing: bool) -> Presence:
        path = presence_path(course_id, presentation_id, identity.user_id)
        await self.store.update(
            path,
            {
                "isTyping": bool(is_typing),
                "typingAt": SERVER_TIMESTAMP if is_typing else None,
                "lastSeen": SERVER_TIMESTAMP,
            },
        )
        return await self._load(path)

    async def leave(self, identity: Identity, course_id: str, presentation_id: str) -> None:
        path = presence_path(course_id, presentation_id, identity.user_id)
        try:
            await self.store.update(path, {"isOnline": False, "isTyping": False, "lastSeen": SERVER_TIMESTAMP})
        except DocumentNotFoundError:
            logger.debug("%s left presentation %s without joining", identity.user_id, presentation_id)

    async def list_online(self, identity: Identity, course_id: str, presentation_id: str) -> list[Presence]:
        await self.access.require_viewer(identity, course_id, presentation_id)
        return self._online(await self.store.query(self._query(course_id, presentation_id)))

    async def listen_presence(
        self,
        identity: Identity,
        course_id: str,
        presentation_id: str,
        on_change: Callable[[list[Presence]], None],
        on_error: Callable[[Exception], None] | None = None,
    ) -> ListenerRegistration:
        """Deliver the online viewers now and after every presence change."""
        await self.access.require_viewer(identity, course_id, presentation_id)

        def deliver(snapshot) -> None:
            on_change(self._online(snapshot.documents))

        return self.store.listen_query(self._query(course_id, presentation_id), deliver, on_error)

    @staticmethod
    def _query(course_id: str, presentation_id: str) -> Query:
        return (
            Query(presence_collection(course_id, presentation_id))
            .where("isOnline", "==", True)
            .order_by("lastSeen", descending=True)
        )

    @staticmethod
    def _online(snapshots: list[DocumentSnapshot]) -> list[Presence]:
        now = datetime.now(UTC)
        cutoff = now - _seconds("timeout_seconds", 60)
        typing_cutoff = now - _seconds("typing_timeout_seconds", 3)
        online = []
        for snapshot in snapshots:
            presence = Presence.from_document(snapshot.id, snapshot.data)
            last_seen = presence.last_seen
            if last_seen is not None and last_seen.tzinfo is None:
                last_seen = last_seen.replace(tzinfo=UTC)
            if last_seen is not None and last_seen < cutoff:
                continue
            typing_at = presence.typing_at
            if typing_at is not None and typing_at.tzinfo is None:
                typing_at = typing_at.replace(tzinfo=UTC)
            if presence.is_typing and (typing_at is None or typing_at < typing_cutoff):
                presence = presence.model_copy(update={"is_typing": False})
            online.append(presence)
        return online

    async def _load(self, path: str) -> Presence:
        snapshot = await self.store.get(path)
        if not snapshot.exists:
            raise DocumentNotFoundError(path, "Presence not found")
        return Presence.from_document(snapshot.id, snapshot.data)
