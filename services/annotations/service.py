"""Comment and group operations that converge under concurrent writers.

Likes are sets (``likedBy``) with the count derived from them. Every change
that touches both sides of a Comment/Group reference runs in one store
transaction, so a comment never names a group that does not list it and a
group never lists a comment that names another group.
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from services.access import AccessPolicy
from services.annotations.coalescer import PositionCoalescer
from services.identity import Identity
from services.store import SERVER_TIMESTAMP, ArrayRemove, ArrayUnion, DocumentSnapshot, DocumentStore, Query, Transaction
from services.store.paths import comment_path, comments_collection, group_path, groups_collection, presentation_path
from services.sync.reducer import AnnotationState, find_drift, reconcile
from shared.errors import DocumentNotFoundError, InvalidInputError, PermissionDeniedError
from shared.models import AnnotationView, Comment, Group, Position, PresentationState, RepairReport, Reply
from shared.utils import config, setup_logging, validate_text

logger = setup_logging("annotations")

DEFAULT_GROUP_LABEL = "New Group"


def _require(snapshot: DocumentSnapshot, what: str) -> DocumentSnapshot:
    if not snapshot.exists:
        raise DocumentNotFoundError(snapshot.path, f"{what} {snapshot.id} not found")
    return snapshot


def _limit(name: str, default: int) -> int:
    return int(config.get_tuning_value(f"annotations.{name}", default))


def _toggled(liked_by: list[str], user_id: str) -> list[str]:
    if user_id in liked_by:
        return [liker for liker in liked_by if liker != user_id]
    return [*liked_by, user_id]


class AnnotationService:
    def __init__(
        self,
        store: DocumentStore,
        access: AccessPolicy | None = None,
        move_flush_interval: float | None = None,
    ) -> None:
        self.store = store
        self.access = access or AccessPolicy(store)
        interval = move_flush_interval if move_flush_interval is not None else config.get("group_move_flush_interval", 0.1)
        self.coalescer = PositionCoalescer(self._write_position, float(interval))

    # Comments
    async def post_comment(self, identity: Identity, course_id: str, presentation_id: str, text: str) -> Comment:
        """Post a comment on the slide the presenter is showing at write time."""
        text = validate_text(text, "Comment", max_length=_limit("max_comment_length", 2000))
        course, presentation = await self.access.require_viewer(identity, course_id, presentation_id)
        moderator = self.access.can_moderate(identity, course, presentation)
        path = presentation_path(course_id, presentation_id)

        async def write(transaction: Transaction) -> str:
            current = PresentationState.from_document(
                presentation_id, _require(await transaction.get(path), "Presentation").data
            )
            if not current.is_live and not moderator:
                raise PermissionDeniedError(f"Presentation {presentation_id} is not live")
            comment = Comment(
                text=text,
                author_id=identity.user_id,
                author_display_name=identity.display_name,
                slide_index=current.current_slide_index,
            )
            document = comment.to_document()
            document["timestamp"] = SERVER_TIMESTAMP
            new_path = transaction.new_document_path(comments_collection(course_id, presentation_id))
            transaction.set(new_path, document)
            return new_path

        new_path = await self.store.run_transaction(write)
        snapshot = await self.store.get(new_path)
        logger.info("Comment %s posted by %s", snapshot.id, identity.user_id)
        return Comment.from_document(snapshot.id, snapshot.data)

    async def delete_comment(self, identity: Identity, course_id: str, presentation_id: str, comment_id: str) -> None:
        """Delete a comment (author or moderator) and drop it from its group."""
        course, presentation = await self.access.require_viewer(identity, course_id, presentation_id)
        moderator = self.access.can_moderate(identity, course, presentation)
        path = comment_path(course_id, presentation_id, comment_id)

        async def write(transaction: Transaction) -> None:
            comment = Comment.from_document(comment_id, _require(await transaction.get(path), "Comment").data)
            if comment.author_id != identity.user_id and not moderator:
                raise PermissionDeniedError("Only the author or a moderator can delete this comment")
            if comment.group_id:
                group = await transaction.get(group_path(course_id, presentation_id, comment.group_id))
                if group.exists:
                    transaction.update(
                        group.path, {"commentIds": ArrayRemove(comment_id), "updatedAt": SERVER_TIMESTAMP}
                    )
            transaction.delete(path)

        await self.store.run_transaction(write)
        logger.info("Comment %s deleted by %s", comment_id, identity.user_id)

    async def toggle_like(self, identity: Identity, course_id: str, presentation_id: str, comment_id: str) -> Comment:
        await self.access.require_viewer(identity, course_id, presentation_id)
        path = comment_path(course_id, presentation_id, comment_id)

        async def write(transaction: Transaction) -> None:
            comment = Comment.from_document(comment_id, _require(await transaction.get(path), "Comment").data)
            liked_by = _toggled(comment.liked_by, identity.user_id)
            transaction.update(path, {"likedBy": liked_by, "likes": len(liked_by)})

        await self.store.run_transaction(write)
        return await self._load_comment(path)

    async def add_reply(
        self, identity: Identity, course_id: str, presentation_id: str, comment_id: str, text: str
    ) -> Comment:
        text = validate_text(text, "Reply", max_length=_limit("max_reply_length", 1000))
        await self.access.require_viewer(identity, course_id, presentation_id)
        reply = Reply(text=text, author_id=identity.user_id, author_display_name=identity.display_name)
        document = reply.model_dump(by_alias=True)
        document["timestamp"] = SERVER_TIMESTAMP
        return await self._edit_replies(course_id, presentation_id, comment_id, lambda replies: [*replies, document])

    async def delete_reply(
        self, identity: Identity, course_id: str, presentation_id: str, comment_id: str, reply_index: int
    ) -> Comment:
        course, presentation = await self.access.require_viewer(identity, course_id, presentation_id)
        moderator = self.access.can_moderate(identity, course, presentation)

        def remove(replies: list[dict[str, Any]]) -> list[dict[str, Any]]:
            target = self._reply_at(replies, reply_index)
            if target.get("authorId") != identity.user_id and not moderator:
                raise PermissionDeniedError("Only the author or a moderator can delete this reply")
            return replies[:reply_index] + replies[reply_index + 1 :]

        return await self._edit_replies(course_id, presentation_id, comment_id, remove)

    async def toggle_reply_like(
        self, identity: Identity, course_id: str, presentation_id: str, comment_id: str, reply_index: int
    ) -> Comment:
        """Toggle a like on one reply; independent of the parent comment's likes."""
        await self.access.require_viewer(identity, course_id, presentation_id)

        def toggle(replies: list[dict[str, Any]]) -> list[dict[str, Any]]:
            target = dict(self._reply_at(replies, reply_index))
            liked_by = _toggled(list(target.get("likedBy") or []), identity.user_id)
            target.update({"likedBy": liked_by, "likes": len(liked_by)})
            return replies[:reply_index] + [target] + replies[reply_index + 1 :]

        return await self._edit_replies(course_id, presentation_id, comment_id, toggle)

    # Groups
    async def create_group(
        self,
        identity: Identity,
        course_id: str,
        presentation_id: str,
        comment_id: str,
        x: float = 0.0,
        y: float = 0.0,
        label: str | None = None,
    ) -> Group:
        """Wrap one comment in a new group, moving it out of any group it was in."""
        await self.access.require_moderator(identity, course_id, presentation_id)
        label = (label or "").strip() or config.get_tuning_value("annotations.default_group_label", DEFAULT_GROUP_LABEL)
        cpath = comment_path(course_id, presentation_id, comment_id)

        async def write(transaction: Transaction) -> str:
            comment = Comment.from_document(comment_id, _require(await transaction.get(cpath), "Comment").data)
            previous = None
            if comment.group_id:
                previous = await transaction.get(group_path(course_id, presentation_id, comment.group_id))

            new_path = transaction.new_document_path(groups_collection(course_id, presentation_id))
            group = Group(
                label=label,
                comment_ids=[comment_id],
                position=Position(x=x, y=y),
                slide_index=comment.slide_index,
            )
            document = group.to_document()
            document.update({"createdAt": SERVER_TIMESTAMP, "updatedAt": SERVER_TIMESTAMP})
            transaction.set(new_path, document)
            if previous is not None and previous.exists:
                transaction.update(previous.path, {"commentIds": ArrayRemove(comment_id), "updatedAt": SERVER_TIMESTAMP})
            transaction.update(cpath, {"groupId": new_path.rsplit("/", 1)[-1]})
            return new_path

        new_path = await self.store.run_transaction(write)
        group = await self._load_group(new_path)
        logger.info("Group %s created around comment %s", group.id, comment_id)
        return group

    async def add_comment_to_group(
        self, identity: Identity, course_id: str, presentation_id: str, group_id: str, comment_id: str
    ) -> Group:
        """Add a comment to a group. No-op if it is already a member."""
        await self.access.require_moderator(identity, course_id, presentation_id)
        gpath = group_path(course_id, presentation_id, group_id)
        cpath = comment_path(course_id, presentation_id, comment_id)

        async def write(transaction: Transaction) -> None:
            group = Group.from_document(group_id, _require(await transaction.get(gpath), "Group").data)
            comment = Comment.from_document(comment_id, _require(await transaction.get(cpath), "Comment").data)
            if comment_id in group.comment_ids and comment.group_id == group_id:
                return
            if comment.slide_index != group.slide_index:
                raise InvalidInputError("Comment and group belong to different slides")

            previous = None
            if comment.group_id and comment.group_id != group_id:
                previous = await transaction.get(group_path(course_id, presentation_id, comment.group_id))

            transaction.update(gpath, {"commentIds": ArrayUnion(comment_id), "updatedAt": SERVER_TIMESTAMP})
            transaction.update(cpath, {"groupId": group_id})
            if previous is not None and previous.exists:
                transaction.update(previous.path, {"commentIds": ArrayRemove(comment_id), "updatedAt": SERVER_TIMESTAMP})

        await self.store.run_transaction(write)
        return await self._load_group(gpath)

    async def remove_comment_from_group(
        self, identity: Identity, course_id: str, presentation_id: str, group_id: str, comment_id: str
    ) -> Group:
        await self.access.require_moderator(identity, course_id, presentation_id)
        gpath = group_path(course_id, presentation_id, group_id)
        cpath = comment_path(course_id, presentation_id, comment_id)

        async def write(transaction: Transaction) -> None:
            _require(await transaction.get(gpath), "Group")
            comment = await transaction.get(cpath)
            transaction.update(gpath, {"commentIds": ArrayRemove(comment_id), "updatedAt": SERVER_TIMESTAMP})
            if comment.exists and comment.get("groupId") == group_id:
                transaction.update(cpath, {"groupId": None})

        await self.store.run_transaction(write)
        return await self._load_group(gpath)

    async def rename_group(
        self, identity: Identity, course_id: str, presentation_id: str, group_id: str, label: str
    ) -> Group:
        label = validate_text(label, "Group label", max_length=200)
        return await self._update_group(identity, course_id, presentation_id, group_id, {"label": label})

    async def set_group_collapsed(
        self, identity: Identity, course_id: str, presentation_id: str, group_id: str, collapsed: bool
    ) -> Group:
        return await self._update_group(identity, course_id, presentation_id, group_id, {"collapsed": bool(collapsed)})

    async def move_group(
        self, identity: Identity, course_id: str, presentation_id: str, group_id: str, x: float, y: float
    ) -> None:
        """Queue a position change; only the latest position per interval is written."""
        await self.access.require_moderator(identity, course_id, presentation_id)
        self.coalescer.submit(group_path(course_id, presentation_id, group_id), Position(x=x, y=y))

    async def remove_group(self, identity: Identity, course_id: str, presentation_id: str, group_id: str) -> None:
        """Delete a group, detaching (not deleting) every member comment."""
        await self.access.require_moderator(identity, course_id, presentation_id)
        gpath = group_path(course_id, presentation_id, group_id)
        self.coalescer.discard(gpath)
        pointing = await self.store.query(
            Query(comments_collection(course_id, presentation_id)).where("groupId", "==", group_id)
        )

        async def write(transaction: Transaction) -> int:
            group = Group.from_document(group_id, _require(await transaction.get(gpath), "Group").data)
            member_ids = list(dict.fromkeys([*group.comment_ids, *(snapshot.id for snapshot in pointing)]))
            members = [await transaction.get(comment_path(course_id, presentation_id, cid)) for cid in member_ids]
            detached = 0
            for member in members:
                if member.exists and member.get("groupId") == group_id:
                    transaction.update(member.path, {"groupId": None})
                    detached += 1
            transaction.delete(gpath)
            return detached

        detached = await self.store.run_transaction(write)
        logger.info("Group %s removed, %d comment(s) detached", group_id, detached)

    # Views
    async def list_annotations(
        self, identity: Identity, course_id: str, presentation_id: str, slide_index: int
    ) -> AnnotationView:
        await self.access.require_viewer(identity, course_id, presentation_id)
        return reconcile(await self._slide_state(course_id, presentation_id, slide_index))

    async def repair_slide(
        self, identity: Identity, course_id: str, presentation_id: str, slide_index: int
    ) -> RepairReport:
        """Write back fixes for Comment/Group references that disagree."""
        await self.access.require_moderator(identity, course_id, presentation_id)
        state = await self._slide_state(course_id, presentation_id, slide_index)
        drift = find_drift(state.comments, state.groups)

        if not drift.clean:
            batch = self.store.batch()
            for group_id, dropped in drift.dropped_members.items():
                batch.update(
                    group_path(course_id, presentation_id, group_id),
                    {"commentIds": ArrayRemove(*dropped), "updatedAt": SERVER_TIMESTAMP},
                )
            for comment_id in drift.detached_comments:
                batch.update(comment_path(course_id, presentation_id, comment_id), {"groupId": None})
            await batch.commit()
            logger.warning(
                "Repaired slide %d of %s: %d dangling member(s), %d detached comment(s)",
                slide_index,
                presentation_id,
                sum(len(ids) for ids in drift.dropped_members.values()),
                len(drift.detached_comments),
            )

        return RepairReport(
            slide_index=slide_index,
            group_entries_dropped=sum(len(ids) for ids in drift.dropped_members.values()),
            comments_detached=len(drift.detached_comments),
        )

    async def close(self) -> None:
        await self.coalescer.close()

    # Helpers
    async def _slide_state(self, course_id: str, presentation_id: str, slide_index: int) -> AnnotationState:
        comment_docs = await self.store.query(
            Query(comments_collection(course_id, presentation_id)).where("slideIndex", "==", slide_index)
        )
        group_docs = await self.store.query(
            Query(groups_collection(course_id, presentation_id)).where("slideIndex", "==", slide_index)
        )
        comments = {}
        for snapshot in comment_docs:
            try:
                comments[snapshot.id] = Comment.from_document(snapshot.id, snapshot.data)
            except ValidationError as exc:
                logger.warning(f"Skipping malformed comment {snapshot.id}: {exc}")
        groups = {}
        for snapshot in group_docs:
            try:
                groups[snapshot.id] = Group.from_document(snapshot.id, snapshot.data)
            except ValidationError as exc:
                logger.warning(f"Skipping malformed group {snapshot.id}: {exc}")
        return AnnotationState(
            slide_index=slide_index,
            generation=0,
            comments=comments,
            groups=groups,
            comments_loaded=True,
            groups_loaded=True,
        )

    async def _edit_replies(self, course_id: str, presentation_id: str, comment_id: str, edit) -> Comment:
        path = comment_path(course_id, presentation_id, comment_id)

        async def write(transaction: Transaction) -> None:
            snapshot = _require(await transaction.get(path), "Comment")
            # Normalise legacy string replies before editing by position
            replies = [reply.model_dump(by_alias=True) for reply in Comment.from_document(comment_id, snapshot.data).replies]
            transaction.update(path, {"replies": edit(replies)})

        await self.store.run_transaction(write)
        return await self._load_comment(path)

    @staticmethod
    def _reply_at(replies: list[dict[str, Any]], reply_index: int) -> dict[str, Any]:
        if not 0 <= reply_index < len(replies):
            raise InvalidInputError(f"Reply {reply_index} does not exist")
        return replies[reply_index]

    async def _update_group(
        self, identity: Identity, course_id: str, presentation_id: str, group_id: str, fields: dict[str, Any]
    ) -> Group:
        await self.access.require_moderator(identity, course_id, presentation_id)
        path = group_path(course_id, presentation_id, group_id)
        await self.store.update(path, {**fields, "updatedAt": SERVER_TIMESTAMP})
        return await self._load_group(path)

    async def _write_position(self, path: str, position: Position) -> None:
        await self.store.update(path, {"position": position.model_dump(), "updatedAt": SERVER_TIMESTAMP})

    async def _load_comment(self, path: str) -> Comment:
        snapshot = _require(await self.store.get(path), "Comment")
        return Comment.from_document(snapshot.id, snapshot.data)

    async def _load_group(self, path: str) -> Group:
        snapshot = _require(await self.store.get(path), "Group")
        return Group.from_document(snapshot.id, snapshot.data)
