"""Annotation state as a reducer over typed change deltas."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Iterable

from pydantic import ValidationError

from services.store import DocumentChange
from shared.enums import AnnotationKind, ChangeType
from shared.models import AnnotationView, Comment, Group
from shared.utils import setup_logging

logger = setup_logging("sync")

_OLDEST = datetime.min.replace(tzinfo=UTC)


@dataclass(frozen=True)
class AnnotationDelta:
    """One add/modify/remove notification for a comment or group on one slide."""

    change: ChangeType
    kind: AnnotationKind
    entity_id: str
    slide_index: int
    generation: int
    data: dict[str, Any] | None = None

    @classmethod
    def from_change(
        cls,
        change: DocumentChange,
        kind: AnnotationKind,
        slide_index: int,
        generation: int,
    ) -> "AnnotationDelta":
        return cls(
            change=ChangeType(change.type),
            kind=kind,
            entity_id=change.document.id,
            slide_index=slide_index,
            generation=generation,
            data=change.document.to_dict() if change.type != ChangeType.REMOVED else None,
        )


@dataclass(frozen=True)
class AnnotationState:
    """Comments and groups of one slide, keyed by entity id."""

    slide_index: int
    generation: int
    comments: dict[str, Comment] = field(default_factory=dict)
    groups: dict[str, Group] = field(default_factory=dict)
    comments_loaded: bool = False
    groups_loaded: bool = False

    @property
    def ready(self) -> bool:
        return self.comments_loaded and self.groups_loaded

    def mark_loaded(self, kind: AnnotationKind) -> "AnnotationState":
        if kind == AnnotationKind.COMMENT:
            return replace(self, comments_loaded=True)
        return replace(self, groups_loaded=True)


def reduce(state: AnnotationState, delta: AnnotationDelta) -> AnnotationState:
    """Fold one delta into state, returning the new state.

    Deltas from another subscription generation or slide are discarded.
    """
    if delta.generation != state.generation or delta.slide_index != state.slide_index:
        logger.debug(
            "Discarding stale %s delta for slide %s (generation %s, current %s/%s)",
            delta.kind,
            delta.slide_index,
            delta.generation,
            state.slide_index,
            state.generation,
        )
        return state

    is_comment = delta.kind == AnnotationKind.COMMENT
    entities = dict(state.comments if is_comment else state.groups)

    if delta.change == ChangeType.REMOVED:
        entities.pop(delta.entity_id, None)
    else:
        model = Comment if is_comment else Group
        try:
            entities[delta.entity_id] = model.from_document(delta.entity_id, delta.data or {})
        except ValidationError as exc:
            logger.warning(f"Skipping malformed {delta.kind} {delta.entity_id}: {exc}")
            return state

    if is_comment:
        return replace(state, comments=entities)
    return replace(state, groups=entities)


def reduce_all(state: AnnotationState, deltas: Iterable[AnnotationDelta]) -> AnnotationState:
    for delta in deltas:
        state = reduce(state, delta)
    return state


@dataclass
class ReferenceDrift:
    """Comment/Group cross-references that disagree."""

    dropped_members: dict[str, list[str]] = field(default_factory=dict)
    detached_comments: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.dropped_members and not self.detached_comments


def find_drift(comments: dict[str, Comment], groups: dict[str, Group]) -> ReferenceDrift:
    """Compare both sides of every Comment/Group reference.

    A group member survives only if the comment exists and names that group.
    A comment whose group is missing, or does not list it, is detached.
    """
    drift = ReferenceDrift()
    for group_id, group in groups.items():
        dropped = [
            comment_id
            for comment_id in group.comment_ids
            if comment_id not in comments or comments[comment_id].group_id != group_id
        ]
        if dropped:
            drift.dropped_members[group_id] = dropped

    for comment_id, comment in comments.items():
        if comment.group_id is None:
            continue
        group = groups.get(comment.group_id)
        if group is None or comment_id not in group.comment_ids:
            drift.detached_comments.append(comment_id)
    return drift


def _comment_key(comment: Comment) -> tuple:
    return (comment.timestamp or _OLDEST, comment.id)


def _group_key(group: Group) -> tuple:
    return (group.created_at or _OLDEST, group.id)


def reconcile(state: AnnotationState) -> AnnotationView:
    """Build the client view, hiding any reference drift."""
    drift = find_drift(state.comments, state.groups)
    detached = set(drift.detached_comments)

    groups = []
    for group in sorted(state.groups.values(), key=_group_key):
        dropped = drift.dropped_members.get(group.id)
        if dropped:
            members = [comment_id for comment_id in group.comment_ids if comment_id not in dropped]
            group = group.model_copy(update={"comment_ids": members})
        groups.append(group)

    comments = []
    for comment in sorted(state.comments.values(), key=_comment_key):
        if comment.id in detached:
            comment = comment.model_copy(update={"group_id": None})
        comments.append(comment)

    return AnnotationView(
        slide_index=state.slide_index,
        comments=comments,
        groups=groups,
        ungrouped=[comment.id for comment in comments if comment.group_id is None],
    )
