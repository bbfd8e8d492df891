from datetime import UTC, datetime, timedelta

from services.sync.reducer import (
    AnnotationDelta,
    AnnotationState,
    find_drift,
    reconcile,
    reduce,
    reduce_all,
)
from shared.enums import AnnotationKind, ChangeType
from shared.models import Comment, Group

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


def comment_delta(comment_id, generation=1, slide_index=0, change=ChangeType.ADDED, **data):
    payload = {"text": comment_id, "slideIndex": slide_index, **data}
    return AnnotationDelta(
        change=change,
        kind=AnnotationKind.COMMENT,
        entity_id=comment_id,
        slide_index=slide_index,
        generation=generation,
        data=None if change == ChangeType.REMOVED else payload,
    )


def group_delta(group_id, comment_ids, generation=1, slide_index=0, **data):
    return AnnotationDelta(
        change=ChangeType.ADDED,
        kind=AnnotationKind.GROUP,
        entity_id=group_id,
        slide_index=slide_index,
        generation=generation,
        data={"label": group_id, "commentIds": comment_ids, "slideIndex": slide_index, **data},
    )


def test_reduce_adds_modifies_and_removes() -> None:
    state = AnnotationState(slide_index=0, generation=1)
    state = reduce(state, comment_delta("c1"))
    state = reduce(state, comment_delta("c1", change=ChangeType.MODIFIED, likedBy=["alice", "alice"]))
    assert state.comments["c1"].likes == 1

    state = reduce(state, comment_delta("c1", change=ChangeType.REMOVED))
    assert state.comments == {}


def test_stale_generation_and_slide_are_discarded() -> None:
    state = AnnotationState(slide_index=3, generation=2)
    state = reduce_all(
        state,
        [
            comment_delta("old-generation", generation=1, slide_index=3),
            comment_delta("other-slide", generation=2, slide_index=2),
            comment_delta("current", generation=2, slide_index=3),
        ],
    )
    assert list(state.comments) == ["current"]


def test_malformed_document_is_skipped() -> None:
    state = AnnotationState(slide_index=0, generation=1)
    bad = AnnotationDelta(
        change=ChangeType.ADDED,
        kind=AnnotationKind.COMMENT,
        entity_id="broken",
        slide_index=0,
        generation=1,
        data={"likedBy": "not-a-list"},
    )
    assert reduce(state, bad) is state


def test_ready_requires_both_collections() -> None:
    state = AnnotationState(slide_index=0, generation=1)
    assert not state.mark_loaded(AnnotationKind.COMMENT).ready
    assert state.mark_loaded(AnnotationKind.COMMENT).mark_loaded(AnnotationKind.GROUP).ready


def test_reconcile_hides_reference_drift() -> None:
    state = reduce_all(
        AnnotationState(slide_index=0, generation=1),
        [
            comment_delta("c1", groupId="g1", timestamp=T0),
            # c2 claims g1 but g1 does not list it
            comment_delta("c2", groupId="g1", timestamp=T0 + timedelta(seconds=1)),
            comment_delta("c3", timestamp=T0 + timedelta(seconds=2)),
            # g1 lists a comment that was deleted and one that left
            group_delta("g1", ["c1", "gone", "c3"], createdAt=T0),
        ],
    )

    view = reconcile(state)
    assert [comment.id for comment in view.comments] == ["c1", "c2", "c3"]
    assert view.groups[0].comment_ids == ["c1"]
    assert view.comments[1].group_id is None
    assert view.ungrouped == ["c2", "c3"]


def test_find_drift_reports_both_sides() -> None:
    comments = {
        "c1": Comment(id="c1", text="a", group_id="g1"),
        "c2": Comment(id="c2", text="b", group_id="missing"),
    }
    groups = {"g1": Group(id="g1", comment_ids=["c1", "c9"])}
    drift = find_drift(comments, groups)
    assert drift.dropped_members == {"g1": ["c9"]}
    assert drift.detached_comments == ["c2"]
    assert not drift.clean

    assert find_drift({"c1": comments["c1"]}, {"g1": Group(id="g1", comment_ids=["c1"])}).clean


def test_groups_are_ordered_by_creation() -> None:
    state = reduce_all(
        AnnotationState(slide_index=0, generation=1),
        [
            group_delta("late", [], createdAt=T0 + timedelta(minutes=1)),
            group_delta("early", [], createdAt=T0),
        ],
    )
    assert [group.id for group in reconcile(state).groups] == ["early", "late"]
