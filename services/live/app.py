"""FastAPI application for live presentations: slides, live session, annotations, polls, presence and responses."""

from dataclasses import dataclass

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from services.access import AccessPolicy
from services.annotations import AnnotationService
from services.auth import get_identity
from services.identity import Identity
from services.live_session import LiveSessionService
from services.polls import PollService
from services.presence import PresenceService
from services.responses import ResponseService
from services.slides import SlideService
from services.store import DocumentStore, create_store
from services.sync.hub import live_manager
from shared.errors import (
    DocumentNotFoundError,
    InvalidInputError,
    LiveClassError,
    NotPresenterError,
    PermissionDeniedError,
    TransactionConflictError,
    TransientStoreError,
)
from shared.models import (
    AnnotationView,
    AudienceModeRequest,
    Comment,
    CreateGroupRequest,
    CreatePollRequest,
    CreatePresentationRequest,
    Group,
    GroupMemberRequest,
    MoveGroupRequest,
    NavigateRequest,
    Poll,
    PollResults,
    PostCommentRequest,
    Presence,
    PresenceRequest,
    PresentationState,
    RepairReport,
    ReorderSlidesRequest,
    ReplyRequest,
    ResponseSummary,
    Slide,
    SlideResponse,
    SlideResponseRequest,
    SlideWriteRequest,
    TypingRequest,
    UpdateGroupRequest,
    Vote,
    VoteRequest,
)
from shared.utils import config, setup_logging

logger = setup_logging("live-service")

app = FastAPI(
    title="Live Presentation Service",
    description="Real-time slide sync, comments, groups and polls for live classes",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.get("allowed_origins", ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

PRESENTATION = "/courses/{course_id}/presentations/{presentation_id}"


@dataclass
class LiveServices:
    store: DocumentStore
    access: AccessPolicy
    slides: SlideService
    sessions: LiveSessionService
    annotations: AnnotationService
    polls: PollService
    presence: PresenceService
    responses: ResponseService


def configure(store: DocumentStore) -> LiveServices:
    """Wire every service to one store and publish them on app.state."""
    access = AccessPolicy(store)
    slides = SlideService(store, access)
    services = LiveServices(
        store=store,
        access=access,
        slides=slides,
        sessions=LiveSessionService(store, access, slides),
        annotations=AnnotationService(store, access),
        polls=PollService(store, access),
        presence=PresenceService(store, access),
        responses=ResponseService(store, access, slides),
    )
    app.state.services = services
    live_manager.bind(store)
    return services


app.state.services = None


def get_services() -> LiveServices:
    services = app.state.services
    if services is None:
        services = configure(create_store())
    return services


def _http_error(exc: LiveClassError) -> HTTPException:
    if isinstance(exc, InvalidInputError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, DocumentNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (PermissionDeniedError, NotPresenterError)):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, TransactionConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, TransientStoreError):
        return HTTPException(status_code=503, detail=str(exc))
    logger.error(f"Unhandled live service error: {exc}")
    return HTTPException(status_code=500, detail=str(exc))


@app.get("/health")
async def health_check():
    """Health endpoint for live presentation service."""
    return {"status": "ok", "service": "live", "connections": live_manager.connection_count}


# Presentations and live session
@app.post("/courses/{course_id}/presentations", response_model=PresentationState, status_code=201)
async def create_presentation(
    course_id: str,
    request: CreatePresentationRequest,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> PresentationState:
    """Create a presentation in editing state."""
    try:
        return await services.sessions.create_presentation(identity, course_id, request)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.get("/courses/{course_id}/presentations", response_model=list[PresentationState])
async def list_presentations(
    course_id: str,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> list[PresentationState]:
    try:
        return await services.sessions.list_presentations(identity, course_id)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.get("/courses/{course_id}/live")
async def get_live_presentation(
    course_id: str,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> dict:
    """Current live-presentation pointer for a course (null when nothing is live)."""
    try:
        return {"courseId": course_id, "presentationId": await services.sessions.get_live_presentation_id(course_id)}
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.get(PRESENTATION)
async def get_presentation(
    course_id: str,
    presentation_id: str,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> dict:
    try:
        presentation = await services.sessions.get_presentation(identity, course_id, presentation_id)
    except LiveClassError as exc:
        raise _http_error(exc) from exc
    return {
        "presentation": presentation.model_dump(mode="json", by_alias=True),
        "state": services.sessions.session_state(presentation).value,
    }


@app.put(PRESENTATION + "/audience-mode", response_model=PresentationState)
async def set_audience_mode(
    course_id: str,
    presentation_id: str,
    request: AudienceModeRequest,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> PresentationState:
    try:
        return await services.sessions.set_audience_mode(identity, course_id, presentation_id, request.audience_mode)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.post(PRESENTATION + "/go-live", response_model=PresentationState)
async def go_live(
    course_id: str,
    presentation_id: str,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> PresentationState:
    """Make this the course's only live presentation."""
    try:
        return await services.sessions.go_live(identity, course_id, presentation_id)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.post(PRESENTATION + "/navigate", response_model=PresentationState)
async def navigate(
    course_id: str,
    presentation_id: str,
    request: NavigateRequest,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> PresentationState:
    """Move to the next/previous slide or jump to an index (clamped)."""
    try:
        if request.direction is not None:
            return await services.sessions.navigate(identity, course_id, presentation_id, request.direction)
        return await services.sessions.go_to_slide(identity, course_id, presentation_id, request.index)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.post(PRESENTATION + "/end", response_model=PresentationState)
async def end_live(
    course_id: str,
    presentation_id: str,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> PresentationState:
    try:
        return await services.sessions.end_live(identity, course_id, presentation_id)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


# Slides
@app.get(PRESENTATION + "/slides", response_model=list[Slide])
async def list_slides(
    course_id: str,
    presentation_id: str,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> list[Slide]:
    try:
        await services.access.require_viewer(identity, course_id, presentation_id)
        return await services.slides.list_slides(course_id, presentation_id)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.post(PRESENTATION + "/slides", response_model=Slide, status_code=201)
async def add_slide(
    course_id: str,
    presentation_id: str,
    request: SlideWriteRequest,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> Slide:
    try:
        return await services.slides.add_slide(identity, course_id, presentation_id, request.slide, request.position)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.post(PRESENTATION + "/slides/reorder", response_model=list[Slide])
async def reorder_slides(
    course_id: str,
    presentation_id: str,
    request: ReorderSlidesRequest,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> list[Slide]:
    try:
        return await services.slides.reorder_slides(
            identity, course_id, presentation_id, request.from_index, request.to_index
        )
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.put(PRESENTATION + "/slides/{slide_id}", response_model=Slide)
async def update_slide(
    course_id: str,
    presentation_id: str,
    slide_id: str,
    request: SlideWriteRequest,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> Slide:
    try:
        return await services.slides.update_slide(identity, course_id, presentation_id, slide_id, request.slide)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.delete(PRESENTATION + "/slides/{slide_id}", status_code=204)
async def delete_slide(
    course_id: str,
    presentation_id: str,
    slide_id: str,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> None:
    try:
        await services.slides.delete_slide(identity, course_id, presentation_id, slide_id)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.get(PRESENTATION + "/slides/{slide_index}/annotations", response_model=AnnotationView)
async def list_annotations(
    course_id: str,
    presentation_id: str,
    slide_index: int,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> AnnotationView:
    """Reconciled comments and groups for one slide."""
    try:
        return await services.annotations.list_annotations(identity, course_id, presentation_id, slide_index)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.post(PRESENTATION + "/slides/{slide_index}/repair", response_model=RepairReport)
async def repair_slide(
    course_id: str,
    presentation_id: str,
    slide_index: int,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> RepairReport:
    try:
        return await services.annotations.repair_slide(identity, course_id, presentation_id, slide_index)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


# Comments
@app.post(PRESENTATION + "/comments", response_model=Comment, status_code=201)
async def post_comment(
    course_id: str,
    presentation_id: str,
    request: PostCommentRequest,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> Comment:
    """Post a comment on the presenter's current slide."""
    try:
        return await services.annotations.post_comment(identity, course_id, presentation_id, request.text)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.delete(PRESENTATION + "/comments/{comment_id}", status_code=204)
async def delete_comment(
    course_id: str,
    presentation_id: str,
    comment_id: str,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> None:
    try:
        await services.annotations.delete_comment(identity, course_id, presentation_id, comment_id)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.post(PRESENTATION + "/comments/{comment_id}/like", response_model=Comment)
async def toggle_like(
    course_id: str,
    presentation_id: str,
    comment_id: str,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> Comment:
    try:
        return await services.annotations.toggle_like(identity, course_id, presentation_id, comment_id)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.post(PRESENTATION + "/comments/{comment_id}/replies", response_model=Comment, status_code=201)
async def add_reply(
    course_id: str,
    presentation_id: str,
    comment_id: str,
    request: ReplyRequest,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> Comment:
    try:
        return await services.annotations.add_reply(identity, course_id, presentation_id, comment_id, request.text)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.delete(PRESENTATION + "/comments/{comment_id}/replies/{reply_index}", response_model=Comment)
async def delete_reply(
    course_id: str,
    presentation_id: str,
    comment_id: str,
    reply_index: int,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> Comment:
    try:
        return await services.annotations.delete_reply(identity, course_id, presentation_id, comment_id, reply_index)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.post(PRESENTATION + "/comments/{comment_id}/replies/{reply_index}/like", response_model=Comment)
async def toggle_reply_like(
    course_id: str,
    presentation_id: str,
    comment_id: str,
    reply_index: int,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> Comment:
    try:
        return await services.annotations.toggle_reply_like(
            identity, course_id, presentation_id, comment_id, reply_index
        )
    except LiveClassError as exc:
        raise _http_error(exc) from exc


# Groups
@app.post(PRESENTATION + "/groups", response_model=Group, status_code=201)
async def create_group(
    course_id: str,
    presentation_id: str,
    request: CreateGroupRequest,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> Group:
    """Wrap a comment in a new group on the canvas."""
    try:
        return await services.annotations.create_group(
            identity, course_id, presentation_id, request.comment_id, request.x, request.y, request.label
        )
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.patch(PRESENTATION + "/groups/{group_id}", response_model=Group)
async def update_group(
    course_id: str,
    presentation_id: str,
    group_id: str,
    request: UpdateGroupRequest,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> Group:
    """Rename and/or collapse a group."""
    if request.label is None and request.collapsed is None:
        raise HTTPException(status_code=422, detail="Nothing to update")
    try:
        group = None
        if request.label is not None:
            group = await services.annotations.rename_group(
                identity, course_id, presentation_id, group_id, request.label
            )
        if request.collapsed is not None:
            group = await services.annotations.set_group_collapsed(
                identity, course_id, presentation_id, group_id, request.collapsed
            )
        return group
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.post(PRESENTATION + "/groups/{group_id}/comments", response_model=Group)
async def add_comment_to_group(
    course_id: str,
    presentation_id: str,
    group_id: str,
    request: GroupMemberRequest,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> Group:
    try:
        return await services.annotations.add_comment_to_group(
            identity, course_id, presentation_id, group_id, request.comment_id
        )
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.delete(PRESENTATION + "/groups/{group_id}/comments/{comment_id}", response_model=Group)
async def remove_comment_from_group(
    course_id: str,
    presentation_id: str,
    group_id: str,
    comment_id: str,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> Group:
    try:
        return await services.annotations.remove_comment_from_group(
            identity, course_id, presentation_id, group_id, comment_id
        )
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.put(PRESENTATION + "/groups/{group_id}/position", status_code=202)
async def move_group(
    course_id: str,
    presentation_id: str,
    group_id: str,
    request: MoveGroupRequest,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> dict:
    """Queue a drag position; only the latest one per flush interval is written."""
    try:
        await services.annotations.move_group(identity, course_id, presentation_id, group_id, request.x, request.y)
    except LiveClassError as exc:
        raise _http_error(exc) from exc
    return {"status": "queued", "groupId": group_id}


@app.delete(PRESENTATION + "/groups/{group_id}", status_code=204)
async def remove_group(
    course_id: str,
    presentation_id: str,
    group_id: str,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> None:
    try:
        await services.annotations.remove_group(identity, course_id, presentation_id, group_id)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


# Polls
@app.post(PRESENTATION + "/polls", response_model=Poll, status_code=201)
async def create_poll(
    course_id: str,
    presentation_id: str,
    request: CreatePollRequest,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> Poll:
    try:
        return await services.polls.create_poll(identity, course_id, presentation_id, request.question, request.options)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.get(PRESENTATION + "/polls", response_model=list[Poll])
async def list_polls(
    course_id: str,
    presentation_id: str,
    active_only: bool = False,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> list[Poll]:
    try:
        return await services.polls.list_polls(identity, course_id, presentation_id, active_only)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.post(PRESENTATION + "/polls/{poll_id}/votes", response_model=Vote)
async def cast_vote(
    course_id: str,
    presentation_id: str,
    poll_id: str,
    request: VoteRequest,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> Vote:
    """Record the caller's vote; voting again replaces it."""
    try:
        return await services.polls.cast_vote(identity, course_id, presentation_id, poll_id, request.option)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.get(PRESENTATION + "/polls/{poll_id}/results", response_model=PollResults)
async def poll_results(
    course_id: str,
    presentation_id: str,
    poll_id: str,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> PollResults:
    try:
        return await services.polls.tally(identity, course_id, presentation_id, poll_id)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.post(PRESENTATION + "/polls/{poll_id}/close", response_model=Poll)
async def close_poll(
    course_id: str,
    presentation_id: str,
    poll_id: str,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> Poll:
    try:
        return await services.polls.close_poll(identity, course_id, presentation_id, poll_id)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


# Presence
@app.put(PRESENTATION + "/presence", response_model=Presence)
async def join_presence(
    course_id: str,
    presentation_id: str,
    request: PresenceRequest,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> Presence:
    try:
        return await services.presence.join(identity, course_id, presentation_id, request.slide_index)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.post(PRESENTATION + "/presence/heartbeat", response_model=Presence)
async def presence_heartbeat(
    course_id: str,
    presentation_id: str,
    request: PresenceRequest,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> Presence:
    try:
        return await services.presence.heartbeat(identity, course_id, presentation_id, request.slide_index)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.put(PRESENTATION + "/presence/typing", response_model=Presence)
async def presence_typing(
    course_id: str,
    presentation_id: str,
    request: TypingRequest,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> Presence:
    try:
        return await services.presence.set_typing(identity, course_id, presentation_id, request.typing)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.delete(PRESENTATION + "/presence", status_code=204)
async def leave_presence(
    course_id: str,
    presentation_id: str,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> None:
    try:
        await services.presence.leave(identity, course_id, presentation_id)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.get(PRESENTATION + "/presence", response_model=list[Presence])
async def list_presence(
    course_id: str,
    presentation_id: str,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> list[Presence]:
    try:
        return await services.presence.list_online(identity, course_id, presentation_id)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


# Slide responses
@app.post(PRESENTATION + "/responses", response_model=SlideResponse, status_code=201)
async def submit_response(
    course_id: str,
    presentation_id: str,
    request: SlideResponseRequest,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> SlideResponse:
    """Answer the current (or given) mcq or open slide."""
    try:
        return await services.responses.submit_response(
            identity, course_id, presentation_id, request.answer, request.text, request.slide_index
        )
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.get(PRESENTATION + "/slides/{slide_index}/responses", response_model=list[SlideResponse])
async def list_responses(
    course_id: str,
    presentation_id: str,
    slide_index: int,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> list[SlideResponse]:
    try:
        return await services.responses.list_responses(identity, course_id, presentation_id, slide_index)
    except LiveClassError as exc:
        raise _http_error(exc) from exc


@app.get(PRESENTATION + "/slides/{slide_index}/responses/summary", response_model=ResponseSummary)
async def summarize_responses(
    course_id: str,
    presentation_id: str,
    slide_index: int,
    identity: Identity = Depends(get_identity),
    services: LiveServices = Depends(get_services),
) -> ResponseSummary:
    try:
        return await services.responses.summarize(identity, course_id, presentation_id, slide_index)
    except LiveClassError as exc:
        raise _http_error(exc) from exc
