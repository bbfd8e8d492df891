from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel

from shared.enums import AudienceMode, NavigationDirection, SlideType, UserRole
from shared.errors import InvalidInputError


def _unique(values: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


class DocumentModel(BaseModel):
    """Base for models stored as documents; field names are camelCase in the store."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True)

    id: str = ""

    def to_document(self) -> dict[str, Any]:
        """Serialise to a store payload (the id lives in the document path)."""
        return self.model_dump(by_alias=True, exclude={"id"})

    @classmethod
    def from_document(cls, doc_id: str, data: dict[str, Any]):
        return cls.model_validate({**data, "id": doc_id})


# Store documents
class Course(DocumentModel):
    title: str = ""
    instructor_id: str = ""
    enrolled_students: list[str] = Field(default_factory=list)
    live_presentation: str | None = None


class PresentationState(DocumentModel):
    title: str = ""
    owner_id: str = ""
    course_id: str = ""
    current_slide_index: int = 0
    is_live: bool = False
    audience_mode: AudienceMode = AudienceMode.ENROLLED_USERS
    created_at: datetime | None = None
    updated_at: datetime | None = None
    ended_at: datetime | None = None

    @field_validator("current_slide_index", mode="before")
    @classmethod
    def _coerce_index(cls, value: Any) -> int:
        if value is None:
            return 0
        return max(0, int(value))

    @field_validator("audience_mode", mode="before")
    @classmethod
    def _default_mode(cls, value: Any) -> Any:
        return value or AudienceMode.ENROLLED_USERS


class Reply(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    text: str
    author_id: str = ""
    author_display_name: str = ""
    liked_by: list[str] = Field(default_factory=list)
    likes: int = 0
    timestamp: datetime | None = None

    @model_validator(mode="after")
    def _derive_likes(self) -> "Reply":
        self.liked_by = _unique(self.liked_by)
        self.likes = len(self.liked_by)
        return self


class Comment(DocumentModel):
    text: str
    author_id: str = ""
    author_display_name: str = ""
    slide_index: int = 0
    timestamp: datetime | None = None
    liked_by: list[str] = Field(default_factory=list)
    likes: int = 0
    replies: list[Reply] = Field(default_factory=list)
    group_id: str | None = None

    @field_validator("replies", mode="before")
    @classmethod
    def _normalise_replies(cls, value: Any) -> Any:
        # Early documents stored replies as bare strings
        if not value:
            return []
        return [{"text": item} if isinstance(item, str) else item for item in value]

    @model_validator(mode="after")
    def _derive_likes(self) -> "Comment":
        # likedBy is the only source of truth; the stored integer is advisory
        self.liked_by = _unique(self.liked_by)
        self.likes = len(self.liked_by)
        return self


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class Group(DocumentModel):
    label: str = ""
    comment_ids: list[str] = Field(default_factory=list)
    position: Position = Field(default_factory=Position)
    collapsed: bool = False
    slide_index: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_location(cls, data: Any) -> Any:
        if isinstance(data, dict) and "position" not in data and "location" in data:
            data = {**data, "position": data["location"]}
        return data

    @field_validator("comment_ids")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        return _unique(value)


class Poll(DocumentModel):
    question: str
    options: list[str]
    slide_index: int = 0
    is_active: bool = True
    created_at: datetime | None = None
    closed_at: datetime | None = None


class Vote(DocumentModel):
    poll_id: str
    user_id: str
    option: str
    display_name: str = ""
    timestamp: datetime | None = None


class PollResults(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    poll_id: str
    counts: dict[str, int]
    total: int
    is_active: bool = True


class Presence(DocumentModel):
    """One viewer's presence in a presentation, keyed by user id."""

    user_id: str
    display_name: str = ""
    role: UserRole = UserRole.STUDENT
    current_slide_index: int = 0
    is_online: bool = True
    is_typing: bool = False
    typing_at: datetime | None = None
    last_seen: datetime | None = None


class SlideResponse(DocumentModel):
    """A viewer's answer to an mcq (option index) or open (text) slide."""

    slide_index: int
    slide_id: str = ""
    user_id: str
    display_name: str = ""
    answer: int | None = None
    text: str | None = None
    is_correct: bool = False
    timestamp: datetime | None = None


class ResponseSummary(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    slide_index: int
    total: int
    counts: dict[str, int] = Field(default_factory=dict)
    correct: int = 0


# Slides: closed set of variants, resolved once at the storage boundary
class SlideBase(DocumentModel):
    order: int = 0
    title: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ContentSlide(SlideBase):
    type: Literal["content"] = "content"
    text: str = ""


class ImageSlide(SlideBase):
    type: Literal["image"] = "image"
    url: str = ""
    caption: str | None = None


class McqSlide(SlideBase):
    type: Literal["mcq"] = "mcq"
    question: str = ""
    options: list[str] = Field(default_factory=list)
    correct_option: int | None = None

    @model_validator(mode="after")
    def _check_answer(self) -> "McqSlide":
        if self.correct_option is not None and not 0 <= self.correct_option < len(self.options):
            raise ValueError("correctOption must index into options")
        return self


class OpenSlide(SlideBase):
    type: Literal["open"] = "open"
    prompt: str = ""


class ImportedSlide(SlideBase):
    type: Literal["imported"] = "imported"
    image_url: str = ""
    notes: str | None = None
    source_file: str | None = None


Slide = Annotated[
    Union[ContentSlide, ImageSlide, McqSlide, OpenSlide, ImportedSlide],
    Field(discriminator="type"),
]

_slide_adapter: TypeAdapter = TypeAdapter(Slide)

LEGACY_SLIDE_TYPES = {
    "text": "content",
    "title": "content",
    "multiple-choice": "mcq",
    "multiple_choice": "mcq",
    "poll": "mcq",
    "question": "open",
    "open-ended": "open",
    "powerpoint": "imported",
    "pptx": "imported",
}

# Field that receives a bare-string "content" payload, per slide type
_CONTENT_STRING_FIELD = {
    "content": "text",
    "image": "url",
    "mcq": "question",
    "open": "prompt",
    "imported": "imageUrl",
}


def normalize_slide_payload(data: dict[str, Any]) -> dict[str, Any]:
    """Flatten legacy slide shapes (string or nested content, old type names)."""
    payload = dict(data)
    raw_type = str(payload.get("type") or SlideType.CONTENT.value).lower()
    slide_type = LEGACY_SLIDE_TYPES.get(raw_type, raw_type)
    if slide_type not in _CONTENT_STRING_FIELD:
        raise InvalidInputError(f"Unknown slide type: {raw_type}")
    payload["type"] = slide_type

    content = payload.pop("content", None)
    if isinstance(content, dict):
        for key, value in content.items():
            payload.setdefault(key, value)
    elif isinstance(content, str):
        payload.setdefault(_CONTENT_STRING_FIELD[slide_type], content)
    return payload


def parse_slide(data: dict[str, Any], slide_id: str | None = None) -> Slide:
    """Resolve a stored slide payload into its typed variant."""
    payload = normalize_slide_payload(data)
    if slide_id is not None:
        payload["id"] = slide_id
    return _slide_adapter.validate_python(payload)


# Synchronised views
class AnnotationView(BaseModel):
    """Reconciled annotations for one slide, as shown to a client."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    slide_index: int
    comments: list[Comment]
    groups: list[Group]
    ungrouped: list[str]


# Request/Response Models
class CreatePresentationRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    audience_mode: AudienceMode = AudienceMode.ENROLLED_USERS


class AudienceModeRequest(BaseModel):
    audience_mode: AudienceMode


class NavigateRequest(BaseModel):
    direction: NavigationDirection | None = None
    index: int | None = Field(default=None, description="Jump to an absolute slide index")

    @model_validator(mode="after")
    def _one_target(self) -> "NavigateRequest":
        if (self.direction is None) == (self.index is None):
            raise ValueError("Provide exactly one of direction or index")
        return self


class SlideWriteRequest(BaseModel):
    slide: dict[str, Any] = Field(..., description="Slide payload; 'type' selects the variant")
    position: int | None = Field(default=None, ge=0, description="Insert position, defaults to the end")


class ReorderSlidesRequest(BaseModel):
    from_index: int
    to_index: int


class PostCommentRequest(BaseModel):
    text: str


class ReplyRequest(BaseModel):
    text: str


class CreateGroupRequest(BaseModel):
    comment_id: str
    x: float = 0.0
    y: float = 0.0
    label: str | None = None


class GroupMemberRequest(BaseModel):
    comment_id: str


class MoveGroupRequest(BaseModel):
    x: float
    y: float


class UpdateGroupRequest(BaseModel):
    label: str | None = None
    collapsed: bool | None = None


class CreatePollRequest(BaseModel):
    question: str
    options: list[str] = Field(..., min_length=2)


class VoteRequest(BaseModel):
    option: str


class RepairReport(BaseModel):
    slide_index: int
    group_entries_dropped: int
    comments_detached: int


class PresenceRequest(BaseModel):
    slide_index: int | None = Field(default=None, ge=0)


class TypingRequest(BaseModel):
    typing: bool


class SlideResponseRequest(BaseModel):
    answer: int | None = Field(default=None, ge=0)
    text: str | None = None
    slide_index: int | None = Field(default=None, ge=0)
