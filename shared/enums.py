"""
Enums and constants used across the application.
"""

from enum import Enum


class AudienceMode(str, Enum):
    """Who may view a live presentation."""

    ENROLLED_USERS = "enrolledUsers"
    ANONYMOUS = "anonymous"


class UserRole(str, Enum):
    """Roles supplied by the authentication provider."""

    INSTRUCTOR = "instructor"
    STUDENT = "student"


class SlideType(str, Enum):
    """Closed set of slide kinds."""

    CONTENT = "content"
    IMAGE = "image"
    MCQ = "mcq"
    OPEN = "open"
    IMPORTED = "imported"


class ChangeType(str, Enum):
    """Kinds of change delivered by store listeners."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class AnnotationKind(str, Enum):
    """Annotation collections synchronised per slide."""

    COMMENT = "comment"
    GROUP = "group"


class NavigationDirection(str, Enum):
    """Presenter navigation directions."""

    NEXT = "next"
    PREVIOUS = "previous"


class SessionState(str, Enum):
    """Live-session lifecycle states."""

    EDITING = "editing"
    LIVE = "live"
    ENDED = "ended"


class SyncStatus(str, Enum):
    """Freshness of a client's synchronised view."""

    IDLE = "idle"
    LOADING = "loading"
    LIVE = "live"
    STALE = "stale"
    NO_ACCESS = "no_access"
    ENDED = "ended"
