"""Document paths used by the live-session core.

Layout::

    courses/{courseId}
    courses/{courseId}/presentations/{presentationId}
        slides/{slideId}
        comments/{commentId}        (slideIndex field scopes a comment to a slide)
        groups/{groupId}            (slideIndex field scopes a group to a slide)
        polls/{pollId}
            votes/{userId}          (one vote per user and poll)
        presence/{userId}           (who is watching, and on which slide)
        responses/{responseId}      (answers to mcq and open slides, by slideIndex)
"""

from shared.errors import InvalidInputError


def _segment(value: str, name: str) -> str:
    text = str(value or "").strip()
    if not text or "/" in text:
        raise InvalidInputError(f"Invalid {name}: {value!r}")
    return text


def course_path(course_id: str) -> str:
    return f"courses/{_segment(course_id, 'course id')}"


def presentations_collection(course_id: str) -> str:
    return f"{course_path(course_id)}/presentations"


def presentation_path(course_id: str, presentation_id: str) -> str:
    return f"{presentations_collection(course_id)}/{_segment(presentation_id, 'presentation id')}"


def slides_collection(course_id: str, presentation_id: str) -> str:
    return f"{presentation_path(course_id, presentation_id)}/slides"


def slide_path(course_id: str, presentation_id: str, slide_id: str) -> str:
    return f"{slides_collection(course_id, presentation_id)}/{_segment(slide_id, 'slide id')}"


def comments_collection(course_id: str, presentation_id: str) -> str:
    return f"{presentation_path(course_id, presentation_id)}/comments"


def comment_path(course_id: str, presentation_id: str, comment_id: str) -> str:
    return f"{comments_collection(course_id, presentation_id)}/{_segment(comment_id, 'comment id')}"


def groups_collection(course_id: str, presentation_id: str) -> str:
    return f"{presentation_path(course_id, presentation_id)}/groups"


def group_path(course_id: str, presentation_id: str, group_id: str) -> str:
    return f"{groups_collection(course_id, presentation_id)}/{_segment(group_id, 'group id')}"


def polls_collection(course_id: str, presentation_id: str) -> str:
    return f"{presentation_path(course_id, presentation_id)}/polls"


def poll_path(course_id: str, presentation_id: str, poll_id: str) -> str:
    return f"{polls_collection(course_id, presentation_id)}/{_segment(poll_id, 'poll id')}"


def votes_collection(course_id: str, presentation_id: str, poll_id: str) -> str:
    return f"{poll_path(course_id, presentation_id, poll_id)}/votes"


def vote_path(course_id: str, presentation_id: str, poll_id: str, user_id: str) -> str:
    return f"{votes_collection(course_id, presentation_id, poll_id)}/{_segment(user_id, 'user id')}"


def presence_collection(course_id: str, presentation_id: str) -> str:
    return f"{presentation_path(course_id, presentation_id)}/presence"


def presence_path(course_id: str, presentation_id: str, user_id: str) -> str:
    return f"{presence_collection(course_id, presentation_id)}/{_segment(user_id, 'user id')}"


def responses_collection(course_id: str, presentation_id: str) -> str:
    return f"{presentation_path(course_id, presentation_id)}/responses"


def response_path(course_id: str, presentation_id: str, response_id: str) -> str:
    return f"{responses_collection(course_id, presentation_id)}/{_segment(response_id, 'response id')}"
