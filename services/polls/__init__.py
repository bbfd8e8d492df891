from .service import PollService  # noqa: F401
