from .service import PresenceService  # noqa: F401
