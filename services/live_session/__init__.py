from .service import LiveSessionService  # noqa: F401
