from .service import ResponseService  # noqa: F401
