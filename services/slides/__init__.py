from .service import SlideService  # noqa: F401
