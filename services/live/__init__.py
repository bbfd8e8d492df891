from .app import app, configure, get_services  # noqa: F401
