from .coalescer import PositionCoalescer  # noqa: F401
from .service import AnnotationService  # noqa: F401
