from .engine import SyncController, SyncEngine  # noqa: F401
from .hub import LiveConnectionManager, WebSocketSyncController, live_manager  # noqa: F401
from .reducer import AnnotationDelta, AnnotationState, find_drift, reconcile, reduce, reduce_all  # noqa: F401
