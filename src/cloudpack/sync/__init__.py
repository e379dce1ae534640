from .engine import SyncEngine
from .session import PullResult, PullState, PushResult, PushState, TransferSession
from .single_flight import SingleFlight

__all__ = [
    "PullResult",
    "PullState",
    "PushResult",
    "PushState",
    "SingleFlight",
    "SyncEngine",
    "TransferSession",
]
