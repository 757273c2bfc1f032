from .events import EventCursor, SponsorEventSource
from .position_cache import PositionStateCache, Snapshot

__all__ = ["EventCursor", "PositionStateCache", "Snapshot", "SponsorEventSource"]
