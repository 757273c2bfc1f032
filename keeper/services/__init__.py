from .keeper import CycleSummary, Keeper
from .pricing import ReferencePrice
from .scheduler import CycleOutcome, RetryingScheduler

__all__ = ["CycleOutcome", "CycleSummary", "Keeper", "ReferencePrice", "RetryingScheduler"]
