"""Protocol interfaces for the keeper's external collaborators."""
from .chain import LedgerClient
from .notifier import Notifier
from .price_source import PriceSource

__all__ = ["LedgerClient", "Notifier", "PriceSource"]
