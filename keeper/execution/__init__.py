from .allowance import AllowanceManager
from .gas import GasEstimator
from .proxy import ProxyManager
from .wrapper import ExecutionWrapper

__all__ = ["AllowanceManager", "ExecutionWrapper", "GasEstimator", "ProxyManager"]
