"""Contract bindings built on LedgerCall."""
from .erc20 import Erc20Token
from .financial_contract import ContractProps, FinancialContract

__all__ = ["ContractProps", "Erc20Token", "FinancialContract"]
