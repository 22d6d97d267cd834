"""
Banking Package

The aggregator client interface and the gated transaction sync.
"""

from monterico.banking.client import BankAggregatorClient, BankAggregatorError
from monterico.banking.sync import TransactionSyncService

__all__ = [
    "BankAggregatorClient",
    "BankAggregatorError",
    "TransactionSyncService",
]
