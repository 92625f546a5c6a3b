"""
File delivery to the device.

- strategies: one deliver function per StrategyKind, plus candidate selection
- chain: ordered fallback with verification after every attempt
- encoding: hex chunking and base64 for the text strategies
- http_server: transient local server for the pull strategy
"""

from legacy_upgrade.transfer.chain import TransferChain
from legacy_upgrade.transfer.strategies import (
    DELIVERERS,
    STRATEGY_ORDER,
    TransferContext,
    select_strategies,
)

__all__ = [
    "DELIVERERS",
    "STRATEGY_ORDER",
    "TransferChain",
    "TransferContext",
    "select_strategies",
]
