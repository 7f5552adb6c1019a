"""
Ledger access for the election orchestrator:
the async client interface, the web3.py client and the in-memory chain
"""

from .client import (
    GAS_LIMIT,
    TransactionReceipt,
    LedgerVoter,
    LedgerClient,
    Web3LedgerClient,
)
from .local_chain import (
    MIN_VOTERS,
    GAS_SCHEDULE,
    ChainTransaction,
    LocalChain,
)
from .contract_crypto import ContractCryptoService
from .retry import CircuitBreaker, with_retry

__all__ = [
    'GAS_LIMIT',
    'TransactionReceipt',
    'LedgerVoter',
    'LedgerClient',
    'Web3LedgerClient',

    'MIN_VOTERS',
    'GAS_SCHEDULE',
    'ChainTransaction',
    'LocalChain',

    'ContractCryptoService',

    'CircuitBreaker',
    'with_retry',
]
