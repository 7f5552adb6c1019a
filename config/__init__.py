"""Configuration management for the election orchestrator."""

from .config import (
    GAS_LIMIT,
    WEI_DEPOSIT,
    KeyStore,
    ElectionConfig,
    LedgerConfig,
    OrchestratorConfig,
    validate_delegations,
    load_election_config,
    load_config,
    save_config
)

__all__ = [
    'GAS_LIMIT',
    'WEI_DEPOSIT',
    'KeyStore',
    'ElectionConfig',
    'LedgerConfig',
    'OrchestratorConfig',
    'validate_delegations',
    'load_election_config',
    'load_config',
    'save_config'
]
