"""Utilities for the election orchestrator."""

from .utils import (
    setup_logging,
    save_results,
    AuditLog,
    AuditRecord,
    get_system_info,
    format_duration
)
from .errors import (
    ElectionError,
    ConfigError,
    ConnectivityError,
    ProofError,
    StageError,
    VoterNotFound,
    AlreadyRegistered,
    AlreadyCommitted,
    AlreadyVoted,
    LedgerFault,
    LedgerRejected,
    PhaseRejected,
    RegistrationRejected,
    DelegationRejected,
    CommitmentRejected,
    OpeningMismatch,
    ReconstructionNotReady
)

__all__ = [
    'setup_logging',
    'save_results',
    'AuditLog',
    'AuditRecord',
    'get_system_info',
    'format_duration',

    'ElectionError',
    'ConfigError',
    'ConnectivityError',
    'ProofError',
    'StageError',
    'VoterNotFound',
    'AlreadyRegistered',
    'AlreadyCommitted',
    'AlreadyVoted',
    'LedgerFault',
    'LedgerRejected',
    'PhaseRejected',
    'RegistrationRejected',
    'DelegationRejected',
    'CommitmentRejected',
    'OpeningMismatch',
    'ReconstructionNotReady'
]
