"""
Election Module
Voter registry, phase control and the per-phase workflows of the
self-tallying election
"""

from .models import (
    PhaseState,
    Deadlines,
    VoterStage,
    VoterSecrets,
    RegistrationRecord,
    CommitmentRecord,
    Voter,
    PhaseReport,
    TallyResult,
    ElectionOutcome,
)
from .registry import VoterRegistry
from .phase import PhaseController, TRANSITIONS
from .context import ElectionContext, Workflow
from .registration import RegistrationWorkflow, DelegationWorkflow
from .commitment import CommitmentWorkflow
from .voting import VotingWorkflow
from .tally import TallyWorkflow

__all__ = [
    # Model
    'PhaseState',
    'Deadlines',
    'VoterStage',
    'VoterSecrets',
    'RegistrationRecord',
    'CommitmentRecord',
    'Voter',
    'PhaseReport',
    'TallyResult',
    'ElectionOutcome',

    # Components
    'VoterRegistry',
    'PhaseController',
    'TRANSITIONS',
    'ElectionContext',
    'Workflow',

    # Workflows
    'RegistrationWorkflow',
    'DelegationWorkflow',
    'CommitmentWorkflow',
    'VotingWorkflow',
    'TallyWorkflow',
]
