"""
Error taxonomy for the election orchestrator.

Every failure carries the offending address (when there is one), the
operation that failed and the underlying cause, so a single log line is
enough to tell which voter broke which step and why.
"""

from typing import Optional


class ElectionError(Exception):
    """Base exception for election orchestration"""

    retryable = False

    def __init__(self, cause: str = "", *, address: Optional[str] = None,
                 operation: Optional[str] = None):
        self.cause = cause
        self.address = address
        self.operation = operation
        super().__init__(self._render())

    def _render(self) -> str:
        parts = []
        if self.operation:
            parts.append(f"[{self.operation}]")
        if self.address:
            parts.append(f"voter {self.address}:")
        parts.append(self.cause or self.__class__.__name__)
        return " ".join(parts)


class ConfigError(ElectionError):
    """Malformed or contradictory roster, delegation or no-vote data"""
    pass


class ConnectivityError(ElectionError):
    """Ledger or crypto service unreachable"""

    retryable = True


class ProofError(ElectionError):
    """Local proof construction or verification failed"""

    retryable = True


class StageError(ElectionError):
    """A voter field was accessed before the stage that populates it"""
    pass


class VoterNotFound(ElectionError):
    """Address is not part of the voter roster"""
    pass


class AlreadyRegistered(ElectionError):
    """Voter already holds registered key material"""
    pass


class AlreadyCommitted(ElectionError):
    """Voter already has a commitment on record"""
    pass


class AlreadyVoted(ElectionError):
    """Voter already opened their commitment"""
    pass


class LedgerFault(ElectionError):
    """Ledger node answered a call with an error of its own"""
    pass


class LedgerRejected(ElectionError):
    """Ledger refused a state-changing call"""
    pass


class PhaseRejected(LedgerRejected):
    """Requested phase transition is illegal or was refused by the ledger"""
    pass


class RegistrationRejected(LedgerRejected):
    """Ledger refused a registration after local verification succeeded"""
    pass


class DelegationRejected(LedgerRejected):
    """Ledger refused a delegation"""
    pass


class CommitmentRejected(LedgerRejected):
    """Ledger refused a commitment"""
    pass


class OpeningMismatch(LedgerRejected):
    """Vote opening does not match the earlier commitment"""
    pass


class ReconstructionNotReady(ElectionError):
    """Reconstructed key (yG) is not yet available on the ledger"""

    retryable = True
