"""
Data model for the election: phases, deadlines, per-voter records and
phase/tally outcomes.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from utils.errors import ConfigError, ElectionError, StageError
from zk.zk_proofs import (DisjunctiveProof, KnowledgeProof, Point, VoteBranch,
                          generate_voting_key, random_scalar)

logger = logging.getLogger(__name__)


class PhaseState(Enum):
    """Election phases; values match the ledger's state index"""
    SETUP = 0
    SIGNUP = 1
    COMMITMENT = 2
    VOTE = 3
    FINISHED = 4
    # Local only: the run was reset through deadlinePassed
    ABORTED = -1


@dataclass(frozen=True)
class Deadlines:
    """Phase deadlines in ledger seconds"""
    voters_finish_signup: int
    end_signup: int
    end_commitment: int
    end_voting: int
    end_refund: int

    def __post_init__(self):
        values = self.as_tuple()
        if not all(a < b for a, b in zip(values, values[1:])):
            raise ConfigError(f"deadlines must be strictly increasing: {values}")

    def as_tuple(self) -> Tuple[int, int, int, int, int]:
        return (self.voters_finish_signup, self.end_signup, self.end_commitment,
                self.end_voting, self.end_refund)

    @classmethod
    def from_gap(cls, now: float, phase_gap: int) -> 'Deadlines':
        """now + k * phase_gap for k = 1..5"""
        start = int(now)
        return cls(*(start + phase_gap * k for k in range(1, 6)))


class VoterStage(Enum):
    SEEDED = 0
    REGISTERED = 1
    COMMITTED = 2
    VOTED = 3


@dataclass
class VoterSecrets:
    """Voting key x and blinding scalars v, w, r, d. Never leaves memory."""
    x: int
    v: int
    w: int
    r: int
    d: int
    xG: Optional[Point] = None

    @classmethod
    def generate(cls) -> 'VoterSecrets':
        x, xG = generate_voting_key()
        return cls(x=x, v=random_scalar(), w=random_scalar(),
                   r=random_scalar(), d=random_scalar(), xG=xG)

    def refresh_blinding(self):
        """New ballot blinding scalars; only valid before anything is committed"""
        self.w, self.r, self.d = random_scalar(), random_scalar(), random_scalar()

    def wipe(self):
        self.x = self.v = self.w = self.r = self.d = 0


@dataclass(frozen=True)
class RegistrationRecord:
    xG: Point
    vG: Point
    zkp: KnowledgeProof


@dataclass(frozen=True)
class CommitmentRecord:
    xG: Point
    yG: Point
    proof: DisjunctiveProof
    commitment_hash: bytes
    branch: VoteBranch
    signer: str
    index: int


@dataclass
class Voter:
    address: str
    stage: VoterStage = VoterStage.SEEDED
    delegatee: Optional[str] = None
    delegation_confirmed: bool = False
    _secrets: Optional[VoterSecrets] = field(default=None, repr=False)
    _registration: Optional[RegistrationRecord] = None
    _commitment: Optional[CommitmentRecord] = None

    def require(self, stage: VoterStage, operation: Optional[str] = None):
        """Raise StageError unless the voter has reached `stage`"""
        if self.stage.value < stage.value:
            raise StageError(f"requires stage {stage.name}, voter is {self.stage.name}",
                             address=self.address, operation=operation)

    @property
    def is_delegator(self) -> bool:
        return self.delegatee is not None

    @property
    def secrets(self) -> VoterSecrets:
        self.require(VoterStage.REGISTERED, "secrets")
        if self._secrets is None:
            raise StageError("secrets were wiped", address=self.address, operation="secrets")
        return self._secrets

    @property
    def registration(self) -> RegistrationRecord:
        self.require(VoterStage.REGISTERED, "registration")
        return self._registration

    @property
    def commitment(self) -> CommitmentRecord:
        self.require(VoterStage.COMMITTED, "commitment")
        return self._commitment


@dataclass
class PhaseReport:
    """Per-voter outcome of one workflow run"""
    phase: str
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, ElectionError] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def summary(self) -> str:
        return (f"{self.phase}: {len(self.succeeded)} succeeded, "
                f"{len(self.failed)} failed, {len(self.skipped)} skipped")


@dataclass(frozen=True)
class TallyResult:
    yes: int
    total: int
    gas_used: int = 0

    @property
    def no(self) -> int:
        return self.total - self.yes


@dataclass
class ElectionOutcome:
    reports: List[PhaseReport] = field(default_factory=list)
    tally: Optional[TallyResult] = None
    error: Optional[ElectionError] = None
    final_phase: Optional[PhaseState] = None
    audit_summary: Dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None and self.tally is not None and all(r.ok for r in self.reports)
