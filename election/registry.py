"""
Voter registry: the authoritative local record of every voter's stage,
key material and delegation.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional

from config.config import KeyStore, validate_delegations
from utils.errors import (AlreadyCommitted, AlreadyRegistered, AlreadyVoted, ConfigError,
                          StageError, VoterNotFound)
from zk.zk_proofs import KnowledgeProof, Point, VoteBranch
from .models import CommitmentRecord, RegistrationRecord, Voter, VoterSecrets, VoterStage

logger = logging.getLogger(__name__)


class VoterRegistry:
    """
    Holds one Voter per roster address.

    Mutations are stage-checked: a voter moves SEEDED -> REGISTERED ->
    COMMITTED -> VOTED exactly once each, and no mutation touches another
    voter's record. Workflows serialize per-address work with lock().
    """

    def __init__(self):
        self._voters: Dict[str, Voter] = {}
        self._no_votes: frozenset = frozenset()
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def seed(self, roster: Iterable[str], delegations: Mapping[str, str] = None,
             no_votes: Iterable[str] = (), admin: Optional[str] = None,
             charity: Optional[str] = None):
        """Create SEEDED voters for the roster minus admin and charity"""
        excluded = {a.lower() for a in (admin, charity) if a}
        addresses = [a for a in roster if a.lower() not in excluded]

        known = KeyStore({a: None for a in addresses + [a for a in (admin, charity) if a]})
        checked = validate_delegations((delegations or {}).items(), known,
                                       excluded=[a for a in (admin, charity) if a])

        no_votes = frozenset(a.lower() for a in no_votes)
        unknown = no_votes - {a.lower() for a in addresses}
        if unknown:
            raise ConfigError(f"no-vote addresses not in the voter roster: {sorted(unknown)}",
                              operation="seed")

        self._voters = {a: Voter(address=a, delegatee=checked.get(a)) for a in addresses}
        self._no_votes = no_votes
        self._locks.clear()

        logger.info(f"Seeded {len(self._voters)} voters, {len(checked)} delegations, "
                    f"{len(self._no_votes)} no votes")

    # ========================================================================
    # LOOKUP
    # ========================================================================

    def __len__(self):
        return len(self._voters)

    def __contains__(self, address: str) -> bool:
        return self._key(address) is not None

    def _key(self, address: str) -> Optional[str]:
        if address in self._voters:
            return address
        lowered = address.lower()
        for key in self._voters:
            if key.lower() == lowered:
                return key
        return None

    def get(self, address: str) -> Voter:
        key = self._key(address)
        if key is None:
            raise VoterNotFound("not in the voter roster", address=address)
        return self._voters[key]

    def voters(self) -> List[Voter]:
        return list(self._voters.values())

    def is_delegator(self, address: str) -> bool:
        return self.get(address).is_delegator

    def delegatee_of(self, address: str) -> Optional[str]:
        return self.get(address).delegatee

    def delegators_of(self, address: str) -> List[str]:
        target = self.get(address).address
        return [v.address for v in self._voters.values() if v.delegatee == target]

    def direct_voters(self) -> List[Voter]:
        return [v for v in self._voters.values() if not v.is_delegator]

    def delegators(self) -> List[Voter]:
        return [v for v in self._voters.values() if v.is_delegator]

    def branch_for(self, address: str) -> VoteBranch:
        """NO when the ballot's owner is in the no-vote set, otherwise YES"""
        owner = self.get(address).address
        return VoteBranch.NO if owner.lower() in self._no_votes else VoteBranch.YES

    def lock(self, address: str) -> asyncio.Lock:
        return self._locks[self.get(address).address]

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def record_registration(self, address: str, secrets: VoterSecrets, xG: Point, vG: Point,
                            zkp: KnowledgeProof):
        voter = self.get(address)
        if voter.stage != VoterStage.SEEDED:
            raise AlreadyRegistered("key material already recorded", address=voter.address,
                                    operation="recordRegistration")
        voter._secrets = secrets
        voter._registration = RegistrationRecord(xG=xG, vG=vG, zkp=zkp)
        voter.stage = VoterStage.REGISTERED

    def record_delegation(self, address: str):
        voter = self.get(address)
        voter.require(VoterStage.REGISTERED, "recordDelegation")
        if not voter.is_delegator:
            raise StageError("voter has no delegation configured", address=voter.address,
                             operation="recordDelegation")
        voter.delegation_confirmed = True

    def record_commitment(self, address: str, record: CommitmentRecord):
        voter = self.get(address)
        voter.require(VoterStage.REGISTERED, "recordCommitment")
        if voter.stage != VoterStage.REGISTERED:
            raise AlreadyCommitted("commitment already recorded", address=voter.address,
                                   operation="recordCommitment")
        voter._commitment = record
        voter.stage = VoterStage.COMMITTED

    def record_vote_cast(self, address: str):
        voter = self.get(address)
        voter.require(VoterStage.COMMITTED, "recordVoteCast")
        if voter.stage == VoterStage.VOTED:
            raise AlreadyVoted("vote already cast", address=voter.address,
                               operation="recordVoteCast")
        voter.stage = VoterStage.VOTED

    def wipe_secrets(self):
        """Zero and drop every voter's secrets"""
        wiped = 0
        for voter in self._voters.values():
            if voter._secrets is not None:
                voter._secrets.wipe()
                voter._secrets = None
                wiped += 1
        if wiped:
            logger.info(f"Wiped secrets of {wiped} voters")

    def summary(self) -> Dict[str, int]:
        counts = {stage.name: 0 for stage in VoterStage}
        for voter in self._voters.values():
            counts[voter.stage.name] += 1
        counts['delegators'] = len(self.delegators())
        return counts
