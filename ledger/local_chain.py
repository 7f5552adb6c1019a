"""
In-memory AnonymousVoting ledger.

Emulates the deployed contract closely enough to run the whole protocol
without a node: eligibility, deposits, signup with key-knowledge checks,
delegation by key substitution, reconstructed keys, commit-reveal with
ballot proof checks, the self-tally and the deadline reset. Time is a
controllable clock that only moves through sleep() or advance().
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from utils.errors import ConnectivityError
from zk.zk_proofs import LocalCryptoService, Point, Secp256k1
from .client import LedgerClient, LedgerVoter, TransactionReceipt

logger = logging.getLogger(__name__)

SETUP, SIGNUP, COMMITMENT, VOTE, FINISHED = range(5)

MIN_VOTERS = 3
EMPTY_COMMITMENT = bytes(32)

# (base, per item) gas charged for each state-changing call
GAS_SCHEDULE: Dict[str, Tuple[int, int]] = {
    'setEligible': (45_000, 22_000),
    'beginSignUp': (180_000, 0),
    'register': (210_000, 0),
    'delegate': (62_000, 0),
    'finishRegistrationPhase': (95_000, 82_000),
    'submitCommitment': (71_000, 0),
    'submitVote': (1_150_000, 0),
    'computeTally': (120_000, 41_000),
    'deadlinePassed': (40_000, 12_000),
    'doNothing': (21_000, 0),
}


class Revert(Exception):
    """Raised inside the emulated contract when a call is refused"""
    pass


@dataclass
class VoterSlot:
    address: str
    registered_key: Point
    reconstructed_key: Optional[Point] = None
    commitment: bytes = EMPTY_COMMITMENT
    vote: Optional[Point] = None


@dataclass
class ChainTransaction:
    operation: str
    sender: str
    on_behalf_of: Optional[str]
    success: bool
    gas_used: int
    timestamp: float
    error: Optional[str] = None


class LocalChain(LedgerClient):
    """LedgerClient implementation holding the contract state in memory"""

    def __init__(self, owner: str, charity: Optional[str] = None,
                 crypto: Optional[LocalCryptoService] = None,
                 start_time: float = 1_700_000_000.0):
        super().__init__()
        self.owner = owner.lower()
        self.charity = charity.lower() if charity else None
        self.crypto = crypto or LocalCryptoService()
        self.clock = float(start_time)
        self.transactions: List[ChainTransaction] = []

        # Fault injection used by tests and demos
        self.offline = False
        self.outages = 0
        self.refuse: Set[str] = set()

        self._reset_state()

    def _reset_state(self):
        self.state_index = SETUP
        self.eligible: Set[str] = set()
        self.slots: List[VoterSlot] = []
        self.index_of: Dict[str, int] = {}
        self.delegations: Dict[str, str] = {}
        self.deposits: Dict[str, int] = {}
        self.question = ""
        self.secret_ballot = True
        self.timestamps: Tuple[int, ...] = (0, 0, 0, 0, 0)
        self.deposit = 0
        self.tally = [0, 0]
        self.total_committed_ = 0
        self.total_voted_ = 0

    # ========================================================================
    # CLOCK
    # ========================================================================

    def advance(self, seconds: float):
        self.clock += seconds

    async def sleep(self, seconds: float):
        if seconds > 0:
            self.advance(seconds)
        await asyncio.sleep(0)

    async def now(self):
        await self._network("now")
        return self.clock

    # ========================================================================
    # EXECUTION
    # ========================================================================

    async def _network(self, name: str):
        if self.offline:
            raise ConnectivityError("ledger unreachable", operation=name)
        if self.outages > 0:
            self.outages -= 1
            raise ConnectivityError("connection reset", operation=name)
        await asyncio.sleep(0)

    async def _execute(self, name: str, sender: str, preflight: bool,
                       check: Callable[[], Callable[[], object]],
                       on_behalf_of: Optional[str] = None,
                       items: int = 0) -> TransactionReceipt:
        """
        Run check() for validation, then its returned effect unless pre-flighting.
        check() must not mutate state; the effect it returns does.
        """
        await self._network(name)
        try:
            if name in self.refuse:
                raise Revert(f"{name} refused")
            apply = check()
        except Revert as e:
            if not preflight:
                self._log(name, sender, on_behalf_of, False, 0, str(e))
            return TransactionReceipt(success=False, error=str(e))

        if preflight:
            return TransactionReceipt(success=True, result=True)

        result = apply()
        base, per_item = GAS_SCHEDULE[name]
        gas = base + per_item * items
        tx_hash = f"0x{len(self.transactions) + 1:064x}"
        self._log(name, sender, on_behalf_of, True, gas)
        return TransactionReceipt(success=True, gas_used=gas, tx_hash=tx_hash, result=result)

    def _log(self, name, sender, on_behalf_of, success, gas, error=None):
        self.transactions.append(ChainTransaction(
            operation=name,
            sender=sender.lower(),
            on_behalf_of=on_behalf_of.lower() if on_behalf_of else None,
            success=success,
            gas_used=gas,
            timestamp=self.clock,
            error=error))

    def transactions_for(self, operation: str, success: bool = True) -> List[ChainTransaction]:
        return [t for t in self.transactions if t.operation == operation and t.success == success]

    def _require(self, condition: bool, reason: str):
        if not condition:
            raise Revert(reason)

    def _require_owner(self, sender: str):
        self._require(sender.lower() == self.owner, "only the owner may call this")

    def _deadline(self, index: int) -> int:
        return self.timestamps[index]

    # ========================================================================
    # SETUP / SIGNUP
    # ========================================================================

    async def set_eligible(self, sender, addresses, *, preflight=False):
        addresses = [a.lower() for a in addresses]

        def check():
            self._require_owner(sender)
            self._require(self.state_index == SETUP, "eligibility is fixed after setup")

            def apply():
                self.eligible.update(addresses)
                return len(self.eligible)
            return apply

        return await self._execute("setEligible", sender, preflight, check, items=len(addresses))

    async def begin_signup(self, sender, question, secret_ballot, timestamps, deposit, *,
                           preflight=False):
        timestamps = tuple(int(t) for t in timestamps)

        def check():
            self._require_owner(sender)
            self._require(self.state_index == SETUP, "signup already began")
            self._require(len(self.eligible) >= MIN_VOTERS,
                          f"at least {MIN_VOTERS} eligible voters are required")
            self._require(len(timestamps) == 5, "five deadlines are required")
            self._require(timestamps[0] > self.clock, "deadlines must be in the future")
            self._require(all(a < b for a, b in zip(timestamps, timestamps[1:])),
                          "deadlines must be strictly increasing")
            self._require(deposit > 0, "deposit must be positive")

            def apply():
                self.question = question
                self.secret_ballot = secret_ballot
                self.timestamps = timestamps
                self.deposit = deposit
                self.deposits[self.owner] = deposit
                self.state_index = SIGNUP
                return True
            return apply

        return await self._execute("beginSignUp", sender, preflight, check)

    async def deadlines(self, sender):
        await self._network("deadlines")
        return self.timestamps

    async def deposit_required(self, sender):
        await self._network("depositrequired")
        return self.deposit

    async def register(self, sender, xG, vG, zkp, deposit, *, preflight=False):
        addr = sender.lower()

        def check():
            self._require(self.state_index == SIGNUP, "registration is not open")
            self._require(self.clock < self._deadline(0), "voter signup deadline has passed")
            self._require(addr in self.eligible, "sender is not eligible")
            self._require(addr not in self.index_of, "sender already registered")
            self._require(deposit == self.deposit, "incorrect deposit")
            self._require(self.crypto.check_knowledge(xG, zkp, vG, addr),
                          "key knowledge proof does not verify")

            def apply():
                self.index_of[addr] = len(self.slots)
                self.slots.append(VoterSlot(address=addr, registered_key=tuple(xG)))
                self.deposits[addr] = deposit
                return True
            return apply

        return await self._execute("register", sender, preflight, check)

    async def delegate(self, sender, delegatee, *, preflight=False):
        delegator = sender.lower()
        delegatee = delegatee.lower()

        def check():
            self._require(self.state_index == SIGNUP, "delegation is only possible during signup")
            self._require(delegator in self.index_of, "delegator is not registered")
            self._require(delegatee in self.index_of, "delegatee is not registered")
            self._require(delegator != delegatee, "cannot delegate to self")
            self._require(delegator not in self.delegations, "vote already delegated")
            self._require(delegatee not in self.delegations, "delegatee has delegated their own vote")
            self._require(delegator not in self.delegations.values(),
                          "delegator already holds a delegated vote")

            def apply():
                self.delegations[delegator] = delegatee
                slot = self.slots[self.index_of[delegator]]
                slot.registered_key = self.slots[self.index_of[delegatee]].registered_key
                return True
            return apply

        return await self._execute("delegate", sender, preflight, check)

    async def finish_registration_phase(self, sender, *, preflight=False):
        def check():
            self._require_owner(sender)
            self._require(self.state_index == SIGNUP, "signup is not in progress")
            self._require(len(self.slots) >= MIN_VOTERS,
                          f"at least {MIN_VOTERS} registered voters are required")
            self._require(self.clock > self._deadline(0), "voters may still sign up")

            def apply():
                self._reconstruct_keys()
                self.state_index = COMMITMENT if self.secret_ballot else VOTE
                return True
            return apply

        return await self._execute("finishRegistrationPhase", sender, preflight, check,
                                   items=len(self.slots))

    def _reconstruct_keys(self):
        """yG_i = sum of keys before i minus sum of keys after i"""
        curve = Secp256k1
        keys = [s.registered_key for s in self.slots]

        prefix = [None]
        for key in keys:
            prefix.append(curve.add(prefix[-1], key))
        suffix = [None]
        for key in reversed(keys):
            suffix.append(curve.add(suffix[-1], key))
        suffix.reverse()

        for i, slot in enumerate(self.slots):
            slot.reconstructed_key = curve.add(prefix[i], curve.negate(suffix[i + 1]))

    # ========================================================================
    # COMMITMENT / VOTE
    # ========================================================================

    async def get_voter(self, sender):
        await self._network("getVoter")
        index = self.index_of.get(sender.lower())
        if index is None:
            return LedgerVoter(None, None, EMPTY_COMMITMENT)
        slot = self.slots[index]
        return LedgerVoter(slot.registered_key, slot.reconstructed_key, slot.commitment)

    async def address_id(self, sender, address):
        await self._network("addressid")
        return self.index_of.get(address.lower(), 0)

    async def verify_disjunctive_proof(self, sender, proof, index):
        await self._network("verify1outof2ZKP")
        if not 0 <= index < len(self.slots):
            return False
        slot = self.slots[index]
        if slot.reconstructed_key is None:
            return False
        return self.crypto.check_disjunctive(proof, slot.registered_key, slot.reconstructed_key, index)

    def _ballot_owner(self, sender: str, on_behalf_of: Optional[str]) -> str:
        """Resolve which slot a commitment or vote is for"""
        signer = sender.lower()
        if on_behalf_of is None:
            self._require(signer not in self.delegations, "vote was delegated")
            return signer
        owner = on_behalf_of.lower()
        self._require(self.delegations.get(owner) == signer,
                      "sender is not the delegatee for this voter")
        return owner

    async def submit_commitment(self, sender, commitment, on_behalf_of=None, *, preflight=False):
        commitment = bytes(commitment)

        def check():
            self._require(self.state_index == COMMITMENT, "commitment phase is not open")
            self._require(self.clock < self._deadline(2), "commitment deadline has passed")
            owner = self._ballot_owner(sender, on_behalf_of)
            self._require(owner in self.index_of, "voter is not registered")
            slot = self.slots[self.index_of[owner]]
            self._require(slot.commitment == EMPTY_COMMITMENT, "commitment already submitted")
            self._require(len(commitment) == 32 and commitment != EMPTY_COMMITMENT,
                          "commitment must be a 32 byte hash")

            def apply():
                slot.commitment = commitment
                self.total_committed_ += 1
                if self.total_committed_ == len(self.slots):
                    self.state_index = VOTE
                    logger.debug("All commitments received; ledger entered VOTE")
                return True
            return apply

        return await self._execute("submitCommitment", sender, preflight, check,
                                   on_behalf_of=on_behalf_of)

    async def submit_vote(self, sender, proof, on_behalf_of=None, *, preflight=False):
        def check():
            self._require(self.state_index == VOTE, "voting phase is not open")
            self._require(self.clock < self._deadline(3), "voting deadline has passed")
            owner = self._ballot_owner(sender, on_behalf_of)
            self._require(owner in self.index_of, "voter is not registered")
            index = self.index_of[owner]
            slot = self.slots[index]
            self._require(slot.commitment != EMPTY_COMMITMENT, "no commitment on record")
            self._require(slot.vote is None, "vote already cast")
            self._require(
                self.crypto.check_disjunctive(proof, slot.registered_key, slot.reconstructed_key, index),
                "ballot proof does not verify")
            opening = self.crypto.hash_commitment(proof, slot.registered_key, slot.reconstructed_key)
            self._require(opening == slot.commitment, "vote does not match the commitment")

            def apply():
                slot.vote = proof.y
                self.total_voted_ += 1
                return True
            return apply

        return await self._execute("submitVote", sender, preflight, check,
                                   on_behalf_of=on_behalf_of)

    async def vote_cast(self, sender, address):
        await self._network("votecast")
        index = self.index_of.get(address.lower())
        return index is not None and self.slots[index].vote is not None

    # ========================================================================
    # TALLY / LIFECYCLE
    # ========================================================================

    async def compute_tally(self, sender, *, preflight=False):
        def check():
            self._require_owner(sender)
            self._require(self.state_index == VOTE, "voting phase is not open")
            self._require(self.total_voted_ == len(self.slots), "not every registered voter has voted")
            yes = self._count_yes()
            self._require(yes is not None, "tally does not resolve")

            def apply():
                self.tally = [yes, len(self.slots)]
                self.state_index = FINISHED
                self._refund(lambda address: True)
                return self.tally
            return apply

        return await self._execute("computeTally", sender, preflight, check, items=len(self.slots))

    def _count_yes(self) -> Optional[int]:
        """Discrete-log search: the vote sum equals yes * G"""
        curve = Secp256k1
        total = None
        for slot in self.slots:
            total = curve.add(total, slot.vote)

        candidate = None
        for yes in range(len(self.slots) + 1):
            if candidate == total:
                return yes
            candidate = curve.add(candidate, curve.G)
        return None

    def _refund(self, eligible_for_refund: Callable[[str], bool]):
        for address in list(self.deposits):
            if eligible_for_refund(address):
                logger.debug(f"Refunding {self.deposits[address]} wei to {address}")
            elif self.charity:
                logger.debug(f"Deposit of {address} forfeited to {self.charity}")
        self.deposits.clear()

    async def final_tally(self, sender, index):
        await self._network("finaltally")
        return self.tally[index]

    async def state(self, sender):
        await self._network("state")
        return self.state_index

    async def deadline_passed(self, sender, *, preflight=False):
        def check():
            now = self.clock
            if self.state_index == SIGNUP:
                self._require(now > self._deadline(1), "signup deadline has not passed")
                keep = lambda address: True
            elif self.state_index == COMMITMENT:
                self._require(now > self._deadline(2), "commitment deadline has not passed")
                keep = lambda address: (address == self.owner or
                                        self._slot_for(address).commitment != EMPTY_COMMITMENT)
            elif self.state_index == VOTE:
                self._require(now > self._deadline(3), "voting deadline has not passed")
                keep = lambda address: (address == self.owner or
                                        self._slot_for(address).vote is not None)
            elif self.state_index == FINISHED:
                self._require(now > self._deadline(4), "refund deadline has not passed")
                keep = lambda address: False
            else:
                raise Revert("no election is running")

            def apply():
                self._refund(keep)
                tally = self.tally
                self._reset_state()
                # The tally of a finished election stays readable
                self.tally = tally
                return True
            return apply

        return await self._execute("deadlinePassed", sender, preflight, check,
                                   items=len(self.slots))

    def _slot_for(self, address: str) -> VoterSlot:
        return self.slots[self.index_of[address]]

    async def total_eligible(self, sender):
        await self._network("totaleligible")
        return len(self.eligible)

    async def total_registered(self, sender):
        await self._network("totalregistered")
        return len(self.slots)

    async def total_committed(self, sender):
        await self._network("totalcommitted")
        return self.total_committed_

    async def total_voted(self, sender):
        await self._network("totalvoted")
        return self.total_voted_

    async def tick(self, sender):
        return await self._execute("doNothing", sender, False, lambda: (lambda: None))
