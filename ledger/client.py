"""
Ledger client interface and the web3.py implementation.

Every call names the signing address (`sender`). State-changing calls return a
TransactionReceipt and accept `preflight=True`, which evaluates the call
without changing ledger state (the equivalent of eth_call).
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from utils.errors import ConfigError, ConnectivityError, LedgerFault
from zk.zk_proofs import DisjunctiveProof, KnowledgeProof, Point
from .retry import CircuitBreaker

logger = logging.getLogger(__name__)

GAS_LIMIT = 30_000_000


@dataclass
class TransactionReceipt:
    """Outcome of a pre-flight or a sent transaction"""
    success: bool
    gas_used: int = 0
    tx_hash: Optional[str] = None
    result: Any = None
    error: Optional[str] = None


@dataclass(frozen=True)
class LedgerVoter:
    """What getVoter() returns for the calling address"""
    registered_key: Optional[Point]
    reconstructed_key: Optional[Point]
    commitment: bytes

    @staticmethod
    def _point(raw) -> Optional[Point]:
        x, y = int(raw[0]), int(raw[1])
        if x == 0 and y == 0:
            return None
        return (x, y)

    @classmethod
    def from_contract_output(cls, output) -> 'LedgerVoter':
        registered, reconstructed, commitment = output
        return cls(cls._point(registered), cls._point(reconstructed), bytes(commitment))


class LedgerClient(ABC):
    """Async facade over the AnonymousVoting contract"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def signer_lock(self, sender: str) -> asyncio.Lock:
        """Transactions from one signing identity are serialized through this lock"""
        return self._locks[sender.lower()]

    async def preflight_and_send(self, method: str, sender: str, *args, **kwargs) -> TransactionReceipt:
        """Evaluate a transaction first and only send it when the pre-flight succeeds"""
        call = getattr(self, method)
        async with self.signer_lock(sender):
            check = await call(sender, *args, preflight=True, **kwargs)
            if not check.success:
                logger.debug(f"Pre-flight {method} from {sender} refused: {check.error}")
                return check
            return await call(sender, *args, **kwargs)

    async def sleep(self, seconds: float):
        """Wait on the ledger clock"""
        if seconds > 0:
            await asyncio.sleep(seconds)

    # --- setup / signup ------------------------------------------------------

    @abstractmethod
    async def set_eligible(self, sender: str, addresses: Sequence[str], *,
                           preflight: bool = False) -> TransactionReceipt:
        ...

    @abstractmethod
    async def begin_signup(self, sender: str, question: str, secret_ballot: bool,
                           timestamps: Sequence[int], deposit: int, *,
                           preflight: bool = False) -> TransactionReceipt:
        ...

    @abstractmethod
    async def deadlines(self, sender: str) -> Tuple[int, int, int, int, int]:
        ...

    @abstractmethod
    async def deposit_required(self, sender: str) -> int:
        ...

    @abstractmethod
    async def register(self, sender: str, xG: Point, vG: Point, zkp: KnowledgeProof,
                       deposit: int, *, preflight: bool = False) -> TransactionReceipt:
        ...

    @abstractmethod
    async def delegate(self, sender: str, delegatee: str, *,
                       preflight: bool = False) -> TransactionReceipt:
        ...

    @abstractmethod
    async def finish_registration_phase(self, sender: str, *,
                                        preflight: bool = False) -> TransactionReceipt:
        ...

    # --- commitment / vote ---------------------------------------------------

    @abstractmethod
    async def get_voter(self, sender: str) -> LedgerVoter:
        ...

    @abstractmethod
    async def address_id(self, sender: str, address: str) -> int:
        ...

    @abstractmethod
    async def verify_disjunctive_proof(self, sender: str, proof: DisjunctiveProof,
                                       index: int) -> bool:
        ...

    @abstractmethod
    async def submit_commitment(self, sender: str, commitment: bytes,
                                on_behalf_of: Optional[str] = None, *,
                                preflight: bool = False) -> TransactionReceipt:
        ...

    @abstractmethod
    async def submit_vote(self, sender: str, proof: DisjunctiveProof,
                          on_behalf_of: Optional[str] = None, *,
                          preflight: bool = False) -> TransactionReceipt:
        ...

    @abstractmethod
    async def vote_cast(self, sender: str, address: str) -> bool:
        """Whether the ballot in `address`'s slot has been opened"""
        ...

    # --- tally / lifecycle ---------------------------------------------------

    @abstractmethod
    async def compute_tally(self, sender: str, *, preflight: bool = False) -> TransactionReceipt:
        ...

    @abstractmethod
    async def final_tally(self, sender: str, index: int) -> int:
        ...

    @abstractmethod
    async def state(self, sender: str) -> int:
        ...

    @abstractmethod
    async def deadline_passed(self, sender: str, *, preflight: bool = False) -> TransactionReceipt:
        ...

    @abstractmethod
    async def total_eligible(self, sender: str) -> int:
        ...

    @abstractmethod
    async def total_registered(self, sender: str) -> int:
        ...

    @abstractmethod
    async def total_committed(self, sender: str) -> int:
        ...

    @abstractmethod
    async def total_voted(self, sender: str) -> int:
        ...

    @abstractmethod
    async def tick(self, sender: str) -> TransactionReceipt:
        """Force a new block so the ledger clock moves (doNothing)"""
        ...

    @abstractmethod
    async def now(self) -> float:
        ...

    async def counters(self, sender: str) -> Dict[str, int]:
        """Snapshot of the ledger counters for progress logging"""
        return {
            'eligible': await self.total_eligible(sender),
            'registered': await self.total_registered(sender),
            'committed': await self.total_committed(sender),
            'voted': await self.total_voted(sender),
            'state': await self.state(sender),
        }


class Web3LedgerClient(LedgerClient):
    """
    LedgerClient backed by a deployed AnonymousVoting contract.

    Blocking web3 calls run in worker threads. Transactions are signed locally
    with the sender's private key from the key store.
    """

    def __init__(self, web3: Web3, vote_contract, keystore, gas_limit: int = GAS_LIMIT,
                 receipt_timeout: float = 120.0, breaker: Optional[CircuitBreaker] = None):
        super().__init__()
        self.web3 = web3
        self.contract = vote_contract
        self.keystore = keystore
        self.gas_limit = gas_limit
        self.receipt_timeout = receipt_timeout
        self.breaker = breaker or CircuitBreaker()

    @staticmethod
    def load_abi(path) -> list:
        try:
            with open(Path(path)) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"cannot read contract ABI {path}: {e}", operation="connect") from e
        # Accept bare ABI arrays as well as compiler artifacts
        if isinstance(data, dict):
            if 'abi' not in data:
                raise ConfigError(f"{path} holds no 'abi' entry", operation="connect")
            return data['abi']
        return data

    @staticmethod
    def contract_address(address: str) -> str:
        try:
            return Web3.to_checksum_address(address)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"malformed contract address {address!r}", operation="connect") from e

    @classmethod
    def connect(cls, ledger_config, keystore) -> Tuple['Web3LedgerClient', Any]:
        """Build the client and the crypto contract handle from a LedgerConfig"""
        web3 = Web3(Web3.HTTPProvider(
            ledger_config.url,
            request_kwargs={'timeout': ledger_config.request_timeout}))
        vote_contract = web3.eth.contract(
            address=cls.contract_address(ledger_config.vote_address),
            abi=cls.load_abi(ledger_config.vote_abi))
        crypto_contract = web3.eth.contract(
            address=cls.contract_address(ledger_config.crypto_address),
            abi=cls.load_abi(ledger_config.crypto_abi))

        client = cls(web3, vote_contract, keystore,
                     gas_limit=ledger_config.gas_limit,
                     receipt_timeout=ledger_config.request_timeout)
        logger.info(f"Connected ledger client to {ledger_config.url} "
                    f"(vote contract {ledger_config.vote_address})")
        return client, crypto_contract

    # --- plumbing ------------------------------------------------------------

    async def run(self, name: str, work):
        """Run blocking web3 work in a thread, mapping transport failures"""
        async def attempt():
            try:
                return await asyncio.to_thread(work)
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout,
                    TimeExhausted) as e:
                raise ConnectivityError(str(e), operation=name) from e
            except (Web3Exception, ValueError) as e:
                raise LedgerFault(str(e), operation=name) from e
        return await self.breaker.call(attempt, name)

    async def read(self, name: str, sender: str, bound_fn):
        return await self.run(
            name, lambda: bound_fn.call({'from': Web3.to_checksum_address(sender)}))

    async def transact(self, name: str, sender: str, bound_fn, value: int = 0,
                       preflight: bool = False) -> TransactionReceipt:
        account = Web3.to_checksum_address(sender)

        def work() -> TransactionReceipt:
            if preflight:
                try:
                    result = bound_fn.call({'from': account, 'value': value, 'gas': self.gas_limit})
                except ContractLogicError as e:
                    return TransactionReceipt(success=False, error=str(e))
                return TransactionReceipt(success=result is not False, result=result)

            try:
                tx = bound_fn.build_transaction({
                    'from': account,
                    'value': value,
                    'gas': self.gas_limit,
                    'nonce': self.web3.eth.get_transaction_count(account),
                })
                signed = Account.from_key(self.keystore.private_key(sender)).sign_transaction(tx)
                tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
            except ContractLogicError as e:
                return TransactionReceipt(success=False, error=str(e))
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout):
                raise
            except (Web3Exception, ValueError) as e:
                # Nonce, balance and gas price refusals from the node
                return TransactionReceipt(success=False, error=f"node refused the transaction: {e}")
            receipt = self.web3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout)
            return TransactionReceipt(
                success=receipt['status'] == 1,
                gas_used=receipt['gasUsed'],
                tx_hash=tx_hash.hex(),
                error=None if receipt['status'] == 1 else "transaction reverted")

        return await self.run(name, work)

    @staticmethod
    def _checksum_all(addresses: Iterable[str]):
        return [Web3.to_checksum_address(a) for a in addresses]

    # --- setup / signup ------------------------------------------------------

    async def set_eligible(self, sender, addresses, *, preflight=False):
        fn = self.contract.functions.setEligible(self._checksum_all(addresses))
        return await self.transact("setEligible", sender, fn, preflight=preflight)

    async def begin_signup(self, sender, question, secret_ballot, timestamps, deposit, *,
                           preflight=False):
        fn = self.contract.functions.beginSignUp(question, secret_ballot, *timestamps, deposit)
        return await self.transact("beginSignUp", sender, fn, value=deposit, preflight=preflight)

    async def deadlines(self, sender):
        names = ('votersFinishSignupPhase', 'endSignupPhase', 'endCommitmentPhase',
                 'endVotingPhase', 'endRefundPhase')
        values = []
        for name in names:
            values.append(int(await self.read(name, sender, getattr(self.contract.functions, name)())))
        return tuple(values)

    async def deposit_required(self, sender):
        return int(await self.read("depositrequired", sender, self.contract.functions.depositrequired()))

    async def register(self, sender, xG, vG, zkp, deposit, *, preflight=False):
        fn = self.contract.functions.register(list(xG), [vG[0], vG[1], 1], zkp.r)
        return await self.transact("register", sender, fn, value=deposit, preflight=preflight)

    async def delegate(self, sender, delegatee, *, preflight=False):
        fn = self.contract.functions.delegate(Web3.to_checksum_address(delegatee))
        return await self.transact("delegate", sender, fn, preflight=preflight)

    async def finish_registration_phase(self, sender, *, preflight=False):
        fn = self.contract.functions.finishRegistrationPhase()
        return await self.transact("finishRegistrationPhase", sender, fn, preflight=preflight)

    # --- commitment / vote ---------------------------------------------------

    async def get_voter(self, sender):
        output = await self.read("getVoter", sender, self.contract.functions.getVoter())
        return LedgerVoter.from_contract_output(output)

    async def address_id(self, sender, address):
        fn = self.contract.functions.addressid(Web3.to_checksum_address(address))
        return int(await self.read("addressid", sender, fn))

    async def verify_disjunctive_proof(self, sender, proof, index):
        fn = self.contract.functions.verify1outof2ZKP(*proof.to_contract_args(), index)
        return bool(await self.read("verify1outof2ZKP", sender, fn))

    async def submit_commitment(self, sender, commitment, on_behalf_of=None, *, preflight=False):
        if on_behalf_of is None:
            fn = self.contract.get_function_by_signature('submitCommitment(bytes32)')(commitment)
        else:
            fn = self.contract.get_function_by_signature('submitCommitment(bytes32,address)')(
                commitment, Web3.to_checksum_address(on_behalf_of))
        return await self.transact("submitCommitment", sender, fn, preflight=preflight)

    async def submit_vote(self, sender, proof, on_behalf_of=None, *, preflight=False):
        args = proof.to_contract_args()
        if on_behalf_of is None:
            fn = self.contract.get_function_by_signature(
                'submitVote(uint256[4],uint256[2],uint256[2],uint256[2],uint256[2],uint256[2])')(*args)
        else:
            fn = self.contract.get_function_by_signature(
                'submitVote(uint256[4],uint256[2],uint256[2],uint256[2],uint256[2],uint256[2],address)')(
                *args, Web3.to_checksum_address(on_behalf_of))
        return await self.transact("submitVote", sender, fn, preflight=preflight)

    async def vote_cast(self, sender, address):
        fn = self.contract.functions.votecast(Web3.to_checksum_address(address))
        return bool(await self.read("votecast", sender, fn))

    # --- tally / lifecycle ---------------------------------------------------

    async def compute_tally(self, sender, *, preflight=False):
        return await self.transact("computeTally", sender, self.contract.functions.computeTally(),
                                   preflight=preflight)

    async def final_tally(self, sender, index):
        return int(await self.read("finaltally", sender, self.contract.functions.finaltally(index)))

    async def state(self, sender):
        return int(await self.read("state", sender, self.contract.functions.state()))

    async def deadline_passed(self, sender, *, preflight=False):
        return await self.transact("deadlinePassed", sender, self.contract.functions.deadlinePassed(),
                                   preflight=preflight)

    async def total_eligible(self, sender):
        return int(await self.read("totaleligible", sender, self.contract.functions.totaleligible()))

    async def total_registered(self, sender):
        return int(await self.read("totalregistered", sender, self.contract.functions.totalregistered()))

    async def total_committed(self, sender):
        return int(await self.read("totalcommitted", sender, self.contract.functions.totalcommitted()))

    async def total_voted(self, sender):
        return int(await self.read("totalvoted", sender, self.contract.functions.totalvoted()))

    async def tick(self, sender):
        async with self.signer_lock(sender):
            return await self.transact("doNothing", sender, self.contract.functions.doNothing())

    async def now(self):
        block = await self.run("getBlock", lambda: self.web3.eth.get_block('latest'))
        # A fresh chain can sit on an old block; never report a clock behind the host
        return max(float(block['timestamp']), time.time())
