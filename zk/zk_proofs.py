"""
Zero-Knowledge Proof Module for the Self-Tallying Election
Schnorr proofs of key knowledge and 1-out-of-2 (CDS) ballot proofs over secp256k1
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from cryptography.hazmat.primitives.asymmetric import ec
from web3 import Web3

from utils.errors import ProofError

logger = logging.getLogger(__name__)

Point = Tuple[int, int]

# ============================================================================
# SECP256K1 CURVE ARITHMETIC
# ============================================================================


class Secp256k1:
    """Affine secp256k1 arithmetic. The point at infinity is represented as None."""

    P = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F
    N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
    G = (
        0x79BE667EF9DCBBAC55A06295CE870B07029BFCDB2DCE28D959F2815B16F81798,
        0x483ADA7726A3C4655DA4FBFC0E1108A8FD17B448A68554199C47D08FFB10D4B8,
    )

    @staticmethod
    def is_on_curve(point: Optional[Point]) -> bool:
        if point is None:
            return False
        x, y = point
        P = Secp256k1.P
        if not (0 <= x < P and 0 <= y < P):
            return False
        return (y * y - x * x * x - 7) % P == 0

    @staticmethod
    def add(p: Optional[Point], q: Optional[Point]) -> Optional[Point]:
        if p is None:
            return q
        if q is None:
            return p

        P = Secp256k1.P
        x1, y1 = p
        x2, y2 = q

        if x1 == x2:
            if (y1 + y2) % P == 0:
                return None
            lam = (3 * x1 * x1) * pow(2 * y1, -1, P) % P
        else:
            lam = (y2 - y1) * pow(x2 - x1, -1, P) % P

        x3 = (lam * lam - x1 - x2) % P
        y3 = (lam * (x1 - x3) - y1) % P
        return (x3, y3)

    @staticmethod
    def negate(p: Optional[Point]) -> Optional[Point]:
        if p is None:
            return None
        return (p[0], (-p[1]) % Secp256k1.P)

    @staticmethod
    def multiply(p: Optional[Point], k: int) -> Optional[Point]:
        """Double-and-add scalar multiplication"""
        k %= Secp256k1.N
        result = None
        addend = p
        while k:
            if k & 1:
                result = Secp256k1.add(result, addend)
            addend = Secp256k1.add(addend, addend)
            k >>= 1
        return result

    @staticmethod
    def from_jacobian(x: int, y: int, z: int) -> Optional[Point]:
        """Convert the (x, y, z) triples returned by the crypto contract"""
        if z == 0:
            return None
        P = Secp256k1.P
        z_inv = pow(z, -1, P)
        z_inv2 = z_inv * z_inv % P
        return (x * z_inv2 % P, y * z_inv2 * z_inv % P)


def generate_voting_key() -> Tuple[int, Point]:
    """Generate a voting key x and its public point xG"""
    key = ec.generate_private_key(ec.SECP256K1())
    numbers = key.public_key().public_numbers()
    return key.private_numbers().private_value, (numbers.x, numbers.y)


def random_scalar() -> int:
    """Uniform non-zero scalar modulo the group order"""
    return ec.generate_private_key(ec.SECP256K1()).private_numbers().private_value


def flatten_points(*points: Optional[Point]) -> List[int]:
    values = []
    for point in points:
        if point is None:
            raise ProofError("point at infinity cannot be encoded")
        values.extend(point)
    return values


def hash_to_scalar(types: List[str], values: List) -> int:
    """Fiat-Shamir challenge: keccak256 of the packed values reduced mod N"""
    digest = Web3.solidity_keccak(types, values)
    return int.from_bytes(bytes(digest), "big") % Secp256k1.N

# ============================================================================
# PROOF ARTIFACTS
# ============================================================================


class VoteBranch(Enum):
    """Which statement of the 1-out-of-2 proof is real"""
    YES = "yes"
    NO = "no"


@dataclass(frozen=True)
class KnowledgeProof:
    """Schnorr proof that the prover knows x for xG"""
    r: int
    vG: Point


@dataclass(frozen=True)
class DisjunctiveProof:
    """1-out-of-2 ballot proof: params are (d1, d2, r1, r2)"""
    params: Tuple[int, int, int, int]
    y: Point
    a1: Point
    b1: Point
    a2: Point
    b2: Point

    @property
    def points(self) -> Tuple[Point, Point, Point, Point, Point]:
        return (self.y, self.a1, self.b1, self.a2, self.b2)

    def to_contract_args(self) -> Tuple[List[int], ...]:
        """(params, y, a1, b1, a2, b2) as uint arrays"""
        return (list(self.params),) + tuple(list(p) for p in self.points)

    @classmethod
    def from_contract_output(cls, output) -> 'DisjunctiveProof':
        """Decode the ([10 coordinates], [4 params]) pair returned by the contract"""
        coords, params = output
        coords = [int(c) for c in coords]
        points = [(coords[i], coords[i + 1]) for i in range(0, 10, 2)]
        return cls(tuple(int(p) for p in params), *points)

# ============================================================================
# CRYPTO SERVICE INTERFACE
# ============================================================================


class CryptoService(ABC):
    """Proof creation and verification capability used by the workflows"""

    @abstractmethod
    async def create_knowledge_proof(self, secret: int, blind: int, public: Point,
                                     owner: str) -> KnowledgeProof:
        ...

    @abstractmethod
    async def verify_knowledge_proof(self, public: Point, proof: KnowledgeProof,
                                     derived: Point, owner: str) -> bool:
        ...

    @abstractmethod
    async def create_disjunctive_proof(self, xG: Point, yG: Point, w: int, r: int, d: int,
                                       x: int, branch: VoteBranch, index: int,
                                       signer: Optional[str] = None) -> DisjunctiveProof:
        ...

    @abstractmethod
    async def verify_disjunctive_proof(self, proof: DisjunctiveProof, xG: Point,
                                       yG: Point, index: int) -> bool:
        ...

    @abstractmethod
    async def commitment_hash(self, proof: DisjunctiveProof, xG: Point, yG: Point) -> bytes:
        ...


class LocalCryptoService(CryptoService):
    """In-process implementation of the proofs the crypto contract provides"""

    def __init__(self):
        self.curve = Secp256k1

    # --- Schnorr proof of knowledge ------------------------------------------

    def _knowledge_challenge(self, owner: str, public: Point, derived: Point) -> int:
        # Addresses compare case-insensitively, so the challenge must too
        values = flatten_points(self.curve.G, public, derived)
        return hash_to_scalar(['string'] + ['uint256'] * len(values), [owner.lower()] + values)

    def prove_knowledge(self, secret: int, blind: int, public: Point, owner: str) -> KnowledgeProof:
        N = self.curve.N
        if not (0 < secret < N and 0 < blind < N):
            raise ProofError("scalar outside the group order", operation="createZKP", address=owner)
        if not self.curve.is_on_curve(public):
            raise ProofError("public key is not on the curve", operation="createZKP", address=owner)

        vG = self.curve.multiply(self.curve.G, blind)
        if vG is None:
            raise ProofError("blinding point is the identity", operation="createZKP", address=owner)

        c = self._knowledge_challenge(owner, public, vG)
        r = (blind - secret * c) % N
        if r == 0:
            raise ProofError("degenerate response scalar", operation="createZKP", address=owner)
        return KnowledgeProof(r=r, vG=vG)

    def check_knowledge(self, public: Point, proof: KnowledgeProof, derived: Point, owner: str) -> bool:
        if not (self.curve.is_on_curve(public) and self.curve.is_on_curve(derived)):
            return False
        if not 0 < proof.r < self.curve.N:
            return False
        c = self._knowledge_challenge(owner, public, derived)
        expected = self.curve.add(
            self.curve.multiply(self.curve.G, proof.r),
            self.curve.multiply(public, c))
        return expected == derived

    async def create_knowledge_proof(self, secret, blind, public, owner):
        return self.prove_knowledge(secret, blind, public, owner)

    async def verify_knowledge_proof(self, public, proof, derived, owner):
        return self.check_knowledge(public, proof, derived, owner)

    # --- 1-out-of-2 ballot proof ---------------------------------------------

    def _ballot_challenge(self, index: int, xG: Point, y: Point, a1: Point, b1: Point,
                          a2: Point, b2: Point) -> int:
        values = flatten_points(xG, y, a1, b1, a2, b2)
        return hash_to_scalar(['uint256'] * (len(values) + 1), [index] + values)

    def prove_disjunctive(self, xG: Point, yG: Point, w: int, r: int, d: int, x: int,
                          branch: VoteBranch, index: int) -> DisjunctiveProof:
        c_ = self.curve
        N = c_.N
        G = c_.G

        if not (c_.is_on_curve(xG) and c_.is_on_curve(yG)):
            raise ProofError("registered or reconstructed key is not a curve point",
                             operation="create1outof2ZKP")

        def simulated(response: int, challenge: int, target: Point) -> Tuple[Point, Point]:
            a = c_.add(c_.multiply(G, response), c_.multiply(xG, challenge))
            b = c_.add(c_.multiply(yG, response), c_.multiply(target, challenge))
            return a, b

        if branch is VoteBranch.YES:
            y = c_.add(c_.multiply(yG, x), G)
            a1, b1 = simulated(r, d, y)
            a2, b2 = c_.multiply(G, w), c_.multiply(yG, w)
        else:
            y = c_.multiply(yG, x)
            a1, b1 = c_.multiply(G, w), c_.multiply(yG, w)
            a2, b2 = simulated(r, d, c_.add(y, c_.negate(G)))

        if any(p is None for p in (y, a1, b1, a2, b2)):
            raise ProofError("proof component landed on the identity", operation="create1outof2ZKP")

        challenge = self._ballot_challenge(index, xG, y, a1, b1, a2, b2)
        real_d = (challenge - d) % N
        real_r = (w - x * real_d) % N

        if branch is VoteBranch.YES:
            params = (d % N, real_d, r % N, real_r)
        else:
            params = (real_d, d % N, real_r, r % N)

        return DisjunctiveProof(params, y, a1, b1, a2, b2)

    def check_disjunctive(self, proof: DisjunctiveProof, xG: Point, yG: Point, index: int) -> bool:
        c_ = self.curve
        N = c_.N
        G = c_.G

        if not all(c_.is_on_curve(p) for p in (xG, yG) + proof.points):
            return False
        d1, d2, r1, r2 = proof.params
        if not all(0 <= v < N for v in proof.params):
            return False

        challenge = self._ballot_challenge(index, xG, *proof.points)
        if (d1 + d2) % N != challenge:
            return False

        y_minus_g = c_.add(proof.y, c_.negate(G))
        checks = (
            (proof.a1, c_.add(c_.multiply(G, r1), c_.multiply(xG, d1))),
            (proof.b1, c_.add(c_.multiply(yG, r1), c_.multiply(proof.y, d1))),
            (proof.a2, c_.add(c_.multiply(G, r2), c_.multiply(xG, d2))),
            (proof.b2, c_.add(c_.multiply(yG, r2), c_.multiply(y_minus_g, d2))),
        )
        return all(actual == expected for actual, expected in checks)

    def hash_commitment(self, proof: DisjunctiveProof, xG: Point, yG: Point) -> bytes:
        values = list(proof.params) + flatten_points(xG, yG, *proof.points)
        return bytes(Web3.solidity_keccak(['uint256'] * len(values), values))

    async def create_disjunctive_proof(self, xG, yG, w, r, d, x, branch, index, signer=None):
        return self.prove_disjunctive(xG, yG, w, r, d, x, branch, index)

    async def verify_disjunctive_proof(self, proof, xG, yG, index):
        return self.check_disjunctive(proof, xG, yG, index)

    async def commitment_hash(self, proof, xG, yG):
        return self.hash_commitment(proof, xG, yG)
