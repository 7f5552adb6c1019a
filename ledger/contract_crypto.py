"""
CryptoService backed by the deployed LocalCrypto contract.

Proof creation runs as eth_call against the crypto contract, so the proofs are
bit-for-bit what the voting contract expects. The contract derives the ballot
index from its own state, so the index argument only matters for verification.
"""

import logging
from typing import Optional

from web3 import Web3

from utils.errors import ProofError
from zk.zk_proofs import CryptoService, DisjunctiveProof, KnowledgeProof, Secp256k1, VoteBranch
from .client import Web3LedgerClient

logger = logging.getLogger(__name__)


class ContractCryptoService(CryptoService):

    def __init__(self, ledger: Web3LedgerClient, crypto_contract, caller: str):
        self.ledger = ledger
        self.contract = crypto_contract
        # Address used for verification calls that are not made on anyone's behalf
        self.caller = caller

    async def create_knowledge_proof(self, secret, blind, public, owner):
        fn = self.contract.functions.createZKP(secret, blind, list(public))
        output = await self.ledger.read("createZKP", owner, fn)
        r, vx, vy, vz = (int(v) for v in output)
        vG = Secp256k1.from_jacobian(vx, vy, vz)
        if vG is None or r == 0:
            raise ProofError("contract returned a degenerate proof", operation="createZKP",
                             address=owner)
        return KnowledgeProof(r=r, vG=vG)

    async def verify_knowledge_proof(self, public, proof, derived, owner):
        fn = self.contract.functions.verifyZKP(list(public), proof.r, [derived[0], derived[1], 1])
        return bool(await self.ledger.read("verifyZKP", owner, fn))

    async def create_disjunctive_proof(self, xG, yG, w, r, d, x, branch, index,
                                       signer: Optional[str] = None):
        if branch is VoteBranch.YES:
            name = "create1outof2ZKPYesVote"
        else:
            name = "create1outof2ZKPNoVote"
        fn = getattr(self.contract.functions, name)(list(xG), list(yG), w, r, d, x)
        output = await self.ledger.read(name, signer or self.caller, fn)
        try:
            return DisjunctiveProof.from_contract_output(output)
        except (TypeError, ValueError, IndexError) as e:
            raise ProofError(f"malformed proof from contract: {e}", operation=name,
                             address=signer) from e

    async def verify_disjunctive_proof(self, proof, xG, yG, index):
        return await self.ledger.verify_disjunctive_proof(self.caller, proof, index)

    async def commitment_hash(self, proof, xG, yG):
        params, y, a1, b1, a2, b2 = proof.to_contract_args()
        fn = self.contract.functions.commitToVote(params, list(xG), list(yG), y, a1, b1, a2, b2)
        digest = await self.ledger.read("commitToVote", self.caller, fn)
        return bytes(Web3.to_bytes(digest))
