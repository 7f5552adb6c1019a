"""
Commitment phase: build each ballot's 1-out-of-2 proof against the ledger's
reconstructed key and publish the hash of it.

Direct voters commit first. Delegated ballots are committed afterwards by
their delegatee, keyed by the delegatee's voting key but blinded with the
delegator's scalars and bound to the delegator's ledger slot.
"""

import asyncio
import logging

from ledger.client import LedgerVoter
from utils.errors import (CommitmentRejected, ConnectivityError, DelegationRejected, ProofError,
                          ReconstructionNotReady)
from zk.zk_proofs import DisjunctiveProof, VoteBranch
from .context import Workflow
from .models import CommitmentRecord, PhaseReport, PhaseState, Voter, VoterStage

logger = logging.getLogger(__name__)


class CommitmentWorkflow(Workflow):

    name = "commitment"

    async def run(self) -> PhaseReport:
        ctx = self.ctx
        ctx.phase.require(PhaseState.COMMITMENT, "submitCommitment")
        report = PhaseReport("commitment")

        await self._fan_out(report, ctx.registry.direct_voters(), self._commit_direct)
        committed = await self._read("totalcommitted", lambda: ctx.ledger.total_committed(ctx.admin))
        logger.info(f"Num non-delegated commitments: {committed}")

        # Delegated ballots only start once every direct commitment is settled
        await self._fan_out(report, ctx.registry.delegators(), self._commit_delegated)

        logger.info(report.summary())
        return report

    async def _reconstructed(self, address: str) -> LedgerVoter:
        """getVoter() as `address`, retried until the reconstructed key is present"""
        ledger = self.ctx.ledger

        async def fetch() -> LedgerVoter:
            record = await ledger.get_voter(address)
            if record.reconstructed_key is None:
                raise ReconstructionNotReady("reconstructed key is not on the ledger",
                                             address=address, operation="getVoter")
            return record

        return await self._read("getVoter", fetch,
                                retry_on=(ConnectivityError, ReconstructionNotReady),
                                attempts=self.ctx.settings.reconstruction_attempts)

    async def build(self, owner: Voter, signer: Voter) -> CommitmentRecord:
        """Ballot proof and commitment hash for `owner`'s slot, produced by `signer`"""
        ctx = self.ctx
        unit = "voter" if owner is signer else "delegator"

        if signer.stage is VoterStage.SEEDED:
            raise ReconstructionNotReady(f"signer {signer.address} is not registered",
                                         address=owner.address, operation="submitCommitment")

        on_ledger = await self._reconstructed(owner.address)
        xG = signer.registration.xG
        if on_ledger.registered_key != xG:
            raise CommitmentRejected("ledger key for this slot does not match the signer's key",
                                     address=owner.address, operation="getVoter")
        yG = on_ledger.reconstructed_key

        branch = ctx.registry.branch_for(owner.address)
        index = await self._read(
            "addressid", lambda: ctx.ledger.address_id(signer.address, owner.address))

        attempts = ctx.settings.proof_attempts
        for attempt in range(1, attempts + 1):
            try:
                proof = await self._ballot_proof(owner, signer, xG, yG, branch, index, unit)
                break
            except ProofError as e:
                last_error = e
            # Nothing is committed yet, so the owner's blinding can still change
            owner.secrets.refresh_blinding()
            logger.warning(f"voter {owner.address} ballot proof error "
                           f"(attempt {attempt}/{attempts}): {last_error}")
            if attempt < attempts:
                await asyncio.sleep(ctx.settings.proof_backoff * attempt)
        else:
            raise ProofError(f"no valid ballot proof after {attempts} attempts: {last_error}",
                             address=owner.address, operation="create1outof2ZKP")

        commitment_hash = await ctx.crypto.commitment_hash(proof, xG, yG)
        return CommitmentRecord(xG=xG, yG=yG, proof=proof, commitment_hash=commitment_hash,
                                branch=branch, signer=signer.address, index=index)

    async def _ballot_proof(self, owner: Voter, signer: Voter, xG, yG, branch: VoteBranch,
                            index: int, unit: str) -> DisjunctiveProof:
        """One proof from the owner's current blinding, checked by the ledger at `index`"""
        ctx = self.ctx
        blinding = owner.secrets

        label = "Yes" if branch is VoteBranch.YES else "No"
        with ctx.audit.measure(f"create1outof2ZKP{label}Vote", local_call=True, unit=unit):
            proof = await ctx.crypto.create_disjunctive_proof(
                xG, yG, blinding.w, blinding.r, blinding.d, signer.secrets.x, branch, index,
                signer=signer.address)

        with ctx.audit.measure("verify1outof2ZKP", local_call=True, unit=unit):
            verified = await self._read(
                "verify1outof2ZKP",
                lambda: ctx.ledger.verify_disjunctive_proof(signer.address, proof, index))
        if not verified:
            raise ProofError("ledger did not accept the ballot proof",
                             address=owner.address, operation="verify1outof2ZKP")
        return proof

    def _landed(self, owner: str, record: CommitmentRecord):
        async def check() -> bool:
            on_ledger = await self.ctx.ledger.get_voter(owner)
            return on_ledger.commitment == record.commitment_hash
        return check

    async def _commit_direct(self, voter: Voter) -> bool:
        if voter.stage is not VoterStage.REGISTERED:
            return False

        async with self.ctx.registry.lock(voter.address):
            record = await self.build(voter, voter)
            await self._submit("submitCommitment", voter.address, "submit_commitment",
                               record.commitment_hash,
                               rejection=CommitmentRejected, address=voter.address,
                               landed=self._landed(voter.address, record))
            self.ctx.registry.record_commitment(voter.address, record)

        logger.info(f"Voter {voter.address} committed")
        return True

    async def _commit_delegated(self, delegator: Voter) -> bool:
        if delegator.stage is not VoterStage.REGISTERED:
            return False
        if not delegator.delegation_confirmed:
            raise DelegationRejected("delegation was never confirmed by the ledger",
                                     address=delegator.address, operation="submitCommitment")

        registry = self.ctx.registry
        delegatee = registry.get(delegator.delegatee)

        # One proof at a time per delegatee
        async with registry.lock(delegatee.address):
            record = await self.build(delegator, delegatee)
            await self._submit("submitCommitment", delegatee.address, "submit_commitment",
                               record.commitment_hash, delegator.address,
                               rejection=CommitmentRejected, address=delegator.address,
                               unit="delegator",
                               landed=self._landed(delegator.address, record))
            registry.record_commitment(delegator.address, record)

        logger.info(f"Delegatee {delegatee.address} committed for delegator {delegator.address}")
        return True
