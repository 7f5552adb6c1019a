"""
Signup: voting key generation, proof of key knowledge, deposit-backed
registration, and the delegation step that follows it.
"""

import asyncio
import logging
from typing import Tuple

from utils.errors import ConnectivityError, DelegationRejected, ProofError, RegistrationRejected
from zk.zk_proofs import KnowledgeProof
from .context import Workflow
from .models import PhaseReport, PhaseState, Voter, VoterSecrets, VoterStage

logger = logging.getLogger(__name__)


class RegistrationWorkflow(Workflow):

    name = "registration"

    async def run(self) -> PhaseReport:
        ctx = self.ctx
        ctx.phase.require(PhaseState.SIGNUP, "register")
        report = PhaseReport("registration")

        self.deposit = await self._read(
            "depositrequired", lambda: ctx.ledger.deposit_required(ctx.admin))
        await self._fan_out(report, ctx.registry.voters(), self._register)

        logger.info(report.summary())
        return report

    async def _register(self, voter: Voter) -> bool:
        if voter.stage is not VoterStage.SEEDED:
            return False

        address = voter.address
        async with self.ctx.registry.lock(address):
            secrets, zkp = await self.prove(address)

            async def landed() -> bool:
                on_ledger = await self.ctx.ledger.get_voter(address)
                return on_ledger.registered_key == secrets.xG

            await self._submit("register", address, "register",
                               secrets.xG, zkp.vG, zkp, self.deposit,
                               rejection=RegistrationRejected, address=address, landed=landed)
            self.ctx.registry.record_registration(address, secrets, secrets.xG, zkp.vG, zkp)

        logger.info(f"Voter {address} is registered")
        return True

    async def prove(self, address: str) -> Tuple[VoterSecrets, KnowledgeProof]:
        """
        Generate fresh key material and a verified proof of key knowledge.

        Every attempt starts from new randomness. Gives up with ProofError
        after settings.proof_attempts attempts.
        """
        ctx = self.ctx
        attempts = ctx.settings.proof_attempts
        last_error = None

        for attempt in range(1, attempts + 1):
            secrets = VoterSecrets.generate()
            try:
                with ctx.audit.measure("createZKP", local_call=True):
                    zkp = await ctx.crypto.create_knowledge_proof(
                        secrets.x, secrets.v, secrets.xG, address)
                with ctx.audit.measure("verifyZKP", local_call=True):
                    verified = await ctx.crypto.verify_knowledge_proof(
                        secrets.xG, zkp, zkp.vG, address)
                if verified:
                    return secrets, zkp
                last_error = ProofError("knowledge proof did not verify",
                                        address=address, operation="verifyZKP")
            except (ProofError, ConnectivityError) as e:
                last_error = e

            secrets.wipe()
            logger.warning(f"voter {address} zkp error (attempt {attempt}/{attempts}): {last_error}")
            if attempt < attempts:
                await asyncio.sleep(ctx.settings.proof_backoff * attempt)

        raise ProofError(f"no valid proof after {attempts} attempts: {last_error}",
                         address=address, operation="createZKP")


class DelegationWorkflow(Workflow):

    name = "delegation"

    async def run(self) -> PhaseReport:
        ctx = self.ctx
        ctx.phase.require(PhaseState.SIGNUP, "delegate")
        report = PhaseReport("delegation")

        await self._fan_out(report, ctx.registry.delegators(), self._delegate)

        logger.info(report.summary())
        return report

    async def _delegate(self, voter: Voter) -> bool:
        if voter.delegation_confirmed:
            return False

        registry = self.ctx.registry
        voter.require(VoterStage.REGISTERED, "delegate")
        delegatee = registry.get(voter.delegatee)
        if delegatee.stage is VoterStage.SEEDED:
            raise DelegationRejected(f"delegatee {delegatee.address} is not registered",
                                     address=voter.address, operation="delegate")

        async def landed() -> bool:
            # A confirmed delegation replaces the delegator's key with the delegatee's
            on_ledger = await self.ctx.ledger.get_voter(voter.address)
            return on_ledger.registered_key == delegatee.registration.xG

        await self._submit("delegate", voter.address, "delegate", delegatee.address,
                           rejection=DelegationRejected, address=voter.address,
                           unit="delegator", landed=landed)
        registry.record_delegation(voter.address)

        logger.info(f"Delegator {voter.address} has delegated vote to {delegatee.address}")
        return True
