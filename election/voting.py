"""Voting phase: open every commitment with the proof behind it."""

import logging

from utils.errors import OpeningMismatch
from .context import Workflow
from .models import PhaseReport, PhaseState, Voter, VoterStage

logger = logging.getLogger(__name__)


class VotingWorkflow(Workflow):

    name = "voting"

    async def run(self) -> PhaseReport:
        ctx = self.ctx
        ctx.phase.require(PhaseState.VOTE, "submitVote")
        report = PhaseReport("voting")

        await self._fan_out(report, ctx.registry.direct_voters(), self._vote)
        voted = await self._read("totalvoted", lambda: ctx.ledger.total_voted(ctx.admin))
        logger.info(f"Num non-delegated votes: {voted}")

        await self._fan_out(report, ctx.registry.delegators(), self._vote)

        logger.info(report.summary())
        return report

    async def _vote(self, voter: Voter) -> bool:
        if voter.stage in (VoterStage.SEEDED, VoterStage.VOTED):
            return False

        record = voter.commitment
        delegated = record.signer != voter.address
        on_behalf_of = voter.address if delegated else None

        ledger = self.ctx.ledger

        async def landed() -> bool:
            return await ledger.vote_cast(record.signer, voter.address)

        async with self.ctx.registry.lock(record.signer):
            await self._submit("submitVote", record.signer, "submit_vote",
                               record.proof, on_behalf_of,
                               rejection=OpeningMismatch, address=voter.address,
                               unit="delegator" if delegated else "voter", landed=landed)
            self.ctx.registry.record_vote_cast(voter.address)

        if delegated:
            logger.info(f"Delegatee {record.signer} has submitted vote successfully "
                        f"for delegator {voter.address}")
        else:
            logger.info(f"Voter {voter.address} has voted")
        return True
