"""Tally: close the vote, read the self-tallied result and drop the secrets."""

import logging

from .context import Workflow
from .models import PhaseState, TallyResult

logger = logging.getLogger(__name__)


class TallyWorkflow(Workflow):

    name = "tally"

    async def run(self) -> TallyResult:
        ctx = self.ctx
        ctx.phase.require(PhaseState.VOTE, "computeTally")
        registered = await self._read(
            "totalregistered", lambda: ctx.ledger.total_registered(ctx.admin))

        receipt = await ctx.phase.advance_to(
            PhaseState.FINISHED,
            lambda: ctx.ledger.preflight_and_send("compute_tally", ctx.admin),
            operation="computeTally", voter_count=registered)

        yes = await self._read("finaltally", lambda: ctx.ledger.final_tally(ctx.admin, 0))
        total = await self._read("finaltally", lambda: ctx.ledger.final_tally(ctx.admin, 1))
        ctx.registry.wipe_secrets()

        result = TallyResult(yes=yes, total=total, gas_used=receipt.gas_used)
        logger.info(f"Final tally: {result.yes} Yes votes out of {result.total} total votes")
        return result
