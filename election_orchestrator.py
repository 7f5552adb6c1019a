#!/usr/bin/env python3
"""
Self-Tallying Election Orchestrator
===================================
Drives an Open Vote Network style election on the AnonymousVoting contract:
eligibility and signup, key registration with proofs of knowledge, vote
delegation, commit-reveal with 1-out-of-2 ballot proofs, and the self-tally.

Every voter key and ballot is produced locally; the ledger only ever sees
public keys, proofs and commitment hashes. If a phase cannot be completed the
election is reset through deadlinePassed once the phase deadline lapses.
"""

import asyncio
import logging
from typing import Optional

from config.config import ElectionConfig, KeyStore, OrchestratorConfig
from election.commitment import CommitmentWorkflow
from election.context import ElectionContext
from election.models import Deadlines, ElectionOutcome, PhaseReport, PhaseState
from election.phase import PhaseController
from election.registration import DelegationWorkflow, RegistrationWorkflow
from election.registry import VoterRegistry
from election.tally import TallyWorkflow
from election.voting import VotingWorkflow
from ledger.client import LedgerClient
from ledger.local_chain import LocalChain
from ledger.retry import with_retry
from utils.errors import ElectionError, PhaseRejected
from utils.utils import AuditLog, format_duration
from zk.zk_proofs import CryptoService, LocalCryptoService

logger = logging.getLogger(__name__)

# ============================================================================
# ORCHESTRATOR
# ============================================================================


class ElectionOrchestrator:
    """
    Runs one election end to end:
    1. init: setEligible, beginSignUp with deadlines now + k * phase gap
    2. registration and delegation
    3. finish registration once voters' signup deadline has passed
    4. commitments, votes, tally
    5. optional release of the contract after the refund period
    """

    def __init__(self, config: ElectionConfig, keystore: KeyStore, ledger: LedgerClient,
                 crypto: CryptoService, settings: Optional[OrchestratorConfig] = None,
                 audit: Optional[AuditLog] = None):
        settings = settings or OrchestratorConfig()
        audit = audit or AuditLog(settings.audit_file)

        registry = VoterRegistry()
        registry.seed(config.roster(keystore), config.delegations, config.no_votes,
                      admin=config.admin, charity=config.charity)

        self.ctx = ElectionContext(
            config=config,
            keystore=keystore,
            ledger=ledger,
            crypto=crypto,
            registry=registry,
            phase=PhaseController(ledger, config.admin, settings, audit),
            audit=audit,
            settings=settings,
        )

        self.registration = RegistrationWorkflow(self.ctx)
        self.delegation = DelegationWorkflow(self.ctx)
        self.commitment = CommitmentWorkflow(self.ctx)
        self.voting = VotingWorkflow(self.ctx)
        self.tally = TallyWorkflow(self.ctx)

    @property
    def phase(self) -> PhaseController:
        return self.ctx.phase

    @property
    def registry(self) -> VoterRegistry:
        return self.ctx.registry

    async def _retry(self, name, call):
        settings = self.ctx.settings
        return await with_retry(call, attempts=settings.max_retries,
                                backoff=settings.retry_backoff, name=name)

    async def log_counters(self, label: str):
        counters = await self._retry("counters", lambda: self.ctx.ledger.counters(self.ctx.admin))
        state = PhaseState(counters.pop('state')).name
        logger.info(f"{label}: state {state}, " +
                    ", ".join(f"{k} {v}" for k, v in counters.items()))

    # ========================================================================
    # PROTOCOL STEPS
    # ========================================================================

    async def init_election(self) -> Deadlines:
        """Admin sets the eligible voters and opens signup"""
        ctx = self.ctx
        admin = ctx.admin
        ctx.phase.require(PhaseState.SETUP, "setEligible")

        roster = [v.address for v in ctx.registry.voters()]
        with ctx.audit.measure("setEligible", len(roster)) as entry:
            receipt = await self._retry(
                "setEligible", lambda: ctx.ledger.set_eligible(admin, roster))
            entry.receipt(receipt)
        if not receipt.success:
            raise PhaseRejected(f"ledger refused the eligible voters: {receipt.error}",
                                operation="setEligible")
        eligible = await self._retry("totaleligible", lambda: ctx.ledger.total_eligible(admin))
        logger.info(f"{eligible} addresses set as eligible")

        now = await self._retry("now", ctx.ledger.now)
        planned = Deadlines.from_gap(now, ctx.config.phase_gap)
        deposit = ctx.config.deposit_wei

        await ctx.phase.advance_to(
            PhaseState.SIGNUP,
            lambda: ctx.ledger.preflight_and_send(
                "begin_signup", admin, ctx.config.question, True,
                planned.as_tuple(), deposit),
            operation="beginSignUp")

        required = await self._retry("depositrequired", lambda: ctx.ledger.deposit_required(admin))
        logger.info(f"Deposit required: {required} wei")
        return await ctx.phase.fetch_deadlines()

    async def finish_registration(self):
        """Wait out the voters' signup window, then close registration"""
        ctx = self.ctx
        ctx.phase.require(PhaseState.SIGNUP, "finishRegistrationPhase")

        await ctx.phase.wait_for_deadline(PhaseState.SIGNUP, ctx.phase.registration_deadline())
        # A new block moves the ledger clock past the deadline
        await self._retry("doNothing", lambda: ctx.ledger.tick(ctx.admin))

        registered = await self._retry(
            "totalregistered", lambda: ctx.ledger.total_registered(ctx.admin))
        logger.info(f"TOTAL REGISTERED: {registered}")
        await ctx.phase.advance_to(
            PhaseState.COMMITMENT,
            lambda: ctx.ledger.preflight_and_send("finish_registration_phase", ctx.admin),
            operation="finishRegistrationPhase", voter_count=registered)

    async def begin_voting(self):
        """The ledger enters VOTE on its own once every registered voter has committed"""
        await self.ctx.phase.advance_to(PhaseState.VOTE, operation="beginVote")

    async def reset(self):
        """deadlinePassed: abort the running election and wipe every secret"""
        receipt = await self.ctx.phase.reset()
        self.ctx.registry.wipe_secrets()
        return receipt

    async def release_contract(self):
        """Wait for the refund period to end and return the contract to SETUP"""
        ctx = self.ctx
        await ctx.phase.wait_for_deadline(PhaseState.FINISHED)
        await self._retry("doNothing", lambda: ctx.ledger.tick(ctx.admin))
        return await ctx.phase.release()

    @staticmethod
    def _close(report: PhaseReport):
        if not report.ok:
            first = next(iter(report.failed.values()))
            raise PhaseRejected(f"{report.phase} cannot close, {len(report.failed)} voters failed "
                                f"(first: {first})", operation=report.phase)

    async def _abort(self):
        """Reset the election once the deadline of the phase it is stuck in has lapsed"""
        ctx = self.ctx
        try:
            current = await ctx.phase.refresh()
            if current in (PhaseState.SETUP, PhaseState.FINISHED):
                return
            if ctx.phase.deadlines is None:
                await ctx.phase.fetch_deadlines()
            logger.warning(f"Aborting election in {current.name}; waiting for the phase deadline")
            await ctx.phase.wait_for_deadline(current)
            await self._retry("doNothing", lambda: ctx.ledger.tick(ctx.admin))
            await self.reset()
        except ElectionError as e:
            logger.error(f"Election could not be reset: {e}")
        finally:
            ctx.registry.wipe_secrets()

    async def run(self) -> ElectionOutcome:
        """Conduct the whole protocol and report what happened"""
        ctx = self.ctx
        outcome = ElectionOutcome()

        try:
            await self.init_election()
            await self.log_counters("Signup open")

            for workflow in (self.registration, self.delegation):
                report = await workflow.run()
                outcome.reports.append(report)
                self._close(report)

            await self.finish_registration()
            await self.log_counters("Registration closed")

            report = await self.commitment.run()
            outcome.reports.append(report)
            self._close(report)
            await self.begin_voting()

            report = await self.voting.run()
            outcome.reports.append(report)
            self._close(report)

            outcome.tally = await self.tally.run()
            await self.log_counters("Election finished")

            if ctx.settings.reset_after_tally:
                await self.release_contract()

        except ElectionError as e:
            logger.error(f"Election failed: {e}")
            outcome.error = e
            await self._abort()
        finally:
            # Also reached when an unexpected error escapes
            ctx.registry.wipe_secrets()

        outcome.final_phase = ctx.phase.current_phase()
        outcome.audit_summary = ctx.audit.get_summary()
        logger.info(f"Election ended in {outcome.final_phase.name}; registry {ctx.registry.summary()}")
        return outcome

# ============================================================================
# DEMONSTRATION
# ============================================================================


def build_demo(num_voters: int = 5, phase_gap: int = 60, settings: Optional[OrchestratorConfig] = None,
               delegate: bool = True) -> ElectionOrchestrator:
    """
    Orchestrator over an in-memory ledger with generated accounts:
    admin, charity and num_voters voters. The last voter votes no and, when
    `delegate` is set and there are enough voters, the fourth voter
    delegates to the fifth.
    """
    keystore = KeyStore.generate(num_voters + 2)
    addresses = keystore.addresses()
    admin, charity, voters = addresses[0], addresses[1], addresses[2:]

    delegations = [(voters[3], voters[4])] if delegate and len(voters) >= 5 else []
    config = ElectionConfig.build(keystore, admin, charity, phase_gap,
                                  delegations=delegations, no_votes=[voters[-1]])

    crypto = LocalCryptoService()
    ledger = LocalChain(owner=admin, charity=charity, crypto=crypto)
    return ElectionOrchestrator(config, keystore, ledger, crypto, settings)


async def demonstrate_election(num_voters: int = 5,
                               settings: Optional[OrchestratorConfig] = None) -> ElectionOutcome:
    """Run a complete election against the in-memory ledger"""
    print("\n" + "="*80)
    print("SELF-TALLYING ELECTION DEMONSTRATION")
    print("="*80 + "\n")

    orchestrator = build_demo(num_voters, settings=settings)
    config = orchestrator.ctx.config
    print(f"Admin:       {config.admin}")
    print(f"Voters:      {len(orchestrator.registry)}")
    print(f"Delegations: {dict(config.delegations)}")
    print(f"No votes:    {sorted(config.no_votes)}\n")

    outcome = await orchestrator.run()

    print("\n" + "="*80)
    print("ELECTION RESULTS")
    print("="*80)
    for report in outcome.reports:
        print(f"  {report.summary()}")
    if outcome.tally:
        print(f"\nFinal tally: {outcome.tally.yes} Yes votes out of {outcome.tally.total} total votes")
    if outcome.error:
        print(f"\nElection failed: {outcome.error}")
    print(f"Final phase: {outcome.final_phase.name}")
    print(f"Total gas:   {orchestrator.ctx.audit.total_gas()}")
    print(f"Time spent:  {format_duration(outcome.audit_summary.get('total_duration', 0.0))}")
    print("="*80 + "\n")
    return outcome


if __name__ == "__main__":
    asyncio.run(demonstrate_election())
