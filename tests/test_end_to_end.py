import asyncio

import pytest

from election.models import PhaseState
from election_orchestrator import build_demo
from ledger.local_chain import SETUP, LocalChain
from utils.errors import PhaseRejected

from conftest import addr, make_orchestrator


def test_three_voters_one_no(settings):
    orchestrator = make_orchestrator(settings, no_votes=["C"])

    outcome = asyncio.run(orchestrator.run())

    assert outcome.ok, outcome.error
    assert (outcome.tally.yes, outcome.tally.total) == (2, 3)
    assert outcome.final_phase is PhaseState.FINISHED
    assert [r.phase for r in outcome.reports] == ["registration", "delegation",
                                                  "commitment", "voting"]
    assert all(v._secrets is None for v in orchestrator.registry.voters())


def test_summary_file_lists_each_operation(settings):
    orchestrator = make_orchestrator(settings)
    asyncio.run(orchestrator.run())

    lines = settings.audit_file.read_text().splitlines()
    operations = [line.split(" ")[0] for line in lines]

    assert lines[0].startswith("setEligible duration: ")
    assert lines[0].endswith("for 3 voters")
    assert operations.count("register") == 3
    assert operations.count("submitCommitment") == 3
    assert operations.count("submitVote") == 3
    assert any(line.startswith("createZKP LOCAL CALL duration: ") for line in lines)
    assert any(line.startswith("create1outof2ZKPYesVote LOCAL CALL") for line in lines)
    assert lines[-1].startswith("computeTally duration: ")
    assert lines[-1].endswith("for 3 voters")


def test_delegated_election(settings):
    orchestrator = make_orchestrator(settings, voters=("A", "B", "C", "D", "E"),
                                     delegations=[("D", "E")], no_votes=["C"])
    chain = orchestrator.ctx.ledger

    outcome = asyncio.run(orchestrator.run())

    assert outcome.ok, outcome.error
    assert (outcome.tally.yes, outcome.tally.total) == (4, 5)

    for operation in ("submitCommitment", "submitVote"):
        transactions = chain.transactions_for(operation)
        assert len(transactions) == 5
        assert not [t for t in transactions if t.sender == addr("D")]
        for_d = [t for t in transactions if t.on_behalf_of == addr("D")]
        assert [t.sender for t in for_d] == [addr("E")]


def test_delegator_keeps_their_own_choice(settings):
    # D votes no through a delegatee who votes yes
    orchestrator = make_orchestrator(settings, voters=("A", "B", "C", "D", "E"),
                                     delegations=[("D", "E")], no_votes=["D"])

    outcome = asyncio.run(orchestrator.run())

    assert outcome.ok, outcome.error
    assert (outcome.tally.yes, outcome.tally.total) == (4, 5)


def test_failed_registration_aborts_the_election(settings):
    orchestrator = make_orchestrator(settings)
    chain = orchestrator.ctx.ledger
    chain.refuse = {"register"}

    outcome = asyncio.run(orchestrator.run())

    assert not outcome.ok
    assert isinstance(outcome.error, PhaseRejected)
    assert outcome.tally is None
    assert outcome.final_phase is PhaseState.ABORTED
    assert len(outcome.reports) == 1
    assert len(outcome.reports[0].failed) == 3
    assert chain.state_index == SETUP
    assert chain.clock > orchestrator.phase.deadlines.end_signup


def test_refused_phase_change_aborts_the_election(settings):
    orchestrator = make_orchestrator(settings)
    chain = orchestrator.ctx.ledger
    chain.refuse = {"finishRegistrationPhase"}

    outcome = asyncio.run(orchestrator.run())

    assert isinstance(outcome.error, PhaseRejected)
    assert outcome.final_phase is PhaseState.ABORTED
    assert chain.state_index == SETUP
    assert all(v._secrets is None for v in orchestrator.registry.voters())


def test_release_after_tally(settings):
    settings.reset_after_tally = True
    orchestrator = make_orchestrator(settings, no_votes=["A"])
    chain = orchestrator.ctx.ledger

    outcome = asyncio.run(orchestrator.run())

    assert outcome.ok, outcome.error
    assert chain.state_index == SETUP
    assert chain.tally == [2, 3]
    assert chain.clock > orchestrator.phase.deadlines.end_refund


def test_demo_election(settings):
    orchestrator = build_demo(5, settings=settings)

    outcome = asyncio.run(orchestrator.run())

    assert outcome.ok, outcome.error
    # The last voter votes no; the fourth delegates to them but keeps a yes
    assert (outcome.tally.yes, outcome.tally.total) == (4, 5)
    assert outcome.audit_summary["total_gas"] == orchestrator.ctx.audit.total_gas()


class CrashingChain(LocalChain):
    """A node that fails in a way the orchestrator does not expect"""

    async def submit_commitment(self, sender, commitment, on_behalf_of=None, *, preflight=False):
        if not preflight and sender.lower() == addr("A"):
            raise RuntimeError("node crashed")
        return await super().submit_commitment(sender, commitment, on_behalf_of,
                                               preflight=preflight)


def test_unexpected_error_still_wipes_secrets(settings):
    chain = CrashingChain(owner=addr("M"), charity=addr("H"))
    orchestrator = make_orchestrator(settings, chain=chain)

    with pytest.raises(RuntimeError, match="node crashed"):
        asyncio.run(orchestrator.run())

    assert all(v._secrets is None for v in orchestrator.registry.voters())
