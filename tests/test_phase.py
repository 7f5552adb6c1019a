import asyncio

import pytest

from election.models import Deadlines, PhaseState
from election.phase import PhaseController
from ledger.local_chain import COMMITMENT, SETUP, SIGNUP
from utils.errors import ConnectivityError, PhaseRejected
from utils.utils import AuditLog

from conftest import addr


ADMIN = addr("M")


def make_controller(chain, settings):
    return PhaseController(chain, ADMIN, settings, AuditLog(settings.audit_file))


async def open_signup(chain, controller, gap=60, outages=0):
    await chain.set_eligible(ADMIN, [addr(n) for n in "ABC"])
    deadlines = Deadlines.from_gap(await chain.now(), gap)
    chain.outages = outages
    await controller.advance_to(
        PhaseState.SIGNUP,
        lambda: chain.preflight_and_send("begin_signup", ADMIN, "q", True,
                                         deadlines.as_tuple(), 10),
        operation="beginSignUp")
    return await controller.fetch_deadlines()


def test_signup_opens_with_confirmed_deadlines(chain, settings):
    controller = make_controller(chain, settings)

    deadlines = asyncio.run(open_signup(chain, controller))

    assert controller.current_phase() is PhaseState.SIGNUP
    assert chain.state_index == SIGNUP
    assert deadlines.as_tuple() == chain.timestamps
    assert controller.registration_deadline() == deadlines.voters_finish_signup
    assert controller.deadline_for(PhaseState.VOTE) == deadlines.end_voting


def test_skipping_a_phase_is_refused_before_any_ledger_call(chain, settings):
    controller = make_controller(chain, settings)
    called = []

    async def trigger():
        called.append(True)
        return await chain.finish_registration_phase(ADMIN)

    async def main():
        await open_signup(chain, controller)
        before = len(chain.transactions)
        with pytest.raises(PhaseRejected, match="illegal transition SIGNUP -> VOTE"):
            await controller.advance_to(PhaseState.VOTE, trigger)
        return before

    before = asyncio.run(main())

    assert called == []
    assert len(chain.transactions) == before
    assert controller.current_phase() is PhaseState.SIGNUP


def test_refused_trigger_leaves_phase_unchanged(chain, settings):
    controller = make_controller(chain, settings)

    async def main():
        await open_signup(chain, controller)
        with pytest.raises(PhaseRejected, match="ledger refused"):
            await controller.advance_to(
                PhaseState.COMMITMENT,
                lambda: chain.preflight_and_send("finish_registration_phase", ADMIN),
                operation="finishRegistrationPhase")

    asyncio.run(main())

    assert controller.current_phase() is PhaseState.SIGNUP
    assert chain.state_index == SIGNUP
    # Refused during pre-flight, so nothing was sent
    assert chain.transactions_for("finishRegistrationPhase", success=False) == []


def test_confirmation_without_trigger_checks_the_ledger(chain, settings):
    controller = make_controller(chain, settings)

    async def main():
        await open_signup(chain, controller)
        with pytest.raises(PhaseRejected, match="ledger reports SIGNUP"):
            await controller.advance_to(PhaseState.COMMITMENT)

    asyncio.run(main())
    assert controller.current_phase() is PhaseState.SIGNUP


def test_connectivity_errors_are_retried(chain, settings):
    controller = make_controller(chain, settings)

    asyncio.run(open_signup(chain, controller, outages=2))

    assert controller.current_phase() is PhaseState.SIGNUP
    assert len(chain.transactions_for("beginSignUp")) == 1


def test_connectivity_errors_exhaust_retries(chain, settings):
    controller = make_controller(chain, settings)

    with pytest.raises(ConnectivityError):
        asyncio.run(open_signup(chain, controller, outages=settings.max_retries))

    assert controller.current_phase() is PhaseState.SETUP
    assert chain.state_index == SETUP


def test_ledger_rejection_is_not_retried(chain, settings):
    controller = make_controller(chain, settings)
    chain.refuse = {"beginSignUp"}
    attempts = []
    original = chain.begin_signup

    async def counting(*args, **kwargs):
        attempts.append(kwargs.get("preflight", False))
        return await original(*args, **kwargs)

    chain.begin_signup = counting

    with pytest.raises(PhaseRejected):
        asyncio.run(open_signup(chain, controller))

    assert attempts == [True]
    assert controller.current_phase() is PhaseState.SETUP


def test_wait_for_deadline_moves_past_it(chain, settings):
    controller = make_controller(chain, settings)

    async def main():
        await open_signup(chain, controller)
        return await controller.wait_for_deadline(PhaseState.SIGNUP,
                                                  controller.registration_deadline())

    assert asyncio.run(main()) is True
    assert chain.clock > controller.registration_deadline()
    assert chain.clock < controller.deadline_for(PhaseState.SIGNUP)


def test_wait_stops_when_ledger_leaves_the_phase(chain, settings):
    controller = make_controller(chain, settings)

    async def main():
        await open_signup(chain, controller)
        chain.state_index = COMMITMENT
        return await controller.wait_for_deadline(PhaseState.SIGNUP)

    assert asyncio.run(main()) is False


def test_reset_refused_before_deadline(chain, settings):
    controller = make_controller(chain, settings)

    async def main():
        await open_signup(chain, controller)
        with pytest.raises(PhaseRejected, match="has not lapsed"):
            await controller.reset()

    asyncio.run(main())
    assert controller.current_phase() is PhaseState.SIGNUP
    assert chain.state_index == SIGNUP


def test_reset_refused_from_setup(chain, settings):
    controller = make_controller(chain, settings)
    with pytest.raises(PhaseRejected, match="not possible from SETUP"):
        asyncio.run(controller.reset())


def test_reset_after_lapse_aborts(chain, settings):
    controller = make_controller(chain, settings)

    async def main():
        deadlines = await open_signup(chain, controller)
        chain.advance(deadlines.end_signup - chain.clock + 1)
        await controller.reset()
        # No transition leads out of ABORTED
        with pytest.raises(PhaseRejected):
            await controller.advance_to(PhaseState.COMMITMENT)
        await controller.refresh()

    asyncio.run(main())

    assert controller.current_phase() is PhaseState.ABORTED
    assert chain.state_index == SETUP
    assert len(chain.transactions_for("deadlinePassed")) == 1


def test_transition_is_audited(chain, settings):
    controller = make_controller(chain, settings)
    asyncio.run(open_signup(chain, controller))

    lines = settings.audit_file.read_text().splitlines()
    assert lines[0].startswith("beginSignUp duration: ")
    assert lines[0].endswith("and gas used: 180000 for 1 voter")
