"""
Phase controller: the only component that moves the election between phases.

The local view of the phase only changes after the ledger confirms it, so a
refused or failed transition leaves the controller where it was.
"""

import logging
from typing import Awaitable, Callable, Optional

from ledger.client import LedgerClient, TransactionReceipt
from ledger.retry import with_retry
from utils.errors import PhaseRejected
from utils.utils import AuditLog
from .models import Deadlines, PhaseState

logger = logging.getLogger(__name__)

TRANSITIONS = {
    PhaseState.SETUP: PhaseState.SIGNUP,
    PhaseState.SIGNUP: PhaseState.COMMITMENT,
    PhaseState.COMMITMENT: PhaseState.VOTE,
    PhaseState.VOTE: PhaseState.FINISHED,
}


class PhaseController:

    def __init__(self, ledger: LedgerClient, admin: str, settings, audit: AuditLog):
        self.ledger = ledger
        self.admin = admin
        self.settings = settings
        self.audit = audit
        self.deadlines: Optional[Deadlines] = None
        self._phase = PhaseState.SETUP

    def current_phase(self) -> PhaseState:
        return self._phase

    def require(self, phase: PhaseState, operation: Optional[str] = None):
        if self._phase is not phase:
            raise PhaseRejected(f"requires phase {phase.name}, election is in {self._phase.name}",
                                operation=operation)

    async def _retry(self, name: str, operation: Callable[[], Awaitable]):
        return await with_retry(operation, attempts=self.settings.max_retries,
                                backoff=self.settings.retry_backoff, name=name)

    async def ledger_phase(self) -> PhaseState:
        index = await self._retry("state", lambda: self.ledger.state(self.admin))
        return PhaseState(index)

    async def refresh(self) -> PhaseState:
        """Sync the local phase with the ledger. ABORTED is kept once reached."""
        phase = await self.ledger_phase()
        if self._phase is not PhaseState.ABORTED and phase is not self._phase:
            logger.info(f"Ledger reports {phase.name} (local view was {self._phase.name})")
            self._phase = phase
        return phase

    async def advance_to(self, target: PhaseState,
                         trigger: Optional[Callable[[], Awaitable[TransactionReceipt]]] = None,
                         *, operation: Optional[str] = None,
                         voter_count: int = 1) -> Optional[TransactionReceipt]:
        """
        Move to `target`, the immediate successor of the current phase.

        `trigger` sends the transaction that causes the move; without one the
        ledger is expected to have advanced on its own and is only asked to
        confirm. Illegal requests are refused before any ledger call.
        """
        current = self._phase
        operation = operation or f"advance to {target.name}"
        if TRANSITIONS.get(current) is not target:
            raise PhaseRejected(f"illegal transition {current.name} -> {target.name}",
                                operation=operation)

        receipt = None
        if trigger is not None:
            with self.audit.measure(operation, voter_count) as entry:
                receipt = await self._retry(operation, trigger)
                entry.receipt(receipt)
            if not receipt.success:
                raise PhaseRejected(f"ledger refused {current.name} -> {target.name}: {receipt.error}",
                                    operation=operation)

        confirmed = await self.ledger_phase()
        if confirmed is not target:
            raise PhaseRejected(f"ledger reports {confirmed.name}, expected {target.name}",
                                operation=operation)

        self._phase = target
        logger.info(f"Election advanced {current.name} -> {target.name}")
        return receipt

    # ========================================================================
    # DEADLINES
    # ========================================================================

    async def fetch_deadlines(self) -> Deadlines:
        values = await self._retry("deadlines", lambda: self.ledger.deadlines(self.admin))
        self.deadlines = Deadlines(*values)
        logger.info(f"Contract deadlines: {self.deadlines}")
        return self.deadlines

    def _require_deadlines(self) -> Deadlines:
        if self.deadlines is None:
            raise PhaseRejected("deadlines are not known before signup begins")
        return self.deadlines

    def registration_deadline(self) -> int:
        """Last moment voters may register"""
        return self._require_deadlines().voters_finish_signup

    def deadline_for(self, phase: PhaseState) -> int:
        """The deadline after which `phase` has lapsed and can be reset"""
        deadlines = self._require_deadlines()
        mapping = {
            PhaseState.SIGNUP: deadlines.end_signup,
            PhaseState.COMMITMENT: deadlines.end_commitment,
            PhaseState.VOTE: deadlines.end_voting,
            PhaseState.FINISHED: deadlines.end_refund,
        }
        if phase not in mapping:
            raise PhaseRejected(f"phase {phase.name} has no deadline")
        return mapping[phase]

    async def is_past_deadline(self, phase: Optional[PhaseState] = None) -> bool:
        deadline = self.deadline_for(phase or self._phase)
        now = await self._retry("now", self.ledger.now)
        return now > deadline

    async def wait_for_deadline(self, phase: PhaseState, deadline: Optional[int] = None) -> bool:
        """
        Sleep until `deadline` (default: the phase deadline) plus the buffer.

        Polls the ledger every poll_interval; returns False early when the
        ledger is no longer in `phase`, True once the deadline has passed.
        """
        if deadline is None:
            deadline = self.deadline_for(phase)

        while True:
            now = await self._retry("now", self.ledger.now)
            remaining = deadline - now + self.settings.deadline_buffer
            if remaining <= 0:
                return True

            ledger_phase = await self.ledger_phase()
            if ledger_phase is not phase:
                logger.info(f"Ledger left {phase.name} (now {ledger_phase.name}); stop waiting")
                return False

            logger.debug(f"Waiting {remaining:.1f}s for the {phase.name} deadline")
            await self.ledger.sleep(min(remaining, self.settings.poll_interval))

    # ========================================================================
    # RESET
    # ========================================================================

    async def _deadline_passed(self) -> TransactionReceipt:
        with self.audit.measure("deadlinePassed", 1, unit="call") as entry:
            receipt = await self._retry(
                "deadlinePassed",
                lambda: self.ledger.preflight_and_send("deadline_passed", self.admin))
            entry.receipt(receipt)
        return receipt

    async def reset(self) -> TransactionReceipt:
        """Abort a running election whose phase deadline has lapsed (deadlinePassed)"""
        if self._phase is not PhaseState.ABORTED:
            await self.refresh()
        phase = self._phase
        if phase in (PhaseState.SETUP, PhaseState.FINISHED, PhaseState.ABORTED):
            raise PhaseRejected(f"reset is not possible from {phase.name}", operation="reset")
        if not await self.is_past_deadline(phase):
            raise PhaseRejected(f"the {phase.name} deadline has not lapsed", operation="reset")

        receipt = await self._deadline_passed()
        if not receipt.success:
            raise PhaseRejected(f"ledger refused reset: {receipt.error}", operation="reset")

        self._phase = PhaseState.ABORTED
        logger.warning(f"Election reset from {phase.name}; deposits refunded per ledger rules")
        return receipt

    async def release(self) -> TransactionReceipt:
        """Return a finished election's contract to SETUP once the refund period is over"""
        self.require(PhaseState.FINISHED, "release")
        if not await self.is_past_deadline(PhaseState.FINISHED):
            raise PhaseRejected("the refund period has not ended", operation="release")

        receipt = await self._deadline_passed()
        if not receipt.success:
            raise PhaseRejected(f"ledger refused release: {receipt.error}", operation="release")
        logger.info("Finished election released; contract is back in SETUP")
        return receipt
