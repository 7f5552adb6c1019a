"""
Shared state handed to every workflow, and the workflow base class with the
per-voter fan-out and the audited ledger submission.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional, Type

from config.config import ElectionConfig, KeyStore, OrchestratorConfig
from ledger.client import LedgerClient, TransactionReceipt
from ledger.retry import with_retry
from utils.errors import ConnectivityError, ElectionError, LedgerRejected
from utils.utils import AuditLog
from zk.zk_proofs import CryptoService
from .models import PhaseReport, Voter
from .phase import PhaseController
from .registry import VoterRegistry

logger = logging.getLogger(__name__)


@dataclass
class ElectionContext:
    config: ElectionConfig
    keystore: KeyStore
    ledger: LedgerClient
    crypto: CryptoService
    registry: VoterRegistry
    phase: PhaseController
    audit: AuditLog
    settings: OrchestratorConfig

    @property
    def admin(self) -> str:
        return self.config.admin


class Workflow:
    """Base class for the per-phase workflows"""

    name = "workflow"

    def __init__(self, ctx: ElectionContext):
        self.ctx = ctx

    async def _fan_out(self, report: PhaseReport, voters: Iterable[Voter],
                       worker: Callable[[Voter], Awaitable[bool]]):
        """
        Run worker for each voter under the worker pool bound.

        A worker returns False when it had nothing to do. An ElectionError is
        recorded against that voter only; the other voters carry on.
        """
        semaphore = asyncio.Semaphore(self.ctx.settings.max_workers)

        async def guarded(voter: Voter):
            async with semaphore:
                try:
                    done = await worker(voter)
                except ElectionError as e:
                    logger.error(f"{self.name} failed for {voter.address}: {e}")
                    report.failed[voter.address] = e
                    return
            if done:
                report.succeeded.append(voter.address)
            else:
                report.skipped.append(voter.address)

        await asyncio.gather(*(guarded(v) for v in voters))

    async def _read(self, name: str, call: Callable[[], Awaitable],
                    retry_on=(ConnectivityError,), attempts: Optional[int] = None):
        settings = self.ctx.settings
        return await with_retry(call, attempts=attempts or settings.max_retries,
                                backoff=settings.retry_backoff, name=name, retry_on=retry_on)

    async def _submit(self, operation: str, sender: str, method: str, *args,
                      rejection: Type[LedgerRejected], address: str, unit: str = "voter",
                      landed: Optional[Callable[[], Awaitable[bool]]] = None,
                      **kwargs) -> TransactionReceipt:
        """
        Pre-flight then send a transaction, auditing it and mapping a refusal to `rejection`.

        A connection lost mid-send leaves the outcome unknown: the transaction
        may already be mined. When `landed` is given it is asked before every
        later attempt, and a True answer settles the call without sending again.
        """
        ledger = self.ctx.ledger
        interrupted = False

        async def attempt() -> TransactionReceipt:
            nonlocal interrupted
            if interrupted and landed is not None and await landed():
                logger.warning(f"{operation} from {sender} was mined before the connection dropped")
                return TransactionReceipt(success=True, result=True)
            try:
                return await ledger.preflight_and_send(method, sender, *args, **kwargs)
            except ConnectivityError:
                interrupted = True
                raise

        with self.ctx.audit.measure(operation, 1, unit=unit) as entry:
            receipt = await self._read(operation, attempt)
            entry.receipt(receipt)
        if not receipt.success:
            raise rejection(receipt.error or "refused by the ledger", address=address,
                            operation=operation)
        return receipt
