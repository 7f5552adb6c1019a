import asyncio

import pytest

from ledger.client import TransactionReceipt
from ledger.retry import CircuitBreaker, with_retry
from utils.errors import ConnectivityError, ElectionError, LedgerRejected, ProofError
from utils.utils import AuditLog, AuditRecord, format_duration


def record(**overrides):
    values = dict(operation="register", duration_seconds=0.0123, gas_used=210000,
                  voter_count=1, unit="voter", memory_mb=1.0, timestamp=0.0)
    values.update(overrides)
    return AuditRecord(**values)


def test_summary_line_for_a_transaction():
    assert record().summary_line() == "register duration: 12millis and gas used: 210000 for 1 voter\n"


def test_summary_line_pluralizes_units():
    line = record(operation="setEligible", voter_count=3).summary_line()
    assert line.endswith("for 3 voters\n")
    line = record(operation="delegate", unit="delegator", voter_count=1).summary_line()
    assert line.endswith("for 1 delegator\n")


def test_summary_line_for_a_local_call():
    line = record(operation="createZKP", gas_used=None, local_call=True).summary_line()
    assert line == "createZKP LOCAL CALL duration: 12millis for 1 voter\n"


def test_first_record_truncates_the_summary_file(tmp_path):
    path = tmp_path / "logSummary.txt"
    path.write_text("stale line from a previous run\n")
    audit = AuditLog(path)

    with audit.measure("setEligible", 3) as entry:
        entry.receipt(TransactionReceipt(success=True, gas_used=111000))
    with audit.measure("createZKP", local_call=True):
        pass

    lines = path.read_text().splitlines()
    assert len(lines) == 2
    assert lines[0].startswith("setEligible duration: ")
    assert lines[0].endswith("gas used: 111000 for 3 voters")
    assert lines[1].startswith("createZKP LOCAL CALL duration: ")


def test_failed_operations_are_kept_out_of_the_summary(tmp_path):
    path = tmp_path / "logSummary.txt"
    audit = AuditLog(path)

    with audit.measure("register") as entry:
        entry.receipt(TransactionReceipt(success=False, error="incorrect deposit"))
    with pytest.raises(ConnectivityError):
        with audit.measure("register"):
            raise ConnectivityError("connection reset")

    assert not path.exists()
    assert len(audit.records) == 2
    assert all(r.failed for r in audit.records)
    assert audit.get_summary()["operations"]["register"]["failures"] == 2


def test_summary_aggregates_gas(tmp_path):
    audit = AuditLog(tmp_path / "logSummary.txt")
    for gas in (100, 300):
        with audit.measure("submitVote") as entry:
            entry.receipt(TransactionReceipt(success=True, gas_used=gas))

    summary = audit.get_summary()
    assert summary["total_operations"] == 2
    assert summary["operations"]["submitVote"]["total_gas"] == 400
    assert summary["operations"]["submitVote"]["avg_gas"] == 200.0
    assert audit.total_gas() == 400
    assert audit.total_gas("register") == 0


def test_error_message_names_voter_and_operation():
    error = LedgerRejected("incorrect deposit", address="0xabc", operation="register")
    assert str(error) == "[register] voter 0xabc: incorrect deposit"
    assert not error.retryable
    assert ConnectivityError("down").retryable
    assert ProofError("bad").retryable


def test_format_duration():
    assert format_duration(0.5) == "500.0ms"
    assert format_duration(4.2) == "4.20s"
    assert format_duration(90) == "1m 30.0s"
    assert format_duration(3723) == "1h 2m 3.0s"


class Flaky:
    def __init__(self, failures, error=ConnectivityError):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("transient")
        return "done"


def test_retry_recovers_from_transient_errors():
    delays = []

    async def sleep(delay):
        delays.append(delay)

    operation = Flaky(2)
    result = asyncio.run(with_retry(operation, attempts=3, backoff=0.5, sleep=sleep))

    assert result == "done"
    assert operation.calls == 3
    assert delays == [0.5, 1.0]


def test_retry_gives_up_after_attempts():
    operation = Flaky(5)
    with pytest.raises(ConnectivityError):
        asyncio.run(with_retry(operation, attempts=3, backoff=0))
    assert operation.calls == 3


def test_retry_does_not_repeat_rejections():
    operation = Flaky(1, error=LedgerRejected)
    with pytest.raises(LedgerRejected):
        asyncio.run(with_retry(operation, attempts=3, backoff=0))
    assert operation.calls == 1


def test_retry_on_selected_errors():
    operation = Flaky(1, error=ProofError)
    result = asyncio.run(with_retry(operation, attempts=2, backoff=0,
                                    retry_on=(ConnectivityError, ProofError)))
    assert result == "done"


def test_circuit_breaker_opens_and_recovers():
    now = [0.0]
    breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=10, clock=lambda: now[0])
    failing = Flaky(100)

    for _ in range(2):
        with pytest.raises(ConnectivityError):
            asyncio.run(breaker.call(failing))
    assert breaker.state == "OPEN"

    with pytest.raises(ConnectivityError, match="circuit breaker is open"):
        asyncio.run(breaker.call(failing))
    assert failing.calls == 2

    now[0] = 11.0
    assert asyncio.run(breaker.call(Flaky(0))) == "done"
    assert breaker.state == "CLOSED"


def test_errors_share_a_base():
    assert issubclass(LedgerRejected, ElectionError)
