import os
import sys

import pytest

# Ensure the repository root is on sys.path for tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from config.config import ElectionConfig, KeyStore, OrchestratorConfig
from election_orchestrator import ElectionOrchestrator
from ledger.local_chain import LocalChain
from zk.zk_proofs import LocalCryptoService


# M is the admin, H the charity, A-E are voters
ADDRESSES = {name: "0x" + format(i + 1, "040x") for i, name in enumerate("MHABCDE")}


def addr(name):
    return ADDRESSES[name]


def make_keystore(*voters):
    """Key store holding the admin, the charity and the named voters"""
    return KeyStore({addr(n): None for n in ("M", "H") + tuple(voters)})


def make_orchestrator(settings, voters=("A", "B", "C"), delegations=(), no_votes=(),
                      crypto=None, chain=None, phase_gap=60):
    keystore = make_keystore(*voters)
    config = ElectionConfig.build(
        keystore, addr("M"), addr("H"), phase_gap,
        delegations=[(addr(a), addr(b)) for a, b in delegations],
        no_votes=[addr(n) for n in no_votes])
    crypto = crypto or LocalCryptoService()
    chain = chain or LocalChain(owner=addr("M"), charity=addr("H"), crypto=crypto)
    return ElectionOrchestrator(config, keystore, chain, crypto, settings)


@pytest.fixture
def settings(tmp_path):
    return OrchestratorConfig(
        audit_file=tmp_path / "logSummary.txt",
        log_dir=tmp_path / "logs",
        results_dir=tmp_path / "results",
        proof_backoff=0.0,
        retry_backoff=0.0,
        poll_interval=30.0,
        max_workers=4,
    )


@pytest.fixture
def crypto():
    return LocalCryptoService()


@pytest.fixture
def chain(crypto):
    return LocalChain(owner=addr("M"), charity=addr("H"), crypto=crypto)
