import pytest

from election.models import CommitmentRecord, Deadlines, VoterSecrets, VoterStage
from election.registry import VoterRegistry
from utils.errors import (AlreadyCommitted, AlreadyRegistered, AlreadyVoted, ConfigError,
                          StageError, VoterNotFound)
from zk.zk_proofs import DisjunctiveProof, KnowledgeProof, Secp256k1, VoteBranch

from conftest import addr


def seeded(voters=("A", "B", "C", "D", "E"), delegations=(), no_votes=()):
    registry = VoterRegistry()
    registry.seed([addr(n) for n in ("M", "H") + tuple(voters)],
                  {addr(a): addr(b) for a, b in delegations},
                  [addr(n) for n in no_votes], admin=addr("M"), charity=addr("H"))
    return registry


def register(registry, name):
    secrets = VoterSecrets.generate()
    registry.record_registration(addr(name), secrets, secrets.xG, Secp256k1.G,
                                 KnowledgeProof(r=1, vG=Secp256k1.G))
    return secrets


def commitment_for(name, signer=None):
    G = Secp256k1.G
    proof = DisjunctiveProof((1, 2, 3, 4), G, G, G, G, G)
    return CommitmentRecord(xG=G, yG=G, proof=proof, commitment_hash=bytes(32),
                            branch=VoteBranch.YES, signer=addr(signer or name), index=0)


def test_seed_excludes_admin_and_charity():
    registry = seeded(voters=("A", "B", "C"))
    assert [v.address for v in registry.voters()] == [addr("A"), addr("B"), addr("C")]
    assert addr("M") not in registry
    assert addr("H") not in registry
    assert all(v.stage == VoterStage.SEEDED for v in registry.voters())


def test_seed_rejects_duplicate_delegatee():
    with pytest.raises(ConfigError):
        seeded(delegations=[("A", "C"), ("B", "C")])


def test_seed_rejects_no_vote_outside_roster():
    with pytest.raises(ConfigError, match="not in the voter roster"):
        seeded(voters=("A", "B", "C"), no_votes=["D"])
    # The admin is not a voter either
    with pytest.raises(ConfigError):
        seeded(no_votes=["M"])


def test_seed_records_delegations():
    registry = seeded(delegations=[("D", "E")])
    assert registry.is_delegator(addr("D"))
    assert registry.delegatee_of(addr("D")) == addr("E")
    assert registry.delegators_of(addr("E")) == [addr("D")]
    assert [v.address for v in registry.delegators()] == [addr("D")]
    assert addr("D") not in [v.address for v in registry.direct_voters()]


def test_unknown_voter_not_found():
    registry = seeded()
    with pytest.raises(VoterNotFound):
        registry.get(addr("M"))


def test_registering_twice_keeps_first_material():
    registry = seeded()
    first = register(registry, "A")

    with pytest.raises(AlreadyRegistered):
        register(registry, "A")

    voter = registry.get(addr("A"))
    assert voter.stage == VoterStage.REGISTERED
    assert voter.secrets is first
    assert voter.registration.xG == first.xG


def test_secrets_unavailable_before_registration():
    registry = seeded()
    with pytest.raises(StageError):
        registry.get(addr("B")).secrets


def test_commitment_requires_registration():
    registry = seeded()
    with pytest.raises(StageError):
        registry.record_commitment(addr("A"), commitment_for("A"))


def test_commitment_recorded_once():
    registry = seeded()
    register(registry, "A")
    registry.record_commitment(addr("A"), commitment_for("A"))

    with pytest.raises(AlreadyCommitted):
        registry.record_commitment(addr("A"), commitment_for("A"))
    assert registry.get(addr("A")).stage == VoterStage.COMMITTED


def test_vote_cast_once_after_commitment():
    registry = seeded()
    register(registry, "A")
    with pytest.raises(StageError):
        registry.record_vote_cast(addr("A"))

    registry.record_commitment(addr("A"), commitment_for("A"))
    registry.record_vote_cast(addr("A"))
    with pytest.raises(AlreadyVoted):
        registry.record_vote_cast(addr("A"))


def test_delegated_commitment_keeps_owner_and_signer():
    registry = seeded(delegations=[("D", "E")])
    register(registry, "D")
    registry.record_delegation(addr("D"))
    registry.record_commitment(addr("D"), commitment_for("D", signer="E"))

    voter = registry.get(addr("D"))
    assert voter.delegation_confirmed
    assert voter.commitment.signer == addr("E")
    assert registry.get(addr("E")).stage == VoterStage.SEEDED


def test_record_delegation_requires_configured_delegation():
    registry = seeded()
    register(registry, "A")
    with pytest.raises(StageError):
        registry.record_delegation(addr("A"))


def test_branch_follows_owner_membership():
    registry = seeded(delegations=[("D", "E")], no_votes=["C", "D"])
    assert registry.branch_for(addr("A")) is VoteBranch.YES
    assert registry.branch_for(addr("C")) is VoteBranch.NO
    # D is a no-voter delegating to a yes-voter: D's ballot stays NO
    assert registry.branch_for(addr("D")) is VoteBranch.NO
    assert registry.branch_for(addr("E")) is VoteBranch.YES
    assert registry.branch_for(addr("D")) is VoteBranch.NO


def test_wipe_secrets_zeroes_scalars():
    registry = seeded()
    secrets = register(registry, "A")
    registry.wipe_secrets()

    assert secrets.x == 0 and secrets.v == 0 and secrets.d == 0
    with pytest.raises(StageError):
        registry.get(addr("A")).secrets


def test_summary_counts_stages():
    registry = seeded(delegations=[("D", "E")])
    register(registry, "A")
    summary = registry.summary()
    assert summary["SEEDED"] == 4
    assert summary["REGISTERED"] == 1
    assert summary["delegators"] == 1


def test_deadlines_must_increase():
    Deadlines(1, 2, 3, 4, 5)
    with pytest.raises(ConfigError):
        Deadlines(1, 2, 2, 4, 5)
    assert Deadlines.from_gap(100.7, 10).as_tuple() == (110, 120, 130, 140, 150)
