import pytest

from utils.errors import ProofError
from zk.zk_proofs import (DisjunctiveProof, KnowledgeProof, LocalCryptoService, Secp256k1,
                          VoteBranch, generate_voting_key, random_scalar)


curve = Secp256k1


def reconstructed_keys(keys):
    """yG_i = sum of keys before i minus sum of keys after i"""
    result = []
    for i in range(len(keys)):
        before = None
        for key in keys[:i]:
            before = curve.add(before, key)
        after = None
        for key in keys[i + 1:]:
            after = curve.add(after, key)
        result.append(curve.add(before, curve.negate(after)))
    return result


def test_curve_group_laws():
    G = curve.G
    assert curve.is_on_curve(G)
    assert curve.multiply(G, curve.N) is None
    assert curve.add(G, curve.negate(G)) is None
    assert curve.add(G, G) == curve.multiply(G, 2)
    assert curve.add(curve.multiply(G, 3), curve.multiply(G, 4)) == curve.multiply(G, 7)


def test_from_jacobian_matches_affine():
    point = curve.multiply(curve.G, 12345)
    z = 987654321
    jacobian = (point[0] * z * z % curve.P, point[1] * z * z * z % curve.P, z)
    assert curve.from_jacobian(*jacobian) == point
    assert curve.from_jacobian(1, 1, 0) is None


def test_generated_key_matches_scalar():
    x, xG = generate_voting_key()
    assert 0 < x < curve.N
    assert curve.multiply(curve.G, x) == xG
    assert 0 < random_scalar() < curve.N


def test_knowledge_proof_verifies():
    service = LocalCryptoService()
    x, xG = generate_voting_key()
    proof = service.prove_knowledge(x, random_scalar(), xG, "0xabc")

    assert isinstance(proof, KnowledgeProof)
    assert service.check_knowledge(xG, proof, proof.vG, "0xabc")


def test_knowledge_proof_fails_for_tampered_key():
    service = LocalCryptoService()
    x, xG = generate_voting_key()
    _, other = generate_voting_key()
    proof = service.prove_knowledge(x, random_scalar(), xG, "0xabc")

    assert not service.check_knowledge(other, proof, proof.vG, "0xabc")


def test_knowledge_proof_is_bound_to_owner():
    service = LocalCryptoService()
    x, xG = generate_voting_key()
    proof = service.prove_knowledge(x, random_scalar(), xG, "0xabc")

    assert not service.check_knowledge(xG, proof, proof.vG, "0xdef")


def test_knowledge_proof_rejects_zero_blind():
    service = LocalCryptoService()
    x, xG = generate_voting_key()
    with pytest.raises(ProofError):
        service.prove_knowledge(x, 0, xG, "0xabc")


@pytest.fixture(scope="module")
def election_keys():
    secrets = [generate_voting_key() for _ in range(3)]
    keys = [xG for _, xG in secrets]
    return secrets, reconstructed_keys(keys)


def test_reconstructed_keys_cancel(election_keys):
    secrets, yGs = election_keys
    total = None
    for (x, _), yG in zip(secrets, yGs):
        total = curve.add(total, curve.multiply(yG, x))
    assert total is None


@pytest.mark.parametrize("branch", [VoteBranch.YES, VoteBranch.NO])
def test_both_branches_verify_with_the_same_check(election_keys, branch):
    service = LocalCryptoService()
    secrets, yGs = election_keys
    x, xG = secrets[1]
    w, r, d = random_scalar(), random_scalar(), random_scalar()

    proof = service.prove_disjunctive(xG, yGs[1], w, r, d, x, branch, 1)

    assert service.check_disjunctive(proof, xG, yGs[1], 1)
    expected_y = curve.multiply(yGs[1], x)
    if branch is VoteBranch.YES:
        expected_y = curve.add(expected_y, curve.G)
    assert proof.y == expected_y


def test_branches_have_the_same_shape(election_keys):
    service = LocalCryptoService()
    secrets, yGs = election_keys
    x, xG = secrets[0]
    w, r, d = random_scalar(), random_scalar(), random_scalar()

    yes = service.prove_disjunctive(xG, yGs[0], w, r, d, x, VoteBranch.YES, 0)
    no = service.prove_disjunctive(xG, yGs[0], w, r, d, x, VoteBranch.NO, 0)

    for proof in (yes, no):
        assert len(proof.params) == 4
        assert all(isinstance(v, int) and 0 <= v < curve.N for v in proof.params)
        assert all(curve.is_on_curve(p) for p in proof.points)
        assert [len(a) for a in proof.to_contract_args()] == [4, 2, 2, 2, 2, 2]


def test_disjunctive_proof_is_bound_to_index(election_keys):
    service = LocalCryptoService()
    secrets, yGs = election_keys
    x, xG = secrets[2]
    proof = service.prove_disjunctive(xG, yGs[2], random_scalar(), random_scalar(),
                                      random_scalar(), x, VoteBranch.YES, 2)

    assert service.check_disjunctive(proof, xG, yGs[2], 2)
    assert not service.check_disjunctive(proof, xG, yGs[2], 1)


def test_tampered_disjunctive_proof_fails(election_keys):
    service = LocalCryptoService()
    secrets, yGs = election_keys
    x, xG = secrets[0]
    proof = service.prove_disjunctive(xG, yGs[0], random_scalar(), random_scalar(),
                                      random_scalar(), x, VoteBranch.NO, 0)
    d1, d2, r1, r2 = proof.params
    forged = DisjunctiveProof(((d1 + 1) % curve.N, (d2 - 1) % curve.N, r1, r2),
                              proof.y, proof.a1, proof.b1, proof.a2, proof.b2)

    assert not service.check_disjunctive(forged, xG, yGs[0], 0)


def test_commitment_hash_binds_the_proof(election_keys):
    service = LocalCryptoService()
    secrets, yGs = election_keys
    x, xG = secrets[1]
    args = (xG, yGs[1], random_scalar(), random_scalar(), random_scalar(), x)
    yes = service.prove_disjunctive(*args, VoteBranch.YES, 1)
    no = service.prove_disjunctive(*args, VoteBranch.NO, 1)

    digest = service.hash_commitment(yes, xG, yGs[1])
    assert isinstance(digest, bytes) and len(digest) == 32
    assert digest == service.hash_commitment(yes, xG, yGs[1])
    assert digest != service.hash_commitment(no, xG, yGs[1])


def test_contract_output_decoding():
    coords = list(range(1, 11))
    proof = DisjunctiveProof.from_contract_output((coords, [11, 12, 13, 14]))
    assert proof.params == (11, 12, 13, 14)
    assert proof.y == (1, 2)
    assert proof.b2 == (9, 10)
