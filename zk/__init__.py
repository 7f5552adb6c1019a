"""
Zero-Knowledge Proof Module for the Self-Tallying Election
Key-knowledge and 1-out-of-2 ballot proofs over secp256k1
"""

from .zk_proofs import (
    # Curve
    Secp256k1,
    Point,
    generate_voting_key,
    random_scalar,

    # Proof artifacts
    VoteBranch,
    KnowledgeProof,
    DisjunctiveProof,

    # Services
    CryptoService,
    LocalCryptoService,
)

__all__ = [
    'Secp256k1',
    'Point',
    'generate_voting_key',
    'random_scalar',

    'VoteBranch',
    'KnowledgeProof',
    'DisjunctiveProof',

    'CryptoService',
    'LocalCryptoService',
]
