"""Commitment, channel state machine and verifier boundary"""
from chanroot.core.encoding import TokenId, encode, leaf_digest, leaf_digests
from chanroot.core.merkle import (
    EMPTY_ROOT,
    MerkleProof,
    MerkleTree,
    ProofStep,
    build_root,
    generate_proof,
    verify_path,
    verify_proof,
)
from chanroot.core.verifier import ExternalVerifier, LedgerVerifier, RootUpdate, UpdateKind
from chanroot.core.channel import Channel, ChannelManager, ChannelState

__all__ = [
    "TokenId",
    "encode",
    "leaf_digest",
    "leaf_digests",
    "EMPTY_ROOT",
    "MerkleProof",
    "MerkleTree",
    "ProofStep",
    "build_root",
    "generate_proof",
    "verify_path",
    "verify_proof",
    "ExternalVerifier",
    "LedgerVerifier",
    "RootUpdate",
    "UpdateKind",
    "Channel",
    "ChannelManager",
    "ChannelState",
]
