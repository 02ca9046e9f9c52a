"""
Channel Root Protocol (chanroot)

A Merkle membership engine for NFT channels:
- Set-commitment Merkle roots over issued token ids
- Per-channel state machine committing roots to an external verifier
- Membership proofs checkable without the full token set
- Persistent SQLite index of leaf sets and owners
"""
