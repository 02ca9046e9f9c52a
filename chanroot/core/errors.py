"""
Error taxonomy for the Merkle membership engine.

Every failure that aborts a mutation is raised as a subclass of
ChanrootError carrying a machine-readable code and a details dict, so that
callers can tell which precondition or invariant failed without parsing
messages.

Errors that leave the local index out of step with the external verifier
(RootMismatch, LocalCommitFailed) put the channel into a resync-required
state; see ChannelManager.resync.
"""

from typing import Any, Dict, Optional


class ChanrootError(Exception):
    """Base error with a stable code and structured details."""

    code = "CHANROOT_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


# =============================================================================
# Input Errors
# =============================================================================


class InvalidTokenNumber(ChanrootError):
    """Token number is not a strictly positive integer."""

    code = "INVALID_TOKEN_NUMBER"


class InvalidChannelId(ChanrootError):
    """Channel id cannot be encoded canonically."""

    code = "INVALID_CHANNEL_ID"


# =============================================================================
# Lifecycle Errors
# =============================================================================


class DuplicateChannel(ChanrootError):
    """Channel is already active."""

    code = "DUPLICATE_CHANNEL"


class ChannelNotFound(ChanrootError):
    """Channel has never been created."""

    code = "CHANNEL_NOT_FOUND"


# =============================================================================
# Membership Errors
# =============================================================================


class LeafNotFound(ChanrootError):
    """Proof requested for a leaf that is not in the set."""

    code = "LEAF_NOT_FOUND"


class StaleProof(ChanrootError):
    """Proof was generated against a root that is no longer committed."""

    code = "STALE_PROOF"


# =============================================================================
# Commit Errors
# =============================================================================


class RootMismatch(ChanrootError):
    """Local committed root diverges from the external authoritative root."""

    code = "ROOT_MISMATCH"


class VerifierRejected(ChanrootError):
    """External verifier refused (or never answered) a submission."""

    code = "VERIFIER_REJECTED"


class LocalCommitFailed(ChanrootError):
    """Verifier accepted the update but the local index could not be written."""

    code = "LOCAL_COMMIT_FAILED"


class OwnershipViolation(ChanrootError):
    """Mutation attempted without valid proof of current ownership."""

    code = "OWNERSHIP_VIOLATION"


class InvalidOwner(ChanrootError):
    """Owner or receiver is not a valid address."""

    code = "INVALID_OWNER"
