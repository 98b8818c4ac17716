"""accountlink.errors — Failure taxonomy for the association handshake.

Every error the protocol can surface carries a ``FailureTag`` so a failed
handshake can record *why* it stopped without keeping the exception around.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class FailureTag(str, Enum):
    WALLET_NOT_CONNECTED = "WalletNotConnected"
    SIGNING_EXHAUSTED = "SigningExhausted"
    ONCHAIN_VERIFICATION_FAILED = "OnChainVerificationFailed"
    DIGEST_MISMATCH = "DigestMismatch"
    INVALID_PAYLOAD = "InvalidPayload"
    SUBMISSION_FAILED = "SubmissionFailed"


class AssociationError(Exception):
    """Base class for protocol failures that end a handshake."""

    tag: FailureTag

    def __init__(self, message: str = ""):
        self.message = message or self.tag.value
        super().__init__(self.message)


class WalletNotConnected(AssociationError):
    """No account is available to sign, or it does not control the party."""
    tag = FailureTag.WALLET_NOT_CONNECTED


class SigningExhausted(AssociationError):
    """Every candidate signing method failed."""
    tag = FailureTag.SIGNING_EXHAUSTED

    def __init__(self, message: str = "", last_error: Optional[BaseException] = None):
        self.last_error = last_error
        if not message:
            message = "all signing methods failed"
            if last_error is not None:
                message = f"{message}: {last_error}"
        super().__init__(message)


class OnChainVerificationFailed(AssociationError):
    tag = FailureTag.ONCHAIN_VERIFICATION_FAILED


class DigestMismatch(AssociationError):
    """Recomputed digest differs from the one delivered in the envelope."""
    tag = FailureTag.DIGEST_MISMATCH

    def __init__(self, expected: str, delivered: str):
        self.expected = expected
        self.delivered = delivered
        super().__init__(f"digest mismatch: recomputed {expected}, delivered {delivered}")


class InvalidPayload(AssociationError):
    tag = FailureTag.INVALID_PAYLOAD


class SubmissionFailed(AssociationError):
    """The relay or RPC node rejected the finalize call."""
    tag = FailureTag.SUBMISSION_FAILED

    def __init__(self, message: str = "", duplicate: bool = False, status: Optional[int] = None):
        self.duplicate = duplicate
        self.status = status
        super().__init__(message or ("duplicate submission" if duplicate else "submission rejected"))
