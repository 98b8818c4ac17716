"""
accountlink.handshake — Two-party association handshake.

Initiator side:
1. Build the record, digest it, sign it with the connected wallet
2. If the declared initiator is a contract that rejects the signature,
   substitute its controlling EOA and sign once more
3. Self-association: reuse the signature as approver's and submit
   Otherwise: deliver a HandshakeEnvelope to the approver

Approver side:
4. Parse the envelope, recompute the digest (never trust the delivered one)
5. Sign as approver, preferring the initiator's method
6. Submit both signatures

States:
    DRAFTED → INITIATOR_SIGNED → FINALIZED | DELIVERED
    DELIVERED → APPROVER_REVIEWING → APPROVER_SIGNED → FINALIZED
    any non-terminal → FAILED

Usage:
    orchestrator = HandshakeOrchestrator(config, reader, finalizer, messenger)
    hs = await orchestrator.initiate(AssociationRequest(...), wallet)
    # ... on the approver's side, with the delivered message:
    hs = await orchestrator.approve(message, wallet)
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Union

from eth_utils import to_checksum_address

from accountlink.config import AssociationConfig
from accountlink.eip712 import DigestComputer, encode_association_data
from accountlink.envelope import HandshakeEnvelope
from accountlink.errors import (
    AssociationError, DigestMismatch, FailureTag, InvalidPayload, OnChainVerificationFailed,
    SigningExhausted, SubmissionFailed, WalletNotConnected,
)
from accountlink.finalizer import AssociationFinalizer, SubmissionMode
from accountlink.logs import handshake_id_var, short_hex
from accountlink.records import AssociationRecord, AssociationRecordBuilder, SignedAssociationRecord
from accountlink.signing import SignatureNegotiator, SigningMethod, Wallet, connected_account
from accountlink.verifier import ChainReader, ContractSignatureVerifier, is_contract

logger = logging.getLogger(__name__)

# Keeps validAt behind the chain's block timestamp despite clock skew.
VALID_AT_SKEW_S = 10


class HandshakeState(str, Enum):
    DRAFTED = "drafted"
    INITIATOR_SIGNED = "initiator_signed"
    DELIVERED = "delivered"
    APPROVER_REVIEWING = "approver_reviewing"
    APPROVER_SIGNED = "approver_signed"
    FINALIZED = "finalized"
    FAILED = "failed"


TRANSITIONS: dict[HandshakeState, frozenset[HandshakeState]] = {
    HandshakeState.DRAFTED: frozenset({HandshakeState.INITIATOR_SIGNED}),
    HandshakeState.INITIATOR_SIGNED: frozenset({HandshakeState.FINALIZED, HandshakeState.DELIVERED}),
    HandshakeState.DELIVERED: frozenset({HandshakeState.APPROVER_REVIEWING}),
    HandshakeState.APPROVER_REVIEWING: frozenset({HandshakeState.APPROVER_SIGNED}),
    HandshakeState.APPROVER_SIGNED: frozenset({HandshakeState.FINALIZED}),
    HandshakeState.FINALIZED: frozenset(),
    HandshakeState.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset({HandshakeState.FINALIZED, HandshakeState.FAILED})


class Messenger(Protocol):
    """Opaque delivery channel between the two parties."""

    async def send_message(self, recipient_did: str, message: dict) -> Any:
        ...


@dataclass
class Handshake:
    """One association attempt between two parties."""
    handshake_id: str
    chain_id: int = 0
    initiator_did: str = ""
    approver_did: str = ""
    initiator_address: str = ""
    approver_address: str = ""
    state: HandshakeState = HandshakeState.DRAFTED
    signed: Optional[SignedAssociationRecord] = None
    outcome: Optional["InitiatorOutcome"] = None
    envelope: Optional[HandshakeEnvelope] = None
    operation_id: Optional[str] = None
    failure: Optional[FailureTag] = None
    failure_message: str = ""
    history: list[HandshakeState] = field(default_factory=list)

    def __post_init__(self):
        if not self.history:
            self.history.append(self.state)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: HandshakeState) -> None:
        allowed = TRANSITIONS[self.state]
        if new_state is HandshakeState.FAILED and not self.is_terminal:
            allowed = allowed | {HandshakeState.FAILED}
        if new_state not in allowed:
            raise ValueError(f"illegal transition {self.state.value} -> {new_state.value}")
        logger.debug("Handshake %s: %s -> %s", self.handshake_id, self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)

    def fail(self, error: Exception) -> None:
        """Record a terminal failure; errors outside the taxonomy carry no tag."""
        self.failure = getattr(error, "tag", None)
        self.failure_message = getattr(error, "message", None) or str(error)
        logger.warning("Handshake %s failed in %s: %s (%s)", self.handshake_id, self.state.value,
                       self.failure.value if self.failure else type(error).__name__, self.failure_message)
        self.transition(HandshakeState.FAILED)

    def to_dict(self) -> dict:
        return {
            "handshake_id": self.handshake_id,
            "chain_id": self.chain_id,
            "initiator_did": self.initiator_did,
            "approver_did": self.approver_did,
            "initiator_address": self.initiator_address,
            "approver_address": self.approver_address,
            "state": self.state.value,
            "history": [s.value for s in self.history],
            "operation_id": self.operation_id,
            "failure": self.failure.value if self.failure else None,
            "failure_message": self.failure_message,
            "signed": self.signed.to_dict() if self.signed else None,
        }


class OutcomeKind(str, Enum):
    SUCCEEDED_AS_DECLARED = "succeeded-as-declared"
    SUCCEEDED_AS_SUBSTITUTED = "succeeded-as-substituted"
    FAILED = "failed"


@dataclass(frozen=True)
class InitiatorOutcome:
    """Result of the initiator signing step, substitution included."""
    kind: OutcomeKind
    declared_address: str
    attempted_digest: bytes
    signed: Optional[SignedAssociationRecord] = None
    error: Optional[AssociationError] = None

    @property
    def substituted(self) -> bool:
        return self.kind is OutcomeKind.SUCCEEDED_AS_SUBSTITUTED


@dataclass
class AssociationRequest:
    """What the initiator asks for."""
    chain_id: int
    initiator_did: str
    approver_did: str
    initiator_address: str
    approver_address: str
    assoc_type: int = 1
    description: str = ""
    valid_at: Optional[int] = None
    valid_until: int = 0
    interface_id: str = "0x00000000"
    preferred_method: Optional[SigningMethod] = None

    def __post_init__(self):
        self.initiator_address = to_checksum_address(self.initiator_address)
        self.approver_address = to_checksum_address(self.approver_address)

    @property
    def data(self) -> bytes:
        return encode_association_data(self.assoc_type, self.description)


def _handshake_id(a: str, b: str) -> str:
    return hashlib.sha256(f"{a}:{b}:{time.time_ns()}".encode()).hexdigest()[:16]


class HandshakeOrchestrator:
    """Drives handshakes for one party; safe to share across concurrent handshakes."""

    def __init__(
        self,
        config: AssociationConfig,
        reader: ChainReader,
        finalizer: AssociationFinalizer,
        messenger: Optional[Messenger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.reader = reader
        self.finalizer = finalizer
        self.messenger = messenger
        self.clock = clock
        self.digests = DigestComputer(config.domain_name, config.domain_version)
        self.verifier = ContractSignatureVerifier(reader)

    # ─── Initiator side ───────────────────────────────────────────

    async def initiate(self, request: AssociationRequest, wallet: Wallet) -> Handshake:
        hs = Handshake(
            handshake_id=_handshake_id(request.initiator_did, request.approver_did),
            chain_id=request.chain_id,
            initiator_did=request.initiator_did,
            approver_did=request.approver_did,
            initiator_address=request.initiator_address,
            approver_address=request.approver_address,
        )
        token = handshake_id_var.set(hs.handshake_id)
        try:
            signer = await connected_account(wallet)
            negotiator = SignatureNegotiator(wallet, self.config.signing_policy)

            outcome = await self.sign_as_initiator(request, signer, negotiator)
            hs.outcome = outcome
            if outcome.kind is OutcomeKind.FAILED:
                hs.fail(outcome.error)
                return hs

            signed = outcome.signed
            hs.signed = signed
            hs.initiator_address = signed.initiator_address
            hs.transition(HandshakeState.INITIATOR_SIGNED)

            if signed.is_self_association:
                # One prompt only: the approver is the initiator.
                signed.attach_approver_signature(signed.initiator_signature)
                mode = await self._submission_mode(request.chain_id, signed.initiator_address)
                hs.operation_id = await self.finalizer.finalize(signed, mode, sender=signed.initiator_address)
                hs.transition(HandshakeState.FINALIZED)
                return hs

            if self.messenger is None:
                raise RuntimeError("two-party association needs a messenger")
            envelope = HandshakeEnvelope.from_signed(
                signed,
                chain_id=request.chain_id,
                initiator_did=request.initiator_did,
                approver_did=request.approver_did,
                assoc_type=request.assoc_type,
                description=request.description,
            )
            await self.messenger.send_message(request.approver_did, envelope.to_message())
            hs.envelope = envelope
            hs.transition(HandshakeState.DELIVERED)
        except AssociationError as e:
            hs.fail(e)
        except Exception as e:
            hs.fail(e)
            raise
        finally:
            handshake_id_var.reset(token)
        return hs

    async def sign_as_initiator(
        self,
        request: AssociationRequest,
        signer: str,
        negotiator: SignatureNegotiator,
    ) -> InitiatorOutcome:
        """Sign the draft, substituting the controlling EOA once if needed."""
        declared = request.initiator_address
        builder = AssociationRecordBuilder(request.chain_id)
        valid_at = request.valid_at if request.valid_at is not None else max(0, int(self.clock()) - VALID_AT_SKEW_S)

        def draft(initiator: str) -> AssociationRecord:
            return builder.build(
                initiator,
                request.approver_address,
                data=request.data,
                valid_at=valid_at,
                valid_until=request.valid_until,
                interface_id=request.interface_id,
            )

        record = draft(declared)
        digest = self.digests.record_digest(record)

        try:
            declared_is_contract = await self._code_at(request.chain_id, declared, OnChainVerificationFailed)
            if not declared_is_contract and declared != signer:
                raise WalletNotConnected(f"connected account {signer} cannot sign for {declared}")

            signature, method = await negotiator.sign(
                signer, digest, self.digests.typed_data(record), request.preferred_method,
            )
            if not declared_is_contract or await self.verifier.is_valid(
                request.chain_id, declared, digest, signature
            ):
                return InitiatorOutcome(
                    kind=OutcomeKind.SUCCEEDED_AS_DECLARED,
                    declared_address=declared,
                    attempted_digest=digest,
                    signed=self._signed(record, declared, request.approver_address, digest, signature, method),
                )

            logger.warning("Contract %s rejected signature from %s; substituting controlling EOA",
                           declared, signer)
            substitute = draft(signer)
            substitute_digest = self.digests.record_digest(substitute)
            signature, method = await negotiator.sign(
                signer, substitute_digest, self.digests.typed_data(substitute), method,
            )
            if not await self.verifier.verify_any(request.chain_id, signer, substitute_digest, signature):
                raise OnChainVerificationFailed(
                    f"signature rejected for {declared} and for substitute {signer}"
                )
            return InitiatorOutcome(
                kind=OutcomeKind.SUCCEEDED_AS_SUBSTITUTED,
                declared_address=declared,
                attempted_digest=digest,
                signed=self._signed(substitute, signer, request.approver_address,
                                    substitute_digest, signature, method),
            )
        except AssociationError as e:
            return InitiatorOutcome(
                kind=OutcomeKind.FAILED,
                declared_address=declared,
                attempted_digest=digest,
                error=e,
            )

    # ─── Approver side ────────────────────────────────────────────

    async def approve(
        self,
        message: Union[dict, str, bytes, None],
        wallet: Wallet,
        preferred_method: Optional[SigningMethod] = None,
    ) -> Handshake:
        hs = Handshake(handshake_id=_handshake_id("approver", str(id(message))), state=HandshakeState.DELIVERED)
        token = handshake_id_var.set(hs.handshake_id)
        try:
            envelope = HandshakeEnvelope.parse(message)
            hs.envelope = envelope
            hs.chain_id = envelope.chain_id
            hs.initiator_did = envelope.initiator_did
            hs.approver_did = envelope.approver_did
            hs.initiator_address = envelope.initiator_address
            hs.approver_address = envelope.approver_address
            hs.transition(HandshakeState.APPROVER_REVIEWING)

            try:
                record = envelope.record()
            except ValueError as e:
                raise InvalidPayload(f"envelope does not describe a record: {e}") from e
            digest = self.digests.record_digest(record)
            if digest != envelope.digest_bytes:
                raise DigestMismatch("0x" + digest.hex(), envelope.digest)

            if not await self.verifier.verify_any(
                envelope.chain_id, envelope.initiator_address, digest, envelope.signature_bytes
            ):
                raise OnChainVerificationFailed(
                    f"initiator signature does not validate for {envelope.initiator_address}"
                )

            signer = await connected_account(wallet)
            approver_is_contract = await self._code_at(
                envelope.chain_id, envelope.approver_address, OnChainVerificationFailed,
            )
            if not approver_is_contract and envelope.approver_address != signer:
                raise WalletNotConnected(
                    f"connected account {signer} cannot sign for {envelope.approver_address}"
                )

            negotiator = SignatureNegotiator(wallet, self.config.signing_policy)
            typed = self.digests.typed_data(record)
            signature, method = await self._sign_as_approver(
                negotiator, signer, digest, typed, preferred_method or envelope.signature_method,
            )
            await self._check_approver(envelope, approver_is_contract, digest, signature)

            signed = SignedAssociationRecord(
                record=record,
                initiator_address=envelope.initiator_address,
                approver_address=envelope.approver_address,
                digest=digest,
                initiator_signature=envelope.signature_bytes,
                signature_method=envelope.signature_method.value,
            )
            signed.attach_approver_signature(signature)
            hs.signed = signed
            hs.transition(HandshakeState.APPROVER_SIGNED)

            mode = SubmissionMode.SMART_ACCOUNT_RELAY if approver_is_contract else SubmissionMode.EOA_DIRECT
            try:
                hs.operation_id = await self.finalizer.finalize(signed, mode, sender=envelope.approver_address)
            except SubmissionFailed as e:
                if e.duplicate or preferred_method is not None:
                    raise
                logger.warning("Submission failed (%s); re-signing with an alternate method", e.message)
                alternate = self.config.signing_policy.alternate(method)
                signature, method = await negotiator.sign(signer, digest, typed, alternate)
                await self._check_approver(envelope, approver_is_contract, digest, signature)
                signed = SignedAssociationRecord(
                    record=record,
                    initiator_address=envelope.initiator_address,
                    approver_address=envelope.approver_address,
                    digest=digest,
                    initiator_signature=envelope.signature_bytes,
                    signature_method=envelope.signature_method.value,
                )
                signed.attach_approver_signature(signature)
                hs.signed = signed
                hs.operation_id = await self.finalizer.finalize(signed, mode, sender=envelope.approver_address)

            hs.transition(HandshakeState.FINALIZED)
        except AssociationError as e:
            hs.fail(e)
        except Exception as e:
            hs.fail(e)
            raise
        finally:
            handshake_id_var.reset(token)
        return hs

    async def _sign_as_approver(
        self,
        negotiator: SignatureNegotiator,
        signer: str,
        digest: bytes,
        typed: dict,
        preferred: SigningMethod,
    ) -> tuple[bytes, SigningMethod]:
        try:
            return await negotiator.sign(signer, digest, typed, preferred)
        except SigningExhausted as e:
            alternate = self.config.signing_policy.alternate(preferred)
            logger.info("Approver signing exhausted (%s); retrying with %s first", e.message, alternate.value)
            return await negotiator.sign(signer, digest, typed, alternate)

    async def _check_approver(self, envelope: HandshakeEnvelope, is_contract_account: bool,
                              digest: bytes, signature: bytes) -> None:
        if not is_contract_account:
            return
        if not await self.verifier.is_valid(envelope.chain_id, envelope.approver_address, digest, signature):
            raise OnChainVerificationFailed(
                f"approver contract {envelope.approver_address} rejected signature over {short_hex(digest)}"
            )

    # ─── helpers ─────────────────────────────────────────────────

    async def _code_at(self, chain_id: int, address: str, error: type[AssociationError]) -> bool:
        """Whether ``address`` has code; a failed lookup ends the handshake with ``error``."""
        try:
            return await is_contract(self.reader, chain_id, address)
        except Exception as e:
            raise error(f"could not read code at {address} on chain {chain_id}: {e}") from e

    async def _submission_mode(self, chain_id: int, sender: str) -> SubmissionMode:
        if await self._code_at(chain_id, sender, SubmissionFailed):
            return SubmissionMode.SMART_ACCOUNT_RELAY
        return SubmissionMode.EOA_DIRECT

    def _signed(self, record: AssociationRecord, initiator: str, approver: str, digest: bytes,
                signature: bytes, method: SigningMethod) -> SignedAssociationRecord:
        return SignedAssociationRecord(
            record=record,
            initiator_address=initiator,
            approver_address=approver,
            digest=digest,
            initiator_signature=signature,
            signature_method=method.value,
        )
