"""accountlink — Cross-account association handshakes for EVM accounts."""

from accountlink.interop import InteropAddress, encode as encode_interop, try_parse as parse_interop
from accountlink.eip712 import (
    DigestComputer, domain_separator, struct_hash, digest,
    encode_association_data, decode_association_data,
)
from accountlink.records import (
    AssociationRecord, AssociationRecordBuilder, SignedAssociationRecord, KEY_TYPE_K1,
)
from accountlink.errors import (
    FailureTag, AssociationError, WalletNotConnected, SigningExhausted,
    OnChainVerificationFailed, DigestMismatch, InvalidPayload, SubmissionFailed,
)
from accountlink.signing import (
    SigningMethod, SigningPolicy, SignatureNegotiator,
    LocalAccountWallet, WalletRequestError, recover_signer,
)
from accountlink.config import AssociationConfig, ChainConfig
from accountlink.verifier import ContractSignatureVerifier, Web3ChainReader
from accountlink.store import (
    AssociationsStoreClient, encode_store_association,
    encode_revoke_association, encode_update_association_signatures,
)
from accountlink.finalizer import (
    AssociationFinalizer, SubmissionMode, RelaySubmitter, WalletTransactionSender,
)
from accountlink.envelope import HandshakeEnvelope
from accountlink.handshake import (
    Handshake, HandshakeState, HandshakeOrchestrator,
    AssociationRequest, InitiatorOutcome, OutcomeKind,
)

__all__ = [
    "InteropAddress",
    "encode_interop",
    "parse_interop",
    "DigestComputer",
    "domain_separator",
    "struct_hash",
    "digest",
    "encode_association_data",
    "decode_association_data",
    "AssociationRecord",
    "AssociationRecordBuilder",
    "SignedAssociationRecord",
    "KEY_TYPE_K1",
    "FailureTag",
    "AssociationError",
    "WalletNotConnected",
    "SigningExhausted",
    "OnChainVerificationFailed",
    "DigestMismatch",
    "InvalidPayload",
    "SubmissionFailed",
    "SigningMethod",
    "SigningPolicy",
    "SignatureNegotiator",
    "LocalAccountWallet",
    "WalletRequestError",
    "recover_signer",
    "AssociationConfig",
    "ChainConfig",
    "ContractSignatureVerifier",
    "Web3ChainReader",
    "AssociationsStoreClient",
    "encode_store_association",
    "encode_revoke_association",
    "encode_update_association_signatures",
    "AssociationFinalizer",
    "SubmissionMode",
    "RelaySubmitter",
    "WalletTransactionSender",
    "HandshakeEnvelope",
    "Handshake",
    "HandshakeState",
    "HandshakeOrchestrator",
    "AssociationRequest",
    "InitiatorOutcome",
    "OutcomeKind",
]
