"""
accountlink.eip712 — Structured-data digest for association records.

Matches the associations store's on-chain verifier bit for bit:

    digest = keccak(0x1901 || domainSeparator || structHash)

The domain is the two-field ``EIP712Domain(string name,string version)``;
there is no chainId or verifyingContract, chain scoping lives inside the
interop-encoded parties instead.
"""

from __future__ import annotations

from typing import Optional

from eth_abi import decode, encode
from eth_utils import keccak

from accountlink.records import AssociationRecord, to_hex

DOMAIN_NAME = "AssociatedAccounts"
DOMAIN_VERSION = "1"

DOMAIN_TYPEHASH = keccak(text="EIP712Domain(string name,string version)")
RECORD_TYPEHASH = keccak(
    text=(
        "AssociatedAccountRecord(bytes initiator,bytes approver,uint40 validAt,"
        "uint40 validUntil,bytes4 interfaceId,bytes data)"
    )
)
DIGEST_PREFIX = b"\x19\x01"

DATA_TYPES = ["uint8", "string"]


def domain_separator(name: str = DOMAIN_NAME, version: str = DOMAIN_VERSION) -> bytes:
    return keccak(encode(
        ["bytes32", "bytes32", "bytes32"],
        [DOMAIN_TYPEHASH, keccak(text=name), keccak(text=version)],
    ))


def struct_hash(record: AssociationRecord) -> bytes:
    return keccak(encode(
        ["bytes32", "bytes32", "bytes32", "uint40", "uint40", "bytes4", "bytes32"],
        [
            RECORD_TYPEHASH,
            keccak(record.initiator),
            keccak(record.approver),
            record.valid_at,
            record.valid_until,
            record.interface_id,
            keccak(record.data),
        ],
    ))


def digest(separator: bytes, hashed_struct: bytes) -> bytes:
    if len(separator) != 32 or len(hashed_struct) != 32:
        raise ValueError("domain separator and struct hash must be 32 bytes each")
    return keccak(DIGEST_PREFIX + separator + hashed_struct)


def encode_association_data(assoc_type: int, description: str) -> bytes:
    """ABI-encode the ``(uint8 assocType, string description)`` payload."""
    return encode(DATA_TYPES, [assoc_type, description])


def decode_association_data(data: bytes) -> tuple[int, str]:
    """Inverse of ``encode_association_data``; raises ``ValueError`` on junk."""
    try:
        assoc_type, description = decode(DATA_TYPES, data)
    except Exception as e:
        raise ValueError(f"data is not (uint8, string): {e}") from e
    return int(assoc_type), description


class DigestComputer:
    """Digest functions bound to one EIP-712 domain."""

    def __init__(self, name: str = DOMAIN_NAME, version: str = DOMAIN_VERSION):
        self.name = name
        self.version = version
        self.domain_separator = domain_separator(name, version)

    def struct_hash(self, record: AssociationRecord) -> bytes:
        return struct_hash(record)

    def record_digest(self, record: AssociationRecord) -> bytes:
        return digest(self.domain_separator, struct_hash(record))

    def association_id(self, record: AssociationRecord) -> str:
        """The store keys records by their digest."""
        return to_hex(self.record_digest(record))

    def typed_data(self, record: AssociationRecord, primary_type: Optional[str] = None) -> dict:
        """EIP-712 JSON description handed to typed-data wallet methods."""
        return {
            "types": {
                "EIP712Domain": [
                    {"name": "name", "type": "string"},
                    {"name": "version", "type": "string"},
                ],
                "AssociatedAccountRecord": [
                    {"name": "initiator", "type": "bytes"},
                    {"name": "approver", "type": "bytes"},
                    {"name": "validAt", "type": "uint40"},
                    {"name": "validUntil", "type": "uint40"},
                    {"name": "interfaceId", "type": "bytes4"},
                    {"name": "data", "type": "bytes"},
                ],
            },
            "primaryType": primary_type or "AssociatedAccountRecord",
            "domain": {"name": self.name, "version": self.version},
            "message": record.to_dict(),
        }
