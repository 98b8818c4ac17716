"""
accountlink.records — Association records and their signed form.

An AssociationRecord is what both parties sign; a SignedAssociationRecord is
the record plus the signatures and the plain addresses they were produced
for, which is what the associations store accepts.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional, Union

from eth_utils import to_bytes, to_checksum_address

from accountlink import interop
from accountlink.interop import AddressLike

KEY_TYPE_K1 = b"\x00\x01"

DEFAULT_INTERFACE_ID = b"\x00\x00\x00\x00"
MAX_UINT40 = (1 << 40) - 1


def hex_bytes(value: Union[str, bytes, None]) -> bytes:
    """Accept ``0x``-hex or raw bytes; ``None`` and ``"0x"`` become ``b""``."""
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return to_bytes(hexstr=value)


def to_hex(value: bytes) -> str:
    return "0x" + value.hex()


@dataclass(frozen=True)
class AssociationRecord:
    """The typed struct hashed under the ``AssociatedAccountRecord`` type."""
    initiator: bytes
    approver: bytes
    valid_at: int
    valid_until: int = 0
    interface_id: bytes = DEFAULT_INTERFACE_ID
    data: bytes = b""

    def __post_init__(self):
        for name in ("valid_at", "valid_until"):
            value = getattr(self, name)
            if not 0 <= value <= MAX_UINT40:
                raise ValueError(f"{name} out of uint40 range: {value}")
        if self.valid_until != 0 and self.valid_until < self.valid_at:
            raise ValueError(
                f"valid_until ({self.valid_until}) precedes valid_at ({self.valid_at})"
            )
        if len(self.interface_id) != 4:
            raise ValueError(f"interface_id must be 4 bytes, got {len(self.interface_id)}")

    @property
    def initiator_address(self) -> Optional[interop.InteropAddress]:
        return interop.try_parse(self.initiator)

    @property
    def approver_address(self) -> Optional[interop.InteropAddress]:
        return interop.try_parse(self.approver)

    def to_dict(self) -> dict:
        return {
            "initiator": to_hex(self.initiator),
            "approver": to_hex(self.approver),
            "validAt": self.valid_at,
            "validUntil": self.valid_until,
            "interfaceId": to_hex(self.interface_id),
            "data": to_hex(self.data),
        }

    def as_tuple(self) -> tuple:
        """ABI tuple order used by the store contract."""
        return (
            self.initiator,
            self.approver,
            self.valid_at,
            self.valid_until,
            self.interface_id,
            self.data,
        )


class AssociationRecordBuilder:
    """Builds draft records for a chain; both parties are interop-encoded."""

    def __init__(self, chain_id: int):
        self.chain_id = chain_id

    def build(
        self,
        initiator: AddressLike,
        approver: AddressLike,
        data: bytes = b"",
        valid_at: Optional[int] = None,
        valid_until: int = 0,
        interface_id: Union[str, bytes] = DEFAULT_INTERFACE_ID,
    ) -> AssociationRecord:
        return AssociationRecord(
            initiator=interop.encode(self.chain_id, initiator),
            approver=interop.encode(self.chain_id, approver),
            valid_at=int(time.time()) if valid_at is None else valid_at,
            valid_until=valid_until,
            interface_id=hex_bytes(interface_id),
            data=data,
        )


@dataclass
class SignedAssociationRecord:
    """Record plus signatures. Only ``approver_signature`` may be appended."""
    record: AssociationRecord
    initiator_address: str
    approver_address: str
    digest: bytes
    initiator_signature: bytes
    signature_method: str
    approver_signature: bytes = b""
    initiator_key_type: bytes = KEY_TYPE_K1
    approver_key_type: bytes = KEY_TYPE_K1
    revoked_at: int = 0
    _frozen: bool = field(default=False, repr=False, compare=False)

    def __post_init__(self):
        self.initiator_address = to_checksum_address(self.initiator_address)
        self.approver_address = to_checksum_address(self.approver_address)

    @property
    def is_self_association(self) -> bool:
        return self.initiator_address == self.approver_address

    @property
    def frozen(self) -> bool:
        return self._frozen

    def attach_approver_signature(self, signature: bytes) -> None:
        if self._frozen:
            raise ValueError("record already submitted; signatures are immutable")
        self.approver_signature = signature

    def freeze(self) -> None:
        self._frozen = True

    def as_tuple(self) -> tuple:
        """``SignedAssociationRecord`` struct in store ABI order."""
        return (
            self.revoked_at,
            self.initiator_key_type,
            self.approver_key_type,
            self.initiator_signature,
            self.approver_signature,
            self.record.as_tuple(),
        )

    def to_dict(self) -> dict:
        return {
            "record": self.record.to_dict(),
            "initiatorAddress": self.initiator_address,
            "approverAddress": self.approver_address,
            "digest": to_hex(self.digest),
            "initiatorSignature": to_hex(self.initiator_signature),
            "approverSignature": to_hex(self.approver_signature),
            "signatureMethod": self.signature_method,
            "initiatorKeyType": to_hex(self.initiator_key_type),
            "approverKeyType": to_hex(self.approver_key_type),
            "revokedAt": self.revoked_at,
        }
