"""
accountlink.envelope — Versioned handshake payload carried to the approver.

The messaging channel is opaque; this module is the receiving boundary. A
payload either parses into a fully validated ``HandshakeEnvelope`` or raises
``InvalidPayload``. The delivered ``digest`` is kept as evidence only: the
approver recomputes it from the other fields.
"""

from __future__ import annotations

import json
from typing import Any, Literal, Union

from eth_utils import is_address, is_hex, to_bytes, to_checksum_address
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from accountlink.eip712 import decode_association_data, encode_association_data
from accountlink.errors import InvalidPayload
from accountlink.records import (
    MAX_UINT40, AssociationRecord, AssociationRecordBuilder, SignedAssociationRecord, to_hex,
)
from accountlink.signing import EXCLUDED_METHODS, SigningMethod

ENVELOPE_VERSION = 1
MESSAGE_TYPE = "accountlink.association.request"
# Interop addresses carry the chain reference behind a one-byte length.
MAX_CHAIN_ID = 1 << (8 * 0xFF)


def _hex_field(value: Any, name: str, length: int | None = None, allow_empty: bool = True) -> str:
    if not isinstance(value, str) or not value.startswith("0x") or not is_hex(value):
        raise ValueError(f"{name} must be 0x-prefixed hex")
    raw = to_bytes(hexstr=value)
    if length is not None and len(raw) != length:
        raise ValueError(f"{name} must be {length} bytes, got {len(raw)}")
    if not allow_empty and not raw:
        raise ValueError(f"{name} must not be empty")
    return value.lower()


class HandshakeEnvelope(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    version: Literal[1] = ENVELOPE_VERSION
    chain_id: int = Field(ge=0)
    initiator_did: str = Field(min_length=1)
    approver_did: str = Field(min_length=1)
    initiator_address: str
    approver_address: str
    assoc_type: int = Field(ge=0, le=255)
    description: str = ""
    valid_at: int = Field(ge=0, le=MAX_UINT40)
    valid_until: int = Field(default=0, ge=0, le=MAX_UINT40)
    interface_id: str = "0x00000000"
    data: str = "0x"
    digest: str
    initiator_signature: str
    signature_method: SigningMethod

    @field_validator("chain_id")
    @classmethod
    def _chain_id(cls, v: int) -> int:
        if v >= MAX_CHAIN_ID:
            raise ValueError("chainId does not fit an interop chain reference")
        return v

    @field_validator("initiator_address", "approver_address")
    @classmethod
    def _checksum(cls, v: Any) -> str:
        if not isinstance(v, str) or not is_address(v):
            raise ValueError(f"not an address: {v!r}")
        return to_checksum_address(v)

    @field_validator("interface_id")
    @classmethod
    def _interface_id(cls, v: Any) -> str:
        return _hex_field(v, "interfaceId", length=4)

    @field_validator("data")
    @classmethod
    def _data(cls, v: Any) -> str:
        return _hex_field(v, "data")

    @field_validator("digest")
    @classmethod
    def _digest(cls, v: Any) -> str:
        return _hex_field(v, "digest", length=32)

    @field_validator("initiator_signature")
    @classmethod
    def _signature(cls, v: Any) -> str:
        return _hex_field(v, "initiatorSignature", allow_empty=False)

    @field_validator("signature_method")
    @classmethod
    def _method(cls, v: SigningMethod) -> SigningMethod:
        if v in EXCLUDED_METHODS:
            raise ValueError(f"signature method {v.value} is not accepted")
        return v

    @model_validator(mode="after")
    def _consistent(self) -> "HandshakeEnvelope":
        if self.valid_until and self.valid_until < self.valid_at:
            raise ValueError("validUntil precedes validAt")
        raw = to_bytes(hexstr=self.data)
        if raw:
            assoc_type, description = decode_association_data(raw)
            if (assoc_type, description) != (self.assoc_type, self.description):
                raise ValueError("data does not encode assocType/description")
        return self

    # -- parsing --

    @classmethod
    def parse(cls, raw: Union[dict, str, bytes, None]) -> "HandshakeEnvelope":
        """Validate an incoming message body; raises ``InvalidPayload``."""
        if raw is None:
            raise InvalidPayload("missing handshake payload")
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise InvalidPayload(f"payload is not UTF-8: {e}") from e
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise InvalidPayload(f"payload is not JSON: {e}") from e
        if not isinstance(raw, dict):
            raise InvalidPayload(f"payload must be an object, got {type(raw).__name__}")

        if "payload" in raw and "type" in raw:
            if raw["type"] != MESSAGE_TYPE:
                raise InvalidPayload(f"unexpected message type {raw['type']!r}")
            raw = raw["payload"]
            if not isinstance(raw, dict):
                raise InvalidPayload("message payload must be an object")

        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) or "envelope" for err in e.errors())
            raise InvalidPayload(f"invalid handshake payload ({fields})") from e

    @classmethod
    def from_signed(
        cls,
        signed: SignedAssociationRecord,
        chain_id: int,
        initiator_did: str,
        approver_did: str,
        assoc_type: int,
        description: str,
    ) -> "HandshakeEnvelope":
        rec = signed.record
        return cls(
            chain_id=chain_id,
            initiator_did=initiator_did,
            approver_did=approver_did,
            initiator_address=signed.initiator_address,
            approver_address=signed.approver_address,
            assoc_type=assoc_type,
            description=description,
            valid_at=rec.valid_at,
            valid_until=rec.valid_until,
            interface_id=to_hex(rec.interface_id),
            data=to_hex(rec.data),
            digest=to_hex(signed.digest),
            initiator_signature=to_hex(signed.initiator_signature),
            signature_method=signed.signature_method,
        )

    # -- serialization --

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")

    def to_message(self) -> dict:
        return {"type": MESSAGE_TYPE, "payload": self.to_payload()}

    # -- derived values --

    @property
    def data_bytes(self) -> bytes:
        raw = to_bytes(hexstr=self.data)
        return raw or encode_association_data(self.assoc_type, self.description)

    @property
    def digest_bytes(self) -> bytes:
        return to_bytes(hexstr=self.digest)

    @property
    def signature_bytes(self) -> bytes:
        return to_bytes(hexstr=self.initiator_signature)

    def record(self) -> AssociationRecord:
        """Rebuild the signed record from the raw fields."""
        return AssociationRecordBuilder(self.chain_id).build(
            self.initiator_address,
            self.approver_address,
            data=self.data_bytes,
            valid_at=self.valid_at,
            valid_until=self.valid_until,
            interface_id=self.interface_id,
        )
