"""
accountlink.store — Associations store contract: calldata and reads.

The store accepts a whole SignedAssociationRecord:

    storeAssociation((uint40 revokedAt, bytes2 initiatorKeyType,
                      bytes2 approverKeyType, bytes initiatorSignature,
                      bytes approverSignature,
                      (bytes initiator, bytes approver, uint40 validAt,
                       uint40 validUntil, bytes4 interfaceId, bytes data) record))

Records are keyed by their EIP-712 digest (the association id). A stored
record can be revoked (``revokeAssociation``) or re-signed
(``updateAssociationSignatures``); ``validateSignedAssociationRecord`` runs
the store's checks without writing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, to_bytes, to_checksum_address

from accountlink import interop
from accountlink.eip712 import DigestComputer
from accountlink.records import MAX_UINT40, AssociationRecord, SignedAssociationRecord
from accountlink.verifier import ChainReader

logger = logging.getLogger(__name__)

RECORD_TYPE = "(bytes,bytes,uint40,uint40,bytes4,bytes)"
SAR_TYPE = f"(uint40,bytes2,bytes2,bytes,bytes,{RECORD_TYPE})"

STORE_ASSOCIATION_SELECTOR = function_signature_to_4byte_selector(f"storeAssociation({SAR_TYPE})")
REVOKE_ASSOCIATION_SELECTOR = function_signature_to_4byte_selector("revokeAssociation(bytes32,uint40)")
UPDATE_SIGNATURES_SELECTOR = function_signature_to_4byte_selector(
    "updateAssociationSignatures(bytes32,bytes,bytes)"
)
GET_ASSOCIATIONS_SELECTOR = function_signature_to_4byte_selector("getAssociationsForAccount(bytes)")
GET_ASSOCIATION_IDS_SELECTOR = function_signature_to_4byte_selector("getAssociationIdsForAccount(bytes)")
GET_ASSOCIATION_SELECTOR = function_signature_to_4byte_selector("getAssociation(bytes32)")
VALIDATE_SAR_SELECTOR = function_signature_to_4byte_selector(f"validateSignedAssociationRecord({SAR_TYPE})")


def encode_store_association(signed: SignedAssociationRecord) -> bytes:
    """Calldata for ``storeAssociation(sar)``."""
    return STORE_ASSOCIATION_SELECTOR + encode([SAR_TYPE], [signed.as_tuple()])


def decode_store_association(calldata: bytes) -> tuple:
    if calldata[:4] != STORE_ASSOCIATION_SELECTOR:
        raise ValueError("not a storeAssociation call")
    (sar,) = decode([SAR_TYPE], calldata[4:])
    return sar


def encode_revoke_association(association_id: str, revoked_at: int = 0) -> bytes:
    """Calldata for ``revokeAssociation(id, revokedAt)``; ``0`` revokes immediately."""
    if not 0 <= revoked_at <= MAX_UINT40:
        raise ValueError(f"revoked_at out of uint40 range: {revoked_at}")
    return REVOKE_ASSOCIATION_SELECTOR + encode(
        ["bytes32", "uint40"], [_association_id_bytes(association_id), revoked_at],
    )


def encode_update_association_signatures(signed: SignedAssociationRecord) -> bytes:
    """Calldata replacing both signatures of an already stored record."""
    return UPDATE_SIGNATURES_SELECTOR + encode(
        ["bytes32", "bytes", "bytes"],
        [signed.digest, signed.initiator_signature, signed.approver_signature],
    )


def _association_id_bytes(association_id: str) -> bytes:
    raw = to_bytes(hexstr=association_id)
    if len(raw) != 32:
        raise ValueError(f"association id must be 32 bytes, got {len(raw)}")
    return raw


@dataclass
class StoredAssociation:
    association_id: str
    revoked_at: int
    initiator: str
    approver: str
    counterparty: str
    valid_at: int
    valid_until: int
    initiator_key_type: str
    approver_key_type: str

    def to_dict(self) -> dict:
        return {
            "associationId": self.association_id,
            "revokedAt": self.revoked_at,
            "initiator": self.initiator,
            "approver": self.approver,
            "counterparty": self.counterparty,
            "validAt": self.valid_at,
            "validUntil": self.valid_until,
        }


class AssociationsStoreClient:
    """Read side of the associations store on one chain."""

    def __init__(self, reader: ChainReader, chain_id: int, address: str,
                 digests: Optional[DigestComputer] = None):
        self.reader = reader
        self.chain_id = chain_id
        self.address = to_checksum_address(address)
        self.digests = digests or DigestComputer()

    async def get_associations_for_account(self, account: str) -> list[StoredAssociation]:
        account = to_checksum_address(account)
        key = interop.encode(self.chain_id, account)
        data = GET_ASSOCIATIONS_SELECTOR + encode(["bytes"], [key])
        raw = await self.reader.call(self.chain_id, self.address, data)
        (sars,) = decode([f"{SAR_TYPE}[]"], raw)
        return [self._to_stored(sar, account) for sar in sars]

    async def get_association_ids_for_account(self, account: str) -> list[str]:
        key = interop.encode(self.chain_id, account)
        data = GET_ASSOCIATION_IDS_SELECTOR + encode(["bytes"], [key])
        raw = await self.reader.call(self.chain_id, self.address, data)
        (ids,) = decode(["bytes32[]"], raw)
        return ["0x" + i.hex() for i in ids]

    async def association_exists(self, association_id: str) -> bool:
        """``getAssociation`` reverts for unknown ids."""
        data = GET_ASSOCIATION_SELECTOR + encode(["bytes32"], [_association_id_bytes(association_id)])
        try:
            raw = await self.reader.call(self.chain_id, self.address, data)
        except Exception as e:
            logger.debug("getAssociation(%s) reverted: %s", association_id, e)
            return False
        return len(raw) > 0

    async def validate_signed_association_record(self, signed: SignedAssociationRecord) -> bool:
        """Dry-run the store's own checks; a revert counts as invalid."""
        data = VALIDATE_SAR_SELECTOR + encode([SAR_TYPE], [signed.as_tuple()])
        try:
            raw = await self.reader.call(self.chain_id, self.address, data)
            (valid,) = decode(["bool"], raw)
        except Exception as e:
            logger.info("validateSignedAssociationRecord reverted for %s: %s", signed.digest.hex(), e)
            return False
        return bool(valid)

    def _to_stored(self, sar: tuple, account: str) -> StoredAssociation:
        revoked_at, i_key, a_key, _i_sig, _a_sig, rec = sar
        record = AssociationRecord(
            initiator=rec[0], approver=rec[1], valid_at=rec[2],
            valid_until=rec[3], interface_id=rec[4], data=rec[5],
        )
        initiator = record.initiator_address
        approver = record.approver_address
        initiator_addr = initiator.address if initiator else "0x" + rec[0].hex()
        approver_addr = approver.address if approver else "0x" + rec[1].hex()
        counterparty = initiator_addr if approver_addr == account else approver_addr
        return StoredAssociation(
            association_id=self.digests.association_id(record),
            revoked_at=revoked_at,
            initiator=initiator_addr,
            approver=approver_addr,
            counterparty=counterparty,
            valid_at=record.valid_at,
            valid_until=record.valid_until,
            initiator_key_type="0x" + i_key.hex(),
            approver_key_type="0x" + a_key.hex(),
        )
