"""Tests for accountlink.store — storeAssociation calldata and store reads."""

import pytest
from eth_abi import decode, encode

from accountlink import interop
from accountlink.eip712 import DigestComputer
from accountlink.records import KEY_TYPE_K1, AssociationRecordBuilder, SignedAssociationRecord
from accountlink.store import (
    GET_ASSOCIATION_IDS_SELECTOR, GET_ASSOCIATION_SELECTOR, GET_ASSOCIATIONS_SELECTOR,
    REVOKE_ASSOCIATION_SELECTOR, SAR_TYPE, STORE_ASSOCIATION_SELECTOR, UPDATE_SIGNATURES_SELECTOR,
    VALIDATE_SAR_SELECTOR, AssociationsStoreClient, decode_store_association,
    encode_revoke_association, encode_store_association, encode_update_association_signatures,
)

from conftest import SEPOLIA, STORE


@pytest.fixture
def signed(alice_account, bob_account):
    record = AssociationRecordBuilder(SEPOLIA).build(alice_account.address, bob_account.address, valid_at=1_700_000_000)
    digest = DigestComputer().record_digest(record)
    return SignedAssociationRecord(
        record=record,
        initiator_address=alice_account.address,
        approver_address=bob_account.address,
        digest=digest,
        initiator_signature=bytes(alice_account.unsafe_sign_hash(digest).signature),
        signature_method="raw-digest",
        approver_signature=bytes(bob_account.unsafe_sign_hash(digest).signature),
    )


class TestCalldata:
    def test_selector(self, signed):
        assert encode_store_association(signed)[:4] == STORE_ASSOCIATION_SELECTOR

    def test_fields_survive_encoding(self, signed):
        sar = decode_store_association(encode_store_association(signed))
        revoked_at, i_key, a_key, i_sig, a_sig, rec = sar
        assert revoked_at == 0
        assert i_key == KEY_TYPE_K1 and a_key == KEY_TYPE_K1
        assert i_sig == signed.initiator_signature
        assert a_sig == signed.approver_signature
        assert rec[0] == signed.record.initiator
        assert rec[2] == 1_700_000_000

    def test_decode_rejects_other_selector(self):
        with pytest.raises(ValueError):
            decode_store_association(b"\xde\xad\xbe\xef")


class TestStoreClient:
    @pytest.mark.asyncio
    async def test_get_associations_for_account(self, reader, signed, bob_account, alice_account):
        def handler(data):
            assert data[:4] == GET_ASSOCIATIONS_SELECTOR
            return encode([f"{SAR_TYPE}[]"], [[signed.as_tuple()]])

        reader.add_contract(STORE, handler)
        client = AssociationsStoreClient(reader, SEPOLIA, STORE)
        found = await client.get_associations_for_account(bob_account.address)

        assert len(found) == 1
        assert found[0].initiator == alice_account.address
        assert found[0].counterparty == alice_account.address
        assert found[0].association_id == "0x" + signed.digest.hex()
        assert found[0].to_dict()["approver"] == bob_account.address

    @pytest.mark.asyncio
    async def test_association_exists(self, reader, signed):
        def handler(data):
            assert data[:4] == GET_ASSOCIATION_SELECTOR
            return encode([SAR_TYPE], [signed.as_tuple()])

        reader.add_contract(STORE, handler)
        client = AssociationsStoreClient(reader, SEPOLIA, STORE)
        assert await client.association_exists("0x" + signed.digest.hex()) is True

    @pytest.mark.asyncio
    async def test_association_missing_when_call_reverts(self, reader, signed):
        def handler(data):
            raise RuntimeError("execution reverted: unknown association")

        reader.add_contract(STORE, handler)
        client = AssociationsStoreClient(reader, SEPOLIA, STORE)
        assert await client.association_exists("0x" + signed.digest.hex()) is False


class TestStoreCalls:
    def test_revoke_calldata(self, signed):
        association_id = "0x" + signed.digest.hex()
        calldata = encode_revoke_association(association_id, 1_800_000_000)
        assert calldata[:4] == REVOKE_ASSOCIATION_SELECTOR
        assert decode(["bytes32", "uint40"], calldata[4:]) == (signed.digest, 1_800_000_000)

    def test_revoke_defaults_to_immediate(self, signed):
        calldata = encode_revoke_association("0x" + signed.digest.hex())
        assert decode(["bytes32", "uint40"], calldata[4:])[1] == 0

    @pytest.mark.parametrize("association_id, revoked_at", [
        ("0x1234", 0),
        ("0x" + "00" * 32, 2 ** 40),
        ("0x" + "00" * 32, -1),
    ])
    def test_revoke_rejects_bad_arguments(self, association_id, revoked_at):
        with pytest.raises(ValueError):
            encode_revoke_association(association_id, revoked_at)

    def test_update_signatures_calldata(self, signed):
        calldata = encode_update_association_signatures(signed)
        assert calldata[:4] == UPDATE_SIGNATURES_SELECTOR
        digest, i_sig, a_sig = decode(["bytes32", "bytes", "bytes"], calldata[4:])
        assert digest == signed.digest
        assert i_sig == signed.initiator_signature
        assert a_sig == signed.approver_signature


class TestStoreReads:
    @pytest.mark.asyncio
    async def test_association_ids_for_account(self, reader, signed, bob_account):
        def handler(data):
            assert data[:4] == GET_ASSOCIATION_IDS_SELECTOR
            (account,) = decode(["bytes"], data[4:])
            assert account == interop.encode(SEPOLIA, bob_account.address)
            return encode(["bytes32[]"], [[signed.digest]])

        reader.add_contract(STORE, handler)
        client = AssociationsStoreClient(reader, SEPOLIA, STORE)
        assert await client.get_association_ids_for_account(bob_account.address) == ["0x" + signed.digest.hex()]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("answer", [True, False])
    async def test_validate_signed_association_record(self, reader, signed, answer):
        def handler(data):
            assert data[:4] == VALIDATE_SAR_SELECTOR
            (sar,) = decode([SAR_TYPE], data[4:])
            assert sar[3] == signed.initiator_signature
            return encode(["bool"], [answer])

        reader.add_contract(STORE, handler)
        client = AssociationsStoreClient(reader, SEPOLIA, STORE)
        assert await client.validate_signed_association_record(signed) is answer

    @pytest.mark.asyncio
    async def test_validate_revert_is_invalid(self, reader, signed):
        def handler(data):
            raise RuntimeError("execution reverted: bad approver signature")

        reader.add_contract(STORE, handler)
        client = AssociationsStoreClient(reader, SEPOLIA, STORE)
        assert await client.validate_signed_association_record(signed) is False
