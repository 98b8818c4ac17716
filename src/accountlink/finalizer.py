"""
accountlink.finalizer — Submit a fully signed association to the store.

Two submission paths:
    EOA_DIRECT           the connected wallet sends a plain transaction
    SMART_ACCOUNT_RELAY  a relay executes the call on behalf of a deployed
                         smart account (abstracted transaction)

Both return as soon as the network or relay *accepts* the call: a tx hash or
a user-operation hash. Finality is the caller's business. Revocations and
signature updates of stored associations go through the same paths.
"""

from __future__ import annotations

import itertools
import logging
from enum import Enum
from typing import Optional, Protocol

import httpx
from eth_utils import keccak, to_checksum_address

from accountlink.errors import SubmissionFailed
from accountlink.records import SignedAssociationRecord
from accountlink.signing import Wallet, WalletRequestError
from accountlink.config import ChainConfig
from accountlink.store import (
    AssociationsStoreClient, encode_revoke_association, encode_store_association,
    encode_update_association_signatures,
)

logger = logging.getLogger(__name__)

DUPLICATE_MARKERS = ("already exists", "already stored", "duplicate", "known transaction", "already known")


class SubmissionMode(str, Enum):
    EOA_DIRECT = "eoa-direct"
    SMART_ACCOUNT_RELAY = "smart-account-relay"


class Submitter(Protocol):
    async def submit(self, chain_id: int, sender: str, to: str, data: bytes) -> str:
        ...


def _looks_duplicate(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in DUPLICATE_MARKERS)


class WalletTransactionSender:
    """Sends ``eth_sendTransaction`` through the connected EOA wallet."""

    def __init__(self, wallet: Wallet):
        self.wallet = wallet

    async def submit(self, chain_id: int, sender: str, to: str, data: bytes) -> str:
        tx = {
            "from": to_checksum_address(sender),
            "to": to_checksum_address(to),
            "data": "0x" + data.hex(),
            "value": "0x0",
            "chainId": hex(chain_id),
        }
        try:
            return await self.wallet.request("eth_sendTransaction", [tx])
        except WalletRequestError as e:
            raise SubmissionFailed(str(e), duplicate=_looks_duplicate(str(e))) from e


class RelaySubmitter:
    """JSON-RPC client for a smart-account relay.

    The relay wraps the call into a user operation for ``sender`` and returns
    its hash once the bundler has accepted it.
    """

    def __init__(self, relay_url: str, method: str = "relay_sendCall", timeout: float = 30.0,
                 http: Optional[httpx.AsyncClient] = None):
        self.relay_url = relay_url
        self.method = method
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    @classmethod
    def from_config(cls, chain: ChainConfig, **kwargs) -> "RelaySubmitter":
        if not chain.relay_url:
            raise ValueError(f"no relay configured for chain {chain.chain_id}")
        return cls(chain.relay_url, **kwargs)

    async def aclose(self):
        await self._http.aclose()

    async def submit(self, chain_id: int, sender: str, to: str, data: bytes) -> str:
        body = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": self.method,
            "params": [{
                "chainId": chain_id,
                "sender": to_checksum_address(sender),
                "to": to_checksum_address(to),
                "data": "0x" + data.hex(),
                "value": "0x0",
            }],
        }
        try:
            r = await self._http.post(self.relay_url, json=body)
        except httpx.HTTPError as e:
            raise SubmissionFailed(f"relay unreachable: {e}") from e

        if r.status_code >= 400:
            detail = r.text
            raise SubmissionFailed(f"relay returned {r.status_code}: {detail}",
                                   duplicate=_looks_duplicate(detail), status=r.status_code)
        try:
            payload = r.json()
        except ValueError as e:
            raise SubmissionFailed(f"relay returned non-JSON body: {e}", status=r.status_code) from e

        if payload.get("error"):
            message = str(payload["error"].get("message", payload["error"]))
            raise SubmissionFailed(f"relay rejected call: {message}", duplicate=_looks_duplicate(message))
        return payload.get("result")


class AssociationFinalizer:
    """Submits store calls and refuses to submit the same call twice."""

    def __init__(
        self,
        submitters: dict[SubmissionMode, Submitter],
        store_address: str,
        store_client: Optional[AssociationsStoreClient] = None,
    ):
        self.submitters = submitters
        self.store_address = to_checksum_address(store_address)
        self.store_client = store_client
        self._accepted: dict[bytes, str] = {}
        self._inflight: set[bytes] = set()

    async def finalize(
        self,
        signed: SignedAssociationRecord,
        submission_mode: SubmissionMode,
        sender: str,
    ) -> str:
        if not signed.initiator_signature or not signed.approver_signature:
            raise SubmissionFailed("both signatures are required before finalizing")
        chain_id = self._chain_of(signed)

        if self.store_client is not None:
            association_id = "0x" + signed.digest.hex()
            if await self.store_client.association_exists(association_id):
                raise SubmissionFailed(f"association {association_id} already stored", duplicate=True)
            if not await self.store_client.validate_signed_association_record(signed):
                raise SubmissionFailed(f"store rejected association {association_id} in validation")

        operation_id = await self._submit(chain_id, submission_mode, sender, encode_store_association(signed))
        signed.freeze()
        return operation_id

    async def revoke(
        self,
        chain_id: int,
        association_id: str,
        submission_mode: SubmissionMode,
        sender: str,
        revoked_at: int = 0,
    ) -> str:
        """Revoke a stored association; ``revoked_at=0`` takes effect immediately."""
        try:
            calldata = encode_revoke_association(association_id, revoked_at)
        except ValueError as e:
            raise SubmissionFailed(f"cannot revoke {association_id}: {e}") from e
        return await self._submit(chain_id, submission_mode, sender, calldata)

    async def update_signatures(
        self,
        signed: SignedAssociationRecord,
        submission_mode: SubmissionMode,
        sender: str,
    ) -> str:
        """Replace both signatures of a record that is already stored."""
        if not signed.initiator_signature or not signed.approver_signature:
            raise SubmissionFailed("both signatures are required to update a stored association")
        chain_id = self._chain_of(signed)
        return await self._submit(chain_id, submission_mode, sender, encode_update_association_signatures(signed))

    @staticmethod
    def _chain_of(signed: SignedAssociationRecord) -> int:
        initiator = signed.record.initiator_address
        if initiator is None:
            raise SubmissionFailed("record initiator is not an EVM interop address")
        return initiator.chain_id

    async def _submit(self, chain_id: int, submission_mode: SubmissionMode, sender: str, calldata: bytes) -> str:
        key = keccak(chain_id.to_bytes(32, "big") + calldata)
        if key in self._accepted or key in self._inflight:
            previous = self._accepted.get(key, "pending")
            logger.warning("Refusing duplicate submission (previous operation %s)", previous)
            raise SubmissionFailed(f"duplicate of operation {previous}", duplicate=True)

        mode = SubmissionMode(submission_mode)
        submitter = self.submitters.get(mode)
        if submitter is None:
            raise SubmissionFailed(f"no submitter configured for {mode.value}")

        self._inflight.add(key)
        try:
            operation_id = await submitter.submit(chain_id, sender, self.store_address, calldata)
        except SubmissionFailed:
            raise
        except Exception as e:
            raise SubmissionFailed(f"submission error: {e}") from e
        finally:
            self._inflight.discard(key)

        if not operation_id:
            raise SubmissionFailed("submission accepted without an operation id")

        self._accepted[key] = operation_id
        logger.info("Store call 0x%s submitted via %s: %s", calldata[:4].hex(), mode.value, operation_id)
        return operation_id
