"""
accountlink.verifier — ERC-1271 contract signature checks.

A contract account asserts a signature's validity by returning the magic
value ``0x1626ba7e`` from ``isValidSignature(bytes32,bytes)``. Anything else
(wrong value, revert, short return data) means "not valid here". An address
without code is not a contract at all, so the check is inapplicable and the
caller falls back to ecrecover.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from eth_abi import encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from accountlink.config import AssociationConfig
from accountlink.logs import short_hex
from accountlink.signing import recover_signer

logger = logging.getLogger(__name__)

ERC1271_MAGIC = bytes.fromhex("1626ba7e")
IS_VALID_SIGNATURE_SELECTOR = function_signature_to_4byte_selector("isValidSignature(bytes32,bytes)")


class ChainReader(Protocol):
    """Read-only chain access for one or more chains."""

    async def get_code(self, chain_id: int, address: str) -> bytes:
        ...

    async def call(self, chain_id: int, to: str, data: bytes) -> bytes:
        ...


class Web3ChainReader:
    """ChainReader backed by one ``AsyncWeb3`` HTTP client per configured chain."""

    def __init__(self, config: AssociationConfig):
        self.config = config
        self._clients: dict = {}

    def client(self, chain_id: int):
        if chain_id not in self._clients:
            from web3 import AsyncHTTPProvider, AsyncWeb3

            rpc_url = self.config.chain(chain_id).rpc_url
            self._clients[chain_id] = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
        return self._clients[chain_id]

    async def get_code(self, chain_id: int, address: str) -> bytes:
        code = await self.client(chain_id).eth.get_code(to_checksum_address(address))
        return bytes(code)

    async def call(self, chain_id: int, to: str, data: bytes) -> bytes:
        result = await self.client(chain_id).eth.call({"to": to_checksum_address(to), "data": data})
        return bytes(result)


async def is_contract(reader: ChainReader, chain_id: int, address: str) -> bool:
    code = await reader.get_code(chain_id, address)
    return bool(code) and code != b"\x00"


class ContractSignatureVerifier:
    """Asks a contract account whether it accepts a signature over a digest."""

    def __init__(self, reader: ChainReader):
        self.reader = reader

    async def is_valid(self, chain_id: int, contract_address: str, digest: bytes, signature: bytes) -> bool:
        try:
            if not await is_contract(self.reader, chain_id, contract_address):
                return False
        except Exception as e:
            logger.info("Code lookup for %s failed: %s", contract_address, e)
            return False

        calldata = IS_VALID_SIGNATURE_SELECTOR + encode(["bytes32", "bytes"], [digest, signature])
        try:
            result = await self.reader.call(chain_id, contract_address, calldata)
        except Exception as e:
            logger.info("isValidSignature call on %s failed: %s", contract_address, e)
            return False

        if len(result) < 4:
            logger.info("isValidSignature on %s returned %d bytes", contract_address, len(result))
            return False
        valid = result[:4] == ERC1271_MAGIC
        if not valid:
            logger.info("%s rejected signature over %s (returned 0x%s)",
                        contract_address, short_hex(digest), result[:4].hex())
        return valid

    async def verify_any(
        self,
        chain_id: int,
        address: str,
        digest: bytes,
        signature: bytes,
        contract: Optional[bool] = None,
    ) -> bool:
        """ERC-1271 for contracts, ecrecover for EOAs."""
        if contract is None:
            try:
                contract = await is_contract(self.reader, chain_id, address)
            except Exception as e:
                logger.info("Code lookup for %s failed: %s", address, e)
                return False
        if contract:
            return await self.is_valid(chain_id, address, digest, signature)
        return recover_signer(digest, signature) == to_checksum_address(address)
