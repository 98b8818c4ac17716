"""
accountlink.interop — EVM-v1 interoperable address encoding.

Layout (all big-endian):

    0x0001            version
    0x0000            chain namespace (eip155)
    uint8             chain reference length
    bytes[n]          minimal chain id bytes (0x00 for chain 0)
    uint8             address length (20)
    bytes[20]         address

Usage:
    encode(11155111, "0x" + "ab" * 20)   # -> b"\\x00\\x01\\x00\\x00\\x03\\xaa\\x36\\xa7\\x14..."
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from eth_utils import to_bytes, to_checksum_address, is_hex

VERSION = b"\x00\x01"
NAMESPACE_EIP155 = b"\x00\x00"
ADDRESS_LENGTH = 20

AddressLike = Union[str, bytes]


def address_bytes(address: AddressLike) -> bytes:
    """Normalize a hex or raw address into exactly 20 bytes."""
    if isinstance(address, (bytes, bytearray)):
        raw = bytes(address)
    elif isinstance(address, str) and is_hex(address):
        raw = to_bytes(hexstr=address)
    else:
        raise ValueError(f"Invalid address: {address!r}")
    if len(raw) != ADDRESS_LENGTH:
        raise ValueError(f"Address must be {ADDRESS_LENGTH} bytes, got {len(raw)}")
    return raw


def chain_reference(chain_id: int) -> bytes:
    """Minimal big-endian bytes of a chain id, at least one byte."""
    if chain_id < 0:
        raise ValueError(f"chain id must be non-negative, got {chain_id}")
    if chain_id == 0:
        return b"\x00"
    return chain_id.to_bytes((chain_id.bit_length() + 7) // 8, "big")


def encode(chain_id: int, address: AddressLike) -> bytes:
    """Encode ``(chain_id, address)`` as an EVM-v1 interop address."""
    ref = chain_reference(chain_id)
    if len(ref) > 0xFF:
        raise ValueError("chain id too large")
    return b"".join([
        VERSION,
        NAMESPACE_EIP155,
        bytes([len(ref)]),
        ref,
        bytes([ADDRESS_LENGTH]),
        address_bytes(address),
    ])


def to_hex(chain_id: int, address: AddressLike) -> str:
    return "0x" + encode(chain_id, address).hex()


@dataclass(frozen=True)
class InteropAddress:
    """Chain-scoped account, the unit both parties of a record are made of."""
    chain_id: int
    address: str

    def __post_init__(self):
        object.__setattr__(self, "address", to_checksum_address(address_bytes(self.address)))
        chain_reference(self.chain_id)

    def to_bytes(self) -> bytes:
        return encode(self.chain_id, self.address)

    def to_hex(self) -> str:
        return "0x" + self.to_bytes().hex()


def try_parse(data: Union[str, bytes]) -> Optional[InteropAddress]:
    """Decode an EVM-v1 interop address; ``None`` if it is not one."""
    try:
        raw = to_bytes(hexstr=data) if isinstance(data, str) else bytes(data)
    except (ValueError, TypeError):
        return None
    if len(raw) < 6 or raw[0:2] != VERSION or raw[2:4] != NAMESPACE_EIP155:
        return None
    ref_len = raw[4]
    ref_end = 5 + ref_len
    if len(raw) < ref_end + 1:
        return None
    addr_len = raw[ref_end]
    if addr_len != ADDRESS_LENGTH or len(raw) != ref_end + 1 + addr_len:
        return None
    chain_id = int.from_bytes(raw[5:ref_end], "big")
    return InteropAddress(chain_id=chain_id, address=raw[ref_end + 1:])
