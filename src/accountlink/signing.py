"""
accountlink.signing — Wallet signing with capability fallback.

Wallets differ in which signing RPCs they support. The negotiator walks an
ordered list of methods that all sign the *raw* 32-byte digest:

    raw-digest   eth_sign(address, digest)
    typed-v4     eth_signTypedData_v4(address, typedData)
    typed-v3     eth_signTypedData_v3(address, typedData)

``personal_sign`` is never offered: it prefixes the message with
"\\x19Ethereum Signed Message:\\n32" before hashing, so the wallet reports
success but the store's verifier rejects the signature.

Usage:
    negotiator = SignatureNegotiator(wallet)
    signature, method = await negotiator.sign(address, digest, typed_data)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol, Union

from eth_account.messages import encode_defunct, encode_typed_data
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError
from eth_utils import to_bytes, to_checksum_address

from accountlink.errors import SigningExhausted, WalletNotConnected
from accountlink.logs import short_hex

logger = logging.getLogger(__name__)


class SigningMethod(str, Enum):
    RAW_DIGEST = "raw-digest"
    TYPED_V4 = "typed-v4"
    TYPED_V3 = "typed-v3"
    PERSONAL_SIGN = "personal-sign"

    @property
    def rpc_method(self) -> str:
        return _RPC_METHODS[self]

    @property
    def needs_typed_data(self) -> bool:
        return self in (SigningMethod.TYPED_V4, SigningMethod.TYPED_V3)


_RPC_METHODS = {
    SigningMethod.RAW_DIGEST: "eth_sign",
    SigningMethod.TYPED_V4: "eth_signTypedData_v4",
    SigningMethod.TYPED_V3: "eth_signTypedData_v3",
    SigningMethod.PERSONAL_SIGN: "personal_sign",
}

# Prefixed-message schemes hash something other than the digest.
EXCLUDED_METHODS = frozenset({SigningMethod.PERSONAL_SIGN})

DEFAULT_ORDER = (SigningMethod.RAW_DIGEST, SigningMethod.TYPED_V4, SigningMethod.TYPED_V3)


@dataclass(frozen=True)
class SigningPolicy:
    """Ordered fallback list of signing methods."""
    order: tuple[SigningMethod, ...] = field(default=DEFAULT_ORDER)

    def __post_init__(self):
        cleaned = []
        for m in self.order:
            m = SigningMethod(m)
            if m in EXCLUDED_METHODS:
                logger.warning("Dropping excluded signing method %s from policy", m.value)
                continue
            if m not in cleaned:
                cleaned.append(m)
        if not cleaned:
            raise ValueError("signing policy needs at least one usable method")
        object.__setattr__(self, "order", tuple(cleaned))

    @classmethod
    def parse(cls, text: str) -> "SigningPolicy":
        """Parse a comma-separated list like ``"typed-v4,raw-digest"``."""
        names = [part.strip() for part in text.split(",") if part.strip()]
        try:
            return cls(order=tuple(SigningMethod(n) for n in names))
        except ValueError as e:
            raise ValueError(f"Invalid signing order {text!r}: {e}") from e

    def candidates(
        self,
        preferred: Optional[Union[SigningMethod, str]] = None,
        typed_available: bool = True,
    ) -> list[SigningMethod]:
        ordered: list[SigningMethod] = []
        if preferred is not None:
            try:
                p = SigningMethod(preferred)
            except ValueError:
                logger.warning("Ignoring unknown preferred signing method %r", preferred)
            else:
                if p in EXCLUDED_METHODS:
                    logger.warning("Refusing excluded preferred signing method %s", p.value)
                else:
                    ordered.append(p)
        for m in self.order:
            if m not in ordered:
                ordered.append(m)
        if not typed_available:
            ordered = [m for m in ordered if not m.needs_typed_data]
        return ordered

    def alternate(self, method: Union[SigningMethod, str]) -> SigningMethod:
        """First policy method different from ``method``."""
        for m in self.order:
            if m != method:
                return m
        return self.order[0]


# ─── Wallets ───────────────────────────────────────────────────────

class Wallet(Protocol):
    """EIP-1193 style request interface."""

    async def request(self, method: str, params: list) -> Any:
        ...


class WalletRequestError(Exception):
    """Error returned by a wallet RPC (EIP-1193 ``code``/``message``)."""

    def __init__(self, code: int, message: str):
        self.code = code
        super().__init__(f"[{code}] {message}")


class LocalAccountWallet:
    """Wallet backed by an in-process ``eth_account`` LocalAccount."""

    def __init__(self, account):
        self.account = account

    @property
    def address(self) -> str:
        return self.account.address

    async def request(self, method: str, params: list) -> Any:
        if method == "eth_accounts":
            return [self.account.address]
        if method == "eth_sign":
            self._check_signer(params[0])
            signed = self.account.unsafe_sign_hash(to_bytes(hexstr=params[1]))
        elif method in ("eth_signTypedData_v4", "eth_signTypedData_v3"):
            self._check_signer(params[0])
            payload = params[1]
            if isinstance(payload, str):
                payload = json.loads(payload)
            signed = self.account.sign_message(encode_typed_data(full_message=payload))
        elif method == "personal_sign":
            self._check_signer(params[1])
            signed = self.account.sign_message(encode_defunct(hexstr=params[0]))
        else:
            raise WalletRequestError(4200, f"Unsupported method: {method}")
        return "0x" + bytes(signed.signature).hex()

    def _check_signer(self, address: str):
        if to_checksum_address(address) != self.account.address:
            raise WalletRequestError(4100, f"Account {address} is not authorized")


async def connected_account(wallet: Optional[Wallet]) -> str:
    """Return the wallet's first connected account or raise WalletNotConnected."""
    if wallet is None:
        raise WalletNotConnected("no wallet provided")
    try:
        accounts = await wallet.request("eth_accounts", [])
    except WalletRequestError as e:
        raise WalletNotConnected(f"wallet refused eth_accounts: {e}") from e
    if not accounts:
        raise WalletNotConnected("wallet has no connected account")
    return to_checksum_address(accounts[0])


# ─── Signature helpers ─────────────────────────────────────────────

def normalize_signature(signature: bytes) -> bytes:
    """Map recovery id 0/1 to 27/28 on 65-byte signatures."""
    if len(signature) == 65 and signature[64] in (0, 1):
        return signature[:64] + bytes([signature[64] + 27])
    return signature


def coerce_signature(result: Any) -> Optional[bytes]:
    """Wallet result to bytes; ``None`` for empty or all-zero signatures."""
    if result is None:
        return None
    if isinstance(result, str):
        try:
            raw = to_bytes(hexstr=result)
        except ValueError:
            return None
    else:
        raw = bytes(result)
    if not raw or not any(raw):
        return None
    return normalize_signature(raw)


def recover_signer(digest: bytes, signature: bytes) -> Optional[str]:
    """Recover the checksummed address that signed ``digest`` (no prefix)."""
    if len(signature) != 65:
        return None
    v = signature[64]
    if v >= 27:
        v -= 27
    try:
        sig = keys.Signature(signature_bytes=signature[:64] + bytes([v]))
        return sig.recover_public_key_from_msg_hash(digest).to_checksum_address()
    except (BadSignature, ValidationError, ValueError):
        return None


# ─── Negotiator ────────────────────────────────────────────────────

class SignatureNegotiator:
    """Tries signing methods in policy order until one yields a usable signature."""

    def __init__(self, wallet: Wallet, policy: Optional[SigningPolicy] = None):
        self.wallet = wallet
        self.policy = policy or SigningPolicy()

    async def sign(
        self,
        signer_address: str,
        digest: bytes,
        typed_data: Optional[dict] = None,
        preferred_method: Optional[Union[SigningMethod, str]] = None,
        recover: bool = True,
    ) -> tuple[bytes, SigningMethod]:
        signer = to_checksum_address(signer_address)
        last_error: Optional[BaseException] = None

        for method in self.policy.candidates(preferred_method, typed_available=typed_data is not None):
            try:
                result = await self.wallet.request(method.rpc_method, self._params(method, signer, digest, typed_data))
            except Exception as e:
                logger.info("Signing with %s failed: %s", method.value, e)
                last_error = e
                continue

            signature = coerce_signature(result)
            if signature is None:
                logger.info("Signing with %s returned an empty signature", method.value)
                last_error = ValueError(f"{method.value} returned an empty signature")
                continue

            if recover:
                recovered = recover_signer(digest, signature)
                if recovered != signer:
                    logger.info("Signature from %s recovers to %s, expected %s", method.value, recovered, signer)
                    last_error = ValueError(f"bad signature: recovered {recovered} (expected {signer})")
                    continue

            logger.info("Signed digest %s with %s", short_hex(digest), method.value)
            return signature, method

        raise SigningExhausted(last_error=last_error)

    @staticmethod
    def _params(method: SigningMethod, signer: str, digest: bytes, typed_data: Optional[dict]) -> list:
        if method is SigningMethod.RAW_DIGEST:
            return [signer, "0x" + digest.hex()]
        return [signer, json.dumps(typed_data)]
