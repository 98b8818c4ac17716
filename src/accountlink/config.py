"""
accountlink.config — Chain-scoped configuration, resolved once and injected.

Environment variables (per chain suffix, e.g. SEPOLIA, BASE_SEPOLIA):
    ACCOUNTLINK_RPC_URL_<SUFFIX>         RPC endpoint
    ASSOCIATIONS_STORE_PROXY_<SUFFIX>    associations store proxy
    ASSOCIATIONS_STORE_PROXY             fallback proxy for every chain
    ACCOUNTLINK_RELAY_URL_<SUFFIX>       smart-account relay endpoint
    ACCOUNTLINK_SIGNING_ORDER            e.g. "typed-v4,raw-digest,typed-v3"
    ACCOUNTLINK_LOG_LEVEL                logging level (default INFO)
    ACCOUNTLINK_DOMAIN_NAME, _VERSION    EIP-712 domain override
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from eth_utils import is_address, to_checksum_address

from accountlink.eip712 import DOMAIN_NAME, DOMAIN_VERSION
from accountlink.signing import SigningPolicy

DEFAULT_ASSOCIATIONS_PROXY = "0x3418A5297C75989000985802B8ab01229CDDDD24"

# chain id -> (env suffix, public RPC fallback)
KNOWN_CHAINS: dict[int, tuple[str, str]] = {
    11155111: ("SEPOLIA", "https://ethereum-sepolia-rpc.publicnode.com"),
    84532: ("BASE_SEPOLIA", "https://sepolia.base.org"),
    11155420: ("OPTIMISM_SEPOLIA", "https://sepolia.optimism.io"),
}


@dataclass(frozen=True)
class ChainConfig:
    chain_id: int
    rpc_url: str
    associations_proxy: str = DEFAULT_ASSOCIATIONS_PROXY
    relay_url: Optional[str] = None

    def __post_init__(self):
        if not is_address(self.associations_proxy):
            raise ValueError(f"Invalid associations proxy for chain {self.chain_id}: {self.associations_proxy!r}")
        object.__setattr__(self, "associations_proxy", to_checksum_address(self.associations_proxy))


@dataclass(frozen=True)
class AssociationConfig:
    chains: dict[int, ChainConfig] = field(default_factory=dict)
    domain_name: str = DOMAIN_NAME
    domain_version: str = DOMAIN_VERSION
    signing_policy: SigningPolicy = field(default_factory=SigningPolicy)
    log_level: str = "INFO"

    def chain(self, chain_id: int) -> ChainConfig:
        try:
            return self.chains[chain_id]
        except KeyError:
            raise KeyError(f"chain {chain_id} is not configured") from None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AssociationConfig":
        env = os.environ if environ is None else environ
        generic_proxy = (env.get("ASSOCIATIONS_STORE_PROXY") or DEFAULT_ASSOCIATIONS_PROXY).strip()

        chains = {}
        for chain_id, (suffix, default_rpc) in KNOWN_CHAINS.items():
            chains[chain_id] = ChainConfig(
                chain_id=chain_id,
                rpc_url=env.get(f"ACCOUNTLINK_RPC_URL_{suffix}", default_rpc),
                associations_proxy=(env.get(f"ASSOCIATIONS_STORE_PROXY_{suffix}") or generic_proxy).strip(),
                relay_url=env.get(f"ACCOUNTLINK_RELAY_URL_{suffix}") or None,
            )

        order = env.get("ACCOUNTLINK_SIGNING_ORDER")
        policy = SigningPolicy.parse(order) if order else SigningPolicy()

        return cls(
            chains=chains,
            domain_name=env.get("ACCOUNTLINK_DOMAIN_NAME", DOMAIN_NAME),
            domain_version=env.get("ACCOUNTLINK_DOMAIN_VERSION", DOMAIN_VERSION),
            signing_policy=policy,
            log_level=env.get("ACCOUNTLINK_LOG_LEVEL", "INFO"),
        )
