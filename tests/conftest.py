"""Shared fakes: wallets, chain reader, submitters and messenger."""

import logging
import os
import sys

import pytest
from eth_abi import decode
from eth_account import Account
from eth_utils import keccak, to_checksum_address

# Ensure src is on path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from accountlink.config import AssociationConfig, ChainConfig
from accountlink.finalizer import AssociationFinalizer, SubmissionMode
from accountlink.signing import LocalAccountWallet, WalletRequestError, recover_signer
from accountlink.verifier import ERC1271_MAGIC, IS_VALID_SIGNATURE_SELECTOR

SEPOLIA = 11155111
STORE = to_checksum_address("0x3418a5297c75989000985802b8ab01229cdddd24")
SMART_ACCOUNT = to_checksum_address("0x" + "5a" * 20)
OTHER_SMART_ACCOUNT = to_checksum_address("0x" + "5b" * 20)


class ScriptedWallet(LocalAccountWallet):
    """LocalAccountWallet that can refuse methods or return junk, and logs calls."""

    def __init__(self, account, unsupported=(), overrides=None, connected=True):
        super().__init__(account)
        self.unsupported = set(unsupported)
        self.overrides = dict(overrides or {})
        self.connected = connected
        self.calls = []

    @property
    def sign_calls(self):
        return [m for m in self.calls if m != "eth_accounts"]

    async def request(self, method, params):
        self.calls.append(method)
        if method == "eth_accounts" and not self.connected:
            return []
        if method in self.unsupported:
            raise WalletRequestError(4200, f"{method} not supported")
        if method in self.overrides:
            return self.overrides[method]
        return await super().request(method, params)


class FakeChainReader:
    """Chain with configurable code and ERC-1271 smart accounts."""

    def __init__(self):
        self.code = {}
        self.handlers = {}
        self.calls = []

    def add_smart_account(self, address, owner, chain_id=SEPOLIA):
        """Contract that accepts signatures recovering to ``owner``."""
        address = to_checksum_address(address)
        self.code[(chain_id, address)] = b"\x60\x80\x60\x40"

        def handler(data):
            assert data[:4] == IS_VALID_SIGNATURE_SELECTOR
            digest, signature = decode(["bytes32", "bytes"], data[4:])
            if recover_signer(digest, signature) == to_checksum_address(owner):
                return ERC1271_MAGIC + b"\x00" * 28
            return b"\xff\xff\xff\xff" + b"\x00" * 28

        self.handlers[(chain_id, address)] = handler

    def add_contract(self, address, handler, chain_id=SEPOLIA):
        address = to_checksum_address(address)
        self.code[(chain_id, address)] = b"\x60\x80"
        self.handlers[(chain_id, address)] = handler

    async def get_code(self, chain_id, address):
        return self.code.get((chain_id, to_checksum_address(address)), b"")

    async def call(self, chain_id, to, data):
        self.calls.append((chain_id, to, data))
        handler = self.handlers.get((chain_id, to_checksum_address(to)))
        if handler is None:
            return b""
        return handler(data)


class FakeSubmitter:
    """Accepts calls and returns a hash; can be told to fail first N times."""

    def __init__(self, fail_times=0, error=None):
        self.fail_times = fail_times
        self.error = error
        self.calls = []

    async def submit(self, chain_id, sender, to, data):
        self.calls.append((chain_id, sender, to, data))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.error or RuntimeError("execution reverted")
        return "0x" + keccak(data + str(len(self.calls)).encode()).hex()


class FakeMessenger:
    def __init__(self):
        self.outbox = []

    async def send_message(self, recipient_did, message):
        self.outbox.append((recipient_did, message))
        return f"msg-{len(self.outbox)}"


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers added by setup_structured_logging between tests."""
    yield
    logger = logging.getLogger("accountlink")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)


@pytest.fixture
def alice_account():
    return Account.from_key("0x" + "11" * 32)


@pytest.fixture
def bob_account():
    return Account.from_key("0x" + "22" * 32)


@pytest.fixture
def alice_wallet(alice_account):
    return ScriptedWallet(alice_account)


@pytest.fixture
def bob_wallet(bob_account):
    return ScriptedWallet(bob_account)


@pytest.fixture
def config():
    return AssociationConfig(chains={SEPOLIA: ChainConfig(chain_id=SEPOLIA, rpc_url="http://localhost:8545")})


@pytest.fixture
def reader():
    return FakeChainReader()


@pytest.fixture
def submitter():
    return FakeSubmitter()


@pytest.fixture
def finalizer(submitter):
    return AssociationFinalizer(
        {SubmissionMode.EOA_DIRECT: submitter, SubmissionMode.SMART_ACCOUNT_RELAY: submitter},
        STORE,
    )


@pytest.fixture
def messenger():
    return FakeMessenger()
