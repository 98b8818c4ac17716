"""Tests for accountlink.config and accountlink.logs."""

import io
import json
import logging

import pytest

from accountlink.config import DEFAULT_ASSOCIATIONS_PROXY, AssociationConfig, ChainConfig
from accountlink.logs import HandshakeIdFilter, handshake_id_var, setup_structured_logging, short_hex
from accountlink.signing import SigningMethod

PROXY = "0x" + "cc" * 20


class TestFromEnv:
    def test_defaults(self):
        config = AssociationConfig.from_env({})
        assert set(config.chains) == {11155111, 84532, 11155420}
        assert config.chain(11155111).associations_proxy.lower() == DEFAULT_ASSOCIATIONS_PROXY.lower()
        assert config.chain(84532).relay_url is None
        assert config.domain_name == "AssociatedAccounts"
        assert config.domain_version == "1"
        assert config.log_level == "INFO"
        assert config.signing_policy.order[0] is SigningMethod.RAW_DIGEST

    def test_per_chain_overrides(self):
        config = AssociationConfig.from_env({
            "ACCOUNTLINK_RPC_URL_SEPOLIA": "http://sepolia.local",
            "ASSOCIATIONS_STORE_PROXY_BASE_SEPOLIA": PROXY,
            "ACCOUNTLINK_RELAY_URL_OPTIMISM_SEPOLIA": "https://relay.local",
        })
        assert config.chain(11155111).rpc_url == "http://sepolia.local"
        assert config.chain(84532).associations_proxy.lower() == PROXY
        assert config.chain(11155111).associations_proxy.lower() != PROXY
        assert config.chain(11155420).relay_url == "https://relay.local"

    def test_generic_proxy_fallback(self):
        config = AssociationConfig.from_env({"ASSOCIATIONS_STORE_PROXY": PROXY})
        assert all(c.associations_proxy.lower() == PROXY for c in config.chains.values())

    def test_signing_order(self):
        config = AssociationConfig.from_env({"ACCOUNTLINK_SIGNING_ORDER": "typed-v4,personal-sign,raw-digest"})
        assert config.signing_policy.order == (SigningMethod.TYPED_V4, SigningMethod.RAW_DIGEST)

    def test_bad_signing_order(self):
        with pytest.raises(ValueError):
            AssociationConfig.from_env({"ACCOUNTLINK_SIGNING_ORDER": "sign-anything"})

    def test_bad_proxy(self):
        with pytest.raises(ValueError):
            AssociationConfig.from_env({"ASSOCIATIONS_STORE_PROXY": "nope"})

    def test_domain_override(self):
        config = AssociationConfig.from_env({"ACCOUNTLINK_DOMAIN_VERSION": "2"})
        assert config.domain_version == "2"


class TestChainLookup:
    def test_unknown_chain(self):
        config = AssociationConfig(chains={1: ChainConfig(chain_id=1, rpc_url="http://x")})
        with pytest.raises(KeyError):
            config.chain(2)


class TestLogging:
    def test_filter_injects_handshake_id(self):
        record = logging.LogRecord("accountlink", logging.INFO, __file__, 1, "hello", None, None)
        token = handshake_id_var.set("abc123")
        try:
            HandshakeIdFilter().filter(record)
        finally:
            handshake_id_var.reset(token)
        assert record.handshake_id == "abc123"

    def test_json_output(self):
        stream = io.StringIO()
        logger = setup_structured_logging("DEBUG", stream=stream)
        token = handshake_id_var.set("hs-1")
        try:
            logging.getLogger("accountlink.test").info("signed digest")
        finally:
            handshake_id_var.reset(token)
        entry = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert entry["message"] == "signed digest"
        assert entry["handshake_id"] == "hs-1"
        assert entry["level"] == "INFO"
        assert entry["service"] == "accountlink"
        assert logger.name == "accountlink"

    def test_handler_attached_once(self):
        logger = setup_structured_logging("INFO", stream=io.StringIO())
        setup_structured_logging("WARNING", stream=io.StringIO())
        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING

    def test_explicit_handshake_id_wins(self):
        record = logging.LogRecord("accountlink", logging.INFO, __file__, 1, "hello", None, None)
        record.handshake_id = "explicit"
        token = handshake_id_var.set("ambient")
        try:
            HandshakeIdFilter().filter(record)
        finally:
            handshake_id_var.reset(token)
        assert record.handshake_id == "explicit"

    def test_short_hex(self):
        assert short_hex(b"\x01\x02") == "0x0102"
        assert short_hex(bytes(range(32))) == "0x000102…1d1e1f"
