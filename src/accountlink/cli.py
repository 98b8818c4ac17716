#!/usr/bin/env python3
"""
accountlink CLI — Offline helpers for association handshakes.

Commands:
    interop     - Encode a chain id + address as an interop address
    digest      - Recompute an envelope's digest and compare it
    typed-data  - Print the EIP-712 JSON a wallet would be asked to sign
"""

import argparse
import json
import sys


def _output(data: dict, args: argparse.Namespace, human_fn=None):
    """Output data as JSON or pretty-printed."""
    if getattr(args, 'json', False) or human_fn is None:
        print(json.dumps(data, indent=2, default=str))
    else:
        human_fn(data)


def _load_envelope(path: str):
    from accountlink.envelope import HandshakeEnvelope

    with open(path) as f:
        return HandshakeEnvelope.parse(f.read())


def _digests():
    from accountlink.config import AssociationConfig
    from accountlink.eip712 import DigestComputer

    config = AssociationConfig.from_env()
    return DigestComputer(config.domain_name, config.domain_version)


# ─── Commands ──────────────────────────────────────────────────────

def cmd_interop(args):
    """Encode an interop address."""
    from accountlink import interop

    result = {
        "chain_id": args.chain_id,
        "address": interop.InteropAddress(args.chain_id, args.address).address,
        "interop": interop.to_hex(args.chain_id, args.address),
    }

    def human(d):
        print(d["interop"])

    _output(result, args, human)
    return result


def cmd_digest(args):
    """Recompute and compare an envelope digest."""
    envelope = _load_envelope(args.envelope)
    recomputed = "0x" + _digests().record_digest(envelope.record()).hex()
    result = {
        "delivered": envelope.digest,
        "recomputed": recomputed,
        "match": recomputed == envelope.digest,
    }

    def human(d):
        mark = "✅" if d["match"] else "❌"
        print(f"{mark} digest {'matches' if d['match'] else 'MISMATCH'}")
        print(f"   Delivered:  {d['delivered']}")
        print(f"   Recomputed: {d['recomputed']}")

    _output(result, args, human)
    return result


def cmd_typed_data(args):
    """Print EIP-712 typed data for an envelope."""
    envelope = _load_envelope(args.envelope)
    result = _digests().typed_data(envelope.record())
    _output(result, args)
    return result


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="accountlink", description="Association handshake helpers")
    parser.add_argument("--json", action="store_true", help="JSON output")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("interop", help="Encode an interop address")
    p.add_argument("chain_id", type=int)
    p.add_argument("address")
    p.set_defaults(func=cmd_interop)

    p = sub.add_parser("digest", help="Recompute an envelope digest")
    p.add_argument("envelope", help="Path to envelope JSON")
    p.set_defaults(func=cmd_digest)

    p = sub.add_parser("typed-data", help="Print EIP-712 typed data for an envelope")
    p.add_argument("envelope", help="Path to envelope JSON")
    p.set_defaults(func=cmd_typed_data)

    return parser


def main(argv=None):
    """CLI entry point. Returns result dict for testing."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        from accountlink.config import AssociationConfig
        from accountlink.logs import setup_structured_logging

        setup_structured_logging(AssociationConfig.from_env().log_level)
        return args.func(args)
    except FileNotFoundError as e:
        print(f"❌ File not found: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
