"""accountlink.logs — JSON log lines tagged with the handshake they belong to."""

import logging
from contextvars import ContextVar
from typing import IO, Optional

# Set by the orchestrator for the duration of initiate()/approve().
handshake_id_var: ContextVar[str] = ContextVar("handshake_id", default="")

LOG_FIELDS = ("asctime", "levelname", "name", "message", "handshake_id")


class HandshakeIdFilter(logging.Filter):
    """Stamps records with the current handshake unless the caller passed one."""

    def filter(self, record):
        if not getattr(record, "handshake_id", ""):
            record.handshake_id = handshake_id_var.get()
        return True


def setup_structured_logging(level: str = "INFO", stream: Optional[IO[str]] = None) -> logging.Logger:
    """Send ``accountlink.*`` logs to ``stream`` (stderr) as one JSON object per line.

    Calling it again only changes the level; the handler is attached once.
    """
    from pythonjsonlogger.json import JsonFormatter

    logger = logging.getLogger("accountlink")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not any(isinstance(h.formatter, JsonFormatter) for h in logger.handlers):
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JsonFormatter(
            fmt=" ".join(f"%({name})s" for name in LOG_FIELDS),
            rename_fields={"asctime": "timestamp", "levelname": "level"},
            static_fields={"service": "accountlink"},
        ))
        handler.addFilter(HandshakeIdFilter())
        logger.addHandler(handler)

    return logger


def short_hex(value: bytes, keep: int = 6) -> str:
    """Abbreviate signatures and digests for log lines."""
    h = value.hex()
    if len(h) <= keep * 2:
        return "0x" + h
    return f"0x{h[:keep]}…{h[-keep:]}"
