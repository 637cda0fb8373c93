"""Logging configuration with secret redaction for the rebalancer."""

from __future__ import annotations

import logging
import re
import sys
from typing import IO, Any, Callable, Optional

REDACTED = "***REDACTED***"

_SENSITIVE_KEYS = (
    "private_key",
    "privateKey",
    "wallet_secret",
    "walletSecret",
    "api_key_secret",
    "apiKeySecret",
    "api_key",
    "apiKey",
    "secret",
    "signature",
    "mnemonic",
)
_KEY_PATTERN = "|".join(re.escape(key) for key in sorted(_SENSITIVE_KEYS, key=len, reverse=True))
# key: value / key=value / 'key': 'value' forms, as found in dict reprs and query strings.
_KEY_VALUE_RE = re.compile(
    rf"""(?P<key>['"]?(?:{_KEY_PATTERN})['"]?\s*[:=]\s*)(?:(?P<quote>['"])[^'"]*(?P=quote)|[^'"&\s,}}]+)""",
    re.IGNORECASE,
)
# Bare 32-byte hex strings are private keys as far as logs are concerned.
_HEX_KEY_RE = re.compile(r"\b0x[0-9a-fA-F]{64}\b")

_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def _mask(match: "re.Match[str]") -> str:
    quote = match.group("quote") or ""
    return f"{match.group('key')}{quote}{REDACTED}{quote}"


def redact(text: str) -> str:
    text = _KEY_VALUE_RE.sub(_mask, text)
    return _HEX_KEY_RE.sub(REDACTED, text)


def _redact_record(record: logging.LogRecord) -> None:
    try:
        message = record.getMessage()
    except (TypeError, ValueError):
        return
    redacted = redact(message)
    if redacted != message:
        record.msg = redacted
        record.args = None


class RedactingFilter(logging.Filter):
    """Handler filter for setups that bypass :func:`configure_logging`."""

    def filter(self, record: logging.LogRecord) -> bool:
        _redact_record(record)
        return True


def _install_record_factory() -> None:
    current: Callable[..., logging.LogRecord] = logging.getLogRecordFactory()
    if getattr(current, "_redacting", False):
        return

    def factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = current(*args, **kwargs)
        _redact_record(record)
        return record

    factory._redacting = True  # type: ignore[attr-defined]
    logging.setLogRecordFactory(factory)


def debug_to_logging_level(debug_level: int) -> int:
    if debug_level <= 0:
        return logging.WARNING
    if debug_level == 1:
        return logging.INFO
    return logging.DEBUG


def configure_logging(debug: int = 1, stream_target: Optional[IO[Any]] = None) -> logging.Logger:
    """Configure the root logger and return it.

    ``debug`` maps 0 to WARNING, 1 to INFO and 2+ to DEBUG. Redaction happens
    when records are created, so handlers attached later by third-party code
    never see secrets either.
    """

    _install_record_factory()
    level = debug_to_logging_level(debug)
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_rebalancer_handler", False):
            root.removeHandler(handler)
    handler = logging.StreamHandler(stream_target or sys.stderr)
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler.addFilter(RedactingFilter())
    handler._rebalancer_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level)
    logging.getLogger("rebalancer").setLevel(level)
    return root
