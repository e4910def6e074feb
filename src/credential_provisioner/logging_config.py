"""Logging configuration for the credential provisioner.

All modules log through children of the package logger. Provisioned
secrets must never reach a log sink, so the package handler carries a
filter that scrubs any value registered with ``register_secret``. Secrets
that are discarded are released with ``unregister_secret``.
"""

from __future__ import annotations

import logging
import re
import sys
import threading
from collections import OrderedDict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from credential_provisioner.config import Config

LOGGER_NAME = "credential_provisioner"

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

REDACTED = "***"

# Oldest registrations are dropped beyond this many live secrets
MAX_REGISTERED_SECRETS = 256

# Secrets shorter than this are only masked as whole tokens
MIN_SUBSTRING_LENGTH = 6

_logging_configured = False


class SecretRedactingFilter(logging.Filter):
    """Replace registered secret values in rendered log messages.

    Secrets are kept most-recently-registered last and bounded by
    ``max_secrets``. Values shorter than ``MIN_SUBSTRING_LENGTH`` are
    matched only where they are not part of a longer word, so that a short
    token does not mask unrelated text.
    """

    def __init__(self, max_secrets: int = MAX_REGISTERED_SECRETS) -> None:
        super().__init__()
        self._max_secrets = max_secrets
        self._secrets: OrderedDict[str, re.Pattern[str] | None] = OrderedDict()
        self._lock = threading.Lock()

    def add(self, secret: str) -> None:
        pattern = None
        if len(secret) < MIN_SUBSTRING_LENGTH:
            pattern = re.compile(rf"(?<![\w-]){re.escape(secret)}(?![\w-])")
        with self._lock:
            self._secrets[secret] = pattern
            self._secrets.move_to_end(secret)
            while len(self._secrets) > self._max_secrets:
                self._secrets.popitem(last=False)

    def discard(self, secret: str) -> None:
        with self._lock:
            self._secrets.pop(secret, None)

    def clear(self) -> None:
        with self._lock:
            self._secrets.clear()

    def __len__(self) -> int:
        return len(self._secrets)

    def __contains__(self, secret: object) -> bool:
        return secret in self._secrets

    def filter(self, record: logging.LogRecord) -> bool:
        with self._lock:
            secrets = tuple(self._secrets.items())
        if not secrets:
            return True

        message = record.getMessage()
        scrubbed = message
        for secret, pattern in secrets:
            if pattern is None:
                scrubbed = scrubbed.replace(secret, REDACTED)
            else:
                scrubbed = pattern.sub(REDACTED, scrubbed)

        if scrubbed != message:
            record.msg = scrubbed
            record.args = None
        return True


_redacting_filter = SecretRedactingFilter()


def register_secret(secret: str | None) -> None:
    """Ensure a secret value is masked if it ever appears in a log line.

    Args:
        secret: Credential, token or verifier to mask
    """
    if secret:
        _redacting_filter.add(secret)


def unregister_secret(secret: str | None) -> None:
    """Stop masking a secret that has been discarded or revoked.

    Args:
        secret: Previously registered value
    """
    if secret:
        _redacting_filter.discard(secret)


def setup_logging(config: Config) -> None:
    """Configure the package logger.

    Attaches a single stderr handler with the redacting filter. Calling
    this again only updates the level.

    Args:
        config: Application configuration containing log_level setting
    """
    global _logging_configured

    log_level = getattr(logging, config.log_level.value)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)

    if _logging_configured:
        for handler in logger.handlers:
            handler.setLevel(log_level)
        return

    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(_redacting_filter)
    logger.addHandler(handler)

    logger.propagate = False

    _logging_configured = True

    logger.debug("Logging configured with level %s", config.log_level.value)


def get_logger(name: str) -> logging.Logger:
    """Get a logger that is a child of the package logger.

    Args:
        name: Logger name, typically __name__ of the calling module

    Returns:
        Logger instance
    """
    if name.startswith(LOGGER_NAME):
        logger = logging.getLogger(name)
    else:
        logger = logging.getLogger(f"{LOGGER_NAME}.{name}")

    # Records are scrubbed even when a host app routes them to its own handlers
    if _redacting_filter not in logger.filters:
        logger.addFilter(_redacting_filter)
    return logger


def reset_logging() -> None:
    """Reset logging configuration.

    Used primarily for testing to allow re-initialization.
    """
    global _logging_configured
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    _redacting_filter.clear()
    _logging_configured = False
