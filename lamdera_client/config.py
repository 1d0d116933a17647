from __future__ import annotations
import random
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from lamdera_client.retry import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_RETRY_MAX_DELAY,
    RETRY_EXPONENTIAL_BASE,
    RETRY_JITTER_RANGE,
    RetryPolicy,
)
from lamdera_wire.frame import DEFAULT_DISCRIMINANT
from lamdera_wire.log import get_logger
from lamdera_wire.session import create_session_cookie, extract_session_from_cookie, generate_session_id

logger = get_logger(__name__)

DEFAULT_INITIAL_DELAY_MAX = 1000
READY_STATE_SYNC_INTERVAL = 100

# Option names as used by existing JavaScript clients
_CAMEL_CASE_KEYS = {
    "debugMaxChars": "debug_max_chars",
    "duVariant": "discriminant",
    "maxRetries": "max_retries",
    "retryBaseDelay": "retry_base_delay",
    "retryMaxDelay": "retry_max_delay",
    "backoffFactor": "backoff_factor",
    "jitterRange": "jitter_range",
    "initialDelayMax": "initial_delay_max",
    "statusSyncInterval": "status_sync_interval",
    "sessionId": "session_id",
    "sendCookieHeader": "send_cookie_header",
}


class ConfigError(ValueError):
    """Raised when connection options are invalid."""
    pass


@dataclass
class ConnectionOptions:
    """
    Tunables for a LamderaSocket. Delays are in milliseconds.

    When both ``cookie`` and ``session_id`` are given the cookie wins, provided
    a sid can be extracted from it.
    """
    debug: bool = False
    debug_max_chars: int = 0            # 0 = unlimited
    discriminant: int = DEFAULT_DISCRIMINANT
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY
    retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY
    backoff_factor: float = RETRY_EXPONENTIAL_BASE
    jitter_range: float = RETRY_JITTER_RANGE
    initial_delay_max: float = DEFAULT_INITIAL_DELAY_MAX
    status_sync_interval: float = READY_STATE_SYNC_INTERVAL
    session_id: Optional[str] = None
    cookie: Optional[str] = None
    send_cookie_header: bool = True

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if not isinstance(self.discriminant, int) or not 0 <= self.discriminant <= 0xFF:
            raise ConfigError(f"'discriminant' must be a byte (0-255), got {self.discriminant!r}")
        if not isinstance(self.max_retries, int) or self.max_retries < 0:
            raise ConfigError(f"'max_retries' must be a non-negative integer, got {self.max_retries!r}")
        if not isinstance(self.debug_max_chars, int) or self.debug_max_chars < 0:
            raise ConfigError("'debug_max_chars' must be a non-negative integer")
        for name in ("retry_base_delay", "retry_max_delay", "jitter_range",
                     "initial_delay_max", "status_sync_interval"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value < 0:
                raise ConfigError(f"'{name}' must be a non-negative number, got {value!r}")
        if self.status_sync_interval == 0:
            raise ConfigError("'status_sync_interval' must be greater than zero")
        if not isinstance(self.backoff_factor, (int, float)) or self.backoff_factor < 1:
            raise ConfigError("'backoff_factor' must be at least 1")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'ConnectionOptions':
        """Build options from a dict using snake_case or camelCase keys"""
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = _CAMEL_CASE_KEYS.get(key, key)
            if name not in known:
                logger.warning("Ignoring unknown connection option %r", key)
                continue
            kwargs[name] = value
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: Path) -> 'ConnectionOptions':
        """Load options from a YAML file; an empty file gives the defaults"""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping of options")
        return cls.from_mapping(data)

    def resolve_identity(self, rng: Optional[random.Random] = None) -> Tuple[str, str]:
        """Return (session_id, cookie) honouring cookie > session_id > generated"""
        if self.cookie:
            session_id = extract_session_from_cookie(self.cookie) or generate_session_id(rng)
            return session_id, self.cookie
        if self.session_id:
            return self.session_id, create_session_cookie(self.session_id)
        session_id = generate_session_id(rng)
        return session_id, create_session_cookie(session_id)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            backoff_factor=self.backoff_factor,
            jitter_range=self.jitter_range,
            max_retries=self.max_retries,
        )
