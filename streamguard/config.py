"""Config loading for StreamGuard.

Reads `.streamguard/config.yaml` (or `~/.streamguard/config.yaml`).
Raises SystemExit on parse errors, a missing `version` field or invalid enum
values. If no config file is found, returns default values (safe to run
without config: in-memory stores, ephemeral key-encryption key).

Config search order:
  1. `config_path` argument (tests, explicit override)
  2. STREAMGUARD_CONFIG environment variable (if set)
  3. `.streamguard/config.yaml` (working directory, development)
  4. `~/.streamguard/config.yaml` (home directory, production)

Environment variable overrides (applied last, with or without a file):
  STREAMGUARD_PORT               — server.port
  STREAMGUARD_REDIS_URL          — storage.redis_url (and switches counters to redis)
  STREAMGUARD_KEY_ENCRYPTION_KEY — keys.encryption_key (Fernet key, urlsafe base64)
  STREAMGUARD_GATEWAY_SECRET     — server.gateway_secret
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

from streamguard.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1
SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# ─── Validation sets ─────────────────────────────────────────────────────────

VALID_DOCUMENT_BACKENDS: frozenset[str] = frozenset({"memory", "sqlite"})
VALID_COUNTER_BACKENDS: frozenset[str] = frozenset({"memory", "redis"})

DEFAULT_CONFIG_PATHS = [
    ".streamguard/config.yaml",
    os.path.expanduser("~/.streamguard/config.yaml"),
]


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class ServerConfig:
    """HTTP binding, CORS and the gateway trust boundary.

    gateway_secret: when set, identity headers are honored only on requests
                    that carry it in X-Gateway-Secret. Leave unset only when
                    the gateway strips client-supplied identity headers.
    """

    host: str = "127.0.0.1"
    port: int = 8080
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])
    gateway_secret: Optional[str] = None


@dataclass
class StorageConfig:
    """Document store and counter store selection.

    document_backend: "memory" | "sqlite"
    counter_backend:  "memory" | "redis"
    """

    document_backend: str = "memory"
    sqlite_path: str = "~/.streamguard/streamguard.db"
    counter_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"


@dataclass
class RateLimitSettings:
    """Request guard configuration.

    fail_closed: deny requests when the counter store is unreachable
                 (default False: availability wins, the outage is audited).
    """

    enabled: bool = True
    fail_closed: bool = False
    flood_window_ms: int = 5 * 60 * 1000
    flood_max_requests: int = 10


@dataclass
class InputValidationSettings:
    """JSON body inspection in the request guard.

    exempt_paths are served unscanned; the moderation endpoint receives
    hostile text on purpose and classifies it itself.
    """

    enabled: bool = True
    exempt_paths: list[str] = field(default_factory=lambda: ["/api/security/moderate"])


@dataclass
class ModerationConfig:
    """Text and media moderation thresholds."""

    max_message_length: int = 500
    max_repeated_characters: int = 3
    allowed_domains: list[str] = field(
        default_factory=lambda: ["youtube.com", "twitch.tv", "twitter.com", "instagram.com"]
    )
    denylist: list[str] = field(
        default_factory=lambda: ["spam", "scam", "fake", "bot", "hack", "cheat", "exploit"]
    )
    spam_threshold: float = 0.7
    toxicity_threshold: float = 0.8
    enable_profanity_filter: bool = True
    enable_spam_detection: bool = True
    enable_pii_detection: bool = True
    enable_link_filtering: bool = True
    enable_toxicity_detection: bool = True
    classifier_url: Optional[str] = None
    classifier_timeout_s: float = 5.0


@dataclass
class FraudConfig:
    """Fraud engine collaborators."""

    payment_processor_url: Optional[str] = None
    payment_processor_timeout_s: float = 3.0


@dataclass
class KeyRotationConfig:
    """Signing-key rotation policy.

    encryption_key: Fernet key used to encrypt key material at rest. When
    unset an ephemeral key is generated at startup (keys do not survive a
    restart).
    """

    rotation_interval_hours: float = 6
    max_active_keys: int = 3
    key_expiration_hours: float = 24
    emergency_rotation_threshold: int = 100
    encryption_key: Optional[str] = None


@dataclass
class AuditSettings:
    """Audit trail write policy."""

    write_retries: int = 3
    retry_backoff_ms: int = 50
    anonymization_salt: str = "streamguard"


@dataclass
class AlertConfig:
    """Security alert delivery."""

    webhook_url: Optional[str] = None
    webhook_timeout_s: float = 5.0
    default_channels: list[str] = field(default_factory=lambda: ["email", "slack"])


@dataclass
class ObjectStorageConfig:
    """Signed-URL issuing for the local object storage adapter."""

    base_url: str = "https://media.localhost"
    signing_secret: Optional[str] = None


@dataclass
class SecurityHeadersConfig:
    """Response header policy."""

    hsts_max_age: int = 31536000
    content_security_policy: list[str] = field(
        default_factory=lambda: [
            "default-src 'self'",
            "script-src 'self' 'unsafe-inline'",
            "style-src 'self' 'unsafe-inline'",
            "img-src 'self' data: https:",
            "media-src 'self' blob: https:",
            "connect-src 'self' https: wss:",
            "font-src 'self' data:",
            "object-src 'none'",
            "base-uri 'self'",
            "form-action 'self'",
            "frame-ancestors 'none'",
            "upgrade-insecure-requests",
        ]
    )


@dataclass
class Config:
    """Root configuration object populated from .streamguard/config.yaml.

    All fields have safe defaults: StreamGuard can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    input_validation: InputValidationSettings = field(default_factory=InputValidationSettings)
    moderation: ModerationConfig = field(default_factory=ModerationConfig)
    fraud: FraudConfig = field(default_factory=FraudConfig)
    keys: KeyRotationConfig = field(default_factory=KeyRotationConfig)
    audit: AuditSettings = field(default_factory=AuditSettings)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    object_storage: ObjectStorageConfig = field(default_factory=ObjectStorageConfig)
    security_headers: SecurityHeadersConfig = field(default_factory=SecurityHeadersConfig)
    path: Optional[str] = None

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently
        ignored.

        Raises:
            SystemExit(1): On an unsupported storage backend or a non-positive
                           keys.max_active_keys.
        """
        # ── Storage ───────────────────────────────────────────────────────────
        storage = _section(StorageConfig, raw.get("storage"))
        if storage.document_backend not in VALID_DOCUMENT_BACKENDS:
            _config_error(
                f"Invalid storage.document_backend: '{storage.document_backend}'. "
                f"Supported values: {sorted(VALID_DOCUMENT_BACKENDS)}."
            )
        if storage.counter_backend not in VALID_COUNTER_BACKENDS:
            _config_error(
                f"Invalid storage.counter_backend: '{storage.counter_backend}'. "
                f"Supported values: {sorted(VALID_COUNTER_BACKENDS)}."
            )

        # ── Keys ──────────────────────────────────────────────────────────────
        keys = _section(KeyRotationConfig, raw.get("keys"))
        if keys.max_active_keys < 1:
            _config_error("keys.max_active_keys must be at least 1.")

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            server=_section(ServerConfig, raw.get("server")),
            storage=storage,
            rate_limit=_section(RateLimitSettings, raw.get("rate_limit")),
            input_validation=_section(InputValidationSettings, raw.get("input_validation")),
            moderation=_section(ModerationConfig, raw.get("moderation")),
            fraud=_section(FraudConfig, raw.get("fraud")),
            keys=keys,
            audit=_section(AuditSettings, raw.get("audit")),
            alerts=_section(AlertConfig, raw.get("alerts")),
            object_storage=_section(ObjectStorageConfig, raw.get("object_storage")),
            security_headers=_section(SecurityHeadersConfig, raw.get("security_headers")),
            path=path,
        )


def _section(cls: type, raw: Any) -> Any:
    """Build a section dataclass from a YAML mapping, ignoring unknown keys."""
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        _config_error(f"Section for {cls.__name__} must be a mapping, got {type(raw).__name__}.")
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    return cls(**known)


def _config_error(message: str) -> None:
    print(f"CONFIG ERROR: {message}", file=sys.stderr)
    raise SystemExit(1)


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate StreamGuard configuration.

    If no file is found at any search path, returns default Config (not an
    error). If a file is found but invalid, writes the error to stderr and
    raises SystemExit(1).

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field,
                       unsupported version, invalid enum values, or an
                       invalid ``STREAMGUARD_PORT``.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("STREAMGUARD_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _config_error(
            f"Failed to parse {found_path}: {exc}\n"
            "StreamGuard refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _config_error(f"Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _config_error(
                f"{found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _config_error(
            f"{found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    version = raw.get("version")
    if version is None:
        _config_error(
            f"{found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _config_error(
            f"Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    if config.server.host == "0.0.0.0":
        logger.warning(
            "SECURITY WARNING: StreamGuard is configured to bind on 0.0.0.0 (all interfaces). "
            "Put it behind the edge proxy that sets the identity headers."
        )
    if config.keys.encryption_key is None:
        logger.warning(
            "keys.encryption_key is not set — an ephemeral key will be generated and "
            "signing keys will not survive a restart"
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        document_backend=config.storage.document_backend,
        counter_backend=config.storage.counter_backend,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Raises:
        SystemExit(1): If STREAMGUARD_PORT is set but not a valid integer.
    """
    env_port = os.environ.get("STREAMGUARD_PORT")
    if env_port is not None:
        try:
            config.server.port = int(env_port)
        except ValueError:
            _config_error(
                f"STREAMGUARD_PORT environment variable is not a valid integer: '{env_port}'"
            )

    env_redis = os.environ.get("STREAMGUARD_REDIS_URL")
    if env_redis:
        config.storage.redis_url = env_redis
        config.storage.counter_backend = "redis"

    env_key = os.environ.get("STREAMGUARD_KEY_ENCRYPTION_KEY")
    if env_key:
        config.keys.encryption_key = env_key

    env_gateway = os.environ.get("STREAMGUARD_GATEWAY_SECRET")
    if env_gateway:
        config.server.gateway_secret = env_gateway
