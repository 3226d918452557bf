"""Config loading for authproxy.

Reads ``.authproxy/config.yaml`` (or ``~/.authproxy/config.yaml``).
Raises SystemExit on parse errors, a missing ``version`` field or invalid values.
If no config file is found, returns default values (safe to run in development).

Config search order:
  1. ``config_path`` argument (if provided — for testing or explicit override)
  2. AUTHPROXY_CONFIG environment variable (if set)
  3. ``.authproxy/config.yaml`` (working directory — for development)
  4. ``~/.authproxy/config.yaml`` (home directory — for production deployments)

Environment variable overrides (applied after the file, always win):
  AUTHPROXY_ENV        — environment ("development" | "production" | "test")
  AUTHPROXY_PORT       — proxy.port
  AUTHPROXY_DB_PATH    — database.path
  INTERNAL_API_BASE    — upstream.base_url
  DEFAULT_DAILY_LIMIT  — quota.daily_limit (must be a positive integer)
  SESSION_SECRET       — session.secret
  MAILTRAP_TOKEN       — mail.token
  SENDER_EMAIL         — mail.sender_email
  SENDER_NAME          — mail.sender_name
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import NoReturn, Optional
from urllib.parse import urlsplit

import yaml

from authproxy.constants import (
    DEFAULT_BLOCKED_PATHS,
    DEFAULT_DAILY_LIMIT,
    DEFAULT_UPSTREAM_TIMEOUT_SECONDS,
    INSECURE_DEFAULT_SECRET,
    OTP_HOURLY_CAP,
    OTP_RESEND_COOLDOWN_SECONDS,
    OTP_TTL_MINUTES,
    SESSION_COOKIE_NAME,
    SESSION_TTL_DAYS,
)
from authproxy.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# ─── Validation sets ─────────────────────────────────────────────────────────

VALID_ENVIRONMENTS: frozenset[str] = frozenset({"development", "production", "test"})

# soft: check then increment (small overshoot possible under concurrency)
# hard: atomic conditional increment, never exceeds the limit
VALID_ENFORCEMENT_MODES: frozenset[str] = frozenset({"soft", "hard"})

DEFAULT_CONFIG_PATHS = [
    ".authproxy/config.yaml",
    os.path.expanduser("~/.authproxy/config.yaml"),
]


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class UpstreamConfig:
    """The single internal service that admitted requests are forwarded to.

    base_url:      scheme + host (+ optional base path) of the upstream
    timeout_s:     budget for connect through response headers
    blocked_paths: exact paths refused with 404 before any key check
    """

    base_url: str = "http://127.0.0.1:8000"
    timeout_s: float = DEFAULT_UPSTREAM_TIMEOUT_SECONDS
    blocked_paths: list[str] = field(default_factory=lambda: list(DEFAULT_BLOCKED_PATHS))


@dataclass
class QuotaConfig:
    daily_limit: int = DEFAULT_DAILY_LIMIT
    enforcement: str = "soft"  # "soft" | "hard"


@dataclass
class OtpConfig:
    """One-time passcode policy.

    debug_cache keeps the last plaintext code per email in memory so it can be
    read back through ``/auth/debug/last-code``.  Refused in production.
    """

    ttl_minutes: int = OTP_TTL_MINUTES
    resend_cooldown_s: int = OTP_RESEND_COOLDOWN_SECONDS
    hourly_cap: int = OTP_HOURLY_CAP
    debug_cache: bool = False


@dataclass
class SessionConfig:
    secret: str = INSECURE_DEFAULT_SECRET
    ttl_days: int = SESSION_TTL_DAYS
    cookie_name: str = SESSION_COOKIE_NAME
    secure_cookie: Optional[bool] = None  # None = secure only in production


@dataclass
class MailConfig:
    """Transactional email settings (Mailtrap send API).

    With no token configured the service runs in debug delivery mode outside
    production: codes are logged instead of emailed.
    """

    token: Optional[str] = None
    api_url: str = "https://send.api.mailtrap.io/api/send"
    sender_email: str = "no-reply@authproxy.local"
    sender_name: str = "AuthProxy"
    timeout_s: float = 10.0


@dataclass
class DatabaseConfig:
    path: str = "~/.authproxy/authproxy.db"


@dataclass
class ProxyConfig:
    """Listener binding configuration."""

    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class Config:
    """Root configuration object populated from .authproxy/config.yaml.

    All fields have defaults suitable for local development.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    environment: str = "development"
    log_level: str = "INFO"
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    otp: OtpConfig = field(default_factory=OtpConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    mail: MailConfig = field(default_factory=MailConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    path: Optional[str] = None  # Path to the loaded config file

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def secure_cookies(self) -> bool:
        if self.session.secure_cookie is None:
            return self.is_production
        return self.session.secure_cookie

    @classmethod
    def defaults(cls) -> "Config":
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are ignored.
        Value validation happens afterwards in ``validate_config`` so that
        environment overrides are validated too.
        """
        # ── Upstream ──────────────────────────────────────────────────────────
        upstream_raw = raw.get("upstream") or {}
        upstream = UpstreamConfig(
            base_url=upstream_raw.get("base_url", UpstreamConfig.base_url),
            timeout_s=float(upstream_raw.get("timeout_s", DEFAULT_UPSTREAM_TIMEOUT_SECONDS)),
            blocked_paths=list(upstream_raw.get("blocked_paths", DEFAULT_BLOCKED_PATHS)),
        )

        # ── Quota ─────────────────────────────────────────────────────────────
        quota_raw = raw.get("quota") or {}
        quota = QuotaConfig(
            daily_limit=quota_raw.get("daily_limit", DEFAULT_DAILY_LIMIT),
            enforcement=quota_raw.get("enforcement", "soft"),
        )

        # ── OTP ───────────────────────────────────────────────────────────────
        otp_raw = raw.get("otp") or {}
        otp = OtpConfig(
            ttl_minutes=otp_raw.get("ttl_minutes", OTP_TTL_MINUTES),
            resend_cooldown_s=otp_raw.get("resend_cooldown_s", OTP_RESEND_COOLDOWN_SECONDS),
            hourly_cap=otp_raw.get("hourly_cap", OTP_HOURLY_CAP),
            debug_cache=bool(otp_raw.get("debug_cache", False)),
        )

        # ── Session ───────────────────────────────────────────────────────────
        session_raw = raw.get("session") or {}
        session = SessionConfig(
            secret=session_raw.get("secret", INSECURE_DEFAULT_SECRET),
            ttl_days=session_raw.get("ttl_days", SESSION_TTL_DAYS),
            cookie_name=session_raw.get("cookie_name", SESSION_COOKIE_NAME),
            secure_cookie=session_raw.get("secure_cookie"),
        )

        # ── Mail ──────────────────────────────────────────────────────────────
        mail_raw = raw.get("mail") or {}
        mail = MailConfig(
            token=mail_raw.get("token"),
            api_url=mail_raw.get("api_url", MailConfig.api_url),
            sender_email=mail_raw.get("sender_email", MailConfig.sender_email),
            sender_name=mail_raw.get("sender_name", MailConfig.sender_name),
            timeout_s=float(mail_raw.get("timeout_s", 10.0)),
        )

        database_raw = raw.get("database") or {}
        database = DatabaseConfig(path=database_raw.get("path", DatabaseConfig.path))

        proxy_raw = raw.get("proxy") or {}
        proxy = ProxyConfig(
            host=proxy_raw.get("host", "127.0.0.1"),
            port=proxy_raw.get("port", 8080),
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            environment=raw.get("environment", "development"),
            log_level=raw.get("log_level", "INFO"),
            upstream=upstream,
            quota=quota,
            otp=otp,
            session=session,
            mail=mail,
            database=database,
            proxy=proxy,
            path=path,
        )


# ─── Config loading ───────────────────────────────────────────────────────────


def _fail(msg: str) -> NoReturn:
    print(f"CONFIG ERROR: {msg}", file=sys.stderr)
    raise SystemExit(1)


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate authproxy configuration.

    If no file is found at any search path, defaults are used (not an error).
    If a file is found but invalid, writes an error to stderr and raises
    SystemExit(1).  Environment overrides are applied in both cases and the
    merged result is validated.

    Raises:
        SystemExit(1): On YAML parse error, missing or unsupported ``version``,
                       or any value rejected by ``validate_config``.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("AUTHPROXY_CONFIG")
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
    else:
        config = _load_file(found_path)

    _apply_env_overrides(config)
    validate_config(config)

    if config.proxy.host == "0.0.0.0":
        logger.warning(
            "SECURITY WARNING: authproxy is configured to bind on 0.0.0.0 (all interfaces). "
            "Put it behind a TLS-terminating load balancer."
        )
    if config.session.secret == INSECURE_DEFAULT_SECRET:
        logger.warning(
            "SECURITY WARNING: session.secret is not set; using the built-in development "
            "secret. Set SESSION_SECRET before exposing the dashboard."
        )

    logger.info(
        "Config loaded",
        path=found_path,
        environment=config.environment,
        upstream=config.upstream.base_url,
        daily_limit=config.quota.daily_limit,
        enforcement=config.quota.enforcement,
    )
    return config


def _load_file(found_path: str) -> Config:
    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"Failed to parse {found_path}: {exc}\n"
            "authproxy refuses to start with an invalid config."
        )
    except OSError as exc:
        _fail(f"Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"{found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(f"{found_path} is not a valid YAML mapping.")

    version = raw.get("version")
    if version is None:
        _fail(
            f"{found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    return Config.from_dict(raw, path=found_path)


def validate_config(config: Config) -> None:
    """Reject values the service cannot run with.

    Raises:
        SystemExit(1): With a human-readable message on stderr.
    """
    if config.environment not in VALID_ENVIRONMENTS:
        _fail(
            f"Invalid environment: '{config.environment}'. "
            f"Supported values: {sorted(VALID_ENVIRONMENTS)}."
        )

    parts = urlsplit(config.upstream.base_url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        _fail(
            f"upstream.base_url must be an absolute http(s) URL, "
            f"got '{config.upstream.base_url}'."
        )
    if config.upstream.timeout_s <= 0:
        _fail("upstream.timeout_s must be greater than 0.")

    limit = config.quota.daily_limit
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        _fail(f"quota.daily_limit must be a positive integer, got {limit!r}.")
    if config.quota.enforcement not in VALID_ENFORCEMENT_MODES:
        _fail(
            f"Invalid quota.enforcement: '{config.quota.enforcement}'. "
            f"Supported values: {sorted(VALID_ENFORCEMENT_MODES)}."
        )

    for name in ("ttl_minutes", "resend_cooldown_s", "hourly_cap"):
        if getattr(config.otp, name) <= 0:
            _fail(f"otp.{name} must be greater than 0.")

    if config.is_production:
        if config.otp.debug_cache:
            _fail("otp.debug_cache cannot be enabled in production.")
        if config.session.secret == INSECURE_DEFAULT_SECRET:
            _fail("session.secret (or SESSION_SECRET) must be set in production.")


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Raises:
        SystemExit(1): If a numeric override is not a valid integer.
    """
    env = os.environ

    if env.get("AUTHPROXY_ENV"):
        config.environment = env["AUTHPROXY_ENV"]

    env_port = env.get("AUTHPROXY_PORT")
    if env_port is not None:
        try:
            config.proxy.port = int(env_port)
        except ValueError:
            _fail(f"AUTHPROXY_PORT environment variable is not a valid integer: '{env_port}'")

    env_limit = env.get("DEFAULT_DAILY_LIMIT")
    if env_limit is not None:
        try:
            config.quota.daily_limit = int(env_limit)
        except ValueError:
            _fail(f"DEFAULT_DAILY_LIMIT must be a positive integer, got '{env_limit}'")

    if env.get("INTERNAL_API_BASE"):
        config.upstream.base_url = env["INTERNAL_API_BASE"]
    if env.get("AUTHPROXY_DB_PATH"):
        config.database.path = env["AUTHPROXY_DB_PATH"]
    if env.get("SESSION_SECRET"):
        config.session.secret = env["SESSION_SECRET"]
    if env.get("MAILTRAP_TOKEN"):
        config.mail.token = env["MAILTRAP_TOKEN"]
    if env.get("SENDER_EMAIL"):
        config.mail.sender_email = env["SENDER_EMAIL"]
    if env.get("SENDER_NAME"):
        config.mail.sender_name = env["SENDER_NAME"]
