"""
core/config.py -- TicketGate settings, read once from the environment.

Every environment variable the service honours is a field on Settings; the
rest of the code calls get_settings() and never touches os.environ.

get_settings() is wrapped in lru_cache, so the first call builds Settings
from the process environment plus an optional .env file and later calls
return that same object. Field names map to upper-case variable names
(idle timeout -> SESSION_IDLE_TIMEOUT_MINUTES).

Startup checks (model validators):
  - SECRET_KEY missing: generated with a warning when DEBUG=true, otherwise
    startup fails. The key signs session tokens and, unless
    AUDIT_SECRET_KEY is set, the audit integrity digests.
  - SECRET_KEY shorter than 32 characters is rejected.
  - The absolute session timeout may not be shorter than the idle timeout.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, audit/, or tracker/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("ticketgate.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.

    List-valued fields (allowed_hosts, cors_origins, scanner_exempt_paths)
    are read from the environment as JSON arrays, e.g.
    ALLOWED_HOSTS='["dash.example.com"]'.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    environment: str = "production"
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = "sqlite:///data/ticketgate_users.db"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    secure_cookies: bool = False
    # Use the first X-Forwarded-For hop as the client address. Only enable
    # behind a reverse proxy that overwrites the header.
    trust_forwarded_for: bool = False

    # ------------------------------------------------------------------
    # Sessions and lockout
    # ------------------------------------------------------------------

    session_idle_timeout_minutes: int = 15
    session_absolute_timeout_minutes: int = 60
    session_sweep_interval_seconds: int = 60
    # Terminate a session when the request address differs from the address
    # it was created from. Breaks users behind rotating proxies / carrier NAT.
    session_bind_address: bool = True
    lockout_threshold: int = 5
    lockout_minutes: int = 15

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    audit_log_dir: str = "logs/audit"
    audit_archive_dir: str = "logs/audit/archive"
    audit_retention_days: int = 2555  # ~7 years
    # Falls back to secret_key when empty.
    audit_secret_key: str = ""

    # ------------------------------------------------------------------
    # Content scanner
    # ------------------------------------------------------------------

    scanner_enabled: bool = True
    scanner_mode: Literal["block", "redact"] = "block"
    scanner_detect_email: bool = False
    scanner_context_hint: str = ""
    scanner_exempt_paths: list[str] = [
        "/api/v1/auth/login",
        "/api/v1/auth/change-password",
    ]

    # ------------------------------------------------------------------
    # Issue tracker (upstream)
    # ------------------------------------------------------------------

    tracker_base_url: str = ""
    tracker_email: str = ""
    tracker_api_token: str = ""
    tracker_timeout_seconds: float = 30.0

    # ------------------------------------------------------------------
    # First-boot admin
    # ------------------------------------------------------------------

    default_admin_username: str = "admin"
    default_admin_email: str = "admin@localhost"
    # Empty = generate a random one-time password at first boot.
    default_admin_password: str = ""

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    api_rate_limit: str = "120/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Key and timeout policy.

        DEBUG=true without SECRET_KEY gets a random key, so neither sessions
        nor audit digests survive a restart. Without DEBUG a missing
        key stops startup. Keys under 32 characters are always rejected.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.session_absolute_timeout_minutes < self.session_idle_timeout_minutes:
            raise ValueError("SESSION_ABSOLUTE_TIMEOUT_MINUTES must not be shorter than the idle timeout.")
        return self

    @property
    def audit_key(self) -> str:
        return self.audit_secret_key or self.secret_key


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
