"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the auth service happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

How settings are resolved:
  get_settings() builds Settings on first use and caches it (lru_cache), so
  every caller in the process sees one configuration. Values come from the
  environment and an optional .env file; SECRET_KEY maps to secret_key and
  so on, with pydantic doing the type coercion. One after-validator checks
  the secret and the token lifetimes together once every field is known.

Security notes:
  [S1] Placeholder secrets ("default", "change-me", ...) are rejected in every
       mode. A placeholder means the deployment skipped configuration, and a
       token signed with a public value can be forged by anyone.

  [S2] SECRET_KEY shorter than 32 chars is rejected outright. HS256 signing
       relies on key entropy -- a short key weakens every issued token.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("papertrade.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'papertrade_auth.db'}"

# Values that show up in sample .env files and tutorials. Never valid as a key.
PLACEHOLDER_SECRETS: frozenset[str] = frozenset(
    {"default", "changeme", "change-me", "change-me-in-production", "secret"}
)

MIN_SECRET_LENGTH = 32


def check_signing_secret(secret: str) -> None:
    """Raise ValueError if secret is empty, a known placeholder, or too short.

    Shared by Settings (startup) and AuthService (construction) so a service
    built by hand in a script or test is held to the same rule as the app.
    """
    if not secret:
        raise ValueError("SECRET_KEY must not be empty.")
    if secret.strip().lower() in PLACEHOLDER_SECRETS:
        raise ValueError("SECRET_KEY is set to a placeholder value. Generate a real key.")
    if len(secret) < MIN_SECRET_LENGTH:
        raise ValueError(f"SECRET_KEY must be at least {MIN_SECRET_LENGTH} characters.")


class Settings(BaseSettings):
    """Auth service settings.

    Every field has a default, so Settings(debug=True) works in tests with no
    .env file. Only the secret has no usable default outside debug mode.
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
    environment: str = "development"
    log_level: str = "INFO"
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # Budget for a single auth operation against the store. 0 disables it.
    db_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    token_issuer: str = "PaperTradingApp"
    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 3600
    token_purge_interval_seconds: int = 6 * 3600

    # ------------------------------------------------------------------
    # Cookies
    # ------------------------------------------------------------------

    secure_cookies: bool = False

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cookies_secure(self) -> bool:
        """Refresh cookie gets the Secure flag in production or when forced."""
        return self.secure_cookies or self.is_production

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [S1][S2].

        Dev mode (DEBUG=true): an empty key is replaced by a random one with
            a warning. Sessions will not survive restart -- acceptable for
            local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: placeholder and short keys are rejected.
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
        check_signing_secret(self.secret_key)
        if self.access_token_expire_seconds <= 0 or self.refresh_token_expire_seconds <= 0:
            raise ValueError("Token lifetimes must be positive.")
        if self.token_purge_interval_seconds <= 0:
            raise ValueError("TOKEN_PURGE_INTERVAL_SECONDS must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
