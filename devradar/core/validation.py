"""
Environment validation utilities.

Ensures the service fails fast on misconfiguration while
remaining bypassable for tests via SKIP_ENV_VALIDATION.
"""

import logging
import os
from typing import Iterable, Optional
from urllib.parse import urlparse

from devradar.core.config import settings

STORE_BACKENDS = {"auto", "memory", "redis"}


class EnvValidationError(RuntimeError):
    """Raised when environment validation fails."""


def _is_valid_url(url: str) -> bool:
    parsed = urlparse(url)
    return bool(parsed.scheme and (parsed.netloc or parsed.path))


def _require(vars_required: Iterable[str], source: object) -> None:
    for var in vars_required:
        if not getattr(source, var, None):
            raise EnvValidationError(f"{var} is required in production")


def validate_env(env: Optional[str] = None, settings_obj=None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate environment configuration.

    Args:
        env: Override environment name (defaults to settings.ENV)
        settings_obj: Override settings object (defaults to devradar.core.config.settings)
        logger: Where non-strict warnings go

    Returns:
        True if validation passes.

    Raises:
        EnvValidationError when a rule is violated.
    """
    if os.getenv("SKIP_ENV_VALIDATION") == "1":
        return True

    cfg = settings_obj or settings
    log = logger or logging.getLogger("devradar")
    mode = (env or getattr(cfg, "ENV", "development") or "development").lower()
    strict = bool(getattr(cfg, "CONFIG_STRICT", False))

    for name in ("DATABASE_URL", "REDIS_URL"):
        value = getattr(cfg, name, None)
        if value and not _is_valid_url(value):
            raise EnvValidationError(f"{name} must be a valid URL")

    backend = (getattr(cfg, "STORE_BACKEND", "auto") or "auto").lower()
    if backend not in STORE_BACKENDS:
        raise EnvValidationError(f"STORE_BACKEND must be one of {sorted(STORE_BACKENDS)}")
    if backend == "redis" and not getattr(cfg, "REDIS_URL", None):
        raise EnvValidationError("STORE_BACKEND=redis requires REDIS_URL")

    if mode == "production":
        _require(["JWT_SECRET", "REDIS_URL"], cfg)
        if getattr(cfg, "TEST_DATABASE_URL", None):
            raise EnvValidationError("TEST_DATABASE_URL must not be set in production")
    else:
        if mode != "test" and getattr(cfg, "TEST_DATABASE_URL", None):
            raise EnvValidationError("TEST_DATABASE_URL is only allowed in test mode")
        missing = [key for key in ("JWT_SECRET",) if not getattr(cfg, key, None)]
        if missing:
            message = f"Missing configuration: {', '.join(missing)}"
            if strict:
                raise EnvValidationError(message)
            log.warning(message)

    grace = getattr(cfg, "PRESENCE_GRACE_SECONDS", 0)
    if grace is not None and grace < 0:
        raise EnvValidationError("PRESENCE_GRACE_SECONDS must not be negative")

    return True
