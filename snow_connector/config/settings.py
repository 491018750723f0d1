"""Settings loader with environment variable and Docker secrets integration."""
from __future__ import annotations
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..core.servicenow.client import instance_url

logger = logging.getLogger(__name__)

SECRETS_DIR = Path("/run/secrets")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 10000
DEFAULT_REQUEST_TIMEOUT = 10.0


def _load_secret_from_file(secret_name: str, env_var: str | None = None) -> str | None:
    """
    Load secret from /run/secrets (Docker secrets pattern).

    Priority:
    1. /run/secrets/{secret_name} (Docker secrets mount)
    2. Environment variable (fallback)

    Args:
        secret_name: Name of the secret file in /run/secrets
        env_var: Optional environment variable name to check as fallback

    Returns:
        Secret value or None if not found
    """
    secret_file = SECRETS_DIR / secret_name

    if secret_file.is_file():
        try:
            secret_value = secret_file.read_text().strip()
            if secret_value:
                logger.debug("[settings] Loaded %s from %s", secret_name, SECRETS_DIR)
                return secret_value
        except OSError as e:
            logger.warning("[settings] Failed to read %s: %s", secret_file, e)

    if env_var:
        secret_value = os.getenv(env_var)
        if secret_value:
            logger.debug("[settings] Loaded %s from environment (fallback)", env_var)
            return secret_value

    return None


def _require(var_name: str, value: Optional[str]) -> str:
    if not value:
        raise RuntimeError(f"Environment variable {var_name} is required.")
    return value


def _int_setting(var_name: str, default: int, minimum: int, maximum: int) -> int:
    raw = os.environ.get(var_name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{var_name} must be an integer (got {raw!r}).") from exc
    if not minimum <= value <= maximum:
        raise RuntimeError(f"{var_name} must be between {minimum} and {maximum} (got {value}).")
    return value


def _float_setting(var_name: str, default: float) -> float:
    raw = os.environ.get(var_name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{var_name} must be a number (got {raw!r}).") from exc
    if value <= 0:
        raise RuntimeError(f"{var_name} must be positive (got {value}).")
    return value


@dataclass
class AppConfig:
    """Connector configuration container."""
    # Instance
    deployment: str
    username: str
    password: str = field(repr=False, default="")
    base_url_override: str = ""

    # Paging / transport
    page_size: int = DEFAULT_PAGE_SIZE
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT

    # User listing filter
    allowed_domains: list[str] = field(default_factory=list)

    # Service catalog
    catalog_id: str = ""
    category_id: str = ""

    @property
    def base_url(self) -> str:
        """Instance URL: explicit override, else ``https://<deployment>.service-now.com``."""
        if self.base_url_override:
            return self.base_url_override.rstrip("/")
        return instance_url(self.deployment)


def load_settings() -> AppConfig:
    """Load connector settings from the environment and /run/secrets.

    Raises:
        RuntimeError: If a required value is missing or a numeric value is invalid
    """
    base_url_override = os.environ.get("SERVICENOW_BASE_URL", "").strip()
    deployment = os.environ.get("SERVICENOW_DEPLOYMENT", "").strip()
    if not base_url_override:
        _require("SERVICENOW_DEPLOYMENT", deployment)

    username = _require("SERVICENOW_USERNAME", os.environ.get("SERVICENOW_USERNAME", "").strip())
    password = _require(
        "SERVICENOW_PASSWORD",
        _load_secret_from_file("servicenow_password", "SERVICENOW_PASSWORD"),
    )

    page_size = _int_setting("SERVICENOW_PAGE_SIZE", DEFAULT_PAGE_SIZE, 1, MAX_PAGE_SIZE)
    request_timeout = _float_setting("SERVICENOW_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT)

    allowed_domains = [
        domain.strip().lower()
        for domain in os.environ.get("SERVICENOW_ALLOWED_DOMAINS", "").split(",")
        if domain.strip()
    ]

    config = AppConfig(
        deployment=deployment,
        username=username,
        password=password,
        base_url_override=base_url_override,
        page_size=page_size,
        request_timeout=request_timeout,
        allowed_domains=allowed_domains,
        catalog_id=os.environ.get("SERVICENOW_CATALOG_ID", "").strip(),
        category_id=os.environ.get("SERVICENOW_CATEGORY_ID", "").strip(),
    )

    logger.info(
        "[settings] instance=%s; user=%s; page_size=%d",
        config.base_url, config.username, config.page_size,
    )
    return config
