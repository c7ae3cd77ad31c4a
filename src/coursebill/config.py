"""Configuration loader with YAML file support.

Loads configuration from multiple sources with the following precedence (highest to lowest):
1. Environment variables (COURSEBILL_*)
2. Local project config (./coursebill.yaml)
3. User-global config (~/.coursebill/config.yaml)
4. Built-in defaults
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, List

import yaml

from coursebill.core import Settings, get_logger

logger = get_logger(__name__)

ENV_PREFIX = "COURSEBILL_"

# Never written back to YAML; these belong in the environment or .env
SENSITIVE_FIELDS = ["stripe_secret_key", "stripe_webhook_secret", "jwt_secret_key"]


def get_global_config_path() -> Path:
    """Get path to global config file in user's home directory."""
    return Path.home() / ".coursebill" / "config.yaml"


def get_local_config_path() -> Path:
    """Get path to local config file in current directory."""
    return Path.cwd() / "coursebill.yaml"


def load_yaml_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML config file

    Returns:
        Dictionary of configuration values, empty when the file is missing or invalid
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        logger.warning("Invalid YAML syntax", path=str(config_path), error=str(e))
        return {}
    except OSError as e:
        logger.warning("Failed to read config", path=str(config_path), error=str(e))
        return {}

    if not isinstance(config, dict):
        return {}
    return config


def merge_config(base_config: Dict[str, Any], override_config: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow-merge two config dicts; None values in the override are skipped."""
    merged = base_config.copy()
    for key, value in override_config.items():
        if value is not None:
            merged[key] = value
    return merged


def load_config() -> Settings:
    """
    Load configuration from all sources with proper precedence.

    Returns:
        Settings instance with merged configuration
    """
    config_dict: Dict[str, Any] = {}

    for path in (get_global_config_path(), get_local_config_path()):
        if path.exists():
            logger.debug("Loading config file", path=str(path))
            config_dict = merge_config(config_dict, load_yaml_config(path))

    # Init kwargs beat env vars in pydantic-settings, so drop keys the env already sets
    file_values = {}
    for key, value in config_dict.items():
        clean_key = key[len(ENV_PREFIX):].lower() if key.upper().startswith(ENV_PREFIX) else key.lower()
        if f"{ENV_PREFIX}{clean_key.upper()}" in os.environ:
            continue
        file_values[clean_key] = value

    return Settings(**file_values)


def validate_config(settings: Settings) -> List[str]:
    """
    Validate configuration and return list of issues.

    Args:
        settings: Settings instance to validate

    Returns:
        List of validation error messages (empty list if valid)
    """
    errors = []

    if not settings.database_url.startswith(
        ("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")
    ):
        errors.append(
            "database_url must be a PostgreSQL (postgresql+asyncpg://) "
            "or SQLite (sqlite+aiosqlite://) connection string"
        )

    if settings.stripe_secret_key and not settings.stripe_secret_key.startswith(
        ("sk_test_", "sk_live_", "rk_test_", "rk_live_")
    ):
        errors.append("stripe_secret_key must start with 'sk_test_', 'sk_live_', 'rk_test_' or 'rk_live_'")

    if settings.stripe_webhook_secret and not settings.stripe_webhook_secret.startswith("whsec_"):
        errors.append("stripe_webhook_secret must start with 'whsec_'")

    if settings.is_production:
        if not settings.stripe_secret_key:
            errors.append("stripe_secret_key is required in production")
        if not settings.stripe_webhook_secret:
            errors.append("stripe_webhook_secret is required in production")
        if settings.jwt_secret_key == "change-me-in-production":
            errors.append("jwt_secret_key must be changed in production")

    if not (1 <= settings.stripe_webhook_tolerance_seconds <= 3600):
        errors.append(
            "stripe_webhook_tolerance_seconds must be between 1 and 3600 "
            f"(got {settings.stripe_webhook_tolerance_seconds})"
        )

    if settings.stripe_timeout_seconds <= 0:
        errors.append("stripe_timeout_seconds must be positive")

    if not (1 <= settings.api_port <= 65535):
        errors.append(f"api_port must be between 1 and 65535 (got {settings.api_port})")

    if not re.fullmatch(r"[a-z]{3}", settings.default_currency):
        errors.append(f"default_currency must be a lowercase ISO 4217 code (got '{settings.default_currency}')")

    if not settings.admin_roles:
        errors.append("admin_roles must contain at least one role")

    return errors


def diagnose_config() -> Dict[str, Any]:
    """
    Diagnose configuration issues and show loaded sources.

    Returns:
        Dictionary with config file status, COURSEBILL_* env vars (secrets masked)
        and validation results
    """
    global_path = get_global_config_path()
    local_path = get_local_config_path()

    try:
        config = load_config()
        validation_errors = validate_config(config)
        config_loaded = True
    except ValueError as e:
        validation_errors = [str(e)]
        config_loaded = False

    env_vars = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        if key[len(ENV_PREFIX):].lower() in SENSITIVE_FIELDS:
            value = "***"
        env_vars[key] = value

    return {
        "config_loaded": config_loaded,
        "global_config": {
            "path": str(global_path),
            "exists": global_path.exists(),
            "readable": global_path.exists() and os.access(global_path, os.R_OK),
        },
        "local_config": {
            "path": str(local_path),
            "exists": local_path.exists(),
            "readable": local_path.exists() and os.access(local_path, os.R_OK),
        },
        "env_vars": env_vars,
        "validation": {
            "valid": len(validation_errors) == 0,
            "errors": validation_errors,
        },
    }


def save_config(config_path: Path, settings: Settings, template: bool = False) -> None:
    """
    Save configuration to YAML file.

    Args:
        config_path: Path where config should be saved
        settings: Settings instance to save
        template: If True, write every setting rather than only the ones explicitly set
    """
    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_dict = settings.model_dump(exclude_unset=not template, exclude_none=True)
    for field in SENSITIVE_FIELDS:
        config_dict.pop(field, None)

    with open(config_path, "w", encoding="utf-8") as f:
        if template:
            f.write("# CourseBill configuration\n")
            f.write("# Secrets (Stripe keys, JWT secret) belong in the environment or .env\n\n")
        yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False, indent=2)

    logger.info("Configuration saved", path=str(config_path))
