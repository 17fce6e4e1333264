"""
returnguard/config.py
======================
Runtime Configuration — ReturnGuard

Responsibility:
    - Load ``.env`` (python-dotenv) before any setting is read
    - Read environment variables into a frozen Settings object
    - Fail fast on malformed numeric settings

Policy thresholds are NOT configured here; they live in the PolicyStore
and are edited at runtime through ``update_policy``.
"""

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("returnguard.config")


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_HIGH_VALUE_AMOUNT: float = 2500.0
DEFAULT_CLASSIFIER: str = "none"
DEFAULT_CLASSIFIER_TIMEOUT: float = 20.0
DEFAULT_OPENAI_MODEL: str = "gpt-4o-mini"

_VALID_CLASSIFIERS: set[str] = {"openai", "http", "none"}


@dataclass(frozen=True)
class Settings:
    """Process-wide settings resolved from the environment."""

    high_value_amount: float = DEFAULT_HIGH_VALUE_AMOUNT
    classifier: str = DEFAULT_CLASSIFIER
    classifier_url: str | None = None
    classifier_timeout: float = DEFAULT_CLASSIFIER_TIMEOUT
    openai_model: str = DEFAULT_OPENAI_MODEL
    openai_api_key: str | None = None
    audit_log_path: str | None = None
    webhook_url: str | None = None


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def load_settings() -> Settings:
    """
    Build Settings from environment variables.

    Raises:
        ValueError: If a numeric setting is malformed or the classifier
            backend name is unknown.
    """
    classifier = os.getenv("RETURNGUARD_CLASSIFIER", DEFAULT_CLASSIFIER).strip().lower()
    if classifier not in _VALID_CLASSIFIERS:
        raise ValueError(
            f"RETURNGUARD_CLASSIFIER must be one of {sorted(_VALID_CLASSIFIERS)}, "
            f"got {classifier!r}"
        )

    settings = Settings(
        high_value_amount=_float_env(
            "RETURNGUARD_HIGH_VALUE_AMOUNT", DEFAULT_HIGH_VALUE_AMOUNT
        ),
        classifier=classifier,
        classifier_url=os.getenv("RETURNGUARD_CLASSIFIER_URL") or None,
        classifier_timeout=_float_env(
            "RETURNGUARD_CLASSIFIER_TIMEOUT", DEFAULT_CLASSIFIER_TIMEOUT
        ),
        openai_model=os.getenv("RETURNGUARD_OPENAI_MODEL", DEFAULT_OPENAI_MODEL),
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        audit_log_path=os.getenv("RETURNGUARD_AUDIT_LOG_PATH") or None,
        webhook_url=os.getenv("WEBHOOK_URL") or None,
    )

    logger.info(
        "Settings loaded: classifier=%s, high_value_amount=%.2f, audit_log=%s",
        settings.classifier,
        settings.high_value_amount,
        settings.audit_log_path or "memory",
    )
    return settings
