from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

_CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"

_DEFAULT_DATABASE_URL = "sqlite:///./leancoffee.db"
_DEFAULT_PRESENCE = {
    "grace_period_seconds": 15.0,
}
_DEFAULT_SESSIONS = {
    "lock_timeout_seconds": 5.0,
    "require_facilitator_present": False,
    "title_max_length": 200,
    "description_max_length": 2000,
}
_DEFAULT_NOTES = {
    "max_length": 2000,
    "batch_size": 200,
    "page_size": 100,
}
_DEFAULT_TOPICS = {
    "title_max_length": 200,
    "description_max_length": 2000,
}
_DEFAULT_BROADCAST = {
    "queue_size": 256,
}
_DEFAULT_PAGINATION = {
    "default_page_size": 20,
    "max_page_size": 100,
}
_DEFAULT_AUTH = {
    "algorithm": "HS256",
    "issuer": "leancoffee",
    "verify_issuer": True,
}


def load_config() -> Dict[str, Any]:
    """Load the application config from YAML, returning an empty mapping on error."""
    try:
        with _CONFIG_PATH.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
            if isinstance(data, dict):
                return data
            logging.warning(
                "Config file %s is not a mapping; using defaults.", _CONFIG_PATH
            )
            return {}
    except FileNotFoundError:
        logging.warning(
            "Configuration file %s not found; using defaults.", _CONFIG_PATH
        )
        return {}
    except Exception as exc:  # noqa: BLE001
        logging.error("Failed to load configuration from %s: %s", _CONFIG_PATH, exc)
        return {}


def _coerce_positive_int(value: Any, fallback: int) -> int:
    try:
        candidate = int(value)
        return candidate if candidate > 0 else fallback
    except Exception:  # noqa: BLE001
        return fallback


def _coerce_positive_float(value: Any, fallback: float) -> float:
    try:
        candidate = float(value)
        return candidate if candidate > 0 else fallback
    except Exception:  # noqa: BLE001
        return fallback


def _coerce_bool(value: Any, fallback: bool) -> bool:
    if value is None:
        return fallback
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def get_database_url() -> str:
    """Return the database URL; LEANCOFFEE_DATABASE_URL wins over config.yaml."""
    env_value = os.getenv("LEANCOFFEE_DATABASE_URL")
    if env_value and env_value.strip():
        return env_value.strip()
    url = load_config().get("database_url")
    return str(url) if url else _DEFAULT_DATABASE_URL


def get_presence_settings() -> Dict[str, Any]:
    """Return presence tracking settings sourced from env/config with safe defaults."""
    section = load_config().get("presence") or {}
    grace = os.getenv("LEANCOFFEE_PRESENCE_GRACE_SECONDS")
    if grace is None:
        grace = section.get("grace_period_seconds")
    return {
        "grace_period_seconds": _coerce_positive_float(
            grace, _DEFAULT_PRESENCE["grace_period_seconds"]
        ),
    }


def get_session_settings() -> Dict[str, Any]:
    """Return session lifecycle settings sourced from config with safe defaults."""
    section = load_config().get("sessions") or {}
    defaults = dict(_DEFAULT_SESSIONS)
    return {
        "lock_timeout_seconds": _coerce_positive_float(
            section.get("lock_timeout_seconds"), defaults["lock_timeout_seconds"]
        ),
        "require_facilitator_present": _coerce_bool(
            section.get("require_facilitator_present"),
            defaults["require_facilitator_present"],
        ),
        "title_max_length": _coerce_positive_int(
            section.get("title_max_length"), defaults["title_max_length"]
        ),
        "description_max_length": _coerce_positive_int(
            section.get("description_max_length"),
            defaults["description_max_length"],
        ),
    }


def get_note_settings() -> Dict[str, int]:
    """Return note ledger limits sourced from config with safe defaults."""
    section = load_config().get("notes") or {}
    limits = dict(_DEFAULT_NOTES)
    for key in ("max_length", "batch_size", "page_size"):
        limits[key] = _coerce_positive_int(section.get(key), limits[key])
    return limits


def get_topic_settings() -> Dict[str, int]:
    """Return topic board limits sourced from config with safe defaults."""
    section = load_config().get("topics") or {}
    limits = dict(_DEFAULT_TOPICS)
    for key in ("title_max_length", "description_max_length"):
        limits[key] = _coerce_positive_int(section.get(key), limits[key])
    return limits


def get_broadcast_settings() -> Dict[str, int]:
    section = load_config().get("broadcast") or {}
    return {
        "queue_size": _coerce_positive_int(
            section.get("queue_size"), _DEFAULT_BROADCAST["queue_size"]
        ),
    }


def get_pagination_settings() -> Dict[str, int]:
    """Return list paging defaults; the default page size never exceeds the max."""
    section = load_config().get("pagination") or {}
    max_page_size = _coerce_positive_int(
        section.get("max_page_size"), _DEFAULT_PAGINATION["max_page_size"]
    )
    default_page_size = _coerce_positive_int(
        section.get("default_page_size"), _DEFAULT_PAGINATION["default_page_size"]
    )
    return {
        "default_page_size": min(default_page_size, max_page_size),
        "max_page_size": max_page_size,
    }


def get_auth_settings() -> Dict[str, Any]:
    """
    Return identity token verification settings.

    Priority for the issuer:
    1) LEANCOFFEE_JWT_ISSUER env var
    2) config.yaml auth.issuer
    3) default "leancoffee"
    """
    section = load_config().get("auth") or {}
    issuer = os.getenv("LEANCOFFEE_JWT_ISSUER") or section.get("issuer")
    algorithm = section.get("algorithm")
    return {
        "algorithm": str(algorithm).strip() if algorithm else _DEFAULT_AUTH["algorithm"],
        "issuer": str(issuer).strip() if issuer else _DEFAULT_AUTH["issuer"],
        "verify_issuer": _coerce_bool(
            section.get("verify_issuer"), _DEFAULT_AUTH["verify_issuer"]
        ),
    }


def get_sqlite_settings() -> Dict[str, Any]:
    section = load_config().get("sqlite") or {}
    return {
        "journal_mode": str(section.get("journal_mode") or "WAL"),
        "synchronous": str(section.get("synchronous") or "NORMAL"),
        "busy_timeout_ms": _coerce_positive_int(section.get("busy_timeout_ms"), 30000),
        "write_retries": _coerce_positive_int(section.get("write_retries"), 5),
        "retry_backoff_ms": _coerce_positive_int(section.get("retry_backoff_ms"), 200),
    }


def get_pool_settings() -> Dict[str, int]:
    section = load_config().get("database_pool") or {}
    return {
        "pool_size": _coerce_positive_int(section.get("pool_size"), 20),
        "max_overflow": _coerce_positive_int(section.get("max_overflow"), 40),
        "pool_timeout": _coerce_positive_int(section.get("pool_timeout_seconds"), 15),
        "pool_recycle": _coerce_positive_int(
            section.get("pool_recycle_seconds"), 1800
        ),
    }
