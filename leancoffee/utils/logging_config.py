import logging
import logging.config
import os
from pathlib import Path
from typing import Any, Dict, List

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# logger name -> (handlers, level)
LOGGER_ROUTES = {
    "uvicorn": (["console", "file_app"], "INFO"),
    "uvicorn.access": (["console", "file_app"], "INFO"),
    "uvicorn.error": (["console", "file_error"], "INFO"),
    "identity": (["console", "file_app"], "INFO"),
    "audit": (["console", "file_app"], "INFO"),
    "database": (["console", "file_app", "file_error"], "INFO"),
    "leancoffee": (["console", "file_app", "file_error"], "DEBUG"),
}


def _prune_backups(log_dir: Path, base_name: str, keep: int) -> None:
    """Remove rotated files beyond ``keep``, newest first."""
    if keep < 1:
        return
    rotated = sorted(
        log_dir.glob(f"{base_name}.*"),
        key=lambda path: path.stat().st_mtime,
        reverse=True,
    )
    for stale in rotated[keep:]:
        try:
            stale.unlink()
        except OSError as exc:
            logging.getLogger(__name__).debug("Could not prune %s: %s", stale, exc)


def _rotating_handler(path: Path, level: str, max_bytes: int, backups: int) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "formatter": "default",
        "filename": str(path),
        "maxBytes": max_bytes,
        "backupCount": backups,
        "level": level,
        "encoding": "utf8",
    }


def _route(handlers: List[str], level: str) -> Dict[str, Any]:
    return {"handlers": list(handlers), "level": level, "propagate": False}


def setup_logging():
    """
    Configure console and rotating file logging.

    Files land in ``$LOG_DIR`` (default ``logs``): ``app.log`` for INFO and
    above, ``error.log`` for errors. ``LOG_MAX_BYTES``, ``LOG_BACKUP_COUNT``
    and ``LOG_LEVEL`` (console) tune the handlers.
    """
    log_dir = Path(os.getenv("LOG_DIR", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    max_bytes = int(os.getenv("LOG_MAX_BYTES", str(5 * 1024 * 1024)))
    backups = int(os.getenv("LOG_BACKUP_COUNT", "3"))
    console_level = os.getenv("LOG_LEVEL", "INFO").upper()
    for base_name in ("app.log", "error.log"):
        _prune_backups(log_dir, base_name, backups)

    loggers = {name: _route(*route) for name, route in LOGGER_ROUTES.items()}
    loggers[""] = {
        "handlers": ["console", "file_app", "file_error"],
        "level": "INFO",
    }

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": LOG_FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": console_level,
                },
                "file_app": _rotating_handler(
                    log_dir / "app.log", "INFO", max_bytes, backups
                ),
                "file_error": _rotating_handler(
                    log_dir / "error.log", "ERROR", max_bytes, backups
                ),
            },
            "loggers": loggers,
        }
    )
    logging.getLogger("leancoffee").info("Logging configured.")
