import sys
from logging.config import dictConfig
from typing import Any

APP_LOGGERS = ("app", "app.api", "app.core", "app.generation_logic", "app.services")


def build_logging_config(level: str = "INFO") -> dict[str, Any]:
    """Uvicorn-compatible dictConfig; application loggers log at ``level``."""
    level = level.upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "()": "uvicorn.logging.DefaultFormatter",
                "fmt": "%(levelprefix)s %(asctime)s [%(name)s] %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "access": {
                "()": "uvicorn.logging.AccessFormatter",
                "fmt": '%(levelprefix)s %(asctime)s [%(name)s] "%(request_line)s" %(status_code)s',
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": sys.stderr,
                "level": "INFO",
            },
            "access": {
                "class": "logging.StreamHandler",
                "formatter": "access",
                "stream": sys.stdout,
                "level": "INFO",
            },
            "app": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": sys.stdout,
                "level": level,
            },
        },
        "loggers": {
            "root": {"handlers": ["default"], "level": "INFO", "propagate": False},
            "uvicorn.error": {"handlers": ["default"], "level": "INFO", "propagate": False},
            "uvicorn.access": {"handlers": ["access"], "level": "INFO", "propagate": False},
            # Only the package root gets a handler; children propagate to it
            "app": {"handlers": ["app"], "level": level, "propagate": False},
            **{name: {"level": level} for name in APP_LOGGERS[1:]},
            "httpx": {"handlers": ["default"], "level": "WARNING", "propagate": False},
        },
    }


def setup_logging(level: str = "INFO") -> None:
    """Configures application-wide logging using dictConfig."""
    dictConfig(build_logging_config(level))
