# activation_server/logging_config.py
import logging.config
import sys


def get_logging_config(level: str = "INFO", fmt: str = "text") -> dict:
    """
    Build the dictConfig for the server.

    Args:
        level: root log level name
        fmt: "text" for human readable lines, "json" for one JSON object per line
    """
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s",
            },
            "text": {
                "format": "{asctime} {levelname} {name}: {message}",
                "style": "{",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "json" if fmt == "json" else "text",
                "stream": sys.stdout,
            },
        },
        "root": {
            "handlers": ["console"],
            "level": level,
        },
        "loggers": {
            "sqlalchemy.engine": {
                "level": "WARNING",
            },
            "uvicorn.access": {
                "level": "WARNING",
            },
        },
    }


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    logging.config.dictConfig(get_logging_config(level, fmt))
