# services/logging_utils.py
import os
import logging
import logging.config
from pathlib import Path
import re

# A quoted Python repr, as produced by f"{value!r}" for a str.
_QUOTED = r"""('(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")"""


class RedactingFilter(logging.Filter):
    """
    A logging.Filter that masks room ids.

    A room id is the participants' shared session key, so it must never reach
    a log file. Relay code writes it as ``room_key={room_id!r}`` when it has to
    mention one; a raw ``"roomId": "..."`` JSON field is masked as well.
    """

    SENSITIVE_PATTERNS = [
        (re.compile(r"(room_key=)" + _QUOTED), r"\1***"),
        (re.compile(r'("roomId"\s*:\s*)"(?:[^"\\]|\\.)*"'), r'\1"***"'),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        """
        Rewrite record.msg so that room_key='abc' becomes room_key=***.
        """
        msg = record.getMessage()
        for pattern, replacement in self.SENSITIVE_PATTERNS:
            msg = pattern.sub(replacement, msg)

        # Formatters see the redacted text; args are already inlined
        record.msg = msg
        record.args = ()
        return True


def setup_logging(
        level: str = None,
        logs_dir: str = "logs",
        log_file: str = "relay.log") -> None:
    """
    Configure application-wide logging with console and rotating file handlers.

    Args:
        level (str, optional): Logging level (e.g., "INFO", "DEBUG").
            Defaults to the LOG_LEVEL environment variable or "INFO".
        logs_dir (str, optional): Directory for log files, created if missing.
            Defaults to "logs".
        log_file (str, optional): Filename of the main log within logs_dir.
            Defaults to "relay.log".

    Returns:
        None

    Raises:
        OSError: If the logs_dir directory cannot be created.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()

    Path(logs_dir).mkdir(parents=True, exist_ok=True)

    LOGGING_CONFIG = {
        "version": 1,
        "disable_existing_loggers": False,          # keep 3rd-party logs
        "filters": {
            "redact": {
                "()": RedactingFilter,
            },
        },
        "formatters": {
            "default": {
                "format": "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s",
                "datefmt": "%d-%m-%Y %H:%M:%S",
            },
        },
        "handlers": {
            "console": {"class": "logging.StreamHandler",
                        "formatter": "default",
                        "filters": ["redact"],
                        "level": level},
            "file":    {"class": "logging.handlers.TimedRotatingFileHandler",
                        "formatter": "default",
                        "filters": ["redact"],
                        "filename": f"{logs_dir}/{log_file}",
                        "when": "midnight",
                        "backupCount": 14,
                        "encoding": "utf-8",
                        "level": level},
            "errors":  {"class": "logging.handlers.RotatingFileHandler",
                        "formatter": "default",
                        "filters": ["redact"],
                        "filename": f"{logs_dir}/relay-error.log",
                        "maxBytes": 10 * 1024 * 1024,    # 10 MiB
                        "backupCount": 5,
                        "encoding": "utf-8",
                        "level": "ERROR"},
        },
        "loggers": {
            # websockets logs every handshake at INFO
            "websockets": {"level": "WARNING"},
        },
        "root": {"level": level,
                 "handlers": ["console", "file", "errors"]},
    }

    logging.config.dictConfig(LOGGING_CONFIG)
