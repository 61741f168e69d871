# util/logger.py
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Final, Tuple
from config.settings import settings

# Route warnings.warn() output (yt-dlp, httpx deprecations) through logging
logging.captureWarnings(True)

LOG_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s - %(message)s"
DATE_FORMAT: Final[str] = "%Y-%m-%dT%H:%M:%S%z"
# Chatty at INFO; their useful failures surface through our own log lines.
NOISY_LOGGERS: Final[Tuple[str, ...]] = ("httpx", "httpcore", "yt_dlp", "fastapi_limiter")
_INIT_FLAG: Final[str] = "_tubevault_inited"


class ColoredFormatter(logging.Formatter):
    COLORS = {
        "DEBUG": "\033[37m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[41m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        # Color a copy so file handlers sharing the record still see the plain level.
        colored = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, self.RESET)
        colored.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(colored)


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(ColoredFormatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def _file_handler(level: int) -> logging.Handler:
    os.makedirs(settings.LOG_DIR, exist_ok=True)
    handler = RotatingFileHandler(
        os.path.join(settings.LOG_DIR, settings.LOG_FILE_NAME),
        maxBytes=settings.LOG_MAX_BYTES,
        backupCount=settings.LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def init_logger() -> logging.Logger:
    """
    Idempotent logger init:
    - stdout always (colored level names); the platform collector reads it.
    - LOG_DIR/LOG_FILE_NAME with size rotation only when LOG_TO_FILE is set.
    - Third-party chatter capped at WARNING.
    """
    root = logging.getLogger()
    if getattr(root, _INIT_FLAG, False):
        return logging.getLogger(settings.LOGGER_NAME)

    level = getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO)
    root.setLevel(level)
    for h in list(root.handlers):
        root.removeHandler(h)

    root.addHandler(_console_handler(level))
    if settings.LOG_TO_FILE:
        root.addHandler(_file_handler(level))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    setattr(root, _INIT_FLAG, True)
    logger = logging.getLogger(settings.LOGGER_NAME)
    logger.debug("logger.ready level=%s file=%s", logging.getLevelName(level), settings.LOG_TO_FILE)
    return logger


class YtDlpLogger:
    """
    Adapter handed to YoutubeDL(params={"logger": ...}).
    yt-dlp sends progress lines through debug() and info(); both stay at DEBUG.
    """

    def __init__(self, name: str = "yt_dlp", **context: object) -> None:
        self._log = logging.getLogger(name)
        self._suffix = "".join(f" {k}={v}" for k, v in context.items())

    def debug(self, msg: str) -> None:
        self._log.debug("%s%s", msg, self._suffix)

    info = debug

    def warning(self, msg: str) -> None:
        self._log.warning("%s%s", msg, self._suffix)

    def error(self, msg: str) -> None:
        self._log.error("%s%s", msg, self._suffix)
