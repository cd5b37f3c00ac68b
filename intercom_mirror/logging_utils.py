"""Shared logging utilities.

SafeStreamHandler survives broken pipes and closed stdout, which happens when
the CLI output is piped into `head` or the process is backgrounded.
"""
import logging
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CACHE_LOG_FILENAME = "cache.log"


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that ignores broken pipe and closed file errors.

    Standard StreamHandler raises BrokenPipeError or ValueError once stdout
    is gone. This handler drops the record instead while file handlers keep
    logging.
    """

    def emit(self, record):
        try:
            super().emit(record)
        except BrokenPipeError:
            pass  # stdout closed, ignore silently
        except ValueError:
            pass  # I/O operation on closed file


def configure_safe_logging(
    level=logging.INFO,
    log_dir: Optional[Union[str, Path]] = None,
):
    """Configure root logger with SafeStreamHandler.

    Safe to call multiple times (guards against duplicate handlers).

    Args:
        level: Logging level to set (default: INFO)
        log_dir: If given, also append to <log_dir>/cache.log
    """
    logger = logging.getLogger()
    formatter = logging.Formatter(LOG_FORMAT)

    if not any(isinstance(h, SafeStreamHandler) for h in logger.handlers):
        handler = SafeStreamHandler()  # Defaults to sys.stderr
        handler.setFormatter(formatter)
        handler.setLevel(level)
        logger.addHandler(handler)

    if log_dir is not None:
        log_path = (Path(log_dir) / CACHE_LOG_FILENAME).resolve()
        already = any(
            isinstance(h, logging.FileHandler) and Path(h.baseFilename) == log_path
            for h in logger.handlers
        )
        if not already:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
            file_handler.setFormatter(formatter)
            file_handler.setLevel(level)
            logger.addHandler(file_handler)

    if logger.level == logging.NOTSET or logger.level > level:
        logger.setLevel(level)
