"""
Logging

Every pillwatch module asks for its logger through get_logger(__name__,
config). Handlers are shared per destination, so the store, scheduler,
reconciliation loop and the rest write through one stdout stream and one
file handle instead of opening their own.

PILLWATCH_LOG_FILE_ONLY=1 is for running the service in the background:
stdout stays silent and everything lands in logs/pillwatch.log.
"""

import logging
import os
import sys
import threading
from pathlib import Path
from typing import Dict


FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

BACKGROUND_LOG = Path(__file__).parent.parent / "logs" / "pillwatch.log"


class Logger:
    """Logger registry with shared console and file handlers."""

    _loggers: Dict[str, logging.Logger] = {}
    _handlers: Dict[str, logging.Handler] = {}
    _lock = threading.Lock()

    @classmethod
    def get_logger(cls, name: str, config=None) -> logging.Logger:
        with cls._lock:
            if name in cls._loggers:
                return cls._loggers[name]

            logger = logging.getLogger(name)
            if not logger.handlers:
                cls._configure_logger(logger, config)
            cls._loggers[name] = logger
            return logger

    @classmethod
    def _configure_logger(cls, logger: logging.Logger, config) -> None:
        if config:
            level_str = config.get("logging.level", "INFO")
            log_file = config.get("logging.file")
            console_enabled = config.get("logging.console", True)
            propagate = config.get("logging.propagate", False)
        else:
            level_str = "INFO"
            log_file = None
            console_enabled = True
            propagate = False

        if os.environ.get("PILLWATCH_LOG_FILE_ONLY"):
            console_enabled = False
            log_file = str(BACKGROUND_LOG)

        logger.setLevel(getattr(logging, str(level_str).upper(), logging.INFO))
        if console_enabled:
            logger.addHandler(cls._shared_handler("<stdout>"))
        if log_file:
            logger.addHandler(cls._shared_handler(str(Path(log_file).resolve())))
        logger.propagate = propagate

    @classmethod
    def _shared_handler(cls, destination: str) -> logging.Handler:
        """One handler per destination; levels are left to the loggers."""
        handler = cls._handlers.get(destination)
        if handler is not None:
            return handler

        if destination == "<stdout>":
            handler = logging.StreamHandler(sys.stdout)
        else:
            Path(destination).parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(destination)
        handler.setFormatter(logging.Formatter(FORMAT, datefmt=DATE_FORMAT))
        cls._handlers[destination] = handler
        return handler

    @classmethod
    def reset(cls) -> None:
        """Detach and close every shared handler (tests, config reloads)."""
        with cls._lock:
            for logger in cls._loggers.values():
                for handler in list(logger.handlers):
                    logger.removeHandler(handler)
            for handler in cls._handlers.values():
                handler.close()
            cls._loggers.clear()
            cls._handlers.clear()


def get_logger(name: str, config=None) -> logging.Logger:
    """Logger for a pillwatch module, configured on first use."""
    return Logger.get_logger(name, config)
