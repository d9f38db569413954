"""Logging utilities for the PS orchestrator and its child processes."""

import logging
import socket
import sys
import os
import threading
from typing import Dict, Optional, Union


class PSLogger:
    """
    Thread-safe logger for control-plane components.

    One instance per component name. Messages carry hostname and pid so that
    lines from the client, the master and the shards can be told apart when
    they end up in the same log.
    """

    _instances: dict = {}
    _lock = threading.Lock()

    def __new__(cls, name: str, *args, **kwargs):
        """Singleton pattern per logger name."""
        with cls._lock:
            if name not in cls._instances:
                instance = super().__new__(cls)
                cls._instances[name] = instance
            return cls._instances[name]

    def __init__(
        self,
        name: str,
        level: int = logging.INFO,
        log_file: Optional[str] = None,
        include_hostname: bool = True
    ):
        """
        Initialize the logger.

        Args:
            name: Logger name (typically component name)
            level: Logging level
            log_file: Optional file path for log output
            include_hostname: Include hostname and pid in log messages
        """
        if hasattr(self, "_initialized"):
            return

        self._initialized = True
        self.name = name

        try:
            self.hostname = socket.gethostname()
        except OSError:
            self.hostname = "unknown"
        self.pid = os.getpid()

        self.logger = logging.getLogger(f"ps_orchestrator.{name}")
        self.logger.setLevel(level)
        self.logger.propagate = False
        self.logger.handlers = []

        if include_hostname:
            fmt = f"%(asctime)s | {self.hostname}:{self.pid} | %(name)s | %(levelname)s | %(message)s"
        else:
            fmt = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
        self._formatter = logging.Formatter(fmt, datefmt="%Y-%m-%d %H:%M:%S")

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(self._formatter)
        self.logger.addHandler(console_handler)

        if log_file:
            self.add_file_handler(log_file)

    def add_file_handler(self, log_file: str):
        """Also write this component's messages to ``log_file``."""
        for handler in self.logger.handlers:
            if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(log_file):
                return
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(self.logger.level)
        file_handler.setFormatter(self._formatter)
        self.logger.addHandler(file_handler)

    def debug(self, msg: str, *args, **kwargs):
        self.logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self.logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self.logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self.logger.error(msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        """Log exception with traceback."""
        self.logger.exception(msg, *args, **kwargs)

    def set_level(self, level: int):
        """Set logging level."""
        self.logger.setLevel(level)
        for handler in self.logger.handlers:
            handler.setLevel(level)


_default_level = logging.INFO
_default_log_file: Optional[str] = None


def get_logger(name: str, level: Optional[int] = None) -> PSLogger:
    """
    Get a logger instance for the given component name.

    Args:
        name: Component name (e.g., "main_client", "ps_server_0", "master")
        level: Logging level (defaults to the level set by configure_logging)

    Returns:
        PSLogger instance
    """
    return PSLogger(
        name,
        level=level if level is not None else _default_level,
        log_file=_default_log_file,
    )


def configure_logging(level: Union[int, str] = logging.INFO, log_file: Optional[str] = None):
    """
    Apply a level (and optional log file) to all existing and future loggers.

    Args:
        level: Level number or name ("DEBUG", "INFO", ...)
        log_file: Optional file that every component also writes to
    """
    global _default_level, _default_log_file

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {level}")

    _default_level = level
    _default_log_file = log_file

    with PSLogger._lock:
        instances = list(PSLogger._instances.values())
    for instance in instances:
        instance.set_level(level)
        if log_file:
            instance.add_file_handler(log_file)


class MetricsLogger:
    """
    Collects timing and count metrics for control-plane phases.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = get_logger(f"metrics.{name}")
        self._metrics: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def record(self, metric_name: str, value: float):
        """Record a metric value."""
        with self._lock:
            if metric_name not in self._metrics:
                self._metrics[metric_name] = {
                    "count": 0,
                    "sum": 0.0,
                    "min": float("inf"),
                    "max": float("-inf"),
                }

            m = self._metrics[metric_name]
            m["count"] += 1
            m["sum"] += value
            m["min"] = min(m["min"], value)
            m["max"] = max(m["max"], value)

    def get_stats(self, metric_name: str) -> dict:
        """Get statistics for a metric."""
        with self._lock:
            return self._stats_locked(metric_name)

    def _stats_locked(self, metric_name: str) -> dict:
        if metric_name not in self._metrics:
            return {}

        m = self._metrics[metric_name]
        count = m["count"]
        return {
            "count": count,
            "sum": m["sum"],
            "mean": m["sum"] / count if count > 0 else 0,
            "min": m["min"] if count > 0 else 0,
            "max": m["max"] if count > 0 else 0,
        }

    def get_all_stats(self) -> dict:
        """Get statistics for all metrics."""
        with self._lock:
            return {name: self._stats_locked(name) for name in self._metrics}

    def log_stats(self):
        """Log all metric statistics."""
        for name, s in self.get_all_stats().items():
            self.logger.info(
                f"{name}: count={s['count']}, mean={s['mean']:.4f}, "
                f"min={s['min']:.4f}, max={s['max']:.4f}"
            )

    def reset(self):
        with self._lock:
            self._metrics.clear()
