# src/agenda_planner/logging_config.py
"""
Logging setup for the Agenda Planner.

Library modules only ever call ``logging.getLogger(__name__)``; handlers
are installed by the embedding application or by the ``agenda-planner``
CLI through :func:`configure_logging`.

Key concepts:

    **Display filter**: When ``console_enabled=False`` (the default), the
    console handler still exists but only passes through log records that
    carry ``extra={"display": True}``. Operational messages such as
    "Schema ready" reach the user while per-rule debug output stays out of
    the terminal.

    **File logging**: off by default. ``file_mode="single"`` uses a
    ``RotatingFileHandler``; ``file_mode="per_run"`` creates a timestamped
    file per invocation.

Usage:
    from agenda_planner.logging_config import configure_logging, log_display

    configure_logging(app_name="agenda-planner", config={"console_enabled": True})

    logger = logging.getLogger("agenda_planner.cli")
    log_display(logger, logging.INFO, "Initialized %s store", backend)
"""

import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

DEFAULT_LOGGING_CONFIG: dict[str, Any] = {
    "console_enabled": False,
    "console_level": "WARNING",
    "console_format": "%(levelname)s - %(message)s",
    "file_enabled": False,
    "file_level": "DEBUG",
    "file_directory": "~/.local/share/agenda_planner/logs",
    "file_mode": "per_run",
    "file_name_pattern": "{app}_{timestamp:%Y%m%d_%H%M%S}.log",
    "file_single_name": "{app}.log",
    "file_format": "%(asctime)s [%(levelname)-8s] %(name)-30s - %(message)s (%(filename)s:%(lineno)d)",
    "rotation_max_bytes": 10 * 1024 * 1024,  # 10 MB
    "rotation_backup_count": 5,
    "display_min_level": "INFO",
    "components": {
        "agenda_planner": "INFO",
        "aiosqlite": "WARNING",
        "asyncio": "WARNING",
        "psycopg": "WARNING",
        "psycopg.pool": "WARNING",
    },
}


def _level(value: Any, default: int) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelName(str(value).upper())
    return level if isinstance(level, int) else default


class DisplayFilter(logging.Filter):
    """Controls which log records pass through to the console handler.

    Behavior matrix::

        +------------------------+--------------+-----------------+
        | console_global         | display=True | display=False/  |
        |                        |              | absent          |
        +------------------------+--------------+-----------------+
        | True  (-v mode)        | PASS         | PASS            |
        | False (default/quiet)  | PASS*        | BLOCK           |
        +------------------------+--------------+-----------------+

        * subject to display_min_level
    """

    def __init__(
        self,
        console_globally_enabled: bool = False,
        display_min_level: int = logging.INFO,
    ) -> None:
        super().__init__()
        self.console_globally_enabled = console_globally_enabled
        self.display_min_level = display_min_level

    def filter(self, record: logging.LogRecord) -> bool:
        if self.console_globally_enabled:
            return True
        if getattr(record, "display", False):
            return record.levelno >= self.display_min_level
        return False


class LoggingManager:
    """
    Singleton owner of the root handlers installed by this package.

    Only the handlers it created are removed on reconfiguration, so an
    embedding application's own handlers survive.
    """

    _instance: Optional["LoggingManager"] = None

    def __init__(self) -> None:
        self.configured = False
        self.log_file_path: Path | None = None
        self.console_handler: logging.Handler | None = None
        self.file_handler: logging.Handler | None = None

    @classmethod
    def get_instance(cls) -> "LoggingManager":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def configure(
        self,
        app_name: str = "agenda-planner",
        config: dict[str, Any] | None = None,
        force_reconfigure: bool = False,
    ) -> Path | None:
        """
        Install console and file handlers on the root logger.

        Args:
            app_name: Used in log file names
            config: Overrides for DEFAULT_LOGGING_CONFIG ("components" is merged)
            force_reconfigure: Replace handlers installed by an earlier call

        Returns:
            Path to the log file, or None when file logging is disabled
        """
        if self.configured and not force_reconfigure:
            return self.log_file_path

        log_config = {**DEFAULT_LOGGING_CONFIG, **(config or {})}
        log_config["components"] = {
            **DEFAULT_LOGGING_CONFIG["components"],
            **((config or {}).get("components") or {}),
        }

        root_logger = logging.getLogger()
        self._remove_handlers(root_logger)
        root_logger.setLevel(logging.DEBUG)

        console_globally_enabled = bool(log_config.get("console_enabled", False))
        display_filter = DisplayFilter(
            console_globally_enabled=console_globally_enabled,
            display_min_level=_level(log_config.get("display_min_level"), logging.INFO),
        )
        self.console_handler = logging.StreamHandler(sys.stderr)
        if console_globally_enabled:
            self.console_handler.setLevel(_level(log_config.get("console_level"), logging.WARNING))
        else:
            # the filter is the only gate for display=True records
            self.console_handler.setLevel(logging.DEBUG)
        self.console_handler.setFormatter(logging.Formatter(log_config["console_format"]))
        self.console_handler.addFilter(display_filter)
        root_logger.addHandler(self.console_handler)

        self.log_file_path = None
        if log_config.get("file_enabled"):
            self.file_handler, self.log_file_path = self._create_file_handler(log_config, app_name)
            if self.file_handler:
                root_logger.addHandler(self.file_handler)

        for component_name, level_str in log_config["components"].items():
            level = logging.getLevelName(str(level_str).upper())
            if isinstance(level, int):
                logging.getLogger(component_name).setLevel(level)

        self.configured = True
        logging.getLogger(__name__).debug(f"Logging configured (file: {self.log_file_path})")
        return self.log_file_path

    def _remove_handlers(self, root_logger: logging.Logger) -> None:
        for handler in (self.console_handler, self.file_handler):
            if handler is not None:
                root_logger.removeHandler(handler)
                handler.close()
        self.console_handler = None
        self.file_handler = None

    def _create_file_handler(
        self, config: dict[str, Any], app_name: str
    ) -> tuple[logging.Handler | None, Path | None]:
        log_dir = Path(os.path.expanduser(config["file_directory"]))
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            sys.stderr.write(f"Warning: Cannot create log directory {log_dir}: {e}\n")
            return None, None

        try:
            if config.get("file_mode") == "single":
                log_file_path = log_dir / config["file_single_name"].format(app=app_name)
                handler: logging.Handler = RotatingFileHandler(
                    log_file_path,
                    maxBytes=config["rotation_max_bytes"],
                    backupCount=config["rotation_backup_count"],
                    encoding="utf-8",
                )
            else:
                log_file_path = log_dir / config["file_name_pattern"].format(
                    app=app_name, timestamp=datetime.now()
                )
                handler = logging.FileHandler(log_file_path, encoding="utf-8")
        except OSError as e:
            sys.stderr.write(f"Warning: Cannot create log file in {log_dir}: {e}\n")
            return None, None

        handler.setLevel(_level(config.get("file_level"), logging.DEBUG))
        handler.setFormatter(logging.Formatter(config["file_format"]))
        return handler, log_file_path


def configure_logging(
    app_name: str = "agenda-planner",
    config: dict[str, Any] | None = None,
    force_reconfigure: bool = False,
) -> Path | None:
    """
    Configure logging for an application embedding the planner.

    Example:
        configure_logging(
            app_name="agenda-planner",
            config={"file_enabled": True, "file_directory": "/var/log/agenda"},
        )
    """
    return LoggingManager.get_instance().configure(
        app_name=app_name,
        config=config,
        force_reconfigure=force_reconfigure,
    )


def log_display(
    logger: logging.Logger,
    level: int,
    msg: str,
    *args: Any,
    **kwargs: Any,
) -> None:
    """Log a message that also appears on console even in silent mode.

    Sets ``extra={"display": True}`` (merged with any caller ``extra``).
    ``display_min_level`` still applies.
    """
    extra = kwargs.pop("extra", None) or {}
    extra["display"] = True
    kwargs["extra"] = extra
    logger.log(level, msg, *args, **kwargs)


def get_log_file_path() -> Path | None:
    """Get the current log file path."""
    return LoggingManager.get_instance().log_file_path


def set_component_level(component: str, level: str | int) -> None:
    """Change a specific component's log level at runtime."""
    logging.getLogger(component).setLevel(_level(level, logging.INFO))
