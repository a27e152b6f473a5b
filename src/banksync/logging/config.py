"""Logging configuration management for BankSync.

This module provides centralized logging configuration used by the CLI, the
scheduler service and the sync pipeline.
"""

import logging
import sys
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from banksync.config import LoggingConfig as LoggingSettings


@dataclass
class LoggingConfig:
    """Configuration settings for application logging."""

    level: str = "INFO"
    format_string: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    cli_format_string: str = "%(message)s"
    log_to_file: bool = True
    log_file_path: Path = Path("logs/banksync.log")
    max_file_size_mb: int = 50
    backup_count: int = 5
    force_reconfigure: bool = False

    @classmethod
    def from_settings(cls, section: "LoggingSettings | None" = None) -> "LoggingConfig":
        """Build the logging configuration from the application settings.

        Args:
            section: Logging section of the settings; loaded when omitted
        """
        if section is None:
            from banksync.config import get_settings

            section = get_settings().logging
        return cls(
            level=section.level,
            log_to_file=section.log_to_file,
            log_file_path=section.log_file_path,
            max_file_size_mb=section.max_file_size_mb,
            backup_count=section.backup_count,
        )


def setup_logging(
    config: LoggingConfig | None = None,
    cli_mode: bool = False,
    verbose: bool = False,
) -> None:
    """Set up centralized logging configuration for the application.

    Args:
        config: Optional logging configuration. If None, built from the
            BANKSYNC_LOGGING__* settings.
        cli_mode: If True, use simplified CLI-friendly formatting
        verbose: If True, enable DEBUG level logging (overrides config level)
    """
    if config is None:
        config = LoggingConfig.from_settings()

    level = logging.DEBUG if verbose else getattr(logging, config.level)

    handlers: list[logging.Handler] = []

    # Console output goes to stderr so command output on stdout stays clean
    console_handler = logging.StreamHandler(sys.stderr)
    if cli_mode:
        console_handler.setFormatter(logging.Formatter(config.cli_format_string))
    else:
        console_handler.setFormatter(logging.Formatter(config.format_string))
    handlers.append(console_handler)

    if config.log_to_file:
        config.log_file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            config.log_file_path,
            maxBytes=config.max_file_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
        )
        file_handler.setFormatter(logging.Formatter(config.format_string))
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        handlers=handlers,
        force=config.force_reconfigure,
    )

    # Browser automation and asyncio internals are very chatty at DEBUG
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("playwright").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def get_log_config_summary() -> dict[str, Any]:
    """Get a summary of current logging configuration.

    Returns:
        dict: Summary of logging configuration settings
    """
    config = LoggingConfig.from_settings()
    root_logger = logging.getLogger()

    return {
        "level": logging.getLevelName(root_logger.level),
        "handlers": [type(h).__name__ for h in root_logger.handlers],
        "log_to_file": config.log_to_file,
        "log_file_path": str(config.log_file_path),
        "format_string": config.format_string,
    }
