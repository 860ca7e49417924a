import sys
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from buildkeeper.config import MergedSettings, effective_settings
from buildkeeper.log.handler import LokiHandler

LOG_FORMAT = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'


class MainFormatter(logging.Formatter):
    """A custom formatter to handle regular logs and raw command output."""

    def format(self, record):
        # Install and build output arrives on 'proc.*' loggers; print it as-is.
        if record.name.startswith('proc.'):
            return record.getMessage()
        return super().format(record)


def setup_logging(
    console_level: int = logging.INFO,
    log_file: Optional[Path] = None,
    config: Optional[MergedSettings] = None,
) -> None:
    """
    Configures the root logger for the supervisor.
    This sets up handlers for console, an optional rotating file and optionally Loki,
    clearing any previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    :param log_file: Where to keep the supervisor's own log, or None for console only.
    :param config: The settings to read Loki options from.
    """
    config = config or effective_settings

    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to prevent re-adding them on re-runs
    if root_logger.hasHandlers():
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter(LOG_FORMAT))
    root_logger.addHandler(console_handler)

    # --- File Handler (all levels) ---
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=config.LOG_FILE_MAX_BYTES,
                backupCount=config.LOG_FILE_BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.error(f"Failed to initialize file logging handler: {e}. Logging to file will be disabled.")

    # --- Loki Handler (conditional) ---
    if config.LOKI_ENABLED:
        try:
            loki_handler = LokiHandler(
                url=config.LOKI_URL,
                org_id=config.LOKI_ORG_ID,
                flush_interval=config.LOG_BUFFER_FLUSH_INTERVAL,
                labels={"app": config.APP_DIR.name},
            )
            loki_handler.setLevel(logging.INFO)  # Avoid spamming Loki with DEBUG logs
            root_logger.addHandler(loki_handler)
            root_logger.info(f"Grafana Loki logging handler initialized for {config.LOKI_URL}.")
        except Exception as e:
            root_logger.error(f"Failed to initialize Grafana Loki logging handler: {e}")
