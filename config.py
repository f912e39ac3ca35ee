#!/usr/bin/env python3
"""
Configuration management for the RSS relay bot.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, the optional secrets file and the bot.yaml
settings file, and provides a clean interface for accessing configuration
values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"

    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True  # Force reconfiguration if already configured
    )

    # stdout may be replaced by a capture object under test runners
    reconfigure = getattr(sys.stdout, "reconfigure", None)
    if callable(reconfigure):
        reconfigure(line_buffering=True)

    # aiohttp access logs are noisy at INFO for webhook traffic
    getLogger("aiohttp.access").setLevel(level_map.get(environ.get("ACCESS_LOG_LEVEL", "WARNING").upper(), WARNING))

    return getLogger("RSSBot")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "relay", "feishu")

    Returns:
        A logger instance named "RSSBot.{name}"
    """
    return getLogger(f"RSSBot.{name}")

logger = _setup_global_logger()

class Config:
    """Configuration manager for the RSS relay bot.

    Configuration is loaded from multiple sources:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. bot.yaml settings file (item limits and schedule)

    .env fills in variables missing from the process environment and secrets file
    values override both, so Feishu credentials can be kept out of the process environment.

    Example secrets.yaml format:
    ```yaml
    APP_ID: "cli_xxxxxxxx"
    APP_SECRET: "your-app-secret"
    BITABLE_APP_TOKEN: "bascnxxxxxxxx"
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_bot_settings()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Feishu application credentials
        self.APP_ID = environ.get("APP_ID", "")
        self.APP_SECRET = environ.get("APP_SECRET", "")
        self.FEISHU_BASE_URL = environ.get("FEISHU_BASE_URL", "https://open.feishu.cn/open-apis").rstrip("/")

        # Bitable subscription table
        self.BITABLE_APP_TOKEN = environ.get("BITABLE_APP_TOKEN", "")
        self.BITABLE_TABLE_ID = environ.get("BITABLE_TABLE_ID", "")
        self.BITABLE_VIEW_ID = environ.get("BITABLE_VIEW_ID", "")

        # Card template used for digests and feed listings
        self.CARD_TEMPLATE_ID = environ.get("CARD_TEMPLATE_ID", "")
        self.CARD_TEMPLATE_VERSION_NAME = environ.get("CARD_TEMPLATE_VERSION_NAME", "")
        self.DOC_LINK = environ.get("DOC_LINK", "https://bqc4atlhac.feishu.cn/docx/PjPqd7Tk4o728yxqTdvc9KfanNh")

        # Feed fetching
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; RSSRelayBot/1.0)")
        self.ITEM_LIMIT_PER_FEED = self._validate_positive_int("ITEM_LIMIT_PER_FEED", 5, 1)
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.FEED_FETCH_TIMEOUT = self._validate_positive_int("FEED_FETCH_TIMEOUT", 20, 1)
        self.SUBSCRIPTION_CONCURRENCY = self._validate_positive_int("SUBSCRIPTION_CONCURRENCY", 4, 1)

        # Subscription store selection
        has_bitable = bool(self.BITABLE_APP_TOKEN and self.BITABLE_TABLE_ID)
        default_backend = "bitable" if has_bitable else "sqlite"
        self.STORE_BACKEND = environ.get("STORE_BACKEND", default_backend).lower()
        if self.STORE_BACKEND not in ("bitable", "sqlite"):
            logger.warning(f"Unknown STORE_BACKEND '{self.STORE_BACKEND}', using {default_backend}")
            self.STORE_BACKEND = default_backend
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "subscriptions.db")

        # HTTP server
        self.HOST = environ.get("HOST", "0.0.0.0")
        self.PORT = self._validate_positive_int("PORT", 10000, 1)

        # Scheduler configuration
        self.SCHEDULER_TIMEZONE = environ.get("SCHEDULER_TIMEZONE", "UTC")
        self.SCHEDULER_RUN_IMMEDIATELY = environ.get("SCHEDULER_RUN_IMMEDIATELY", "false").lower() == "true"

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.BOT_CONFIG_PATH = environ.get("BOT_CONFIG_PATH", path.join(base_dir, "bot.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the YAML mapping it points to and exports
        every key as an environment variable. Both a top-level mapping and a
        mapping nested under `environment` are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return

        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return
        env_vars = secrets_config
        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
            logger.debug(f"Using 'environment' section from secrets file {secrets_file_path}")

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'bot settings')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.debug(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def _load_bot_settings(self) -> None:
        """Apply overrides from bot.yaml.

        Only the `limits` section is read here; the `schedule` section belongs
        to the scheduler. Environment variables win over the file.
        """
        data = self._safe_read_yaml(self.BOT_CONFIG_PATH, 1024 * 1024, 'bot settings')
        if not isinstance(data, dict):
            return
        limits = data.get('limits')
        if not isinstance(limits, dict):
            return
        raw_limit = limits.get('items_per_feed')
        if raw_limit is not None and "ITEM_LIMIT_PER_FEED" not in environ:
            try:
                value = int(str(raw_limit).strip())
                if value >= 1:
                    self.ITEM_LIMIT_PER_FEED = value
                else:
                    logger.warning(f"items_per_feed must be >=1; keeping {self.ITEM_LIMIT_PER_FEED} (got {raw_limit})")
            except ValueError:
                logger.warning(f"Invalid items_per_feed value '{raw_limit}' in {self.BOT_CONFIG_PATH}")
        logger.info("Loaded bot settings: ITEM_LIMIT_PER_FEED=%s", self.ITEM_LIMIT_PER_FEED)

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "store_backend": self.STORE_BACKEND,
            "database_path": self.DATABASE_PATH if self.STORE_BACKEND == "sqlite" else None,
            "item_limit_per_feed": self.ITEM_LIMIT_PER_FEED,
            "http_timeout": self.HTTP_TIMEOUT,
            "feed_fetch_timeout": self.FEED_FETCH_TIMEOUT,
            "subscription_concurrency": self.SUBSCRIPTION_CONCURRENCY,
            "has_app_credentials": bool(self.APP_ID and self.APP_SECRET),
            "has_card_template": bool(self.CARD_TEMPLATE_ID),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
