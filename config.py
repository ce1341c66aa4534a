#!/usr/bin/env python3
"""
Configuration management for the feed summarizer.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, the optional YAML secrets file, feeds.yaml,
and provides a clean interface for accessing configuration values throughout
the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

# Browser-like user agent; some sites refuse to serve non-browser clients
DEFAULT_USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:128.0) Gecko/20100101 Firefox/128.0"
DEFAULT_GOOGLE_AI_MODEL = "gemini-2.5-flash"
DEFAULT_DESIRED_LANGUAGE = "English"


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true
        THIRD_PARTY_LOG_LEVEL: Level for chatty SDK loggers - defaults to WARNING

    All modules should use get_logger() to create module-specific loggers that
    inherit this configuration.
    """
    environ["PYTHONUNBUFFERED"] = "1"

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

    # Test runners may swap stdout for objects without reconfigure()
    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if callable(reconfigure):
            reconfigure(line_buffering=True)

    # The Gemini SDK logs every HTTP exchange at INFO through httpx
    third_party_level = level_map.get(environ.get("THIRD_PARTY_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("google_genai", "google_genai.models", "httpx", "httpcore", "urllib3", "azure"):
        getLogger(name).setLevel(third_party_level)

    return getLogger("FeedSummarizer")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "summarizer", "publisher")

    Returns:
        A logger named "FeedSummarizer.{name}"
    """
    return getLogger(f"FeedSummarizer.{name}")


# Create single global logger instance
logger = _setup_global_logger()


class Config:
    """Configuration manager for the feed summarizer.

    This class handles loading and validation of configuration from multiple sources:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. feeds.yaml configuration file

    Example secrets.yaml format:
    ```yaml
    GOOGLE_AI_API_KEYS: "key-one,key-two"
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

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

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _parse_api_keys(self) -> List[str]:
        """Collect Google AI API keys from GOOGLE_AI_API_KEYS (comma separated) or GOOGLE_AI_API_KEY."""
        raw = environ.get("GOOGLE_AI_API_KEYS") or environ.get("GOOGLE_AI_API_KEY") or ""
        keys = [k.strip() for k in raw.split(",") if k.strip()]
        # Keep order, drop duplicates
        seen = set()
        unique: List[str] = []
        for key in keys:
            if key not in seen:
                seen.add(key)
                unique.append(key)
        return unique

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Cache storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.CACHE_BACKEND = environ.get("CACHE_BACKEND", "sqlite").strip().lower()
        if self.CACHE_BACKEND not in ("sqlite", "memory"):
            logger.warning(f"Unknown CACHE_BACKEND '{self.CACHE_BACKEND}', using sqlite")
            self.CACHE_BACKEND = "sqlite"

        # HTTP fetching
        self.USER_AGENT = environ.get("USER_AGENT", DEFAULT_USER_AGENT)
        self.FEED_FETCH_TIMEOUT = self._validate_positive_int("FEED_FETCH_TIMEOUT", 30, 5)
        self.FETCH_URL_TIMEOUT = self._validate_positive_int("FETCH_URL_TIMEOUT", 10, 1)
        self.FETCH_MAX_RETRIES = self._validate_positive_int("FETCH_MAX_RETRIES", 3, 0)
        self.FETCH_RETRY_DELAY_BASE = self._validate_positive_float("FETCH_RETRY_DELAY_BASE", 1.0, 0.0)
        self.USE_READER_SCRAPPER = environ.get("USE_READER_SCRAPPER", "false").lower() == "true"

        # Google AI (Gemini) generation
        self.GOOGLE_AI_API_KEYS = self._parse_api_keys()
        self.GOOGLE_AI_MODEL = environ.get("GOOGLE_AI_MODEL", DEFAULT_GOOGLE_AI_MODEL)
        self.DESIRED_LANGUAGE = environ.get("DESIRED_LANGUAGE", DEFAULT_DESIRED_LANGUAGE)
        self.GENERATION_TIMEOUT_SECONDS = self._validate_positive_int("GENERATION_TIMEOUT_SECONDS", 60, 5)
        self.GENERATION_TIMEOUT_SECONDS_FOR_VIDEO = self._validate_positive_int("GENERATION_TIMEOUT_SECONDS_FOR_VIDEO", 180, 5)
        self.GENERATION_MAX_RETRIES = self._validate_positive_int("GENERATION_MAX_RETRIES", 3, 0)
        self.GENERATION_RETRY_DELAY = self._validate_positive_float("GENERATION_RETRY_DELAY", 5.0, 0.0)
        self.FILE_UPLOAD_READY_TIMEOUT = self._validate_positive_int("FILE_UPLOAD_READY_TIMEOUT", 120, 5)
        self.FILE_POLL_INTERVAL = self._validate_positive_float("FILE_POLL_INTERVAL", 2.0, 0.1)

        # Summarization pacing
        self.SUMMARIZE_INTERVAL_SECONDS = self._validate_positive_float("SUMMARIZE_INTERVAL_SECONDS", 10.0, 0.0)
        self.SUMMARIZE_TIMEOUT_SECONDS = self._validate_positive_int("SUMMARIZE_TIMEOUT_SECONDS", 6 * 60, 10)

        # Reconciliation windows (feeds.yaml thresholds may override)
        self.IGNORE_ALREADY_CACHED = environ.get("IGNORE_ALREADY_CACHED", "true").lower() == "true"
        self.IGNORE_ITEMS_OLDER_THAN_DAYS = self._validate_positive_int("IGNORE_ITEMS_OLDER_THAN_DAYS", 7, 1)
        self.CACHE_RETENTION_DAYS = self._validate_positive_int("CACHE_RETENTION_DAYS", 30, 1)

        # Feed server
        self.SERVER_HOST = environ.get("SERVER_HOST", "0.0.0.0")
        self.SERVER_PORT = self._validate_positive_int("SERVER_PORT", 10101, 1)
        self.SERVER_ALLOWED_USER_AGENT = environ.get("SERVER_ALLOWED_USER_AGENT", "").strip()
        self.SERVER_MAX_AGE = self._validate_positive_int("SERVER_MAX_AGE", 60, 0)

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))
        self.PROMPT_CONFIG_PATH = environ.get("PROMPT_CONFIG_PATH", path.join(base_dir, "prompt.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Both a top-level mapping and a mapping nested under ``environment``
        are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
        else:
            env_vars = secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
                logger.debug(f"Set environment variable {key} from secrets file")
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Optional[Any]:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'feeds')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r', encoding='utf-8') as f:
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

    def _parse_threshold(self, section: Dict[str, Any], key: str, default: int) -> int:
        raw = section.get(key)
        if raw is None:
            return default
        try:
            value = int(str(raw).strip())
        except ValueError:
            logger.warning(f"Invalid {key} value '{raw}' in feeds.yaml; using {default}")
            return default
        if value < 1:
            logger.warning(f"{key} must be >=1; keeping {default} (got {raw})")
            return default
        return value

    def _load_feed_sources(self) -> None:
        """Populate FEED_SOURCES, PUBLISH_INFO and thresholds from feeds.yaml.

        Any failure results in an empty feed mapping and default publish info.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')

        self.FEED_SOURCES: Dict[str, str] = {}
        self.PUBLISH_INFO: Dict[str, str] = {
            "title": "Summarized feeds",
            "link": "https://example.com",
            "description": "Feed items summarized with Google AI",
            "author": "feed-summarizer",
            "email": "",
        }
        if not isinstance(config_data, dict):
            return

        feeds_section = config_data.get('feeds')
        if isinstance(feeds_section, dict):
            for feed_slug, feed_cfg in feeds_section.items():
                if isinstance(feed_cfg, dict) and 'url' in feed_cfg:
                    self.FEED_SOURCES[feed_slug] = feed_cfg['url']
                    logger.debug(f"Loaded feed {feed_slug}: {feed_cfg['url']}")
                elif isinstance(feed_cfg, str):
                    self.FEED_SOURCES[feed_slug] = feed_cfg
                else:
                    logger.warning(f"Skipping invalid feed configuration for '{feed_slug}': {feed_cfg}")
        else:
            logger.warning(f"No valid feeds found in {feeds_path}")

        publish_section = config_data.get('publish')
        if isinstance(publish_section, dict):
            for key in self.PUBLISH_INFO:
                value = publish_section.get(key)
                if value is not None:
                    self.PUBLISH_INFO[key] = str(value)

        thresholds_section = config_data.get('thresholds')
        if isinstance(thresholds_section, dict):
            self.IGNORE_ITEMS_OLDER_THAN_DAYS = self._parse_threshold(
                thresholds_section, 'ignore_older_than_days', self.IGNORE_ITEMS_OLDER_THAN_DAYS
            )
            self.CACHE_RETENTION_DAYS = self._parse_threshold(
                thresholds_section, 'retention_days', self.CACHE_RETENTION_DAYS
            )

        logger.info(
            "Loaded %d feeds from %s (ignore_older_than_days=%s retention_days=%s)",
            len(self.FEED_SOURCES),
            feeds_path,
            self.IGNORE_ITEMS_OLDER_THAN_DAYS,
            self.CACHE_RETENTION_DAYS,
        )

    def reload_feed_sources(self):
        """Reload feed sources from configuration file."""
        logger.info("Reloading feed sources configuration")
        self._load_feed_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "cache_backend": self.CACHE_BACKEND,
            "feed_count": len(self.FEED_SOURCES),
            "google_ai_model": self.GOOGLE_AI_MODEL,
            "google_ai_key_count": len(self.GOOGLE_AI_API_KEYS),
            "desired_language": self.DESIRED_LANGUAGE,
            "summarize_interval_seconds": self.SUMMARIZE_INTERVAL_SECONDS,
            "fetch_max_retries": self.FETCH_MAX_RETRIES,
            "use_reader_scrapper": self.USE_READER_SCRAPPER,
            "ignore_items_older_than_days": self.IGNORE_ITEMS_OLDER_THAN_DAYS,
            "cache_retention_days": self.CACHE_RETENTION_DAYS,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
