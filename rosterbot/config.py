"""
Configuration Module - Environment variable management for the roster bot.

Provides centralized configuration loading with:
- .env support through python-dotenv
- Validation of required credentials (Discord, database, Google Sheets)
- Recommended ranges for tuning values with optional auto-clamping
- Immutable configuration mapping cached after the first load
- Test-friendly behaviour: no immediate load under pytest
"""

import os
import re
import sys
import tempfile
from typing import Optional, Any, Union, Mapping
from types import MappingProxyType

from dotenv import load_dotenv
from .core.logger import ComponentLogger

_logger = ComponentLogger("config")

class ConfigError(Exception):
    """Custom exception for configuration-related errors."""
    pass

env_path = os.path.join(os.path.dirname(__file__), ".env")
load_dotenv(env_path)
load_dotenv()

DEFAULT_ROSTER_ROLES_FILE = os.path.join(
    os.path.dirname(__file__), "data", "roster_roles.json"
)

# #################################################################################### #
#                            Validation Ranges and Logging
# #################################################################################### #
def parse_bool(value: Optional[str], default: bool = False) -> bool:
    """Parse boolean value from string with consistent normalization.

    Args:
        value: String value to parse
        default: Default value if empty or None

    Returns:
        Parsed boolean value
    """
    if not value:
        return default
    return value.strip().lower() in ("true", "1", "yes", "on", "y")

VALIDATION_RANGES = {
    "MAX_RECONNECT_ATTEMPTS": (1, 10),
    "DB_POOL_SIZE": (1, 50),
    "DB_TIMEOUT": (5, 30),
    "DB_CIRCUIT_BREAKER_THRESHOLD": (3, 20),
    "DB_PORT": (1, 65535),
    "RECORD_STORE_PAGE_SIZE": (1, 100),
    "EXPORT_DEBOUNCE_SECONDS": (1, 60),
    "EXPORT_INTERVAL_MINUTES": (1, 60),
    "EXPORT_MAX_ATTEMPTS": (1, 10),
    "EXPORT_RETRY_DELAY_SECONDS": (0, 60),
    "FULL_SYNC_INTERVAL_MINUTES": (5, 1440),
}

def validate_env_var(var_name: str, value: Optional[str], required: bool = True) -> str:
    """
    Validate and return environment variable value.

    Raises:
        ConfigError: If required variable is missing
    """
    if not value:
        if required:
            raise ConfigError(f"Missing required environment variable: {var_name}")
        return ""
    return value

def validate_int_env_var(
    var_name: str,
    value: Optional[str],
    default: Optional[int] = None,
    auto_clamp: bool = False,
) -> int:
    """
    Validate and return integer environment variable value.

    Args:
        var_name: Name of the environment variable
        value: Raw value from environment (can be None)
        default: Default value if not provided
        auto_clamp: Whether to automatically clamp values to valid ranges

    Returns:
        Validated integer value

    Raises:
        ConfigError: If value is invalid or missing without default
    """
    if not value:
        if default is None:
            raise ConfigError(
                f"Missing required integer environment variable: {var_name}"
            )
        return default
    try:
        parsed_value = int(value)
    except ValueError:
        raise ConfigError(f"Invalid integer value for {var_name}: {value}")

    if auto_clamp and var_name in VALIDATION_RANGES:
        min_val, max_val = VALIDATION_RANGES[var_name]
        if parsed_value < min_val:
            _logger.warning("config_value_clamped",
                variable=var_name,
                original=parsed_value,
                clamped=min_val,
                reason="below_minimum",
            )
            return min_val
        elif parsed_value > max_val:
            _logger.warning("config_value_clamped",
                variable=var_name,
                original=parsed_value,
                clamped=max_val,
                reason="above_maximum",
            )
            return max_val

    return parsed_value

def validate_file_exists(file_path: str, var_name: str) -> Union[int, bool]:
    """Validate that a file exists and is readable.

    Returns:
        File size in bytes if file exists and is readable, False otherwise.
    """
    if not os.path.isfile(file_path):
        _logger.error("file_not_found", variable=var_name, file_path=file_path)
        return False

    try:
        file_size = os.path.getsize(file_path)
        with open(file_path, "r", encoding="utf-8") as f:
            f.read(1)
        _logger.debug("file_validated", variable=var_name, size_bytes=file_size)
        return file_size
    except (IOError, OSError) as e:
        _logger.error("file_read_error",
            variable=var_name,
            error_type=type(e).__name__,
            error_msg=str(e),
        )
        return False

def validate_ranges(var_name: str, value: int) -> None:
    """Validate value against defined ranges and log warnings."""
    if var_name in VALIDATION_RANGES:
        min_val, max_val = VALIDATION_RANGES[var_name]
        if not (min_val <= value <= max_val):
            _logger.warning("config_value_out_of_range",
                variable=var_name,
                value=value,
                min_recommended=min_val,
                max_recommended=max_val,
            )

def _load_tuning_int(config: dict, var_name: str, default: int, auto_clamp: bool) -> None:
    config[var_name] = validate_int_env_var(
        var_name, os.getenv(var_name), default=default, auto_clamp=auto_clamp
    )
    validate_ranges(var_name, config[var_name])

# #################################################################################### #
#                            Configuration Loading Function
# #################################################################################### #
def load_config() -> Mapping[str, Any]:
    """
    Load and validate all configuration from environment variables.

    Returns:
        Immutable mapping containing all validated configuration values

    Raises:
        ConfigError: If critical configuration is invalid or missing
    """
    config = {}
    auto_clamp = parse_bool(os.getenv("CONFIG_AUTO_CLAMP", "False"))

    try:
        # #################################################################################### #
        #                            Debug and Logging Configuration
        # #################################################################################### #
        config["DEBUG"] = parse_bool(os.getenv("DEBUG", "False"))
        config["PRODUCTION"] = parse_bool(os.getenv("PRODUCTION", "False"))

        log_dir = os.getenv("LOG_DIR", "logs")
        log_fallback = False
        try:
            if not os.path.exists(log_dir):
                os.makedirs(log_dir, mode=0o750)
            config["LOG_FILE"] = os.path.join(log_dir, "roster-bot.log")
            with open(config["LOG_FILE"], "a"):
                pass
        except (OSError, IOError) as e:
            _logger.warning("log_dir_fallback", original_dir=log_dir, error=str(e))
            try:
                fallback_log = os.path.join(tempfile.gettempdir(), "roster-bot.log")
                with open(fallback_log, "a"):
                    pass
                config["LOG_FILE"] = fallback_log
                log_fallback = True
            except (OSError, IOError) as fallback_error:
                raise ConfigError(
                    f"Cannot create log file in any location: {fallback_error}"
                )

        # #################################################################################### #
        #                            Discord Bot Configuration
        # #################################################################################### #
        bot_token = os.getenv("BOT_TOKEN")
        discord_token = os.getenv("DISCORD_TOKEN")

        if bot_token and discord_token:
            _logger.warning("multiple_token_sources",
                message="Both BOT_TOKEN and DISCORD_TOKEN are defined. Using BOT_TOKEN.",
            )
            config["TOKEN"] = bot_token
        elif bot_token or discord_token:
            config["TOKEN"] = bot_token or discord_token
        else:
            raise ConfigError(
                "Missing required environment variable: BOT_TOKEN or DISCORD_TOKEN"
            )

        if len(config["TOKEN"]) < 50:
            raise ConfigError("Invalid Discord token format - token too short")

        _load_tuning_int(config, "MAX_RECONNECT_ATTEMPTS", 5, auto_clamp)

        # #################################################################################### #
        #                            Record Store (Database) Configuration
        # #################################################################################### #
        config["DB_USER"] = validate_env_var("DB_USER", os.getenv("DB_USER"))
        db_password = validate_env_var(
            "DB_PASSWORD", os.getenv("DB_PASSWORD") or os.getenv("DB_PASS")
        )

        db_host = os.getenv("DB_HOST", "localhost")
        if not os.getenv("DB_HOST"):
            _logger.info("db_host_fallback",
                fallback_value="localhost",
                reason="env_var_not_set",
            )
        config["DB_HOST"] = db_host

        _load_tuning_int(config, "DB_PORT", 3306, auto_clamp)

        config["DB_NAME"] = validate_env_var("DB_NAME", os.getenv("DB_NAME"))
        if len(config["DB_NAME"]) > 64:
            raise ConfigError(
                f"DB_NAME too long: {len(config['DB_NAME'])} characters (max 64)"
            )
        if not re.match(r"^[A-Za-z0-9_]+$", config["DB_NAME"]):
            raise ConfigError(
                f"DB_NAME contains invalid characters. Only alphanumeric and underscore allowed: {config['DB_NAME']}"
            )

        _load_tuning_int(config, "DB_POOL_SIZE", 10, auto_clamp)
        _load_tuning_int(config, "DB_TIMEOUT", 15, auto_clamp)
        _load_tuning_int(config, "DB_CIRCUIT_BREAKER_THRESHOLD", 5, auto_clamp)
        _load_tuning_int(config, "RECORD_STORE_PAGE_SIZE", 100, auto_clamp)

        # #################################################################################### #
        #                            Report Export (Google Sheets) Configuration
        # #################################################################################### #
        credentials_file = validate_env_var(
            "GOOGLE_CREDENTIALS_FILE",
            os.getenv("GOOGLE_CREDENTIALS_FILE", "credentials.json"),
        )
        if not validate_file_exists(credentials_file, "GOOGLE_CREDENTIALS_FILE"):
            raise ConfigError(
                f"Google credentials file not found or not readable: {credentials_file}"
            )
        config["GOOGLE_CREDENTIALS_FILE"] = os.path.abspath(credentials_file)
        config["SHEET_ID"] = validate_env_var("SHEET_ID", os.getenv("SHEET_ID"))
        config["SHEET_TAB"] = os.getenv("SHEET_TAB", "Members")

        _load_tuning_int(config, "EXPORT_DEBOUNCE_SECONDS", 5, auto_clamp)
        _load_tuning_int(config, "EXPORT_INTERVAL_MINUTES", 5, auto_clamp)
        _load_tuning_int(config, "EXPORT_MAX_ATTEMPTS", 3, auto_clamp)
        _load_tuning_int(config, "EXPORT_RETRY_DELAY_SECONDS", 3, auto_clamp)
        _load_tuning_int(config, "FULL_SYNC_INTERVAL_MINUTES", 30, auto_clamp)

        # #################################################################################### #
        #                            Role Catalog
        # #################################################################################### #
        roles_file = (
            validate_env_var(
                "ROSTER_ROLES_FILE", os.getenv("ROSTER_ROLES_FILE"), required=False
            )
            or DEFAULT_ROSTER_ROLES_FILE
        )
        if not roles_file.endswith(".json"):
            _logger.warning("roles_file_extension", expected=".json")
        if not validate_file_exists(roles_file, "ROSTER_ROLES_FILE"):
            raise ConfigError(f"Role catalog not found or not readable: {roles_file}")
        config["ROSTER_ROLES_FILE"] = os.path.abspath(roles_file)

        _logger.info("config_loaded_successfully",
            total_vars=len(config),
            auto_clamp_enabled=auto_clamp,
            log_fallback_used=log_fallback,
        )

        config["get_db_password"] = lambda: db_password

        return MappingProxyType(config)

    except ConfigError:
        raise
    except Exception as e:
        raise ConfigError(f"Unexpected error during configuration loading: {e}")

# #################################################################################### #
#                            Global Configuration
# #################################################################################### #
_config_cache: Optional[Mapping[str, Any]] = None

def _get_config() -> Mapping[str, Any]:
    """Get cached configuration, loading it if necessary."""
    global _config_cache
    if _config_cache is None:
        _config_cache = load_config()
    return _config_cache

def reset_config_cache() -> None:
    """Drop the cached configuration so the next getter reloads it."""
    global _config_cache
    _config_cache = None

def get_token() -> str:
    """Get Discord bot token."""
    return _get_config()["TOKEN"]

def get_debug() -> bool:
    """Get debug mode setting."""
    return _get_config()["DEBUG"]

def get_production() -> bool:
    return _get_config()["PRODUCTION"]

def get_log_file() -> str:
    return _get_config()["LOG_FILE"]

def get_max_reconnect_attempts() -> int:
    return _get_config()["MAX_RECONNECT_ATTEMPTS"]

def get_db_user() -> str:
    return _get_config()["DB_USER"]

def get_db_host() -> str:
    return _get_config()["DB_HOST"]

def get_db_port() -> int:
    return _get_config()["DB_PORT"]

def get_db_name() -> str:
    return _get_config()["DB_NAME"]

def get_db_password() -> str:
    """Securely get database password without storing it globally."""
    return _get_config()["get_db_password"]()

def get_db_pool_size() -> int:
    return _get_config()["DB_POOL_SIZE"]

def get_db_timeout() -> int:
    """Get database timeout in seconds."""
    return _get_config()["DB_TIMEOUT"]

def get_db_circuit_breaker_threshold() -> int:
    return _get_config()["DB_CIRCUIT_BREAKER_THRESHOLD"]

def get_record_store_page_size() -> int:
    """Get the maximum number of members looked up per batch query."""
    return _get_config()["RECORD_STORE_PAGE_SIZE"]

def get_google_credentials_file() -> str:
    return _get_config()["GOOGLE_CREDENTIALS_FILE"]

def get_sheet_id() -> str:
    return _get_config()["SHEET_ID"]

def get_sheet_tab() -> str:
    return _get_config()["SHEET_TAB"]

def get_export_debounce_seconds() -> int:
    return _get_config()["EXPORT_DEBOUNCE_SECONDS"]

def get_export_interval_minutes() -> int:
    return _get_config()["EXPORT_INTERVAL_MINUTES"]

def get_export_max_attempts() -> int:
    return _get_config()["EXPORT_MAX_ATTEMPTS"]

def get_export_retry_delay_seconds() -> int:
    return _get_config()["EXPORT_RETRY_DELAY_SECONDS"]

def get_full_sync_interval_minutes() -> int:
    return _get_config()["FULL_SYNC_INTERVAL_MINUTES"]

def get_roster_roles_file() -> str:
    """Get path of the JSON role catalog."""
    return _get_config()["ROSTER_ROLES_FILE"]

# #################################################################################### #
#                            Immediate Validation (Optional)
# #################################################################################### #
config_immediate_load = parse_bool(
    os.getenv("CONFIG_IMMEDIATE_LOAD", "True"), default=True
)

if config_immediate_load and "pytest" not in sys.modules:
    try:
        _config_cache = load_config()
        _logger.info("config_module_initialized", immediate_load=True)
    except ConfigError as e:
        _logger.critical("config_initialization_failed", error_msg=str(e))
        sys.exit(1)
else:
    _logger.debug("config_module_initialized",
        immediate_load=False,
        reason="test_context",
    )

__all__ = [
    "load_config",
    "reset_config_cache",
    "ConfigError",
    "parse_bool",
    "get_token",
    "get_debug",
    "get_production",
    "get_log_file",
    "get_max_reconnect_attempts",
    "get_db_user",
    "get_db_host",
    "get_db_port",
    "get_db_name",
    "get_db_password",
    "get_db_pool_size",
    "get_db_timeout",
    "get_db_circuit_breaker_threshold",
    "get_record_store_page_size",
    "get_google_credentials_file",
    "get_sheet_id",
    "get_sheet_tab",
    "get_export_debounce_seconds",
    "get_export_interval_minutes",
    "get_export_max_attempts",
    "get_export_retry_delay_seconds",
    "get_full_sync_interval_minutes",
    "get_roster_roles_file",
]
