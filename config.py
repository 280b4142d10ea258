"""
Configuration Module
====================
Environment settings for the order lifecycle service: auto-progression
thresholds, cart policy, notification provider, order storage and the HTTP
server. Validated at startup to fail fast.

NO BUSINESS LOGIC - Pure configuration management only.
"""

import os
import logging
from typing import Optional, Dict, Any, List
from pathlib import Path
from dotenv import load_dotenv


# ============================================================================
# LOGGING
# ============================================================================

logger = logging.getLogger(__name__)


# ============================================================================
# ENVIRONMENT LOADING
# ============================================================================

def load_environment():
    """
    Load environment variables from .env file if present.
    Safe to call multiple times.
    """
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from .env file")
    else:
        logger.info("No .env file found, using system environment variables")


# Load on module import
load_environment()


# ============================================================================
# CONFIGURATION EXCEPTION
# ============================================================================

class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# ============================================================================
# VALIDATION HELPERS
# ============================================================================

def _get_required_env(key: str, description: str = None) -> str:
    """
    Get required environment variable.

    Raises:
        ConfigurationError: If variable is missing or empty
    """
    value = os.getenv(key)

    if not value or value.strip() == "":
        desc = f" ({description})" if description else ""
        raise ConfigurationError(
            f"Missing required environment variable: {key}{desc}"
        )

    return value.strip()


def _get_optional_env(key: str, default: str = None) -> Optional[str]:
    """Get optional environment variable, or default if unset."""
    value = os.getenv(key, default)
    return value.strip() if value else default


def _get_bool_env(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on", "enabled")


def _get_int_env(key: str, default: int = None) -> Optional[int]:
    """
    Get integer environment variable.

    Raises:
        ConfigurationError: If value is not a valid integer
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid integer value for {key}: {value}"
        )


def _get_float_env(key: str, default: float = None) -> Optional[float]:
    """
    Get float environment variable.

    Raises:
        ConfigurationError: If value is not a valid number
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid numeric value for {key}: {value}"
        )


# ============================================================================
# SCHEDULER CONFIGURATION
# ============================================================================

class SchedulerConfig:
    """Auto-progression cadence and thresholds (minutes unless noted)."""

    def __init__(self):
        self.enabled = _get_bool_env("AUTO_PROGRESSION_ENABLED", True)
        self.interval_seconds = _get_float_env("AUTO_PROGRESSION_INTERVAL", 60.0)
        self.pending_timeout_minutes = _get_int_env("PENDING_TIMEOUT_MINUTES", 30)
        self.confirm_grace_minutes = _get_int_env("CONFIRM_GRACE_MINUTES", 2)
        self.ready_fraction = _get_float_env("READY_FRACTION", 0.75)
        self.completion_buffer_minutes = _get_int_env("COMPLETION_BUFFER_MINUTES", 5)
        self.default_estimated_minutes = _get_int_env("DEFAULT_ESTIMATED_MINUTES", 20)

        if self.interval_seconds <= 0:
            raise ConfigurationError(
                f"AUTO_PROGRESSION_INTERVAL must be positive: {self.interval_seconds}"
            )

        if not 0.0 < self.ready_fraction <= 1.0:
            raise ConfigurationError(
                f"READY_FRACTION must be between 0 and 1: {self.ready_fraction}"
            )

        for name in (
            "pending_timeout_minutes",
            "confirm_grace_minutes",
            "completion_buffer_minutes",
            "default_estimated_minutes",
        ):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name.upper()} must not be negative")


# ============================================================================
# CART CONFIGURATION
# ============================================================================

class CartConfig:
    """Cart policies."""

    def __init__(self):
        # What happens when an item from a second restaurant is added
        self.restaurant_policy = _get_optional_env(
            "CART_RESTAURANT_POLICY",
            "reject"
        ).lower()

        if self.restaurant_policy not in ["reject", "replace"]:
            raise ConfigurationError(
                f"Invalid CART_RESTAURANT_POLICY: {self.restaurant_policy}. "
                f"Must be 'reject' or 'replace'"
            )

        self.max_quantity_per_line = _get_int_env("CART_MAX_QUANTITY", 99)
        self.tax_rate = _get_float_env("ORDER_TAX_RATE", 0.0)

        if self.max_quantity_per_line < 1:
            raise ConfigurationError("CART_MAX_QUANTITY must be at least 1")

        if self.tax_rate < 0:
            raise ConfigurationError(f"ORDER_TAX_RATE must not be negative: {self.tax_rate}")


# ============================================================================
# NOTIFICATION CONFIGURATION
# ============================================================================

class NotificationConfig:
    """Outbound customer notifications (Twilio SMS or WhatsApp)."""

    def __init__(self):
        self.enabled = _get_bool_env("NOTIFICATIONS_ENABLED", False)
        self.channel = _get_optional_env("NOTIFICATION_CHANNEL", "whatsapp").lower()
        self.brand_name = _get_optional_env("BRAND_NAME", "Dineezy")
        self.country_code = _get_optional_env("DEFAULT_COUNTRY_CODE", "91")
        self.max_workers = _get_int_env("NOTIFICATION_WORKERS", 4)

        if self.channel not in ["sms", "whatsapp"]:
            raise ConfigurationError(
                f"Invalid NOTIFICATION_CHANNEL: {self.channel}. "
                f"Must be 'sms' or 'whatsapp'"
            )

        if not self.country_code.isdigit():
            raise ConfigurationError(
                f"DEFAULT_COUNTRY_CODE must be digits only: {self.country_code}"
            )

        self.account_sid: Optional[str] = None
        self.auth_token: Optional[str] = None
        self.from_number: Optional[str] = None

        if self.enabled:
            self.account_sid = _get_required_env(
                "TWILIO_ACCOUNT_SID",
                "Twilio Account SID"
            )
            self.auth_token = _get_required_env(
                "TWILIO_AUTH_TOKEN",
                "Twilio Auth Token"
            )
            self.from_number = _get_required_env(
                "TWILIO_PHONE_NUMBER",
                "Twilio sender number (E.164 format)"
            )

            if not self.from_number.startswith("+"):
                raise ConfigurationError(
                    f"TWILIO_PHONE_NUMBER must be in E.164 format (start with +): "
                    f"{self.from_number}"
                )


# ============================================================================
# SUPABASE CONFIGURATION
# ============================================================================

class SupabaseConfig:
    """Supabase order storage. Optional: without it an in-memory store is used."""

    def __init__(self):
        self.url = _get_optional_env("SUPABASE_URL")
        self.key = _get_optional_env("SUPABASE_KEY")
        self.orders_table = _get_optional_env("SUPABASE_ORDERS_TABLE", "orders")
        self.menu_table = _get_optional_env("SUPABASE_MENU_TABLE", "menu_items")
        self.timeout = _get_float_env("SUPABASE_TIMEOUT", 5.0)

        if self.url and not self.url.startswith("https://"):
            raise ConfigurationError(
                f"SUPABASE_URL must start with https://: {self.url}"
            )

        if self.url and not self.key:
            raise ConfigurationError(
                "SUPABASE_KEY is required when SUPABASE_URL is set"
            )

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.key)


# ============================================================================
# SERVER CONFIGURATION
# ============================================================================

class ServerConfig:
    """Web server configuration."""

    def __init__(self):
        self.host = _get_optional_env("HOST", "0.0.0.0")
        self.port = _get_int_env("PORT", 8000)
        self.restaurant_id = _get_optional_env("DEFAULT_RESTAURANT_ID")

        self.log_level = _get_optional_env("LOG_LEVEL", "INFO").upper()

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ConfigurationError(
                f"Invalid LOG_LEVEL: {self.log_level}"
            )


# ============================================================================
# MAIN CONFIGURATION CLASS
# ============================================================================

class Config:
    """
    Main configuration container.
    Loads and validates all configuration on initialization.
    """

    def __init__(self):
        """
        Raises:
            ConfigurationError: If any configuration is missing or invalid
        """
        try:
            self.scheduler = SchedulerConfig()
            self.cart = CartConfig()
            self.notifications = NotificationConfig()
            self.supabase = SupabaseConfig()
            self.server = ServerConfig()

            logger.info("Configuration loaded and validated successfully")

        except ConfigurationError as e:
            logger.error(f"Configuration error: {str(e)}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error loading configuration: {str(e)}")
            raise ConfigurationError(f"Configuration initialization failed: {str(e)}")

    def get_safe_summary(self) -> Dict[str, Any]:
        """Get configuration summary without secrets."""
        return {
            "scheduler": {
                "enabled": self.scheduler.enabled,
                "interval_seconds": self.scheduler.interval_seconds,
                "pending_timeout_minutes": self.scheduler.pending_timeout_minutes,
                "default_estimated_minutes": self.scheduler.default_estimated_minutes,
            },
            "cart": {
                "restaurant_policy": self.cart.restaurant_policy,
                "max_quantity_per_line": self.cart.max_quantity_per_line,
            },
            "notifications": {
                "enabled": self.notifications.enabled,
                "channel": self.notifications.channel,
                "brand_name": self.notifications.brand_name,
            },
            "storage": "supabase" if self.supabase.is_configured else "memory",
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "log_level": self.server.log_level,
            },
        }

    def validate_runtime_dependencies(self) -> List[str]:
        """Return warnings for configuration that is valid but probably unintended."""
        warnings = []

        if not self.notifications.enabled:
            warnings.append("Notifications disabled: status changes will not be sent")

        if not self.supabase.is_configured:
            warnings.append("SUPABASE_URL not set: orders are kept in memory only")

        return warnings


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

_config: Optional[Config] = None


def get_config() -> Config:
    """
    Get global configuration instance.
    Initializes on first call.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    global _config

    if _config is None:
        _config = Config()

    return _config


def reload_config() -> Config:
    """Reload configuration from environment."""
    global _config
    load_environment()
    _config = Config()
    logger.info("Configuration reloaded")
    return _config


def validate_configuration():
    """
    Validate configuration and log a summary.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config = get_config()
    summary = config.get_safe_summary()

    logger.info("Configuration Summary:")
    logger.info(f"  Storage: {summary['storage']}")
    logger.info(f"  Auto-progression: {'enabled' if summary['scheduler']['enabled'] else 'disabled'}")
    logger.info(f"  Cart restaurant policy: {summary['cart']['restaurant_policy']}")
    logger.info(f"  Notifications: {summary['notifications']['channel'] if summary['notifications']['enabled'] else 'disabled'}")
    logger.info(f"  Server: {summary['server']['host']}:{summary['server']['port']}")

    for warning in config.validate_runtime_dependencies():
        logger.warning(f"  - {warning}")
