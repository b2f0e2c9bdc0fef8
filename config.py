"""Configuration management for the shop bot commerce core"""

import os
import logging
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database configuration
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///shop.db")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "7"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "15"))

    # Bounded execution context for every commerce transaction
    TRANSACTION_TIMEOUT_SECONDS = int(os.getenv("TRANSACTION_TIMEOUT_SECONDS", "30"))
    TRANSACTION_MAX_RETRIES = int(os.getenv("TRANSACTION_MAX_RETRIES", "2"))

    # EPay gateway
    EPAY_PID = os.getenv("EPAY_PID", "")
    EPAY_KEY = os.getenv("EPAY_KEY", "")
    EPAY_GATEWAY = os.getenv("EPAY_GATEWAY", "").rstrip("/")
    BASE_URL = os.getenv("BASE_URL", "http://localhost:8080").rstrip("/")

    # Order maintenance
    ORDER_EXPIRE_HOURS = int(os.getenv("ORDER_EXPIRE_HOURS", "24"))
    ORDER_CLEANUP_DAYS = int(os.getenv("ORDER_CLEANUP_DAYS", "7"))
    ENABLE_AUTO_EXPIRE = _env_bool("ENABLE_AUTO_EXPIRE", "true")
    ENABLE_AUTO_CLEANUP = _env_bool("ENABLE_AUTO_CLEANUP", "true")
    ORDER_EXPIRE_INTERVAL_SECONDS = int(os.getenv("ORDER_EXPIRE_INTERVAL_SECONDS", "3600"))
    ORDER_CLEANUP_INTERVAL_SECONDS = int(os.getenv("ORDER_CLEANUP_INTERVAL_SECONDS", "86400"))

    # Delivery retry
    DELIVERY_RETRY_INTERVAL_SECONDS = int(os.getenv("DELIVERY_RETRY_INTERVAL_SECONDS", "300"))
    DELIVERY_MAX_RETRIES = int(os.getenv("DELIVERY_MAX_RETRIES", "3"))
    DELIVERY_RETRY_MIN_INTERVAL_SECONDS = int(os.getenv("DELIVERY_RETRY_MIN_INTERVAL_SECONDS", "300"))

    # Balance reconciliation
    BALANCE_RECONCILIATION_INTERVAL_SECONDS = int(
        os.getenv("BALANCE_RECONCILIATION_INTERVAL_SECONDS", "3600")
    )

    # Recharge cards
    RECHARGE_CARD_PREFIX = os.getenv("RECHARGE_CARD_PREFIX", "RC").upper()

    @staticmethod
    def database_source() -> str:
        url = Config.DATABASE_URL or ""
        if url.startswith("postgresql"):
            return "PostgreSQL"
        if url.startswith("sqlite"):
            return "SQLite"
        return "NOT CONFIGURED" if not url else "Unknown"

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Shop Core Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Is Production: {Config.IS_PRODUCTION}")
        logger.info(f"   Database: {Config.database_source()}")
        logger.info(f"   EPay configured: {bool(Config.EPAY_PID and Config.EPAY_KEY and Config.EPAY_GATEWAY)}")
        logger.info(
            f"   Order expiry: {Config.ORDER_EXPIRE_HOURS}h "
            f"(auto={Config.ENABLE_AUTO_EXPIRE}), cleanup after {Config.ORDER_CLEANUP_DAYS}d "
            f"(auto={Config.ENABLE_AUTO_CLEANUP})"
        )
        logger.info(
            f"   Delivery retry: max {Config.DELIVERY_MAX_RETRIES} attempts, "
            f"min interval {Config.DELIVERY_RETRY_MIN_INTERVAL_SECONDS}s"
        )
        if Config.IS_PRODUCTION and not Config.EPAY_KEY:
            logger.error("❌ Production environment detected but no EPAY_KEY found!")
