"""
Request-defense configuration and logging setup.

Every setting can be overridden through an environment variable; the
defaults match the production deployment of the editorial backend.
"""

import logging
import os
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import List, Optional

LOG_FORMAT = '%(asctime)s | %(levelname)-7s | %(name)s | %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

# Loggers that get their own daily file when LOG_DIR is set
LOG_CATEGORIES = ("security", "rate_limit", "content_lock", "security_mail", "defense_service")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class DefenseConfig:
    """
    Request-defense configuration

    All values are read once, when the object is built.
    """

    def __init__(self):
        # === Store ===
        self.REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.STORE_BACKEND: str = os.getenv("STORE_BACKEND", "redis").lower()
        self.WEBSITE_LANG: str = os.getenv("WEBSITE_LANG", "fr")

        # === Project identity (used in alert subjects) ===
        self.PROJECT_NAME: str = os.getenv("PROJECT_NAME", "cms-backend")
        self.PROJECT_LANG: str = os.getenv("PROJECT_LANG", self.WEBSITE_LANG)

        # === Rate limiting (seconds / requests) ===
        self.RATE_LIMIT_WINDOW: int = int(os.getenv("RATE_LIMIT_WINDOW", "30"))
        self.RATE_LIMIT_MAX_REQUESTS: int = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "60"))

        # === Block windows (seconds) ===
        self.OVERUSE_BLOCK_SECONDS: int = int(os.getenv("OVERUSE_BLOCK_SECONDS", "3600"))
        self.THREAT_BLOCK_SECONDS: int = int(os.getenv("THREAT_BLOCK_SECONDS", "7200"))
        self.BLOCK_ESCALATION_CAP: int = int(os.getenv("BLOCK_ESCALATION_CAP", "5"))
        self.THREAT_BLOCK_MIN_SEVERITY: str = os.getenv("THREAT_BLOCK_MIN_SEVERITY", "high").lower()

        # === Notifications ===
        self.NOTIFICATION_COOLDOWN: int = int(os.getenv("NOTIFICATION_COOLDOWN", "86400"))

        # === Content locks (seconds) ===
        self.LOCK_DURATION: int = int(os.getenv("LOCK_DURATION", "600"))
        self.PRESENCE_MAX_IDLE: int = int(os.getenv("PRESENCE_MAX_IDLE", "300"))

        # === Mail ===
        self.EMAIL_ENABLED: bool = _env_bool("EMAIL_ENABLED", "false")
        self.SMTP_HOST: str = os.getenv("SMTP_HOST", "localhost")
        self.SMTP_PORT: int = int(os.getenv("SMTP_PORT", "25"))
        self.SMTP_USER: str = os.getenv("SMTP_USER", "")
        self.SMTP_PASSWORD: str = os.getenv("SMTP_PASSWORD", "")
        self.SMTP_USE_TLS: bool = _env_bool("SMTP_USE_TLS", "false")
        self.ALERT_EMAIL_FROM: str = os.getenv("ALERT_EMAIL_FROM", "security@example.com")
        self.ALERT_EMAIL_TO: List[str] = [
            e.strip() for e in os.getenv("ALERT_EMAIL_TO", "").split(",") if e.strip()
        ]

        # === Admin API ===
        self.ADMIN_TOKEN: Optional[str] = os.getenv("ADMIN_TOKEN") or None

        # === Service ===
        self.HOST: str = os.getenv("HOST", "0.0.0.0")
        self.PORT: int = int(os.getenv("PORT", "8080"))
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_DIR: Optional[str] = os.getenv("LOG_DIR") or None


def setup_logging(config: DefenseConfig):
    """Configure the root logger and, optionally, one rotating file per category."""
    level = getattr(logging, config.LOG_LEVEL, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)

    if not config.LOG_DIR:
        return

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    for category in LOG_CATEGORIES:
        log_dir = Path(config.LOG_DIR) / category
        log_dir.mkdir(parents=True, exist_ok=True)
        category_logger = logging.getLogger(category)
        target = str(log_dir / f"{category}.log")
        if any(getattr(h, "baseFilename", None) == os.path.abspath(target)
               for h in category_logger.handlers):
            continue
        handler = TimedRotatingFileHandler(target, when="midnight", backupCount=14, encoding="utf-8")
        handler.setFormatter(formatter)
        handler.setLevel(level)
        category_logger.addHandler(handler)
