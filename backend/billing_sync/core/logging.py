"""Logging configuration"""
import logging

from billing_sync.core.config import settings

# Audit trails: one line per webhook outcome, one per applied transition
webhook_logger = logging.getLogger("webhook")
reconcile_logger = logging.getLogger("reconcile")

QUIET_LOGGERS = ("stripe", "urllib3", "sqlalchemy.engine", "opentelemetry")


def setup_logging():
    """Configure root logging once at startup"""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
