import logging
import os
from logging.handlers import RotatingFileHandler

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging() -> None:
    """Configure the root logger once: console always, rotating file when LOG_FILE_PATH is set."""
    logger = logging.getLogger()

    # Avoid adding handlers multiple times (uvicorn reload, test re-imports)
    if getattr(logger, "_challenge_pool_configured", False):
        return

    level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    logger.setLevel(level)
    formatter = logging.Formatter(_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    log_file = os.getenv("LOG_FILE_PATH", "").strip()
    if log_file:
        # 10MB per file, keep last 5 files
        handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger._challenge_pool_configured = True  # type: ignore[attr-defined]
