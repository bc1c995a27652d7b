"""Runtime initialization for llm-orchestrator applications.

Call init_runtime() once at application startup, before building an
LLMService from the global configuration.
"""

import logging
import threading
from typing import Optional

from dotenv import load_dotenv

from .config import load_config_from_env, reset_config, set_config

logger = logging.getLogger(__name__)
_initialized = False
_init_lock = threading.Lock()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def init_runtime(log_level: Optional[str] = None) -> None:
    """Initialize runtime environment for the CLI.

    This function:
    1. Loads environment variables from .env file
    2. Initializes the global configuration repository
    3. Optionally configures logging

    Thread-safe: uses double-checked locking. Idempotent: once initialized,
    subsequent calls are ignored, including log_level settings.

    Args:
        log_level: Optional log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
                   If None, logging configuration is not modified.

    Raises:
        ValueError: If an invalid log_level is provided.
    """
    global _initialized

    if _initialized:
        logger.debug("Runtime already initialized, skipping")
        return

    with _init_lock:
        if _initialized:
            logger.debug("Runtime already initialized (detected in lock), skipping")
            return

        try:
            load_dotenv()

            if log_level:
                numeric_level = getattr(logging, log_level.upper(), None)
                if not isinstance(numeric_level, int):
                    raise ValueError(f"Invalid log level: {log_level}")
                logging.basicConfig(level=numeric_level, format=LOG_FORMAT)

            set_config(load_config_from_env())

            _initialized = True
            logger.debug("Runtime initialized successfully")
        except Exception:
            # Clean up partial initialization on error
            reset_config()
            raise


def is_initialized() -> bool:
    return _initialized


def reset_runtime() -> None:
    """Reset initialization state (for tests only)."""
    global _initialized
    _initialized = False
