"""Application configuration repository.

Centralizes access to configuration values loaded from environment variables.
The orchestrator itself takes an explicit AppConfig; only the CLI and
init_runtime() go through the process-level accessors below.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


def _default_conversation_dir() -> str:
    xdg_data_home = os.getenv("XDG_DATA_HOME")
    if xdg_data_home:
        return str(Path(xdg_data_home) / "llm_orchestrator" / "conversations")
    return str(Path.home() / ".llm_orchestrator" / "conversations")


@dataclass
class AppConfig:
    """Application configuration container.

    Values are typically loaded from environment variables during initialization.
    """

    # API Keys
    openai_api_key: Optional[str] = None
    google_api_key: Optional[str] = None

    # Model settings
    openai_model: str = "gpt-4o"
    gemini_model: str = "gemini-1.5-pro"
    provider_order: List[str] = field(default_factory=lambda: ["openai", "gemini"])

    # Failover / budget
    failure_backoff_seconds: float = 300.0
    response_token_reserve: int = 1000

    # Model refresh
    model_refresh_enabled: bool = True
    model_refresh_interval_seconds: float = 24 * 60 * 60
    model_refresh_initial_delay_seconds: float = 120.0

    # Conversations
    default_system_prompt: str = DEFAULT_SYSTEM_PROMPT
    conversation_dir: str = field(default_factory=_default_conversation_dir)

    # MCP settings
    mcp_enabled: bool = False
    mcp_server_command: Optional[str] = None
    mcp_server_args: List[str] = field(default_factory=list)
    mcp_timeout_seconds: int = 120

    def validate(self) -> list[str]:
        """Validate configuration and return list of warnings.

        Returns:
            list[str]: List of warning messages for missing or invalid configuration.
        """
        issues = []

        if "openai" in self.provider_order and not self.openai_api_key:
            issues.append("OPENAI_API_KEY not set - OpenAI provider will be unavailable")

        if "gemini" in self.provider_order and not self.google_api_key:
            issues.append("GOOGLE_API_KEY not set - Gemini provider will be unavailable")

        if not self.provider_order:
            issues.append("LLM_PROVIDER_ORDER is empty - no provider will be configured")

        if self.failure_backoff_seconds <= 0:
            issues.append(f"Invalid LLM_FAILURE_BACKOFF_SECONDS: {self.failure_backoff_seconds}")

        if self.response_token_reserve < 0:
            issues.append(f"Invalid LLM_RESPONSE_TOKEN_RESERVE: {self.response_token_reserve}")

        if self.model_refresh_interval_seconds <= 0:
            issues.append(
                f"Invalid LLM_MODEL_REFRESH_INTERVAL_SECONDS: {self.model_refresh_interval_seconds}"
            )

        if self.mcp_enabled and not self.mcp_server_command:
            issues.append("LLM_MCP_ENABLED is set but MCP_SERVER_COMMAND is empty")

        if self.mcp_timeout_seconds <= 0:
            issues.append(f"Invalid MCP_TIMEOUT_SECONDS: {self.mcp_timeout_seconds}")

        return issues


# Global configuration instance (set once at startup)
_config: Optional[AppConfig] = None


def _get_env_float(key: str, default: float) -> float:
    """Safely parse float from environment variable with fallback."""
    val_str = os.getenv(key)
    if val_str is None:
        return default
    try:
        return float(val_str)
    except (ValueError, TypeError):
        logger.warning(
            "Invalid value for %s: '%s'. Using default value: %s.", key, val_str, default
        )
        return default


def _get_env_int(key: str, default: int) -> int:
    """Safely parse int from environment variable with fallback."""
    val_str = os.getenv(key)
    if val_str is None:
        return default
    try:
        return int(val_str)
    except (ValueError, TypeError):
        logger.warning(
            "Invalid value for %s: '%s'. Using default value: %s.", key, val_str, default
        )
        return default


def _get_env_bool(key: str, default: bool) -> bool:
    val_str = os.getenv(key)
    if val_str is None:
        return default
    return val_str.strip().lower() in ("true", "1", "yes")


def _get_env_list(key: str, default: List[str], sep: Optional[str] = ",") -> List[str]:
    val_str = os.getenv(key)
    if val_str is None:
        return list(default)
    return [item.strip() for item in val_str.split(sep) if item.strip()]


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables.

    This should be called once during application initialization
    (typically from init_runtime()).

    Returns:
        AppConfig: Configuration instance populated from environment variables.
    """
    defaults = AppConfig()

    config = AppConfig(
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        google_api_key=os.getenv("GOOGLE_API_KEY"),
        openai_model=os.getenv("OPENAI_MODEL", defaults.openai_model),
        gemini_model=os.getenv("GEMINI_MODEL", defaults.gemini_model),
        provider_order=[
            name.lower() for name in _get_env_list("LLM_PROVIDER_ORDER", defaults.provider_order)
        ],
        failure_backoff_seconds=_get_env_float(
            "LLM_FAILURE_BACKOFF_SECONDS", defaults.failure_backoff_seconds
        ),
        response_token_reserve=_get_env_int(
            "LLM_RESPONSE_TOKEN_RESERVE", defaults.response_token_reserve
        ),
        model_refresh_enabled=_get_env_bool(
            "LLM_MODEL_REFRESH_ENABLED", defaults.model_refresh_enabled
        ),
        model_refresh_interval_seconds=_get_env_float(
            "LLM_MODEL_REFRESH_INTERVAL_SECONDS", defaults.model_refresh_interval_seconds
        ),
        model_refresh_initial_delay_seconds=_get_env_float(
            "LLM_MODEL_REFRESH_INITIAL_DELAY_SECONDS",
            defaults.model_refresh_initial_delay_seconds,
        ),
        default_system_prompt=os.getenv(
            "LLM_DEFAULT_SYSTEM_PROMPT", defaults.default_system_prompt
        ),
        conversation_dir=os.getenv("LLM_CONVERSATION_DIR", defaults.conversation_dir),
        mcp_enabled=_get_env_bool("LLM_MCP_ENABLED", False),
        mcp_server_command=os.getenv("MCP_SERVER_COMMAND"),
        mcp_server_args=_get_env_list("MCP_SERVER_ARGS", [], sep=None),
        mcp_timeout_seconds=_get_env_int("MCP_TIMEOUT_SECONDS", defaults.mcp_timeout_seconds),
    )

    # Log validation issues
    for issue in config.validate():
        logger.warning(issue)

    return config


def set_config(config: AppConfig) -> None:
    """Set the global configuration instance.

    Raises:
        RuntimeError: If configuration has already been set.
    """
    global _config
    if _config is not None:
        raise RuntimeError("Configuration already set. Call reset_config() first.")
    _config = config
    logger.debug("Configuration initialized")


def get_config() -> AppConfig:
    """Get the global configuration instance.

    Raises:
        RuntimeError: If configuration has not been initialized.
                     Call init_runtime() first.
    """
    if _config is None:
        raise RuntimeError(
            "Configuration not initialized. Call init_runtime() at application startup."
        )
    return _config


def reset_config() -> None:
    """Reset configuration state (for tests)."""
    global _config
    _config = None


def is_config_initialized() -> bool:
    return _config is not None
