import pytest

from fakes import ManualClock

from llm_orchestrator.config import AppConfig, reset_config
from llm_orchestrator.history import InMemoryConversationRepository
from llm_orchestrator.llm_service import LLMService
from llm_orchestrator.runtime import reset_runtime

CONTEXT_ENV_VARS = (
    "GEMINI_MAX_CONTEXT_LENGTH",
    "OPENAI_MAX_CONTEXT_LENGTH",
    "DEFAULT_MAX_CONTEXT_LENGTH",
)


@pytest.fixture(autouse=True)
def reset_runtime_state(monkeypatch):
    """Every test starts without global configuration or context overrides."""
    for name in CONTEXT_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_config()
    reset_runtime()
    yield
    reset_config()
    reset_runtime()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def app_config():
    """Service configuration without the background refresh task."""
    return AppConfig(
        model_refresh_enabled=False,
        failure_backoff_seconds=300,
        response_token_reserve=100,
    )


@pytest.fixture
def repository():
    return InMemoryConversationRepository()


@pytest.fixture
def make_service(app_config, clock, repository):
    """Factory building an LLMService over the given providers."""

    def _make(*providers, tool_executor=None, config=None):
        return LLMService(
            providers=list(providers),
            conversation_repository=repository,
            tool_executor=tool_executor,
            config=config or app_config,
            clock=clock,
        )

    return _make
