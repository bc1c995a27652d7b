"""Ordered set of configured providers and their initialization state."""

import logging
import threading
from typing import Dict, Iterable, Iterator, List, Optional

from .providers.base import LLMProvider

logger = logging.getLogger(__name__)


class ProviderState:
    UNKNOWN = "unknown"
    INITIALIZED = "initialized"
    FAILED_INIT = "failed_init"


class ProviderRegistry:
    """Holds providers in configuration order.

    Lookups are case-insensitive. A provider that fails to initialize stays
    registered; it is only skipped for preferred active selection.
    """

    def __init__(self, providers: Optional[Iterable[LLMProvider]] = None):
        self._providers: List[LLMProvider] = []
        self._states: Dict[str, str] = {}
        self._lock = threading.Lock()
        for provider in providers or []:
            self.add(provider)

    @staticmethod
    def _key(name: str) -> str:
        return (name or "").strip().lower()

    def add(self, provider: LLMProvider) -> None:
        key = self._key(provider.name)
        with self._lock:
            if key in self._states:
                raise ValueError(f"Provider already registered: {provider.name}")
            self._providers.append(provider)
            self._states[key] = ProviderState.UNKNOWN

    @property
    def providers(self) -> List[LLMProvider]:
        with self._lock:
            return list(self._providers)

    @property
    def names(self) -> List[str]:
        return [p.name for p in self.providers]

    def get(self, name: str) -> Optional[LLMProvider]:
        key = self._key(name)
        for provider in self.providers:
            if self._key(provider.name) == key:
                return provider
        return None

    def state(self, provider: LLMProvider) -> str:
        with self._lock:
            return self._states.get(self._key(provider.name), ProviderState.UNKNOWN)

    def is_initialized(self, provider: LLMProvider) -> bool:
        return self.state(provider) == ProviderState.INITIALIZED

    def _set_state(self, provider: LLMProvider, state: str) -> None:
        with self._lock:
            self._states[self._key(provider.name)] = state

    async def initialize_all(self) -> None:
        """Initialize every provider once; failures are logged and recorded."""
        for provider in self.providers:
            if self.state(provider) != ProviderState.UNKNOWN:
                continue
            try:
                await provider.initialize()
            except Exception:
                logger.exception("Error initializing %s provider", provider.name)
                self._set_state(provider, ProviderState.FAILED_INIT)
            else:
                self._set_state(provider, ProviderState.INITIALIZED)

    def is_empty(self) -> bool:
        return not self.providers

    def __len__(self) -> int:
        return len(self.providers)

    def __iter__(self) -> Iterator[LLMProvider]:
        return iter(self.providers)

    def __contains__(self, name) -> bool:
        return self.get(name) is not None
