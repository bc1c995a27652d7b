"""Active provider selection and failure backoff.

Every read-then-write against the active provider and the failure records
runs under one threading.Lock. The lock only guards the decision; callers
never hold it while awaiting a provider.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional

from .providers.base import LLMProvider
from .registry import ProviderRegistry

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_SECONDS = 5 * 60

ProviderPredicate = Callable[[LLMProvider], bool]


class FailoverController:
    """Selects the active provider and demotes failing ones.

    Args:
        registry: Providers in configuration order
        backoff_seconds: How long a failed provider stays ineligible
        clock: Monotonic time source (seconds), injectable for tests
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._registry = registry
        self._backoff_seconds = float(backoff_seconds)
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._failures: Dict[str, float] = {}
        self._active: Optional[LLMProvider] = None

    @property
    def backoff_seconds(self) -> float:
        return self._backoff_seconds

    @property
    def active(self) -> Optional[LLMProvider]:
        with self._lock:
            return self._active

    @property
    def failure_records(self) -> Dict[str, float]:
        """Snapshot of provider name -> time of last failure."""
        with self._lock:
            return dict(self._failures)

    @staticmethod
    def _key(provider: LLMProvider) -> str:
        return provider.name.lower()

    def _is_backed_off_locked(self, provider: LLMProvider, now: float) -> bool:
        failed_at = self._failures.get(self._key(provider))
        if failed_at is None:
            return False
        # Stale records are simply ignored
        return now - failed_at < self._backoff_seconds

    def _is_eligible_locked(self, provider: LLMProvider, now: float) -> bool:
        return provider.has_valid_api_key and not self._is_backed_off_locked(provider, now)

    def is_backed_off(self, provider: LLMProvider) -> bool:
        with self._lock:
            return self._is_backed_off_locked(provider, self._clock())

    def is_eligible(self, provider: LLMProvider) -> bool:
        """True if the provider is credentialed and outside its backoff window."""
        with self._lock:
            return self._is_eligible_locked(provider, self._clock())

    def _select_active_locked(self) -> Optional[LLMProvider]:
        providers = self._registry.providers
        now = self._clock()
        previous = self._active

        selected = next(
            (
                p
                for p in providers
                if self._registry.is_initialized(p) and self._is_eligible_locked(p, now)
            ),
            None,
        )
        if selected is None:
            selected = next((p for p in providers if self._is_eligible_locked(p, now)), None)
        if selected is None:
            selected = next((p for p in providers if p.has_valid_api_key), None)
        if selected is None and providers:
            selected = providers[0]

        self._active = selected
        if selected is None:
            logger.warning("No LLM provider available")
        elif selected is not previous:
            logger.info("Active LLM provider set to: %s", selected.name)
        return selected

    def select_active(self) -> Optional[LLMProvider]:
        """Re-run active selection.

        Preference order: initialized + credentialed + not backed off, then
        credentialed + not backed off, then credentialed regardless of backoff,
        then the first configured provider.
        """
        with self._lock:
            return self._select_active_locked()

    def mark_failed(self, provider: LLMProvider) -> Optional[LLMProvider]:
        """Record a failure and reselect if the provider was active.

        Returns:
            The active provider after the update
        """
        with self._lock:
            self._failures[self._key(provider)] = self._clock()
            logger.warning(
                "Provider %s marked as failed for %.0f seconds",
                provider.name,
                self._backoff_seconds,
            )
            if self._active is provider:
                return self._select_active_locked()
            return self._active

    def get_fallback(self, predicate: Optional[ProviderPredicate] = None) -> Optional[LLMProvider]:
        """First eligible provider other than the active one, or None."""
        with self._lock:
            return self._get_fallback_locked(predicate)

    def _get_fallback_locked(self, predicate) -> Optional[LLMProvider]:
        now = self._clock()
        for provider in self._registry.providers:
            if provider is self._active:
                continue
            if not self._is_eligible_locked(provider, now):
                continue
            if predicate is not None and not predicate(provider):
                continue
            return provider
        return None

    def resolve_substitute(
        self, failed: LLMProvider, predicate: Optional[ProviderPredicate] = None
    ) -> Optional[LLMProvider]:
        """Pick the provider to retry with after `failed` has been marked failed.

        Prefers the newly selected active provider; otherwise falls back to
        any other eligible provider. Never returns `failed` itself while its
        failure record is live.
        """
        with self._lock:
            now = self._clock()
            active = self._active
            if (
                active is not None
                and active is not failed
                and self._is_eligible_locked(active, now)
                and (predicate is None or predicate(active))
            ):
                return active
            fallback = self._get_fallback_locked(predicate)
            if fallback is failed:
                return None
            return fallback

    def find_eligible(self, predicate: Optional[ProviderPredicate] = None) -> Optional[LLMProvider]:
        """First eligible provider (active included) satisfying predicate."""
        with self._lock:
            now = self._clock()
            candidates = self._registry.providers
            if self._active in candidates:
                candidates.remove(self._active)
                candidates.insert(0, self._active)
            for provider in candidates:
                if self._is_eligible_locked(provider, now) and (
                    predicate is None or predicate(provider)
                ):
                    return provider
            return None

    def set_active(self, name: str) -> bool:
        """Manually override the active provider (case-insensitive)."""
        provider = self._registry.get(name)
        if provider is None:
            logger.warning("LLM provider not found: %s", name)
            return False
        with self._lock:
            self._active = provider
        logger.info("Active LLM provider set to: %s", provider.name)
        return True
