"""Periodic model catalog refresh with same-family upgrades.

The scheduler runs as a cancellable asyncio task owned by the service.
Refreshes are single-flight: a request arriving while one is running is
dropped, not queued.
"""

import asyncio
import logging
import re
from typing import Iterable, Optional, Tuple

from .models import Model
from .registry import ProviderRegistry

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL = 24 * 60 * 60
DEFAULT_INITIAL_DELAY = 120

_VERSION_SEGMENT = re.compile(r"-\d+(?:\.\d+)*(?=-|$)")
_LATEST_SEGMENT = re.compile(r"-latest(?=-|$)")
_NUMBER = re.compile(r"\d+")


def get_base_model_name(model_id: str) -> str:
    """Strip provider prefix and version tokens from a model id.

    >>> get_base_model_name("models/gemini-1.5-pro-002")
    'gemini-pro'
    >>> get_base_model_name("gpt-4-turbo-latest")
    'gpt-turbo'
    """
    name = (model_id or "").strip().lower()
    if "/" in name:
        name = name.rsplit("/", 1)[1]
    name = _LATEST_SEGMENT.sub("", name)
    return _VERSION_SEGMENT.sub("", name)


def extract_version(model_id: str) -> Tuple[int, ...]:
    """All numbers embedded in the id, compared as a tuple ("3.10" > "3.5")."""
    return tuple(int(n) for n in _NUMBER.findall(model_id or ""))


def _is_capability_superset(candidate: Model, current: Model) -> bool:
    return (
        candidate.supports_tool_calls >= current.supports_tool_calls
        and candidate.supports_vision >= current.supports_vision
        and candidate.max_context_length >= current.max_context_length
    )


def find_upgrade(current: Optional[Model], catalog: Iterable[Model]) -> Optional[Model]:
    """Pick a strictly better model of the same family, or None.

    A "latest" alias of the same family wins outright. Otherwise the entry
    with the highest embedded version is chosen among those whose
    capabilities cover the current model's.
    """
    if current is None:
        return None
    if "latest" in current.id.lower():
        return None

    base = get_base_model_name(current.id)
    same_family = [m for m in catalog if m.id != current.id and get_base_model_name(m.id) == base]
    if not same_family:
        return None

    for model in same_family:
        if "latest" in model.id.lower():
            return model

    current_version = extract_version(current.id)
    best = None
    for model in same_family:
        if not _is_capability_superset(model, current):
            continue
        version = extract_version(model.id)
        if version <= current_version:
            continue
        if best is None or version > extract_version(best.id):
            best = model
    return best


class ModelRefreshScheduler:
    """Refreshes every credentialed provider's catalog on a fixed interval."""

    def __init__(
        self,
        registry: ProviderRegistry,
        interval: float = DEFAULT_REFRESH_INTERVAL,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        sleep=None,
    ):
        self._registry = registry
        self._interval = float(interval)
        self._initial_delay = float(initial_delay)
        self._sleep = sleep or asyncio.sleep
        self._refresh_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_lock.locked()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the background task on the running event loop."""
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(
            "Model refresh timer started with interval of %.1f hours", self._interval / 3600
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Model refresh timer stopped")

    async def _run(self) -> None:
        await self._sleep(self._initial_delay)
        while True:
            try:
                await self.refresh_all()
            except Exception:
                logger.exception("Scheduled model refresh failed")
            await self._sleep(self._interval)

    async def refresh_all(self) -> bool:
        """Refresh all credentialed providers and apply upgrades.

        Returns:
            False if another refresh was already running, True otherwise
        """
        # Checked and taken with no await in between
        if self._refresh_lock.locked():
            logger.warning("Model refresh already in progress, skipping")
            return False
        async with self._refresh_lock:
            logger.info("Refreshing models for all providers with valid API keys")
            for provider in self._registry.providers:
                if not provider.has_valid_api_key:
                    continue
                try:
                    models = await provider.fetch_available_models()
                except Exception:
                    logger.exception("Error refreshing models for provider: %s", provider.name)
                    continue
                logger.info("Refreshed %d models for provider: %s", len(models), provider.name)

                upgrade = find_upgrade(provider.current_model, provider.available_models)
                if upgrade is not None:
                    previous = provider.model_name
                    if provider.set_model(upgrade.id):
                        logger.info(
                            "Upgraded %s model from %s to %s", provider.name, previous, upgrade.id
                        )
            logger.info("Model refresh completed")
            return True

    async def refresh_provider(self, name: str) -> bool:
        """Re-fetch one provider's catalog without applying upgrades."""
        provider = self._registry.get(name)
        if provider is None:
            logger.warning("Provider not found for model refresh: %s", name)
            return False
        if not provider.has_valid_api_key:
            logger.warning("Cannot refresh models for provider without valid API key: %s", name)
            return False
        try:
            models = await provider.fetch_available_models()
        except Exception:
            logger.exception("Error refreshing models for provider: %s", provider.name)
            return False
        logger.info("Refreshed %d models for provider: %s", len(models), provider.name)
        return True
