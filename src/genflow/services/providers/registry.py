"""Build provider adapters from settings."""

from typing import Optional

import httpx
import structlog

from genflow.core.config import Settings
from genflow.models.job import ProviderKind
from genflow.services.exceptions import ConfigurationError
from genflow.services.providers.base import ProviderAdapter
from genflow.services.providers.kie import KieAdapter
from genflow.services.providers.luma import LumaAdapter
from genflow.services.providers.midjourney import MidjourneyAdapter
from genflow.services.providers.replicate_adapter import ReplicateAdapter
from genflow.services.providers.suno import SunoAdapter

logger = structlog.get_logger(__name__)


def build_adapter(
    kind: ProviderKind,
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderAdapter:
    """Create the adapter for one provider family.

    Args:
        kind: Provider family
        settings: Application settings
        transport: Optional httpx transport shared by HTTP adapters

    Raises:
        ConfigurationError: If the provider's concurrency or cost is unusable
    """
    config = settings.provider_config(kind)
    if config.concurrency < 1:
        raise ConfigurationError(f"{kind.value}: concurrency must be at least 1")
    if config.cost_units < 0:
        raise ConfigurationError(f"{kind.value}: cost units cannot be negative")

    timeout = settings.provider_timeout_seconds
    if kind == ProviderKind.IMAGE_A:
        return MidjourneyAdapter(config, timeout=timeout, transport=transport)
    if kind == ProviderKind.IMAGE_B:
        return ReplicateAdapter(config, model_version=settings.replicate_model_version, timeout=timeout)
    if kind == ProviderKind.IMAGE_C:
        return KieAdapter(config, model=settings.kie_model, timeout=timeout, transport=transport)
    if kind == ProviderKind.MUSIC:
        return SunoAdapter(config, timeout=timeout, transport=transport)
    if kind == ProviderKind.VIDEO:
        return LumaAdapter(config, timeout=timeout, transport=transport)
    raise ConfigurationError(f"No adapter for provider kind {kind.value}")


def build_adapters(
    settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
) -> dict[ProviderKind, ProviderAdapter]:
    """Create adapters for every enabled provider family."""
    adapters = {}
    for kind in settings.enabled_provider_kinds:
        adapters[kind] = build_adapter(kind, settings, transport=transport)
        logger.info(
            "provider.configured",
            provider=kind.value,
            concurrency=settings.provider_config(kind).concurrency,
            callbacks=bool(settings.webhook_base_url),
        )
    if not adapters:
        raise ConfigurationError("ENABLED_PROVIDERS is empty; nothing to run")
    return adapters
