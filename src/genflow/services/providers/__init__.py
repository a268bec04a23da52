"""Provider adapters: one per generation provider family."""

from genflow.services.providers.base import (
    HttpProviderAdapter,
    ProviderAdapter,
    RawNotification,
    RemoteState,
    RemoteStatus,
)
from genflow.services.providers.registry import build_adapter, build_adapters

__all__ = [
    "HttpProviderAdapter",
    "ProviderAdapter",
    "RawNotification",
    "RemoteState",
    "RemoteStatus",
    "build_adapter",
    "build_adapters",
]
