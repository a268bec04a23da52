"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from genflow.models.job import (
    ALLOWED_TRANSITIONS,
    AssetDescriptor,
    AssetLocation,
    GenerationJob,
    InvalidStateTransition,
    JobState,
    ProviderKind,
)
from genflow.models.ledger import LedgerEntry, LedgerEntryType, UserBalance

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AssetDescriptor",
    "AssetLocation",
    "GenerationJob",
    "InvalidStateTransition",
    "JobState",
    "ProviderKind",
    "LedgerEntry",
    "LedgerEntryType",
    "UserBalance",
]
