"""Repository layer for the generation job core.

Provides data access abstractions for jobs and the usage ledger.
No base classes - each repository is self-contained.
"""

from genflow.repositories.job import GenerationJobRepository
from genflow.repositories.ledger import LedgerRepository

__all__ = [
    "GenerationJobRepository",
    "LedgerRepository",
]
