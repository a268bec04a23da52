"""Unit of Work for the generation job store.

One UnitOfWork is one database transaction spanning the job and ledger
repositories, so a ledger movement and the job change it belongs to commit
or roll back together.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genflow.repositories.job import GenerationJobRepository
from genflow.repositories.ledger import LedgerRepository

logger = structlog.get_logger(__name__)


class UnitOfWork:
    """Transaction scope exposing `jobs` and `ledger`.

    Example:
        async with await uow_factory() as uow:
            await uow.ledger.debit(owner, 10, job.id)
            await uow.jobs.add(job)
        # committed here; any exception inside the block rolls both back
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.jobs = GenerationJobRepository(session)
        self.ledger = LedgerRepository(session)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed")
            else:
                await self.session.rollback()
                logger.debug("transaction.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        # Exceptions propagate to the caller
        return False


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]):
    """Return an async callable opening a UnitOfWork on a fresh session.

    Built once in the application lifespan (or the CLI) and passed to every
    component that writes to the job store.
    """

    async def _open_uow() -> UnitOfWork:
        return UnitOfWork(session_factory())

    return _open_uow
