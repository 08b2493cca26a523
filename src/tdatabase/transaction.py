"""
Transaction handling for database operations.
"""
import logging
from typing import Any

from tdatabase.exceptions import TransactionError

logger = logging.getLogger(__name__)


class Transaction:
    """Async context manager for running multiple commands in a transaction.

    Commits when the block completes, rolls back when it raises. Nested
    transactions on the same Database are not supported.

    Examples
        async with Transaction(db) as tx:
            await tx.execute('delete from ...', params)
            await tx.execute('update ...', params)
    """

    def __init__(self, db: Any, name: str | None = None,
                 isolation_level: str | None = None) -> None:
        self.db = db
        self.name = name
        self.isolation_level = isolation_level

    def __getattr__(self, name: str) -> Any:
        """Delegate query methods to the Database."""
        return getattr(self.db, name)

    async def __aenter__(self) -> 'Transaction':
        if self.db.in_transaction:
            raise TransactionError('Nested transactions are not supported')
        await self.db.begin_transaction(self.name, self.isolation_level)
        self.db.in_transaction = True
        logger.debug(f'Started transaction for connection {id(self.db)}')
        return self

    async def __aexit__(self, exc_type: type | None, value: Exception | None,
                        traceback: Any | None) -> None:
        try:
            if exc_type is not None:
                logger.warning('Rolling back the current transaction')
                await self.db.rollback_transaction()
            else:
                await self.db.commit_transaction()
                logger.debug(f'Committed transaction for connection {id(self.db)}')
        finally:
            self.db.in_transaction = False
