"""
Asynchronous SQL Server access over an event-driven driver connection.

All operations can be called either as:
- Database methods: await db.query(sql, params)
- Module functions: await tdatabase.query(db, sql, params)

The module functions are thin facades over the Database methods.
"""
__version__ = '0.1.0'

from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from tdatabase.connection import ConnectionState, Database, connect
from tdatabase.driver import BulkLoad, ColumnMetadata, ColumnValue
from tdatabase.driver import DriverConnection, Request
from tdatabase.exceptions import BulkLoadError, ConnectionFailure
from tdatabase.exceptions import DatabaseError, TransactionError
from tdatabase.exceptions import ValidationError
from tdatabase.options import DatabaseOptions, normalize_config
from tdatabase.transaction import Transaction as transaction
from tdatabase.types import TYPES, BatchOutcome, ColumnDescriptor, DataType
from tdatabase.types import Parameter, QueryResult, Row


async def execute(db: Database, sql: str,
                  parameters: Sequence[Sequence[Any]] | None = None) -> int:
    """Execute a SQL statement and return affected row count.
    """
    return await db.execute(sql, parameters)


delete = execute
insert = execute
update = execute


async def query(db: Database, sql: str,
                parameters: Sequence[Sequence[Any]] | None = None,
                columns: bool = False) -> list[Row] | QueryResult:
    """Execute a query and return its rows.
    """
    return await db.query(sql, parameters, columns=columns)


async def query_lm(db: Database, sql: str, parameters: Sequence[Sequence[Any]] | None,
                   row_consumer: Callable[[Row], Any]) -> int:
    """Execute a query passing each row to ``row_consumer``; return the row count.
    """
    return await db.query_lm(sql, parameters, row_consumer)


async def batch_sql(db: Database, statements: Iterable[str]) -> list[BatchOutcome]:
    """Execute statements sequentially, recording each outcome.
    """
    return await db.batch_sql(statements)


async def bulk_load(db: Database, table: str, options: Mapping[str, Any] | None,
                    columns: Sequence[Sequence[Any]],
                    rows: Iterable[Mapping[str, Any] | Sequence[Any]]) -> int:
    """Insert rows through a driver bulk load session.
    """
    return await db.bulk_load(table, options, columns, rows)


__all__ = [
    'connect',
    'Database',
    'ConnectionState',
    'DatabaseOptions',
    'normalize_config',
    'transaction',
    'execute',
    'delete',
    'insert',
    'update',
    'query',
    'query_lm',
    'batch_sql',
    'bulk_load',
    'TYPES',
    'DataType',
    'Parameter',
    'ColumnDescriptor',
    'QueryResult',
    'BatchOutcome',
    'Row',
    'Request',
    'BulkLoad',
    'ColumnMetadata',
    'ColumnValue',
    'DriverConnection',
    'DatabaseError',
    'ConnectionFailure',
    'BulkLoadError',
    'TransactionError',
    'ValidationError',
]
