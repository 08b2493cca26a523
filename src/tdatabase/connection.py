"""
Database connection handling over an event-driven driver.

This module provides:
1. The `Database` class owning one driver connection and exposing awaitable
   query/execute/stream/batch/bulk load/transaction operations
2. The `connect()` function creating and connecting a `Database`

Every request-issuing operation passes through a per-connection FIFO queue,
so concurrent callers never have two statements in flight on the driver.

    db = await connect(options)
    rows = await db.query('select * from tbl where id=@id', [('id', TYPES.Int, 1)])
    count = await db.execute('delete from tbl where id=@id', [('id', TYPES.Int, 1)])
    db.disconnect()
"""
import asyncio
import decimal
import enum
import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import fields
from functools import partial, wraps
from typing import Any, Self

from tdatabase.driver import Callback, DriverConnection
from tdatabase.exceptions import BulkLoadError, ConnectionFailure
from tdatabase.exceptions import ValidationError, error_message
from tdatabase.options import DatabaseOptions, normalize_config
from tdatabase.request import CountRequest, PendingRequest, RowsRequest
from tdatabase.request import ScalarRequest, StreamRequest
from tdatabase.types import TYPES, BatchOutcome, QueryResult, Row, TypeRegistry

from libb import load_options

__all__ = [
    'ConnectionState',
    'Database',
    'connect',
]

logger = logging.getLogger(__name__)

LogSink = Callable[[int, str], None]
DriverFactory = Callable[[Mapping[str, Any]], DriverConnection]

IDENTITY_SQL = 'select @@identity'

# keys only found in the raw driver configuration shape
_RAW_CONFIG_KEYS = {'options', 'authentication', 'userName'}


class ConnectionState(enum.Enum):
    UNCONNECTED = 'unconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'
    CLOSED = 'closed'


def _bound_values(parameters: Sequence[Sequence[Any]] | None) -> list[Any]:
    if not parameters:
        return []
    return [p[2] if isinstance(p, Sequence) and len(p) > 2 else p for p in parameters]


def _result_size(result: Any) -> int:
    if isinstance(result, QueryResult):
        return len(result.rows)
    if isinstance(result, list):
        return len(result)
    return result


def dumpsql(func):
    """Decorator for logging statements, bound values and timing."""
    @wraps(func)
    async def wrapper(self: 'Database', sql: str, *args: Any, **kwargs: Any):
        parameters = args[0] if args else kwargs.get('parameters')
        start = time.time()
        self.log(logging.DEBUG, f'SQL:\n{sql}\nargs: {_bound_values(parameters)}')
        try:
            result = await func(self, sql, *args, **kwargs)
        except Exception as exc:
            self.log(logging.ERROR, f'Error with query:\nSQL:\n{sql}\nerror: {error_message(exc)}')
            raise
        finally:
            elapsed = time.time() - start
            self.addcall(elapsed)
        self.log(logging.DEBUG, f'Query returned {_result_size(result)} rows in {elapsed:.4f}s')
        return result
    return wrapper


class Database:
    """Owns one driver connection and serializes requests against it.

    Configuration is either a `DatabaseOptions` or a raw driver mapping; raw
    mappings are normalized into a new dict and never modified.

    Calling `connect` twice without `disconnect` opens a second connection
    and abandons the first one without closing it.
    """

    def __init__(self, config: DatabaseOptions | Mapping[str, Any],
                 driver_factory: DriverFactory | None = None,
                 log: LogSink | None = None) -> None:
        if isinstance(config, DatabaseOptions):
            self.options = config
            self.config = config.to_config()
        else:
            self.options = None
            self.config = normalize_config(config)
        self.driver_factory = driver_factory
        self.sink = log
        self.connection: DriverConnection | None = None
        self.state = ConnectionState.UNCONNECTED
        self.calls = 0
        self.time = 0.0
        self.in_transaction = False
        self._queue = asyncio.Lock()

    async def __aenter__(self) -> Self:
        if not self.connected:
            await self.connect()
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None,
                        exc_tb: Any | None) -> None:
        self.disconnect()

    def __repr__(self) -> str:
        return f"Database(server={self.config.get('server')!r}, state={self.state.value})"

    @property
    def types(self) -> TypeRegistry:
        return TYPES

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def log(self, level: int, message: str) -> None:
        """Log to the module logger and the optional sink.
        """
        logger.log(level, message)
        if self.sink is None:
            return
        try:
            self.sink(level, message)
        except Exception as exc:
            logger.warning(f'Log sink failed: {exc}')

    def addcall(self, elapsed: float) -> None:
        """Track execution statistics
        """
        self.time += elapsed
        self.calls += 1

    def _create_connection(self) -> DriverConnection:
        factory = self.driver_factory
        if factory is None:
            from tdatabase.drivers.odbc import OdbcConnection
            factory = OdbcConnection
        return factory(self.config)

    @staticmethod
    def _callback_future() -> tuple[asyncio.Future, Callback]:
        """Future settled by the first call of a driver style ``(error, result)`` callback.
        """
        future = asyncio.get_running_loop().create_future()

        def callback(error: BaseException | None = None, result: Any = None, *args: Any) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)

        return future, callback

    async def connect(self) -> None:
        """Open the driver connection and wait for its ``connect`` event.
        """
        server = self.config.get('server')
        self.connection = None
        self.state = ConnectionState.CONNECTING
        try:
            connection = self._create_connection()
            future, callback = self._callback_future()
            connection.on('connect', callback)
            connection.on('end', partial(self._on_end, connection))
            connection.on('error', partial(self._on_error, connection))
            connection.connect()
            await future
        except Exception as exc:
            self.state = ConnectionState.UNCONNECTED
            self.log(logging.ERROR, f'Connection to {server} failed: {error_message(exc)}')
            raise
        self.connection = connection
        self.state = ConnectionState.CONNECTED
        self.log(logging.INFO, f'Connected to {server}')

    def disconnect(self) -> None:
        """Close the connection without waiting for acknowledgement. Idempotent.
        """
        if self.connection is None:
            return
        connection, self.connection = self.connection, None
        self.state = ConnectionState.CLOSED
        try:
            connection.close()
        except Exception as exc:
            logger.debug(f'Error closing connection: {exc}')
        self.log(logging.INFO, f'Disconnected: {self.calls} queries in {self.time:.2f}s '
                               f'(avg: {self.time/max(1, self.calls):.3f}s per query)')

    def _on_end(self, connection: DriverConnection, *args: Any) -> None:
        if self.connection is not connection:
            return
        self.connection = None
        self.state = ConnectionState.CLOSED
        self.log(logging.INFO, 'Connection closed by the server')

    def _on_error(self, connection: DriverConnection, error: BaseException, *args: Any) -> None:
        if self.connection is connection:
            self.log(logging.ERROR, f'Connection error: {error_message(error)}')

    def _require_connection(self) -> DriverConnection:
        if self.state is not ConnectionState.CONNECTED or self.connection is None:
            raise ConnectionFailure(f'Not connected (state: {self.state.value})')
        return self.connection

    async def _acquire(self) -> DriverConnection:
        """Wait for the queue and return the connection.
        """
        await self._queue.acquire()
        try:
            return self._require_connection()
        except BaseException:
            self._queue.release()
            raise

    def _hold_until_settled(self, future: asyncio.Future) -> None:
        """Keep the queue until ``future`` settles.

        A caller that is cancelled while waiting stops waiting, but the
        driver still owns the request; the next request must not be sent
        before this one completes.
        """
        future.add_done_callback(self._release_queue)

    def _release_queue(self, future: asyncio.Future) -> None:
        if not future.cancelled():
            # marks the error as retrieved when the caller was cancelled
            future.exception()
        self._queue.release()

    async def _submit(self, pending: PendingRequest, batch: bool = False) -> Any:
        """Queue a request, send it once the connection is free and await its result.
        """
        connection = await self._acquire()
        try:
            pending.mark_sent()
        except BaseException:
            self._queue.release()
            raise
        self._hold_until_settled(pending.future)
        try:
            if batch:
                connection.exec_sql_batch(pending.request)
            else:
                connection.exec_sql(pending.request)
        except Exception as exc:
            pending.fail(exc)
        return await asyncio.shield(pending.future)

    async def _call(self, invoke: Callable[[DriverConnection, Callback], None]) -> Any:
        """Queue a callback style driver primitive and await its callback.
        """
        connection = await self._acquire()
        future, callback = self._callback_future()
        self._hold_until_settled(future)
        try:
            invoke(connection, callback)
        except Exception as exc:
            callback(exc)
        return await asyncio.shield(future)

    @dumpsql
    async def query(self, sql: str, parameters: Sequence[Sequence[Any]] | None = None,
                    columns: bool = False) -> list[Row] | QueryResult:
        """Run a statement and return its rows in arrival order.

        With ``columns=True`` the result is a `QueryResult` carrying the column
        metadata as well. All rows are buffered; see `query_lm` for large results.
        """
        return await self._submit(RowsRequest(sql, parameters, columns=columns))

    async def query_int(self, sql: str, id: int) -> list[Row]:
        """Run a query with one integer parameter named ``id``.

        Use it in the form query_int('select * from tbl where id_primary=@id', 1)
        """
        return await self.query(sql, [('id', TYPES.Int, id)])

    async def query_lm(self, sql: str, parameters: Sequence[Sequence[Any]] | None,
                       row_consumer: Callable[[Row], Any]) -> int:
        """Run a query with low memory: each row goes to ``row_consumer`` as it arrives.

        Returns the row count. Raises ValidationError before anything is sent
        if ``row_consumer`` is not callable.
        """
        if not callable(row_consumer):
            raise ValidationError('Parameter row_consumer must be a function.')
        return await self._stream(sql, parameters, row_consumer)

    @dumpsql
    async def _stream(self, sql: str, parameters: Sequence[Sequence[Any]] | None,
                      row_consumer: Callable[[Row], Any]) -> int:
        return await self._submit(StreamRequest(sql, parameters, row_consumer))

    @dumpsql
    async def execute(self, sql: str, parameters: Sequence[Sequence[Any]] | None = None) -> int:
        """Run a statement and return the affected row count.

        The count is read when the request is fully completed, not when the
        statement finishes.
        """
        return await self._submit(CountRequest(sql, parameters))

    async def execute_int(self, sql: str, id: int) -> int:
        """Run a statement with one integer parameter named ``id``.

        Use it in the form execute_int('delete from tbl where id_primary=@id', 1)
        """
        return await self.execute(sql, [('id', TYPES.Int, id)])

    @dumpsql
    async def execute_batch(self, sql: str) -> int:
        """Run raw SQL without parameter binding.

        Statements creating temporary objects must go through here; the
        parameterized path runs them in a scope that drops them again.
        """
        return await self._submit(CountRequest(sql), batch=True)

    async def batch_sql(self, statements: Iterable[str]) -> list[BatchOutcome]:
        """Execute statements one after another, recording each outcome.

        A failing statement is recorded with its error message and the batch
        continues; the result has one entry per statement, in order.
        """
        outcomes = []
        for sql in statements:
            try:
                count = await self.execute(sql)
            except Exception as exc:
                outcomes.append(BatchOutcome(sql, error=error_message(exc)))
            else:
                outcomes.append(BatchOutcome(sql, count=count))
        failed = sum(1 for o in outcomes if not o.ok)
        self.log(logging.DEBUG, f'Batch ran {len(outcomes)} statements, {failed} failed')
        return outcomes

    async def bulk_load(self, table: str, options: Mapping[str, Any] | None,
                        columns: Sequence[Sequence[Any]],
                        rows: Iterable[Mapping[str, Any] | Sequence[Any]]) -> int:
        """Insert rows through a driver bulk load session.

        ``columns`` are ``(name, type, column_options)`` triples, ``type`` being
        a DataType or a type name such as ``'Int'``. Returns the inserted row count.
        """
        declared = []
        for column in columns:
            name, type_name, *rest = column
            try:
                declared.append((name, TYPES.get(type_name), *rest))
            except KeyError as exc:
                raise BulkLoadError(f'Column {name}: {exc.args[0]}') from exc

        def invoke(connection: DriverConnection, callback: Callback) -> None:
            bulk = connection.new_bulk_load(table, options, callback)
            for column in declared:
                bulk.add_column(*column)
            for row in rows:
                bulk.add_row(row)
            connection.exec_bulk_load(bulk)

        start = time.time()
        self.log(logging.DEBUG, f'Bulk load into {table} ({len(declared)} columns)')
        try:
            count = await self._call(invoke)
        except Exception as exc:
            self.log(logging.ERROR, f'Bulk load into {table} failed: {error_message(exc)}')
            raise
        finally:
            self.addcall(time.time() - start)
        self.log(logging.DEBUG, f'Bulk loaded {count} rows into {table} in {time.time() - start:.4f}s')
        return count

    async def identity(self) -> Any:
        """Return the last identity value of the session, 0 if there is none.
        """
        value = await self._submit(ScalarRequest(IDENTITY_SQL, default=0))
        if value is None:
            return 0
        if isinstance(value, decimal.Decimal) and value == value.to_integral_value():
            return int(value)
        return value

    async def begin_transaction(self, name: str | None = None,
                                isolation_level: str | None = None) -> None:
        """Start of a transaction
        """
        await self._transaction_call(
            'Began', lambda cn, cb: cn.begin_transaction(cb, name, isolation_level))

    async def commit_transaction(self) -> None:
        """Commit of a transaction
        """
        await self._transaction_call('Committed', lambda cn, cb: cn.commit_transaction(cb))

    async def rollback_transaction(self) -> None:
        """Rollback of a transaction
        """
        await self._transaction_call('Rolled back', lambda cn, cb: cn.rollback_transaction(cb))

    async def _transaction_call(self, action: str,
                                invoke: Callable[[DriverConnection, Callback], None]) -> None:
        try:
            await self._call(invoke)
        except Exception as exc:
            self.log(logging.ERROR, f'{action} transaction failed: {error_message(exc)}')
            raise
        self.log(logging.INFO, f'{action} transaction')


async def connect(options: DatabaseOptions | Mapping[str, Any] | str,
                  config: Any | None = None, *,
                  driver_factory: DriverFactory | None = None,
                  log: LogSink | None = None, **kw: Any) -> Database:
    """Create a `Database` and connect it.

    Args:
        options: Can be:
                - DatabaseOptions object
                - Raw driver configuration mapping (``server``, ``options``,
                  ``authentication`` or legacy ``userName``/``password``)
                - String path to configuration
                - Dictionary of DatabaseOptions fields
        config: Configuration object (for loading from config files)
        driver_factory: Callable building the driver connection from the
                normalized configuration (default: ODBC connection)
        log: Optional ``(level, message)`` sink
        **kw: Additional keyword arguments to override options

    Returns
        Connected Database
    """
    if isinstance(options, DatabaseOptions):
        for field in fields(options):
            kw.pop(field.name, None)
    elif not (isinstance(options, Mapping) and _RAW_CONFIG_KEYS & set(options)):
        options_func = load_options(cls=DatabaseOptions)(lambda o, c: o)
        options = options_func(options, config, **kw)

    db = Database(options, driver_factory=driver_factory, log=log)
    await db.connect()
    return db
