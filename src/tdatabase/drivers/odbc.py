"""
Event-driven SQL Server connection on top of pyodbc.

pyodbc is a blocking DB-API driver. OdbcConnection runs every call on a
single worker thread, so at most one statement is on the wire, and reports
the outcome back on the asyncio loop as driver protocol events:

- ``connect`` once the session is open (or failed)
- ``column_metadata``/``row``/callback/``request_completed`` per request
- ``end`` after the session is closed

Events are posted with ``call_soon_threadsafe`` and therefore arrive in the
order the worker produced them. Rows are fetched ``fetch_size`` at a time and
the worker waits until the loop has emitted a chunk before fetching the next
one, so a slow row consumer holds at most one chunk of read-ahead.
"""
import asyncio
import concurrent.futures
import datetime
import logging
import re
import struct
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import pyodbc
from tdatabase.driver import BulkColumn, BulkLoad, Callback, ColumnMetadata
from tdatabase.driver import ColumnValue, EventEmitter, Request
from tdatabase.exceptions import ConnectionFailure
from tdatabase.options import DEFAULT_ODBC_DRIVER
from tdatabase.types import resolve_type

logger = logging.getLogger(__name__)

__all__ = [
    'OdbcConnection',
    'build_connection_string',
    'bind_parameters',
    'input_sizes',
    'quote_identifier',
    'register_datetimeoffset_converter',
]

SQL_SS_TIME2 = -154
SQL_SS_TIMESTAMPOFFSET = -155

ISOLATION_LEVELS = {
    'READ UNCOMMITTED',
    'READ COMMITTED',
    'REPEATABLE READ',
    'SNAPSHOT',
    'SERIALIZABLE',
}

# data type name -> (sql type, default size, default decimal digits)
_INPUT_TYPES = {
    'TinyInt': (pyodbc.SQL_TINYINT, 0, 0),
    'SmallInt': (pyodbc.SQL_SMALLINT, 0, 0),
    'Int': (pyodbc.SQL_INTEGER, 0, 0),
    'BigInt': (pyodbc.SQL_BIGINT, 0, 0),
    'Bit': (pyodbc.SQL_BIT, 0, 0),
    'Real': (pyodbc.SQL_REAL, 0, 0),
    'Float': (pyodbc.SQL_FLOAT, 0, 0),
    'Decimal': (pyodbc.SQL_DECIMAL, 18, 0),
    'Numeric': (pyodbc.SQL_NUMERIC, 18, 0),
    'Money': (pyodbc.SQL_DECIMAL, 19, 4),
    'SmallMoney': (pyodbc.SQL_DECIMAL, 10, 4),
    'Char': (pyodbc.SQL_CHAR, 1, 0),
    'VarChar': (pyodbc.SQL_VARCHAR, 0, 0),
    'Text': (pyodbc.SQL_LONGVARCHAR, 0, 0),
    'NChar': (pyodbc.SQL_WCHAR, 1, 0),
    'NVarChar': (pyodbc.SQL_WVARCHAR, 0, 0),
    'NText': (pyodbc.SQL_WLONGVARCHAR, 0, 0),
    'Binary': (pyodbc.SQL_BINARY, 1, 0),
    'VarBinary': (pyodbc.SQL_VARBINARY, 0, 0),
    'Image': (pyodbc.SQL_LONGVARBINARY, 0, 0),
    'Date': (pyodbc.SQL_TYPE_DATE, 10, 0),
    'Time': (SQL_SS_TIME2, 16, 7),
    'SmallDateTime': (pyodbc.SQL_TYPE_TIMESTAMP, 16, 0),
    'DateTime': (pyodbc.SQL_TYPE_TIMESTAMP, 23, 3),
    'DateTime2': (pyodbc.SQL_TYPE_TIMESTAMP, 27, 7),
    'DateTimeOffset': (SQL_SS_TIMESTAMPOFFSET, 34, 7),
    'UniqueIdentifier': (pyodbc.SQL_GUID, 16, 0),
}

# rows fetched per round trip; the worker waits for each chunk to be handled
FETCH_SIZE = 500

# literals, quoted identifiers and comments are matched whole so that
# placeholders inside them are left alone; @name but not @@name or foo@bar
_TOKENIZE = re.compile(r"""
    (?P<string>'(?:[^']|'')*'|"(?:[^"]|"")*")
    |(?P<bracket>\[(?:[^\]]|\]\])*\])
    |(?P<line_comment>--[^\n]*)
    |(?P<block_comment>/\*.*?\*/)
    |(?<![@\w])@(?P<pname>\w+)
""", re.VERBOSE | re.DOTALL)


def quote_identifier(identifier: str) -> str:
    """Quote a (possibly schema-qualified) identifier for SQL Server.
    """
    if identifier.startswith('[') or identifier.startswith('#'):
        return identifier
    return '.'.join(f"[{part.replace(']', ']]')}]" for part in identifier.split('.'))


def _odbc_bool(value: Any) -> str:
    return 'yes' if value else 'no'


def build_connection_string(config: Mapping[str, Any]) -> str:
    """Build an ODBC connection string from a normalized driver configuration.
    """
    options = config.get('options') or {}
    server = config.get('server')
    if not server:
        raise ConnectionFailure('server is required')
    if options.get('instanceName'):
        server = f"{server}\\{options['instanceName']}"
    elif options.get('port'):
        server = f"{server},{options['port']}"

    parts = [
        f"DRIVER={{{options.get('driver') or DEFAULT_ODBC_DRIVER}}}",
        f'SERVER={server}',
    ]
    if options.get('database'):
        parts.append(f"DATABASE={options['database']}")

    authentication = config.get('authentication') or {}
    auth_type = authentication.get('type', 'default')
    auth_options = authentication.get('options') or {}
    if auth_type == 'azure-active-directory-password':
        parts.append('Authentication=ActiveDirectoryPassword')
    elif auth_type != 'default':
        raise ConnectionFailure(f'Unsupported authentication type: {auth_type}')
    if auth_options.get('userName'):
        parts.append(f"UID={auth_options['userName']}")
        parts.append(f"PWD={{{auth_options.get('password', '').replace('}', '}}')}}}")
    else:
        parts.append('Trusted_Connection=yes')

    parts.append(f"Encrypt={_odbc_bool(options.get('encrypt', True))}")
    parts.append(f"TrustServerCertificate={_odbc_bool(options.get('trustServerCertificate', False))}")
    if options.get('appName'):
        parts.append(f"APP={options['appName']}")
    return ';'.join(parts) + ';'


def bind_parameters(sql: str, parameters: Sequence[tuple]) -> tuple[str, list[Any]]:
    """Rewrite ``@name`` placeholders to ``?`` with values in occurrence order.

    Only declared parameter names are rewritten; ``@@identity`` and local
    ``@variables`` are left alone. SQL Server names are case-insensitive.
    """
    values = {name.lower(): value for name, _, value, *_ in parameters}
    args: list[Any] = []

    def replace(match: re.Match) -> str:
        name = (match.group('pname') or '').lower()
        if name not in values:
            return match.group(0)
        args.append(values[name])
        return '?'

    return _TOKENIZE.sub(replace, sql), args


def _handle_datetimeoffset(dto_value: bytes) -> datetime.datetime:
    """Convert the raw SQL_SS_TIMESTAMPOFFSET structure to an aware datetime.
    """
    tup = struct.unpack('<6hI2h', dto_value)
    tz = datetime.timezone(datetime.timedelta(hours=tup[7], minutes=tup[8]))
    return datetime.datetime(tup[0], tup[1], tup[2], tup[3], tup[4], tup[5],
                             tup[6] // 1000, tz)


def input_sizes(columns: Sequence[BulkColumn]) -> list[tuple[int, int, int] | None]:
    """Map declared bulk load columns to ``cursor.setinputsizes`` entries.

    Each entry is ``(sql_type, size, decimal_digits)``; ``length`` or
    ``precision`` gives the size and ``scale`` the digits. A size of 0 means
    max for variable length types. Types without an ODBC mapping are None
    and left to the driver.
    """
    sizes = []
    for column in columns:
        mapped = _INPUT_TYPES.get(column.type.name)
        if mapped is None:
            sizes.append(None)
            continue
        sql_type, size, digits = mapped
        options = column.options
        size = options.get('length', options.get('precision', size))
        digits = options.get('scale', digits)
        sizes.append((sql_type, size, digits))
    return sizes


def register_datetimeoffset_converter(connection: Any) -> None:
    """Register a converter for SQL Server's datetimeoffset data type.
    """
    try:
        connection.add_output_converter(SQL_SS_TIMESTAMPOFFSET, _handle_datetimeoffset)
        logger.debug('Registered datetimeoffset converter')
    except AttributeError:
        logger.warning('Could not register datetimeoffset converter - pyodbc may be outdated')


class OdbcConnection(EventEmitter):
    """Driver connection emitting protocol events for a pyodbc session.
    """

    def __init__(self, config: Mapping[str, Any],
                 connect_func: Callable[..., Any] = pyodbc.connect,
                 fetch_size: int = FETCH_SIZE) -> None:
        super().__init__()
        self.config = config
        self.connect_func = connect_func
        self.fetch_size = fetch_size
        self.dbapi_connection = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='tdatabase-odbc')

    def _post(self, func: Callable[..., Any], *args: Any) -> bool:
        """Deliver a call on the loop thread."""
        try:
            self._loop.call_soon_threadsafe(func, *args)
        except RuntimeError:
            logger.debug(f'Event loop closed, dropping {getattr(func, "__name__", func)}')
            return False
        return True

    def _deliver(self, func: Callable[..., Any], *args: Any) -> bool:
        """Run a call on the loop thread and block the worker until it has run.

        Returns False if the loop closed before the call could run.
        """
        done = concurrent.futures.Future()

        def run():
            try:
                func(*args)
            finally:
                done.set_result(None)

        if not self._post(run):
            return False
        while True:
            try:
                done.result(timeout=1.0)
                return True
            except concurrent.futures.TimeoutError:
                if self._loop.is_closed():
                    return False

    def _submit(self, func: Callable[..., Any], *args: Any) -> None:
        if self._loop is None:
            raise ConnectionFailure('connect() has not been called')
        self._executor.submit(func, *args)

    def connect(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._submit(self._connect)

    def _connect(self) -> None:
        options = self.config.get('options') or {}
        timeout = int((options.get('connectTimeout') or 0) / 1000)
        try:
            connection_string = build_connection_string(self.config)
            cnxn = self.connect_func(connection_string, autocommit=True, timeout=timeout)
        except Exception as err:
            self._post(self.emit, 'connect', err)
            return
        register_datetimeoffset_converter(cnxn)
        self.dbapi_connection = cnxn
        self._post(self.emit, 'connect', None)

    def close(self) -> None:
        if self._loop is None:
            return
        self._executor.submit(self._close)
        self._executor.shutdown(wait=False)

    def _close(self) -> None:
        if self.dbapi_connection is not None:
            try:
                self.dbapi_connection.close()
            except pyodbc.Error as err:
                logger.debug(f'Error closing ODBC connection: {err}')
            self.dbapi_connection = None
        self._post(self.emit, 'end')

    def exec_sql(self, request: Request) -> None:
        self._submit(self._run_request, request, True)

    def exec_sql_batch(self, request: Request) -> None:
        self._submit(self._run_request, request, False)

    def _run_request(self, request: Request, parameterized: bool) -> None:
        try:
            cursor = self.dbapi_connection.cursor()
            try:
                if parameterized and request.parameters:
                    sql, args = bind_parameters(request.sql, request.parameters)
                    cursor.execute(sql, *args)
                else:
                    cursor.execute(request.sql)
                row_count = self._drain(cursor, request)
            finally:
                cursor.close()
        except Exception as err:
            self._post(request.callback, err, 0)
            self._post(request.emit, 'request_completed')
            return
        self._post(request.callback, None, row_count)
        self._post(request.emit, 'request_completed')

    def _drain(self, cursor: Any, request: Request) -> int:
        """Emit every result set of the cursor and return the total row count.
        """
        total = 0
        while True:
            if cursor.description is not None:
                metadata = [
                    ColumnMetadata(col[0], col[3], resolve_type(col[1]))
                    for col in cursor.description
                ]
                self._post(request.emit, 'column_metadata', metadata)
                while True:
                    rows = cursor.fetchmany(self.fetch_size)
                    if not rows:
                        break
                    if not self._deliver(self._emit_rows, request, metadata, rows):
                        raise ConnectionFailure('Event loop closed while rows were pending')
                    total += len(rows)
            elif cursor.rowcount is not None and cursor.rowcount >= 0:
                total += cursor.rowcount
            if not cursor.nextset():
                return total

    @staticmethod
    def _emit_rows(request: Request, metadata: list[ColumnMetadata],
                   rows: Sequence[Sequence[Any]]) -> None:
        for row in rows:
            request.emit('row', [ColumnValue(m, v) for m, v in zip(metadata, row)])

    def new_bulk_load(self, table: str, options: Mapping[str, Any] | None,
                      callback: Callback) -> BulkLoad:
        return BulkLoad(table, options, callback)

    def exec_bulk_load(self, bulk_load: BulkLoad) -> None:
        self._submit(self._run_bulk_load, bulk_load)

    def _run_bulk_load(self, bulk_load: BulkLoad) -> None:
        cnxn = self.dbapi_connection
        columns = ', '.join(quote_identifier(c.name) for c in bulk_load.columns)
        placeholders = ', '.join('?' for _ in bulk_load.columns)
        hint = ' WITH (TABLOCK)' if bulk_load.options.get('tableLock') else ''
        sql = f'INSERT INTO {quote_identifier(bulk_load.table)}{hint} ({columns}) VALUES ({placeholders})'
        params = bulk_load.row_values()

        own_transaction = cnxn.autocommit
        try:
            if own_transaction:
                cnxn.autocommit = False
            if params:
                cursor = cnxn.cursor()
                try:
                    cursor.fast_executemany = True
                    cursor.setinputsizes(input_sizes(bulk_load.columns))
                    cursor.executemany(sql, params)
                finally:
                    cursor.close()
            if own_transaction:
                cnxn.commit()
        except Exception as err:
            if own_transaction:
                try:
                    cnxn.rollback()
                except pyodbc.Error as rollback_err:
                    logger.warning(f'Rollback after failed bulk load failed: {rollback_err}')
            self._post(bulk_load.callback, err, 0)
            return
        finally:
            if own_transaction:
                cnxn.autocommit = True
        logger.debug(f'Bulk loaded {len(params)} rows into {bulk_load.table}')
        self._post(bulk_load.callback, None, len(params))

    def begin_transaction(self, callback: Callback, name: str | None = None,
                          isolation_level: str | None = None) -> None:
        self._submit(self._begin, callback, name, isolation_level)

    def _begin(self, callback: Callback, name: str | None,
               isolation_level: str | None) -> None:
        cnxn = self.dbapi_connection
        try:
            if isolation_level:
                level = isolation_level.upper().replace('_', ' ')
                if level not in ISOLATION_LEVELS:
                    raise ValueError(f'Unknown isolation level: {isolation_level}')
                cnxn.execute(f'SET TRANSACTION ISOLATION LEVEL {level}')
            cnxn.autocommit = False
        except Exception as err:
            self._post(callback, err)
            return
        if name:
            logger.debug(f'Transaction names are not sent over ODBC, ignoring {name}')
        self._post(callback, None)

    def commit_transaction(self, callback: Callback) -> None:
        self._submit(self._end_transaction, callback, True)

    def rollback_transaction(self, callback: Callback) -> None:
        self._submit(self._end_transaction, callback, False)

    def _end_transaction(self, callback: Callback, commit: bool) -> None:
        cnxn = self.dbapi_connection
        try:
            if commit:
                cnxn.commit()
            else:
                cnxn.rollback()
        except Exception as err:
            self._post(callback, err)
            return
        finally:
            cnxn.autocommit = True
        self._post(callback, None)
