"""
Driver protocol for event-driven connections.

A driver connection owns one physical session and reports everything it does
through events, never through return values:

- connection events: ``connect`` (error or None), ``end``, ``error``
- request events, in order: ``column_metadata`` (list of ColumnMetadata, once
  per result set, before its rows), ``row`` (list of ColumnValue), then the
  request callback ``callback(error, row_count)``, then ``request_completed``
- bulk load and transaction primitives report through their callbacks

Events may be emitted from any point in the loop but must be delivered on
the loop thread, in emission order.
"""
import logging
from collections import defaultdict
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from tdatabase.types import DataType

logger = logging.getLogger(__name__)

Callback = Callable[..., None]


@dataclass(frozen=True)
class ColumnMetadata:
    """Column description as reported by the driver.
    """
    col_name: str
    data_length: int | None
    type: DataType


@dataclass(frozen=True)
class ColumnValue:
    """One column of a row event.
    """
    metadata: ColumnMetadata
    value: Any


class EventEmitter:
    """Minimal synchronous event emitter shared by requests and drivers.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Callback]] = defaultdict(list)

    def on(self, event: str, handler: Callback) -> None:
        self._handlers[event].append(handler)

    def remove_all_listeners(self, event: str | None = None) -> None:
        if event is None:
            self._handlers.clear()
        else:
            self._handlers.pop(event, None)

    def emit(self, event: str, *args: Any) -> bool:
        """Call every handler registered for ``event``; True if any ran.
        """
        handlers = list(self._handlers.get(event, ()))
        for handler in handlers:
            handler(*args)
        return bool(handlers)


class Request(EventEmitter):
    """One statement submitted to a driver connection.

    Examples
        request = Request('select * from tbl where id=@id', callback)
        request.add_parameter('id', TYPES.Int, 1)
        request.on('row', handle_row)
        connection.exec_sql(request)
    """

    def __init__(self, sql: str, callback: Callback) -> None:
        super().__init__()
        self.sql = sql
        self.callback = callback
        self.parameters: list[tuple[str, DataType, Any, dict[str, Any]]] = []

    def add_parameter(self, name: str, type: DataType, value: Any,
                      options: dict[str, Any] | None = None) -> None:
        if not isinstance(name, str) or not name:
            raise TypeError(f'Parameter name must be a non-empty string, got {name!r}')
        if not isinstance(type, DataType):
            raise TypeError(f'Parameter {name} requires a data type, got {type!r}')
        self.parameters.append((name, type, value, options or {}))

    def __repr__(self) -> str:
        return f'Request({self.sql!r}, parameters={len(self.parameters)})'


@dataclass
class BulkColumn:
    name: str
    type: DataType
    options: dict[str, Any] = field(default_factory=dict)


class BulkLoad:
    """A driver-native bulk insert session scoped to one table.
    """

    def __init__(self, table: str, options: Mapping[str, Any] | None,
                 callback: Callback) -> None:
        self.table = table
        self.options = dict(options or {})
        self.callback = callback
        self.columns: list[BulkColumn] = []
        self.rows: list[Mapping[str, Any] | Sequence[Any]] = []

    def add_column(self, name: str, type: DataType,
                   options: dict[str, Any] | None = None) -> None:
        if self.rows:
            raise ValueError('Columns cannot be added after the first row')
        self.columns.append(BulkColumn(name, type, dict(options or {})))

    def add_row(self, row: Mapping[str, Any] | Sequence[Any]) -> None:
        if not self.columns:
            raise ValueError('Columns must be declared before adding rows')
        self.rows.append(row)

    def row_values(self) -> list[tuple[Any, ...]]:
        """Rows as tuples in column declaration order.
        """
        names = [c.name for c in self.columns]
        values = []
        for row in self.rows:
            if isinstance(row, Mapping):
                values.append(tuple(row.get(name) for name in names))
            else:
                values.append(tuple(row))
        return values


@runtime_checkable
class DriverConnection(Protocol):
    """Event-driven connection to one database session.
    """

    def on(self, event: str, handler: Callback) -> None:
        ...

    def connect(self) -> None:
        """Start connecting; the outcome is reported by the ``connect`` event."""
        ...

    def close(self) -> None:
        ...

    def exec_sql(self, request: Request) -> None:
        """Execute a parameterized statement."""
        ...

    def exec_sql_batch(self, request: Request) -> None:
        """Execute raw SQL without parameter binding."""
        ...

    def new_bulk_load(self, table: str, options: Mapping[str, Any] | None,
                      callback: Callback) -> BulkLoad:
        ...

    def exec_bulk_load(self, bulk_load: BulkLoad) -> None:
        ...

    def begin_transaction(self, callback: Callback, name: str | None = None,
                          isolation_level: str | None = None) -> None:
        ...

    def commit_transaction(self, callback: Callback) -> None:
        ...

    def rollback_transaction(self, callback: Callback) -> None:
        ...
