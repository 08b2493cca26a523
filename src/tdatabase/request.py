"""
Per-request adapters turning driver events into a single awaitable result.

Each adapter is a small state machine::

    IDLE -> SENT -> ACCUMULATING -> COMPLETED
                 \\______________\\-> FAILED

Handlers are registered on construction, before the request is submitted.
The only transition into a terminal state goes through ``_settle``, which
ignores every event arriving after the first settle.

Subclasses decide what the events accumulate and what the result is:
- RowsRequest: buffer rows (and column metadata) in arrival order
- StreamRequest: hand each row to a consumer and count them
- CountRequest: ignore rows, report the completion row count
- ScalarRequest: keep the first column of the last row
"""
import asyncio
import enum
import logging
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from tdatabase.driver import ColumnMetadata, ColumnValue, Request
from tdatabase.types import ColumnDescriptor, QueryResult, Row

logger = logging.getLogger(__name__)


class RequestState(enum.Enum):
    IDLE = 'idle'
    SENT = 'sent'
    ACCUMULATING = 'accumulating'
    COMPLETED = 'completed'
    FAILED = 'failed'


TERMINAL_STATES = frozenset({RequestState.COMPLETED, RequestState.FAILED})


def row_from_columns(columns: Iterable[ColumnValue]) -> Row:
    """Build a row mapping from a row event.

    Duplicate column names collapse to the last value.
    """
    return {column.metadata.col_name: column.value for column in columns}


class PendingRequest:
    """Base adapter for one driver request.

    The completion callback records the error or row count; the request is
    only settled by ``request_completed``, when the count is final and the
    connection is ready for the next request.
    """

    def __init__(self, sql: str, parameters: Sequence[Sequence[Any]] | None = None) -> None:
        self.state = RequestState.IDLE
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.row_count = 0
        self._error: BaseException | None = None
        self.request = Request(sql, self._on_statement_done)
        self.request.on('column_metadata', self._on_column_metadata)
        self.request.on('row', self._on_row)
        self.request.on('request_completed', self._on_request_completed)
        for param in parameters or ():
            self.request.add_parameter(*param)

    @property
    def sql(self) -> str:
        return self.request.sql

    @property
    def settled(self) -> bool:
        return self.state in TERMINAL_STATES

    def mark_sent(self) -> None:
        if self.state is not RequestState.IDLE:
            raise RuntimeError(f'Request already {self.state.value}')
        self.state = RequestState.SENT

    def fail(self, error: BaseException) -> None:
        """Settle the request with an error raised outside the driver.
        """
        self._settle(error=error)

    def __await__(self):
        return self.future.__await__()

    def _settle(self, result: Any = None, error: BaseException | None = None) -> bool:
        if self.settled:
            logger.debug(f'Ignoring late settle of request in state {self.state.value}')
            return False
        if error is not None:
            self.state = RequestState.FAILED
            if not self.future.done():
                self.future.set_exception(error)
        else:
            self.state = RequestState.COMPLETED
            if not self.future.done():
                self.future.set_result(result)
        self._release()
        return True

    def _release(self) -> None:
        """Drop buffered data once the request is settled."""

    def _on_column_metadata(self, columns: Sequence[ColumnMetadata]) -> None:
        if self.settled or self._error is not None:
            return
        self.state = RequestState.ACCUMULATING
        self.columns_received(columns)

    def _on_row(self, columns: Sequence[ColumnValue]) -> None:
        if self.settled or self._error is not None:
            return
        self.state = RequestState.ACCUMULATING
        try:
            self.row_received(row_from_columns(columns))
        except Exception as exc:
            # remaining rows are dropped, the request fails on completion
            self._error = exc

    def _on_statement_done(self, error: BaseException | None, row_count: int | None = None) -> None:
        if self.settled:
            return
        if error is not None:
            self._error = error
            return
        self.row_count = row_count or 0

    def _on_request_completed(self, *args: Any) -> None:
        if self.settled:
            return
        if self._error is not None:
            self._settle(error=self._error)
            return
        self._settle(result=self.result())

    def columns_received(self, columns: Sequence[ColumnMetadata]) -> None:
        pass

    def row_received(self, row: Row) -> None:
        pass

    def result(self) -> Any:
        raise NotImplementedError


class RowsRequest(PendingRequest):
    """Buffer all rows of a statement in memory.
    """

    def __init__(self, sql: str, parameters: Sequence[Sequence[Any]] | None = None,
                 columns: bool = False) -> None:
        self.want_columns = columns
        self.columns: list[ColumnDescriptor] = []
        self.rows: list[Row] = []
        super().__init__(sql, parameters)

    def columns_received(self, columns: Sequence[ColumnMetadata]) -> None:
        self.columns = [ColumnDescriptor.from_metadata(c) for c in columns]

    def row_received(self, row: Row) -> None:
        self.rows.append(row)

    def result(self) -> list[Row] | QueryResult:
        if self.want_columns:
            return QueryResult(self.columns, self.rows)
        return self.rows

    def _release(self) -> None:
        if self.state is RequestState.FAILED:
            self.rows = []
            self.columns = []


class StreamRequest(PendingRequest):
    """Pass each row to a consumer as it arrives; the result is the row count.
    """

    def __init__(self, sql: str, parameters: Sequence[Sequence[Any]] | None,
                 row_consumer: Callable[[Row], Any]) -> None:
        self.row_consumer = row_consumer
        self.rows_seen = 0
        super().__init__(sql, parameters)

    def row_received(self, row: Row) -> None:
        self.rows_seen += 1
        self.row_consumer(row)

    def result(self) -> int:
        return self.row_count or self.rows_seen


class CountRequest(PendingRequest):
    """Ignore rows; the result is the completion row count.
    """

    def result(self) -> int:
        return self.row_count


class ScalarRequest(PendingRequest):
    """Keep the first column value of the last row received.
    """

    def __init__(self, sql: str, parameters: Sequence[Sequence[Any]] | None = None,
                 default: Any = None) -> None:
        self.value = default
        super().__init__(sql, parameters)

    def _on_row(self, columns: Sequence[ColumnValue]) -> None:
        if self.settled or self._error is not None:
            return
        self.state = RequestState.ACCUMULATING
        if columns:
            self.value = columns[0].value

    def result(self) -> Any:
        return self.value
