"""
Tests for the per-request state machine, driven by hand-emitted events.
"""
import pytest
from tdatabase.driver import ColumnMetadata, ColumnValue
from tdatabase.request import CountRequest, RequestState, RowsRequest
from tdatabase.request import ScalarRequest, StreamRequest, row_from_columns
from tdatabase.types import TYPES, QueryResult

ID = ColumnMetadata('id', 4, TYPES.Int)
NAME = ColumnMetadata('name', 100, TYPES.NVarChar)


def row_event(id_, name):
    return [ColumnValue(ID, id_), ColumnValue(NAME, name)]


def test_row_from_columns_keeps_last_duplicate():
    """Test duplicate column names collapse to the last value"""
    first = ColumnMetadata('x', 4, TYPES.Int)
    second = ColumnMetadata('x', 4, TYPES.Int)

    assert row_from_columns([ColumnValue(first, 1), ColumnValue(second, 2)]) == {'x': 2}


@pytest.mark.asyncio
async def test_rows_request_lifecycle():
    """Test state transitions and row order of a buffered request"""
    pending = RowsRequest('select id, name from t')
    assert pending.state is RequestState.IDLE

    pending.mark_sent()
    assert pending.state is RequestState.SENT

    request = pending.request
    request.emit('column_metadata', [ID, NAME])
    assert pending.state is RequestState.ACCUMULATING
    request.emit('row', row_event(1, 'a'))
    request.emit('row', row_event(2, 'b'))
    request.callback(None, 2)
    assert not pending.future.done()

    request.emit('request_completed')

    assert pending.state is RequestState.COMPLETED
    assert await pending == [{'id': 1, 'name': 'a'}, {'id': 2, 'name': 'b'}]


@pytest.mark.asyncio
async def test_rows_request_with_columns():
    pending = RowsRequest('select id, name from t', columns=True)
    pending.mark_sent()
    pending.request.emit('column_metadata', [ID])
    pending.request.emit('column_metadata', [ID, NAME])
    pending.request.emit('row', row_event(1, 'a'))
    pending.request.callback(None, 1)
    pending.request.emit('request_completed')

    result = await pending

    assert isinstance(result, QueryResult)
    assert [c.name for c in result.columns] == ['id', 'name']
    assert result.rows == [{'id': 1, 'name': 'a'}]


@pytest.mark.asyncio
async def test_error_discards_rows():
    """Test a failed request raises the driver error and drops buffered rows"""
    pending = RowsRequest('select id, name from t')
    pending.mark_sent()
    pending.request.emit('row', row_event(1, 'a'))
    error = RuntimeError('conversion failed')
    pending.request.callback(error, 0)
    pending.request.emit('row', row_event(2, 'b'))
    pending.request.emit('request_completed')

    with pytest.raises(RuntimeError, match='conversion failed'):
        await pending
    assert pending.state is RequestState.FAILED
    assert pending.rows == []


@pytest.mark.asyncio
async def test_settles_exactly_once():
    """Test events after the first settle are ignored"""
    pending = CountRequest('update t set x = 1')
    pending.mark_sent()
    pending.request.callback(None, 3)
    pending.request.emit('request_completed')
    pending.request.callback(RuntimeError('late'), 0)
    pending.request.emit('row', row_event(1, 'a'))
    pending.request.emit('request_completed')

    assert pending.state is RequestState.COMPLETED
    assert await pending == 3


@pytest.mark.asyncio
async def test_count_is_taken_at_completion():
    """Test the count reported last before request_completed wins"""
    pending = CountRequest('insert into t values (1)')
    pending.mark_sent()
    pending.request.callback(None, 1)
    pending.request.callback(None, 5)
    pending.request.emit('request_completed')

    assert await pending == 5


@pytest.mark.asyncio
async def test_fail_settles_with_error():
    pending = CountRequest('delete from t')
    pending.mark_sent()
    pending.fail(ConnectionResetError('socket closed'))
    pending.request.emit('request_completed')

    with pytest.raises(ConnectionResetError):
        await pending


@pytest.mark.asyncio
async def test_mark_sent_twice():
    pending = CountRequest('delete from t')
    pending.mark_sent()

    with pytest.raises(RuntimeError, match='Request already sent'):
        pending.mark_sent()


@pytest.mark.asyncio
async def test_parameters_bound_in_order():
    pending = RowsRequest('select @a, @b', [('a', TYPES.Int, 1), ('b', TYPES.NVarChar, 'x')])

    assert [p[0] for p in pending.request.parameters] == ['a', 'b']
    assert [p[2] for p in pending.request.parameters] == [1, 'x']


@pytest.mark.asyncio
async def test_malformed_parameter_raises_from_binding():
    """Test a short parameter tuple fails inside the driver binding call"""
    with pytest.raises(TypeError):
        RowsRequest('select @a', [('a',)])


@pytest.mark.asyncio
async def test_stream_request_calls_consumer_per_row():
    seen = []
    pending = StreamRequest('select id, name from t', None, seen.append)
    pending.mark_sent()
    pending.request.emit('row', row_event(1, 'a'))
    pending.request.emit('row', row_event(2, 'b'))
    pending.request.callback(None, 2)
    pending.request.emit('request_completed')

    assert await pending == 2
    assert seen == [{'id': 1, 'name': 'a'}, {'id': 2, 'name': 'b'}]


@pytest.mark.asyncio
async def test_stream_request_consumer_error_fails_request():
    """Test a raising consumer stops delivery and fails on completion"""
    seen = []

    def consumer(row):
        seen.append(row)
        raise ValueError('bad row')

    pending = StreamRequest('select id, name from t', None, consumer)
    pending.mark_sent()
    pending.request.emit('row', row_event(1, 'a'))
    pending.request.emit('row', row_event(2, 'b'))
    pending.request.callback(None, 2)
    assert not pending.future.done()
    pending.request.emit('request_completed')

    with pytest.raises(ValueError, match='bad row'):
        await pending
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_scalar_request_default():
    pending = ScalarRequest('select @@identity', default=0)
    pending.mark_sent()
    pending.request.callback(None, 0)
    pending.request.emit('request_completed')

    assert await pending == 0


@pytest.mark.asyncio
async def test_scalar_request_first_column():
    pending = ScalarRequest('select @@identity', default=0)
    pending.mark_sent()
    pending.request.emit('row', row_event(42, 'ignored'))
    pending.request.callback(None, 1)
    pending.request.emit('request_completed')

    assert await pending == 42
