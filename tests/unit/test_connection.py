"""
Tests for the connection lifecycle: connect, disconnect, logging and configuration.
"""
import logging

import pytest
from tdatabase import ConnectionFailure, ConnectionState, Database
from tdatabase import DatabaseOptions, connect
from tdatabase.types import TYPES

from tests.fixtures.mocks import CONFIG, DriverError


@pytest.mark.asyncio
async def test_connect_success(fake_driver):
    """Test connect resolves once the driver reports the connection"""
    db = Database(CONFIG, driver_factory=fake_driver)
    assert db.state is ConnectionState.UNCONNECTED

    result = await db.connect()

    assert result is None
    assert db.state is ConnectionState.CONNECTED
    assert db.connected
    assert db.connection is fake_driver.connection


@pytest.mark.asyncio
async def test_connect_failure(fake_driver):
    """Test a driver connect error is raised and the manager stays unconnected"""
    fake_driver.connect_error = DriverError('Login failed for user sa.', '28000')
    db = Database(CONFIG, driver_factory=fake_driver)

    with pytest.raises(DriverError) as excinfo:
        await db.connect()

    assert excinfo.value is fake_driver.connect_error
    assert db.state is ConnectionState.UNCONNECTED
    assert db.connection is None


@pytest.mark.asyncio
async def test_driver_receives_normalized_config(fake_driver):
    """Test the driver sees the normalized configuration, the caller's dict is untouched"""
    config = dict(CONFIG)
    db = Database(config, driver_factory=fake_driver)
    await db.connect()

    driver_config = fake_driver.connection.config
    assert driver_config['authentication']['options'] == {'userName': 'sa', 'password': 'secret'}
    assert 'userName' not in driver_config
    assert 'password' not in driver_config
    assert config == CONFIG
    db.disconnect()


@pytest.mark.asyncio
async def test_database_options_config(fake_driver):
    options = DatabaseOptions(server='dbhost', username='u', password='p', database='test_db')
    db = Database(options, driver_factory=fake_driver)
    await db.connect()

    assert db.options is options
    assert fake_driver.connection.config['server'] == 'dbhost'
    assert fake_driver.connection.config['options']['database'] == 'test_db'
    db.disconnect()


@pytest.mark.asyncio
async def test_disconnect_is_idempotent(db, fake_driver):
    """Test disconnect twice is a no-op the second time"""
    connection = fake_driver.connection

    db.disconnect()
    db.disconnect()

    assert connection.closed
    assert db.state is ConnectionState.CLOSED
    assert db.connection is None


def test_disconnect_before_connect():
    db = Database(CONFIG)

    db.disconnect()

    assert db.state is ConnectionState.UNCONNECTED


@pytest.mark.asyncio
async def test_disconnect_ignores_close_errors(db, fake_driver, mocker):
    mocker.patch.object(fake_driver.connection, 'close', side_effect=OSError('broken pipe'))

    db.disconnect()

    assert db.state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_connect_twice_abandons_first_connection(db, fake_driver):
    """Test a second connect opens a new handle without closing the first"""
    first = fake_driver.connection

    await db.connect()

    assert len(fake_driver.connections) == 2
    assert db.connection is fake_driver.connection
    assert not first.closed


@pytest.mark.asyncio
async def test_operations_require_connection(fake_driver):
    db = Database(CONFIG, driver_factory=fake_driver)

    with pytest.raises(ConnectionFailure):
        await db.query('select 1')
    with pytest.raises(ConnectionFailure):
        await db.begin_transaction()


@pytest.mark.asyncio
async def test_operations_after_disconnect(db):
    db.disconnect()

    with pytest.raises(ConnectionFailure):
        await db.execute('delete from t')


@pytest.mark.asyncio
async def test_server_end_closes_connection(db, fake_driver, log_records):
    """Test an end event from the driver drops the handle"""
    fake_driver.connection.end()

    assert db.state is ConnectionState.CLOSED
    assert db.connection is None
    assert (logging.INFO, 'Connection closed by the server') in log_records


@pytest.mark.asyncio
async def test_end_from_abandoned_connection_is_ignored(db, fake_driver):
    first = fake_driver.connection
    await db.connect()

    first.end()

    assert db.connected


@pytest.mark.asyncio
async def test_async_context_manager(fake_driver):
    async with Database(CONFIG, driver_factory=fake_driver) as db:
        assert db.connected
        connection = fake_driver.connection

    assert connection.closed
    assert db.state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_connect_function_with_raw_config(fake_driver):
    db = await connect(CONFIG, driver_factory=fake_driver)

    assert db.connected
    assert db.options is None
    db.disconnect()


@pytest.mark.asyncio
async def test_connect_function_with_options(fake_driver):
    options = DatabaseOptions(server='dbhost', username='u', password='p')

    db = await connect(options, driver_factory=fake_driver)

    assert db.connected
    assert db.options is options
    db.disconnect()


@pytest.mark.asyncio
async def test_log_sink_receives_lifecycle_messages(fake_driver, log_records):
    """Test connect, query and disconnect are reported to the sink"""
    db = Database(CONFIG, driver_factory=fake_driver,
                  log=lambda level, message: log_records.append((level, message)))
    await db.connect()
    fake_driver.script('select id from t where id=@id', rows=[{'id': 7}])
    await db.query_int('select id from t where id=@id', 7)
    db.disconnect()

    levels = [level for level, _ in log_records]
    messages = [message for _, message in log_records]
    assert (logging.INFO, 'Connected to localhost') in log_records
    assert any('select id from t where id=@id' in m and '[7]' in m for m in messages)
    assert any(m.startswith('Query returned 1 rows in ') for m in messages)
    assert messages[-1].startswith('Disconnected: 1 queries')
    assert logging.DEBUG in levels


@pytest.mark.asyncio
async def test_log_sink_reports_connect_failure(fake_driver, log_records):
    fake_driver.connect_error = DriverError('Login failed for user sa.', '28000')
    db = Database(CONFIG, driver_factory=fake_driver,
                  log=lambda level, message: log_records.append((level, message)))

    with pytest.raises(DriverError):
        await db.connect()

    assert (logging.ERROR, 'Connection to localhost failed: Login failed for user sa.') in log_records


@pytest.mark.asyncio
async def test_failing_log_sink_is_ignored(fake_driver, caplog):
    def sink(level, message):
        raise RuntimeError('sink down')

    db = Database(CONFIG, driver_factory=fake_driver, log=sink)
    await db.connect()

    assert db.connected
    assert 'Log sink failed: sink down' in caplog.text
    db.disconnect()


@pytest.mark.asyncio
async def test_call_statistics(db, fake_driver):
    await db.execute('delete from t')
    await db.execute('delete from u')

    assert db.calls == 2
    assert db.time >= 0


def test_types_property():
    assert Database(CONFIG).types is TYPES
