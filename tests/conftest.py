import logging
import pathlib
import site

import pytest

HERE = pathlib.Path(pathlib.Path(__file__).resolve()).parent
site.addsitedir(HERE)


@pytest.fixture(autouse=True)
def debug_logging(caplog):
    """Capture package debug logging for every test."""
    caplog.set_level(logging.DEBUG, logger='tdatabase')
    yield


pytest_plugins = [
    'tests.fixtures.mocks',
    'tests.fixtures.sqlserver',
]
