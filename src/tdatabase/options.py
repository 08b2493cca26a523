"""
Connection options and configuration normalization.

Two configuration shapes are accepted:

1. ``DatabaseOptions``, loaded through ``libb.load_options`` like any other
   options dataclass.
2. A raw driver mapping::

    {
      "server": "***",
      "userName": "***",
      "password": "***",
      "options": {"database": "***", "instanceName": "***"}
    }

The legacy ``userName``/``password`` pair is folded into an ``authentication``
block. Normalization always returns a new mapping; the input is not modified.
"""
import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from libb import ConfigOptions, scriptname

logger = logging.getLogger(__name__)

__all__ = [
    'DatabaseOptions',
    'normalize_config',
    'default_authentication',
]

DEFAULT_ODBC_DRIVER = 'ODBC Driver 18 for SQL Server'


def default_authentication(username: str, password: str) -> dict[str, Any]:
    """Build a ``default`` (SQL login) authentication block.
    """
    return {
        'type': 'default',
        'options': {
            'userName': username,
            'password': password,
        },
    }


def normalize_config(config: Mapping[str, Any]) -> dict[str, Any]:
    """Return a normalized copy of a raw driver configuration.

    If ``authentication`` is absent and both ``userName`` and ``password`` are
    present, they are replaced by an authentication block. Otherwise the copy
    is returned unchanged.
    """
    normalized = copy.deepcopy(dict(config))
    if normalized.get('authentication') is None \
       and normalized.get('userName') and normalized.get('password'):
        normalized['authentication'] = default_authentication(
            normalized.pop('userName'), normalized.pop('password'))
        logger.debug('Converted legacy userName/password to authentication block')
    return normalized


@dataclass
class DatabaseOptions(ConfigOptions):
    """Options

    - server: host name or address of the SQL Server
    - username/password: SQL login; folded into ``authentication``
    - authentication: pre-built authentication block, used as is
    - database, instance_name, port: target database and instance
    - encrypt, trust_server_certificate: TLS settings
    - timeout: connect timeout in seconds (0 uses the driver default)
    - driver: ODBC driver name used by the ODBC connection
    """
    server: str = None
    username: str = None
    password: str = None
    authentication: dict = None
    database: str = None
    instance_name: str = None
    port: int = 0
    encrypt: bool = True
    trust_server_certificate: bool = False
    timeout: int = 0
    appname: str = None
    driver: str = DEFAULT_ODBC_DRIVER

    def __post_init__(self):
        if not self.server:
            raise ValueError('server is required')
        self.appname = self.appname or scriptname() or 'python_console'
        if self.authentication is None and self.username and self.password:
            self.authentication = default_authentication(self.username, self.password)
            self.username = None
            self.password = None

    def to_config(self) -> dict[str, Any]:
        """Render the options as a normalized raw driver configuration.
        """
        options: dict[str, Any] = {
            'encrypt': self.encrypt,
            'trustServerCertificate': self.trust_server_certificate,
            'appName': self.appname,
            'driver': self.driver,
        }
        if self.database:
            options['database'] = self.database
        if self.instance_name:
            options['instanceName'] = self.instance_name
        if self.port:
            options['port'] = self.port
        if self.timeout:
            options['connectTimeout'] = self.timeout * 1000
        config: dict[str, Any] = {'server': self.server, 'options': options}
        if self.authentication is not None:
            config['authentication'] = copy.deepcopy(self.authentication)
        return config
