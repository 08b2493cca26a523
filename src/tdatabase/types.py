"""
Type registry and result records.

This module provides:
- DataType: SQL Server type tags as reported by the driver
- TYPES: registry of the supported type tags (``TYPES.Int``, ``TYPES.NVarChar``)
- resolve_type: Resolve Python type codes from a cursor description to type tags
- Parameter, ColumnDescriptor, QueryResult, BatchOutcome: request/result records
"""
import datetime
import decimal
import logging
import uuid
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, NamedTuple

logger = logging.getLogger(__name__)

Row = dict[str, Any]


@dataclass(frozen=True)
class DataType:
    """A driver-native type tag (TDS type id and name).
    """
    id: int
    name: str

    def __str__(self) -> str:
        return self.name


class TypeRegistry:
    """Registry of driver type tags, accessible by attribute, name or id.

    Examples
        TYPES.Int
        TYPES.get('NVarChar')
        TYPES.by_id(0x38)
    """

    def __init__(self, *types: DataType) -> None:
        self._by_name: dict[str, DataType] = {}
        self._by_id: dict[int, DataType] = {}
        for t in types:
            self.register(t)

    def register(self, data_type: DataType) -> DataType:
        self._by_name[data_type.name.lower()] = data_type
        self._by_id.setdefault(data_type.id, data_type)
        return data_type

    def __getattr__(self, name: str) -> DataType:
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            return self._by_name[name.lower()]
        except KeyError:
            raise AttributeError(f'Unknown data type: {name}') from None

    def __iter__(self) -> Iterator[DataType]:
        return iter(self._by_name.values())

    def __contains__(self, item: Any) -> bool:
        if isinstance(item, DataType):
            return self._by_name.get(item.name.lower()) == item
        return isinstance(item, str) and item.lower() in self._by_name

    def get(self, name: 'str | DataType') -> DataType:
        """Return a type tag by name; type tags are passed through.

        Raises KeyError for unknown names.
        """
        if isinstance(name, DataType):
            return name
        try:
            return self._by_name[name.lower()]
        except KeyError:
            raise KeyError(f'Unknown data type: {name}') from None

    def by_id(self, type_id: int) -> DataType | None:
        return self._by_id.get(type_id)


TYPES = TypeRegistry(
    DataType(0x1F, 'Null'),
    DataType(0x30, 'TinyInt'),
    DataType(0x32, 'Bit'),
    DataType(0x34, 'SmallInt'),
    DataType(0x38, 'Int'),
    DataType(0x3A, 'SmallDateTime'),
    DataType(0x3B, 'Real'),
    DataType(0x3C, 'Money'),
    DataType(0x3D, 'DateTime'),
    DataType(0x3E, 'Float'),
    DataType(0x7A, 'SmallMoney'),
    DataType(0x7F, 'BigInt'),
    DataType(0x6A, 'Decimal'),
    DataType(0x6C, 'Numeric'),
    DataType(0x28, 'Date'),
    DataType(0x29, 'Time'),
    DataType(0x2A, 'DateTime2'),
    DataType(0x2B, 'DateTimeOffset'),
    DataType(0x24, 'UniqueIdentifier'),
    DataType(0x62, 'Variant'),
    DataType(0x22, 'Image'),
    DataType(0x23, 'Text'),
    DataType(0x63, 'NText'),
    DataType(0xA5, 'VarBinary'),
    DataType(0xA7, 'VarChar'),
    DataType(0xAD, 'Binary'),
    DataType(0xAF, 'Char'),
    DataType(0xE7, 'NVarChar'),
    DataType(0xEF, 'NChar'),
    DataType(0xF1, 'Xml'),
    DataType(0xF3, 'TVP'),
)

# bool must precede int: isinstance(True, int) holds
_PYTHON_TYPES: list[tuple[type, DataType]] = [
    (bool, TYPES.Bit),
    (int, TYPES.Int),
    (float, TYPES.Float),
    (decimal.Decimal, TYPES.Decimal),
    (str, TYPES.NVarChar),
    (bytes, TYPES.VarBinary),
    (bytearray, TYPES.VarBinary),
    (datetime.datetime, TYPES.DateTime2),
    (datetime.date, TYPES.Date),
    (datetime.time, TYPES.Time),
    (uuid.UUID, TYPES.UniqueIdentifier),
]


def resolve_type(type_code: Any) -> DataType:
    """Resolve a cursor description type code to a type tag.

    ODBC cursors report the Python class a column converts to; anything
    unrecognised is reported as ``Variant``.
    """
    if isinstance(type_code, DataType):
        return type_code
    if isinstance(type_code, type):
        for py_type, data_type in _PYTHON_TYPES:
            if issubclass(type_code, py_type):
                return data_type
    logger.debug(f'Unresolved type code {type_code!r}, using Variant')
    return TYPES.Variant


class Parameter(NamedTuple):
    """A bound statement parameter. ``name`` carries no ``@`` prefix.
    """
    name: str
    type: DataType
    value: Any
    options: dict[str, Any] | None = None


@dataclass(frozen=True)
class ColumnDescriptor:
    """Column metadata reported once per statement, before any row.
    """
    name: str
    byte_length: int | None
    type_id: int
    type_name: str

    @classmethod
    def from_metadata(cls, metadata: Any) -> 'ColumnDescriptor':
        return cls(name=metadata.col_name,
                   byte_length=metadata.data_length,
                   type_id=metadata.type.id,
                   type_name=metadata.type.name)

    def to_dict(self) -> dict[str, Any]:
        return {
            'name': self.name,
            'byteLength': self.byte_length,
            'typeId': self.type_id,
            'typeName': self.type_name,
        }


class QueryResult(NamedTuple):
    """Rows of a statement together with its column metadata.
    """
    columns: list[ColumnDescriptor]
    rows: list[Row]


@dataclass
class BatchOutcome:
    """Outcome of one statement in a batch: a count or an error message.
    """
    statement: str
    count: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {'sql': self.statement, 'count': self.count}
        return {'sql': self.statement, 'error': self.error}
