from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Final, Mapping, NamedTuple, Sequence

from kusto_client.errors import (
    ColumnCastError,
    ColumnNotFoundError,
    InlineQueryException,
    JsonPropertyMissingError,
    KustoParseError,
    KustoServiceQueryError,
    NullValueError,
)
from kusto_client.http.responses import OneApiError
from kusto_client.utils import get_logger

from .types import INTEGRAL_BITS, NUMERIC_TYPES, KustoType, decode_value
from .values import KustoDateTime, Timespan


logger = get_logger(__name__)

TABLE_NAME_PROPERTY = "TableName"
TABLE_ID_PROPERTY = "TableId"
TABLE_KIND_PROPERTY = "TableKind"
COLUMNS_PROPERTY = "Columns"
COLUMN_NAME_PROPERTY = "ColumnName"
COLUMN_TYPE_PROPERTY = "ColumnType"
COLUMN_TYPE_SECONDARY_PROPERTY = "DataType"
ROWS_PROPERTY = "Rows"
EXCEPTIONS_PROPERTY = "Exceptions"
ONE_API_ERRORS_PROPERTY = "OneApiErrors"

ColumnRef = int | str


def _sources_up_to(bits: int) -> frozenset[KustoType]:
    return frozenset(kind for kind, width in INTEGRAL_BITS.items() if width <= bits)


_SHORT_SOURCES: Final = _sources_up_to(16)
_INT_SOURCES: Final = _sources_up_to(32)
_LONG_SOURCES: Final = _sources_up_to(64)
_BOOL_SOURCES: Final = frozenset({KustoType.BOOL})
_DATETIME_SOURCES: Final = frozenset({KustoType.DATETIME, KustoType.STRING})
_TIMESPAN_SOURCES: Final = frozenset({KustoType.TIMESPAN, KustoType.STRING})
_GUID_SOURCES: Final = frozenset({KustoType.GUID, KustoType.STRING})


class WellKnownDataSet(str, Enum):
    PRIMARY_RESULT = "PrimaryResult"
    QUERY_COMPLETION_INFORMATION = "QueryCompletionInformation"
    TABLE_OF_CONTENTS = "TableOfContents"
    QUERY_PROPERTIES = "QueryProperties"
    QUERY_TRACE_LOG = "QueryTraceLog"
    QUERY_PERF_LOG = "QueryPerfLog"
    QUERY_PLAN = "QueryPlan"
    UNKNOWN = "Unknown"

    @classmethod
    def from_name(cls, name: str | None) -> "WellKnownDataSet":
        for member in cls:
            if member.value == name:
                return member
        return cls.UNKNOWN


class KustoResultColumn(NamedTuple):
    """A declared column."""

    name: str
    """Column name as sent by the service (lookups are case-sensitive)."""

    type: KustoType
    """Declared Kusto type."""

    ordinal: int
    """Zero-based position in every row."""


def extract_inline_exceptions(row: Mapping[str, Any]) -> KustoServiceQueryError | None:
    """Build the error for a row object carrying ``Exceptions`` or ``OneApiErrors``."""

    if EXCEPTIONS_PROPERTY in row:
        entries = row.get(EXCEPTIONS_PROPERTY) or []
        if isinstance(entries, str):
            entries = [entries]
        exceptions: list[Exception] = [
            InlineQueryException(entry if isinstance(entry, str) else str(entry))
            for entry in entries
        ]
        return KustoServiceQueryError.from_exceptions(exceptions)

    if ONE_API_ERRORS_PROPERTY in row:
        entries = row.get(ONE_API_ERRORS_PROPERTY) or []
        api_errors = [OneApiError.from_payload(entry) for entry in entries]
        exceptions = [
            InlineQueryException(error.describe(), api_error=error) for error in api_errors
        ]
        permanent = bool(api_errors and api_errors[0].permanent)
        return KustoServiceQueryError.from_exceptions(exceptions, is_permanent=permanent)

    return None


def _parse_columns(payload: Any) -> tuple[KustoResultColumn, ...]:
    if payload is None:
        raise JsonPropertyMissingError(f"{COLUMNS_PROPERTY} property is missing in the table")
    columns: list[KustoResultColumn] = []
    for ordinal, descriptor in enumerate(payload):
        if not isinstance(descriptor, Mapping):
            raise KustoParseError(f"Column descriptor {ordinal} is not an object")
        name = descriptor.get(COLUMN_NAME_PROPERTY)
        if name is None:
            raise JsonPropertyMissingError(
                f"{COLUMN_NAME_PROPERTY} property is missing in column {ordinal}"
            )
        type_name = descriptor.get(COLUMN_TYPE_PROPERTY) or descriptor.get(
            COLUMN_TYPE_SECONDARY_PROPERTY
        )
        if not type_name:
            raise JsonPropertyMissingError(
                f"{COLUMN_TYPE_PROPERTY} property is missing in column '{name}'"
            )
        columns.append(
            KustoResultColumn(str(name), KustoType.from_name(str(type_name)), ordinal)
        )
    return tuple(columns)


def _parse_rows(payload: Any, width: int) -> tuple[tuple[Any, ...], ...]:
    rows: list[tuple[Any, ...]] = []
    for index, row in enumerate(payload or []):
        if isinstance(row, Mapping):
            error = extract_inline_exceptions(row)
            if error is not None:
                raise error
            raise KustoParseError(f"Row {index} is an object without exceptions")
        if not isinstance(row, Sequence) or isinstance(row, str):
            raise KustoParseError(f"Row {index} is not an array")
        if len(row) != width:
            raise KustoParseError(
                f"Row {index} has {len(row)} values but {width} columns are declared"
            )
        rows.append(tuple(row))
    return tuple(rows)


class KustoResultTable:
    """Forward-only cursor over one decoded result table.

    The cursor starts before the first row; call :meth:`next` (or
    :meth:`first`) before reading values. Accessors accept either a column
    ordinal or an exact, case-sensitive column name.

    Accessors returning objects (``get_string``, ``get_datetime``, ...) return
    ``None`` for null cells. Accessors returning numbers or booleans raise
    :class:`NullValueError` instead; their ``*_or_none`` variants do not.
    Reading a column through an accessor narrower than its declared type
    raises :class:`ColumnCastError`.
    """

    def __init__(self, payload: Mapping[str, Any]) -> None:
        table_id = payload.get(TABLE_ID_PROPERTY)
        kind = payload.get(TABLE_KIND_PROPERTY)
        self.table_name: str | None = payload.get(TABLE_NAME_PROPERTY)
        self.table_id: str | None = str(table_id) if table_id is not None else None
        self.table_kind: WellKnownDataSet | None = (
            WellKnownDataSet.from_name(kind) if kind else None
        )
        self._columns = _parse_columns(payload.get(COLUMNS_PROPERTY))
        self._rows = _parse_rows(payload.get(ROWS_PROPERTY), len(self._columns))
        self._ordinals: dict[str, int] = {}
        for column in self._columns:
            if column.name in self._ordinals:
                logger.warning(
                    "Duplicate column name in result table",
                    column=column.name,
                    table=self.table_name,
                )
                continue
            self._ordinals[column.name] = column.ordinal
        self._cursor = -1

    def __repr__(self) -> str:
        return (
            f"KustoResultTable(name={self.table_name!r}, kind={self.table_kind}, "
            f"columns={len(self._columns)}, rows={len(self._rows)})"
        )

    def __len__(self) -> int:
        return len(self._rows)

    @property
    def columns(self) -> tuple[KustoResultColumn, ...]:
        return self._columns

    @property
    def rows(self) -> tuple[tuple[Any, ...], ...]:
        """Immutable snapshot of the raw rows, safe to share between consumers."""
        return self._rows

    @property
    def row_count(self) -> int:
        return len(self._rows)

    @property
    def cursor(self) -> int:
        return self._cursor

    # Cursor ----------------------------------------------------------

    def next(self) -> bool:
        if self._cursor < len(self._rows):
            self._cursor += 1
        return self._cursor < len(self._rows)

    def first(self) -> bool:
        self.before_first()
        return self.next()

    def before_first(self) -> None:
        self._cursor = -1

    @property
    def is_before_first(self) -> bool:
        return self._cursor == -1

    @property
    def is_after_last(self) -> bool:
        return self._cursor >= len(self._rows)

    @property
    def is_last(self) -> bool:
        return self._cursor == len(self._rows) - 1

    @property
    def current_row(self) -> tuple[Any, ...]:
        if not 0 <= self._cursor < len(self._rows):
            raise IndexError("No current row; call next() before reading values")
        return self._rows[self._cursor]

    def find_column(self, name: str) -> int:
        """Return the ordinal of ``name`` or -1 when no such column exists."""
        return self._ordinals.get(name, -1)

    def column(self, ref: ColumnRef) -> KustoResultColumn:
        if isinstance(ref, str):
            ordinal = self.find_column(ref)
            if ordinal < 0:
                raise ColumnNotFoundError(ref)
            return self._columns[ordinal]
        if not 0 <= ref < len(self._columns):
            raise IndexError(f"Column ordinal {ref} is out of range")
        return self._columns[ref]

    # Accessors -------------------------------------------------------

    def get_object(self, ref: ColumnRef) -> Any:
        column = self.column(ref)
        return decode_value(column.type, self.current_row[column.ordinal])

    def get_bool(self, ref: ColumnRef) -> bool:
        return self._require(ref, self.get_bool_or_none(ref))

    def get_bool_or_none(self, ref: ColumnRef) -> bool | None:
        return self._decode(ref, _BOOL_SOURCES, "get_bool")

    def get_short(self, ref: ColumnRef) -> int:
        return self._require(ref, self.get_short_or_none(ref))

    def get_short_or_none(self, ref: ColumnRef) -> int | None:
        return self._decode(ref, _SHORT_SOURCES, "get_short")

    def get_int(self, ref: ColumnRef) -> int:
        return self._require(ref, self.get_int_or_none(ref))

    def get_int_or_none(self, ref: ColumnRef) -> int | None:
        return self._decode(ref, _INT_SOURCES, "get_int")

    def get_long(self, ref: ColumnRef) -> int:
        return self._require(ref, self.get_long_or_none(ref))

    def get_long_or_none(self, ref: ColumnRef) -> int | None:
        return self._decode(ref, _LONG_SOURCES, "get_long")

    def get_float(self, ref: ColumnRef) -> float:
        return self._require(ref, self.get_float_or_none(ref))

    def get_float_or_none(self, ref: ColumnRef) -> float | None:
        value = self._decode(ref, NUMERIC_TYPES, "get_float")
        return None if value is None else float(value)

    def get_double(self, ref: ColumnRef) -> float:
        return self._require(ref, self.get_double_or_none(ref))

    def get_double_or_none(self, ref: ColumnRef) -> float | None:
        value = self._decode(ref, NUMERIC_TYPES, "get_double")
        return None if value is None else float(value)

    def get_decimal(self, ref: ColumnRef) -> Decimal | None:
        value = self._decode(ref, NUMERIC_TYPES, "get_decimal")
        if value is None or isinstance(value, Decimal):
            return value
        return Decimal(str(value))

    def get_string(self, ref: ColumnRef) -> str | None:
        column = self.column(ref)
        raw = self.current_row[column.ordinal]
        return None if raw is None else decode_value(KustoType.STRING, raw)

    def get_kusto_datetime(self, ref: ColumnRef) -> KustoDateTime | None:
        column, raw = self._read(ref, _DATETIME_SOURCES, "get_datetime")
        return None if raw is None else decode_value(KustoType.DATETIME, raw)

    def get_datetime(self, ref: ColumnRef) -> datetime | None:
        """Timezone-aware UTC datetime (microsecond precision)."""
        value = self.get_kusto_datetime(ref)
        return None if value is None else value.to_datetime()

    def get_timestamp(self, ref: ColumnRef) -> datetime | None:
        """Naive UTC datetime for SQL-style timestamp consumers."""
        value = self.get_kusto_datetime(ref)
        return None if value is None else value.to_naive()

    def get_timespan(self, ref: ColumnRef) -> Timespan | None:
        column, raw = self._read(ref, _TIMESPAN_SOURCES, "get_timespan")
        return None if raw is None else decode_value(KustoType.TIMESPAN, raw)

    def get_timedelta(self, ref: ColumnRef) -> timedelta | None:
        value = self.get_timespan(ref)
        return None if value is None else value.to_timedelta()

    def get_uuid(self, ref: ColumnRef) -> uuid.UUID | None:
        column, raw = self._read(ref, _GUID_SOURCES, "get_uuid")
        return None if raw is None else decode_value(KustoType.GUID, raw)

    def get_dynamic(self, ref: ColumnRef) -> Any:
        column = self.column(ref)
        return decode_value(KustoType.DYNAMIC, self.current_row[column.ordinal])

    def to_dicts(self) -> list[dict[str, Any]]:
        """Decode every row into a dict keyed by column name."""
        return [
            {
                column.name: decode_value(column.type, row[column.ordinal])
                for column in self._columns
            }
            for row in self._rows
        ]

    # Internal --------------------------------------------------------

    def _read(
        self,
        ref: ColumnRef,
        accepted: frozenset[KustoType],
        accessor: str,
    ) -> tuple[KustoResultColumn, Any]:
        column = self.column(ref)
        if column.type not in accepted:
            raise ColumnCastError(
                f"Column '{column.name}' of type {column.type.value} cannot be read with {accessor}"
            )
        return column, self.current_row[column.ordinal]

    def _decode(
        self,
        ref: ColumnRef,
        accepted: frozenset[KustoType],
        accessor: str,
    ) -> Any:
        column, raw = self._read(ref, accepted, accessor)
        return decode_value(column.type, raw)

    def _require(self, ref: ColumnRef, value: Any) -> Any:
        if value is None:
            column = self.column(ref)
            raise NullValueError(
                f"Column '{column.name}' is null in row {self._cursor}; "
                "use the *_or_none accessor for nullable values"
            )
        return value


__all__ = [
    "KustoResultColumn",
    "KustoResultTable",
    "WellKnownDataSet",
    "extract_inline_exceptions",
]
