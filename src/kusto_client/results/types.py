from __future__ import annotations

import json
import math
import uuid
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Final, Mapping

from kusto_client.errors import ColumnCastError, KustoParseError

from .values import KustoDateTime, Timespan, parse_datetime, parse_guid, parse_timespan


class KustoType(str, Enum):
    """Column types a Kusto table may declare."""

    BOOL = "bool"
    STRING = "string"
    DATETIME = "datetime"
    DECIMAL = "decimal"
    DYNAMIC = "dynamic"
    GUID = "guid"
    INT = "int"
    LONG = "long"
    REAL = "real"
    TIMESPAN = "timespan"
    SHORT = "short"

    @classmethod
    def from_name(cls, name: str) -> "KustoType":
        """Resolve a Kusto or .NET type name (``Int64``, ``System.String``)."""

        key = name.strip().lower()
        if key.startswith("system."):
            key = key[len("system.") :]
        try:
            return _TYPE_ALIASES[key]
        except KeyError:
            raise KustoParseError(f"Unknown column type '{name}'") from None


_TYPE_ALIASES: Final[Mapping[str, KustoType]] = {
    "bool": KustoType.BOOL,
    "boolean": KustoType.BOOL,
    "sbyte": KustoType.BOOL,
    "string": KustoType.STRING,
    "datetime": KustoType.DATETIME,
    "date": KustoType.DATETIME,
    "decimal": KustoType.DECIMAL,
    "sqldecimal": KustoType.DECIMAL,
    "dynamic": KustoType.DYNAMIC,
    "object": KustoType.DYNAMIC,
    "guid": KustoType.GUID,
    "uuid": KustoType.GUID,
    "uniqueid": KustoType.GUID,
    "int": KustoType.INT,
    "int32": KustoType.INT,
    "long": KustoType.LONG,
    "int64": KustoType.LONG,
    "real": KustoType.REAL,
    "double": KustoType.REAL,
    "float": KustoType.REAL,
    "timespan": KustoType.TIMESPAN,
    "time": KustoType.TIMESPAN,
    "short": KustoType.SHORT,
    "int16": KustoType.SHORT,
}

INTEGRAL_BITS: Final[Mapping[KustoType, int]] = {
    KustoType.SHORT: 16,
    KustoType.INT: 32,
    KustoType.LONG: 64,
}

NUMERIC_TYPES: Final[frozenset[KustoType]] = frozenset(
    {KustoType.REAL, KustoType.DECIMAL, *INTEGRAL_BITS}
)

_SPECIAL_REALS: Final[Mapping[str, float]] = {
    "nan": math.nan,
    "infinity": math.inf,
    "+infinity": math.inf,
    "-infinity": -math.inf,
}


def fits_integral(value: int, bits: int) -> bool:
    bound = 1 << (bits - 1)
    return -bound <= value < bound


def _cast_error(kusto_type: KustoType, raw: Any) -> ColumnCastError:
    return ColumnCastError(
        f"Cannot decode {type(raw).__name__} value {raw!r} as {kusto_type.value}"
    )


def _decode_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, int) and raw in (0, 1):
        return bool(raw)
    if isinstance(raw, str) and raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    raise _cast_error(KustoType.BOOL, raw)


def _decode_integral(kusto_type: KustoType, raw: Any) -> int:
    if isinstance(raw, bool):
        raise _cast_error(kusto_type, raw)
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, float) and raw.is_integer():
        value = int(raw)
    elif isinstance(raw, str):
        try:
            value = int(raw)
        except ValueError:
            raise KustoParseError(f"Invalid {kusto_type.value} value '{raw}'") from None
    else:
        raise _cast_error(kusto_type, raw)
    if not fits_integral(value, INTEGRAL_BITS[kusto_type]):
        raise ColumnCastError(f"Value {value} does not fit in {kusto_type.value}")
    return value


def _decode_real(raw: Any) -> float:
    if isinstance(raw, bool):
        raise _cast_error(KustoType.REAL, raw)
    if isinstance(raw, (int, float, Decimal)):
        return float(raw)
    if isinstance(raw, str):
        special = _SPECIAL_REALS.get(raw.lower())
        if special is not None:
            return special
        try:
            return float(raw)
        except ValueError:
            raise KustoParseError(f"Invalid real value '{raw}'") from None
    raise _cast_error(KustoType.REAL, raw)


def _decode_decimal(raw: Any) -> Decimal:
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str, Decimal)):
        raise _cast_error(KustoType.DECIMAL, raw)
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        raise KustoParseError(f"Invalid decimal value '{raw}'") from None


def _decode_string(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    return json.dumps(raw, separators=(",", ":"))


def _decode_datetime(raw: Any) -> KustoDateTime:
    if isinstance(raw, KustoDateTime):
        return raw
    if isinstance(raw, str):
        return parse_datetime(raw)
    raise _cast_error(KustoType.DATETIME, raw)


def _decode_timespan(raw: Any) -> Timespan:
    if isinstance(raw, Timespan):
        return raw
    if isinstance(raw, str):
        return parse_timespan(raw)
    if isinstance(raw, int) and not isinstance(raw, bool):
        return Timespan.from_ticks(raw)
    raise _cast_error(KustoType.TIMESPAN, raw)


def _decode_guid(raw: Any) -> uuid.UUID:
    if isinstance(raw, uuid.UUID):
        return raw
    if isinstance(raw, str):
        return parse_guid(raw)
    raise _cast_error(KustoType.GUID, raw)


def _decode_dynamic(raw: Any) -> Any:
    # v1 envelopes serialise dynamic objects and arrays as JSON text
    if isinstance(raw, str) and raw[:1] in ("{", "["):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw
    return raw


def decode_value(kusto_type: KustoType, raw: Any) -> Any:
    """Decode one raw JSON cell according to its declared column type.

    ``None`` decodes to ``None`` for every type.
    """

    if raw is None:
        return None
    match kusto_type:
        case KustoType.BOOL:
            return _decode_bool(raw)
        case KustoType.STRING:
            return _decode_string(raw)
        case KustoType.DATETIME:
            return _decode_datetime(raw)
        case KustoType.DECIMAL:
            return _decode_decimal(raw)
        case KustoType.DYNAMIC:
            return _decode_dynamic(raw)
        case KustoType.GUID:
            return _decode_guid(raw)
        case KustoType.INT | KustoType.LONG | KustoType.SHORT:
            return _decode_integral(kusto_type, raw)
        case KustoType.REAL:
            return _decode_real(raw)
        case KustoType.TIMESPAN:
            return _decode_timespan(raw)
    raise KustoParseError(f"Unsupported column type '{kusto_type}'")


__all__ = [
    "INTEGRAL_BITS",
    "KustoType",
    "NUMERIC_TYPES",
    "decode_value",
    "fits_integral",
]
