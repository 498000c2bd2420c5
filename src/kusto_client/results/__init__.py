"""Decoding of tabular query responses."""

from .operation_result import EnvelopeVersion, KustoOperationResult
from .table import KustoResultColumn, KustoResultTable, WellKnownDataSet
from .types import KustoType, decode_value
from .values import (
    KustoDateTime,
    Timespan,
    format_datetime,
    format_timespan,
    parse_datetime,
    parse_timespan,
    to_csl_literal,
)

__all__ = [
    "EnvelopeVersion",
    "KustoDateTime",
    "KustoOperationResult",
    "KustoResultColumn",
    "KustoResultTable",
    "KustoType",
    "Timespan",
    "WellKnownDataSet",
    "decode_value",
    "format_datetime",
    "format_timespan",
    "parse_datetime",
    "parse_timespan",
    "to_csl_literal",
]
