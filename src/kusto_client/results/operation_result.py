from __future__ import annotations

import json
from enum import Enum
from typing import Any, Iterator, Mapping, Sequence

from kusto_client.errors import KustoError, KustoServiceQueryError
from kusto_client.utils import get_logger

from .table import KustoResultTable, WellKnownDataSet, extract_inline_exceptions


logger = get_logger(__name__)

TABLES_PROPERTY = "Tables"
FRAME_TYPE_PROPERTY = "FrameType"
DATA_TABLE_FRAME = "DataTable"
DATASET_COMPLETION_FRAME = "DataSetCompletion"

_V1_KIND_MAP: dict[str, WellKnownDataSet] = {
    "QueryResult": WellKnownDataSet.PRIMARY_RESULT,
    "QueryProperties": WellKnownDataSet.QUERY_PROPERTIES,
    "QueryStatus": WellKnownDataSet.QUERY_COMPLETION_INFORMATION,
}


class EnvelopeVersion(str, Enum):
    V1 = "v1"
    V2 = "v2"

    @classmethod
    def detect(cls, payload: Any) -> "EnvelopeVersion":
        """v2 responses are a top-level array of frames; v1 is an object."""
        if isinstance(payload, list):
            return cls.V2
        if isinstance(payload, Mapping):
            return cls.V1
        raise KustoServiceQueryError(
            f"Unrecognised response envelope of type {type(payload).__name__}"
        )


def _load(payload: str | bytes | Mapping[str, Any] | Sequence[Any]) -> Any:
    if isinstance(payload, (str, bytes, bytearray)):
        try:
            return json.loads(payload)
        except ValueError as exc:
            raise KustoServiceQueryError(
                f"Json processing error occurred while parsing string to table: {exc}",
                is_permanent=True,
            ) from exc
    return payload


class KustoOperationResult:
    """All tables returned by one query or management command."""

    def __init__(
        self,
        payload: str | bytes | Mapping[str, Any] | Sequence[Any],
        version: EnvelopeVersion | str | None = None,
    ) -> None:
        document = _load(payload)
        if version is None:
            self.version = EnvelopeVersion.detect(document)
        else:
            self.version = EnvelopeVersion(version)

        match self.version:
            case EnvelopeVersion.V1:
                self._tables = self._parse_v1(document)
            case EnvelopeVersion.V2:
                self._tables = self._parse_v2(document)
        self._position = 0
        logger.debug(
            "Parsed operation result",
            version=self.version.value,
            tables=len(self._tables),
        )

    def __iter__(self) -> Iterator[KustoResultTable]:
        return iter(self._tables)

    def __len__(self) -> int:
        return len(self._tables)

    @property
    def tables(self) -> list[KustoResultTable]:
        return list(self._tables)

    @property
    def primary_results(self) -> KustoResultTable | None:
        if len(self._tables) == 1:
            return self._tables[0]
        for table in self._tables:
            if table.table_kind is WellKnownDataSet.PRIMARY_RESULT:
                return table
        return None

    def has_next(self) -> bool:
        return self._position < len(self._tables)

    def next_table(self) -> KustoResultTable:
        if not self.has_next():
            raise StopIteration("No more tables in the operation result")
        table = self._tables[self._position]
        self._position += 1
        return table

    # Internal --------------------------------------------------------

    def _parse_v1(self, document: Any) -> list[KustoResultTable]:
        if not isinstance(document, Mapping):
            raise KustoServiceQueryError("Expected a JSON object for a v1 response")
        raw_tables = document.get(TABLES_PROPERTY)
        if not isinstance(raw_tables, list):
            raise KustoServiceQueryError(
                f"{TABLES_PROPERTY} property missing from v1 response json"
            )
        raw_tables = [
            table
            for table in raw_tables
            if isinstance(table, Mapping)
            and table.get(FRAME_TYPE_PROPERTY, DATA_TABLE_FRAME) == DATA_TABLE_FRAME
        ]
        tables = [self._build_table(table) for table in raw_tables]
        if not tables:
            return tables

        if len(tables) <= 2:
            tables[0].table_kind = WellKnownDataSet.PRIMARY_RESULT
            tables[0].table_id = "0"
            if len(tables) == 2:
                tables[1].table_kind = WellKnownDataSet.QUERY_PROPERTIES
                tables[1].table_id = "1"
            return tables

        toc = tables[-1]
        toc.table_kind = WellKnownDataSet.TABLE_OF_CONTENTS
        toc.table_id = str(len(tables) - 1)
        for table in tables[:-1]:
            if not toc.next():
                break
            table.table_name = toc.get_string("Name")
            table.table_id = toc.get_string("Id")
            table.table_kind = _V1_KIND_MAP.get(
                toc.get_string("Kind") or "", WellKnownDataSet.UNKNOWN
            )
        toc.before_first()
        return tables

    def _parse_v2(self, document: Any) -> list[KustoResultTable]:
        if not isinstance(document, list):
            raise KustoServiceQueryError("Expected a JSON array for a v2 response")
        tables: list[KustoResultTable] = []
        for frame in document:
            if not isinstance(frame, Mapping):
                continue
            frame_type = frame.get(FRAME_TYPE_PROPERTY)
            if frame_type == DATA_TABLE_FRAME:
                tables.append(self._build_table(frame))
            elif frame_type == DATASET_COMPLETION_FRAME and frame.get("HasErrors"):
                error = extract_inline_exceptions(frame)
                if error is not None:
                    raise error
        return tables

    def _build_table(self, payload: Mapping[str, Any]) -> KustoResultTable:
        try:
            return KustoResultTable(payload)
        except KustoError:
            raise
        except (TypeError, AttributeError) as exc:
            raise KustoServiceQueryError(
                f"Malformed table payload: {exc}", is_permanent=True
            ) from exc


__all__ = ["EnvelopeVersion", "KustoOperationResult"]
