from __future__ import annotations

import json

import pytest

from kusto_client.errors import KustoServiceQueryError
from kusto_client.results import EnvelopeVersion, KustoOperationResult, WellKnownDataSet

from tests.factories import make_table_payload, make_v1_payload, make_v2_frames


def _primary(rows=((1, "a"), (2, "b"))) -> dict:
    return make_table_payload([("N", "int"), ("S", "string")], rows, table_id=0)


def test_v2_frames_are_detected_and_parsed() -> None:
    properties = make_table_payload(
        [("Value", "dynamic")],
        [["{}"]],
        name="@ExtendedProperties",
        table_id=1,
        kind="QueryProperties",
    )
    result = KustoOperationResult(json.dumps(make_v2_frames(_primary(), properties)))

    assert result.version is EnvelopeVersion.V2
    assert len(result) == 2
    primary = result.primary_results
    assert primary is not None
    assert primary.table_kind is WellKnownDataSet.PRIMARY_RESULT
    assert primary.to_dicts() == [{"N": 1, "S": "a"}, {"N": 2, "S": "b"}]


def test_v2_iteration_helpers() -> None:
    result = KustoOperationResult(make_v2_frames(_primary()))

    assert result.has_next()
    table = result.next_table()
    assert table.table_name == "PrimaryResult"
    assert not result.has_next()
    with pytest.raises(StopIteration):
        result.next_table()
    assert [t.table_name for t in result] == ["PrimaryResult"]


def test_v2_completion_with_errors_raises() -> None:
    completion = {
        "FrameType": "DataSetCompletion",
        "HasErrors": True,
        "Cancelled": False,
        "OneApiErrors": [
            {"error": {"code": "General_BadRequest", "@message": "Syntax error", "@permanent": True}}
        ],
    }

    with pytest.raises(KustoServiceQueryError) as excinfo:
        KustoOperationResult(make_v2_frames(_primary(), completion=completion))

    assert "Syntax error" in str(excinfo.value)
    assert excinfo.value.is_permanent is True


def test_v1_single_table_is_primary_result() -> None:
    table = make_table_payload([("N", "int")], [[1]], name="Table_0", table_id=None, kind=None)
    result = KustoOperationResult(make_v1_payload(table))

    assert result.version is EnvelopeVersion.V1
    primary = result.primary_results
    assert primary is not None
    assert primary.table_id == "0"
    assert primary.table_kind is WellKnownDataSet.PRIMARY_RESULT


def test_v1_two_tables_assign_query_properties() -> None:
    first = make_table_payload([("N", "int")], [[1]], name="Table_0", table_id=None, kind=None)
    second = make_table_payload([("V", "string")], [["x"]], name="Table_1", table_id=None, kind=None)

    result = KustoOperationResult(make_v1_payload(first, second))

    assert [t.table_kind for t in result] == [
        WellKnownDataSet.PRIMARY_RESULT,
        WellKnownDataSet.QUERY_PROPERTIES,
    ]
    assert result.tables[1].table_id == "1"


def test_v1_table_of_contents_names_tables() -> None:
    data = make_table_payload([("N", "int")], [[1]], name="Table_0", table_id=None, kind=None)
    stats = make_table_payload([("S", "string")], [["ok"]], name="Table_1", table_id=None, kind=None)
    toc = make_table_payload(
        [("Ordinal", "long"), ("Kind", "string"), ("Name", "string"), ("Id", "string")],
        [
            [0, "QueryResult", "PrimaryResult", "guid-0"],
            [1, "QueryStatus", "QueryStatus", "guid-1"],
        ],
        name="Table_2",
        table_id=7,
        kind=None,
    )

    result = KustoOperationResult(make_v1_payload(data, stats, toc))

    tables = result.tables
    assert tables[0].table_name == "PrimaryResult"
    assert tables[0].table_id == "guid-0"
    assert tables[1].table_kind is WellKnownDataSet.QUERY_COMPLETION_INFORMATION
    assert tables[2].table_kind is WellKnownDataSet.TABLE_OF_CONTENTS
    assert tables[2].table_id == "2"
    assert tables[2].is_before_first
    assert result.primary_results is tables[0]


def test_explicit_version_overrides_detection() -> None:
    with pytest.raises(KustoServiceQueryError):
        KustoOperationResult(make_v1_payload(_primary()), EnvelopeVersion.V2)


def test_invalid_json_is_a_permanent_query_error() -> None:
    with pytest.raises(KustoServiceQueryError) as excinfo:
        KustoOperationResult("{not json")

    assert excinfo.value.is_permanent is True


def test_v1_missing_tables_property() -> None:
    with pytest.raises(KustoServiceQueryError):
        KustoOperationResult({"Rows": []})
