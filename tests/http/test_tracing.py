from __future__ import annotations

from kusto_client.http import ClientDetails
from kusto_client.http.tracing import NONE, default_client_version, escape_field, format_header


def test_escape_field_replaces_separators() -> None:
    assert escape_field("my app|v{1}") == "{my_app_v_1_}"


def test_format_header_skips_empty_values() -> None:
    assert format_header({"Kusto.Connector": "1.0", "Missing": None}) == "Kusto.Connector:{1.0}"


def test_default_client_version_names_python_runtime() -> None:
    version = default_client_version()

    assert version.startswith("Kusto.Python.Client:{")
    assert "|Runtime.{" in version


def test_explicit_details_win_over_defaults() -> None:
    details = ClientDetails(
        application_for_tracing="MyApp",
        user_name_for_tracing="alice",
        appended_client_version_for_tracing="Extra:{1}",
    )

    headers = details.tracing_headers()

    assert headers["x-ms-app"] == "MyApp"
    assert headers["x-ms-user"] == "alice"
    assert headers["x-ms-client-version"].endswith("|Extra:{1}")


def test_defaults_are_never_empty() -> None:
    details = ClientDetails()

    assert details.application
    assert details.user


def test_connector_details_hide_user_unless_requested() -> None:
    details = ClientDetails.from_connector_details(
        "MyConnector", "2.0", app_name="Host App", app_version="0.5"
    )

    assert details.application_for_tracing == "Kusto.MyConnector:{2.0}|App.{Host_App}:{0.5}"
    assert details.user == NONE


def test_connector_details_with_user_override_and_extra_fields() -> None:
    details = ClientDetails.from_connector_details(
        "MyConnector",
        "2.0",
        send_user=True,
        override_user="bob",
        app_name="Host",
        additional_fields={"Extra": "x y"},
    )

    assert details.user == "bob"
    assert details.application_for_tracing == (
        "Kusto.MyConnector:{2.0}|App.{Host}:{[none]}|Extra:{x_y}"
    )
