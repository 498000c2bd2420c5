from __future__ import annotations

from kusto_client.utils import LoggingOptions, configure_logging, log_file_path, sanitize_log_message
from kusto_client.utils.logging import REDACTED, redact_sensitive_values


def test_sanitize_log_message_strips_control_characters() -> None:
    message = "Failure\r\n<script>alert('x')</script>\x08"
    assert sanitize_log_message(message) == "Failure\n<script>alert('x')</script>"


def test_sanitize_log_message_masks_bearer_tokens() -> None:
    assert sanitize_log_message("Authorization: Bearer eyJ0eXAi.abc-def") == (
        f"Authorization: Bearer {REDACTED}"
    )


def test_redaction_masks_sensitive_keys() -> None:
    event = {
        "event": "request",
        "Authorization": "Bearer secret",
        "client_secret": "s3cret",
        "password": None,
        "url": "https://x\x07",
    }

    result = redact_sensitive_values(None, "info", dict(event))

    assert result["Authorization"] == REDACTED
    assert result["client_secret"] == REDACTED
    assert result["password"] is None
    assert result["url"] == "https://x"


def test_configure_logging_without_file_sink() -> None:
    assert configure_logging(LoggingOptions()) is None
    assert log_file_path() is None


def test_configure_logging_with_explicit_path(tmp_path) -> None:
    target = tmp_path / "logs" / "client.log"

    path = configure_logging(LoggingOptions(level="DEBUG", log_path=target))

    assert path == target
    assert log_file_path() == target
    configure_logging(LoggingOptions())
