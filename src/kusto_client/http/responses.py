from __future__ import annotations

import json
from typing import Any, Self

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from kusto_client.errors import KustoServiceError, KustoThrottlingError


ACTIVITY_ID_HEADER = "x-ms-activity-id"
SEND_FAILURE_MESSAGE = "POST failed to send request"


class OneApiError(BaseModel):
    """Structured error object returned by the service under ``"error"``."""

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    code: str | None = None
    message: str | None = None
    description: str | None = Field(default=None, alias="@message")
    type: str | None = Field(default=None, alias="@type")
    context: dict[str, Any] | None = Field(default=None, alias="@context")
    permanent: bool = Field(default=False, alias="@permanent")

    @classmethod
    def from_payload(cls, payload: Any) -> Self:
        """Hydrate from ``{"error": {...}}``, the inner object, or JSON text."""

        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except ValueError:
                return cls(message=payload)
        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            payload = payload["error"]
        if not isinstance(payload, dict):
            return cls(message=str(payload))
        try:
            return cls.model_validate(payload)
        except ValidationError:
            return cls(message=json.dumps(payload))

    def describe(self) -> str:
        return self.description or self.message or self.code or "Unknown service error"


def _body_text(response: httpx.Response) -> str:
    try:
        return response.text
    except httpx.ResponseNotRead:
        return ""


def create_error_from_response(
    url: str,
    response: httpx.Response | None,
    cause: Exception | None = None,
) -> KustoServiceError:
    """Translate a non-success response into a :class:`KustoServiceError`.

    The message comes from ``error.@message`` (or ``error.message``), a
    top-level ``message`` field, the raw body, or the status code when the
    body is blank, and always ends with ``, ActivityId='<id>'``.
    """

    if response is None:
        return KustoServiceError(
            SEND_FAILURE_MESSAGE, url=url, is_permanent=False, cause=cause
        )

    status = response.status_code
    activity_id = response.headers.get(ACTIVITY_ID_HEADER, "")
    text = _body_text(response)
    message = text
    permanent = False
    api_error: OneApiError | None = None

    if text.strip():
        try:
            payload = json.loads(text)
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            if isinstance(payload.get("error"), dict):
                api_error = OneApiError.from_payload(payload["error"])
                message = api_error.describe()
                permanent = api_error.permanent
            elif "message" in payload:
                message = str(payload["message"])
    else:
        message = f"Http StatusCode='{status}'"

    message = f"{message}, ActivityId='{activity_id}'"

    if status == 429:
        return KustoThrottlingError(
            message,
            url=url,
            activity_id=activity_id,
            retry_after=response.headers.get("Retry-After"),
        )
    return KustoServiceError(
        message,
        url=url,
        is_permanent=permanent,
        status_code=status,
        activity_id=activity_id,
        api_error=api_error,
        cause=cause,
    )


__all__ = [
    "ACTIVITY_ID_HEADER",
    "OneApiError",
    "SEND_FAILURE_MESSAGE",
    "create_error_from_response",
]
