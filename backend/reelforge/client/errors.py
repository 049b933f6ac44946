"""Errors raised by the control-plane client."""

from typing import Optional

import httpx


class ControlPlaneError(Exception):
    """Non-2xx answer from the control plane or storage service."""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.url = url

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"{self.status_code} {self.message} ({self.url})"

    @classmethod
    def from_response(cls, response: httpx.Response, label: str = "API") -> "ControlPlaneError":
        message = response.text
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            detail = body.get("error") or body.get("detail") or body.get("message")
            if detail:
                message = detail if isinstance(detail, str) else str(detail)
        error_cls = ControlPlaneForbidden if response.status_code == 403 else cls
        return error_cls(
            f"Daemon {label} {response.reason_phrase}: {message}",
            status_code=response.status_code,
            url=str(response.request.url),
        )

    @property
    def retriable(self) -> bool:
        return self.status_code is None or self.status_code >= 500


class ControlPlaneForbidden(ControlPlaneError):
    """403: bad credentials or project locked by another daemon."""


class UploadRejected(ControlPlaneError):
    """The upload grant does not cover the file (size or mime type)."""
