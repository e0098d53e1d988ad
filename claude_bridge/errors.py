from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base error. Carries everything needed to render an OpenAI error body."""

    status_code: int = 500
    error_type: str = "server_error"
    code: str | None = None

    def __init__(self, message: str, *, code: str | None = None, param: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.param = param

    def to_body(self) -> dict[str, Any]:
        return openai_error_body(self.message, error_type=self.error_type, code=self.code, param=self.param)


class InvalidRequestError(BridgeError):
    status_code = 400
    error_type = "invalid_request_error"


class ModelNotFoundError(BridgeError):
    status_code = 404
    error_type = "invalid_request_error"
    code = "model_not_found"


class PromptTooLargeError(BridgeError):
    status_code = 413
    error_type = "invalid_request_error"
    code = "prompt_too_large"


class CapacityExceededError(BridgeError):
    status_code = 429
    error_type = "rate_limit_error"
    code = "rate_limit_exceeded"


class CredentialError(BridgeError):
    status_code = 500
    error_type = "server_error"
    code = "missing_credentials"


class BackendError(BridgeError):
    status_code = 502
    error_type = "server_error"
    code = "backend_error"


class BackendTimeout(BridgeError):
    status_code = 504
    error_type = "server_error"
    code = "backend_timeout"


def openai_error_body(
    message: str,
    *,
    error_type: str = "server_error",
    code: str | None = None,
    param: str | None = None,
) -> dict[str, Any]:
    return {"error": {"message": message, "type": error_type, "param": param, "code": code}}


def truncate(text: str, limit: int) -> str:
    text = (text or "").strip()
    if limit <= 0 or len(text) <= limit:
        return text
    return f"{text[:limit]}... (truncated, {len(text)} chars total)"
