"""Error taxonomy shared by the backend client, retry policy and tools."""

from enum import Enum
from typing import Any, Optional

import httpx


class AIErrorType(str, Enum):
    MISSING_CREDENTIAL = "missing_credential"
    MISSING_ENDPOINT = "missing_endpoint"
    NETWORK_FAILURE = "network_failure"
    TIMEOUT = "timeout"
    AUTHENTICATION_FAILURE = "authentication_failure"
    RATE_LIMITED = "rate_limited"
    MODEL_NOT_FOUND = "model_not_found"
    CONTEXT_LENGTH_EXCEEDED = "context_length_exceeded"
    INVALID_REQUEST = "invalid_request"
    CONFIG_ERROR = "config_error"
    SERVER_ERROR = "server_error"
    EMPTY_RESPONSE = "empty_response"
    STREAM_FAILURE = "stream_failure"
    UNKNOWN_PROVIDER = "unknown_provider"
    OLLAMA_NOT_RUNNING = "ollama_not_running"
    UNKNOWN = "unknown"


class AIError(RuntimeError):
    """A classified backend failure.

    ``retryable`` is the only thing RetryPolicy looks at; everything else
    is there for logs and for the message shown to the user.
    """

    def __init__(
        self,
        type: AIErrorType,
        message: str,
        provider: str = "",
        model: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: bool = False,
        body: Any = None,
    ):
        super().__init__(message)
        self.type = type
        self.message = message
        self.provider = provider
        self.model = model
        self.status_code = status_code
        self.retryable = retryable
        self.body = body

    def __repr__(self) -> str:
        return (
            f"AIError(type={self.type.value}, status={self.status_code}, "
            f"retryable={self.retryable}, message={self.message!r})"
        )

    # ── Constructors ─────────────────────────────────────────

    @classmethod
    def from_status(
        cls,
        status_code: int,
        body: Any,
        provider: str,
        model: Optional[str] = None,
        reason: str = "",
    ) -> "AIError":
        """Classify a non-2xx response by status code and error body."""
        message = _error_message(body) or reason or "Unknown error"
        lower = message.lower()

        if status_code in (401, 403):
            kind, retryable = AIErrorType.AUTHENTICATION_FAILURE, False
        elif status_code == 429:
            kind, retryable = AIErrorType.RATE_LIMITED, True
        elif status_code == 400:
            if "context" in lower or "token" in lower:
                kind = AIErrorType.CONTEXT_LENGTH_EXCEEDED
            elif "model" in lower:
                kind = AIErrorType.MODEL_NOT_FOUND
            else:
                kind = AIErrorType.INVALID_REQUEST
            retryable = False
        elif status_code == 404:
            if "endpoint" in lower or "not supported" in lower:
                kind = AIErrorType.CONFIG_ERROR
            else:
                kind = AIErrorType.MODEL_NOT_FOUND
            retryable = False
        elif status_code >= 500:
            kind, retryable = AIErrorType.SERVER_ERROR, True
        else:
            kind, retryable = AIErrorType.UNKNOWN, False

        return cls(
            kind,
            f"{provider} API error ({status_code}): {message}",
            provider=provider,
            model=model,
            status_code=status_code,
            retryable=retryable,
            body=body,
        )

    @classmethod
    def from_network_error(cls, exc: BaseException, provider: str, model: Optional[str] = None) -> "AIError":
        if isinstance(exc, httpx.TimeoutException):
            return cls(
                AIErrorType.TIMEOUT,
                f"{provider} request timed out: {exc}",
                provider=provider,
                model=model,
                retryable=True,
            )
        if provider == "ollama" and isinstance(exc, httpx.ConnectError):
            return cls.ollama_not_running()
        return cls(
            AIErrorType.NETWORK_FAILURE,
            f"{provider} network error: {exc}",
            provider=provider,
            model=model,
            retryable=True,
        )

    @classmethod
    def missing_credential(cls, provider: str) -> "AIError":
        return cls(
            AIErrorType.MISSING_CREDENTIAL,
            f"{provider} API key not found. Set MOSAIC_API_KEY or add it to ~/.mosaic.json.",
            provider=provider,
        )

    @classmethod
    def missing_endpoint(cls, provider: str) -> "AIError":
        return cls(
            AIErrorType.MISSING_ENDPOINT,
            f"{provider} base URL not configured. Set MOSAIC_BASE_URL.",
            provider=provider,
        )

    @classmethod
    def empty_response(cls, provider: str, model: Optional[str] = None) -> "AIError":
        return cls(
            AIErrorType.EMPTY_RESPONSE,
            f"{provider} returned an empty response",
            provider=provider,
            model=model,
            retryable=True,
        )

    @classmethod
    def stream_failure(
        cls, provider: str, message: str, model: Optional[str] = None, retryable: bool = False
    ) -> "AIError":
        return cls(
            AIErrorType.STREAM_FAILURE,
            f"{provider} streaming error: {message}",
            provider=provider,
            model=model,
            retryable=retryable,
        )

    @classmethod
    def unknown_provider(cls, provider: str) -> "AIError":
        return cls(
            AIErrorType.UNKNOWN_PROVIDER,
            f"Unknown provider type: {provider}",
            provider=provider,
        )

    @classmethod
    def ollama_not_running(cls) -> "AIError":
        return cls(
            AIErrorType.OLLAMA_NOT_RUNNING,
            'Ollama is not running. Start it with "ollama serve".',
            provider="ollama",
        )


def _error_message(body: Any) -> str:
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if body.get("message"):
            return str(body["message"])
    if isinstance(body, str):
        return body.strip()[:500]
    return ""


# ── Tool errors ──────────────────────────────────────────────

class ToolError(RuntimeError):
    """Base for failures raised while dispatching a tool call."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class ToolUnknown(ToolError):
    def __init__(self, tool_name: str):
        super().__init__(tool_name, f"Tool '{tool_name}' not found")


class ToolTimeout(ToolError):
    def __init__(self, tool_name: str, timeout: float):
        super().__init__(tool_name, "timeout")
        self.timeout = timeout


class ToolExecutionError(ToolError):
    """Bad parameters or an unexpected crash inside a tool."""


# ── Loop control ─────────────────────────────────────────────

class PlanningParseFailure(ValueError):
    """The model's intention/plan reply held no usable JSON."""


class TurnCancelled(Exception):
    """The user stopped the current turn."""

    def __init__(self, reason: str = "user"):
        super().__init__(f"cancelled ({reason})")
        self.reason = reason
