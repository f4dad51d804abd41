from __future__ import annotations


class GatewayError(Exception):
    """Base error for dispatch and capability failures."""


class InvalidRequestError(GatewayError):
    def __init__(self, message: str, *, param: str | None = None):
        super().__init__(message)
        self.param = param


class ConfigurationError(GatewayError):
    """Required configuration (e.g. the gateway credential) is missing."""


class AuthenticationError(GatewayError):
    pass


class RateLimitError(GatewayError):
    def __init__(self, retry_after_seconds: int | None = None, message: str = "Rate limited"):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class UpstreamStatusError(GatewayError):
    def __init__(self, status_code: int, message: str):
        super().__init__(f"Gateway error ({status_code}): {message}")
        self.status_code = status_code


class UpstreamProtocolError(GatewayError):
    """Unexpected upstream response shape / contract mismatch."""


class UpstreamTimeoutError(GatewayError):
    """A single upstream attempt exceeded the transport timeout."""


class ModelsExhaustedError(GatewayError):
    def __init__(self, attempted_models: list[str], last_error: BaseException | None = None):
        detail = str(last_error) if last_error is not None else "All models exhausted"
        super().__init__(f"AI request failed: {detail}")
        self.attempted_models = list(attempted_models)
        self.last_error = last_error


class CapabilityError(GatewayError):
    """Any fault raised while serving a capability, ready to be rendered."""

    def __init__(
        self,
        label: str,
        message: str,
        *,
        category: str = "dispatch_error",
        status_code: int = 500,
        response_time_ms: int | None = None,
    ):
        super().__init__(message)
        self.label = label
        self.category = category
        self.status_code = status_code
        self.response_time_ms = response_time_ms
