from typing import Optional, Dict, Any


class FinledgerException(Exception):
    """Base exception for all Finledger errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        self.retryable = retryable


class InvalidRequestError(FinledgerException):
    """Raised when a required field is missing or malformed, before any side effect."""
    def __init__(self, message: str, code: str = "validation_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=400, details=details)


class WebhookSignatureError(FinledgerException):
    """Raised when a webhook body fails authenticity verification."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="invalid_signature", status_code=401, details=details)


class ResourceNotFoundError(FinledgerException):
    """Raised when a requested proposal, metric, receipt or connection is not found."""
    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)


class StateConflictError(FinledgerException):
    """Raised when a workflow transition is not allowed from the current state."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="conflict", status_code=409, details=details)


class PolicyDeniedError(FinledgerException):
    """Raised when execution is blocked by policy evaluation. Details carry the decision."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="policy_denied", status_code=403, details=details)


class UpstreamProviderError(FinledgerException):
    """Raised when a single provider fetch or report fails."""
    def __init__(
        self,
        message: str,
        provider: str,
        reauth_required: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = {"provider": provider, **(details or {})}
        super().__init__(
            message,
            code="upstream_failure",
            status_code=502,
            details=merged,
            retryable=not reauth_required,
        )
        self.provider = provider
        self.reauth_required = reauth_required


class PersistenceError(FinledgerException):
    """Raised when a ledger or receipt write fails and the action did not durably complete."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            code="persistence_failure",
            status_code=503,
            details={"durable": False, **(details or {})},
            retryable=True,
        )


class ConfigurationError(FinledgerException):
    """Raised when application configuration is invalid or missing."""
    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)
