"""Exceptions raised by the INK bridge components.

Components raise; the FastAPI handlers in app.py decide status codes.
"""

from typing import Any, List, Optional


class InkError(Exception):
    """Base exception for all INK bridge errors."""

    pass


class ConfigurationError(InkError):
    """Raised when a required setting is missing or invalid."""

    pass


class SignatureError(InkError):
    """Raised when a webhook signature is missing or does not match."""

    def __init__(self, source: str):
        self.source = source
        super().__init__(f"{source} signature failed")


class MissingFieldError(InkError):
    """Raised when a request lacks a required field. No remote call is made."""

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        super().__init__(message or f"Missing {field}")


class TransportFailure(InkError):
    """Raised when a remote system could not be reached (no response)."""

    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"{target} unreachable: {reason}")


class UpstreamError(InkError):
    """Raised when a remote system answers with an error."""

    def __init__(self, message: str, status: Optional[int] = None, detail: Any = None):
        self.status = status
        self.detail = detail
        super().__init__(message)


class ShopifyError(UpstreamError):
    """Non-2xx or top-level `errors` from the Admin GraphQL API."""

    pass


class ShopifyUserError(ShopifyError):
    """A mutation answered with a non-empty userErrors list."""

    def __init__(self, operation: str, user_errors: List[dict]):
        self.operation = operation
        self.user_errors = user_errors
        messages = "; ".join(str(e.get("message", e)) for e in user_errors)
        super().__init__(f"{operation} failed: {messages}", detail=user_errors)


class StagedUploadError(ShopifyError):
    """Could not obtain a staged upload target."""

    pass


class UploadError(UpstreamError):
    """The direct upload to the staged URL failed."""

    def __init__(self, status: Optional[int] = None, detail: Any = None):
        super().__init__("Upload to Shopify failed", status=status, detail=detail)


class FileRegistrationError(ShopifyError):
    """The uploaded resource could not be registered as a file."""

    def __init__(self, detail: Any = None):
        super().__init__("Failed to register file", detail=detail)


class NfsError(UpstreamError):
    """The NFS verification backend answered with a non-2xx status."""

    def __init__(self, operation: str, status: int, detail: Any, text: str = ""):
        self.operation = operation
        self.text = text
        super().__init__(f"NFS {operation} failed [{status}]: {text or detail}",
                         status=status, detail=detail)
