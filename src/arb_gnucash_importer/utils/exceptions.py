"""Custom exceptions for the importer."""

from typing import Any, Optional


class ImporterError(Exception):
    """Base exception for importer errors."""

    pass


class ConfigurationError(ImporterError):
    """Error in configuration or mapping files."""

    pass


class FetchError(ImporterError):
    """Error while reading records from the explorer API."""

    def __init__(
        self,
        message: str,
        address: Optional[str] = None,
        cursor: Optional[Any] = None,
        status_code: Optional[int] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.address = address
        self.cursor = cursor
        self.status_code = status_code
        self.original_error = original_error

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/reporting."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "address": self.address,
            "cursor": str(self.cursor) if self.cursor else None,
            "status_code": self.status_code,
            "original_error": str(self.original_error) if self.original_error else None,
        }

    def __str__(self) -> str:
        parts = [self.message]
        if self.address:
            parts.append(f"[address={self.address}]")
        if self.status_code:
            parts.append(f"[status={self.status_code}]")
        if self.original_error:
            parts.append(f"(caused by: {self.original_error})")
        return " ".join(parts)


class TransientFetchError(FetchError):
    """Rate-limit or network error; the request may be retried."""

    def __init__(
        self,
        message: str,
        retry_after_seconds: Optional[float] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class FatalFetchError(FetchError):
    """
    Non-retryable fetch error.

    ``scope`` is ``"global"`` for conditions that affect every address
    (authentication failure, malformed API contract) and ``"address"`` when
    only one address's sub-stream is affected.
    """

    GLOBAL = "global"
    ADDRESS = "address"

    def __init__(self, message: str, scope: str = GLOBAL, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.scope = scope

    @property
    def is_global(self) -> bool:
        return self.scope == self.GLOBAL

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["scope"] = self.scope
        return data


class LedgerBalanceError(ImporterError):
    """A ledger entry whose legs do not sum to zero per currency."""

    pass


class ExportError(ImporterError):
    """Error writing the export file."""

    pass


class ReportGenerationError(ImporterError):
    """Error generating the Excel run report."""

    pass


class PipelineCancelled(ImporterError):
    """The run was cancelled before all stages completed."""

    pass
