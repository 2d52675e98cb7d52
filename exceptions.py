"""
Custom Exceptions Module
Defines specific exceptions for better error handling
"""

from enum import Enum
from typing import Optional, Dict, Any


class CorridorScopeError(Exception):
    """Base exception for all pipeline errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# API Errors
class LedgerAPIError(CorridorScopeError):
    """Base class for ledger API errors"""
    pass


class APIConnectionError(LedgerAPIError):
    """Failed to connect to the ledger API"""
    pass


class APITimeoutError(LedgerAPIError):
    """Ledger API request timed out"""
    pass


class APIRateLimitError(LedgerAPIError):
    """Ledger API rate limit exceeded"""

    def __init__(self, message: str, retry_after_seconds: Optional[float] = None):
        super().__init__(message, {"retry_after_seconds": retry_after_seconds})
        self.retry_after_seconds = retry_after_seconds


class APIResponseError(LedgerAPIError):
    """Unexpected HTTP status from the ledger API"""

    def __init__(self, message: str, status_code: Optional[int] = None, response_body: Optional[str] = None):
        super().__init__(message, {"status_code": status_code, "response_body": response_body})
        self.status_code = status_code
        self.response_body = response_body


class CircuitOpenError(LedgerAPIError):
    """Call rejected without reaching upstream because the breaker is open"""

    def __init__(self, operation: str, retry_in_seconds: float = 0.0):
        super().__init__(
            f"Circuit breaker for '{operation}' is OPEN",
            {"operation": operation, "retry_in_seconds": round(retry_in_seconds, 3)}
        )
        self.operation = operation
        self.retry_in_seconds = retry_in_seconds


class RetriesExhaustedError(LedgerAPIError):
    """All retry attempts failed"""

    def __init__(self, message: str, last_error: Exception, attempts: int):
        super().__init__(message, {"attempts": attempts, "last_error": str(last_error)})
        self.last_error = last_error
        self.attempts = attempts


class PaginationError(LedgerAPIError):
    """Upstream violated the paging protocol (cursor did not advance)"""

    def __init__(self, message: str, resource: str, cursor: Optional[str]):
        super().__init__(message, {"resource": resource, "cursor": cursor})
        self.resource = resource
        self.cursor = cursor


class FetchFailedError(LedgerAPIError):
    """A page could not be fetched; carries the cursor so callers can resume"""

    def __init__(self, resource: str, cursor: Optional[str], cause: Exception):
        super().__init__(
            f"Failed to fetch {resource} page after cursor {cursor!r}: {cause.__class__.__name__}",
            {"resource": resource, "cursor": cursor, "cause": str(cause)}
        )
        self.resource = resource
        self.cursor = cursor
        self.cause = cause


# Parse Errors
class ParseErrorKind(Enum):
    """Why a payload could not be normalized"""
    MISSING_FIELDS = "missing_fields"
    MALFORMED_AMOUNT = "malformed_amount"
    EMPTY_BALANCE_CHANGES = "empty_balance_changes"
    MALFORMED_TIMESTAMP = "malformed_timestamp"


class ParseError(CorridorScopeError):
    """Base class for payload parsing errors"""

    kind: ParseErrorKind = ParseErrorKind.MISSING_FIELDS

    def __init__(self, message: str, field: Optional[str] = None, record_id: Optional[str] = None):
        super().__init__(message, {"kind": self.kind.value, "field": field, "record_id": record_id})
        self.field = field
        self.record_id = record_id


class MissingFieldsError(ParseError):
    """Neither the legacy nor the balance-change representation is present"""
    kind = ParseErrorKind.MISSING_FIELDS


class MalformedAmountError(ParseError):
    """An amount is not a decimal string"""
    kind = ParseErrorKind.MALFORMED_AMOUNT


class EmptyBalanceChangesError(ParseError):
    """balance_changes is present but empty"""
    kind = ParseErrorKind.EMPTY_BALANCE_CHANGES


class MalformedTimestampError(ParseError):
    """created_at is not an ISO-8601 timestamp"""
    kind = ParseErrorKind.MALFORMED_TIMESTAMP


# Pipeline Errors
class OperationCancelledError(CorridorScopeError):
    """Caller cancelled the operation or its deadline passed"""
    pass


class AggregationError(CorridorScopeError):
    """No payments to aggregate because the fetch itself failed"""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message, {"cause": str(cause) if cause else None})
        self.cause = cause


# Configuration Errors
class ConfigurationError(CorridorScopeError):
    """Configuration is invalid or missing"""
    pass
