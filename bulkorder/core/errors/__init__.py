"""
Error code system.

BulkOrderError is the base exception for all structured errors.
Raise it (or one of the taxonomy subclasses) with an error code from the
registry, and the error middleware will produce a structured JSON response.

Usage:
    from bulkorder.core.errors import SecurityError
    raise SecurityError("BLK-SEC-003", detail="formula in row 4", findings=findings)
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Iterable

CODE_PATTERN = re.compile(r"^BLK-[A-Z]{2,6}-\d{3}$")


class BulkOrderError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "BLK-SEC-001".
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
        details: Itemised, user-safe payload merged into the error response.
    """

    default_code = "BLK-SYS-001"

    def __init__(
        self,
        code: str | None = None,
        detail: str | None = None,
        context: dict | None = None,
        details: dict | None = None,
    ) -> None:
        code = code or self.default_code
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        self.details = details or {}
        super().__init__(f"{code}: {detail}" if detail else code)


class ValidationError(BulkOrderError):
    """Malformed or structurally invalid input."""

    default_code = "BLK-VAL-002"


class SecurityError(BulkOrderError):
    """A security stage rejected the batch. Carries the findings."""

    default_code = "BLK-SEC-001"

    def __init__(
        self,
        code: str | None = None,
        detail: str | None = None,
        findings: Iterable[Any] = (),
        context: dict | None = None,
    ) -> None:
        self.findings = list(findings)
        super().__init__(
            code,
            detail=detail,
            context=context,
            details={"threats": [_finding_to_dict(f) for f in self.findings]},
        )


class AuthenticationError(BulkOrderError):
    """Caller could not be identified."""

    default_code = "BLK-AUTH-001"


class AuthorizationError(BulkOrderError):
    """Caller is identified but not permitted."""

    default_code = "BLK-AUTH-003"


class RateLimitError(BulkOrderError):
    default_code = "BLK-RATE-001"

    def __init__(self, retry_after: int, detail: str | None = None, context: dict | None = None) -> None:
        self.retry_after = max(1, int(retry_after))
        super().__init__(
            detail=detail,
            context=context,
            details={"retry_after": self.retry_after},
        )


class ConcurrencyError(BulkOrderError):
    """A conflicting operation on the same key is in flight."""

    default_code = "BLK-CONC-001"


class ExternalServiceError(BulkOrderError):
    """An injected capability failed or timed out."""

    default_code = "BLK-EXT-001"


class OperationNotFoundError(BulkOrderError):
    default_code = "BLK-OPS-001"


class RollbackIneligibleError(BulkOrderError):
    default_code = "BLK-RBK-001"

    def __init__(
        self,
        reason: str,
        deadline: datetime | None = None,
        context: dict | None = None,
    ) -> None:
        self.reason = reason
        self.deadline = deadline
        super().__init__(
            detail=reason,
            context=context,
            details={
                "reason": reason,
                "deadline": deadline.isoformat() + "Z" if deadline else None,
            },
        )


def _finding_to_dict(finding: Any) -> dict:
    to_dict = getattr(finding, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return {"description": str(finding)}
