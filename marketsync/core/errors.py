from __future__ import annotations


class ValidationError(ValueError):
    """Malformed rule/condition input or a disallowed manual status transition."""


class NotFoundError(ValueError):
    pass


class FormulaEvaluationError(ValueError):
    pass


class AdapterError(RuntimeError):
    """
    Upstream marketplace failure, normalized from whatever the HTTP layer raised.

    `status_code` is the upstream HTTP status when one was received; transport
    failures and timeouts leave it as None.
    """

    def __init__(
        self,
        message: str,
        *,
        marketplace: str | None = None,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.marketplace = marketplace
        self.status_code = status_code
        self.code = code

    def __str__(self) -> str:
        msg = super().__str__()
        if self.status_code is not None:
            return f"{msg} (status={self.status_code})"
        return msg


class SkippedDuplicate(RuntimeError):
    """Raised when a keyed in-flight guard is already held. Not a real failure."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Operation already in flight: {key}")
        self.key = key
