from __future__ import annotations

from typing import Any, List, Optional


class GiftError(Exception):
    """Base class for every failure raised by the gift pipeline."""

    retryable = False


class TransientExternalError(GiftError):
    """An external call timed out, was rate limited or hit a 5xx."""

    retryable = True


class ValidationError(GiftError):
    """Missing or malformed specification, unknown variant, bad params."""


class ConfigError(ValidationError):
    pass


class AmountOverflowError(ValidationError):
    pass


class IdempotencyConflict(GiftError):
    """The (day) or (day, hour) anchor already exists. Callers treat this as a no-op."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Idempotency anchor already taken: {key}")
        self.key = key


class IntegrityError(GiftError):
    """A revealed entry does not verify against the published Merkle root."""


class PartialExecutionError(GiftError):
    """Winners were already paid but a later step failed.

    The computed result and the transfer receipts travel with the error so an
    operator can reconcile by hand.
    """

    def __init__(
        self,
        message: str,
        *,
        day: int,
        result: Any = None,
        receipts: Optional[List[str]] = None,
    ) -> None:
        super().__init__(message)
        self.day = day
        self.result = result
        self.receipts = list(receipts or [])
