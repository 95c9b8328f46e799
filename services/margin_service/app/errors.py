"""Domain errors raised by the margin rule engine."""

from __future__ import annotations

from collections.abc import Sequence


class MarginEngineError(Exception):
    """Base class for margin engine failures."""


class RuleValidationError(MarginEngineError):
    """A rule definition is malformed or out of range and was not written."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid margin rule")


class RuleNotFoundError(MarginEngineError):
    def __init__(self, rule_id: int) -> None:
        self.rule_id = rule_id
        super().__init__(f"Margin rule {rule_id} not found")


class RuleConflictError(MarginEngineError):
    """The write conflicts with existing state (duplicate name, applied rule delete)."""


class InvalidContextError(MarginEngineError):
    """Booking context is missing required fields or carries malformed values."""


class CurrencyMismatchError(MarginEngineError):
    def __init__(self, *, rule_currency: str, pricing_currency: str) -> None:
        self.rule_currency = rule_currency
        self.pricing_currency = pricing_currency
        super().__init__(
            f"Rule currency {rule_currency} does not match pricing currency {pricing_currency}"
        )


class DuplicateBookingError(RuleConflictError):
    """A margin was already recorded for this booking id."""

    def __init__(self, booking_id: str) -> None:
        self.booking_id = booking_id
        super().__init__(f"Margin for booking {booking_id} has already been recorded")
