"""
Engine error kinds.

Lookups that miss raise a NotFoundError subclass; malformed caller input
raises a ValidationError subclass. Neither is retried: both mean the caller
passed a stale id or bad data.
"""

from __future__ import annotations


class EngineError(Exception):
    pass


class NotFoundError(EngineError, LookupError):
    entity = "entity"

    def __init__(self, entity_id=None, message: str | None = None):
        self.entity_id = entity_id
        super().__init__(message or f"{self.entity} not found")


class AccountNotFoundError(NotFoundError):
    entity = "Account"


class TransactionNotFoundError(NotFoundError):
    entity = "Transaction"


class PatternNotFoundError(NotFoundError):
    entity = "Pattern"


class SubscriptionNotFoundError(NotFoundError):
    entity = "Subscription"


class CategoryNotFoundError(NotFoundError):
    entity = "Category"


class AnomalyNotFoundError(NotFoundError):
    entity = "Anomaly"


class ValidationError(EngineError, ValueError):
    pass


class InvalidMonthFormatError(ValidationError):
    def __init__(self, month=None):
        self.month = month
        super().__init__("Invalid month format. Expected YYYY-MM")


class InvalidFrequencyError(ValidationError):
    def __init__(self, frequency=None, allowed=()):
        self.frequency = frequency
        super().__init__(f"Invalid frequency. Must be one of: {', '.join(allowed)}")


class InvalidTypeError(ValidationError):
    def __init__(self, value=None, allowed=()):
        self.value = value
        super().__init__(f"Invalid type. Must be one of: {', '.join(allowed)}")


class RequiredFieldMissingError(ValidationError):
    def __init__(self, field: str):
        self.field = field
        super().__init__(f"{field} is required")
