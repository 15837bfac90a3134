"""Domain errors and shared response contracts."""

from backend.app.domain.errors import (  # noqa: F401
    AccountNotFoundError,
    AnomalyNotFoundError,
    CategoryNotFoundError,
    EngineError,
    InvalidFrequencyError,
    InvalidMonthFormatError,
    InvalidTypeError,
    NotFoundError,
    PatternNotFoundError,
    RequiredFieldMissingError,
    SubscriptionNotFoundError,
    TransactionNotFoundError,
    ValidationError,
)
