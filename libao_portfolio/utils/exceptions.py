"""Custom exceptions for the Libao portfolio ledger.

This module defines the exception hierarchy for the application.
"""


class LibaoPortfolioError(Exception):
    """Base exception for all portfolio ledger errors.

    All custom exceptions in the application should inherit from this class.
    """

    pass


class ConfigurationError(LibaoPortfolioError):
    """Raised when configuration is invalid or missing.

    Examples:
        - Configuration file not found
        - Unknown relay name in the oracle configuration
        - Non-positive TTL or timeout values
    """

    pass


class LedgerError(LibaoPortfolioError):
    """Base exception for ledger layer errors.

    Parent class for every error raised by the order processor and
    allocation manager. A ledger error is always raised before any
    snapshot is replaced, so the caller's state is left untouched.
    """

    pass


class ValidationError(LedgerError, ValueError):
    """Raised when a ledger instruction fails validation.

    Examples:
        - Non-positive share count
        - Negative price, fee or tax
        - Allocation percent outside 0-100
    """

    pass


class UnknownCategoryError(ValidationError):
    """Raised when an instruction targets a category that does not exist."""

    pass


class TransactionNotFoundError(ValidationError):
    """Raised when a revocation targets an unknown transaction id."""

    pass


class InsufficientSharesError(LedgerError):
    """Raised when a SELL requests more shares than currently held.

    No partial sell is performed.
    """

    pass


class IrreversibleTransactionError(LedgerError):
    """Raised when a transaction can no longer be revoked exactly.

    Examples:
        - Revoking a BUY whose lot was already (partially) sold
        - Revoking a SELL after a later SELL of the same symbol
    """

    pass


class DataError(LibaoPortfolioError):
    """Base exception for data layer errors.

    Parent class for all data-related exceptions.
    """

    pass


class DataQualityError(DataError, ValueError):
    """Raised when a relay returns a body that fails shape checks.

    RelayChain treats it like any other malformed body and moves on
    to the next relay.
    """

    pass


class SnapshotImportError(DataError):
    """Raised when a portfolio backup cannot be imported.

    Examples:
        - Invalid JSON
        - Missing 'categories' or 'totalCapital'
        - Malformed lot, asset or transaction entries
    """

    pass
