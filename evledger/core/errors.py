# evledger/core/errors.py
"""
Errors raised by ledger operations.
Every one is raised before any state changes, so a caught LedgerError
always means "nothing happened".
"""


class LedgerError(Exception):
    """Base for all rejected ledger operations."""
    kind = "LedgerError"


class InvalidInputError(LedgerError):
    """Empty or malformed field."""
    kind = "InvalidInput"


class AlreadyRegisteredError(LedgerError):
    kind = "AlreadyRegistered"


class VehicleNotFoundError(LedgerError):
    kind = "VehicleNotFound"


class InvalidAmountError(LedgerError):
    """Zero or negative where a positive amount is required."""
    kind = "InvalidAmount"


class InsufficientPaymentError(LedgerError):
    kind = "InsufficientPayment"


class InsufficientCreditsError(LedgerError):
    kind = "InsufficientCredits"


class UnauthorizedError(LedgerError):
    """Caller failed an ownership check."""
    kind = "Unauthorized"


class InvalidStationError(LedgerError):
    kind = "InvalidStation"


class SameVehicleError(LedgerError):
    kind = "SameVehicle"


class InvalidSessionIdError(LedgerError):
    kind = "InvalidSessionId"
