"""
Custom exceptions for Loyalty Core business logic.

These exceptions provide more specific error handling than generic Exception,
allowing for better error messages and appropriate HTTP status codes.

Outcomes such as "no active program", "no campaign matched", "frequency
capped" or an attribution tie are normal results and are never raised.
"""


class LoyaltyError(Exception):
    """Base exception for all Loyalty Core business logic errors."""

    def __init__(self, message: str, code: str = "LOYALTY_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class NotFoundError(LoyaltyError):
    """Resource not found."""

    def __init__(self, resource: str, identifier=None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with ID {identifier} not found"
        super().__init__(message, f"{resource.upper()}_NOT_FOUND")


class ClientNotFoundError(NotFoundError):
    """Client not found."""

    def __init__(self, identifier=None):
        super().__init__("Client", identifier)


class CampaignNotFoundError(NotFoundError):
    """Campaign not found."""

    def __init__(self, identifier=None):
        super().__init__("Campaign", identifier)


class ProgramNotFoundError(NotFoundError):
    """Cashback program not found."""

    def __init__(self, identifier=None):
        super().__init__("Program", identifier)


class SaleNotFoundError(NotFoundError):
    """Sale not found."""

    def __init__(self, identifier=None):
        super().__init__("Sale", identifier)


class ValidationError(LoyaltyError):
    """Invalid input data."""

    def __init__(self, message: str, field: str = None):
        self.field = field
        code = f"INVALID_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(message, code)


class InvalidAmountError(ValidationError):
    """Non-positive amount passed to a ledger operation."""

    def __init__(self, amount):
        self.amount = amount
        super().__init__(f"Amount must be positive, got {amount}", "amount")
        self.code = "INVALID_AMOUNT"


class InsufficientBalanceError(LoyaltyError):
    """Not enough balance for the operation."""

    def __init__(self, current, required, currency: str = "cashback"):
        self.current = current
        self.required = required
        message = f"Insufficient {currency}. Current: {current}, Required: {required}"
        super().__init__(message, "INSUFFICIENT_BALANCE")


class RedemptionLimitExceededError(LoyaltyError):
    """Redemption above what the program allows for this sale."""

    def __init__(self, requested, limit):
        self.requested = requested
        self.limit = limit
        message = f"Redemption limit exceeded. Limit: {limit}, Requested: {requested}"
        super().__init__(message, "REDEMPTION_LIMIT_EXCEEDED")


class ConcurrentBalanceConflictError(LoyaltyError):
    """Balance changed underneath us and retries ran out. Safe to retry."""

    def __init__(self, client_id: int, program_id: int, attempts: int = 0):
        self.client_id = client_id
        self.program_id = program_id
        self.attempts = attempts
        message = (
            f"Concurrent update on balance (client {client_id}, program {program_id}) "
            f"after {attempts} attempt(s)"
        )
        super().__init__(message, "CONCURRENT_BALANCE_CONFLICT")


class InvalidStatusTransitionError(LoyaltyError):
    """Invalid status transition for a resource."""

    def __init__(self, resource: str, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        message = f"Cannot change {resource} status from '{from_status}' to '{to_status}'"
        super().__init__(message, "INVALID_STATUS_TRANSITION")


class DeliveryFailedError(LoyaltyError):
    """Messaging transport rejected or failed a delivery."""

    def __init__(self, message: str, original_error: Exception = None):
        self.original_error = original_error
        super().__init__(message, "DELIVERY_FAILED")


class DeliveryTimeoutError(DeliveryFailedError):
    """Transport did not answer; the message may or may not have been sent."""

    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message, original_error)
        self.code = "DELIVERY_TIMEOUT"


class AuthorizationError(LoyaltyError):
    """Caller not authorized for this operation."""

    def __init__(self, message: str = "Not authorized for this operation"):
        super().__init__(message, "AUTHORIZATION_ERROR")


class ConfigurationError(LoyaltyError):
    """Application configuration error."""

    def __init__(self, message: str):
        super().__init__(message, "CONFIGURATION_ERROR")
