"""
Utility modules for Loyalty Core.
"""
from .logging_config import setup_logging, get_logger
from .errors import (
    ErrorCode,
    error_response,
    bad_request,
    unauthorized,
    not_found,
    internal_error,
    loyalty_error_response,
)
from .exceptions import (
    LoyaltyError,
    NotFoundError,
    ClientNotFoundError,
    CampaignNotFoundError,
    ProgramNotFoundError,
    SaleNotFoundError,
    ValidationError,
    InvalidAmountError,
    InsufficientBalanceError,
    RedemptionLimitExceededError,
    ConcurrentBalanceConflictError,
    InvalidStatusTransitionError,
    DeliveryFailedError,
    DeliveryTimeoutError,
    AuthorizationError,
    ConfigurationError,
)
