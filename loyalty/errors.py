# loyalty/errors.py


class LoyaltyError(Exception):
    """Base class for every error raised by the loyalty core."""


class ValidationError(LoyaltyError):
    pass


class InvalidOrderNumber(ValidationError):
    def __init__(self, number: str):
        super().__init__(f"Invalid order number: {number!r}")
        self.number = number


class InvalidAmount(ValidationError):
    pass


class ConflictError(LoyaltyError):
    pass


class OrderConflict(ConflictError):
    def __init__(self, number: str):
        super().__init__(f"Order {number} was uploaded by another user")
        self.number = number


class InsufficientFunds(LoyaltyError):
    pass


class DuplicateWithdrawal(LoyaltyError):
    def __init__(self, number: str):
        super().__init__(f"Withdrawal for order {number} already exists")
        self.number = number


class StorageError(LoyaltyError):
    pass


# Accrual system outcomes. The poller recovers from all of these on the next cycle.

class OracleError(LoyaltyError):
    pass


class OracleNotYetAvailable(OracleError):
    pass


class OracleRateLimited(OracleError):
    def __init__(self, retry_after: float):
        super().__init__(f"Accrual system asked to retry after {retry_after}s")
        self.retry_after = retry_after


class OracleUnavailable(OracleError):
    pass
