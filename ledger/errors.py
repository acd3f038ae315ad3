from typing import Optional


class LedgerServiceError(Exception):
    code = "ledger_error"


class InvalidAmountError(LedgerServiceError):
    code = "invalid_amount"


class InsufficientBalanceError(LedgerServiceError):
    code = "insufficient_balance"

    def __init__(self, available: int, requested: int, message: Optional[str] = None):
        self.available = available
        self.requested = requested
        super().__init__(
            message
            or f"Insufficient balance: you have {available} coins available, but requested {requested}"
        )


class InvalidStateTransitionError(LedgerServiceError):
    code = "invalid_state"


class NotAuthorizedError(LedgerServiceError):
    code = "not_authorized"


class UserBlockedError(LedgerServiceError):
    code = "user_blocked"


class UniversityNotEligibleError(LedgerServiceError):
    code = "university_not_eligible"


class DiscountInactiveError(LedgerServiceError):
    code = "discount_inactive"


class InvalidPayoutDetailsError(LedgerServiceError):
    code = "invalid_payout_details"


class InvalidReasonError(LedgerServiceError):
    code = "invalid_reason"


class InvalidStatsPeriodError(LedgerServiceError):
    code = "invalid_period"


class InvariantViolationError(LedgerServiceError):
    """Raised when a unit of work could not be rolled back cleanly.

    Partial ledger state is never recoverable by retrying; the caller should
    page someone instead.
    """

    code = "invariant_violation"


class NotFoundError(LedgerServiceError):
    code = "not_found"


class UniversityNotFoundError(NotFoundError):
    pass


class DiscountNotFoundError(NotFoundError):
    code = "discount_not_found"


class RedemptionNotFoundError(NotFoundError):
    pass


class PayoutRequestNotFoundError(NotFoundError):
    pass
