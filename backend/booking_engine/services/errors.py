class SchedulingError(ValueError):
    """Base class for user-visible scheduling errors."""

    code = "VALIDATION"


class SchedulingValidationError(SchedulingError):
    code = "VALIDATION"


class SlotUnavailableError(SchedulingError):
    code = "UNAVAILABLE"


class SchedulingNotFoundError(SchedulingError):
    code = "NOT_FOUND"


class SchedulingPermissionError(SchedulingError):
    code = "FORBIDDEN"


class PaymentError(SchedulingError):
    code = "PAYMENT_ERROR"


class StateConflictError(SchedulingError):
    code = "STATE_CONFLICT"


class PolicyMissingError(SchedulingError):
    code = "POLICY_MISSING"
