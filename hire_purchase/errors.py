"""Engine exception taxonomy"""


class EngineError(Exception):
    """Base exception for the orchestration engine"""

    pass


class EntityNotFoundError(EngineError):
    """Contract, installment, attempt or mandate does not exist"""

    pass


class InvalidStateError(EngineError):
    """Operation not valid given the entity's current state"""

    pass


class AlreadyPaidError(InvalidStateError):
    """Installment already carries a paid amount and cannot be amended"""

    pass


class PaymentsExistError(EngineError):
    """Reschedule blocked because payments have been applied"""

    pass


class AmountMismatchError(EngineError):
    """Payment amount exceeds the distributable balance"""

    pass


class UnsupportedNetworkError(EngineError):
    """Mobile network not supported for the requested capability"""

    pass


class MandateNotUsableError(EngineError):
    """Mandate is not APPROVED or has expired"""

    pass


class RetryExhaustedError(EngineError):
    """Attempt has already used every retry the policy allows"""

    pass


class AlreadyTerminalError(EngineError):
    """Entity is in a terminal state and cannot transition"""

    pass


class ConcurrentModificationError(EngineError):
    """Record changed since it was read; the write was rejected"""

    pass


class GatewayError(EngineError):
    """Payment gateway rejected a request"""

    pass


class GatewayUnavailableError(GatewayError):
    """Payment gateway unreachable or returned a server error (transient)"""

    pass
