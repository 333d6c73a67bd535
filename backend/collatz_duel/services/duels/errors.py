class DuelError(Exception):
    """Base exception for duel domain failures."""
    pass


class InputError(DuelError):
    """Raised when a submitted answer is not a whole number."""
    def __init__(self, message, raw=None):
        super().__init__(message)
        self.raw = raw


class PreconditionViolation(DuelError):
    """Raised when a lifecycle transition's precondition does not hold."""
    def __init__(self, message, code=None):
        super().__init__(message)
        self.code = code


class NumericNonConvergence(DuelError):
    """Raised when the volatility solver exhausts its iteration cap."""
    def __init__(self, message, iterations=None):
        super().__init__(message)
        self.iterations = iterations


class StoreUnavailable(DuelError):
    """Raised when the shared-state store cannot serve a read, write or subscription."""
    pass
