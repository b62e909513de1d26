"""Exception types raised by corpower."""


class CoRPowerError(Exception):
    """Base class for all corpower errors."""


class InputValidationError(CoRPowerError, ValueError):
    """Design parameters are malformed or outside their valid domain."""


class NumericalRootError(CoRPowerError, RuntimeError):
    """A root solver could not bracket or locate a root."""


class DegenerateReplicateError(CoRPowerError, RuntimeError):
    """A simulated replicate cannot be fitted (empty category, separation, ...)."""


class PersistenceError(CoRPowerError, OSError):
    """Reading or writing a stored result failed."""


class InvariantViolationError(CoRPowerError, RuntimeError):
    """A derived probability or risk left [0, 1]."""
