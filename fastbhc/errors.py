"""Exception types raised by fastbhc."""


class FastBHCError(Exception):
    """Base class for all fastbhc errors."""
    pass


class InputValidationError(FastBHCError, ValueError):
    """Raised when an allele matrix or its tables are malformed."""
    pass


class HierarchyStructureError(FastBHCError, ValueError):
    """Raised when a hierarchy is unrooted, not strictly binary, or its labels do not match the data."""
    pass


class ConfigurationError(FastBHCError, ValueError):
    """Raised for invalid parameter values."""
    pass


class NumericalError(FastBHCError, ArithmeticError):
    """Raised when a likelihood evaluates to a non-finite value."""
    pass
