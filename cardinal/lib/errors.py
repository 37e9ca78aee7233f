"""Exceptions raised by the HyperLogLog sketch."""


class HyperLogLogError(Exception):
    """Base class for all sketch errors."""


class InvalidArgumentError(HyperLogLogError, ValueError):
    """Raised for a bad construction parameter (error rate, precision, seed)."""


class IncompatibleMergeError(HyperLogLogError, ValueError):
    """Raised when two sketches with different precision or seed are combined."""


class CorruptDataError(HyperLogLogError, ValueError):
    """Raised when serialized sketch data is malformed or out of range."""
