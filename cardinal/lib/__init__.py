from .hyperloglog import HyperLogLog
from .abstractsketch import AbstractSketch, SupportsHash64
from .errors import (HyperLogLogError, InvalidArgumentError,
                     IncompatibleMergeError, CorruptDataError)
from .bias import MIN_PRECISION, MAX_PRECISION

__all__ = [
    'HyperLogLog',
    'AbstractSketch',
    'SupportsHash64',
    'HyperLogLogError',
    'InvalidArgumentError',
    'IncompatibleMergeError',
    'CorruptDataError',
    'MIN_PRECISION',
    'MAX_PRECISION'
]
