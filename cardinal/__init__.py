"""
cardinal - Python Library for HyperLogLog Cardinality Estimation
"""

from cardinal.lib.hyperloglog import HyperLogLog
from cardinal.lib.abstractsketch import AbstractSketch, SupportsHash64
from cardinal.lib.errors import (HyperLogLogError, InvalidArgumentError,
                                 IncompatibleMergeError, CorruptDataError)

__version__ = '0.1.0'

__all__ = [
    'HyperLogLog',
    'AbstractSketch',
    'SupportsHash64',
    'HyperLogLogError',
    'InvalidArgumentError',
    'IncompatibleMergeError',
    'CorruptDataError'
]
