"""Bloom filters and scalable Bloom filters with dict serialization."""
from bloomer.bloom import BloomFilter, ScalableBloomFilter, from_dict, make_hashfuncs
from bloomer.exceptions import (BloomerError, InvalidConfiguration,
                                MalformedSerializedRecord, UnknownSerializedType)

__all__ = [
    'BloomFilter',
    'ScalableBloomFilter',
    'from_dict',
    'make_hashfuncs',
    'BloomerError',
    'InvalidConfiguration',
    'MalformedSerializedRecord',
    'UnknownSerializedType',
]
