"""Bloom Filter and Scalable Bloom Filter implementations.

This module implements two probabilistic data structures for space-efficient
set membership testing:

1. BloomFilter: Fixed-capacity filter for known dataset sizes
2. ScalableBloomFilter: Chain of BloomFilters that grows as stages saturate

Both answer "definitely not present" or "possibly present" and never produce
false negatives. Each filter serializes to a plain dict (see ``to_dict`` and
``from_dict``) that survives JSON or YAML transport byte for byte.

Mathematical Foundation:
    - Bit count: m = ceil(-n × ln(P) / (ln(2)²)) where n is capacity
    - Hash count: k = round(ln(2) × m / n)
    - False positive probability: P ≈ (1 - e^(-kn/m))^k

Requirements:
    - bitarray: Efficient bit array storage
    - xxhash: Fast non-cryptographic hashing
"""
import hashlib
import logging
import math
import numbers
from collections.abc import Mapping
from io import BytesIO
from struct import calcsize, pack, unpack

import xxhash

try:
    import bitarray
except ImportError:
    raise ImportError('bloomer requires bitarray >= 2.0.0')

from bloomer.exceptions import (InvalidConfiguration, MalformedSerializedRecord,
                                UnknownSerializedType)

logger = logging.getLogger(__name__)

# Single-byte text encoding used for the bit array inside serialized records.
BIT_ENCODING = 'iso-8859-1'


def make_hashfuncs(num_hashes, num_bits):
    """Create the index generator for a Bloom filter.

    Indices are derived by triple hashing: a single wide digest of the key is
    split into three seeds ``x``, ``y`` and ``z`` by successive modulo and
    division against ``num_bits``. ``x`` is the first index; every further
    index comes from the recurrence ``x = (x + y) % m``, ``y = (y + z) % m``.
    One digest therefore yields all ``num_hashes`` positions.

    Hash Function Selection Strategy:
        The digest has to carry three seeds of ``num_bits.bit_length()`` bits
        each.
        - xxHash (xxh128): up to 128 bits of seed material (typical filters)
        - SHA-256: 129-256 bits
        - SHA-512: more than 256 bits

    Args:
        num_hashes (int): Number of indices to produce per key (k).
        num_bits (int): Size of the bit array (m); indices fall in [0, m).

    Returns:
        tuple: A 2-tuple containing:
            - hash_maker (callable): Generator function yielding indices
            - hashfn (callable): The underlying digest constructor
    """
    seed_bits = 3 * num_bits.bit_length()
    if seed_bits > 256:
        hashfn = hashlib.sha512
    elif seed_bits > 128:
        hashfn = hashlib.sha256
    else:
        hashfn = xxhash.xxh128

    def _hash_maker(key):
        # Canonical byte form: text as UTF-8, everything else via str()
        if isinstance(key, str):
            key = key.encode('utf-8')
        elif not isinstance(key, bytes):
            key = str(key).encode('utf-8')

        h = int.from_bytes(hashfn(key).digest(), 'big')
        x = h % num_bits
        h //= num_bits
        y = h % num_bits
        h //= num_bits
        z = h % num_bits

        yield x
        for _ in range(num_hashes - 1):
            x = (x + y) % num_bits
            y = (y + z) % num_bits
            yield x

    return _hash_maker, hashfn


def _round_half_up(value):
    return int(math.floor(value + 0.5))


def _validate_error_rate(error_rate):
    if isinstance(error_rate, bool) or not isinstance(error_rate, numbers.Real) \
            or not (0 < error_rate < 1):
        raise InvalidConfiguration("Error_Rate must be between 0 and 1.")


def _validate_capacity(capacity):
    if isinstance(capacity, bool) or not isinstance(capacity, numbers.Real) \
            or not capacity > 0 or math.isinf(capacity):
        raise InvalidConfiguration("Capacity must be > 0")
    capacity = _round_half_up(capacity)
    if capacity < 1:
        raise InvalidConfiguration("Capacity must be > 0")
    return capacity


def _bits_from_bytes(raw, num_bits):
    bits = bitarray.bitarray(endian='little')
    bits.frombytes(raw)
    del bits[num_bits:]
    return bits


class BloomFilter:
    """A fixed-capacity Bloom filter.

    Class Attributes:
        RECORD_TYPE (str): ``type`` tag of the dict produced by ``to_dict``
        FILE_FMT (bytes): Binary header format used by ``tofile``
    """
    RECORD_TYPE = 'Bloomer'
    FILE_FMT = b'<QQQQ'

    def __init__(self, capacity, error_rate=0.001):
        """Initialize a Bloom filter with specified capacity and error rate.

        Mathematical Formulas Used:
            - Total bits: m = ceil(-n × ln(P) / (ln(2))²)
            - Number of hash functions: k = round(ln(2) × m / n), at least 1

        Where:
            - n = capacity, rounded to the nearest integer
            - P = error_rate (false positive probability)

        Args:
            capacity (int): Number of unique elements the filter should hold
                while maintaining the specified error rate. Must be > 0.
            error_rate (float, optional): Target false positive probability.
                Must be between 0 and 1 (exclusive). Default is 0.001 (0.1%).

        Raises:
            InvalidConfiguration: If error_rate is not in range (0, 1) or
                capacity is not positive.

        Example:
            >>> bf = BloomFilter(capacity=1000, error_rate=0.01)
            >>> bf.add("test")
            True
            >>> "test" in bf
            True
        """
        _validate_error_rate(error_rate)
        capacity = _validate_capacity(capacity)

        num_bits = int(math.ceil(-capacity * math.log(error_rate) / (math.log(2) ** 2)))
        num_hashes = max(1, _round_half_up(math.log(2) * num_bits / capacity))

        self._setup(capacity, num_hashes, num_bits, 0)
        self.bitarray = bitarray.bitarray(self.num_bits, endian='little')
        self.bitarray.setall(False)

    def _setup(self, capacity, num_hashes, num_bits, count):
        """Configure filter parameters; shared by construction and restore paths."""
        self.capacity = capacity
        self.num_hashes = num_hashes
        self.num_bits = num_bits
        self.count = count
        self.make_hashes, self.hashfn = make_hashfuncs(self.num_hashes, self.num_bits)

    def __contains__(self, key):
        """Test whether an element is in the Bloom filter.

        Returns:
            bool: True if the element might be in the set (with possible false
                positives), False if the element is definitely not in the set.
        """
        bitarray = self.bitarray
        for k in self.make_hashes(key):
            if not bitarray[k]:
                return False  # Definitely not in set
        return True

    def __len__(self):
        return self.count

    def add(self, key):
        """Add an element to the Bloom filter.

        Every targeted bit is read and then set. If all of them were already
        set the element is taken to be a repeat: ``count`` is left alone and
        False is returned. A false positive therefore makes ``count``
        under-report the number of unique additions.

        Adding past ``capacity`` is allowed; the false positive rate simply
        degrades from that point on.

        Args:
            key: The element to add (str, bytes, or any object with __str__)

        Returns:
            bool: True if the element is new to the filter, False if it was
                (probably) added before.

        Example:
            >>> bf = BloomFilter(100, 0.01)
            >>> bf.add("apple")
            True
            >>> bf.add("apple")
            False
        """
        bitarray = self.bitarray
        already_set = 0
        for k in self.make_hashes(key):
            if bitarray[k]:
                already_set += 1
            bitarray[k] = True

        if already_set == self.num_hashes:
            return False
        self.count += 1
        return True

    @property
    def false_positive_rate(self):
        """Expected false positive probability at the current fill level."""
        fill = -self.num_hashes * self.count / self.num_bits
        return (1.0 - math.exp(fill)) ** self.num_hashes

    def copy(self):
        """Return an independent copy of this filter."""
        new_filter = self.__class__.__new__(self.__class__)
        new_filter._setup(self.capacity, self.num_hashes, self.num_bits, self.count)
        new_filter.bitarray = self.bitarray.copy()
        return new_filter

    def _check_compatible(self, other, operation):
        if not isinstance(other, BloomFilter) or \
                self.num_bits != other.num_bits or \
                self.num_hashes != other.num_hashes:
            raise ValueError(
                "%s filters requires both filters to have the same bit count "
                "and number of hashes" % operation)

    def union(self, other):
        """Calculate the union of two Bloom filters.

        The result holds every element of either filter. Its ``count`` is the
        larger of the two counts since overlaps cannot be measured.

        Raises:
            ValueError: If the filters differ in bit count or hash count
        """
        self._check_compatible(other, "Unioning")
        new_bloom = self.copy()
        new_bloom.bitarray = new_bloom.bitarray | other.bitarray
        new_bloom.count = max(self.count, other.count)
        return new_bloom

    def __or__(self, other):
        return self.union(other)

    def intersection(self, other):
        """Calculate the intersection of two Bloom filters.

        Due to false positives, the intersection may report elements that
        were not in both original sets. ``count`` is the smaller of the two.

        Raises:
            ValueError: If the filters differ in bit count or hash count
        """
        self._check_compatible(other, "Intersecting")
        new_bloom = self.copy()
        new_bloom.bitarray = new_bloom.bitarray & other.bitarray
        new_bloom.count = min(self.count, other.count)
        return new_bloom

    def __and__(self, other):
        return self.intersection(other)

    def to_dict(self):
        """Serialize the filter to a dict that can be represented as JSON or YAML.

        The raw bit array bytes are stored in ``ba_field`` as an ISO-8859-1
        string, one character per byte, so UTF-8 transports carry it without
        loss.

        Returns:
            dict: ``{"type": "Bloomer", "capacity", "count", "k", "ba_size",
                "ba_field"}``
        """
        return {
            'type': self.RECORD_TYPE,
            'capacity': self.capacity,
            'count': self.count,
            'k': self.num_hashes,
            'ba_size': self.num_bits,
            'ba_field': self.bitarray.tobytes().decode(BIT_ENCODING),
        }

    @classmethod
    def from_dict(cls, data):
        """Deserialize a filter produced by ``to_dict``.

        Raises:
            UnknownSerializedType: If the record's ``type`` is not recognized
            MalformedSerializedRecord: If the record is not a BloomFilter
                record or its fields are missing or inconsistent
        """
        return _load_as(cls, data)

    @classmethod
    def _from_record(cls, data):
        capacity = _int_field(data, 'capacity', 1)
        count = _int_field(data, 'count', 0)
        num_hashes = _int_field(data, 'k', 1)
        num_bits = _int_field(data, 'ba_size', 1)

        field = _field(data, 'ba_field')
        if not isinstance(field, str):
            raise MalformedSerializedRecord(
                "Field 'ba_field' must be a string, got %s" % type(field).__name__)
        try:
            raw = field.encode(BIT_ENCODING)
        except UnicodeEncodeError:
            raise MalformedSerializedRecord(
                "Field 'ba_field' holds characters outside of %s" % BIT_ENCODING) from None
        expected = (num_bits + 7) // 8
        if len(raw) != expected:
            raise MalformedSerializedRecord(
                "Field 'ba_field' holds %d bytes but ba_size %d needs %d"
                % (len(raw), num_bits, expected))

        # Stored k and bit count are authoritative; nothing is re-derived.
        filter = cls.__new__(cls)
        filter._setup(capacity, num_hashes, num_bits, count)
        filter.bitarray = _bits_from_bytes(raw, num_bits)
        return filter

    def tofile(self, f):
        """Serialize the Bloom filter to a binary file.

        File Format:
            - Header (32 bytes): capacity, count, num_hashes, num_bits
              (packed as '<QQQQ')
            - Body: Raw bit array data

        Args:
            f: File-like object opened in binary write mode ('wb'). Can be a
                regular file or BytesIO.
        """
        f.write(pack(self.FILE_FMT, self.capacity, self.count,
                     self.num_hashes, self.num_bits))
        if isinstance(f, BytesIO):
            f.write(self.bitarray.tobytes())
        else:
            self.bitarray.tofile(f)

    @classmethod
    def fromfile(cls, f, n=-1):
        """Deserialize a Bloom filter written by ``tofile``.

        Args:
            f: File-like object opened in binary read mode ('rb').
            n (int, optional): Number of bytes making up the filter. If n <= 0
                (default), reads to the end of the stream.

        Raises:
            ValueError: If n is too small (< header size)
            MalformedSerializedRecord: If the header is truncated or invalid,
                or the bit array length doesn't match the header
        """
        headerlen = calcsize(cls.FILE_FMT)
        if 0 < n < headerlen:
            raise ValueError('n too small!')

        header = f.read(headerlen)
        if len(header) != headerlen:
            raise MalformedSerializedRecord('Truncated filter header')
        capacity, count, num_hashes, num_bits = unpack(cls.FILE_FMT, header)
        if not (capacity and num_hashes and num_bits):
            raise MalformedSerializedRecord(
                'Invalid filter header: capacity=%d, k=%d, bits=%d'
                % (capacity, num_hashes, num_bits))

        raw = f.read(n - headerlen) if n > 0 else f.read()
        if len(raw) != (num_bits + 7) // 8:
            raise MalformedSerializedRecord('Bit length mismatch!')

        filter = cls.__new__(cls)
        filter._setup(capacity, num_hashes, num_bits, count)
        filter.bitarray = _bits_from_bytes(raw, num_bits)
        return filter

    def __getstate__(self):
        d = self.__dict__.copy()
        # Closures can't be pickled; rebuilt in __setstate__
        del d['make_hashes']
        del d['hashfn']
        return d

    def __setstate__(self, d):
        self.__dict__.update(d)
        self.make_hashes, self.hashfn = make_hashfuncs(self.num_hashes, self.num_bits)

    def __repr__(self):
        return '<%s capacity=%d count=%d k=%d bits=%d>' % (
            self.__class__.__name__, self.capacity, self.count,
            self.num_hashes, self.num_bits)


class ScalableBloomFilter:
    """A Bloom filter that automatically scales as more elements are added.

    This implementation follows the algorithm described in:
    "Scalable Bloom Filters" by Almeida et al., Information Processing
    Letters 101.6 (2007).

    Elements always go to the newest internal filter. Once that filter has
    recorded more unique elements than its capacity, a new one is appended
    with:
    - SCALE times the capacity of the previous one
    - an error budget of ``error_rate × RATIO^n``, n being the number of
      filters already in the chain

    Queries consult every internal filter.

    Class Attributes:
        SCALE (int): Capacity growth factor between stages
        RATIO (float): Tightening ratio for stage error budgets, (ln 2)²
        RECORD_TYPE (str): ``type`` tag of the dict produced by ``to_dict``
        FILE_FMT (bytes): Binary header format used by ``tofile``
    """
    SCALE = 2
    RATIO = math.log(2) ** 2
    RECORD_TYPE = 'Scalable'
    FILE_FMT = b'<d'

    def __init__(self, initial_capacity=256, error_rate=0.001):
        """Initialize a Scalable Bloom Filter.

        Args:
            initial_capacity (int, optional): Capacity of the first internal
                filter. Default is 256.
            error_rate (float, optional): Target overall false positive
                probability, in (0, 1). Default is 0.001 (0.1%).

        Raises:
            InvalidConfiguration: If error_rate is not in (0, 1) or
                initial_capacity is not positive.

        Example:
            >>> sbf = ScalableBloomFilter(initial_capacity=4)
            >>> for i in range(10):
            ...     _ = sbf.add(i)
            >>> len(sbf.filters) > 1
            True
        """
        _validate_error_rate(error_rate)
        self.error_rate = error_rate
        self.filters = [BloomFilter(initial_capacity, error_rate * self.RATIO)]

    def __contains__(self, key):
        # Newest filters first; any hit is enough
        for f in reversed(self.filters):
            if key in f:
                return True
        return False

    def add(self, key):
        """Add an element to the newest internal filter.

        If the element was new and the newest filter is now saturated, a
        larger filter with a tighter error budget is appended.

        Returns:
            bool: True if the element is new, False if it was (probably)
                added before to the newest filter.
        """
        last = self.filters[-1]
        added = last.add(key)
        if added and last.count > last.capacity:
            capacity = last.capacity * self.SCALE
            error_rate = self.error_rate * (self.RATIO ** len(self.filters))
            logger.debug("Filter %d saturated at %d elements; adding filter "
                         "with capacity %d and error rate %g",
                         len(self.filters) - 1, last.count, capacity, error_rate)
            self.filters.append(BloomFilter(capacity, error_rate))
        return added

    @property
    def capacity(self):
        """Capacity of the newest internal filter.

        This is not the sum across filters: it reflects only the sizing of
        the stage currently receiving additions.
        """
        return self.filters[-1].capacity

    @property
    def count(self):
        """Total number of unique elements recorded across all filters."""
        return sum(f.count for f in self.filters)

    def __len__(self):
        return self.count

    @property
    def false_positive_rate(self):
        """Expected false positive probability of a query across the chain."""
        miss = 1.0
        for f in self.filters:
            miss *= 1.0 - f.false_positive_rate
        return 1.0 - miss

    def copy(self):
        new_filter = self.__class__.__new__(self.__class__)
        new_filter.error_rate = self.error_rate
        new_filter.filters = [f.copy() for f in self.filters]
        return new_filter

    def union(self, other):
        """Calculate the union of two Scalable Bloom filters.

        Corresponding internal filters are unioned; the extra filters of the
        longer chain are carried over as copies.

        Raises:
            ValueError: If the error rates differ or corresponding internal
                filters are incompatible
        """
        if not isinstance(other, ScalableBloomFilter) or self.error_rate != other.error_rate:
            raise ValueError("Unioning two scalable bloom filters requires "
                             "both filters to have the same error rate")

        if len(self.filters) >= len(other.filters):
            larger_sbf, smaller_sbf = self, other
        else:
            larger_sbf, smaller_sbf = other, self

        new_filters = [larger.union(smaller) for larger, smaller
                       in zip(larger_sbf.filters, smaller_sbf.filters)]
        for f in larger_sbf.filters[len(smaller_sbf.filters):]:
            new_filters.append(f.copy())

        new_sbf = larger_sbf.copy()
        new_sbf.filters = new_filters
        return new_sbf

    def __or__(self, other):
        return self.union(other)

    def to_dict(self):
        """Serialize the filter to a dict that can be represented as JSON or YAML."""
        return {
            'type': self.RECORD_TYPE,
            'false_positive_probability': self.error_rate,
            'bloomers': [f.to_dict() for f in self.filters],
        }

    @classmethod
    def from_dict(cls, data):
        """Deserialize a filter produced by ``to_dict``."""
        return _load_as(cls, data)

    @classmethod
    def _from_record(cls, data):
        error_rate = _field(data, 'false_positive_probability')
        if isinstance(error_rate, bool) or not isinstance(error_rate, numbers.Real) \
                or not (0 < error_rate < 1):
            raise MalformedSerializedRecord(
                "Field 'false_positive_probability' must be between 0 and 1, got %r"
                % (error_rate,))
        records = _field(data, 'bloomers')
        if not isinstance(records, (list, tuple)) or not records:
            raise MalformedSerializedRecord("Field 'bloomers' must be a non-empty list")

        filter = cls.__new__(cls)
        filter.error_rate = error_rate
        filter.filters = [from_dict(record) for record in records]
        return filter

    def tofile(self, f):
        """Serialize this Scalable Bloom Filter to a binary file.

        File Format:
            1. Header: error_rate (8 bytes)
            2. Number of internal filters (4 bytes)
            3. Size table: size of each internal filter in bytes
            4. Internal filter data: each filter serialized sequentially

        Args:
            f: Seekable file-like object opened in binary write mode ('wb')
        """
        for filter in self.filters:
            if not isinstance(filter, BloomFilter):
                raise TypeError("Binary form only holds BloomFilter stages, got %s"
                                % type(filter).__name__)

        f.write(pack(self.FILE_FMT, self.error_rate))
        f.write(pack(b'<l', len(self.filters)))

        headerpos = f.tell()
        headerfmt = b'<' + b'Q' * len(self.filters)
        # Reserve space for size table
        f.write(b'.' * calcsize(headerfmt))

        filter_sizes = []
        for filter in self.filters:
            begin = f.tell()
            filter.tofile(f)
            filter_sizes.append(f.tell() - begin)

        end = f.tell()
        f.seek(headerpos)
        f.write(pack(headerfmt, *filter_sizes))
        f.seek(end)

    @classmethod
    def fromfile(cls, f):
        """Deserialize a Scalable Bloom Filter written by ``tofile``.

        Raises:
            MalformedSerializedRecord: If the header is truncated or invalid
        """
        headerlen = calcsize(cls.FILE_FMT) + calcsize(b'<l')
        header = f.read(headerlen)
        if len(header) != headerlen:
            raise MalformedSerializedRecord('Truncated scalable filter header')
        error_rate, = unpack(cls.FILE_FMT, header[:calcsize(cls.FILE_FMT)])
        nfilters, = unpack(b'<l', header[calcsize(cls.FILE_FMT):])
        if not (0 < error_rate < 1) or nfilters < 1:
            raise MalformedSerializedRecord(
                'Invalid scalable filter header: error_rate=%r, filters=%d'
                % (error_rate, nfilters))

        header_fmt = b'<' + b'Q' * nfilters
        size_table = f.read(calcsize(header_fmt))
        if len(size_table) != calcsize(header_fmt):
            raise MalformedSerializedRecord('Truncated filter size table')
        filter_lengths = unpack(header_fmt, size_table)

        filter = cls.__new__(cls)
        filter.error_rate = error_rate
        filter.filters = [BloomFilter.fromfile(f, fl) for fl in filter_lengths]
        return filter

    def __repr__(self):
        return '<%s error_rate=%g filters=%d count=%d>' % (
            self.__class__.__name__, self.error_rate, len(self.filters), self.count)


_RECORD_TYPES = {
    BloomFilter.RECORD_TYPE: BloomFilter,
    ScalableBloomFilter.RECORD_TYPE: ScalableBloomFilter,
}


def _normalize_record(data):
    """Return a copy of ``data`` whose keys are all ``str``.

    Decoders differ in whether they hand back text or bytes keys (and tag
    values); both spellings are folded into text here, once, before any
    field is read.
    """
    if not isinstance(data, Mapping):
        raise MalformedSerializedRecord(
            "Expected a mapping, got %s" % type(data).__name__)
    try:
        record = {}
        for key, value in data.items():
            if isinstance(key, bytes):
                key = key.decode('utf-8')
            record[str(key)] = value
        if isinstance(record.get('type'), bytes):
            record['type'] = record['type'].decode('utf-8')
    except UnicodeDecodeError as exc:
        raise MalformedSerializedRecord("Undecodable key in record: %s" % exc) from None
    return record


def _field(data, name):
    try:
        return data[name]
    except KeyError:
        raise MalformedSerializedRecord(
            "Missing field %r in %s record" % (name, data.get('type'))) from None


def _int_field(data, name, minimum):
    value = _field(data, name)
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise MalformedSerializedRecord(
            "Field %r must be an integer >= %d, got %r" % (name, minimum, value))
    return value


def from_dict(data):
    """Deserialize a filter from a dict produced by ``to_dict``.

    Dispatches on the record's ``type``: ``"Bloomer"`` builds a BloomFilter,
    ``"Scalable"`` a ScalableBloomFilter (whose nested records are loaded
    through this same function).

    Args:
        data (Mapping): The serialized record, with text or bytes keys.

    Returns:
        BloomFilter or ScalableBloomFilter

    Raises:
        UnknownSerializedType: If ``type`` names no known filter
        MalformedSerializedRecord: If fields are missing or inconsistent

    Example:
        >>> bf = BloomFilter(100)
        >>> bf.add("apple")
        True
        >>> "apple" in from_dict(bf.to_dict())
        True
    """
    record = _normalize_record(data)
    type_tag = record.get('type')
    try:
        cls = _RECORD_TYPES[type_tag]
    except (KeyError, TypeError):
        raise UnknownSerializedType(type_tag) from None
    logger.debug("Loading %s record", type_tag)
    return cls._from_record(record)


def _load_as(cls, data):
    filter = from_dict(data)
    if not isinstance(filter, cls):
        raise MalformedSerializedRecord(
            "Expected a %r record, got %r" % (cls.RECORD_TYPE, filter.RECORD_TYPE))
    return filter


if __name__ == "__main__":
    import doctest

    doctest.testmod()
