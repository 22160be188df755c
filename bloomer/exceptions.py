"""Exceptions raised by bloomer.

All of them derive from ``ValueError`` so callers that already guard filter
construction or loading with ``except ValueError`` keep working.
"""


class BloomerError(ValueError):
    """Base class for every error raised by this package."""


class InvalidConfiguration(BloomerError):
    """A filter was constructed with a non-positive capacity or an error
    rate outside of (0, 1)."""


class UnknownSerializedType(BloomerError):
    """A serialized record carries a ``type`` tag no filter class claims."""

    def __init__(self, type_tag):
        super().__init__("unknown bloomer type %r" % (type_tag,))
        self.type = type_tag


class MalformedSerializedRecord(BloomerError):
    """A serialized record is missing fields or its sizes disagree."""
