"""Exception taxonomy for conversion runs."""

from typing import Optional


class ConversionError(Exception):
    """Base class for all conversion failures."""


class MalformedMetadataError(ConversionError):
    """Item metadata is missing a required field or cannot be parsed.

    Aborts processing of the single item; the rest of the batch continues.
    """

    def __init__(self, item_id: str, reason: str) -> None:
        self.item_id = item_id
        self.reason = reason
        super().__init__(f"{item_id}: {reason}")


class UnknownUnitReference(ConversionError):
    """A record refers to a unit that does not exist in the hierarchy."""

    def __init__(self, unit_id: str) -> None:
        self.unit_id = unit_id
        super().__init__(f"unknown unit {unit_id!r}")


class TransientBackendError(ConversionError):
    """A search or storage backend call failed in a way worth retrying."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class OversizedRecordError(ConversionError):
    """A search record cannot be brought under the configured size cap."""

    def __init__(self, record_id: str, size: int, limit: int) -> None:
        self.record_id = record_id
        self.size = size
        self.limit = limit
        super().__init__(f"record {record_id} is {size} bytes, limit is {limit}")


class FatalConfigurationError(ConversionError):
    """The run cannot proceed with the current configuration or environment."""


class ConcurrentRunError(ConversionError):
    """Another conversion run already holds the run lock."""
