"""RepoSync - incremental conversion of legacy repository content into a relational schema and search index."""

from reposync.config import ConvertConfig
from reposync.errors import (
    ConcurrentRunError,
    ConversionError,
    FatalConfigurationError,
    MalformedMetadataError,
    OversizedRecordError,
    TransientBackendError,
    UnknownUnitReference,
)

__version__ = "0.1.0"

__all__ = [
    "ConvertConfig",
    "ConversionError",
    "ConcurrentRunError",
    "FatalConfigurationError",
    "MalformedMetadataError",
    "OversizedRecordError",
    "TransientBackendError",
    "UnknownUnitReference",
]
