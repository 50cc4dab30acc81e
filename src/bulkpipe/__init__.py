from .accumulator import BatchAccumulator as BatchAccumulator
from .accumulator import normalize_record as normalize_record
from .client import BulkClient as BulkClient
from .exceptions import AuthError as AuthError
from .exceptions import BulkPipeError as BulkPipeError
from .exceptions import ConfigError as ConfigError
from .exceptions import InvalidStateError as InvalidStateError
from .exceptions import PollingError as PollingError
from .exceptions import RemoteError as RemoteError
from .models import JobOptions as JobOptions
from .models import JobTransition as JobTransition
from .models import StatusSnapshot as StatusSnapshot
from .query import QueryResultReader as QueryResultReader
from .query import extract_object_name as extract_object_name
from .settings import BulkSettings as BulkSettings
from .settings import load_settings as load_settings
from .status import ConcurrencyMode as ConcurrencyMode
from .status import Operation as Operation

__all__ = [
    "BulkClient",
    "BatchAccumulator",
    "QueryResultReader",
    "JobOptions",
    "JobTransition",
    "StatusSnapshot",
    "BulkSettings",
    "load_settings",
    "normalize_record",
    "extract_object_name",
    "Operation",
    "ConcurrencyMode",
    "BulkPipeError",
    "ConfigError",
    "AuthError",
    "RemoteError",
    "InvalidStateError",
    "PollingError",
]
