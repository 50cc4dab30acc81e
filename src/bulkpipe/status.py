from enum import Enum


class Operation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"
    DELETE = "delete"
    HARD_DELETE = "hardDelete"
    QUERY = "query"


class ConcurrencyMode(str, Enum):
    PARALLEL = "Parallel"
    SERIAL = "Serial"


class JobState(str, Enum):
    OPEN = "Open"
    CLOSED = "Closed"
    ABORTED = "Aborted"
    FAILED = "Failed"
    # Some remote implementations report a freshly created job as Queued
    # until it is provisioned.
    QUEUED = "Queued"


class BatchState(str, Enum):
    QUEUED = "Queued"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"
    NOT_PROCESSED = "Not Processed"


class MonitorState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    TERMINAL = "terminal"


JOB_TERMINAL_STATES = frozenset({JobState.CLOSED, JobState.ABORTED, JobState.FAILED})
JOB_ERROR_STATES = frozenset({JobState.ABORTED, JobState.FAILED})
BATCH_PENDING_STATES = frozenset({BatchState.QUEUED, BatchState.IN_PROGRESS})
BATCH_ERROR_STATES = frozenset({BatchState.FAILED, BatchState.NOT_PROCESSED})
