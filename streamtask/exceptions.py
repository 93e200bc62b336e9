"""StreamTask Exceptions"""


class StreamTaskError(Exception):
    """Base exception for StreamTask"""
    pass


class StorageError(StreamTaskError):
    """Append, read or write against the table store failed"""
    pass


class ConcurrentCursorConflict(StreamTaskError):
    """Lost a compare-and-set race while advancing a cursor"""
    def __init__(self, message: str, consumer: str = None, expected_version: int = None,
                 actual_version: int = None):
        super().__init__(message)
        self.consumer = consumer
        self.expected_version = expected_version
        self.actual_version = actual_version


class TransactionAbort(StreamTaskError):
    """Target-table transaction failed mid-apply; the whole batch was rolled back"""
    pass


class ConfigurationError(StreamTaskError):
    """Invalid schedule, schema, or reference to an unknown stream/task"""
    pass


# Errors the scheduler retries on its normal cadence
RECOVERABLE_ERRORS = (ConcurrentCursorConflict, TransactionAbort)
