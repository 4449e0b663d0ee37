"""
Failure taxonomy for the conversion pipeline.

Transient errors (resolution, start failures, crashes) are retried with
backoff by the pipeline manager; the rest surface immediately.
"""

from typing import Optional

from models import ErrorInfo, ErrorKind


class PipelineError(Exception):
    """Base class for every error the pipeline records on a channel."""

    kind: ErrorKind = ErrorKind.PROCESS_CRASH
    retryable: bool = True

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(kind=self.kind, message=str(self) or self.__class__.__name__)


class InvalidRequest(PipelineError):
    kind = ErrorKind.INVALID_REQUEST
    retryable = False


class ResolutionError(PipelineError):
    kind = ErrorKind.RESOLUTION_FAILURE


class SourceNotFound(ResolutionError):
    """The source reference is invalid or currently has nothing to play."""


class ResolutionTimeout(ResolutionError):
    pass


class ResolverUnavailable(ResolutionError):
    """The resolver tool is missing or crashed."""


class ProcessStartFailure(PipelineError):
    kind = ErrorKind.PROCESS_START_FAILURE


class ProcessCrash(PipelineError):
    kind = ErrorKind.PROCESS_CRASH

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class StoreFailure(PipelineError):
    kind = ErrorKind.STORE_FAILURE
    retryable = False
