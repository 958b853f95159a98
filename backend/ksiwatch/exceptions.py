"""
Custom exceptions for KSIWatch.

Failures local to one control or one check are recorded as data (a status)
and never cross the run boundary. Structural failures (bad configuration,
store unavailable, internal consistency violation) abort the whole run.
"""

from typing import Optional


class KSIWatchError(Exception):
    """
    Base exception for all KSIWatch errors.

    Example:
        >>> try:
        ...     engine.run()
        ... except KSIWatchError as e:
        ...     logger.error("Validation run failed: %s", e)
    """

    pass


class ConfigurationError(KSIWatchError):
    """
    Raised when the control model or check registry is malformed.

    Fatal at startup:
    - Duplicate control ids in the model source
    - Duplicate check ids in the registry
    - Unknown status values or check methods
    """

    pass


class DuplicateCheck(ConfigurationError):
    """Raised when a check id is registered twice."""

    def __init__(self, check_id: str):
        self.check_id = check_id
        super().__init__(f"Check already registered: {check_id}")


class UnknownControl(KSIWatchError):
    """Raised when a control id is not present in the system model."""

    def __init__(self, control_id: str, message: Optional[str] = None):
        self.control_id = control_id
        super().__init__(message or f"Unknown control: {control_id}")


class UnknownEvidence(KSIWatchError):
    """Raised when an evidence id is not present in the evidence store."""

    def __init__(self, evidence_id: str, message: Optional[str] = None):
        self.evidence_id = evidence_id
        super().__init__(message or f"Unknown evidence: {evidence_id}")


class StorageError(KSIWatchError):
    """
    Raised when the evidence or history store cannot persist or read data.

    Raised only after the bounded retry policy is exhausted. Writes that
    fail leave no partial rows behind.
    """

    pass


class IntegrityError(StorageError):
    """Raised when a payload does not match its declared content hash."""

    pass


class CheckExecutionError(KSIWatchError):
    """
    Wraps an unexpected failure raised inside a check.

    Never propagated out of the executor: the failure is downgraded to an
    ``unknown`` result carrying this error's message.
    """

    def __init__(self, check_id: str, control_id: str, cause: BaseException):
        self.check_id = check_id
        self.control_id = control_id
        self.cause = cause
        super().__init__(f"Check {check_id} failed on {control_id}: {type(cause).__name__}: {cause}")


class InconsistentState(KSIWatchError):
    """
    Raised when persisted or projected state violates an internal invariant.

    Fatal to the current projector call only; prior snapshots are untouched.
    """

    pass


class RunCancelled(KSIWatchError):
    """Raised when a validation run is cancelled before its commit."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Validation run {run_id} was cancelled before commit")


class RunFailed(KSIWatchError):
    """Raised when a structural failure aborts a whole validation run."""

    def __init__(self, run_id: str, cause: BaseException):
        self.run_id = run_id
        self.cause = cause
        super().__init__(f"Validation run {run_id} failed: {cause}")
