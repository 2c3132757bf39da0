"""
Error Taxonomy

Every error the engine surfaces derives from KodoError and carries the CLI
exit code it maps to. Errors that are handled internally (unavailable
transcripts, malformed candidates, stale index entries) are defined here too
so that call sites name them explicitly.
"""

from typing import Optional


EXIT_OK = 0
EXIT_GENERAL = 1
EXIT_USAGE = 2
EXIT_CONFIG = 3
EXIT_NOT_INITIALIZED = 4


class KodoError(Exception):
    """Base class for engine errors"""
    exit_code: int = EXIT_GENERAL


class NotInitializedError(KodoError):
    """The project store (or its index) does not exist yet"""
    exit_code = EXIT_NOT_INITIALIZED

    def __init__(self, root: str):
        self.root = root
        super().__init__(
            f"Kodo store not initialized at {root}. "
            "Run `kodo init` in the project root first."
        )


class UsageError(KodoError):
    """Invalid or missing command arguments"""
    exit_code = EXIT_USAGE


class ConfigError(KodoError):
    """Project settings file or environment override is invalid"""
    exit_code = EXIT_CONFIG


class StoreCorruptedError(KodoError):
    """A store file could not be parsed. Always fatal."""

    def __init__(self, path: str, line_no: int, reason: str):
        self.path = path
        self.line_no = line_no
        super().__init__(f"Corrupted record store file {path} (line {line_no}): {reason}")


class LockContentionError(KodoError):
    """An advisory lock could not be acquired after repeated retries"""

    def __init__(self, path: str, attempts: int):
        self.path = path
        self.attempts = attempts
        super().__init__(
            f"Record store is busy (lock: {path}, {attempts} attempts); "
            "another kodo process is writing. Retry shortly."
        )


class RecordNotFoundError(KodoError):
    """No learning or context entry with the given id"""

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Record not found: {record_id}")


class InvalidTransitionError(KodoError):
    """A curator transition is not allowed from the record's current state"""

    def __init__(self, record_id: str, action: str, state: str):
        self.record_id = record_id
        self.action = action
        self.state = state
        super().__init__(f"Cannot {action} {record_id}: record is {state}")


class TranscriptUnavailable(KodoError):
    """Transcript file is missing. Treated as "nothing new yet"."""


class MalformedCandidate(KodoError):
    """An extracted candidate failed validation. Skipped, never fatal."""

    def __init__(self, reason: str, evidence: Optional[str] = None):
        self.evidence = evidence
        super().__init__(reason)


class IndexStale(KodoError):
    """An index entry is missing or outdated. Repaired by update()."""
