from __future__ import annotations


class DualWriteError(Exception):
    """Base class for failures raised by the dual-write subsystem."""


class BackendCallFailed(DualWriteError):
    """A call to one backend raised or timed out.

    Never raised to the caller for the authoritative side (that exception propagates as-is);
    used to describe a rejected side inside a DiffRecord and by the reconciler.
    """

    def __init__(self, backend: str, cause: BaseException) -> None:
        self.backend = backend
        self.cause = cause
        super().__init__(f"{backend}: {type(cause).__name__}: {cause}")

    def describe(self, limit: int = 500) -> str:
        return f"BackendCallFailed({self})"[:limit]


class ConfigUnavailable(DualWriteError):
    """Flag store unreachable and no cached value within the staleness bound."""


class FlagNotFound(DualWriteError):
    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"flag config not found: {key}")


class DiffComputationFailed(DualWriteError):
    """The structural comparison itself failed (not a difference between results)."""


class DiffPersistenceFailed(DualWriteError):
    """Writing a DiffRecord failed. Logged and dropped, never surfaced to callers."""
