"""Error taxonomy and failure classification.

Backends may raise the typed errors below or leak raw automation errors
(pywin32 ``com_error`` and friends). ``classify_failure`` maps either onto the
three categories the engine acts on.
"""

from __future__ import annotations

from enum import Enum


class ConversionError(Exception):
    """Base class for all conversion errors."""


class RecoverableDocumentError(ConversionError):
    """Bad content or unsupported feature; only the current file is lost."""


class OpenError(RecoverableDocumentError):
    pass


class RenderError(RecoverableDocumentError):
    pass


class WorkerCrashed(ConversionError):
    """The out-of-process worker is gone or its automation handle is invalid."""


class BackendUnavailable(ConversionError):
    """The rendering backend cannot be invoked at all on this host."""


class BackupFailed(ConversionError):
    """A backup copy could not be made, so the destructive action is refused."""


class PathTooLong(ConversionError):
    pass


class TargetExists(ConversionError):
    """A destination not resolved for overwrite exists at commit time."""


class UndoEntryFailed(ConversionError):
    pass


class Cancelled(ConversionError):
    """Cooperative cancellation observed at a safe point."""


class FailureKind(str, Enum):
    CRITICAL = "critical"
    UNAVAILABLE = "unavailable"
    RECOVERABLE = "recoverable"


RPC_S_SERVER_UNAVAILABLE = 0x800706BA
RPC_S_CALL_FAILED = 0x800706BE
RPC_E_DISCONNECTED = 0x80010108
RPC_E_CALL_REJECTED = 0x80010001
REGDB_E_CLASSNOTREG = 0x80040154

CRITICAL_HRESULTS = frozenset(
    {RPC_S_SERVER_UNAVAILABLE, RPC_S_CALL_FAILED, RPC_E_DISCONNECTED, RPC_E_CALL_REJECTED}
)
UNAVAILABLE_HRESULTS = frozenset({REGDB_E_CLASSNOTREG})

_CRITICAL_MARKERS = (
    "rpc server is unavailable",
    "remote procedure call failed",
    "call was rejected by callee",
    "has disconnected from its clients",
    "disconnected from clients",
)
_UNAVAILABLE_MARKERS = ("class not registered", "80040154")


def hresult_of(exc: BaseException) -> int | None:
    """Return the unsigned 32-bit HRESULT carried by ``exc``, if any.

    pywin32 exposes it as ``hresult`` or as the first positional argument
    (a signed int).
    """
    code = getattr(exc, "hresult", None)
    if code is None and getattr(exc, "args", None):
        first = exc.args[0]
        if isinstance(first, int) and not isinstance(first, bool):
            code = first
    if code is None:
        return None
    try:
        return int(code) & 0xFFFFFFFF
    except (TypeError, ValueError):
        return None


def classify_failure(exc: BaseException) -> FailureKind:
    """Decide whether ``exc`` kills the worker, the backend, or just the file."""
    if isinstance(exc, WorkerCrashed):
        return FailureKind.CRITICAL
    if isinstance(exc, BackendUnavailable):
        return FailureKind.UNAVAILABLE
    if isinstance(exc, RecoverableDocumentError):
        cause = exc.__cause__
        if cause is not None and classify_failure(cause) is FailureKind.CRITICAL:
            return FailureKind.CRITICAL
        return FailureKind.RECOVERABLE
    code = hresult_of(exc)
    if code in CRITICAL_HRESULTS:
        return FailureKind.CRITICAL
    if code in UNAVAILABLE_HRESULTS:
        return FailureKind.UNAVAILABLE
    text = str(exc).lower()
    if any(m in text for m in _CRITICAL_MARKERS):
        return FailureKind.CRITICAL
    if any(m in text for m in _UNAVAILABLE_MARKERS):
        return FailureKind.UNAVAILABLE
    return FailureKind.RECOVERABLE
