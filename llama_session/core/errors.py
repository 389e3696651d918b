"""
llama-session :: Errors

Error taxonomy for the session core:

  LoadError            file / format / memory : fatal to session creation
  SessionClosedError   use after close() : fatal to the call
  SessionBusyError     re-entrant request on a session that is mid-request
  ValidationError      bad config or request : raised before any compute
  BackendComputeError  forward pass failed : fatal to the in-flight request only
  CancelledError       user-initiated stop : carries the partial result

Nothing here is retried by the engine.

INL - 2025
"""

import enum
from typing import Optional


class LlamaSessionError(Exception):
    """Base class for every error raised by llama-session."""


class LoadErrorKind(str, enum.Enum):
    FILE_NOT_FOUND = "file_not_found"
    UNSUPPORTED_FORMAT = "unsupported_format"
    OUT_OF_MEMORY = "out_of_memory"
    CORRUPT_HEADER = "corrupt_header"


class LoadError(LlamaSessionError):
    """Model file could not be turned into a session."""

    def __init__(self, kind: LoadErrorKind, message: str, path: Optional[str] = None):
        self.kind = LoadErrorKind(kind)
        self.path = path
        detail = f"{message} ({path})" if path else message
        super().__init__(f"[{self.kind.value}] {detail}")


class SessionClosedError(LlamaSessionError):
    """Operation attempted on a closed session."""


class SessionBusyError(LlamaSessionError):
    """The calling thread already owns a live request on this session."""


class ValidationError(LlamaSessionError, ValueError):
    """Invalid configuration or request parameters."""


class BackendComputeError(LlamaSessionError):
    """The tensor backend failed during a forward pass."""


class CancelledError(LlamaSessionError):
    """A request was cancelled by its caller. Not a failure."""

    def __init__(self, message: str = "request cancelled", partial=None):
        super().__init__(message)
        # CompletionResult with whatever was emitted before the cancel
        self.partial = partial
