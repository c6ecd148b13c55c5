from enum import Enum
from typing import Optional


class TransferError(RuntimeError):
    """A model download could not be started or did not complete."""


class TransferBusyError(TransferError):
    """Another download is already running; downloads are single-flight."""


class LoadFailure(Enum):
    NO_MODEL_SELECTED = "NoModelSelected"
    MISSING_ARTIFACT = "MissingArtifact"
    MISSING_AUX_ASSET = "MissingAuxAsset"
    ENGINE_INIT_FAILED = "EngineInitFailed"


class LoadError(RuntimeError):
    def __init__(self, reason: LoadFailure, detail: str = "", cause: Optional[BaseException] = None):
        self.reason = reason
        self.detail = detail
        self.cause = cause
        message = reason.value if not detail else f"{reason.value}: {detail}"
        super().__init__(message)


class CompletionError(RuntimeError):
    """The engine refused to begin a turn even after reloading the model."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Engine failed to begin completion after {attempts} attempt(s)")


class SessionBusyError(RuntimeError):
    """A turn was submitted while another turn or a reset was still running."""
