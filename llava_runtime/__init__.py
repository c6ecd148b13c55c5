from .chat_session import GenerationSession, INVALID_OUTPUT_NOTICE
from .errors import (
    CompletionError,
    LoadError,
    LoadFailure,
    SessionBusyError,
    TransferBusyError,
    TransferError,
)
from .model_lifecycle import ModelLifecycleManager
from .types import (
    DownloadJob,
    DownloadPhase,
    GenerateConfig,
    InferenceEngine,
    LoadingPhase,
    Message,
    ModelDescriptor,
    Presence,
    Speaker,
)

__all__ = [
    "GenerationSession", "INVALID_OUTPUT_NOTICE", "ModelLifecycleManager",
    "CompletionError", "LoadError", "LoadFailure", "SessionBusyError", "TransferBusyError", "TransferError",
    "DownloadJob", "DownloadPhase", "GenerateConfig", "InferenceEngine", "LoadingPhase", "Message",
    "ModelDescriptor", "Presence", "Speaker",
]
